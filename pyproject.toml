[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bklogs"
version = "0.1.0"
description = "Parse Buildkite job logs, export them to Parquet and query the result"
requires-python = ">=3.10"
dependencies = [
    "zstandard",
]
keywords = [
    "buildkite",
    "logs",
    "parquet",
    "ci",
    "ansi",
    "log-analysis",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Logging",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
bklog = "bklogs.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["bklogs"]

[tool.hatch.build.targets.sdist]
include = [
    "bklogs",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
