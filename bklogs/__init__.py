"""Parse Buildkite job logs, export them to Parquet and query the result."""

__version__ = "0.1.0"