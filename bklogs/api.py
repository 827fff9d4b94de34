"""Client for fetching job logs from the Buildkite REST API."""

from __future__ import annotations

import platform
import sys
import urllib.error
import urllib.request
from http.client import HTTPResponse

DEFAULT_BASE_URL = "https://api.buildkite.com/v2"
DEFAULT_TIMEOUT = 30.0


class APIError(Exception):
    """Raised when a request to the Buildkite API cannot be completed."""


class BuildkiteAPIClient:
    """Minimal Buildkite API client authenticated with a bearer token."""

    def __init__(
        self,
        api_token: str,
        version: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url
        self.timeout = timeout
        self.user_agent = (
            f"buildkite-logs-parquet/{version} "
            f"(Python; {sys.platform}; {platform.machine()})"
        )

    def get_job_log(self, org: str, pipeline: str, build: str, job: str) -> HTTPResponse:
        """Return the open response streaming the job's plain-text log.

        The caller is responsible for closing it.
        """
        if not self.api_token:
            raise APIError("API token is required")

        url = (
            f"{self.base_url}/organizations/{org}/pipelines/{pipeline}"
            f"/builds/{build}/jobs/{job}/log"
        )
        request = urllib.request.Request(
            url,
            method="GET",
            headers={
                "Authorization": "Bearer " + self.api_token,
                "Accept": "text/plain",
                "User-Agent": self.user_agent,
            },
        )
        try:
            response = urllib.request.urlopen(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            exc.close()
            raise APIError(
                f"API request failed with status {exc.code}: {exc.code} {exc.reason}"
            ) from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise APIError(f"failed to make request: {exc}") from exc

        if response.status != 200:
            response.close()
            raise APIError(
                f"API request failed with status {response.status}: "
                f"{response.status} {response.reason}"
            )
        return response


def validate_api_params(org: str, pipeline: str, build: str, job: str) -> None:
    """Raise ValueError naming every missing API parameter."""
    provided = {"organization": org, "pipeline": pipeline, "build": build, "job": job}
    missing = [name for name, value in provided.items() if not value]
    if missing:
        raise ValueError(f"missing required API parameters: {', '.join(missing)}")