"""
HTTP client for the runbox API.

Used by the runner console; any ``httpx.Client`` (including FastAPI's
``TestClient``) can be injected.
"""

from typing import List, Optional, Tuple

import httpx

from runbox.errors import NotFound, RunboxError
from runbox.schemas import ExecutionStatus, NetworkProfile, RunOptions, RunRequest, RunResult


class RunnerClientError(RunboxError):
    """Raised on API or network errors."""
    pass


class RunnerClient:
    """
    Thin synchronous client over the HTTP API.

    Args:
        base_url: API root, e.g. ``http://localhost:8080``
        timeout: Request timeout in seconds
        http: Client to use instead of creating one
    """

    def __init__(self, base_url: str = "http://localhost:8080", timeout: float = 30.0, http: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RunnerClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise RunnerClientError(f"Request to {path} timed out")
        except httpx.RequestError as e:
            raise RunnerClientError(f"Network error: {e}")

        if response.status_code == 404:
            raise NotFound(f"Not found: {path}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                error_msg = e.response.json().get("error", str(e))
            except ValueError:
                error_msg = str(e)
            raise RunnerClientError(f"API error: {error_msg}")
        return response

    def health(self) -> bool:
        try:
            self._request("GET", "/")
        except RunnerClientError:
            return False
        return True

    def workspaces(self) -> List[str]:
        return self._request("GET", "/workspaces").json()

    def run(self, workspace_id: str, file: str = "index.html", options: Optional[RunOptions] = None) -> RunResult:
        body = RunRequest(file=file, options=options or RunOptions())
        response = self._request(
            "POST",
            f"/workspaces/{workspace_id}/run",
            json=body.model_dump(mode="json", exclude_none=True),
        )
        return RunResult.model_validate(response.json())

    def stop(self, workspace_id: str) -> bool:
        return bool(self._request("POST", f"/workspaces/{workspace_id}/stop").json().get("ok"))

    def status(self, workspace_id: str) -> ExecutionStatus:
        response = self._request("GET", f"/workspaces/{workspace_id}/status")
        return ExecutionStatus.model_validate(response.json())

    def output(self, workspace_id: str) -> str:
        return self._request("GET", f"/workspaces/{workspace_id}/output").text

    def network_profile(self, workspace_id: str) -> NetworkProfile:
        response = self._request("GET", f"/workspaces/{workspace_id}/network")
        return NetworkProfile.model_validate(response.json())

    def set_network_profile(self, workspace_id: str, profile: NetworkProfile) -> NetworkProfile:
        response = self._request("PUT", f"/workspaces/{workspace_id}/network", json=profile.model_dump())
        return NetworkProfile.model_validate(response.json())

    def clear_network_profile(self, workspace_id: str) -> None:
        self._request("DELETE", f"/workspaces/{workspace_id}/network")

    def preview(self, workspace_id: str, relative_path: str = "") -> Tuple[bytes, str]:
        """Fetch a previewed file as (bytes, content type)."""
        response = self._request("GET", f"/preview/{workspace_id}/{relative_path.lstrip('/')}")
        return response.content, response.headers.get("content-type", "")
