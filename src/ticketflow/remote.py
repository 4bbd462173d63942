"""REST client for the remote git-hosting service (Gitea API v1).

Covers the handful of calls the publisher needs: repository existence and
creation, pull request creation, and merge. All calls are authenticated with
an access token.
"""

from typing import Any

import requests

from ticketflow.logger import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30


class RemoteServiceError(Exception):
    """Raised when a remote service call fails.

    Attributes:
        status_code: HTTP status of the failed response, if one was received
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteServiceClient:
    """Token-authenticated client for a Gitea-compatible REST API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        org: str,
        session: requests.Session | None = None,
    ) -> None:
        """
        Args:
            base_url: Service root, e.g. "http://localhost:3000"
            token: Access token sent as "Authorization: token <token>"
            org: Organization that owns the per-ticket repositories
            session: Optional requests session (injected in tests)
        """
        self.base_url = base_url.rstrip("/")
        self.org = org
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"token {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise RemoteServiceError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:500] if response.text else response.reason
            raise RemoteServiceError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response

    def repo_exists(self, repo_name: str) -> bool:
        """Check whether the repository exists.

        A 404 means absent; any other error propagates.
        """
        try:
            self._request("GET", f"/repos/{self.org}/{repo_name}")
        except RemoteServiceError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def create_repo(self, repo_name: str, description: str = "") -> None:
        self._request(
            "POST",
            f"/orgs/{self.org}/repos",
            json={
                "name": repo_name,
                "description": description or f"Task: {repo_name}",
                "private": False,
                "auto_init": False,
            },
        )
        logger.info(f"Created remote repository {self.org}/{repo_name}")

    def ensure_repo(self, repo_name: str, description: str = "") -> bool:
        """Create the repository unless it already exists.

        Returns:
            True if the repository was created, False if it already existed
        """
        if self.repo_exists(repo_name):
            logger.info(f"Repository {self.org}/{repo_name} already exists")
            return False
        self.create_repo(repo_name, description)
        return True

    def create_pull_request(
        self, repo_name: str, head: str, base: str, title: str, body: str
    ) -> int:
        """Open a pull request and return its number."""
        response = self._request(
            "POST",
            f"/repos/{self.org}/{repo_name}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        number = int(response.json()["number"])
        logger.info(f"Created pull request #{number}: {title}")
        return number

    def merge_pull_request(self, repo_name: str, number: int, message: str) -> None:
        self._request(
            "POST",
            f"/repos/{self.org}/{repo_name}/pulls/{number}/merge",
            json={
                "Do": "merge",
                "MergeMessageField": message,
                "delete_branch_after_merge": False,
            },
        )
        logger.info(f"Merged pull request #{number} in {self.org}/{repo_name}")

    def clone_url(self, repo_name: str) -> str:
        """HTTP clone URL for a repository (without credentials)."""
        return f"{self.base_url}/{self.org}/{repo_name}.git"
