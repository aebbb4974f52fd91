"""GitHub implementation of the source-control provider, over the REST API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import requests

from ..errors import ApiError, NotFoundError

if TYPE_CHECKING:
    from ..orchestrator.models import Deployment

logger = logging.getLogger(__name__)

# Deployment states accepted by GitHub's deployment status API.
GITHUB_STATES = {"pending", "in_progress", "queued", "success", "failure", "error", "inactive"}


class GitHubSourceProvider:
    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def latest_hash_for(self, repository: str, branch: str) -> str:
        data = self._request("GET", f"/repos/{repository}/commits/{branch}")
        return data["sha"]

    def tarball_url(self, deployment: "Deployment") -> str:
        """Resolve the short-lived download URL GitHub redirects the tarball to."""
        url = f"{self.api_url}/repos/{deployment.repository}/tarball/{deployment.commit_hash}"
        response = self.session.get(
            url, headers=self._headers(), allow_redirects=False, timeout=self.timeout
        )
        if response.status_code in (301, 302, 303, 307, 308):
            return response.headers["Location"]
        self._raise_for_status(response, "GET", url)
        return url

    def create_deployment(self, deployment: "Deployment") -> Optional[str]:
        data = self._request(
            "POST",
            f"/repos/{deployment.repository}/deployments",
            {
                "ref": deployment.commit_hash,
                "environment": deployment.environment_name,
                "auto_merge": False,
                "required_contexts": [],
                "description": deployment.commit_message[:140] if deployment.commit_message else "",
            },
        )
        deployment_id = data.get("id")
        return str(deployment_id) if deployment_id is not None else None

    def update_deployment_status(self, deployment: "Deployment", state: str) -> None:
        if state not in GITHUB_STATES:
            raise ValueError(f"Unsupported deployment state: {state}")
        if not deployment.source_deployment_id:
            logger.debug("Deployment %s has no GitHub deployment id, skipping status", deployment.id)
            return
        self._request(
            "POST",
            f"/repos/{deployment.repository}/deployments/{deployment.source_deployment_id}/statuses",
            {"state": state, "environment_url": deployment.url or ""},
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        response = self.session.request(
            method, url, json=payload, headers=self._headers(), timeout=self.timeout
        )
        self._raise_for_status(response, method, url)
        return response.json() if response.content else {}

    @staticmethod
    def _raise_for_status(response: requests.Response, method: str, url: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(404, response.text, method=method, url=url)
        if not 200 <= response.status_code < 300:
            logger.error(response.text)
            raise ApiError(response.status_code, response.text, method=method, url=url)
