"""
GitHub Actions self-hosted runner registration via the REST API.

Scope is decided once: organization runners live under
``/orgs/{owner}/actions/runners``, repository runners under
``/repos/{owner}/{repo}/actions/runners``. Token issuance, listing and
removal all use the same scope.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import GitHubConfig
from ..errors import RegistrationError
from ..models import RegisteredAgent, RegistrationToken
from .base import RegistrationService

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100


class GitHubRegistration(RegistrationService):
    """GitHub runner registration adapter.

    Args:
        config: GitHub settings (token, repository, scope, API URL).
        session: Optional requests session (mainly for tests).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        config: GitHubConfig,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._timeout = timeout

    @property
    def scope_path(self) -> str:
        if self._config.org_runner:
            return f"/orgs/{self._config.owner}/actions/runners"
        return f"/repos/{self._config.repository}/actions/runners"

    def _api_call(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated GitHub API call.

        Returns:
            Parsed JSON response, or an empty dict for 204 responses.

        Raises:
            RegistrationError: On transport failure or HTTP status >= 400.
        """
        url = f"{self._config.api_url.rstrip('/')}{path}"
        headers = {
            "Authorization": f"Bearer {self._config.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        try:
            resp = self._session.request(
                method, url, headers=headers, params=params, timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise RegistrationError(method, path, None, str(exc)) from exc

        if resp.status_code >= 400:
            raise RegistrationError(method, path, resp.status_code, resp.text)
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def create_registration_token(self) -> RegistrationToken:
        data = self._api_call("POST", f"{self.scope_path}/registration-token")
        logger.info("Issued runner registration token for %s", self.scope_path)
        return RegistrationToken(token=data["token"], expires_at=data.get("expires_at"))

    def list_runners(self) -> List[RegisteredAgent]:
        runners: List[RegisteredAgent] = []
        page = 1
        while True:
            data = self._api_call(
                "GET", self.scope_path, params={"per_page": PAGE_SIZE, "page": page},
            )
            batch = data.get("runners", [])
            runners.extend(
                RegisteredAgent(
                    id=item["id"],
                    name=item.get("name", ""),
                    status=item.get("status", "offline"),
                    busy=item.get("busy", False),
                )
                for item in batch
            )
            total = data.get("total_count", len(runners))
            if len(batch) < PAGE_SIZE or len(runners) >= total:
                return runners
            page += 1

    def remove_runner(self, runner_id: int) -> None:
        self._api_call("DELETE", f"{self.scope_path}/{runner_id}")
        logger.info("Removed runner %s from %s", runner_id, self.scope_path)
