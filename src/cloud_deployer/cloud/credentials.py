"""Access-token acquisition and caching for the provisioning client."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from ..environment import CloudProject
from ..errors import AuthError

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# Refresh slightly before the provider-side expiry.
EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class AccessToken:
    token: str
    expiry: Optional[datetime] = None

    def expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry is None:
            return False
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return now >= expiry - EXPIRY_SKEW


TokenProvider = Callable[[], AccessToken]


class ServiceAccountTokenProvider:
    """Mints access tokens from a service-account key via google-auth."""

    def __init__(
        self,
        *,
        info: Optional[Dict[str, Any]] = None,
        key_file: Optional[str] = None,
        scopes: Optional[list] = None,
    ) -> None:
        if not info and not key_file:
            raise AuthError("A service-account key (info or key_file) is required")
        self.info = info
        self.key_file = key_file
        self.scopes = scopes or [CLOUD_PLATFORM_SCOPE]

    def _credentials(self) -> service_account.Credentials:
        try:
            if self.info:
                return service_account.Credentials.from_service_account_info(
                    self.info, scopes=self.scopes
                )
            return service_account.Credentials.from_service_account_file(
                self.key_file, scopes=self.scopes
            )
        except (ValueError, OSError) as exc:
            raise AuthError(f"Invalid service-account key: {exc}") from exc

    def __call__(self) -> AccessToken:
        credentials = self._credentials()
        try:
            credentials.refresh(Request())
        except google.auth.exceptions.GoogleAuthError as exc:
            raise AuthError(f"Could not obtain an access token: {exc}") from exc
        return AccessToken(token=credentials.token, expiry=credentials.expiry)


class CredentialCache:
    """Lazily fetched, cached access token owned by a provisioning client.

    Concurrent callers may refresh redundantly; the worst case is an extra
    token fetch, so reads are not serialized.
    """

    def __init__(self, provider: TokenProvider) -> None:
        self._provider = provider
        self._token: Optional[AccessToken] = None

    def token(self) -> str:
        current = self._token
        if current is None or current.expired():
            current = self.refresh()
        return current.token

    def refresh(self) -> AccessToken:
        logger.debug("Fetching a new access token")
        token = self._provider()
        if not token or not token.token:
            raise AuthError("Token provider returned an empty access token")
        self._token = token
        return token

    def invalidate(self) -> None:
        self._token = None


class CredentialRegistry:
    """Hands out one shared CredentialCache per cloud project."""

    def __init__(self, provider_factory: Optional[Callable[[CloudProject], TokenProvider]] = None) -> None:
        self._provider_factory = provider_factory or self._service_account_provider
        self._caches: Dict[str, CredentialCache] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _service_account_provider(project: CloudProject) -> TokenProvider:
        return ServiceAccountTokenProvider(
            info=project.service_account_info,
            key_file=project.service_account_file,
        )

    def for_project(self, project: CloudProject) -> CredentialCache:
        with self._lock:
            cache = self._caches.get(project.project_id)
            if cache is None:
                cache = CredentialCache(self._provider_factory(project))
                self._caches[project.project_id] = cache
            return cache
