"""Interface of the source-control provider and a factory for it."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from ..config import SourceConfig
    from ..orchestrator.models import Deployment


class SourceProviderClient(Protocol):
    """Operations the orchestrator needs from a source-control provider."""

    def latest_hash_for(self, repository: str, branch: str) -> str:
        ...

    def tarball_url(self, deployment: "Deployment") -> str:
        ...

    def create_deployment(self, deployment: "Deployment") -> Optional[str]:
        """Register the deployment with the provider; returns its provider-side id."""
        ...

    def update_deployment_status(self, deployment: "Deployment", state: str) -> None:
        """Report ``state`` ("pending" | "success" | "failure")."""
        ...


class DummySourceProvider:
    """Provider for manual deploys of prebuilt images: no repository, no callbacks."""

    def latest_hash_for(self, repository: str, branch: str) -> str:
        return "manual"

    def tarball_url(self, deployment: "Deployment") -> str:
        raise NotImplementedError("Manual deployments have no source tarball")

    def create_deployment(self, deployment: "Deployment") -> Optional[str]:
        return None

    def update_deployment_status(self, deployment: "Deployment", state: str) -> None:
        return None


def create_source_provider(config: "SourceConfig") -> SourceProviderClient:
    """Build the provider named in ``config``.

    Raises:
        ValueError: If provider is not supported
    """
    provider = config.provider.lower()

    if provider == "github":
        from .github import GitHubSourceProvider
        if not config.token:
            raise ValueError("GitHub source provider requires a token")
        return GitHubSourceProvider(token=config.token, api_url=config.api_url)
    elif provider in ("dummy", "none", "manual"):
        return DummySourceProvider()
    else:
        raise ValueError(
            f"Unsupported source provider: {provider}. Supported providers: github, dummy"
        )
