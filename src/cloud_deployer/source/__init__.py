"""Source-control collaborators."""

from .base import DummySourceProvider, SourceProviderClient, create_source_provider
from .github import GitHubSourceProvider

__all__ = [
    "DummySourceProvider",
    "GitHubSourceProvider",
    "SourceProviderClient",
    "create_source_provider",
]
