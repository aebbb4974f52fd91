"""Configuration loading utilities for cloud-deployer."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")

DEFAULT_APIS = [
    "run.googleapis.com",
    "cloudbuild.googleapis.com",
    "sqladmin.googleapis.com",
    "secretmanager.googleapis.com",
    "cloudtasks.googleapis.com",
    "cloudscheduler.googleapis.com",
]


@dataclass
class CloudConfig:
    """Settings for talking to the cloud provider."""

    project_id: Optional[str] = None
    region: str = "us-central1"
    service_account_file: Optional[str] = None
    request_timeout: int = 60
    max_rate_limit_retries: int = 3


@dataclass
class PollingConfig:
    """Timeouts (seconds) and backoff for long-running operation polling."""

    operation_timeout: float = 900.0
    readiness_timeout: float = 600.0
    interval: float = 2.0
    max_interval: float = 30.0
    backoff: float = 1.5


@dataclass
class SourceConfig:
    """Source-control collaborator used for status callbacks and tarballs."""

    provider: str = "dummy"  # "github" | "dummy"
    token: Optional[str] = None
    api_url: str = "https://api.github.com"


@dataclass
class DeploymentConfig:
    """Settings related to deployment execution."""

    state_dir: str = ".cloud-deployer/deployments"
    max_workers: int = 4
    default_apis: List[str] = field(default_factory=lambda: list(DEFAULT_APIS))


@dataclass
class AppConfig:
    """Top-level configuration."""

    cloud: CloudConfig = field(default_factory=CloudConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        cloud_payload = _strip_comments(payload.get("cloud", {}) or {})
        polling_payload = _strip_comments(payload.get("polling", {}) or {})
        source_payload = _strip_comments(payload.get("source", {}) or {})
        deployment_payload = _strip_comments(payload.get("deployment", {}) or {})

        return cls(
            cloud=CloudConfig(**{**CloudConfig().__dict__, **cloud_payload}),
            polling=PollingConfig(**{**PollingConfig().__dict__, **polling_payload}),
            source=SourceConfig(**{**SourceConfig().__dict__, **source_payload}),
            deployment=DeploymentConfig(
                **{**DeploymentConfig().__dict__, **deployment_payload}
            ),
        )


def _strip_comments(section: Dict[str, Any]) -> Dict[str, Any]:
    # Keys starting with "_" are documentation comments in the JSON files.
    return {k: v for k, v in section.items() if not k.startswith("_")}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default location.

    Environment variables (higher priority than config file):
    - CLOUD_DEPLOYER_PROJECT_ID: Cloud project id
    - CLOUD_DEPLOYER_REGION: Default region
    - CLOUD_DEPLOYER_SERVICE_ACCOUNT_FILE: Path to a service-account JSON key
    - CLOUD_DEPLOYER_GITHUB_TOKEN: Token for the GitHub source provider
    - CLOUD_DEPLOYER_STATE_DIR: Directory for deployment snapshots
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    candidate_paths.append(_DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            config = AppConfig.from_dict(data)
            _apply_env_overrides(config)
            return config

    raise FileNotFoundError(
        f"Could not find configuration file. Looked in: {', '.join(str(p) for p in candidate_paths)}"
    )


def _apply_env_overrides(config: AppConfig) -> None:
    env_project = os.getenv("CLOUD_DEPLOYER_PROJECT_ID")
    if env_project:
        config.cloud.project_id = env_project

    env_region = os.getenv("CLOUD_DEPLOYER_REGION")
    if env_region:
        config.cloud.region = env_region

    env_key_file = os.getenv("CLOUD_DEPLOYER_SERVICE_ACCOUNT_FILE") or os.getenv(
        "GOOGLE_APPLICATION_CREDENTIALS"
    )
    if env_key_file:
        config.cloud.service_account_file = env_key_file

    env_token = os.getenv("CLOUD_DEPLOYER_GITHUB_TOKEN")
    if env_token:
        config.source.token = env_token
        if config.source.provider == "dummy":
            config.source.provider = "github"

    env_state_dir = os.getenv("CLOUD_DEPLOYER_STATE_DIR")
    if env_state_dir:
        config.deployment.state_dir = env_state_dir
