"""Environment and resource descriptors: the declarative side of a deployment."""

from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_REGION = "us-central1"

DEFAULT_INSTANCE_OPTIONS: Dict[str, Any] = {
    "tier": "db-f1-micro",
    "size": "10GB",
    "backups": {
        "enabled": True,
        "time": "02:00",
    },
}


def _new_id() -> str:
    return uuid.uuid4().hex


def _merge_options(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_options(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class CloudProject:
    """The cloud project an environment is provisioned into."""

    project_id: str
    region: Optional[str] = None
    service_account_file: Optional[str] = None
    service_account_info: Optional[Dict[str, Any]] = None


@dataclass
class DatabaseInstance:
    """A managed SQL server. Options fall back to DEFAULT_INSTANCE_OPTIONS key by key."""

    name: str
    region: Optional[str] = None
    database_version: str = "MYSQL_8_0"
    options: Dict[str, Any] = field(default_factory=dict)
    last_status: Optional[str] = None

    def get_option(self, key: str, default: Any = None) -> Any:
        """Look up an option by dotted key, e.g. ``backups.enabled``."""
        current: Any = _merge_options(DEFAULT_INSTANCE_OPTIONS, self.options)
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def set_option(self, key: str, value: Any) -> None:
        parts = key.split(".")
        target = self.options
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value

    def disk_size_gb(self) -> int:
        size = str(self.get_option("size", "10GB")).upper()
        return int(size[:-2]) if size.endswith("GB") else int(size)


@dataclass
class Database:
    """A logical database (schema) living on a DatabaseInstance."""

    name: str
    instance: DatabaseInstance
    last_status: Optional[str] = None


@dataclass
class DomainMapping:
    domain: str
    last_status: Optional[str] = None


@dataclass
class QueueSpec:
    """Cloud Tasks queue used by the application."""

    name: str
    location: Optional[str] = None
    max_dispatches_per_second: float = 10.0
    max_concurrent_dispatches: int = 10
    max_attempts: int = 3
    last_status: Optional[str] = None


@dataclass
class SchedulerJobSpec:
    """Cron-style job that calls back into the web service."""

    name: str
    schedule: str
    path: str = "/"
    time_zone: str = "Etc/UTC"
    http_method: str = "POST"
    last_status: Optional[str] = None


@dataclass
class SecretSpec:
    key: str
    value: str
    last_status: Optional[str] = None


@dataclass
class Environment:
    """A named, deployable target with its own region, service and resources."""

    name: str
    project: CloudProject
    web_service_name: str
    region: Optional[str] = None
    image: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    cpu: str = "1"
    memory: str = "512Mi"
    concurrency: int = 80
    max_instances: Optional[int] = None
    port: int = 8080
    public: bool = True
    repository: Optional[str] = None
    branch: str = "main"
    apis: List[str] = field(default_factory=list)
    domain_mappings: List[DomainMapping] = field(default_factory=list)
    database: Optional[Database] = None
    queues: List[QueueSpec] = field(default_factory=list)
    scheduler_jobs: List[SchedulerJobSpec] = field(default_factory=list)
    secrets: List[SecretSpec] = field(default_factory=list)
    active_deployment_id: Optional[str] = None
    url: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def resolved_region(self) -> str:
        return self.region or self.project.region or DEFAULT_REGION

    @property
    def builds_from_source(self) -> bool:
        return bool(self.repository)

    def image_for(self, commit_hash: str) -> str:
        """Image reference built for a given commit."""
        return f"gcr.io/{self.project.project_id}/{self.web_service_name}:{commit_hash}"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Environment":
        project_payload = payload.get("project") or {}
        project = CloudProject(
            project_id=project_payload.get("project_id", ""),
            region=project_payload.get("region"),
            service_account_file=project_payload.get("service_account_file"),
            service_account_info=project_payload.get("service_account_info"),
        )

        database = None
        database_payload = payload.get("database")
        if database_payload:
            instance_payload = database_payload.get("instance") or {}
            instance = DatabaseInstance(
                name=instance_payload.get("name", ""),
                region=instance_payload.get("region"),
                database_version=instance_payload.get("database_version", "MYSQL_8_0"),
                options=instance_payload.get("options", {}) or {},
            )
            database = Database(name=database_payload.get("name", ""), instance=instance)

        environment = cls(
            name=payload.get("name", ""),
            project=project,
            web_service_name=payload.get("web_service_name") or payload.get("name", ""),
            region=payload.get("region"),
            image=payload.get("image"),
            env_vars={str(k): str(v) for k, v in (payload.get("env_vars") or {}).items()},
            cpu=str(payload.get("cpu", "1")),
            memory=payload.get("memory", "512Mi"),
            concurrency=payload.get("concurrency", 80),
            max_instances=payload.get("max_instances"),
            port=payload.get("port", 8080),
            public=payload.get("public", True),
            repository=payload.get("repository"),
            branch=payload.get("branch", "main"),
            apis=list(payload.get("apis") or []),
            domain_mappings=[DomainMapping(domain=d) for d in payload.get("domains") or []],
            database=database,
            queues=[QueueSpec(**q) for q in payload.get("queues") or []],
            scheduler_jobs=[SchedulerJobSpec(**j) for j in payload.get("scheduler_jobs") or []],
            secrets=[
                SecretSpec(key=k, value=str(v)) for k, v in (payload.get("secrets") or {}).items()
            ],
        )
        if payload.get("id"):
            environment.id = payload["id"]
        return environment


def load_environment(path: str) -> Environment:
    """Read an environment definition from a JSON file."""
    with Path(path).open("r", encoding="utf-8") as handle:
        return Environment.from_dict(json.load(handle))
