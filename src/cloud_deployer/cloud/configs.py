"""Request payload builders.

Every builder is a pure function of the environment it is given: no network
access, and identical input produces an identical payload so that a payload
can be re-sent on every deploy. Mandatory fields are checked when the builder
is constructed, before any request is attempted.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..environment import (
    Database,
    DatabaseInstance,
    DomainMapping,
    Environment,
    QueueSpec,
    SchedulerJobSpec,
)
from ..errors import ValidationError
from .resources import LOCATION_LABEL, IamPolicy, ServiceStatus

CLOUD_SQL_ANNOTATION = "run.googleapis.com/cloudsql-instances"
MAX_SCALE_ANNOTATION = "autoscaling.knative.dev/maxScale"
INVOKER_ROLE = "roles/run.invoker"
PUBLIC_MEMBER = "allUsers"


def _require(resource: str, **fields: Any) -> None:
    missing = [name for name, value in fields.items() if value in (None, "")]
    if missing:
        raise ValidationError(resource, missing)


def cloud_sql_connection_name(project_id: str, instance: DatabaseInstance, region: str) -> str:
    return f"{project_id}:{instance.region or region}:{instance.name}"


class ServiceConfig:
    """Cloud Run service manifest for an environment's web service."""

    def __init__(self, environment: Environment, image: Optional[str] = None) -> None:
        self.environment = environment
        self.image = image or environment.image
        _require(
            "service",
            project_id=environment.project.project_id,
            region=environment.resolved_region,
            service_name=environment.web_service_name,
            image=self.image,
        )

    def project_id(self) -> str:
        return self.environment.project.project_id

    def region(self) -> str:
        return self.environment.resolved_region

    def name(self) -> str:
        return self.environment.web_service_name

    def env(self) -> List[Dict[str, Any]]:
        env = self.environment
        variables: Dict[str, str] = dict(env.env_vars)
        if env.database:
            connection = cloud_sql_connection_name(
                self.project_id(), env.database.instance, self.region()
            )
            variables.setdefault("DB_SOCKET", f"/cloudsql/{connection}")
            variables.setdefault("DB_DATABASE", env.database.name)

        entries: List[Dict[str, Any]] = [
            {"name": name, "value": value} for name, value in variables.items()
        ]
        for secret in env.secrets:
            if secret.key in variables:
                continue
            entries.append(
                {
                    "name": secret.key,
                    "valueFrom": {"secretKeyRef": {"name": secret.key, "key": "latest"}},
                }
            )
        return entries

    def template_annotations(self) -> Dict[str, str]:
        env = self.environment
        annotations: Dict[str, str] = {}
        if env.max_instances:
            annotations[MAX_SCALE_ANNOTATION] = str(env.max_instances)
        if env.database:
            annotations[CLOUD_SQL_ANNOTATION] = cloud_sql_connection_name(
                self.project_id(), env.database.instance, self.region()
            )
        return annotations

    def config(self, current: Optional[ServiceStatus] = None) -> Dict[str, Any]:
        """Build the full manifest.

        When ``current`` is given (replace), the provider-assigned
        ``resourceVersion`` is carried forward; every other field is
        overwritten by the declared spec.
        """
        env = self.environment
        metadata: Dict[str, Any] = {
            "name": self.name(),
            "namespace": self.project_id(),
            "labels": {LOCATION_LABEL: self.region()},
        }
        if current is not None and current.resource_version:
            metadata["resourceVersion"] = current.resource_version

        template: Dict[str, Any] = {
            "spec": {
                "containerConcurrency": env.concurrency,
                "containers": [
                    {
                        "image": self.image,
                        "env": self.env(),
                        "ports": [{"containerPort": env.port}],
                        "resources": {"limits": {"cpu": env.cpu, "memory": env.memory}},
                    }
                ],
            }
        }
        annotations = self.template_annotations()
        if annotations:
            template["metadata"] = {"annotations": annotations}

        return {
            "apiVersion": "serving.knative.dev/v1",
            "kind": "Service",
            "metadata": metadata,
            "spec": {
                "template": template,
                "traffic": [{"percent": 100, "latestRevision": True}],
            },
        }


class DatabaseInstanceConfig:
    def __init__(self, instance: DatabaseInstance, project_id: str, region: str) -> None:
        self.instance = instance
        self._project_id = project_id
        self._region = instance.region or region
        _require(
            "database instance",
            project_id=project_id,
            region=self._region,
            instance_name=instance.name,
        )

    def project_id(self) -> str:
        return self._project_id

    def name(self) -> str:
        return self.instance.name

    def region(self) -> str:
        return self._region

    def settings(self) -> Dict[str, Any]:
        instance = self.instance
        return {
            "tier": instance.get_option("tier"),
            "dataDiskSizeGb": str(instance.disk_size_gb()),
            "backupConfiguration": {
                "enabled": bool(instance.get_option("backups.enabled")),
                "startTime": instance.get_option("backups.time"),
                "binaryLogEnabled": bool(instance.get_option("backups.enabled"))
                and instance.database_version.startswith("MYSQL"),
            },
        }

    def config(self) -> Dict[str, Any]:
        return {
            "name": self.name(),
            "region": self.region(),
            "databaseVersion": self.instance.database_version,
            "settings": self.settings(),
        }

    def patch(self) -> Dict[str, Any]:
        # Instance name, region and version are immutable; only settings are patched.
        return {"settings": self.settings()}


class DatabaseConfig:
    def __init__(self, database: Database, project_id: str) -> None:
        self.database = database
        self._project_id = project_id
        _require(
            "database",
            project_id=project_id,
            instance_name=database.instance.name,
            database_name=database.name,
        )

    def project_id(self) -> str:
        return self._project_id

    def instance_name(self) -> str:
        return self.database.instance.name

    def charset(self) -> str:
        return "utf8mb4"

    def name(self) -> str:
        return self.database.name

    def config(self) -> Dict[str, Any]:
        return {
            "kind": "sql#database",
            "charset": self.charset(),
            "name": self.name(),
        }


class DomainMappingConfig:
    def __init__(self, mapping: DomainMapping, environment: Environment) -> None:
        self.mapping = mapping
        self.environment = environment
        _require(
            "domain mapping",
            project_id=environment.project.project_id,
            region=environment.resolved_region,
            domain=mapping.domain,
            service_name=environment.web_service_name,
        )

    def project_id(self) -> str:
        return self.environment.project.project_id

    def region(self) -> str:
        return self.environment.resolved_region

    def domain(self) -> str:
        return self.mapping.domain

    def route_name(self) -> str:
        return self.environment.web_service_name

    def config(self) -> Dict[str, Any]:
        return {
            "apiVersion": "domains.cloudrun.com/v1",
            "kind": "DomainMapping",
            "metadata": {
                "name": self.domain(),
                "namespace": self.project_id(),
                "labels": {LOCATION_LABEL: self.region()},
            },
            "spec": {
                "routeName": self.route_name(),
                "certificateMode": "AUTOMATIC",
            },
        }


class QueueConfig:
    def __init__(self, queue: QueueSpec, environment: Environment) -> None:
        self.queue = queue
        self.environment = environment
        _require(
            "queue",
            project_id=environment.project.project_id,
            location=self.location(),
            queue_name=queue.name,
        )

    def location(self) -> str:
        return self.queue.location or self.environment.resolved_region

    def name(self) -> str:
        return (
            f"projects/{self.environment.project.project_id}"
            f"/locations/{self.location()}/queues/{self.queue.name}"
        )

    def config(self) -> Dict[str, Any]:
        return {
            "name": self.name(),
            "rateLimits": {
                "maxDispatchesPerSecond": self.queue.max_dispatches_per_second,
                "maxConcurrentDispatches": self.queue.max_concurrent_dispatches,
            },
            "retryConfig": {"maxAttempts": self.queue.max_attempts},
        }


class SchedulerJobConfig:
    def __init__(self, job: SchedulerJobSpec, environment: Environment, service_url: Optional[str]) -> None:
        self.job = job
        self.environment = environment
        self.service_url = service_url
        _require(
            "scheduler job",
            project_id=environment.project.project_id,
            location=environment.resolved_region,
            job_name=job.name,
            schedule=job.schedule,
            service_url=service_url,
        )

    def project_id(self) -> str:
        return self.environment.project.project_id

    def location(self) -> str:
        return self.environment.resolved_region

    def job_id(self) -> str:
        return f"{self.environment.web_service_name}-{self.job.name}"

    def name(self) -> str:
        return f"projects/{self.project_id()}/locations/{self.location()}/jobs/{self.job_id()}"

    def config(self) -> Dict[str, Any]:
        path = self.job.path if self.job.path.startswith("/") else f"/{self.job.path}"
        return {
            "name": self.name(),
            "schedule": self.job.schedule,
            "timeZone": self.job.time_zone,
            "httpTarget": {
                "uri": f"{self.service_url.rstrip('/')}{path}",
                "httpMethod": self.job.http_method,
            },
        }


class BuildConfig:
    """Cloud Build instructions: fetch the commit tarball, build and push the image."""

    def __init__(self, project_id: str, image: str, tarball_url: Optional[str], timeout: int = 1200) -> None:
        self._project_id = project_id
        self.image = image
        self.tarball_url = tarball_url
        self.timeout = timeout
        _require("build", project_id=project_id, image=image, tarball_url=tarball_url)

    def project_id(self) -> str:
        return self._project_id

    def instructions(self) -> Dict[str, Any]:
        return {
            "steps": [
                {
                    "name": "gcr.io/cloud-builders/curl",
                    "args": ["-sSL", "-o", "source.tar.gz", self.tarball_url],
                },
                {
                    "name": "ubuntu",
                    "args": [
                        "bash",
                        "-c",
                        "mkdir -p app && tar -xzf source.tar.gz -C app --strip-components=1",
                    ],
                },
                {
                    "name": "gcr.io/cloud-builders/docker",
                    "args": ["build", "-t", self.image, "app"],
                },
            ],
            "images": [self.image],
            "timeout": f"{self.timeout}s",
        }


def grant_public_invoker(policy: IamPolicy) -> bool:
    """Allow unauthenticated invocations. Returns False if already granted."""
    return policy.add_binding(INVOKER_ROLE, PUBLIC_MEMBER)
