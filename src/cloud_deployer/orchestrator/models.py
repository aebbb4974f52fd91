"""Data models for the orchestrator module."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import StepTransitionError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DeploymentStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(Enum):
    """Step execution state"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepKind(Enum):
    """Step actions known to the orchestrator, in template order."""
    ENABLE_APIS = "enable_apis"
    BUILD_IMAGE = "build_image"
    SET_SECRETS = "set_secrets"
    PROVISION_DATABASE = "provision_database"
    DEPLOY_SERVICE = "deploy_service"
    CONFIGURE_QUEUES = "configure_queues"
    SCHEDULE_JOBS = "schedule_jobs"
    MAP_DOMAINS = "map_domains"
    FINALIZE = "finalize"


class StepOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class StepResult:
    """Outcome of a single step action"""
    outcome: StepOutcome
    output: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == StepOutcome.SUCCEEDED

    @classmethod
    def succeeded(cls, output: Optional[str] = None) -> "StepResult":
        return cls(outcome=StepOutcome.SUCCEEDED, output=output)

    @classmethod
    def failed(cls, error: str) -> "StepResult":
        return cls(outcome=StepOutcome.FAILED, output=error)

    @classmethod
    def timed_out(cls, error: str) -> "StepResult":
        return cls(outcome=StepOutcome.TIMED_OUT, output=error)


@dataclass
class Step:
    """One unit of work inside a deployment.

    Moves pending -> running -> succeeded | failed exactly once, or
    pending -> skipped. Any other transition raises StepTransitionError.
    """
    deployment_id: str
    kind: StepKind
    label: str
    position: int
    status: StepStatus = StepStatus.PENDING
    output: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    def start(self) -> None:
        if self.status != StepStatus.PENDING:
            raise StepTransitionError(f"Step '{self.label}' cannot start from {self.status.value}")
        self.status = StepStatus.RUNNING
        self.started_at = _now()

    def succeed(self, output: Optional[str] = None) -> None:
        self._finish(StepStatus.SUCCEEDED, output)

    def fail(self, output: Optional[str]) -> None:
        self._finish(StepStatus.FAILED, output)

    def skip(self) -> None:
        if self.status != StepStatus.PENDING:
            raise StepTransitionError(f"Step '{self.label}' cannot be skipped from {self.status.value}")
        self.status = StepStatus.SKIPPED

    def _finish(self, status: StepStatus, output: Optional[str]) -> None:
        if self.status != StepStatus.RUNNING:
            raise StepTransitionError(
                f"Step '{self.label}' cannot move to {status.value} from {self.status.value}"
            )
        self.status = status
        self.output = output
        self.finished_at = _now()

    @property
    def is_finished(self) -> bool:
        return self.status in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)

    def duration(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.finished_at or _now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deployment_id": self.deployment_id,
            "kind": self.kind.value,
            "label": self.label,
            "position": self.position,
            "status": self.status.value,
            "output": self.output,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": self.duration(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            id=data["id"],
            deployment_id=data["deployment_id"],
            kind=StepKind(data["kind"]),
            label=data.get("label", ""),
            position=data.get("position", 0),
            status=StepStatus(data.get("status", "pending")),
            output=data.get("output"),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
        )


@dataclass
class Deployment:
    """A single attempt to bring an environment to a given commit/image.

    Terminal deployments are never reopened; retries and redeploys create a
    new Deployment (``retry_of`` links a retry to its predecessor).
    """
    environment_id: str
    commit_hash: str
    initiator: str = "system"
    commit_message: str = ""
    environment_name: str = ""
    repository: Optional[str] = None
    image: Optional[str] = None
    source_deployment_id: Optional[str] = None
    retry_of: Optional[str] = None
    url: Optional[str] = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    steps: List[Step] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)

    def add_step(self, kind: StepKind, label: str) -> Step:
        if self.status != DeploymentStatus.PENDING:
            raise StepTransitionError("Steps can only be added to a pending deployment")
        step = Step(deployment_id=self.id, kind=kind, label=label, position=len(self.steps) + 1)
        self.steps.append(step)
        return step

    def mark_running(self) -> None:
        if self.status != DeploymentStatus.PENDING:
            raise StepTransitionError(f"Deployment {self.id} cannot start from {self.status.value}")
        self.status = DeploymentStatus.RUNNING
        self.started_at = _now()

    def mark_succeeded(self) -> None:
        if self.status != DeploymentStatus.RUNNING:
            raise StepTransitionError(f"Deployment {self.id} is not running")
        unfinished = [s.label for s in self.steps if s.status != StepStatus.SUCCEEDED]
        if unfinished:
            raise StepTransitionError(
                f"Deployment {self.id} has steps that did not succeed: {', '.join(unfinished)}"
            )
        self.status = DeploymentStatus.SUCCEEDED
        self.finished_at = _now()

    def mark_failed(self) -> None:
        if self.status != DeploymentStatus.RUNNING:
            raise StepTransitionError(f"Deployment {self.id} is not running")
        self.status = DeploymentStatus.FAILED
        self.finished_at = _now()

    def is_in_progress(self) -> bool:
        return self.status in (DeploymentStatus.PENDING, DeploymentStatus.RUNNING)

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCEEDED

    @property
    def failed_step(self) -> Optional[Step]:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    def duration(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.finished_at or _now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "environment_id": self.environment_id,
            "environment_name": self.environment_name,
            "initiator": self.initiator,
            "commit_hash": self.commit_hash,
            "commit_message": self.commit_message,
            "repository": self.repository,
            "image": self.image,
            "source_deployment_id": self.source_deployment_id,
            "retry_of": self.retry_of,
            "url": self.url,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": self.duration(),
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Deployment":
        return cls(
            id=data["id"],
            environment_id=data["environment_id"],
            environment_name=data.get("environment_name", ""),
            initiator=data.get("initiator", "system"),
            commit_hash=data.get("commit_hash", ""),
            commit_message=data.get("commit_message", ""),
            repository=data.get("repository"),
            image=data.get("image"),
            source_deployment_id=data.get("source_deployment_id"),
            retry_of=data.get("retry_of"),
            url=data.get("url"),
            status=DeploymentStatus(data.get("status", "pending")),
            steps=[Step.from_dict(item) for item in data.get("steps", [])],
            created_at=_parse(data.get("created_at")) or _now(),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
        )
