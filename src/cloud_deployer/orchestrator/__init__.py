"""Deployment orchestration: models, step actions and the worker-pool dispatcher."""

from .dispatcher import DeploymentDispatcher
from .models import (
    Deployment,
    DeploymentStatus,
    Step,
    StepKind,
    StepOutcome,
    StepResult,
    StepStatus,
)
from .orchestrator import DeploymentOrchestrator
from .status import StatusPropagator
from .steps import StepContext, build_steps, service_update_steps
from .store import DeploymentStore

__all__ = [
    "Deployment",
    "DeploymentDispatcher",
    "DeploymentOrchestrator",
    "DeploymentStatus",
    "DeploymentStore",
    "StatusPropagator",
    "Step",
    "StepContext",
    "StepKind",
    "StepOutcome",
    "StepResult",
    "StepStatus",
    "build_steps",
    "service_update_steps",
]
