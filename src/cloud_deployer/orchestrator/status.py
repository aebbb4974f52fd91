"""Outward status reporting and the environment's active-deployment pointer."""

from __future__ import annotations

import logging
import threading

from ..environment import Environment
from ..errors import StepTransitionError
from ..source.base import SourceProviderClient
from .models import Deployment, DeploymentStatus

logger = logging.getLogger(__name__)

PENDING = "pending"
SUCCESS = "success"
FAILURE = "failure"


class StatusPropagator:
    """Reports deployment progress to the source provider.

    Reporting is best-effort: a provider failure is logged and never changes
    the outcome of the deployment.
    """

    def __init__(self, source: SourceProviderClient) -> None:
        self.source = source
        self._lock = threading.Lock()

    def register(self, deployment: Deployment) -> None:
        """Create the provider-side deployment record, if the provider keeps one."""
        try:
            deployment.source_deployment_id = self.source.create_deployment(deployment)
        except Exception as exc:
            logger.warning("Could not register deployment %s with the source provider: %s", deployment.id, exc)

    def report(self, deployment: Deployment, state: str) -> None:
        try:
            self.source.update_deployment_status(deployment, state)
        except Exception as exc:
            logger.warning("Could not report '%s' for deployment %s: %s", state, deployment.id, exc)
        else:
            logger.debug("Reported '%s' for deployment %s", state, deployment.id)

    def activate(self, environment: Environment, deployment: Deployment) -> None:
        """Point ``environment`` at ``deployment`` as its live deployment."""
        if deployment.status != DeploymentStatus.SUCCEEDED:
            raise StepTransitionError(
                f"Only a succeeded deployment can become active (deployment {deployment.id} "
                f"is {deployment.status.value})"
            )
        if deployment.environment_id != environment.id:
            raise StepTransitionError(
                f"Deployment {deployment.id} does not belong to environment {environment.name}"
            )
        with self._lock:
            environment.active_deployment_id = deployment.id
            if deployment.url:
                environment.url = deployment.url
        logger.info("Environment %s now serves deployment %s", environment.name, deployment.id)
