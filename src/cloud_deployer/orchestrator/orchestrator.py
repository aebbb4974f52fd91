"""Deployment orchestrator: runs a deployment's steps in order."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from ..cloud.client import CloudProvisioningClient
from ..cloud.poller import OperationPoller
from ..environment import Environment
from ..errors import CloudDeployerError, OperationTimeoutError
from .models import Deployment, Step, StepResult
from .status import FAILURE, PENDING, SUCCESS, StatusPropagator
from .steps import ACTIONS, StepContext
from .store import DeploymentStore

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Executes a Deployment's steps sequentially.

    A step only starts once its predecessor succeeded. The first failure
    fails the deployment and skips every later step; there is no automatic
    retry. Runs of one environment never overlap: a per-environment lock
    guards each run, and DeploymentDispatcher feeds them in submission order.
    """

    def __init__(
        self,
        poller: OperationPoller,
        propagator: StatusPropagator,
        store: DeploymentStore,
        default_apis: Optional[List[str]] = None,
    ):
        self.poller = poller
        self.propagator = propagator
        self.store = store
        self.default_apis = list(default_apis or [])
        self._env_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, environment_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._env_locks.get(environment_id)
            if lock is None:
                lock = self._env_locks[environment_id] = threading.Lock()
            return lock

    def run(
        self,
        deployment: Deployment,
        environment: Environment,
        client: CloudProvisioningClient,
    ) -> bool:
        """
        Run every step of ``deployment`` against ``environment``.

        Returns:
            bool: whether the deployment succeeded
        """
        with self._lock_for(environment.id):
            return self._run_locked(deployment, environment, client)

    def _run_locked(
        self,
        deployment: Deployment,
        environment: Environment,
        client: CloudProvisioningClient,
    ) -> bool:
        deployment.mark_running()
        self.store.save(deployment)

        logger.info("=" * 60)
        logger.info(f"Deployment {deployment.id} of {environment.name} @ {deployment.commit_hash}")
        logger.info(f"Total Steps: {len(deployment.steps)}")
        for step in deployment.steps:
            logger.info(f"  {step.position}. {step.label}")
        logger.info("=" * 60)

        if deployment.source_deployment_id is None:
            self.propagator.register(deployment)
        self.propagator.report(deployment, PENDING)

        ctx = StepContext(
            environment=environment,
            deployment=deployment,
            client=client,
            poller=self.poller,
            source=self.propagator.source,
            default_apis=self.default_apis,
        )

        for index, step in enumerate(deployment.steps):
            logger.info(f"Step {step.position}/{len(deployment.steps)}: {step.label}")
            step.start()
            self.store.save(deployment)

            result = self._execute(step, ctx)

            if result.success:
                step.succeed(result.output)
                self.store.save(deployment)
                logger.info(f"   done in {step.duration():.1f}s")
                continue

            step.fail(result.output)
            logger.error(f"   {step.label} {result.outcome.value}: {result.output}")
            for later in deployment.steps[index + 1:]:
                later.skip()
            deployment.mark_failed()
            self.store.save(deployment)
            self.propagator.report(deployment, FAILURE)
            logger.error(f"Deployment {deployment.id} failed at step '{step.label}'")
            return False

        deployment.mark_succeeded()
        self.store.save(deployment)
        self.propagator.report(deployment, SUCCESS)
        self.propagator.activate(environment, deployment)
        logger.info(f"Deployment {deployment.id} completed successfully")
        return True

    def _execute(self, step: Step, ctx: StepContext) -> StepResult:
        """Run one step action, turning any exception into a failed result."""
        action = ACTIONS[step.kind]
        try:
            return action(ctx)
        except OperationTimeoutError as exc:
            return StepResult.timed_out(str(exc))
        except CloudDeployerError as exc:
            return StepResult.failed(str(exc))
        except Exception as exc:
            logger.exception("Unexpected error in step '%s'", step.label)
            return StepResult.failed(f"{type(exc).__name__}: {exc}")
