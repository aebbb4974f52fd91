"""Inbound entry points: create deployments and run them on background workers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Deque, Dict, Iterable, Optional, Set, Tuple

from ..cloud.client import CloudProvisioningClient
from ..cloud.credentials import CredentialRegistry
from ..cloud.poller import OperationPoller
from ..config import AppConfig
from ..environment import Environment
from ..errors import StepTransitionError
from ..source.base import SourceProviderClient, create_source_provider
from .models import Deployment
from .orchestrator import DeploymentOrchestrator
from .status import StatusPropagator
from .steps import StepTemplate, build_steps, service_update_steps
from .store import DeploymentStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Environment], CloudProvisioningClient]
QueuedRun = Tuple[Deployment, Environment, CloudProvisioningClient, Future]

MANUAL_COMMIT = "manual"


class DeploymentDispatcher:
    """Creates Deployment records and hands them to a worker pool.

    Every call returns as soon as the deployment is recorded; use ``wait``
    to block on its outcome.

    Each environment has a FIFO queue. At most one worker drains a given
    queue, so deployments of one environment run in submission order and a
    queued deployment never occupies a worker while it waits. Other
    environments keep the remaining workers.
    """

    def __init__(
        self,
        config: AppConfig,
        environments: Iterable[Environment] = (),
        *,
        source: Optional[SourceProviderClient] = None,
        store: Optional[DeploymentStore] = None,
        poller: Optional[OperationPoller] = None,
        registry: Optional[CredentialRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.config = config
        self.source = source or create_source_provider(config.source)
        self.store = store or DeploymentStore(config.deployment.state_dir)
        polling = config.polling
        self.poller = poller or OperationPoller(
            timeout=polling.operation_timeout,
            interval=polling.interval,
            max_interval=polling.max_interval,
            backoff=polling.backoff,
            readiness_timeout=polling.readiness_timeout,
        )
        self.registry = registry or CredentialRegistry()
        self.client_factory = client_factory or self._default_client
        self.orchestrator = DeploymentOrchestrator(
            poller=self.poller,
            propagator=StatusPropagator(self.source),
            store=self.store,
            default_apis=config.deployment.default_apis,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.deployment.max_workers,
            thread_name_prefix="deployer",
        )
        self._environments: Dict[str, Environment] = {}
        self._futures: Dict[str, Future] = {}
        self._queues: Dict[str, Deque[QueuedRun]] = {}
        self._draining: Set[str] = set()
        self._lock = threading.Lock()
        for environment in environments:
            self.add_environment(environment)

    def _default_client(self, environment: Environment) -> CloudProvisioningClient:
        return CloudProvisioningClient(
            environment.project.project_id,
            self.registry.for_project(environment.project),
            timeout=self.config.cloud.request_timeout,
            max_rate_limit_retries=self.config.cloud.max_rate_limit_retries,
        )

    def add_environment(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.id] = environment

    def environment(self, environment_id: str) -> Environment:
        with self._lock:
            try:
                return self._environments[environment_id]
            except KeyError:
                raise KeyError(f"Unknown environment: {environment_id}") from None

    # ------------------------------------------------------------------
    # Inbound interface

    def start_deployment(
        self,
        environment_id: str,
        commit_hash: Optional[str] = None,
        commit_message: str = "",
        initiator: str = "system",
    ) -> Deployment:
        """Deploy ``commit_hash`` (default: branch head, or the declared image)."""
        environment = self.environment(environment_id)
        if environment.builds_from_source:
            commit_hash = commit_hash or self.source.latest_hash_for(
                environment.repository, environment.branch
            )
            image = environment.image_for(commit_hash)
        else:
            commit_hash = commit_hash or MANUAL_COMMIT
            image = environment.image

        deployment = self._new_deployment(
            environment,
            build_steps(environment),
            commit_hash=commit_hash,
            commit_message=commit_message,
            initiator=initiator,
            image=image,
        )
        return self._submit(deployment, environment)

    def retry_deployment(self, deployment_id: str) -> Deployment:
        """Start a fresh deployment repeating a finished one from its first step."""
        previous = self.store.get(deployment_id)
        if previous.is_in_progress():
            raise StepTransitionError(f"Deployment {deployment_id} is still {previous.status.value}")
        environment = self.environment(previous.environment_id)
        template = [(step.kind, step.label) for step in previous.steps]
        deployment = self._new_deployment(
            environment,
            template,
            commit_hash=previous.commit_hash,
            commit_message=previous.commit_message,
            initiator=previous.initiator,
            image=previous.image,
            retry_of=previous.id,
        )
        logger.info("Retrying deployment %s as %s", previous.id, deployment.id)
        return self._submit(deployment, environment)

    def update_environment_variables(
        self,
        environment_id: str,
        env_vars: Dict[str, str],
        initiator: str = "system",
    ) -> Deployment:
        """Apply new env vars by redeploying the live image with only the service step."""
        environment = self.environment(environment_id)
        environment.env_vars.update({str(k): str(v) for k, v in env_vars.items()})

        active = None
        if environment.active_deployment_id:
            active = self.store.get(environment.active_deployment_id)
        deployment = self._new_deployment(
            environment,
            service_update_steps(),
            commit_hash=active.commit_hash if active else MANUAL_COMMIT,
            commit_message=f"Update environment variables: {', '.join(sorted(env_vars))}",
            initiator=initiator,
            image=(active.image if active else None) or environment.image,
        )
        return self._submit(deployment, environment)

    def wait(self, deployment_id: str, timeout: Optional[float] = None) -> Deployment:
        """Block until the deployment has finished running and return it."""
        with self._lock:
            future = self._futures.get(deployment_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get(deployment_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------

    def _new_deployment(
        self,
        environment: Environment,
        template: StepTemplate,
        **fields,
    ) -> Deployment:
        deployment = Deployment(
            environment_id=environment.id,
            environment_name=environment.name,
            repository=environment.repository,
            **fields,
        )
        for kind, label in template:
            deployment.add_step(kind, label)
        self.store.save(deployment)
        return deployment

    def _submit(self, deployment: Deployment, environment: Environment) -> Deployment:
        client = self.client_factory(environment)
        outcome: Future = Future()
        with self._lock:
            self._futures[deployment.id] = outcome
            queue = self._queues.setdefault(environment.id, deque())
            queue.append((deployment, environment, client, outcome))
            idle = environment.id not in self._draining
            if idle:
                self._draining.add(environment.id)
            position = len(queue)
        if idle:
            self._executor.submit(self._drain, environment.id)
            logger.info("Queued deployment %s for %s", deployment.id, environment.name)
        else:
            logger.info(
                "Queued deployment %s for %s at position %d", deployment.id, environment.name, position
            )
        return deployment

    def _drain(self, environment_id: str) -> None:
        """Run an environment's queued deployments one after another."""
        while True:
            with self._lock:
                queue = self._queues[environment_id]
                if not queue:
                    self._draining.discard(environment_id)
                    return
                deployment, environment, client, outcome = queue.popleft()
            outcome.set_running_or_notify_cancel()
            try:
                succeeded = self.orchestrator.run(deployment, environment, client)
            except Exception as exc:
                logger.error("Deployment %s stopped unexpectedly: %s", deployment.id, exc)
                outcome.set_exception(exc)
            else:
                outcome.set_result(succeeded)
