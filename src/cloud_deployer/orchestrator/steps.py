"""Step actions and the step templates that sequence them.

Each action receives a ``StepContext`` and returns a ``StepResult``. Actions
raise on failure; the orchestrator's step boundary turns the exception into
the step's output. Every action is safe to run again for the same
environment, which is what makes a full-restart retry possible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from ..cloud.client import CloudProvisioningClient
from ..cloud.configs import BuildConfig, QueueConfig, SchedulerJobConfig, grant_public_invoker
from ..cloud.poller import OperationPoller
from ..cloud.reconciler import (
    Reconciler,
    database_instance_kind,
    database_kind,
    domain_mapping_kind,
    service_kind,
)
from ..environment import Environment
from ..errors import ApiError, RemoteConditionError
from ..source.base import SourceProviderClient
from .models import Deployment, StepKind, StepResult

logger = logging.getLogger(__name__)

# App Engine names two of its regions without the numeric suffix.
APP_ENGINE_LOCATIONS = {"us-central1": "us-central", "europe-west1": "europe-west"}


@dataclass
class StepContext:
    """Everything a step action may touch while it runs."""
    environment: Environment
    deployment: Deployment
    client: CloudProvisioningClient
    poller: OperationPoller
    source: SourceProviderClient
    reconciler: Reconciler = field(init=False)
    default_apis: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.reconciler = Reconciler(self.poller)


StepAction = Callable[[StepContext], StepResult]


def enable_apis(ctx: StepContext) -> StepResult:
    apis = list(dict.fromkeys(ctx.environment.apis or ctx.default_apis))
    if not apis:
        return StepResult.succeeded("No APIs to enable")
    operation = ctx.client.enable_apis(apis)
    ctx.poller.wait_for_operation(
        operation, lambda op: ctx.client.get_enable_apis_operation(op.name)
    )
    return StepResult.succeeded(f"Enabled {len(apis)} API(s): {', '.join(apis)}")


def build_image(ctx: StepContext) -> StepResult:
    env = ctx.environment
    deployment = ctx.deployment
    image = deployment.image or env.image_for(deployment.commit_hash)
    config = BuildConfig(env.project.project_id, image, ctx.source.tarball_url(deployment))

    operation = ctx.client.create_build(config)
    logger.info("Build started for %s, logs: %s", image, operation.log_url or "n/a")
    ctx.poller.wait_for_operation(
        operation, lambda op: ctx.client.get_build_operation(op.name)
    )
    deployment.image = image
    return StepResult.succeeded(f"Built image {image}")


def set_secrets(ctx: StepContext) -> StepResult:
    for secret in ctx.environment.secrets:
        ctx.client.set_secret(secret.key, secret.value)
        secret.last_status = "set"
    keys = ", ".join(secret.key for secret in ctx.environment.secrets)
    return StepResult.succeeded(f"Stored secrets: {keys}")


def provision_database(ctx: StepContext) -> StepResult:
    env = ctx.environment
    database = env.database
    if database is None:
        return StepResult.succeeded("No database declared")

    project_id = env.project.project_id
    instance_result = ctx.reconciler.reconcile(
        database_instance_kind(ctx.client, database.instance, project_id, env.resolved_region)
    )
    database.instance.last_status = instance_result.status.state if instance_result.status else None

    database_result = ctx.reconciler.reconcile(database_kind(ctx.client, database, project_id))
    database.last_status = database_result.action
    return StepResult.succeeded(
        f"Database instance {database.instance.name} {instance_result.action}, "
        f"database {database.name} {database_result.action}"
    )


def deploy_service(ctx: StepContext) -> StepResult:
    env = ctx.environment
    deployment = ctx.deployment
    result = ctx.reconciler.reconcile(service_kind(ctx.client, env, deployment.image))
    deployment.url = result.status.url if result.status else None

    if env.public:
        region = env.resolved_region
        policy = ctx.client.get_iam_policy(env.web_service_name, region)
        if grant_public_invoker(policy):
            ctx.client.set_iam_policy(env.web_service_name, region, policy)
            logger.info("Granted public access to %s", env.web_service_name)

    return StepResult.succeeded(
        f"Service {env.web_service_name} {result.action} with image {deployment.image}"
        + (f" at {deployment.url}" if deployment.url else "")
    )


def configure_queues(ctx: StepContext) -> StepResult:
    env = ctx.environment
    client = ctx.client
    if not client.has_app_engine_app():
        location = APP_ENGINE_LOCATIONS.get(env.resolved_region, env.resolved_region)
        logger.info("Creating App Engine application in %s for Cloud Tasks", location)
        operation = client.create_app_engine_app(location)
        ctx.poller.wait_for_operation(
            operation, lambda op: client.get_app_engine_operation(op.name)
        )

    for queue in env.queues:
        client.create_or_update_queue(QueueConfig(queue, env))
        queue.last_status = "configured"
    return StepResult.succeeded(f"Configured {len(env.queues)} queue(s)")


def schedule_jobs(ctx: StepContext) -> StepResult:
    env = ctx.environment
    service_url = ctx.deployment.url or env.url
    if not service_url:
        service_url = ctx.client.get_service(env.web_service_name, env.resolved_region).url

    for job in env.scheduler_jobs:
        config = SchedulerJobConfig(job, env, service_url)
        try:
            ctx.client.create_scheduler_job(config)
            job.last_status = "created"
        except ApiError as exc:
            if exc.status != 409:
                raise
            ctx.client.update_scheduler_job(config)
            job.last_status = "updated"
    return StepResult.succeeded(f"Scheduled {len(env.scheduler_jobs)} job(s)")


def map_domains(ctx: StepContext) -> StepResult:
    lines = []
    for mapping in ctx.environment.domain_mappings:
        result = ctx.reconciler.reconcile(domain_mapping_kind(ctx.client, mapping, ctx.environment))
        mapping.last_status = result.action
        records = result.status.resource_records if result.status is not None else []
        lines.append(f"{mapping.domain} {result.action}")
        for record in records:
            lines.append(f"  {record.get('type', '')} {record.get('name', '')} {record.get('rrdata', '')}")
    return StepResult.succeeded("\n".join(lines))


def finalize(ctx: StepContext) -> StepResult:
    env = ctx.environment
    status = ctx.client.get_service(env.web_service_name, env.resolved_region)
    ready = status.get_condition("Ready")
    if not ready.is_true:
        raise RemoteConditionError("Ready", ready.message)
    ctx.deployment.url = status.url or ctx.deployment.url
    return StepResult.succeeded(f"Live at {ctx.deployment.url}")


ACTIONS: Dict[StepKind, StepAction] = {
    StepKind.ENABLE_APIS: enable_apis,
    StepKind.BUILD_IMAGE: build_image,
    StepKind.SET_SECRETS: set_secrets,
    StepKind.PROVISION_DATABASE: provision_database,
    StepKind.DEPLOY_SERVICE: deploy_service,
    StepKind.CONFIGURE_QUEUES: configure_queues,
    StepKind.SCHEDULE_JOBS: schedule_jobs,
    StepKind.MAP_DOMAINS: map_domains,
    StepKind.FINALIZE: finalize,
}

StepTemplate = List[Tuple[StepKind, str]]


def build_steps(environment: Environment) -> StepTemplate:
    """Provisioning plan for a full deploy of ``environment``.

    Optional resources only get a step when the environment declares them.
    """
    steps: StepTemplate = [(StepKind.ENABLE_APIS, "Enable cloud APIs")]
    if environment.builds_from_source:
        steps.append((StepKind.BUILD_IMAGE, "Build container image"))
    if environment.secrets:
        steps.append((StepKind.SET_SECRETS, "Store secrets"))
    if environment.database:
        steps.append((StepKind.PROVISION_DATABASE, "Provision database"))
    steps.append((StepKind.DEPLOY_SERVICE, "Deploy web service"))
    if environment.queues:
        steps.append((StepKind.CONFIGURE_QUEUES, "Configure task queues"))
    if environment.scheduler_jobs:
        steps.append((StepKind.SCHEDULE_JOBS, "Schedule jobs"))
    if environment.domain_mappings:
        steps.append((StepKind.MAP_DOMAINS, "Map custom domains"))
    steps.append((StepKind.FINALIZE, "Finalize deployment"))
    return steps


def service_update_steps() -> StepTemplate:
    """Narrow plan used when only the service configuration changed."""
    return [(StepKind.DEPLOY_SERVICE, "Update web service")]
