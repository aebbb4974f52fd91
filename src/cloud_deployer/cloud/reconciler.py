"""Create-or-update reconciliation shared by every provisioned resource type.

Each resource type supplies a ``ResourceKind``: how to look it up, how to
build its create/update payloads, which endpoints to call and which status
condition means it is serving. ``Reconciler`` runs the same state machine
for all of them:

    lookup --NotFound--> create --> wait for operation --> wait for readiness
       \\--found-------> update --> wait for operation --> wait for readiness

Presence of the resource is the only signal for create vs update; no diff is
computed and the full declared spec is re-sent on every run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from ..environment import Database, DatabaseInstance, DomainMapping, Environment
from ..errors import NotFoundError
from .client import CloudProvisioningClient
from .configs import DatabaseConfig, DatabaseInstanceConfig, DomainMappingConfig, ServiceConfig
from .poller import OperationPoller
from .resources import (
    DatabaseInstanceStatus,
    DatabaseOperation,
    DomainMappingStatus,
    Operation,
    ResourceStatus,
    ServiceStatus,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=ResourceStatus)

CREATED = "created"
UPDATED = "updated"


@dataclass
class ResourceKind(Generic[S]):
    """Capabilities of one resource type.

    ``create``/``update`` return either an ``Operation`` to wait on, a status
    document, or None when there is nothing to send (update only).
    ``readiness_condition`` None means the operation finishing is enough.
    """

    name: str
    lookup: Callable[[], S]
    build_create_payload: Callable[[], Any]
    build_update_payload: Callable[[S], Any]
    create: Callable[[Any], Any]
    update: Callable[[Any, S], Any]
    refresh_operation: Optional[Callable[[Operation], Operation]] = None
    readiness_condition: Optional[str] = "Ready"


@dataclass
class ReconcileResult:
    action: str
    status: Optional[ResourceStatus] = None
    operation: Optional[Operation] = None

    @property
    def created(self) -> bool:
        return self.action == CREATED


class Reconciler:
    def __init__(self, poller: OperationPoller) -> None:
        self.poller = poller

    def reconcile(self, kind: ResourceKind) -> ReconcileResult:
        try:
            current = kind.lookup()
        except NotFoundError:
            current = None

        if current is None:
            logger.info("%s not found, creating it", kind.name)
            payload = kind.build_create_payload()
            response = kind.create(payload)
            action = CREATED
        else:
            logger.info("%s exists, updating it", kind.name)
            payload = kind.build_update_payload(current)
            response = kind.update(payload, current)
            action = UPDATED

        operation = None
        if isinstance(response, Operation):
            if kind.refresh_operation is None:
                raise TypeError(f"{kind.name} returned an operation but has no refresh_operation")
            operation = self.poller.wait_for_operation(response, kind.refresh_operation)

        status = None
        if kind.readiness_condition:
            status = self.poller.wait_for_condition(
                kind.lookup,
                kind.readiness_condition,
                description=f"{kind.name} {kind.readiness_condition} condition",
            )
        elif isinstance(response, ResourceStatus):
            status = response

        logger.info("%s %s", kind.name, action)
        return ReconcileResult(action=action, status=status, operation=operation)


def _is_subset(desired: Any, live: Any) -> bool:
    if isinstance(desired, dict):
        return isinstance(live, dict) and all(
            _is_subset(value, live.get(key)) for key, value in desired.items()
        )
    return desired == live


def service_kind(
    client: CloudProvisioningClient, environment: Environment, image: Optional[str] = None
) -> ResourceKind[ServiceStatus]:
    config = ServiceConfig(environment, image)
    return ResourceKind(
        name=f"service {config.name()}",
        lookup=lambda: client.get_service(config.name(), config.region()),
        build_create_payload=lambda: config,
        build_update_payload=lambda current: config,
        create=lambda cfg: client.create_or_replace_service(cfg, replace=False),
        update=lambda cfg, current: client.create_or_replace_service(
            cfg, replace=True, current=current
        ),
        readiness_condition="Ready",
    )


def database_instance_kind(
    client: CloudProvisioningClient, instance: DatabaseInstance, project_id: str, region: str
) -> ResourceKind[DatabaseInstanceStatus]:
    config = DatabaseInstanceConfig(instance, project_id, region)

    def update(cfg: DatabaseInstanceConfig, current: DatabaseInstanceStatus) -> Optional[DatabaseOperation]:
        # Skip the patch operation when the live settings already match.
        if _is_subset(cfg.patch()["settings"], current.settings):
            return None
        return client.update_database_instance(cfg)

    return ResourceKind(
        name=f"database instance {config.name()}",
        lookup=lambda: client.get_database_instance(project_id, config.name()),
        build_create_payload=lambda: config,
        build_update_payload=lambda current: config,
        create=client.create_database_instance,
        update=update,
        refresh_operation=lambda op: client.get_operation(project_id, op.name),
        readiness_condition="Ready",
    )


def database_kind(
    client: CloudProvisioningClient, database: Database, project_id: str
) -> ResourceKind[ResourceStatus]:
    config = DatabaseConfig(database, project_id)

    def lookup() -> ResourceStatus:
        for item in client.list_databases(project_id, config.instance_name()):
            if item.get("name") == config.name():
                return ResourceStatus(item)
        raise NotFoundError(404, f"database {config.name()} not found")

    return ResourceKind(
        name=f"database {config.name()}",
        lookup=lookup,
        build_create_payload=lambda: config,
        build_update_payload=lambda current: config,
        create=client.create_database,
        # Charset and name are the whole spec; an existing database already matches it.
        update=lambda cfg, current: current,
        refresh_operation=lambda op: client.get_operation(project_id, op.name),
        readiness_condition=None,
    )


def domain_mapping_kind(
    client: CloudProvisioningClient, mapping: DomainMapping, environment: Environment
) -> ResourceKind[DomainMappingStatus]:
    config = DomainMappingConfig(mapping, environment)

    def update(cfg: DomainMappingConfig, current: DomainMappingStatus) -> Optional[DomainMappingStatus]:
        if current.route_name == cfg.route_name():
            return None
        return client.create_or_update_domain_mapping(cfg, replace=True)

    return ResourceKind(
        name=f"domain mapping {config.domain()}",
        lookup=lambda: client.get_domain_mapping(config.domain(), config.region()),
        build_create_payload=lambda: config,
        build_update_payload=lambda current: config,
        create=lambda cfg: client.create_or_update_domain_mapping(cfg),
        update=update,
        readiness_condition="DomainRoutable",
    )
