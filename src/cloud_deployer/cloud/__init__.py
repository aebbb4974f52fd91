"""Cloud provider access: payload builders, REST client, polling and reconciliation."""

from .client import CloudProvisioningClient
from .credentials import AccessToken, CredentialCache, CredentialRegistry, ServiceAccountTokenProvider
from .poller import OperationPoller
from .reconciler import (
    ReconcileResult,
    Reconciler,
    ResourceKind,
    database_instance_kind,
    database_kind,
    domain_mapping_kind,
    service_kind,
)
from .resources import (
    BuildOperation,
    Condition,
    DatabaseInstanceStatus,
    DatabaseOperation,
    DomainMappingStatus,
    IamPolicy,
    Operation,
    ResourceStatus,
    ServiceStatus,
)

__all__ = [
    "CloudProvisioningClient",
    "AccessToken",
    "CredentialCache",
    "CredentialRegistry",
    "ServiceAccountTokenProvider",
    "OperationPoller",
    "ReconcileResult",
    "Reconciler",
    "ResourceKind",
    "database_instance_kind",
    "database_kind",
    "domain_mapping_kind",
    "service_kind",
    "BuildOperation",
    "Condition",
    "DatabaseInstanceStatus",
    "DatabaseOperation",
    "DomainMappingStatus",
    "IamPolicy",
    "Operation",
    "ResourceStatus",
    "ServiceStatus",
]
