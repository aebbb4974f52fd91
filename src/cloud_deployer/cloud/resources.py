"""Read-only wrappers around the provider's raw JSON documents.

Two families live here:

- ``ResourceStatus`` and subclasses wrap a provisioned resource and expose its
  ``status.conditions[]`` as a mapping from condition type to ``Condition``.
  Looking up a condition that is not present raises ``InvalidConditionError``;
  only the poller uses the lenient ``find_condition`` while a resource is still
  settling.
- ``Operation`` and subclasses wrap the long-running operation returned by a
  mutating call.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import InvalidConditionError

LOCATION_LABEL = "cloud.googleapis.com/location"


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    message: Optional[str] = None

    @property
    def is_true(self) -> bool:
        return self.status == "True"

    @property
    def is_false(self) -> bool:
        return self.status == "False"

    @property
    def is_settled(self) -> bool:
        return self.status in ("True", "False")


class ResourceStatus:
    """Status wrapper for a resource exposing knative-style conditions."""

    ready_condition = "Ready"

    def __init__(self, resource: Optional[Dict[str, Any]]) -> None:
        self._resource = resource or {}

    @property
    def raw(self) -> Dict[str, Any]:
        return self._resource

    @property
    def status(self) -> Dict[str, Any]:
        return self._resource.get("status") or {}

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._resource.get("metadata") or {}

    @property
    def has_status(self) -> bool:
        return bool(self.status)

    @property
    def name(self) -> Optional[str]:
        return self.metadata.get("name")

    @property
    def region(self) -> Optional[str]:
        return (self.metadata.get("labels") or {}).get(LOCATION_LABEL)

    @property
    def conditions(self) -> Dict[str, Condition]:
        result: Dict[str, Condition] = {}
        for entry in self.status.get("conditions") or []:
            condition = Condition(
                type=entry.get("type", ""),
                status=entry.get("status", "Unknown"),
                message=entry.get("message"),
            )
            result[condition.type] = condition
        return result

    def find_condition(self, condition_type: str) -> Optional[Condition]:
        return self.conditions.get(condition_type)

    def get_condition(self, condition_type: str) -> Condition:
        condition = self.find_condition(condition_type)
        if condition is None:
            raise InvalidConditionError(condition_type)
        return condition

    def get_status(self, condition_type: str) -> str:
        return self.get_condition(condition_type).status

    def get_message(self, condition_type: str) -> Optional[str]:
        return self.get_condition(condition_type).message

    @property
    def is_ready(self) -> bool:
        return self.get_status(self.ready_condition) == "True"

    @property
    def has_errors(self) -> bool:
        return self.get_status(self.ready_condition) == "False"

    @property
    def error(self) -> Optional[str]:
        return self.get_message(self.ready_condition)

    @property
    def is_current(self) -> bool:
        """Whether the reported status describes the latest spec generation."""
        generation = self.metadata.get("generation")
        observed = self.status.get("observedGeneration")
        if generation is None or observed is None:
            return True
        return int(observed) >= int(generation)

    @property
    def url(self) -> Optional[str]:
        return self.status.get("url")

    def to_json(self) -> str:
        return json.dumps(self._resource)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class ServiceStatus(ResourceStatus):
    """A Cloud Run (knative) service."""

    @property
    def containers(self) -> List[Dict[str, Any]]:
        spec = (self._resource.get("spec") or {}).get("template", {}).get("spec", {})
        return spec.get("containers") or []

    @property
    def image(self) -> Optional[str]:
        containers = self.containers
        return containers[0].get("image") if containers else None

    @property
    def env_vars(self) -> Dict[str, str]:
        containers = self.containers
        if not containers:
            return {}
        # Secret-backed variables carry valueFrom instead of a literal value.
        return {
            var["name"]: var["value"]
            for var in containers[0].get("env") or []
            if "value" in var
        }

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def latest_ready_revision(self) -> Optional[str]:
        return self.status.get("latestReadyRevisionName")


class DomainMappingStatus(ResourceStatus):
    """A Cloud Run domain mapping; DNS records appear once the route is known."""

    ready_condition = "DomainRoutable"

    @property
    def route_name(self) -> Optional[str]:
        return (self._resource.get("spec") or {}).get("routeName")

    @property
    def resource_records(self) -> List[Dict[str, Any]]:
        return self.status.get("resourceRecords") or []


class DatabaseInstanceStatus(ResourceStatus):
    """A Cloud SQL instance.

    Cloud SQL reports a flat ``state`` instead of conditions, so a ``Ready``
    condition is synthesized from it.
    """

    READY_STATES = ("RUNNABLE",)
    FAILED_STATES = ("FAILED", "SUSPENDED")

    @property
    def name(self) -> Optional[str]:
        return self._resource.get("name")

    @property
    def region(self) -> Optional[str]:
        return self._resource.get("region")

    @property
    def state(self) -> Optional[str]:
        return self._resource.get("state")

    @property
    def has_status(self) -> bool:
        return self.state is not None

    @property
    def connection_name(self) -> Optional[str]:
        return self._resource.get("connectionName")

    @property
    def settings(self) -> Dict[str, Any]:
        return self._resource.get("settings") or {}

    @property
    def conditions(self) -> Dict[str, Condition]:
        state = self.state
        if state is None:
            return {}
        if state in self.READY_STATES:
            status = "True"
        elif state in self.FAILED_STATES:
            status = "False"
        else:
            status = "Unknown"
        return {"Ready": Condition(type="Ready", status=status, message=f"Instance state is {state}")}

    @property
    def is_current(self) -> bool:
        return True

    @property
    def url(self) -> Optional[str]:
        return None


class Operation:
    """A google.longrunning style operation: ``name``, ``done``, ``error``, ``response``."""

    def __init__(self, operation: Optional[Dict[str, Any]]) -> None:
        self._operation = operation or {}

    @property
    def raw(self) -> Dict[str, Any]:
        return self._operation

    @property
    def name(self) -> str:
        return self._operation.get("name", "")

    @property
    def is_done(self) -> bool:
        return bool(self._operation.get("done"))

    @property
    def has_error(self) -> bool:
        return bool(self._operation.get("error"))

    @property
    def error_message(self) -> Optional[str]:
        error = self._operation.get("error")
        if not error:
            return None
        if isinstance(error, dict):
            return error.get("message") or json.dumps(error)
        return str(error)

    @property
    def response(self) -> Dict[str, Any]:
        return self._operation.get("response") or {}

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._operation.get("metadata") or {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} done={self.is_done}>"


class DatabaseOperation(Operation):
    """Cloud SQL operations use ``status: DONE`` and ``error.errors[]``."""

    @property
    def is_done(self) -> bool:
        return self._operation.get("status") == "DONE"

    @property
    def has_error(self) -> bool:
        return bool((self._operation.get("error") or {}).get("errors"))

    @property
    def error_message(self) -> Optional[str]:
        errors = (self._operation.get("error") or {}).get("errors") or []
        if not errors:
            return None
        return "; ".join(e.get("message") or e.get("code", "unknown") for e in errors)

    @property
    def target_id(self) -> Optional[str]:
        return self._operation.get("targetId")


class BuildOperation(Operation):
    """Cloud Build operation; the build itself lives in ``metadata.build``."""

    @property
    def build(self) -> Dict[str, Any]:
        return self.metadata.get("build") or {}

    @property
    def build_id(self) -> Optional[str]:
        return self.build.get("id")

    @property
    def log_url(self) -> Optional[str]:
        return self.build.get("logUrl")

    @property
    def error_message(self) -> Optional[str]:
        message = super().error_message
        if message:
            return message
        status = self.build.get("status")
        if status and status not in ("SUCCESS", "QUEUED", "WORKING", "PENDING"):
            return self.build.get("statusDetail") or f"Build finished with status {status}"
        return None

    @property
    def has_error(self) -> bool:
        return self.error_message is not None


class IamPolicy:
    """An IAM policy document: ``{bindings: [{role, members}], etag}``."""

    def __init__(self, policy: Optional[Dict[str, Any]]) -> None:
        self._policy = copy.deepcopy(policy or {})

    @property
    def bindings(self) -> List[Dict[str, Any]]:
        return self._policy.setdefault("bindings", [])

    def has_binding(self, role: str, member: str) -> bool:
        return any(
            binding.get("role") == role and member in (binding.get("members") or [])
            for binding in self.bindings
        )

    def add_binding(self, role: str, member: str) -> bool:
        """Add ``member`` to ``role``. Returns False when nothing changed."""
        if self.has_binding(role, member):
            return False
        for binding in self.bindings:
            if binding.get("role") == role:
                binding.setdefault("members", []).append(member)
                return True
        self.bindings.append({"role": role, "members": [member]})
        return True

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._policy)
