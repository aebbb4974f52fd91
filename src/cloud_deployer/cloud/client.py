"""Thin REST client over the cloud provider's provisioning APIs."""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from ..errors import ApiError, AuthError, NotFoundError
from .configs import (
    BuildConfig,
    DatabaseConfig,
    DatabaseInstanceConfig,
    DomainMappingConfig,
    QueueConfig,
    SchedulerJobConfig,
    ServiceConfig,
)
from .credentials import CredentialCache
from .resources import (
    BuildOperation,
    DatabaseInstanceStatus,
    DatabaseOperation,
    DomainMappingStatus,
    IamPolicy,
    Operation,
    ServiceStatus,
)

logger = logging.getLogger(__name__)


class CloudProvisioningClient:
    """REST client bound to a single cloud project.

    The client never decides between create and update; callers pick the
    endpoint after their own lookup. Every non-2xx response is raised as an
    ``ApiError`` (``NotFoundError`` for 404) carrying the status and raw body.
    """

    SERVICE_USAGE_URL = "https://serviceusage.googleapis.com/v1"
    SQL_ADMIN_URL = "https://sqladmin.googleapis.com/sql/v1beta4"
    CLOUD_BUILD_URL = "https://cloudbuild.googleapis.com/v1"
    CLOUD_TASKS_URL = "https://cloudtasks.googleapis.com/v2beta3"
    CLOUD_SCHEDULER_URL = "https://cloudscheduler.googleapis.com/v1"
    SECRET_MANAGER_URL = "https://secretmanager.googleapis.com/v1"
    APP_ENGINE_URL = "https://appengine.googleapis.com/v1"
    LOGGING_URL = "https://logging.googleapis.com/v2"

    def __init__(
        self,
        project_id: str,
        credentials: CredentialCache,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = 60,
        max_rate_limit_retries: int = 3,
        rate_limit_backoff: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_id = project_id
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.rate_limit_backoff = rate_limit_backoff
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Platform APIs

    def enable_apis(self, api_ids: List[str]) -> Operation:
        response = self.request(
            "POST",
            f"{self.SERVICE_USAGE_URL}/projects/{self.project_id}/services:batchEnable",
            {"serviceIds": list(api_ids)},
        )
        return Operation(response)

    def get_enable_apis_operation(self, operation_name: str) -> Operation:
        return Operation(self.request("GET", f"{self.SERVICE_USAGE_URL}/{operation_name}"))

    def has_app_engine_app(self) -> bool:
        try:
            self.request("GET", f"{self.APP_ENGINE_URL}/apps/{self.project_id}")
        except NotFoundError:
            return False
        return True

    def create_app_engine_app(self, location_id: str) -> Operation:
        """Cloud Tasks queues require an App Engine application in the project."""
        response = self.request(
            "POST",
            f"{self.APP_ENGINE_URL}/apps",
            {"id": self.project_id, "locationId": location_id},
        )
        return Operation(response)

    def get_app_engine_operation(self, operation_name: str) -> Operation:
        return Operation(self.request("GET", f"{self.APP_ENGINE_URL}/{operation_name}"))

    # ------------------------------------------------------------------
    # Cloud Run services

    def _services_url(self, region: str) -> str:
        return (
            f"https://{region}-run.googleapis.com/apis/serving.knative.dev/v1"
            f"/namespaces/{self.project_id}/services"
        )

    def create_or_replace_service(
        self,
        config: ServiceConfig,
        *,
        replace: bool = False,
        current: Optional[ServiceStatus] = None,
    ) -> ServiceStatus:
        payload = config.config(current)
        if replace:
            response = self.request(
                "PUT", f"{self._services_url(config.region())}/{config.name()}", payload
            )
        else:
            response = self.request("POST", self._services_url(config.region()), payload)
        return ServiceStatus(response)

    def get_service(self, name: str, region: str) -> ServiceStatus:
        return ServiceStatus(self.request("GET", f"{self._services_url(region)}/{name}"))

    def _iam_policy_url(self, name: str, region: str) -> str:
        return (
            f"https://{region}-run.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{region}/services/{name}"
        )

    def get_iam_policy(self, name: str, region: str) -> IamPolicy:
        return IamPolicy(self.request("GET", f"{self._iam_policy_url(name, region)}:getIamPolicy"))

    def set_iam_policy(self, name: str, region: str, policy: IamPolicy) -> IamPolicy:
        response = self.request(
            "POST",
            f"{self._iam_policy_url(name, region)}:setIamPolicy",
            {"policy": policy.to_dict()},
        )
        return IamPolicy(response)

    # ------------------------------------------------------------------
    # Domain mappings

    def _domain_mappings_url(self, region: str) -> str:
        return (
            f"https://{region}-run.googleapis.com/apis/domains.cloudrun.com/v1"
            f"/namespaces/{self.project_id}/domainmappings"
        )

    def get_domain_mapping(self, domain: str, region: str) -> DomainMappingStatus:
        return DomainMappingStatus(
            self.request("GET", f"{self._domain_mappings_url(region)}/{domain}")
        )

    def delete_domain_mapping(self, domain: str, region: str) -> Dict[str, Any]:
        return self.request("DELETE", f"{self._domain_mappings_url(region)}/{domain}")

    def create_or_update_domain_mapping(
        self, config: DomainMappingConfig, *, replace: bool = False
    ) -> DomainMappingStatus:
        # Domain mappings have no replace endpoint; an update is delete + create.
        if replace:
            self.delete_domain_mapping(config.domain(), config.region())
        response = self.request("POST", self._domain_mappings_url(config.region()), config.config())
        return DomainMappingStatus(response)

    # ------------------------------------------------------------------
    # Cloud SQL

    def _instances_url(self, project_id: Optional[str] = None) -> str:
        return f"{self.SQL_ADMIN_URL}/projects/{project_id or self.project_id}/instances"

    def create_database_instance(self, config: DatabaseInstanceConfig) -> DatabaseOperation:
        response = self.request("POST", self._instances_url(config.project_id()), config.config())
        return DatabaseOperation(response)

    def update_database_instance(self, config: DatabaseInstanceConfig) -> DatabaseOperation:
        response = self.request(
            "PATCH", f"{self._instances_url(config.project_id())}/{config.name()}", config.patch()
        )
        return DatabaseOperation(response)

    def get_database_instance(self, project_id: str, name: str) -> DatabaseInstanceStatus:
        return DatabaseInstanceStatus(self.request("GET", f"{self._instances_url(project_id)}/{name}"))

    def list_database_instances(self) -> List[DatabaseInstanceStatus]:
        response = self.request("GET", self._instances_url())
        return [DatabaseInstanceStatus(item) for item in response.get("items") or []]

    def create_database(self, config: DatabaseConfig) -> DatabaseOperation:
        response = self.request(
            "POST",
            f"{self._instances_url(config.project_id())}/{config.instance_name()}/databases",
            config.config(),
        )
        return DatabaseOperation(response)

    def list_databases(self, project_id: str, instance_name: str) -> List[Dict[str, Any]]:
        response = self.request(
            "GET", f"{self._instances_url(project_id)}/{instance_name}/databases"
        )
        return response.get("items") or []

    def get_operation(self, project_id: str, operation_name: str) -> DatabaseOperation:
        response = self.request(
            "GET", f"{self.SQL_ADMIN_URL}/projects/{project_id}/operations/{operation_name}"
        )
        return DatabaseOperation(response)

    # ------------------------------------------------------------------
    # Queues and scheduler

    def create_or_update_queue(self, config: QueueConfig) -> Dict[str, Any]:
        # PATCH on Cloud Tasks creates the queue when it does not exist yet.
        return self.request("PATCH", f"{self.CLOUD_TASKS_URL}/{config.name()}", config.config())

    def create_scheduler_job(self, config: SchedulerJobConfig) -> Dict[str, Any]:
        return self.request(
            "POST",
            f"{self.CLOUD_SCHEDULER_URL}/projects/{config.project_id()}"
            f"/locations/{config.location()}/jobs",
            config.config(),
        )

    def update_scheduler_job(self, config: SchedulerJobConfig) -> Dict[str, Any]:
        return self.request("PATCH", f"{self.CLOUD_SCHEDULER_URL}/{config.name()}", config.config())

    # ------------------------------------------------------------------
    # Secrets

    def _secret_url(self, key: str) -> str:
        return f"{self.SECRET_MANAGER_URL}/projects/{self.project_id}/secrets/{key}"

    def set_secret(self, key: str, value: str) -> Dict[str, Any]:
        """Store ``value`` as the newest version of secret ``key``.

        Read-then-write: if another writer creates the secret between the
        lookup and the create call, the create fails with a 409 ApiError.
        """
        try:
            self.request("GET", self._secret_url(key))
        except NotFoundError:
            logger.info("Secret %s does not exist yet, creating it", key)
            self.request(
                "POST",
                f"{self.SECRET_MANAGER_URL}/projects/{self.project_id}/secrets",
                {"replication": {"automatic": {}}},
                params={"secretId": key},
            )

        encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
        return self.request(
            "POST", f"{self._secret_url(key)}:addVersion", {"payload": {"data": encoded}}
        )

    # ------------------------------------------------------------------
    # Builds

    def create_build(self, config: BuildConfig) -> BuildOperation:
        response = self.request(
            "POST",
            f"{self.CLOUD_BUILD_URL}/projects/{config.project_id()}/builds",
            config.instructions(),
        )
        return BuildOperation(response)

    def get_build_operation(self, operation_name: str) -> BuildOperation:
        return BuildOperation(self.request("GET", f"{self.CLOUD_BUILD_URL}/{operation_name}"))

    # ------------------------------------------------------------------
    # Logs

    def fetch_logs(
        self,
        service_name: str,
        region: str,
        log_type: str = "all",
        limit: int = 30,
        since: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Recent Cloud Run log entries for a service, newest first."""
        since = since or datetime.now(timezone.utc) - timedelta(days=1)
        log_filter = (
            f'resource.type = "cloud_run_revision" '
            f'AND resource.labels.service_name = "{service_name}" '
            f'AND resource.labels.location = "{region}" '
            f'AND timestamp >= "{since.isoformat()}"'
        )
        if log_type == "app":
            log_name = f"projects/{self.project_id}/logs/run.googleapis.com%2Fstdout"
            log_filter = f'logName = "{log_name}" AND {log_filter}'

        response = self.request(
            "POST",
            f"{self.LOGGING_URL}/entries:list",
            {
                "resourceNames": [f"projects/{self.project_id}"],
                "filter": log_filter,
                "orderBy": "timestamp desc",
                "pageSize": limit,
            },
        )
        return response.get("entries") or []

    # ------------------------------------------------------------------
    # Transport

    def request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send an authenticated request and return the decoded JSON body.

        A 401 forces exactly one token refresh and retry; a second 401 is an
        ``AuthError``.
        """
        response = self._send(method, url, payload, params)
        if response.status_code == 401:
            logger.info("Access token rejected for %s %s, refreshing once", method, url)
            self.credentials.refresh()
            response = self._send(method, url, payload, params)
            if response.status_code == 401:
                logger.error(response.text)
                raise AuthError(f"Credentials rejected by {url}: {response.text}")

        if response.status_code == 404:
            raise NotFoundError(404, response.text, method=method, url=url)
        if not 200 <= response.status_code < 300:
            logger.error(response.text)
            raise ApiError(response.status_code, response.text, method=method, url=url)

        if not response.content:
            return {}
        return response.json()

    def _send(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> requests.Response:
        headers = {"Authorization": f"Bearer {self.credentials.token()}"}

        # Retry loop for rate limiting
        for attempt in range(self.max_rate_limit_retries + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    json=payload,
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as exc:
                logger.error(f"{method} {url} failed: {exc}")
                raise ApiError(0, str(exc), method=method, url=url) from exc

            if response.status_code == 429 and attempt < self.max_rate_limit_retries:
                wait_time = self.rate_limit_backoff * (attempt + 1)
                logger.warning(f"Rate limited by {url}. Waiting {wait_time}s before retry...")
                self._sleep(wait_time)
                continue
            return response

        return response
