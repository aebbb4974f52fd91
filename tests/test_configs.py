import unittest

from cloud_deployer.cloud.configs import (
    CLOUD_SQL_ANNOTATION,
    MAX_SCALE_ANNOTATION,
    BuildConfig,
    DatabaseConfig,
    DatabaseInstanceConfig,
    DomainMappingConfig,
    QueueConfig,
    SchedulerJobConfig,
    ServiceConfig,
    grant_public_invoker,
)
from cloud_deployer.cloud.resources import LOCATION_LABEL, IamPolicy, ServiceStatus
from cloud_deployer.environment import Database, DatabaseInstance, DomainMapping, QueueSpec, SchedulerJobSpec
from cloud_deployer.errors import ValidationError

from fakes import make_environment


class ServiceConfigTests(unittest.TestCase):
    def test_missing_image_is_rejected_before_any_request(self) -> None:
        environment = make_environment(image=None)
        with self.assertRaises(ValidationError) as ctx:
            ServiceConfig(environment)
        self.assertEqual(ctx.exception.missing, ["image"])

    def test_missing_project_and_service_name_are_reported(self) -> None:
        environment = make_environment(web_service_name="")
        environment.project.project_id = ""
        with self.assertRaises(ValidationError) as ctx:
            ServiceConfig(environment)
        self.assertEqual(ctx.exception.missing, ["project_id", "service_name"])

    def test_manifest_is_deterministic(self) -> None:
        environment = make_environment(full=True)
        self.assertEqual(ServiceConfig(environment).config(), ServiceConfig(environment).config())

    def test_manifest_contents(self) -> None:
        environment = make_environment(full=True, max_instances=3)
        manifest = ServiceConfig(environment, image="gcr.io/demo-project/web:2").config()

        self.assertEqual(manifest["metadata"]["name"], "web")
        self.assertEqual(manifest["metadata"]["labels"][LOCATION_LABEL], "europe-west1")
        self.assertNotIn("resourceVersion", manifest["metadata"])

        template = manifest["spec"]["template"]
        container = template["spec"]["containers"][0]
        self.assertEqual(container["image"], "gcr.io/demo-project/web:2")
        env = {item["name"]: item for item in container["env"]}
        self.assertEqual(env["APP_ENV"]["value"], "production")
        self.assertEqual(env["DB_SOCKET"]["value"], "/cloudsql/demo-project:europe-west1:main-db")
        self.assertEqual(env["DB_DATABASE"]["value"], "app")
        self.assertEqual(
            env["APP_KEY"]["valueFrom"], {"secretKeyRef": {"name": "APP_KEY", "key": "latest"}}
        )
        annotations = template["metadata"]["annotations"]
        self.assertEqual(annotations[MAX_SCALE_ANNOTATION], "3")
        self.assertEqual(annotations[CLOUD_SQL_ANNOTATION], "demo-project:europe-west1:main-db")
        self.assertEqual(manifest["spec"]["traffic"], [{"percent": 100, "latestRevision": True}])

    def test_replace_carries_forward_resource_version(self) -> None:
        current = ServiceStatus({"metadata": {"name": "web", "resourceVersion": "AAY"}})
        manifest = ServiceConfig(make_environment()).config(current)
        self.assertEqual(manifest["metadata"]["resourceVersion"], "AAY")

    def test_round_trip_through_status_wrapper(self) -> None:
        environment = make_environment()
        status = ServiceStatus(ServiceConfig(environment).config())
        self.assertEqual(status.name, "web")
        self.assertEqual(status.region, "europe-west1")
        self.assertEqual(status.image, "gcr.io/demo-project/web:1")
        self.assertEqual(status.env_vars, environment.env_vars)


class DatabaseConfigTests(unittest.TestCase):
    def test_database_payload(self) -> None:
        config = DatabaseConfig(Database(name="app", instance=DatabaseInstance(name="main")), "acme")
        self.assertEqual(config.config(), {"kind": "sql#database", "charset": "utf8mb4", "name": "app"})

    def test_database_requires_name(self) -> None:
        with self.assertRaises(ValidationError):
            DatabaseConfig(Database(name="", instance=DatabaseInstance(name="main")), "acme")

    def test_instance_payload_uses_option_defaults(self) -> None:
        instance = DatabaseInstance(name="main", options={"tier": "db-g1-small"})
        config = DatabaseInstanceConfig(instance, "acme", "us-east1")
        payload = config.config()
        self.assertEqual(payload["region"], "us-east1")
        self.assertEqual(payload["databaseVersion"], "MYSQL_8_0")
        self.assertEqual(payload["settings"]["tier"], "db-g1-small")
        self.assertEqual(payload["settings"]["dataDiskSizeGb"], "10")
        self.assertTrue(payload["settings"]["backupConfiguration"]["enabled"])
        self.assertEqual(config.patch(), {"settings": payload["settings"]})

    def test_instance_region_overrides_environment(self) -> None:
        instance = DatabaseInstance(name="main", region="asia-east1")
        self.assertEqual(DatabaseInstanceConfig(instance, "acme", "us-east1").region(), "asia-east1")


class RoutingConfigTests(unittest.TestCase):
    def test_domain_mapping_routes_to_web_service(self) -> None:
        config = DomainMappingConfig(DomainMapping(domain="www.example.com"), make_environment())
        payload = config.config()
        self.assertEqual(payload["metadata"]["name"], "www.example.com")
        self.assertEqual(payload["spec"]["routeName"], "web")

    def test_domain_mapping_requires_domain(self) -> None:
        with self.assertRaises(ValidationError):
            DomainMappingConfig(DomainMapping(domain=""), make_environment())

    def test_queue_defaults_to_environment_region(self) -> None:
        config = QueueConfig(QueueSpec(name="mail"), make_environment())
        self.assertEqual(
            config.name(), "projects/demo-project/locations/europe-west1/queues/mail"
        )
        self.assertEqual(config.config()["retryConfig"], {"maxAttempts": 3})

    def test_scheduler_job_targets_service_url(self) -> None:
        job = SchedulerJobSpec(name="nightly", schedule="0 3 * * *", path="cron")
        config = SchedulerJobConfig(job, make_environment(), "https://web-xyz.a.run.app/")
        payload = config.config()
        self.assertEqual(config.job_id(), "web-nightly")
        self.assertEqual(payload["httpTarget"]["uri"], "https://web-xyz.a.run.app/cron")
        self.assertEqual(payload["timeZone"], "Etc/UTC")

    def test_scheduler_job_requires_schedule_and_url(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            SchedulerJobConfig(SchedulerJobSpec(name="nightly", schedule=""), make_environment(), None)
        self.assertEqual(ctx.exception.missing, ["schedule", "service_url"])


class BuildAndIamTests(unittest.TestCase):
    def test_build_fetches_tarball_and_pushes_image(self) -> None:
        config = BuildConfig("acme", "gcr.io/acme/web:abc", "https://example.com/src.tgz")
        instructions = config.instructions()
        self.assertIn("https://example.com/src.tgz", instructions["steps"][0]["args"])
        self.assertEqual(instructions["steps"][-1]["args"], ["build", "-t", "gcr.io/acme/web:abc", "app"])
        self.assertEqual(instructions["images"], ["gcr.io/acme/web:abc"])

    def test_build_requires_tarball(self) -> None:
        with self.assertRaises(ValidationError):
            BuildConfig("acme", "gcr.io/acme/web:abc", None)

    def test_public_invoker_is_added_once(self) -> None:
        policy = IamPolicy({"bindings": [{"role": "roles/run.invoker", "members": ["user:a@example.com"]}]})
        self.assertTrue(grant_public_invoker(policy))
        self.assertFalse(grant_public_invoker(policy))
        self.assertEqual(
            policy.to_dict()["bindings"][0]["members"], ["user:a@example.com", "allUsers"]
        )


if __name__ == "__main__":
    unittest.main()
