import tempfile
import unittest
from pathlib import Path

from cloud_deployer.cloud.poller import OperationPoller
from cloud_deployer.errors import StepTransitionError
from cloud_deployer.orchestrator import (
    Deployment,
    DeploymentOrchestrator,
    DeploymentStatus,
    DeploymentStore,
    StatusPropagator,
    StepKind,
    StepStatus,
    build_steps,
    service_update_steps,
)

from fakes import FakeClock, FakeCloudClient, RecordingSource, make_environment


def new_deployment(environment, template=None, **fields) -> Deployment:
    fields.setdefault("commit_hash", "1")
    fields.setdefault("image", environment.image)
    deployment = Deployment(
        environment_id=environment.id,
        environment_name=environment.name,
        repository=environment.repository,
        **fields,
    )
    for kind, label in template or build_steps(environment):
        deployment.add_step(kind, label)
    return deployment


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.client = FakeCloudClient()
        self.source = RecordingSource()
        self.store = DeploymentStore()
        self.environment = make_environment()
        self.orchestrator = self._orchestrator(self.source)

    def _orchestrator(self, source) -> DeploymentOrchestrator:
        poller = OperationPoller(timeout=5, interval=1, clock=self.clock, sleep=self.clock.sleep)
        return DeploymentOrchestrator(
            poller=poller,
            propagator=StatusPropagator(source),
            store=self.store,
            default_apis=["run.googleapis.com"],
        )

    def run_deployment(self, deployment: Deployment) -> bool:
        return self.orchestrator.run(deployment, self.environment, self.client)


class FirstDeployTests(OrchestratorTestCase):
    def test_first_deploy_creates_service_and_activates(self) -> None:
        deployment = new_deployment(self.environment)
        self.assertTrue(self.run_deployment(deployment))

        self.assertEqual(deployment.status, DeploymentStatus.SUCCEEDED)
        self.assertTrue(all(step.status == StepStatus.SUCCEEDED for step in deployment.steps))
        self.assertIn(("create_service", "web"), self.client.calls)
        self.assertEqual(self.environment.active_deployment_id, deployment.id)
        self.assertEqual(self.environment.url, "https://web-xyz.a.run.app")
        self.assertEqual(deployment.url, "https://web-xyz.a.run.app")
        self.assertEqual(self.source.states(), ["pending", "success"])
        self.assertEqual(deployment.source_deployment_id, "gh-1")
        self.assertIsNotNone(deployment.finished_at)

    def test_public_service_gets_invoker_binding(self) -> None:
        self.run_deployment(new_deployment(self.environment))
        self.assertEqual(
            self.client.policies["web"]["bindings"],
            [{"role": "roles/run.invoker", "members": ["allUsers"]}],
        )

    def test_private_service_is_left_alone(self) -> None:
        self.environment.public = False
        self.run_deployment(new_deployment(self.environment))
        self.assertNotIn(("set_iam_policy", "web"), self.client.calls)

    def test_full_environment_provisions_every_resource(self) -> None:
        self.environment = make_environment(full=True, repository="acme/web")
        deployment = new_deployment(self.environment, commit_hash="abc123", image=None)
        self.assertTrue(self.run_deployment(deployment))

        self.assertEqual(deployment.image, "gcr.io/demo-project/web:abc123")
        self.assertIn(("create_build", "gcr.io/demo-project/web:abc123"), self.client.calls)
        self.assertEqual(self.client.secrets["APP_KEY"], ["s3cret"])
        self.assertEqual(self.client.instances["main-db"]["state"], "RUNNABLE")
        self.assertEqual(self.client.databases["main-db"][0]["name"], "app")
        self.assertIn(("create_app_engine_app", "europe-west"), self.client.calls)
        self.assertEqual(len(self.client.queues), 1)
        job = self.client.jobs["projects/demo-project/locations/europe-west1/jobs/web-nightly"]
        self.assertEqual(job["httpTarget"]["uri"], "https://web-xyz.a.run.app/cron")
        self.assertIn("www.example.com", self.client.domain_mappings)
        self.assertEqual(self.environment.database.last_status, "created")
        map_step = next(s for s in deployment.steps if s.kind == StepKind.MAP_DOMAINS)
        self.assertIn("ghs.googlehosted.com.", map_step.output)

    def test_existing_scheduler_job_is_updated(self) -> None:
        self.environment = make_environment(full=True)
        self.run_deployment(new_deployment(self.environment))
        self.run_deployment(new_deployment(self.environment))
        self.assertIn(
            ("update_scheduler_job", "projects/demo-project/locations/europe-west1/jobs/web-nightly"),
            self.client.calls,
        )

    def test_snapshot_is_written_per_deployment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.store = DeploymentStore(tmp)
            self.orchestrator = self._orchestrator(self.source)
            deployment = new_deployment(self.environment)
            self.run_deployment(deployment)
            snapshot = Path(tmp) / f"deploy_production_{deployment.id}.json"
            self.assertTrue(snapshot.exists())

            reloaded = DeploymentStore(tmp)
            self.assertEqual(reloaded.load_snapshots(), 1)
            self.assertEqual(reloaded.get(deployment.id).status, DeploymentStatus.SUCCEEDED)


class RedeployTests(OrchestratorTestCase):
    def test_second_deploy_replaces_service_and_swaps_active(self) -> None:
        first = new_deployment(self.environment)
        self.run_deployment(first)
        before = first.to_dict()

        self.environment.image = "gcr.io/demo-project/web:2"
        second = new_deployment(self.environment, commit_hash="2")
        self.assertTrue(self.run_deployment(second))

        self.assertIn(("replace_service", "web"), self.client.calls)
        container = self.client.services["web"]["spec"]["template"]["spec"]["containers"][0]
        self.assertEqual(container["image"], "gcr.io/demo-project/web:2")
        self.assertEqual(self.environment.active_deployment_id, second.id)
        self.assertEqual(first.to_dict(), before)

    def test_terminal_deployment_cannot_run_again(self) -> None:
        deployment = new_deployment(self.environment)
        self.run_deployment(deployment)
        with self.assertRaises(StepTransitionError):
            self.run_deployment(deployment)


class FailureTests(OrchestratorTestCase):
    def test_ready_false_fails_step_and_skips_the_rest(self) -> None:
        self.client.ready_status = "False"
        self.client.ready_message = "quota exceeded"
        deployment = new_deployment(self.environment)

        self.assertFalse(self.run_deployment(deployment))

        statuses = {step.kind: step.status for step in deployment.steps}
        self.assertEqual(statuses[StepKind.ENABLE_APIS], StepStatus.SUCCEEDED)
        self.assertEqual(statuses[StepKind.DEPLOY_SERVICE], StepStatus.FAILED)
        self.assertEqual(statuses[StepKind.FINALIZE], StepStatus.SKIPPED)
        failed = deployment.failed_step
        self.assertEqual(failed.output, "quota exceeded")
        self.assertEqual(deployment.status, DeploymentStatus.FAILED)
        self.assertIsNone(self.environment.active_deployment_id)
        self.assertEqual(self.source.states(), ["pending", "failure"])

    def test_failed_redeploy_keeps_previous_active_deployment(self) -> None:
        first = new_deployment(self.environment)
        self.run_deployment(first)
        self.client.ready_status = "False"
        second = new_deployment(self.environment, commit_hash="2")
        self.assertFalse(self.run_deployment(second))
        self.assertEqual(self.environment.active_deployment_id, first.id)

    def test_stuck_operation_times_out_with_reference(self) -> None:
        self.client.stuck_operations = True
        deployment = new_deployment(self.environment)

        self.assertFalse(self.run_deployment(deployment))

        failed = deployment.failed_step
        self.assertEqual(failed.kind, StepKind.ENABLE_APIS)
        self.assertIn("operations/acf.enable-apis", failed.output)
        self.assertIn("Timed out", failed.output)
        self.assertTrue(all(s.status == StepStatus.SKIPPED for s in deployment.steps[1:]))

    def test_validation_error_fails_before_any_service_request(self) -> None:
        self.environment.image = None
        deployment = new_deployment(self.environment, image=None)
        self.assertFalse(self.run_deployment(deployment))
        self.assertIn("missing: image", deployment.failed_step.output)
        self.assertFalse(any(call[0] == "create_service" for call in self.client.calls))

    def test_status_reporting_failures_are_swallowed(self) -> None:
        self.orchestrator = self._orchestrator(RecordingSource(fail_reports=True))
        deployment = new_deployment(self.environment)
        with self.assertLogs("cloud_deployer.orchestrator.status", level="WARNING"):
            self.assertTrue(self.run_deployment(deployment))
        self.assertEqual(deployment.status, DeploymentStatus.SUCCEEDED)
        self.assertIsNone(deployment.source_deployment_id)
        self.assertEqual(self.environment.active_deployment_id, deployment.id)


class ServiceUpdateTests(OrchestratorTestCase):
    def test_env_var_update_runs_only_the_service_step(self) -> None:
        self.run_deployment(new_deployment(self.environment))
        self.environment.env_vars["FEATURE_FLAG"] = "on"
        update = new_deployment(self.environment, template=service_update_steps())

        self.assertTrue(self.run_deployment(update))

        self.assertEqual([s.kind for s in update.steps], [StepKind.DEPLOY_SERVICE])
        env = self.client.services["web"]["spec"]["template"]["spec"]["containers"][0]["env"]
        self.assertIn({"name": "FEATURE_FLAG", "value": "on"}, env)
        self.assertEqual(self.environment.active_deployment_id, update.id)


class StoreTests(unittest.TestCase):
    def test_missing_state_dir_is_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            state_dir = Path(tmp) / ".cloud-deployer" / "deployments"
            store = DeploymentStore(state_dir)
            self.assertTrue(state_dir.is_dir())
            deployment = new_deployment(make_environment())
            store.save(deployment)
            self.assertEqual(store.snapshot_path(deployment).parent, state_dir)
            self.assertTrue(store.snapshot_path(deployment).exists())


class ModelTests(unittest.TestCase):
    def test_step_transitions_happen_once(self) -> None:
        environment = make_environment()
        deployment = new_deployment(environment)
        step = deployment.steps[0]
        with self.assertRaises(StepTransitionError):
            step.succeed("too early")
        step.start()
        step.succeed("ok")
        with self.assertRaises(StepTransitionError):
            step.fail("again")
        self.assertEqual(step.output, "ok")

    def test_deployment_cannot_succeed_with_unfinished_steps(self) -> None:
        deployment = new_deployment(make_environment())
        deployment.mark_running()
        with self.assertRaises(StepTransitionError):
            deployment.mark_succeeded()

    def test_templates(self) -> None:
        minimal = [kind for kind, _ in build_steps(make_environment())]
        self.assertEqual(minimal, [StepKind.ENABLE_APIS, StepKind.DEPLOY_SERVICE, StepKind.FINALIZE])
        full = [kind for kind, _ in build_steps(make_environment(full=True, repository="acme/web"))]
        self.assertEqual(full, list(StepKind))

    def test_round_trip_through_dict(self) -> None:
        deployment = new_deployment(make_environment(), commit_message="Initial release")
        restored = Deployment.from_dict(deployment.to_dict())
        self.assertEqual(restored.to_dict(), deployment.to_dict())


if __name__ == "__main__":
    unittest.main()
