import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from cloud_deployer.cli import build_parser, parse_assignments, run_cli
from cloud_deployer.main import app_main
from cloud_deployer.orchestrator.models import Deployment, DeploymentStatus, StepKind


class CLITests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.state_dir = self.root / "deployments"
        self.config_path = self.root / "config.json"
        self.config_path.write_text(
            json.dumps({"deployment": {"state_dir": str(self.state_dir)}}), encoding="utf-8"
        )
        self.environment_path = self.root / "env.json"
        self.environment_path.write_text(
            json.dumps(
                {
                    "name": "production",
                    "project": {"project_id": "demo-project"},
                    "image": "gcr.io/demo-project/web:1",
                }
            ),
            encoding="utf-8",
        )

    def _snapshot(self, status: DeploymentStatus = DeploymentStatus.SUCCEEDED) -> Deployment:
        deployment = Deployment(environment_id="env-1", environment_name="production", commit_hash="abc")
        deployment.add_step(StepKind.DEPLOY_SERVICE, "Deploy web service")
        deployment.status = status
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_dir / f"deploy_production_{deployment.id}.json"
        path.write_text(json.dumps(deployment.to_dict()), encoding="utf-8")
        return deployment

    def test_parse_assignments(self) -> None:
        self.assertEqual(parse_assignments(["A=1", "B=x=y", "C="]), {"A": "1", "B": "x=y", "C": ""})
        with self.assertRaises(ValueError):
            parse_assignments(["NOVALUE"])

    def test_parser_requires_environment_for_deploy(self) -> None:
        with self.assertRaises(SystemExit):
            build_parser().parse_args(["deploy"])

    def test_logs_without_snapshots(self) -> None:
        self.assertEqual(run_cli(["--config", str(self.config_path), "logs"]), 0)

    def test_logs_list_and_latest(self) -> None:
        self._snapshot()
        self.assertEqual(run_cli(["--config", str(self.config_path), "logs", "--list"]), 0)
        self.assertEqual(run_cli(["--config", str(self.config_path), "logs", "--latest"]), 0)

    def test_logs_missing_file(self) -> None:
        self._snapshot()
        code = run_cli(["--config", str(self.config_path), "logs", "--file", "nope.json"])
        self.assertEqual(code, 1)

    def test_invalid_assignment_exits_with_usage_code(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            app_main(
                [
                    "--config", str(self.config_path),
                    "set-env", "--environment", str(self.environment_path),
                    "NOVALUE",
                ]
            )
        self.assertEqual(ctx.exception.code, 2)

    def test_logs_exit_code_passes_through(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            app_main(["--config", str(self.config_path), "logs"])
        self.assertEqual(ctx.exception.code, 0)

    def test_verbose_flag_switches_to_debug(self) -> None:
        root = logging.getLogger()
        self.addCleanup(root.setLevel, root.level)
        run_cli(["--config", str(self.config_path), "-v", "logs"])
        self.assertEqual(root.level, logging.DEBUG)
        run_cli(["--config", str(self.config_path), "logs"])
        self.assertEqual(root.level, logging.INFO)

    def test_deploy_exit_code_follows_outcome(self) -> None:
        finished = Deployment(environment_id="env-1", commit_hash="manual")
        finished.status = DeploymentStatus.FAILED
        with patch("cloud_deployer.cli.DeploymentDispatcher") as dispatcher_cls:
            dispatcher = dispatcher_cls.return_value
            dispatcher.start_deployment.return_value = finished
            dispatcher.wait.return_value = finished
            code = run_cli(
                [
                    "--config", str(self.config_path),
                    "deploy", "--environment", str(self.environment_path),
                    "--initiator", "alice",
                ]
            )
        self.assertEqual(code, 1)
        kwargs = dispatcher.start_deployment.call_args.kwargs
        self.assertEqual(kwargs["initiator"], "alice")
        self.assertIsNone(kwargs["commit_hash"])
        dispatcher.shutdown.assert_called_once()

    def test_configured_region_fills_environment_without_one(self) -> None:
        self.config_path.write_text(
            json.dumps(
                {
                    "cloud": {"region": "europe-west1"},
                    "deployment": {"state_dir": str(self.state_dir)},
                }
            ),
            encoding="utf-8",
        )
        finished = Deployment(environment_id="env-1", commit_hash="manual")
        finished.status = DeploymentStatus.SUCCEEDED
        with patch("cloud_deployer.cli.DeploymentDispatcher") as dispatcher_cls:
            dispatcher = dispatcher_cls.return_value
            dispatcher.start_deployment.return_value = finished
            dispatcher.wait.return_value = finished
            run_cli(["--config", str(self.config_path), "deploy", "--environment", str(self.environment_path)])
        environment_obj = dispatcher_cls.call_args.args[1][0]
        self.assertEqual(environment_obj.project.region, "europe-west1")
        self.assertEqual(environment_obj.resolved_region, "europe-west1")

    def test_set_env_restores_active_deployment(self) -> None:
        previous = self._snapshot()
        finished = Deployment(environment_id="env-1", commit_hash="abc")
        finished.status = DeploymentStatus.SUCCEEDED
        with patch("cloud_deployer.cli.DeploymentDispatcher") as dispatcher_cls:
            dispatcher = dispatcher_cls.return_value
            dispatcher.store.list.return_value = [Deployment.from_dict(previous.to_dict())]
            dispatcher.update_environment_variables.return_value = finished
            dispatcher.wait.return_value = finished
            code = run_cli(
                [
                    "--config", str(self.config_path),
                    "set-env", "--environment", str(self.environment_path),
                    "FEATURE_FLAG=on",
                ]
            )
        self.assertEqual(code, 0)
        _, env_vars = dispatcher.update_environment_variables.call_args.args
        self.assertEqual(env_vars, {"FEATURE_FLAG": "on"})
        environment_obj = dispatcher_cls.call_args.args[1][0]
        self.assertEqual(environment_obj.active_deployment_id, previous.id)


if __name__ == "__main__":
    unittest.main()
