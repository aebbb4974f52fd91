"""Command-line interface for cloud-deployer."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .cloud.client import CloudProvisioningClient
from .cloud.credentials import CredentialRegistry
from .config import AppConfig, load_config
from .environment import Environment, load_environment
from .orchestrator.dispatcher import DeploymentDispatcher
from .orchestrator.models import DeploymentStatus
from .orchestrator.store import list_snapshots, load_snapshot
from .utils.logging import configure_logging

console = Console()

STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "cyan",
    "skipped": "dim",
}


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    state_dir: Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloud-deployer",
        description="Deploy an environment to Cloud Run and its managed services.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug output, including operation polling."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser("deploy", help="Deploy an environment")
    deploy_parser.add_argument(
        "--environment", "-e", required=True, help="Path to the environment JSON file"
    )
    deploy_parser.add_argument(
        "--commit", default=None, help="Commit to deploy (default: head of the branch)"
    )
    deploy_parser.add_argument("--message", default="", help="Commit message to record")
    deploy_parser.add_argument("--initiator", default="cli", help="Who started the deployment")

    env_parser = subparsers.add_parser(
        "set-env", help="Update environment variables of the live web service"
    )
    env_parser.add_argument(
        "--environment", "-e", required=True, help="Path to the environment JSON file"
    )
    env_parser.add_argument("assignments", nargs="+", metavar="KEY=VALUE")
    env_parser.add_argument("--initiator", default="cli", help="Who started the update")

    logs_parser = subparsers.add_parser("logs", help="View deployment snapshots")
    logs_parser.add_argument(
        "--list", "-l", action="store_true", dest="list_logs",
        help="List all recorded deployments"
    )
    logs_parser.add_argument(
        "--latest", action="store_true",
        help="Show the latest deployment"
    )
    logs_parser.add_argument(
        "--file", "-f", type=str,
        help="Show a specific snapshot file"
    )

    service_logs_parser = subparsers.add_parser(
        "service-logs", help="Show recent log entries of the web service"
    )
    service_logs_parser.add_argument(
        "--environment", "-e", required=True, help="Path to the environment JSON file"
    )
    service_logs_parser.add_argument(
        "--type", choices=["app", "all"], default="all", dest="log_type",
        help="Only application stdout, or every log of the revision"
    )
    service_logs_parser.add_argument("--limit", type=int, default=30)

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    return CLIContext(config=config, state_dir=Path(config.deployment.state_dir))


def _load_environment(path: str, config: AppConfig) -> Environment:
    """Read an environment file, filling project settings from the app config."""
    environment = load_environment(path)
    project = environment.project
    if not project.project_id and config.cloud.project_id:
        project.project_id = config.cloud.project_id
    if not project.region:
        project.region = config.cloud.region
    if not project.service_account_file and not project.service_account_info:
        project.service_account_file = config.cloud.service_account_file
    return environment


def parse_assignments(assignments: List[str]) -> Dict[str, str]:
    env_vars: Dict[str, str] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got: {item}")
        env_vars[key] = value
    return env_vars


def _restore_active(dispatcher: DeploymentDispatcher, environment: Environment) -> None:
    """Point the environment at its newest succeeded deployment on record."""
    dispatcher.store.load_snapshots()
    succeeded = [
        d for d in dispatcher.store.list()
        if d.environment_name == environment.name and d.status == DeploymentStatus.SUCCEEDED
    ]
    if succeeded:
        environment.active_deployment_id = succeeded[-1].id
        environment.url = environment.url or succeeded[-1].url


def handle_deploy_command(args: argparse.Namespace, context: CLIContext) -> int:
    environment = _load_environment(args.environment, context.config)
    dispatcher = DeploymentDispatcher(context.config, [environment])
    try:
        deployment = dispatcher.start_deployment(
            environment.id,
            commit_hash=args.commit,
            commit_message=args.message,
            initiator=args.initiator,
        )
        deployment = dispatcher.wait(deployment.id)
    finally:
        dispatcher.shutdown()
    render_deployment(deployment.to_dict())
    return 0 if deployment.status == DeploymentStatus.SUCCEEDED else 1


def handle_set_env_command(args: argparse.Namespace, context: CLIContext) -> int:
    env_vars = parse_assignments(args.assignments)
    environment = _load_environment(args.environment, context.config)
    dispatcher = DeploymentDispatcher(context.config, [environment])
    try:
        _restore_active(dispatcher, environment)
        deployment = dispatcher.update_environment_variables(
            environment.id, env_vars, initiator=args.initiator
        )
        deployment = dispatcher.wait(deployment.id)
    finally:
        dispatcher.shutdown()
    render_deployment(deployment.to_dict())
    return 0 if deployment.status == DeploymentStatus.SUCCEEDED else 1


def handle_logs_command(args: argparse.Namespace, context: CLIContext) -> int:
    """Handle the logs subcommand."""
    state_dir = context.state_dir
    snapshots = list_snapshots(state_dir)

    if not snapshots:
        console.print("No deployment snapshots found. Run a deployment first.")
        return 0

    if args.list_logs:
        table = Table(title=f"Deployments in {state_dir}")
        table.add_column("#", justify="right")
        table.add_column("Status")
        table.add_column("Environment")
        table.add_column("Commit")
        table.add_column("Created")
        table.add_column("File")
        for i, path in enumerate(snapshots, 1):
            try:
                data = load_snapshot(path)
            except ValueError:
                table.add_row(str(i), "[red]unreadable[/red]", "?", "?", "?", path.name)
                continue
            status = data.get("status", "unknown")
            table.add_row(
                str(i),
                _styled(status),
                data.get("environment_name", ""),
                (data.get("commit_hash") or "")[:12],
                (data.get("created_at") or "")[:19].replace("T", " "),
                path.name,
            )
        console.print(table)
        return 0

    if args.file:
        target = Path(args.file)
        if not target.exists():
            target = state_dir / args.file
        if not target.exists():
            console.print(f"[red]Snapshot not found: {args.file}[/red]")
            return 1
    else:
        target = snapshots[0]

    render_deployment(load_snapshot(target), source=target)
    return 0


def handle_service_logs_command(args: argparse.Namespace, context: CLIContext) -> int:
    environment = _load_environment(args.environment, context.config)
    credentials = CredentialRegistry().for_project(environment.project)
    client = CloudProvisioningClient(
        environment.project.project_id,
        credentials,
        timeout=context.config.cloud.request_timeout,
    )
    entries = client.fetch_logs(
        environment.web_service_name,
        environment.resolved_region,
        log_type=args.log_type,
        limit=args.limit,
    )
    if not entries:
        console.print("No log entries in the last 24 hours.")
        return 0

    table = Table(title=f"{environment.web_service_name} ({args.log_type})")
    table.add_column("Time")
    table.add_column("Severity")
    table.add_column("Message", overflow="fold")
    for entry in reversed(entries):
        message = entry.get("textPayload")
        if message is None:
            payload = entry.get("jsonPayload") or {}
            message = payload.get("message") or str(payload)
        table.add_row(
            (entry.get("timestamp") or "")[:19].replace("T", " "),
            entry.get("severity", "DEFAULT"),
            message,
        )
    console.print(table)
    return 0


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def render_deployment(data: dict, source: Optional[Path] = None) -> None:
    """Print a deployment (as produced by ``Deployment.to_dict``)."""
    console.rule(f"Deployment {data.get('id', '?')}")
    console.print(f"Environment: {data.get('environment_name') or data.get('environment_id')}")
    console.print(f"Commit:      {data.get('commit_hash')} {data.get('commit_message') or ''}".rstrip())
    console.print(f"Image:       {data.get('image') or 'N/A'}")
    console.print(f"Initiator:   {data.get('initiator')}")
    console.print(f"Status:      {_styled(data.get('status', 'unknown'))}")
    if data.get("url"):
        console.print(f"URL:         {data['url']}")
    if data.get("retry_of"):
        console.print(f"Retry of:    {data['retry_of']}")

    table = Table(show_header=True)
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Output", overflow="fold")
    for step in data.get("steps", []):
        duration = step.get("duration_seconds")
        table.add_row(
            str(step.get("position", "")),
            step.get("label", ""),
            _styled(step.get("status", "")),
            f"{duration:.1f}s" if duration is not None else "",
            step.get("output") or "",
        )
    console.print(table)
    if source is not None:
        console.print(f"Snapshot: {source}")


def dispatch_command(args: argparse.Namespace) -> int:
    context = _build_context(args)

    if args.command == "logs":
        return handle_logs_command(args, context)
    if args.command == "service-logs":
        return handle_service_logs_command(args, context)

    if args.command == "deploy":
        return handle_deploy_command(args, context)
    if args.command == "set-env":
        return handle_set_env_command(args, context)

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    return dispatch_command(args)
