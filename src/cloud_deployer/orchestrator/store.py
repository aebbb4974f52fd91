"""In-memory deployment registry with optional JSON snapshots on disk."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from .models import Deployment, DeploymentStatus

logger = logging.getLogger(__name__)


class DeploymentStore:
    """Thread-safe registry of deployments.

    When ``snapshot_dir`` is set, every ``save`` also writes
    ``deploy_<environment>_<id>.json`` there so runs can be inspected after
    the process exits.
    """

    def __init__(self, snapshot_dir: Optional[Union[str, Path]] = None) -> None:
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        if self.snapshot_dir:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        self._deployments: Dict[str, Deployment] = {}
        self._lock = threading.Lock()

    def save(self, deployment: Deployment) -> None:
        with self._lock:
            self._deployments[deployment.id] = deployment
            if self.snapshot_dir:
                self._write_snapshot(deployment)

    def get(self, deployment_id: str) -> Deployment:
        with self._lock:
            try:
                return self._deployments[deployment_id]
            except KeyError:
                raise KeyError(f"Unknown deployment: {deployment_id}") from None

    def list(self, environment_id: Optional[str] = None) -> List[Deployment]:
        with self._lock:
            deployments = list(self._deployments.values())
        if environment_id:
            deployments = [d for d in deployments if d.environment_id == environment_id]
        return sorted(deployments, key=lambda d: d.created_at)

    def latest_for(self, environment_id: str) -> Optional[Deployment]:
        deployments = self.list(environment_id)
        return deployments[-1] if deployments else None

    def stale_deployments(self) -> List[Deployment]:
        """Deployments recorded as running, e.g. left behind by a crashed process."""
        return [d for d in self.list() if d.status == DeploymentStatus.RUNNING]

    def snapshot_path(self, deployment: Deployment) -> Optional[Path]:
        if not self.snapshot_dir:
            return None
        name = deployment.environment_name or deployment.environment_id
        return self.snapshot_dir / f"deploy_{name}_{deployment.id}.json"

    def _write_snapshot(self, deployment: Deployment) -> None:
        path = self.snapshot_path(deployment)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(deployment.to_dict(), f, indent=2, ensure_ascii=False)

    def load_snapshots(self) -> int:
        """Register every snapshot found in ``snapshot_dir``. Returns the count loaded."""
        if not self.snapshot_dir:
            return 0
        loaded = 0
        for path in list_snapshots(self.snapshot_dir):
            try:
                deployment = Deployment.from_dict(load_snapshot(path))
            except (ValueError, KeyError) as exc:
                logger.warning("Ignoring unreadable snapshot %s: %s", path, exc)
                continue
            with self._lock:
                self._deployments.setdefault(deployment.id, deployment)
            loaded += 1
        return loaded


def list_snapshots(directory: Union[str, Path]) -> List[Path]:
    """Snapshot files in ``directory``, newest first."""
    directory = Path(directory)
    if not directory.exists():
        return []
    return sorted(directory.glob("deploy_*.json"), key=lambda p: p.stat().st_mtime, reverse=True)


def load_snapshot(path: Union[str, Path]) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
