"""Console-script entry point: maps CLI outcomes and input errors to exit codes."""

from __future__ import annotations

import sys
from typing import List, Optional

from rich.console import Console

from .cli import run_cli
from .errors import CloudDeployerError

# Deployment failures exit 1; unusable input or configuration exits 2.
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def app_main(argv: Optional[List[str]] = None) -> None:
    try:
        exit_code = run_cli(argv)
    except (CloudDeployerError, FileNotFoundError, ValueError) as exc:
        Console(stderr=True).print(f"[red]❌ {exc}[/red]")
        exit_code = EXIT_USAGE
    except KeyboardInterrupt:
        Console(stderr=True).print("[yellow]Interrupted; running deployments keep their last saved state.[/yellow]")
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    app_main()
