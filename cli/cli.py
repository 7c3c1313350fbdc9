from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Optional

import typer

from wsscan.config import get_settings
from wsscan.errors import ScanCancelled
from wsscan.logging import configure_logging
from wsscan.services.cache import ResultCache
from wsscan.services.progress import CancellationToken
from wsscan.services.scanner import EntitledScans, WorkspaceScanner

app = typer.Typer(help="Workspace security scanner CLI")


def _workspace_key(workspace: str) -> str:
    return str(Path(workspace).resolve())


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Overrides LOG_LEVEL"),
    json_logs: bool = typer.Option(False, help="Emit logs as JSON lines"),
):
    configure_logging(log_level or get_settings().log_level, json_output=json_logs)


@app.command()
def scan(
    workspace: str,
    sast: bool = typer.Option(True, help="Run the SAST scanner"),
    iac: bool = typer.Option(True, help="Run the IaC scanner"),
    secrets: bool = typer.Option(True, help="Run the secrets scanner"),
):
    entitlements = EntitledScans(dependencies=False, applicability=False, sast=sast, iac=iac, secrets=secrets)
    scanner = WorkspaceScanner(entitlements=entitlements)
    cancel = CancellationToken()

    def _progress(message: Optional[str], increment: Optional[float]) -> bool:
        if message and increment is None:
            typer.echo(message, err=True)
        return cancel.cancelled

    async def _run():
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.cancel)
        return await scanner.scan_workspace(_workspace_key(workspace), progress_callback=_progress, cancel=cancel)

    try:
        aggregate = asyncio.run(_run())
    except ScanCancelled:
        typer.echo("Scan cancelled", err=True)
        raise typer.Exit(code=130)
    except Exception as exc:
        typer.echo(f"Scan failed: {exc}", err=True)
        raise typer.Exit(code=1)
    if aggregate is None:
        typer.echo("No issues found")
        return
    typer.echo(aggregate.model_dump_json(indent=2))


@app.command()
def show(workspace: str):
    aggregate = ResultCache().load(_workspace_key(workspace))
    if aggregate is None:
        typer.echo("Workspace was never scanned or its last result expired")
        raise typer.Exit(code=1)
    typer.echo(aggregate.model_dump_json(indent=2))


@app.command()
def clear(workspace: str):
    removed = ResultCache().remove(_workspace_key(workspace))
    typer.echo("Cache entry removed" if removed else "Nothing to remove")


if __name__ == "__main__":
    app()
