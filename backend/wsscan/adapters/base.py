from __future__ import annotations

import asyncio
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, List

import structlog

from wsscan.errors import ProcessError, ScanCancelled, ScanTimeoutError

if TYPE_CHECKING:
    from wsscan.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


@dataclass
class ToolResult:
    success: bool
    output: str
    error: str | None = None
    return_code: int | None = None
    command: list[str] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    failure_reason: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None

    @property
    def signal(self) -> int | None:
        if self.return_code is not None and self.return_code < 0:
            return -self.return_code
        return None

    def raise_for_status(self) -> None:
        if self.success:
            return
        name = Path(self.command[0]).name if self.command else "process"
        raise ProcessError(
            f"'{name}' ended with {self.failure_reason or 'error'} (exit code {self.return_code})",
            exit_code=self.return_code,
            signal=self.signal,
            stderr=self.error or "",
        )


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


def _write_logs(log_dir: str | Path, stdout: str, stderr: str) -> tuple[str, str]:
    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)
    stdout_path = log_dir_path / "stdout.log"
    stderr_path = log_dir_path / "stderr.log"
    stdout_path.write_text(stdout)
    stderr_path.write_text(stderr)
    return str(stdout_path), str(stderr_path)


async def _kill(proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> tuple[str, str]:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    try:
        stdout, stderr = await communicate
    except (OSError, ValueError):
        return "", ""
    return _decode(stdout), _decode(stderr)


async def run_command(
    cmd: List[str],
    timeout: float = 300,
    env: dict[str, str] | None = None,
    workdir: str | Path | None = None,
    cancel: "CancellationToken | None" = None,
    poll_interval: float = 0.1,
    log_dir: str | Path | None = None,
) -> ToolResult:
    """
    Run ``cmd`` to completion and capture its output.

    The process is killed when it outlives ``timeout`` (``ScanTimeoutError``) or
    when ``cancel`` is tripped while it runs (``ScanCancelled``). A non-zero exit
    is reported on the returned result, see ``ToolResult.raise_for_status``.
    With ``log_dir`` the captured stdout and stderr are also written there.
    """
    if cancel is not None:
        cancel.raise_if_cancelled()

    started_at = datetime.now(timezone.utc)
    start = time.perf_counter()

    def _finish(**kwargs) -> ToolResult:
        return ToolResult(
            command=cmd,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_seconds=time.perf_counter() - start,
            **kwargs,
        )

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workdir) if workdir else None,
            env=env,
        )
    except OSError as exc:
        return _finish(success=False, output="", error=str(exc), failure_reason="crash")

    communicate = asyncio.ensure_future(proc.communicate())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while not communicate.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                stdout, stderr = await _kill(proc, communicate)
                logger.warning("process.timeout", command=cmd, timeout_seconds=timeout, stderr=stderr)
                raise ScanTimeoutError(
                    f"'{Path(cmd[0]).name}' did not finish within {timeout} seconds", timeout
                )
            await asyncio.wait({communicate}, timeout=min(poll_interval, remaining))
            if cancel is not None and cancel.cancelled and not communicate.done():
                await _kill(proc, communicate)
                logger.info("process.cancelled", command=cmd)
                raise ScanCancelled()
    except asyncio.CancelledError:
        await _kill(proc, communicate)
        raise

    stdout, stderr = communicate.result()
    output, error = _decode(stdout), _decode(stderr)
    stdout_path = stderr_path = None
    if log_dir is not None:
        stdout_path, stderr_path = _write_logs(log_dir, output, error)
    return_code = proc.returncode
    return _finish(
        success=return_code == 0,
        output=output,
        error=error or None,
        stdout_path=stdout_path,
        stderr_path=stderr_path,
        return_code=return_code,
        failure_reason=None if return_code == 0 else "non-zero-exit",
    )


@lru_cache(maxsize=32)
def detect_tool_version(binary: str) -> str | None:
    try:
        proc = subprocess.run(
            [binary, "version"], capture_output=True, text=True, timeout=10, check=False
        )
        output = (proc.stdout or proc.stderr or "").strip()
        return output.splitlines()[0] if output else None
    except (OSError, subprocess.TimeoutExpired):
        return None
