from __future__ import annotations

import asyncio
import shutil
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import structlog
from pydantic import ValidationError

from wsscan.adapters.base import ToolResult, detect_tool_version, run_command
from wsscan.adapters.environment import build_analyzer_env
from wsscan.adapters.request import AnalyzeScanRequest, encode_request
from wsscan.config import Settings, get_settings
from wsscan.errors import (
    ConfigurationError,
    MissingResponseError,
    NotEntitledError,
    NotSupportedError,
    OsNotSupportedError,
    ProcessError,
    ScanCancelled,
)
from wsscan.schemas import AnalyzerScanResponse
from wsscan.services.progress import CancellationToken

logger = structlog.get_logger(__name__)

EXIT_NOT_ENTITLED = 31
EXIT_NOT_SUPPORTED = 13
EXIT_OS_NOT_SUPPORTED = 55

REQUEST_FILE = "request"
RESPONSE_FILE = "response"


class ReadinessGate:
    """
    One-time initialization barrier shared by every analyzer run of a scanner.
    The first waiter runs ``prepare``; the others wait for it to finish. A failed
    preparation is logged and does not block the runs.
    """

    def __init__(self, prepare: Optional[Callable[[], Awaitable[None]]] = None) -> None:
        self._prepare = prepare
        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def wait(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            if self._prepare is not None:
                try:
                    await self._prepare()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("analyzer.prepare_failed", error=str(exc))
            self._ready = True


class AnalyzerManager:
    """Runs the external analyzer binary on an encoded request and reads back its response."""

    def __init__(
        self,
        settings: Settings | None = None,
        gate: ReadinessGate | None = None,
        binary_path: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.binary_path = binary_path or self.settings.analyzer_path
        self.gate = gate or ReadinessGate(self._resolve_version)
        self.version: str | None = None

    async def _resolve_version(self) -> None:
        self.version = await asyncio.to_thread(detect_tool_version, self.binary_path)
        logger.debug("analyzer.version", binary=self.binary_path, version=self.version)

    def is_supported(self) -> bool:
        return Path(self.binary_path).is_file() or shutil.which(self.binary_path) is not None

    async def scan(
        self,
        request: AnalyzeScanRequest,
        cancel: CancellationToken | None = None,
    ) -> Optional[AnalyzerScanResponse]:
        """Like ``run`` but returns ``None`` when the analyzer binary is not installed."""
        if not self.is_supported():
            logger.warning("analyzer.not_installed", binary=self.binary_path, scan_type=request.type.value)
            return None
        return await self.run(request, cancel)

    async def run(
        self,
        request: AnalyzeScanRequest,
        cancel: CancellationToken | None = None,
    ) -> AnalyzerScanResponse:
        await self.gate.wait()

        run_dir = await asyncio.to_thread(self._make_run_dir, request)
        try:
            try:
                response = await self._execute(request, run_dir, cancel)
            except BaseException as exc:
                failed = not isinstance(exc, (NotEntitledError, ScanCancelled))
                await asyncio.to_thread(self._copy_execution_log, run_dir, request, failed)
                raise
            await asyncio.to_thread(self._copy_execution_log, run_dir, request, False)
            return response
        finally:
            await asyncio.to_thread(shutil.rmtree, run_dir, True)

    def _make_run_dir(self, request: AnalyzeScanRequest) -> Path:
        self.settings.runs_path.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{request.type.value}-", dir=self.settings.runs_path))

    async def _execute(
        self,
        request: AnalyzeScanRequest,
        run_dir: Path,
        cancel: CancellationToken | None,
    ) -> AnalyzerScanResponse:
        request_path = run_dir / REQUEST_FILE
        response_path = run_dir / RESPONSE_FILE
        await asyncio.to_thread(
            request_path.write_text,
            encode_request(request.with_output(str(response_path))),
            encoding="utf-8",
        )

        env = build_analyzer_env(self.settings, log_dir=str(run_dir), extra=self._tool_env(request))
        if env is None:
            raise ConfigurationError(f"Credentials are not set, skipping {request.type.display_name} scan")

        config = self.settings.get_tool_config(request.type.value)
        cmd = [self.binary_path, request.type.verb, str(request_path)]
        logger.debug("analyzer.run", command=cmd, roots=request.roots)
        result = await run_command(
            cmd,
            timeout=config.timeout_seconds,
            env=env,
            workdir=run_dir,
            cancel=cancel,
            poll_interval=config.cancel_poll_seconds,
        )
        self._log_output(result)
        if not result.success:
            self._raise_for_exit(result, request)

        raw = await asyncio.to_thread(_read_response, response_path)
        if raw is None:
            raise MissingResponseError(
                f"{request.type.display_name} scan finished without a response",
                exit_code=result.return_code,
                stderr=result.error or "",
            )
        try:
            return AnalyzerScanResponse.model_validate_json(raw)
        except ValidationError as exc:
            raise ProcessError(
                f"{request.type.display_name} scan wrote an unreadable response: {exc}",
                exit_code=result.return_code,
            ) from exc

    def _tool_env(self, request: AnalyzeScanRequest) -> dict[str, str]:
        return self.settings.get_tool_config(request.type.value).env

    @staticmethod
    def _log_output(result: ToolResult) -> None:
        if result.output:
            logger.debug("analyzer.stdout", output=result.output)
        if result.error:
            logger.error("analyzer.stderr", output=result.error)

    @staticmethod
    def _raise_for_exit(result: ToolResult, request: AnalyzeScanRequest) -> None:
        name = request.type.display_name
        if result.return_code == EXIT_NOT_ENTITLED:
            raise NotEntitledError(f"User is not entitled to run {name} scan")
        if result.return_code == EXIT_NOT_SUPPORTED:
            raise NotSupportedError(name)
        if result.return_code == EXIT_OS_NOT_SUPPORTED:
            raise OsNotSupportedError(name)
        logger.error(
            "analyzer.failed",
            scan_type=request.type.value,
            exit_code=result.return_code,
            reason=result.failure_reason,
        )
        result.raise_for_status()

    def _copy_execution_log(self, run_dir: Path, request: AnalyzeScanRequest, failed: bool) -> None:
        try:
            log_files = [p for p in run_dir.iterdir() if p.is_file() and "log" in p.name.lower()]
            if not log_files:
                return
            logs_path = self.settings.logs_path
            logs_path.mkdir(parents=True, exist_ok=True)
            target = logs_path / execution_log_name(request, int(time.time() * 1000))
            shutil.copyfile(log_files[0], target)
            cleanup_logs(logs_path, self.settings.keep_logs_count)
        except OSError as exc:
            logger.warning("analyzer.log_copy_failed", scan_type=request.type.value, error=str(exc))
            return
        log = logger.error if failed else logger.debug
        log("analyzer.log_saved", scan_type=request.type.value, path=str(target))


def _read_response(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def execution_log_name(request: AnalyzeScanRequest, timestamp_ms: int) -> str:
    roots = "_".join(Path(root).name or root.strip("/\\") for root in request.roots) or "workspace"
    return f"{roots}-{request.type.display_name.replace(' ', '_')}-{timestamp_ms}.log"


def cleanup_logs(logs_path: Path, keep: int) -> List[Path]:
    """Delete the oldest ``.log`` files beyond ``keep``; returns the deleted paths."""
    logs = sorted(
        (p for p in logs_path.glob("*.log") if p.is_file()),
        key=lambda p: (p.stat().st_mtime, p.name),
    )
    removed = logs[: max(len(logs) - keep, 0)]
    for path in removed:
        path.unlink(missing_ok=True)
    return removed
