from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from wsscan.adapters import iac, sast, secrets
from wsscan.adapters.analyzer import AnalyzerManager, ReadinessGate
from wsscan.adapters.applicability import is_applicability_supported, run_applicability
from wsscan.adapters.request import to_analyzer_exclude_patterns
from wsscan.config import Settings, get_settings
from wsscan.errors import ConfigurationError, FileScanError, NotEntitledError, ScanCancelled
from wsscan.normalization.applicability import merge_applicability_results
from wsscan.schemas import FailedFile, IssueAggregate
from wsscan.services.cache import ResultCache
from wsscan.services.dependencies import (
    DependencyGraphScanner,
    Descriptor,
    direct_cves,
    group_by_package_type,
    scan_descriptor,
)
from wsscan.services.progress import CancellationToken, ProgressCallback, ProgressState, StepProgress

logger = structlog.get_logger(__name__)

DEFAULT_FAILED_REASON = "[Fail to scan]"


@dataclass(frozen=True)
class EntitledScans:
    dependencies: bool = True
    applicability: bool = True
    sast: bool = True
    iac: bool = True
    secrets: bool = True


class WorkspaceScanner:
    """
    Runs every entitled scanner of a workspace concurrently and collects their
    results into one IssueAggregate.

    A failing scanner only records a failed-file entry, cancellation aborts the
    whole workspace scan and nothing of it is kept. A finished aggregate is
    written to the cache unless it holds nothing at all.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: ResultCache | None = None,
        analyzer: AnalyzerManager | None = None,
        graph: DependencyGraphScanner | None = None,
        entitlements: EntitledScans | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache or ResultCache(self.settings)
        self.analyzer = analyzer or AnalyzerManager(self.settings)
        self.gate: ReadinessGate = self.analyzer.gate
        self.graph = graph
        self.entitlements = entitlements or EntitledScans()
        self._in_progress: set[str] = set()
        self._scanned: set[str] = set()

    def is_scan_in_progress(self, workspace: str) -> bool:
        return workspace in self._in_progress

    def count_substeps(self, descriptors: Sequence[Descriptor] = ()) -> int:
        units = sum(1 for enabled in (self.entitlements.sast, self.entitlements.iac, self.entitlements.secrets) if enabled)
        if self._scans_dependencies(descriptors):
            units += len(group_by_package_type(descriptors)) + len(descriptors)
        return units

    def _scans_dependencies(self, descriptors: Sequence[Descriptor]) -> bool:
        return bool(self.entitlements.dependencies and self.graph is not None and descriptors)

    async def refresh(
        self,
        workspace: str,
        descriptors: Sequence[Descriptor] = (),
        scan: bool = True,
        progress_callback: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> IssueAggregate | None:
        """
        Scan ``workspace``, or with ``scan=False`` load its last result from the
        cache. A workspace that was never scanned by this process and has no valid
        cache entry is scanned instead.
        """
        if self.is_scan_in_progress(workspace):
            logger.warning("scan.workspace.rejected", workspace=workspace, reason="scan-in-progress")
            return None
        if not scan:
            cached = await asyncio.to_thread(self.cache.load, workspace)
            if cached is not None or workspace in self._scanned:
                logger.debug("scan.workspace.cached", workspace=workspace, hit=cached is not None)
                return cached
        return await self.scan_workspace(workspace, descriptors, progress_callback, cancel)

    async def refresh_all(
        self,
        workspaces: Sequence[str],
        scan: bool = True,
        progress_callback: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Dict[str, Optional[IssueAggregate]]:
        results = await asyncio.gather(
            *(self.refresh(path, scan=scan, progress_callback=progress_callback, cancel=cancel) for path in workspaces)
        )
        return dict(zip(workspaces, results))

    async def scan_workspace(
        self,
        workspace: str,
        descriptors: Sequence[Descriptor] = (),
        progress_callback: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> IssueAggregate | None:
        if self.is_scan_in_progress(workspace):
            logger.warning("scan.workspace.rejected", workspace=workspace, reason="scan-in-progress")
            return None

        self._in_progress.add(workspace)
        cancel = cancel or CancellationToken()
        progress = StepProgress(total_steps=2, callback=progress_callback, cancel=cancel)
        aggregate = IssueAggregate(path=workspace)
        start = time.perf_counter()
        logger.info("scan.workspace.started", workspace=workspace, descriptors=len(descriptors))
        try:
            progress.prepare()
            progress.start_step("Preparing scanners")
            await self.gate.wait()
            progress.report_progress()

            progress.start_step("Scanning workspace", self.count_substeps(descriptors))
            tasks = self._create_tasks(aggregate, descriptors, progress, cancel)
            await _gather_all(tasks)
            cancel.raise_if_cancelled()
            progress.finish()
        except ScanCancelled:
            progress.state = ProgressState.CANCELLED
            logger.info("scan.workspace.cancelled", workspace=workspace)
            raise
        except Exception:
            progress.fail()
            raise
        finally:
            self._in_progress.discard(workspace)

        self._scanned.add(workspace)
        logger.info(
            "scan.workspace.finished",
            workspace=workspace,
            descriptors_with_issues=len(aggregate.descriptors_issues),
            failed_files=len(aggregate.failed_files),
            top_severity=aggregate.top_severity.label,
            elapsed_seconds=round(time.perf_counter() - start, 3),
        )
        return await self._finalize(aggregate)

    async def _finalize(self, aggregate: IssueAggregate) -> IssueAggregate | None:
        if not aggregate.has_information():
            logger.info("scan.workspace.empty", workspace=aggregate.path)
            await asyncio.to_thread(self.cache.remove, aggregate.path)
            return None
        await asyncio.to_thread(self.cache.store, aggregate.path, aggregate)
        return aggregate

    def _create_tasks(
        self,
        aggregate: IssueAggregate,
        descriptors: Sequence[Descriptor],
        progress: StepProgress,
        cancel: CancellationToken,
    ) -> List[Awaitable[None]]:
        roots = [aggregate.path]
        skipped = to_analyzer_exclude_patterns(self.settings.exclude_pattern)
        tasks: List[Awaitable[None]] = []

        graph = self.graph
        if graph is not None and self._scans_dependencies(descriptors):
            for package_type, group in group_by_package_type(descriptors).items():
                tasks.append(self._scan_package_type(aggregate, graph, package_type, group, skipped, progress, cancel))

        async def _sast() -> None:
            aggregate.sast = await sast.run_sast(self.analyzer, roots, exclude_patterns=skipped, cancel=cancel)

        async def _iac() -> None:
            aggregate.iac = await iac.run_iac(self.analyzer, roots, skipped_folders=skipped, cancel=cancel)

        async def _secrets() -> None:
            aggregate.secrets = await secrets.run_secrets(self.analyzer, roots, skipped_folders=skipped, cancel=cancel)

        if self.entitlements.sast:
            tasks.append(self._guarded(aggregate, "SAST", aggregate.path, _sast, progress.report_progress))
        if self.entitlements.iac:
            tasks.append(self._guarded(aggregate, "Infrastructure As Code", aggregate.path, _iac, progress.report_progress))
        if self.entitlements.secrets:
            tasks.append(self._guarded(aggregate, "Secrets", aggregate.path, _secrets, progress.report_progress))
        return tasks

    async def _scan_package_type(
        self,
        aggregate: IssueAggregate,
        graph: DependencyGraphScanner,
        package_type: str,
        descriptors: List[Descriptor],
        skipped: List[str],
        progress: StepProgress,
        cancel: CancellationToken,
    ) -> None:
        found = []

        def _descriptor_task(descriptor: Descriptor) -> Awaitable[None]:
            scan_progress = progress.create_scan_progress(descriptor.name)

            async def _run() -> None:
                result = await scan_descriptor(graph, descriptor, scan_progress, cancel)
                if result is not None:
                    aggregate.descriptors_issues.append(result)
                    found.append(result)

            return self._guarded(aggregate, descriptor.name, descriptor.path, _run, scan_progress.done)

        await _gather_all([_descriptor_task(descriptor) for descriptor in descriptors])
        cancel.raise_if_cancelled()

        async def _applicability() -> None:
            if not (self.entitlements.applicability and is_applicability_supported(package_type)):
                return
            result = await run_applicability(
                self.analyzer,
                [aggregate.path],
                direct_cves(found),
                skipped_folders=skipped,
                cancel=cancel,
            )
            aggregate.applicability = (
                result
                if aggregate.applicability is None
                else merge_applicability_results(aggregate.applicability, result)
            )

        await self._guarded(
            aggregate,
            f"{package_type} applicability",
            aggregate.path,
            _applicability,
            progress.report_progress,
        )

    async def _guarded(
        self,
        aggregate: IssueAggregate,
        name: str,
        full_path: str,
        run: Callable[[], Awaitable[None]],
        on_done: Callable[[], None],
    ) -> None:
        """Run one scanner task and contain any failure other than cancellation."""
        try:
            await run()
        except ScanCancelled:
            raise
        except (NotEntitledError, ConfigurationError) as exc:
            logger.info("scan.task.skipped", task=name, reason=str(exc))
        except FileScanError as exc:
            logger.warning("scan.task.failed", task=name, reason=exc.reason, error=str(exc))
            aggregate.failed_files.append(FailedFile(name=name, full_path=full_path, reason=exc.reason))
        except Exception as exc:  # noqa: BLE001
            logger.error("scan.task.failed", task=name, error=str(exc), error_type=type(exc).__name__)
            aggregate.failed_files.append(FailedFile(name=name, full_path=full_path, reason=DEFAULT_FAILED_REASON))
        on_done()


async def _gather_all(tasks: Sequence[Awaitable[None]]) -> None:
    """Await every task even when one fails, then raise the first failure (cancellation first)."""
    results = await asyncio.gather(*tasks, return_exceptions=True)
    errors = [result for result in results if isinstance(result, BaseException)]
    for error in errors:
        if isinstance(error, ScanCancelled):
            raise error
    if errors:
        raise errors[0]
