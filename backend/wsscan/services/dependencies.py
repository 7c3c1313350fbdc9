from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Protocol

import structlog

from wsscan.errors import FileScanError
from wsscan.schemas import DependencyScanResult, GraphScanResponse
from wsscan.services.progress import CancellationToken, ScanProgress
from wsscan.utils import utc_now

logger = structlog.get_logger(__name__)

NOT_INSTALLED_REASON = "[Not installed]"


@dataclass(frozen=True)
class Descriptor:
    """A dependency manifest (package.json, requirements.txt, ...) located in a workspace."""

    path: str
    package_type: str
    installed: bool = True

    @property
    def name(self) -> str:
        return Path(self.path).name


class DependencyGraphScanner(Protocol):
    """Builds and scans the dependency graph of one descriptor."""

    async def scan(
        self,
        descriptor: Descriptor,
        progress: ScanProgress,
        cancel: CancellationToken,
    ) -> GraphScanResponse:
        ...


def group_by_package_type(descriptors: Iterable[Descriptor]) -> Dict[str, List[Descriptor]]:
    groups: Dict[str, List[Descriptor]] = {}
    for descriptor in descriptors:
        groups.setdefault(descriptor.package_type, []).append(descriptor)
    return groups


async def scan_descriptor(
    graph: DependencyGraphScanner,
    descriptor: Descriptor,
    progress: ScanProgress,
    cancel: CancellationToken,
) -> DependencyScanResult | None:
    """Scan one descriptor; ``None`` when its graph has no issues."""
    if not descriptor.installed:
        raise FileScanError(f"{descriptor.name} dependencies are not installed", NOT_INSTALLED_REASON)
    cancel.raise_if_cancelled()
    response = await graph.scan(descriptor, progress, cancel)
    cancel.raise_if_cancelled()
    logger.debug(
        "dependencies.scanned",
        descriptor=descriptor.path,
        package_type=descriptor.package_type,
        issues=response.issue_count,
    )
    if not response.issue_count:
        return None
    return DependencyScanResult(
        name=descriptor.name,
        full_path=descriptor.path,
        package_type=descriptor.package_type,
        graph_scan_timestamp=utc_now(),
        dependencies_graph_scan=response,
    )


def direct_cves(results: Iterable[DependencyScanResult]) -> List[str]:
    cves: List[str] = []
    for result in results:
        for cve in result.dependencies_graph_scan.cve_ids():
            if cve not in cves:
                cves.append(cve)
    return cves
