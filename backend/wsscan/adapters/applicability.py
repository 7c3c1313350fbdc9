from __future__ import annotations

import time
from typing import Iterable, List, Sequence

import structlog

from wsscan.adapters.analyzer import AnalyzerManager
from wsscan.adapters.request import ApplicabilityScanRequest
from wsscan.normalization.applicability import normalize_applicability_response
from wsscan.schemas import ApplicabilityResult
from wsscan.services.progress import CancellationToken
from wsscan.utils import utc_now

logger = structlog.get_logger(__name__)

# Package types the applicability scanner understands.
SUPPORTED_PACKAGE_TYPES = ("npm", "yarn", "pypi")


def is_applicability_supported(package_type: str) -> bool:
    return package_type.lower() in SUPPORTED_PACKAGE_TYPES


async def run_applicability(
    analyzer: AnalyzerManager,
    roots: List[str],
    cves: Iterable[str],
    *,
    skipped_folders: Sequence[str] = (),
    cancel: CancellationToken | None = None,
) -> ApplicabilityResult:
    """Check which of ``cves`` are reachable from the code under ``roots``."""
    whitelist = sorted(set(cves))
    if not whitelist:
        logger.debug("applicability.skipped", roots=roots, reason="no-cves")
        return ApplicabilityResult(timestamp=utc_now())

    start = time.perf_counter()
    request = ApplicabilityScanRequest(
        roots=roots,
        cve_whitelist=whitelist,
        skipped_folders=list(skipped_folders),
    )
    result = normalize_applicability_response(await analyzer.scan(request, cancel))
    result.timestamp = utc_now()
    logger.info(
        "applicability.finished",
        roots=roots,
        scanned=len(result.scanned_cves),
        applicable=len(result.applicable),
        elapsed_seconds=round(time.perf_counter() - start, 3),
    )
    return result
