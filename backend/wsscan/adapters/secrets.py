from __future__ import annotations

import time
from typing import List

import structlog

from wsscan.adapters.analyzer import AnalyzerManager
from wsscan.adapters.request import AnalyzeScanRequest, ScanType
from wsscan.normalization.sarif import normalize_response
from wsscan.schemas import ScanFindings
from wsscan.services.progress import CancellationToken
from wsscan.utils import utc_now

logger = structlog.get_logger(__name__)


async def run_secrets(
    analyzer: AnalyzerManager,
    roots: List[str],
    *,
    skipped_folders: List[str],
    cancel: CancellationToken | None = None,
) -> ScanFindings:
    start = time.perf_counter()
    request = AnalyzeScanRequest(type=ScanType.SECRETS, roots=roots, skipped_folders=skipped_folders)
    findings = normalize_response(await analyzer.scan(request, cancel))
    findings.timestamp = utc_now()
    logger.info(
        "secrets.finished",
        roots=roots,
        issues=findings.issue_count,
        files=len(findings.files_with_issues),
        ignored=findings.ignore_count,
        elapsed_seconds=round(time.perf_counter() - start, 3),
    )
    return findings
