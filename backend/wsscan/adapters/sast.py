from __future__ import annotations

import time
from typing import List, Sequence

import structlog

from wsscan.adapters.analyzer import AnalyzerManager
from wsscan.adapters.request import SastScanRequest
from wsscan.normalization.sast import normalize_sast_response
from wsscan.schemas import ScanFindings
from wsscan.services.progress import CancellationToken
from wsscan.utils import utc_now

logger = structlog.get_logger(__name__)


async def run_sast(
    analyzer: AnalyzerManager,
    roots: List[str],
    *,
    exclude_patterns: Sequence[str] = (),
    excluded_rules: Sequence[str] = (),
    language: str | None = None,
    cancel: CancellationToken | None = None,
) -> ScanFindings:
    start = time.perf_counter()
    request = SastScanRequest(
        roots=roots,
        language=language,
        exclude_patterns=list(exclude_patterns),
        excluded_rules=list(excluded_rules),
    )
    findings = normalize_sast_response(await analyzer.scan(request, cancel))
    findings.timestamp = utc_now()
    flows = sum(
        len(location.thread_flows)
        for file_findings in findings.files_with_issues
        for issue in file_findings.issues
        for location in issue.locations
    )
    logger.info(
        "sast.finished",
        roots=roots,
        issues=findings.issue_count,
        code_flows=flows,
        ignored=findings.ignore_count,
        elapsed_seconds=round(time.perf_counter() - start, 3),
    )
    return findings
