from __future__ import annotations

from typing import List, Optional

from wsscan.normalization.findings import parse_location_file_path
from wsscan.normalization.sarif import normalize_response
from wsscan.schemas import (
    AnalyzeIssue,
    AnalyzerScanResponse,
    IssueLocation,
    Location,
    Region,
    ScanFindings,
    ThreadFlow,
    ThreadFlowLocation,
)


def _hop_location(hop: ThreadFlowLocation) -> Optional[Location]:
    physical = hop.location.physical_location if hop.location else None
    if physical is None or physical.artifact_location is None or physical.region is None:
        return None
    return Location(
        file_path=parse_location_file_path(physical.artifact_location.uri),
        region=Region.from_analyzer(physical.region),
    )


def _thread_flow_locations(flow: ThreadFlow) -> Optional[List[Location]]:
    """The usable hops of ``flow``, or ``None`` when its final hop has no file or region."""
    if not flow.locations or _hop_location(flow.locations[-1]) is None:
        return None
    hops = [_hop_location(hop) for hop in flow.locations]
    return [hop for hop in hops if hop is not None]


def attach_code_flows(analyze_issue: AnalyzeIssue, file_path: str, location: IssueLocation) -> None:
    """
    Attach every thread flow whose final hop lands exactly on ``location`` in
    ``file_path``. Intermediate hops without a file or region are left out of the
    flow; a flow whose final hop lacks them attaches nowhere.
    """
    for code_flow in analyze_issue.code_flows:
        for flow in code_flow.thread_flows:
            hops = _thread_flow_locations(flow)
            if not hops:
                continue
            sink = hops[-1]
            if sink.file_path == file_path and sink.region.same_span(location.region):
                location.thread_flows.append(hops)


def normalize_sast_response(response: Optional[AnalyzerScanResponse]) -> ScanFindings:
    return normalize_response(response, on_location=attach_code_flows)
