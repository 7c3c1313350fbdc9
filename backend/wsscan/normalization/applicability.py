from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from wsscan.normalization.sarif import FileIndex, RuleInfo, add_issue_locations, rule_catalog
from wsscan.schemas import ApplicabilityDetail, ApplicabilityResult, AnalyzerScanResponse

CVE_MARKER = "CVE"


def cve_from_rule_id(rule_id: str) -> str:
    """Rule ids carry a scanner prefix, e.g. ``applic_CVE-2021-1234`` -> ``CVE-2021-1234``."""
    index = rule_id.find(CVE_MARKER)
    return rule_id[index:] if index >= 0 else rule_id


def normalize_applicability_response(response: Optional[AnalyzerScanResponse]) -> ApplicabilityResult:
    """
    Build the applicability result of a response. Every CVE in the rule catalog
    was scanned; a CVE with results is applicable and keeps its evidence grouped
    by file. A later result with a different fix reason replaces the evidence
    collected so far for that CVE.
    """
    result = ApplicabilityResult()
    if response is None or not response.runs:
        return result

    scanned: List[str] = []
    details: Dict[str, Tuple[ApplicabilityDetail, FileIndex]] = {}
    for run in response.runs:
        catalog = rule_catalog(run)
        for rule in run.tool.driver.rules:
            cve = cve_from_rule_id(rule.id)
            if cve not in scanned:
                scanned.append(cve)

        for analyze_issue in run.results:
            if analyze_issue.suppressions:
                continue
            cve = cve_from_rule_id(analyze_issue.rule_id)
            if cve not in scanned:
                scanned.append(cve)
            rule = catalog.get(analyze_issue.rule_id, RuleInfo())
            fix_reason = analyze_issue.message.text
            entry = details.get(cve)
            if entry is None or entry[0].fix_reason != fix_reason:
                entry = (
                    ApplicabilityDetail(
                        cve_id=cve, fix_reason=fix_reason, full_description=rule.full_description
                    ),
                    FileIndex(),
                )
                details[cve] = entry
            add_issue_locations(entry[1], analyze_issue, rule)

    result.scanned_cves = scanned
    for cve, (detail, index) in details.items():
        detail.file_evidences = index.files()
        result.applicable[cve] = detail
    return result


def merge_applicability_results(*results: ApplicabilityResult) -> ApplicabilityResult:
    """
    Merge applicability results in order. Evidence of a CVE reported with the same
    fix reason is merged per file and rule; a later result with a different fix
    reason replaces it.
    """
    merged = ApplicabilityResult()
    details: Dict[str, Tuple[ApplicabilityDetail, FileIndex]] = {}
    for result in results:
        merged.scanned_cves.extend(cve for cve in result.scanned_cves if cve not in merged.scanned_cves)
        if result.timestamp and (merged.timestamp is None or result.timestamp > merged.timestamp):
            merged.timestamp = result.timestamp
        for cve, detail in result.applicable.items():
            entry = details.get(cve)
            if entry is None or entry[0].fix_reason != detail.fix_reason:
                entry = (detail.model_copy(update={"file_evidences": []}), FileIndex())
                details[cve] = entry
            entry[1].merge_files(detail.file_evidences)

    for cve, (detail, index) in details.items():
        detail.file_evidences = index.files()
        merged.applicable[cve] = detail
    return merged
