from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from wsscan.normalization.findings import level_to_severity, parse_location_file_path
from wsscan.schemas import (
    AnalyzeIssue,
    AnalyzerRegion,
    AnalyzerScanResponse,
    AnalyzerScanRun,
    FileFindings,
    IssueLocation,
    NormalizedIssue,
    Region,
    ScanFindings,
)


@dataclass(frozen=True)
class RuleInfo:
    name: Optional[str] = None
    full_description: Optional[str] = None


# Called for every location appended to a normalized issue.
LocationHook = Callable[[AnalyzeIssue, str, IssueLocation], None]


def rule_catalog(run: AnalyzerScanRun) -> Dict[str, RuleInfo]:
    catalog: Dict[str, RuleInfo] = {}
    for rule in run.tool.driver.rules:
        name = rule.name or (rule.short_description.text if rule.short_description else None)
        description = rule.full_description.text if rule.full_description else None
        catalog[rule.id] = RuleInfo(name=name, full_description=description)
    return catalog


class FileIndex:
    """
    Owns the files and issues created while normalizing one response. Issues are
    indexed by (file, rule) so repeated results of a rule in a file merge.
    """

    def __init__(self) -> None:
        self._files: Dict[str, FileFindings] = {}
        self._issues: Dict[Tuple[str, str], NormalizedIssue] = {}

    def file(self, file_path: str) -> FileFindings:
        found = self._files.get(file_path)
        if found is None:
            found = FileFindings(file_path=file_path)
            self._files[file_path] = found
        return found

    def issue(
        self,
        file_path: str,
        rule_id: str,
        create: Callable[[], NormalizedIssue],
    ) -> NormalizedIssue:
        key = (file_path, rule_id)
        found = self._issues.get(key)
        if found is None:
            found = create()
            self._issues[key] = found
            self.file(file_path).issues.append(found)
        return found

    def files(self) -> List[FileFindings]:
        return list(self._files.values())

    def merge_files(self, files: List[FileFindings]) -> None:
        """Fold already normalized files in, copying their issues and locations."""
        for file_findings in files:
            self.file(file_findings.file_path)
            for issue in file_findings.issues:
                target = self.issue(
                    file_findings.file_path,
                    issue.rule_id,
                    lambda issue=issue: issue.model_copy(update={"locations": []}),
                )
                target.locations.extend(loc.model_copy(deep=True) for loc in issue.locations)


def _new_issue(analyze_issue: AnalyzeIssue, rule: RuleInfo) -> NormalizedIssue:
    return NormalizedIssue(
        rule_id=analyze_issue.rule_id,
        rule_name=rule.name or analyze_issue.message.text or analyze_issue.rule_id,
        severity=level_to_severity(analyze_issue.level),
        full_description=rule.full_description,
    )


def add_issue_locations(
    index: FileIndex,
    analyze_issue: AnalyzeIssue,
    rule: RuleInfo,
    on_location: Optional[LocationHook] = None,
) -> None:
    for location in analyze_issue.locations:
        physical = location.physical_location
        if physical is None or physical.artifact_location is None:
            continue
        file_path = parse_location_file_path(physical.artifact_location.uri)
        issue = index.issue(file_path, analyze_issue.rule_id, lambda: _new_issue(analyze_issue, rule))
        issue_location = IssueLocation(region=Region.from_analyzer(physical.region or AnalyzerRegion()))
        issue.locations.append(issue_location)
        if on_location is not None:
            on_location(analyze_issue, file_path, issue_location)


def normalize_response(
    response: Optional[AnalyzerScanResponse],
    on_location: Optional[LocationHook] = None,
) -> ScanFindings:
    """
    Group the raw results of a response by file and rule. Suppressed results are
    excluded and counted in ``ignore_count``. A missing response or one without
    runs yields an empty result.
    """
    findings = ScanFindings()
    if response is None or not response.runs:
        return findings

    index = FileIndex()
    for run in response.runs:
        catalog = rule_catalog(run)
        for analyze_issue in run.results:
            if analyze_issue.suppressions:
                findings.ignore_count += 1
                continue
            rule = catalog.get(analyze_issue.rule_id, RuleInfo())
            add_issue_locations(index, analyze_issue, rule, on_location)
    findings.files_with_issues = index.files()
    return findings


def merge_scan_findings(*results: ScanFindings) -> ScanFindings:
    """Merge normalized results, keeping one file per path and one issue per rule in a file."""
    index = FileIndex()
    merged = ScanFindings()
    for result in results:
        merged.ignore_count += result.ignore_count
        if result.timestamp and (merged.timestamp is None or result.timestamp > merged.timestamp):
            merged.timestamp = result.timestamp
        index.merge_files(result.files_with_issues)
    merged.files_with_issues = index.files()
    return merged

