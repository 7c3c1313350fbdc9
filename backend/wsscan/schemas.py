from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from wsscan.normalization.findings import Severity, max_severity, severity_from_name


# Raw analyzer output (SARIF subset) ------------------------------------------
class AnalyzerModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ResultContent(AnalyzerModel):
    text: str = ""


class AnalyzerRegion(AnalyzerModel):
    start_line: int = 0
    end_line: int = 0
    start_column: int = 0
    end_column: int = 0
    snippet: Optional[ResultContent] = None


class ArtifactLocation(AnalyzerModel):
    uri: str = ""


class PhysicalLocation(AnalyzerModel):
    artifact_location: Optional[ArtifactLocation] = None
    region: Optional[AnalyzerRegion] = None


class AnalyzeLocation(AnalyzerModel):
    physical_location: Optional[PhysicalLocation] = None


class ThreadFlowLocation(AnalyzerModel):
    location: Optional[AnalyzeLocation] = None


class ThreadFlow(AnalyzerModel):
    locations: List[ThreadFlowLocation] = Field(default_factory=list)


class CodeFlow(AnalyzerModel):
    thread_flows: List[ThreadFlow] = Field(default_factory=list)


class Suppression(AnalyzerModel):
    kind: str = ""


class AnalyzeIssue(AnalyzerModel):
    rule_id: str
    message: ResultContent = Field(default_factory=ResultContent)
    level: Optional[str] = None
    kind: Optional[str] = None
    locations: List[AnalyzeLocation] = Field(default_factory=list)
    suppressions: List[Suppression] = Field(default_factory=list)
    code_flows: List[CodeFlow] = Field(default_factory=list)


class AnalyzerRule(AnalyzerModel):
    id: str
    name: Optional[str] = None
    short_description: Optional[ResultContent] = None
    full_description: Optional[ResultContent] = None


class AnalyzerDriver(AnalyzerModel):
    name: str = ""
    rules: List[AnalyzerRule] = Field(default_factory=list)


class AnalyzerTool(AnalyzerModel):
    driver: AnalyzerDriver = Field(default_factory=AnalyzerDriver)


class AnalyzerScanRun(AnalyzerModel):
    tool: AnalyzerTool = Field(default_factory=AnalyzerTool)
    results: List[AnalyzeIssue] = Field(default_factory=list)


class AnalyzerScanResponse(AnalyzerModel):
    runs: List[AnalyzerScanRun] = Field(default_factory=list)


# Normalized issue model ---------------------------------------------------------
class Region(BaseModel):
    """Analyzer-native, 1-based region."""

    start_line: int
    end_line: int
    start_column: int
    end_column: int
    snippet: Optional[str] = None

    @classmethod
    def from_analyzer(cls, region: AnalyzerRegion) -> "Region":
        return cls(
            start_line=region.start_line,
            end_line=region.end_line,
            start_column=region.start_column,
            end_column=region.end_column,
            snippet=region.snippet.text if region.snippet else None,
        )

    def same_span(self, other: "Region") -> bool:
        return (
            self.start_line == other.start_line
            and self.end_line == other.end_line
            and self.start_column == other.start_column
            and self.end_column == other.end_column
        )


class Location(BaseModel):
    file_path: str
    region: Region


class IssueLocation(BaseModel):
    region: Region
    thread_flows: List[List[Location]] = Field(default_factory=list)


class NormalizedIssue(BaseModel):
    rule_id: str
    rule_name: str
    severity: Severity
    full_description: Optional[str] = None
    locations: List[IssueLocation] = Field(default_factory=list)


class FileFindings(BaseModel):
    file_path: str
    issues: List[NormalizedIssue] = Field(default_factory=list)

    @property
    def severity(self) -> Severity:
        return max_severity(issue.severity for issue in self.issues)


class ScanFindings(BaseModel):
    """Normalized result of one whole-workspace scanner (SAST, IaC or Secrets)."""

    files_with_issues: List[FileFindings] = Field(default_factory=list)
    ignore_count: int = 0
    timestamp: Optional[datetime] = None

    @property
    def severity(self) -> Severity:
        return max_severity(f.severity for f in self.files_with_issues)

    @property
    def issue_count(self) -> int:
        return sum(len(f.issues) for f in self.files_with_issues)

    def is_empty(self) -> bool:
        return not self.files_with_issues


class Applicability(str, enum.Enum):
    APPLICABLE = "APPLICABLE"
    NOT_APPLICABLE = "NOT_APPLICABLE"
    UNKNOWN = "UNKNOWN"


class ApplicabilityDetail(BaseModel):
    cve_id: str
    fix_reason: str
    full_description: Optional[str] = None
    file_evidences: List[FileFindings] = Field(default_factory=list)


class ApplicabilityResult(BaseModel):
    scanned_cves: List[str] = Field(default_factory=list)
    applicable: Dict[str, ApplicabilityDetail] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def applicability_of(self, cve_id: str) -> Applicability:
        if cve_id in self.applicable:
            return Applicability.APPLICABLE
        if cve_id in self.scanned_cves:
            return Applicability.NOT_APPLICABLE
        return Applicability.UNKNOWN

    def is_empty(self) -> bool:
        return not self.scanned_cves and not self.applicable


# Dependency graph service contract ---------------------------------------------
class GraphCve(BaseModel):
    cve: Optional[str] = None


class GraphIssue(BaseModel):
    issue_id: str
    severity: str = "Unknown"
    summary: str = ""
    components: Dict[str, dict] = Field(default_factory=dict)
    cves: List[GraphCve] = Field(default_factory=list)


class GraphScanResponse(BaseModel):
    scan_id: Optional[str] = None
    violations: List[GraphIssue] = Field(default_factory=list)
    vulnerabilities: List[GraphIssue] = Field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return len(self.violations) + len(self.vulnerabilities)

    def issues(self) -> List[GraphIssue]:
        return [*self.vulnerabilities, *self.violations]

    def cve_ids(self) -> List[str]:
        seen: List[str] = []
        for issue in self.issues():
            for cve in issue.cves:
                if cve.cve and cve.cve not in seen:
                    seen.append(cve.cve)
        return seen


# Workspace aggregate -------------------------------------------------------------
class FailedFile(BaseModel):
    name: str
    full_path: str
    reason: str


class DependencyScanResult(BaseModel):
    name: str
    full_path: str
    package_type: str
    graph_scan_timestamp: datetime
    dependencies_graph_scan: GraphScanResponse

    @property
    def severity(self) -> Severity:
        return max_severity(severity_from_name(i.severity) for i in self.dependencies_graph_scan.issues())


class IssueAggregate(BaseModel):
    """All the issues of one workspace, populated while its scan runs."""

    path: str
    descriptors_issues: List[DependencyScanResult] = Field(default_factory=list)
    applicability: Optional[ApplicabilityResult] = None
    sast: Optional[ScanFindings] = None
    iac: Optional[ScanFindings] = None
    secrets: Optional[ScanFindings] = None
    failed_files: List[FailedFile] = Field(default_factory=list)

    def _code_scans(self) -> List[ScanFindings]:
        return [s for s in (self.sast, self.iac, self.secrets) if s is not None]

    def has_issues(self) -> bool:
        if self.descriptors_issues:
            return True
        if self.applicability and self.applicability.applicable:
            return True
        return any(not scan.is_empty() for scan in self._code_scans())

    def has_information(self) -> bool:
        return self.has_issues() or bool(self.failed_files)

    @property
    def top_severity(self) -> Severity:
        severities = [d.severity for d in self.descriptors_issues]
        severities.extend(scan.severity for scan in self._code_scans())
        return max_severity(severities)

    @property
    def oldest_scan_timestamp(self) -> Optional[datetime]:
        timestamps = [d.graph_scan_timestamp for d in self.descriptors_issues]
        timestamps.extend(scan.timestamp for scan in self._code_scans() if scan.timestamp)
        if self.applicability and self.applicability.timestamp:
            timestamps.append(self.applicability.timestamp)
        return min(timestamps, default=None)
