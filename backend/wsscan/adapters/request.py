from __future__ import annotations

import enum
import re
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


class ScanType(str, enum.Enum):
    APPLICABILITY = "analyze-applicability"
    IAC = "iac-scan-modules"
    SAST = "sast"
    SECRETS = "secrets-scan"

    @property
    def verb(self) -> str:
        return _VERBS[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_VERBS = {
    ScanType.APPLICABILITY: "ca",
    ScanType.IAC: "iac",
    ScanType.SAST: "zd",
    ScanType.SECRETS: "sec",
}

_DISPLAY_NAMES = {
    ScanType.APPLICABILITY: "Contextual Analysis",
    ScanType.IAC: "Infrastructure As Code",
    ScanType.SAST: "SAST",
    ScanType.SECRETS: "Secrets",
}

# The analyzer reads a handful of keys in kebab-case.
WIRE_KEY_RENAMES = {
    "skipped_folders": "skipped-folders",
    "excluded_rules": "excluded-rules",
    "cve_whitelist": "cve-whitelist",
}

_WIRE_KEY_PATTERN = re.compile(
    r"^(\s*(?:-\s+)?)(" + "|".join(re.escape(key) for key in WIRE_KEY_RENAMES) + r"):",
    re.MULTILINE,
)


class AnalyzeScanRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ScanType
    roots: List[str]
    output: str = ""
    skipped_folders: Optional[List[str]] = None

    def with_output(self, output: str) -> "AnalyzeScanRequest":
        return self.model_copy(update={"output": output})


class ApplicabilityScanRequest(AnalyzeScanRequest):
    type: ScanType = ScanType.APPLICABILITY
    grep_disable: bool = False
    cve_whitelist: List[str] = Field(default_factory=list)


class SastScanRequest(AnalyzeScanRequest):
    type: ScanType = ScanType.SAST
    language: Optional[str] = None
    exclude_patterns: List[str] = Field(default_factory=list)
    excluded_rules: List[str] = Field(default_factory=list)


def _rename_wire_keys(text: str) -> str:
    return _WIRE_KEY_PATTERN.sub(lambda m: m.group(1) + WIRE_KEY_RENAMES[m.group(2)] + ":", text)


def encode_request(*requests: AnalyzeScanRequest) -> str:
    """Serialize scan requests into the analyzer's YAML configuration document."""
    payload = {"scans": [request.model_dump(mode="json", exclude_none=True) for request in requests]}
    text = yaml.safe_dump(payload, sort_keys=False, default_flow_style=False)
    return _rename_wire_keys(text)


def to_analyzer_exclude_patterns(exclude_pattern: str | None) -> list[str]:
    """
    Expand a workspace exclude glob into analyzer skip patterns.

    ``<prefix>{a,b}<suffix>`` becomes one pattern per option and every pattern is
    made to match whole folders by ending it with ``/**``.
    """
    if not exclude_pattern:
        return []
    opening = exclude_pattern.find("{")
    closing = exclude_pattern.find("}")
    if opening >= 0 and closing > opening:
        prefix = exclude_pattern[:opening]
        suffix = exclude_pattern[closing + 1:]
        options = exclude_pattern[opening + 1:closing].split(",")
        candidates = [prefix + option + suffix for option in options]
    else:
        candidates = [exclude_pattern]
    return [p if p.endswith("/**") else p + "/**" for p in candidates]
