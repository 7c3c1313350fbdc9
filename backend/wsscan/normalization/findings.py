from __future__ import annotations

import enum
from typing import Iterable
from urllib.parse import unquote


class Severity(enum.IntEnum):
    NORMAL = 0
    PENDING = 1
    UNKNOWN = 2
    INFORMATION = 3
    LOW = 4
    MEDIUM = 5
    HIGH = 6

    @property
    def label(self) -> str:
        return _SEVERITY_LABELS[self]


_SEVERITY_LABELS = {
    Severity.NORMAL: "Scanned - No Issues",
    Severity.PENDING: "Pending Scan",
    Severity.UNKNOWN: "Unknown",
    Severity.INFORMATION: "Information",
    Severity.LOW: "Low",
    Severity.MEDIUM: "Medium",
    Severity.HIGH: "High",
}

_LEVEL_TO_SEVERITY = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "none": Severity.UNKNOWN,
}

_NAME_TO_SEVERITY = {
    "normal": Severity.NORMAL,
    "pending": Severity.PENDING,
    "unknown": Severity.UNKNOWN,
    "information": Severity.INFORMATION,
    "low": Severity.LOW,
    "medium": Severity.MEDIUM,
    "high": Severity.HIGH,
    "critical": Severity.HIGH,
}


def level_to_severity(level: str | None) -> Severity:
    """Translate an analyzer result level; results without a level default to medium."""
    if not level:
        return Severity.MEDIUM
    return _LEVEL_TO_SEVERITY.get(level.lower(), Severity.MEDIUM)


def severity_from_name(name: str | None) -> Severity:
    if not name:
        return Severity.UNKNOWN
    return _NAME_TO_SEVERITY.get(name.strip().lower(), Severity.UNKNOWN)


def max_severity(severities: Iterable[Severity]) -> Severity:
    return max(severities, default=Severity.NORMAL)


def parse_location_file_path(uri: str) -> str:
    """
    Analyzer locations are SARIF ``file://`` URIs, percent-encoded. Strip the
    scheme and decode so the value can be compared with workspace paths.
    """
    if uri.startswith("file:///") and len(uri) > 10 and uri[9] == ":":
        # file:///C:/... on windows
        uri = uri[len("file:///"):]
    elif uri.startswith("file://"):
        uri = uri[len("file://"):]
    return unquote(uri)
