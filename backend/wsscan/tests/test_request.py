from __future__ import annotations

import yaml

from wsscan.adapters.request import (
    AnalyzeScanRequest,
    ApplicabilityScanRequest,
    SastScanRequest,
    ScanType,
    encode_request,
    to_analyzer_exclude_patterns,
)


def test_encode_request_is_deterministic():
    request = ApplicabilityScanRequest(
        roots=["/ws"],
        output="/tmp/response",
        cve_whitelist=["CVE-2021-1234"],
        skipped_folders=["**/node_modules/**"],
    )

    assert encode_request(request) == encode_request(request)


def test_encode_request_renames_wire_keys():
    request = ApplicabilityScanRequest(
        roots=["/ws"],
        output="/tmp/response",
        cve_whitelist=["CVE-2021-1234"],
        skipped_folders=["**/node_modules/**"],
    )

    text = encode_request(request)

    assert "cve-whitelist:" in text
    assert "skipped-folders:" in text
    assert "cve_whitelist" not in text
    assert "skipped_folders" not in text
    # grep_disable is read as is by the analyzer
    assert "grep_disable: false" in text

    scan = yaml.safe_load(text)["scans"][0]
    assert scan["type"] == "analyze-applicability"
    assert scan["roots"] == ["/ws"]
    assert scan["output"] == "/tmp/response"
    assert scan["cve-whitelist"] == ["CVE-2021-1234"]
    assert scan["skipped-folders"] == ["**/node_modules/**"]


def test_encode_sast_request_renames_excluded_rules_only():
    request = SastScanRequest(
        roots=["/ws"],
        language="python",
        exclude_patterns=["**/venv*/**"],
        excluded_rules=["python-stack-trace-exposure"],
    )

    scan = yaml.safe_load(encode_request(request))["scans"][0]

    assert scan["type"] == "sast"
    assert scan["language"] == "python"
    assert scan["excluded-rules"] == ["python-stack-trace-exposure"]
    assert scan["exclude_patterns"] == ["**/venv*/**"]


def test_encode_request_omits_unset_options():
    request = AnalyzeScanRequest(type=ScanType.IAC, roots=["/ws"]).with_output("/tmp/out")

    scan = yaml.safe_load(encode_request(request))["scans"][0]

    assert scan == {"type": "iac-scan-modules", "roots": ["/ws"], "output": "/tmp/out"}


def test_with_output_keeps_request_immutable():
    request = AnalyzeScanRequest(type=ScanType.SECRETS, roots=["/ws"])
    updated = request.with_output("/tmp/out")

    assert request.output == ""
    assert updated.output == "/tmp/out"
    assert updated.type.verb == "sec"


def test_scan_type_verbs():
    assert [t.verb for t in ScanType] == ["ca", "iac", "zd", "sec"]


def test_exclude_pattern_expands_brace_group():
    patterns = to_analyzer_exclude_patterns("**/*{node_modules,venv}*")

    assert patterns == ["**/*node_modules*/**", "**/*venv*/**"]


def test_exclude_pattern_without_braces():
    assert to_analyzer_exclude_patterns("**/dist") == ["**/dist/**"]
    assert to_analyzer_exclude_patterns("**/build/**") == ["**/build/**"]
    assert to_analyzer_exclude_patterns("") == []
    assert to_analyzer_exclude_patterns(None) == []
