from __future__ import annotations

from datetime import datetime, timezone

from wsscan.normalization.applicability import (
    cve_from_rule_id,
    merge_applicability_results,
    normalize_applicability_response,
)
from wsscan.normalization.findings import Severity, level_to_severity, parse_location_file_path
from wsscan.normalization.sarif import merge_scan_findings, normalize_response
from wsscan.normalization.sast import normalize_sast_response
from wsscan.schemas import Applicability, AnalyzerScanResponse


def region(start_line, start_column, end_line, end_column):
    return {"startLine": start_line, "startColumn": start_column, "endLine": end_line, "endColumn": end_column}


def location(uri, reg):
    return {"physicalLocation": {"artifactLocation": {"uri": uri}, "region": reg}}


def issue(rule_id, uri="a.js", reg=None, **extra):
    data = {"ruleId": rule_id, "message": {"text": f"{rule_id} message"}, "locations": [location(uri, reg or region(1, 1, 1, 5))]}
    data.update(extra)
    return data


def response(results, rules=None):
    return AnalyzerScanResponse.model_validate(
        {"runs": [{"tool": {"driver": {"name": "analyzer", "rules": rules or []}}, "results": results}]}
    )


def flatten(findings):
    return [
        (f.file_path, i.rule_id, [(loc.region.start_line, loc.region.start_column, loc.region.end_line, loc.region.end_column) for loc in i.locations])
        for f in findings.files_with_issues
        for i in f.issues
    ]


def test_single_issue_is_grouped_by_file():
    findings = normalize_response(
        response([issue("R1", reg=region(1, 1, 1, 5))], rules=[{"id": "R1", "fullDescription": {"text": "desc"}}])
    )

    assert len(findings.files_with_issues) == 1
    file_findings = findings.files_with_issues[0]
    assert file_findings.file_path == "a.js"
    assert len(file_findings.issues) == 1
    normalized = file_findings.issues[0]
    assert normalized.rule_id == "R1"
    assert normalized.full_description == "desc"
    assert [(l.region.start_line, l.region.start_column, l.region.end_line, l.region.end_column) for l in normalized.locations] == [(1, 1, 1, 5)]


def test_same_rule_in_same_file_merges_locations():
    findings = normalize_response(response([issue("R1", reg=region(1, 1, 1, 5)), issue("R1", reg=region(7, 2, 7, 9))]))

    assert flatten(findings) == [("a.js", "R1", [(1, 1, 1, 5), (7, 2, 7, 9)])]


def test_rules_and_files_are_kept_apart():
    findings = normalize_response(
        response([issue("R1"), issue("R2"), issue("R1", uri="b.js"), issue("R2", reg=region(3, 1, 3, 2))])
    )

    assert flatten(findings) == [
        ("a.js", "R1", [(1, 1, 1, 5)]),
        ("a.js", "R2", [(1, 1, 1, 5), (3, 1, 3, 2)]),
        ("b.js", "R1", [(1, 1, 1, 5)]),
    ]


def test_suppressed_issues_are_counted_not_listed():
    findings = normalize_response(
        response([issue("R1"), issue("R2", suppressions=[{"kind": "external"}]), issue("R3", suppressions=[{"kind": "inSource"}])])
    )

    assert findings.ignore_count == 2
    assert [i.rule_id for f in findings.files_with_issues for i in f.issues] == ["R1"]


def test_rule_name_and_level():
    findings = normalize_response(
        response(
            [issue("R1", level="error"), issue("R2", level="note"), issue("R3")],
            rules=[{"id": "R1", "name": "Hardcoded secret"}],
        )
    )
    issues = {i.rule_id: i for i in findings.files_with_issues[0].issues}

    assert issues["R1"].rule_name == "Hardcoded secret"
    assert issues["R2"].rule_name == "R2 message"
    assert issues["R1"].severity == Severity.HIGH
    assert issues["R2"].severity == Severity.LOW
    assert issues["R3"].severity == Severity.MEDIUM
    assert findings.severity == Severity.HIGH


def test_empty_or_missing_response_is_empty_result():
    for empty in (None, AnalyzerScanResponse(), AnalyzerScanResponse.model_validate({"runs": []})):
        findings = normalize_response(empty)
        assert findings.is_empty()
        assert findings.ignore_count == 0


def test_missing_optional_fields_are_tolerated():
    raw = AnalyzerScanResponse.model_validate(
        {"runs": [{"results": [{"ruleId": "R1"}, {"ruleId": "R2", "locations": [{}]}, {"ruleId": "R3", "locations": [location("c.tf", None)]}]}]}
    )

    findings = normalize_response(raw)

    assert flatten(findings) == [("c.tf", "R3", [(0, 0, 0, 0)])]


def test_file_uris_are_decoded():
    findings = normalize_response(response([issue("R1", uri="file:///home/dev/my%20app/a.js")]))

    assert findings.files_with_issues[0].file_path == "/home/dev/my app/a.js"
    assert parse_location_file_path("file:///C:/dev/a.js") == "C:/dev/a.js"
    assert parse_location_file_path("relative/a.js") == "relative/a.js"


def test_merging_two_normalizations_equals_normalizing_concatenation():
    first = [issue("R1", reg=region(1, 1, 1, 5)), issue("R2", uri="b.js")]
    second = [issue("R1", reg=region(9, 1, 9, 3)), issue("R3", uri="b.js", suppressions=[{"kind": "external"}])]
    rules = [{"id": "R1", "fullDescription": {"text": "desc"}}]

    merged = merge_scan_findings(normalize_response(response(first, rules)), normalize_response(response(second, rules)))
    together = normalize_response(response(first + second, rules))

    assert merged.files_with_issues == together.files_with_issues
    assert merged.ignore_count == together.ignore_count == 1


def test_normalizing_twice_does_not_share_state():
    raw = response([issue("R1")])

    first = normalize_response(raw)
    second = normalize_response(raw)

    assert first == second
    first.files_with_issues[0].issues[0].locations.clear()
    assert len(second.files_with_issues[0].issues[0].locations) == 1


def thread_flow(*hops):
    return {"threadFlows": [{"locations": [{"location": location(uri, reg)} for uri, reg in hops]}]}


def test_sast_code_flow_attaches_to_matching_location_only():
    sink = region(10, 3, 10, 12)
    other = region(20, 1, 20, 4)
    flow = thread_flow(
        ("file:///ws/source.py", region(1, 1, 1, 9)),
        ("file:///ws/util.py", region(4, 2, 4, 8)),
        ("file:///ws/app.py", sink),
    )
    raw = response(
        [
            {
                "ruleId": "python-sql-injection",
                "message": {"text": "SQL injection"},
                "level": "error",
                "locations": [location("file:///ws/app.py", sink), location("file:///ws/app.py", other)],
                "codeFlows": [flow],
            }
        ]
    )

    findings = normalize_sast_response(raw)

    locations = findings.files_with_issues[0].issues[0].locations
    assert len(locations) == 2
    assert len(locations[0].thread_flows) == 1
    assert [hop.file_path for hop in locations[0].thread_flows[0]] == ["/ws/source.py", "/ws/util.py", "/ws/app.py"]
    assert locations[1].thread_flows == []


def test_sast_code_flow_ending_elsewhere_attaches_to_nothing():
    flow = thread_flow(("file:///ws/app.py", region(1, 1, 1, 2)), ("file:///ws/other.py", region(10, 3, 10, 12)))
    raw = response([issue("R1", uri="file:///ws/app.py", reg=region(10, 3, 10, 12), codeFlows=[flow])])

    findings = normalize_sast_response(raw)

    assert findings.files_with_issues[0].issues[0].locations[0].thread_flows == []


def test_sast_code_flow_skips_hops_without_location():
    sink = region(5, 1, 5, 6)
    raw = response(
        [
            issue(
                "R1",
                uri="app.py",
                reg=sink,
                codeFlows=[
                    {
                        "threadFlows": [
                            {
                                "locations": [
                                    {"location": {"physicalLocation": {"region": region(1, 1, 1, 1)}}},
                                    {},
                                    {"location": location("app.py", region(2, 1, 2, 3))},
                                    {"location": location("app.py", sink)},
                                ]
                            }
                        ]
                    }
                ],
            )
        ]
    )

    flows = normalize_sast_response(raw).files_with_issues[0].issues[0].locations[0].thread_flows

    assert len(flows) == 1
    assert [hop.region.start_line for hop in flows[0]] == [2, 5]


def test_sast_code_flow_with_unusable_final_hop_attaches_to_nothing():
    sink = region(5, 1, 5, 6)
    flow = {
        "threadFlows": [
            {
                "locations": [
                    {"location": location("app.py", region(2, 1, 2, 3))},
                    {"location": location("app.py", sink)},
                    {"location": {"physicalLocation": {"region": region(9, 1, 9, 2)}}},
                ]
            }
        ]
    }
    raw = response([issue("R1", uri="app.py", reg=sink, codeFlows=[flow])])

    flows = normalize_sast_response(raw).files_with_issues[0].issues[0].locations[0].thread_flows

    assert flows == []


def test_merging_sast_results_keeps_code_flows():
    sink = region(10, 3, 10, 12)
    flow = thread_flow(("file:///ws/source.py", region(1, 1, 1, 9)), ("file:///ws/app.py", sink))
    first = [issue("R1", uri="file:///ws/app.py", reg=sink, codeFlows=[flow])]
    second = [
        issue("R1", uri="file:///ws/app.py", reg=region(30, 1, 30, 2)),
        issue("R2", uri="file:///ws/app.py", reg=sink, codeFlows=[flow]),
    ]

    merged = merge_scan_findings(normalize_sast_response(response(first)), normalize_sast_response(response(second)))
    together = normalize_sast_response(response(first + second))

    assert merged.files_with_issues == together.files_with_issues
    issues = {i.rule_id: i for i in merged.files_with_issues[0].issues}
    assert [len(loc.thread_flows) for loc in issues["R1"].locations] == [1, 0]
    assert len(issues["R2"].locations[0].thread_flows) == 1


def test_cve_id_is_extracted_from_rule_id():
    assert cve_from_rule_id("applic_CVE-2021-1234") == "CVE-2021-1234"
    assert cve_from_rule_id("CVE-2020-1") == "CVE-2020-1"
    assert cve_from_rule_id("no-marker") == "no-marker"


def test_applicability_tracks_scanned_and_applicable_cves():
    raw = response(
        [
            issue("applic_CVE-2021-1234", uri="file:///ws/index.js", reg=region(3, 1, 3, 20)),
            issue("applic_CVE-2021-1234", uri="file:///ws/lib.js", reg=region(8, 1, 8, 4)),
        ],
        rules=[
            {"id": "applic_CVE-2021-1234", "fullDescription": {"text": "lodash template"}},
            {"id": "applic_CVE-2020-9999"},
        ],
    )

    result = normalize_applicability_response(raw)

    assert result.scanned_cves == ["CVE-2021-1234", "CVE-2020-9999"]
    detail = result.applicable["CVE-2021-1234"]
    assert detail.full_description == "lodash template"
    assert detail.fix_reason == "applic_CVE-2021-1234 message"
    assert [f.file_path for f in detail.file_evidences] == ["/ws/index.js", "/ws/lib.js"]
    assert result.applicability_of("CVE-2021-1234") == Applicability.APPLICABLE
    assert result.applicability_of("CVE-2020-9999") == Applicability.NOT_APPLICABLE
    assert result.applicability_of("CVE-1999-0001") == Applicability.UNKNOWN


def test_applicability_newer_fix_reason_replaces_detail():
    first = issue("applic_CVE-2021-1234", uri="a.js")
    second = issue("applic_CVE-2021-1234", uri="b.js")
    second["message"] = {"text": "different reason"}

    detail = normalize_applicability_response(response([first, second])).applicable["CVE-2021-1234"]

    assert detail.fix_reason == "different reason"
    assert [f.file_path for f in detail.file_evidences] == ["b.js"]


def applicability_run(results, rules=None):
    return {"tool": {"driver": {"name": "applicability", "rules": rules or []}}, "results": results}


def test_merging_applicability_equals_normalizing_all_runs():
    run = applicability_run(
        [
            issue("applic_CVE-2021-1234", uri="file:///ws/index.js", reg=region(3, 1, 3, 20)),
            issue("applic_CVE-2021-1234", uri="file:///ws/lib.js", reg=region(8, 1, 8, 4)),
        ],
        rules=[{"id": "applic_CVE-2021-1234"}, {"id": "applic_CVE-2020-9999"}],
    )
    single = AnalyzerScanResponse.model_validate({"runs": [run]})

    merged = merge_applicability_results(
        normalize_applicability_response(single), normalize_applicability_response(single)
    )
    together = normalize_applicability_response(AnalyzerScanResponse.model_validate({"runs": [run, run]}))

    assert merged == together
    evidences = merged.applicable["CVE-2021-1234"].file_evidences
    assert [(f.file_path, len(f.issues[0].locations)) for f in evidences] == [
        ("/ws/index.js", 2),
        ("/ws/lib.js", 2),
    ]


def test_merging_applicability_with_new_fix_reason_replaces_evidence():
    older = normalize_applicability_response(response([issue("applic_CVE-2021-1234", uri="a.js")]))
    changed = issue("applic_CVE-2021-1234", uri="b.js")
    changed["message"] = {"text": "different reason"}
    newer = normalize_applicability_response(response([changed, issue("applic_CVE-2022-0001", uri="c.js")]))
    older.timestamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
    newer.timestamp = datetime(2024, 2, 1, tzinfo=timezone.utc)

    merged = merge_applicability_results(older, newer)

    detail = merged.applicable["CVE-2021-1234"]
    assert detail.fix_reason == "different reason"
    assert [f.file_path for f in detail.file_evidences] == ["b.js"]
    assert merged.scanned_cves == ["CVE-2021-1234", "CVE-2022-0001"]
    assert merged.timestamp == newer.timestamp
    # inputs are left untouched
    assert [f.file_path for f in older.applicable["CVE-2021-1234"].file_evidences] == ["a.js"]


def test_applicability_empty_response():
    result = normalize_applicability_response(None)

    assert result.is_empty()
    assert result.applicability_of("CVE-2021-1234") == Applicability.UNKNOWN


def test_level_mapping():
    assert level_to_severity("warning") == Severity.MEDIUM
    assert level_to_severity("none") == Severity.UNKNOWN
    assert level_to_severity(None) == Severity.MEDIUM
