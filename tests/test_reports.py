from runengine.engine.records import FixReport, TestResult
from runengine.engine.reports import (
    TestSummary,
    parse_test_results,
    suggest_after_fix,
    suggest_after_tests,
    summarize_fix,
    summarize_plan,
    summarize_tests,
)


def _results(passed: int, failed: int):
    ok = [TestResult(name=f"ok {i}", file="a.test.ts", status="passed") for i in range(passed)]
    bad = [TestResult(name=f"bad {i}", file="b.test.ts", status="failed", error="expected 1") for i in range(failed)]
    return ok + bad


def test_ten_tests_three_failing():
    results = _results(7, 3)
    summary = TestSummary.from_results(results)
    assert (summary.total, summary.passed, summary.failed) == (10, 7, 3)

    keys = [s.key for s in suggest_after_tests(summary.failed)]
    assert keys == ["auto_fix_tests", "explain_failures", "rerun_tests"]

    text = summarize_tests(results)
    assert "10 total, 7 passed, 3 failed" in text
    assert "bad 0 (b.test.ts): expected 1" in text


def test_all_passing_suggests_next_step():
    results = _results(4, 0)
    assert [s.key for s in suggest_after_tests(0)] == ["next_step", "rerun_tests"]
    assert "All tests pass." in summarize_tests(results)


def test_parse_test_results_ignores_junk():
    data = {"results": [{"name": "t", "file": "x.ts", "status": "error", "extra": 1}, "junk"]}
    results = parse_test_results(data)
    assert len(results) == 1
    assert results[0].failed
    assert parse_test_results({"nope": []}) == []


def test_fix_report_accepts_wire_names():
    report = FixReport.model_validate(
        {
            "fixedCount": 2,
            "stillFailing": 1,
            "suggestions": [{"diagnosis": "Off by one", "fix": "use <=", "filePath": "src/sum.ts", "confidence": 0.85}],
        }
    )
    text = summarize_fix(report)
    assert "2 fixes" in text
    assert "1 test still failing" in text
    assert "src/sum.ts (confidence 85%): Off by one" in text
    assert [s.key for s in suggest_after_fix(report.still_failing)][0] == "auto_fix_tests"


def test_plan_summary_mentions_phases():
    plan = {"phases": [{"name": "Scaffold", "tasks": [{"description": "Create app"}, "Add router"]}]}
    text = summarize_plan(plan, autopilot=False)
    assert "1 phase." in text
    assert "1. Scaffold (2 tasks)" in text
    assert "   - Add router" in text
    assert summarize_plan({}, autopilot=True) == "The planner returned an empty plan."
