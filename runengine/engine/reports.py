from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from runengine.engine.records import FixReport, Suggestion, TestResult

AUTO_FIX_TESTS = Suggestion(key="auto_fix_tests", label="Auto-fix failing tests", action="auto_fix_tests")
EXPLAIN_FAILURES = Suggestion(key="explain_failures", label="Explain the failures", action="explain_failures")
RERUN_TESTS = Suggestion(key="rerun_tests", label="Re-run tests", action="rerun_tests")
NEXT_STEP = Suggestion(key="next_step", label="What should I do next?", action="next_step")
START_BUILD = Suggestion(key="start_build", label="Start build", action="start_build")

_MAX_LISTED = 10


def _truncate(s: str, n: int = 160) -> str:
    s = (s or "").strip()
    return s if len(s) <= n else (s[: n - 1] + "…")


# ----------------------------
# Plans
# ----------------------------
def _task_text(task: Any) -> str:
    if isinstance(task, str):
        return task
    if isinstance(task, dict):
        for key in ("description", "title", "name"):
            v = task.get(key)
            if isinstance(v, str) and v.strip():
                return v
    return str(task)


def plan_phases(plan: Any) -> list[dict]:
    phases = plan.get("phases") if isinstance(plan, dict) else None
    return [p for p in phases if isinstance(p, dict)] if isinstance(phases, list) else []


def summarize_plan(plan: Any, *, autopilot: bool) -> str:
    phases = plan_phases(plan)
    if not phases:
        return "The planner returned an empty plan."

    lines = [f"Project plan ready: {len(phases)} phase{'s' if len(phases) != 1 else ''}."]
    for i, phase in enumerate(phases, start=1):
        tasks = phase.get("tasks") if isinstance(phase.get("tasks"), list) else []
        name = phase.get("name") or f"Phase {i}"
        lines.append(f"{i}. {name} ({len(tasks)} task{'s' if len(tasks) != 1 else ''})")
        for task in tasks[:_MAX_LISTED]:
            lines.append(f"   - {_truncate(_task_text(task))}")
    lines.append("")
    lines.append("Autopilot is on, starting the build." if autopilot else "Start the build when you are ready.")
    return "\n".join(lines)


# ----------------------------
# Tests
# ----------------------------
@dataclass(frozen=True)
class TestSummary:
    __test__ = False

    total: int
    passed: int
    failed: int
    skipped: int

    @classmethod
    def from_results(cls, results: Iterable[TestResult]) -> "TestSummary":
        items = list(results)
        passed = sum(1 for r in items if r.status == "passed")
        failed = sum(1 for r in items if r.failed)
        skipped = sum(1 for r in items if r.status in ("skipped", "pending", "todo"))
        return cls(total=len(items), passed=passed, failed=failed, skipped=skipped)


def parse_test_results(data: Any) -> list[TestResult]:
    raw = data.get("results") if isinstance(data, dict) else None
    if not isinstance(raw, list):
        return []
    return [TestResult.model_validate(r) for r in raw if isinstance(r, dict)]


def suggest_after_tests(failed: int) -> list[Suggestion]:
    if failed > 0:
        return [AUTO_FIX_TESTS, EXPLAIN_FAILURES, RERUN_TESTS]
    return [NEXT_STEP, RERUN_TESTS]


def summarize_tests(results: list[TestResult]) -> str:
    s = TestSummary.from_results(results)
    if s.total == 0:
        return "No tests were found."
    head = f"Tests: {s.total} total, {s.passed} passed, {s.failed} failed, {s.skipped} skipped."
    if s.failed == 0:
        return head + "\nAll tests pass."
    lines = [head, "", "Failing:"]
    failing = [r for r in results if r.failed]
    for r in failing[:_MAX_LISTED]:
        where = f" ({r.file})" if r.file else ""
        err = f": {_truncate(r.error, 200)}" if r.error else ""
        lines.append(f"- {r.name or 'unnamed test'}{where}{err}")
    if len(failing) > _MAX_LISTED:
        lines.append(f"- … and {len(failing) - _MAX_LISTED} more")
    return "\n".join(lines)


def explain_failures_prompt(results: list[TestResult]) -> str:
    failing = [r for r in results if r.failed]
    if not failing:
        return "Explain the latest test run results."
    lines = ["Explain why these tests are failing and how to fix them:"]
    for r in failing[:_MAX_LISTED]:
        lines.append(f"- {r.name} ({r.file}): {_truncate(r.error or 'no error output', 400)}")
    return "\n".join(lines)


# ----------------------------
# Auto-fix
# ----------------------------
def suggest_after_fix(still_failing: int) -> list[Suggestion]:
    return suggest_after_tests(still_failing)


def _percent(confidence: float) -> int:
    # backends report either 0..1 or 0..100
    return round(confidence * 100) if confidence <= 1 else round(confidence)


def summarize_fix(report: FixReport) -> str:
    lines = [f"Auto-fix applied {report.fixed_count} fix{'es' if report.fixed_count != 1 else ''}; "
             f"{report.still_failing} test{'s' if report.still_failing != 1 else ''} still failing."]
    for sug in report.suggestions[:_MAX_LISTED]:
        conf = f" (confidence {_percent(sug.confidence)}%)" if sug.confidence is not None else ""
        path = sug.file_path or "unknown file"
        lines.append(f"- {path}{conf}: {_truncate(sug.diagnosis or sug.fix, 240)}")
    return "\n".join(lines)
