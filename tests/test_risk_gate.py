import asyncio

import pytest

from runengine.core.errors import (
    NetworkError,
    NoPendingRiskPromptError,
    RiskDecisionInFlightError,
    RiskDecisionSubmitError,
)
from runengine.engine.records import RiskPrompt
from runengine.engine.risk import RiskGate


def _prompt(request_id="req-1"):
    return RiskPrompt(request_id=request_id, description="Run a shell command", command="npm publish")


@pytest.mark.asyncio
async def test_allow_submits_and_clears():
    gate = RiskGate()
    gate.publish(_prompt())
    sent = []

    async def submit(request_id, allow):
        sent.append({"requestId": request_id, "allow": allow})
        return {"ok": True}

    decided = await gate.decide("req-1", True, submit)
    assert decided.request_id == "req-1"
    assert sent == [{"requestId": "req-1", "allow": True}]
    assert gate.pending is None
    assert gate.submitting is False


@pytest.mark.asyncio
async def test_failed_submission_keeps_the_prompt():
    gate = RiskGate()
    gate.publish(_prompt())

    async def submit(request_id, allow):
        raise NetworkError("HTTP 500", endpoint="/api/ai/agent/risk-decision", status_code=500)

    with pytest.raises(RiskDecisionSubmitError):
        await gate.decide("req-1", True, submit)
    assert gate.pending is not None
    assert gate.pending.request_id == "req-1"
    assert gate.submitting is False


@pytest.mark.asyncio
async def test_decision_requires_a_matching_prompt():
    gate = RiskGate()

    async def submit(request_id, allow):
        return {}

    with pytest.raises(NoPendingRiskPromptError):
        await gate.decide("req-1", False, submit)

    gate.publish(_prompt("req-2"))
    with pytest.raises(NoPendingRiskPromptError):
        await gate.decide("req-1", False, submit)


@pytest.mark.asyncio
async def test_second_decision_while_submitting_is_rejected():
    gate = RiskGate()
    gate.publish(_prompt())
    release = asyncio.Event()

    async def slow_submit(request_id, allow):
        await release.wait()
        return {}

    first = asyncio.create_task(gate.decide("req-1", True, slow_submit))
    await asyncio.sleep(0)
    assert gate.submitting is True

    with pytest.raises(RiskDecisionInFlightError):
        await gate.decide("req-1", False, slow_submit)

    release.set()
    await first
    assert gate.pending is None


def test_newer_prompt_replaces_older():
    gate = RiskGate()
    gate.publish(_prompt("req-1"))
    gate.publish(_prompt("req-2"))
    assert gate.pending.request_id == "req-2"
    assert gate.clear_if("req-1") is False
    assert gate.clear_if("req-2") is True
