from fastapi import APIRouter, HTTPException

from runengine.api.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    RiskDecisionRequest,
    SessionListItem,
    SetModeRequest,
    SubmitMessageRequest,
    SubmitResponse,
)
from runengine.core.errors import (
    InvalidTransitionError,
    NoPendingRiskPromptError,
    RiskDecisionInFlightError,
    RiskDecisionSubmitError,
    UnknownSessionError,
)
from runengine.engine.ledger import LedgerMark
from runengine.engine.records import QueuedMessage
from runengine.engine.session import Session
from runengine.services.orchestrator import KNOWN_ACTIONS, orchestrator_manager
from runengine.services.session_store import session_store

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _session_or_404(session_id: str) -> Session:
    try:
        return session_store.get(session_id)
    except UnknownSessionError:
        raise HTTPException(status_code=404, detail="Unknown session_id")


def _submitted(session: Session, result) -> SubmitResponse:
    if isinstance(result, QueuedMessage):
        return SubmitResponse(session_id=session.session_id, queued=True, queued_id=result.id)
    return SubmitResponse(session_id=session.session_id, queued=False, turn_id=result.turn_id)


@router.post("", response_model=CreateSessionResponse)
def create_session(body: CreateSessionRequest):
    session = session_store.create(body.mode, body.autopilot)
    return CreateSessionResponse(session_id=session.session_id)


@router.get("/history", response_model=list[SessionListItem])
def list_sessions(limit: int = 20):
    return [
        SessionListItem(session_id=s.session_id, created_at=s.created_at, mode=s.mode, busy=s.busy)
        for s in session_store.list(limit)
    ]


@router.get("/{session_id}/state")
def get_state(session_id: str):
    return _session_or_404(session_id).snapshot()


@router.post("/{session_id}/messages", response_model=SubmitResponse)
async def submit_message(session_id: str, body: SubmitMessageRequest):
    session = _session_or_404(session_id)
    result = await orchestrator_manager.get().submit(session, body.content)
    return _submitted(session, result)


@router.post("/{session_id}/actions/{key}", response_model=SubmitResponse)
async def run_action(session_id: str, key: str):
    session = _session_or_404(session_id)
    if key not in KNOWN_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown action {key}")
    label = key.replace("_", " ").capitalize()
    result = await orchestrator_manager.get().submit(session, label, action=key)
    return _submitted(session, result)


@router.post("/{session_id}/abort")
async def abort(session_id: str):
    session = _session_or_404(session_id)
    aborted = await orchestrator_manager.get().abort(session)
    return {"session_id": session_id, "aborted": aborted}


@router.delete("/{session_id}/queue/{queued_id}")
async def cancel_queued(session_id: str, queued_id: str):
    session = _session_or_404(session_id)
    if not await orchestrator_manager.get().cancel_queued(session, queued_id):
        raise HTTPException(status_code=404, detail="Unknown queued message")
    return {"session_id": session_id, "cancelled": queued_id}


@router.put("/{session_id}/mode")
async def set_mode(session_id: str, body: SetModeRequest):
    session = _session_or_404(session_id)
    await orchestrator_manager.get().set_mode(session, body.mode, body.autopilot)
    return {"session_id": session_id, "mode": session.mode, "autopilot": session.autopilot}


@router.post("/{session_id}/risk-decision")
async def risk_decision(session_id: str, body: RiskDecisionRequest):
    session = _session_or_404(session_id)
    try:
        await orchestrator_manager.get().decide_risk(session, body.request_id, body.allow)
    except (NoPendingRiskPromptError, RiskDecisionInFlightError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RiskDecisionSubmitError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"session_id": session_id, "request_id": body.request_id, "allow": body.allow}


@router.post("/{session_id}/run/reset")
async def reset_run(session_id: str):
    session = _session_or_404(session_id)
    try:
        await orchestrator_manager.get().reset_run(session)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"session_id": session_id, "run": session.run}


@router.get("/{session_id}/activity")
def get_activity(session_id: str, thinking_from: int = 0, events_from: int = 0):
    session = _session_or_404(session_id)
    mark = LedgerMark(thinking_start_index=thinking_from, event_start_index=events_from)
    return {
        "session_id": session_id,
        "thinking_end": session.ledger.thoughts.end,
        "events_end": session.ledger.events.end,
        "thoughts": session.ledger.thoughts_since(mark),
        "events": session.ledger.events_since(mark),
    }
