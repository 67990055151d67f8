from fastapi import APIRouter, HTTPException

from runengine.engine.session import Session
from runengine.services.session_store import session_store

router = APIRouter(prefix="/runs", tags=["runs"])


def _owner_or_404(run_id: str) -> Session:
    session = session_store.find_run(run_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown run_id")
    return session


@router.get("/{run_id}")
def get_run_detail(run_id: str):
    session = _owner_or_404(run_id)
    return {"session_id": session.session_id, "run": session.run, "steps": session.run_steps()}


@router.get("/{run_id}/events")
def get_run_events(run_id: str, limit: int = 200):
    session = _owner_or_404(run_id)
    events = session.ledger.events_since(session.run_mark) if session.run_mark else []
    limit = max(1, min(limit, 1000))
    return {"run_id": run_id, "events": events[-limit:]}
