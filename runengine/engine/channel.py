"""
Out-of-band agent channel.

The backend pushes `{type, data}` frames independently of any request:
thinking fragments, tool/file/test activity, phase signals and risk
prompts. Frames are decoded into a closed union and applied to a session.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union, assert_never

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from runengine.engine.records import AgentEvent, RiskPrompt, ThinkingEntry
from runengine.utils.ids import new_id

if TYPE_CHECKING:
    from runengine.engine.session import Session

logger = logging.getLogger(__name__)


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: Any = None


class ThinkingFrame(_Frame):
    type: Literal["thinking"]


class ToolUseFrame(_Frame):
    type: Literal["tool_use"]


class FileChangeFrame(_Frame):
    type: Literal["file_change"]


class TestResultFrame(_Frame):
    __test__ = False

    type: Literal["test_result"]


class ProgressFrame(_Frame):
    type: Literal["progress"]


class CompleteFrame(_Frame):
    type: Literal["complete"]


class ErrorFrame(_Frame):
    type: Literal["error"]


class StatusFrame(_Frame):
    type: Literal["status"]


ChannelFrame = Annotated[
    Union[
        ThinkingFrame,
        ToolUseFrame,
        FileChangeFrame,
        TestResultFrame,
        ProgressFrame,
        CompleteFrame,
        ErrorFrame,
        StatusFrame,
    ],
    Field(discriminator="type"),
]

_FRAME_ADAPTER: TypeAdapter[ChannelFrame] = TypeAdapter(ChannelFrame)
_KNOWN = frozenset(
    {"thinking", "tool_use", "file_change", "test_result", "progress", "complete", "error", "status"}
)


def decode_frame(raw: str | bytes | dict) -> ChannelFrame | None:
    """Returns None for frames we do not understand (logged, never raised)."""
    try:
        obj = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Dropping unparsable channel frame")
        return None
    if not isinstance(obj, dict) or obj.get("type") not in _KNOWN:
        logger.debug("Ignoring channel frame of type %r", obj.get("type") if isinstance(obj, dict) else None)
        return None
    try:
        return _FRAME_ADAPTER.validate_python(obj)
    except ValidationError:
        logger.warning("Dropping malformed %r channel frame", obj.get("type"))
        return None


def _as_dict(x: Any) -> dict:
    return x if isinstance(x, dict) else {}


def _str_or_none(x: Any) -> str | None:
    return x.strip() if isinstance(x, str) and x.strip() else None


def _ts(data: dict) -> dict:
    for key in ("timestamp", "at"):
        v = data.get(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return {"timestamp": int(v)}
    return {}


def _thinking_entry(data: Any) -> ThinkingEntry:
    if isinstance(data, str):
        return ThinkingEntry(content=data)
    d = _as_dict(data)
    return ThinkingEntry(
        id=_str_or_none(d.get("id")) or new_id("thought"),
        content=str(d.get("content") or ""),
        category=_str_or_none(d.get("category")) or _str_or_none(d.get("type")) or "analysis",
        **_ts(d),
    )


def _risk_prompt(data: dict) -> RiskPrompt | None:
    request_id = _str_or_none(data.get("requestId"))
    if request_id is None:
        logger.warning("risk_prompt status without requestId")
        return None
    return RiskPrompt(
        request_id=request_id,
        description=_str_or_none(data.get("description")) or "High-risk action requested.",
        risk=_str_or_none(data.get("risk")),
        command=_str_or_none(data.get("command")),
        url=_str_or_none(data.get("url")),
        tool=_str_or_none(data.get("tool")),
    )


def _apply_status(session: "Session", data: Any) -> None:
    d = _as_dict(data)
    kind = d.get("type")

    if kind == "risk_prompt":
        prompt = _risk_prompt(d)
        if prompt is not None:
            session.risk.publish(prompt)
    elif kind == "risk_resolved":
        request_id = _str_or_none(d.get("requestId"))
        if request_id:
            session.risk.clear_if(request_id)

    phase = _str_or_none(d.get("phase"))
    if phase:
        session.current_phase = phase
    description = _str_or_none(d.get("description"))
    if description and kind != "risk_prompt":
        session.agent_status = description

    session.ledger.add_event(
        AgentEvent(type="status", label=description or phase or _str_or_none(kind), detail=d or data, **_ts(d))
    )


def apply_frame(session: "Session", frame: ChannelFrame) -> None:
    if isinstance(frame, ThinkingFrame):
        session.ledger.add_thought(_thinking_entry(frame.data))
    elif isinstance(frame, ToolUseFrame):
        d = _as_dict(frame.data)
        session.ledger.add_event(AgentEvent(type="tool_use", label=_str_or_none(d.get("tool")), detail=frame.data))
    elif isinstance(frame, FileChangeFrame):
        d = _as_dict(frame.data)
        path = _str_or_none(d.get("path"))
        change = _str_or_none(d.get("changeType")) or "update"
        label = f"{change} {path}" if path else change
        session.ledger.add_event(AgentEvent(type="file_change", label=label, detail=frame.data, **_ts(d)))
    elif isinstance(frame, TestResultFrame):
        d = _as_dict(frame.data)
        session.ledger.add_event(
            AgentEvent(type="test_result", label=_str_or_none(d.get("status")), detail=frame.data)
        )
    elif isinstance(frame, ProgressFrame):
        d = _as_dict(frame.data)
        label = " / ".join(x for x in (_str_or_none(d.get("phaseId")), _str_or_none(d.get("taskId"))) if x)
        session.ledger.add_event(AgentEvent(type="progress", label=label or None, detail=frame.data))
    elif isinstance(frame, CompleteFrame):
        session.ledger.add_event(AgentEvent(type="complete", label="complete", detail=frame.data))
    elif isinstance(frame, ErrorFrame):
        text = frame.data if isinstance(frame.data, str) else _str_or_none(_as_dict(frame.data).get("message"))
        session.ledger.add_event(AgentEvent(type="error", label=text, detail=frame.data))
    elif isinstance(frame, StatusFrame):
        _apply_status(session, frame.data)
    else:
        assert_never(frame)


def ingest(session: "Session", raw: str | bytes | dict) -> bool:
    frame = decode_frame(raw)
    if frame is None:
        return False
    apply_frame(session, frame)
    return True
