from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from runengine.engine.ledger import ActivityLedger, LedgerMark
from runengine.engine.lifecycle import (
    Run,
    RunMode,
    RunState,
    RunStep,
    create_initial_run,
    get_run_steps,
    update_run_state,
)
from runengine.engine.queue import MessageQueue
from runengine.engine.records import ChatMessage, Notice, QueuedMessage, RiskPrompt, TestResult
from runengine.engine.risk import RiskGate
from runengine.utils.ids import new_id, now_ms


class SessionMode(StrEnum):
    CHAT = "CHAT"
    BUILD = "BUILD"


class SessionState(BaseModel):
    session_id: str
    created_at: int
    mode: SessionMode
    autopilot: bool
    busy: bool
    activity_banner: str | None
    current_phase: str | None
    agent_status: str | None
    run: Run | None
    run_steps: list[RunStep]
    messages: list[ChatMessage]
    queue: list[QueuedMessage]
    risk_prompt: RiskPrompt | None
    risk_submitting: bool
    notices: list[Notice]
    pending_plan: dict | None
    last_test_results: list[TestResult]


class Session:
    """
    All mutable state of one IDE session. Owned by the orchestrator and
    passed explicitly to every component; only the active turn writes it.
    """

    def __init__(
        self,
        session_id: str,
        *,
        mode: SessionMode = SessionMode.CHAT,
        autopilot: bool = False,
        max_thoughts: int | None = None,
        max_events: int | None = None,
    ) -> None:
        self.session_id = session_id
        self.created_at = now_ms()
        self.mode = mode
        self.autopilot = autopilot

        self.messages: list[ChatMessage] = []
        self.ledger = ActivityLedger(max_thoughts=max_thoughts, max_events=max_events)
        self.queue = MessageQueue()
        self.risk = RiskGate()

        self.run: Run | None = None
        self.run_mark: LedgerMark | None = None

        self.busy = False
        self.active_turn: Any = None
        # turn id of the turn currently advancing the run
        self.run_driver: str | None = None
        self.activity_banner: str | None = None
        self.current_phase: str | None = None
        self.agent_status: str | None = None
        self.notices: list[Notice] = []

        self.pending_plan: dict | None = None
        self.last_test_results: list[TestResult] = []

        self.seq = 0

    # ----------------------------
    # Runs
    # ----------------------------
    def start_run(self, mode: RunMode) -> Run:
        self.run = create_initial_run(new_id("run"), mode)
        self.run_mark = self.ledger.mark()
        return self.run

    def transition(self, new_state: RunState, **extra: Any) -> Run:
        if self.run is None:
            raise RuntimeError("No current run to transition")
        self.run = update_run_state(self.run, new_state, **extra)
        return self.run

    def run_steps(self) -> list[RunStep]:
        return get_run_steps(self.run) if self.run is not None else []

    # ----------------------------
    # Messages
    # ----------------------------
    def add_message(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    def add_system_message(self, text: str) -> ChatMessage:
        msg = ChatMessage(role="assistant", content=text, is_system=True)
        return self.add_message(msg)

    def history(self, limit: int) -> list[dict]:
        """Prior turns in the agent-chat wire shape ({role, parts})."""
        turns = [m for m in self.messages if not m.is_system and m.content.strip()]
        return [{"role": m.role, "parts": m.content} for m in turns[-limit:]] if limit > 0 else []

    def push_notice(self, text: str, level: str = "info") -> Notice:
        notice = Notice(text=text, level=level)
        self.notices.append(notice)
        return notice

    def drop_notice(self, notice_id: str) -> None:
        self.notices = [n for n in self.notices if n.id != notice_id]

    def next_seq(self) -> int:
        self.seq += 1
        return self.seq

    def snapshot(self) -> SessionState:
        return SessionState(
            session_id=self.session_id,
            created_at=self.created_at,
            mode=self.mode,
            autopilot=self.autopilot,
            busy=self.busy,
            activity_banner=self.activity_banner,
            current_phase=self.current_phase,
            agent_status=self.agent_status,
            run=self.run,
            run_steps=self.run_steps(),
            messages=list(self.messages),
            queue=self.queue.items(),
            risk_prompt=self.risk.pending,
            risk_submitting=self.risk.submitting,
            notices=list(self.notices),
            pending_plan=self.pending_plan,
            last_test_results=list(self.last_test_results),
        )
