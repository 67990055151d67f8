from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Protocol

from runengine.core.config import get_settings
from runengine.core.errors import InvalidTransitionError, NetworkError, RiskDecisionSubmitError, TurnAborted
from runengine.engine import channel
from runengine.engine.cancel import CancelToken
from runengine.engine.ledger import LedgerMark, summarize_thoughts
from runengine.engine.lifecycle import RunMode, RunState, is_active, is_terminal
from runengine.engine.records import ChatMessage, FixReport, QueuedMessage, Suggestion
from runengine.engine.reports import (
    START_BUILD,
    RERUN_TESTS,
    TestSummary,
    explain_failures_prompt,
    parse_test_results,
    suggest_after_fix,
    suggest_after_tests,
    summarize_fix,
    summarize_plan,
    summarize_tests,
)
from runengine.engine.session import Session, SessionMode
from runengine.engine.stream import StreamOutcome, consume_json, consume_ndjson
from runengine.services.backend_client import BackendClient
from runengine.services.websocket_manager import ws_manager

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TurnKind(StrEnum):
    CHAT = "chat"
    PLAN_PROJECT = "plan_project"
    EXECUTE_PROJECT = "execute_project"
    RUN_TESTS = "run_tests"
    AUTO_FIX_TESTS = "auto_fix_tests"


class TurnOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


_ACTION_KINDS: dict[str, TurnKind] = {
    "run_tests": TurnKind.RUN_TESTS,
    "rerun_tests": TurnKind.RUN_TESTS,
    "auto_fix_tests": TurnKind.AUTO_FIX_TESTS,
    "start_build": TurnKind.EXECUTE_PROJECT,
    "explain_failures": TurnKind.CHAT,
    "next_step": TurnKind.CHAT,
}

KNOWN_ACTIONS = frozenset(_ACTION_KINDS)

_BANNERS: dict[TurnKind, str] = {
    TurnKind.CHAT: "Thinking…",
    TurnKind.PLAN_PROJECT: "Planning project…",
    TurnKind.EXECUTE_PROJECT: "Building project…",
    TurnKind.RUN_TESTS: "Running tests…",
    TurnKind.AUTO_FIX_TESTS: "Fixing failing tests…",
}

_OUTCOME_BANNERS: dict[TurnOutcome, str] = {
    TurnOutcome.COMPLETED: "Done",
    TurnOutcome.FAILED: "Failed",
    TurnOutcome.ABORTED: "Stopped",
}


def select_protocol(mode: SessionMode, action: str | None = None) -> TurnKind:
    if action:
        kind = _ACTION_KINDS.get(action)
        if kind is None:
            raise ValueError(f"Unknown action {action!r}")
        return kind
    return TurnKind.PLAN_PROJECT if mode == SessionMode.BUILD else TurnKind.CHAT


class Publisher(Protocol):
    async def broadcast(self, session_id: str, message: Dict[str, Any]) -> None: ...


@dataclass
class Turn:
    kind: TurnKind
    content: str
    prompt: str
    action: str | None
    history: list[dict]
    mark: LedgerMark
    cancel: CancelToken = field(default_factory=CancelToken)
    turn_id: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    backend_error: bool = False

    def result_message(self) -> ChatMessage | None:
        for m in self.messages:
            if not m.is_system:
                return m
        return self.messages[-1] if self.messages else None


class _ChatSink:
    """Routes agent-chat records into the turn's assistant message."""

    def __init__(self, session: Session, turn: Turn) -> None:
        self.session = session
        self.turn = turn
        self.message: ChatMessage | None = None
        self.outbox: list[dict] = []

    def on_delta(self, text: str) -> None:
        if self.message is None:
            self.message = self.session.add_message(ChatMessage(role="assistant"))
            self.turn.messages.append(self.message)
        self.message.append_content(text)
        self.outbox.append({"type": "message_delta", "message_id": self.message.id, "delta": text})

    def on_error(self, message: str) -> None:
        self.turn.backend_error = True
        self.turn.messages.append(self.session.add_system_message(message))
        # busy ends now even if the body keeps draining
        if self.session.active_turn is self.turn:
            self.session.busy = False
        self.outbox.append({"type": "busy", "busy": self.session.busy})

    def on_final(self) -> None:
        if self.session.active_turn is self.turn:
            self.session.busy = False
        self.outbox.append({"type": "busy", "busy": self.session.busy})


class TurnOrchestrator:
    def __init__(self, backend: BackendClient, publisher: Publisher | None = None) -> None:
        self.backend = backend
        self.publisher: Publisher = publisher or ws_manager
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._banner_tasks: dict[str, asyncio.Task] = {}
        self._timers: set[asyncio.Task] = set()
        self._turn_seq = 0

    # ----------------------------
    # Publishing
    # ----------------------------
    async def _emit(self, session: Session, frame: dict) -> None:
        await self.publisher.broadcast(
            session.session_id,
            {"ts": _now_iso(), "seq": session.next_seq(), "session_id": session.session_id, **frame},
        )

    async def publish_state(self, session: Session) -> None:
        await self._emit(session, {"type": "session_state", "state": session.snapshot().model_dump(mode="json")})

    async def _flush(self, session: Session, sink: _ChatSink) -> None:
        frames, sink.outbox = sink.outbox, []
        for frame in frames:
            await self._emit(session, frame)

    async def _tap(self, session: Session, sink: _ChatSink, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        # the consumer asks for the next chunk only after handling the previous one
        async for chunk in chunks:
            yield chunk
            await self._flush(session, sink)

    # ----------------------------
    # Timers
    # ----------------------------
    def _later(self, delay: float, fn: Callable[[], None], session: Session) -> asyncio.Task:
        async def _run() -> None:
            await asyncio.sleep(delay)
            fn()
            await self.publish_state(session)

        task = asyncio.create_task(_run())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    def _cancel_banner_clear(self, session: Session) -> None:
        task = self._banner_tasks.pop(session.session_id, None)
        if task is not None:
            task.cancel()

    def _schedule_banner_clear(self, session: Session) -> None:
        self._cancel_banner_clear(session)

        def _clear() -> None:
            self._banner_tasks.pop(session.session_id, None)
            session.activity_banner = None

        self._banner_tasks[session.session_id] = self._later(get_settings().ACTIVITY_BANNER_CLEAR_S, _clear, session)

    async def notify(self, session: Session, text: str, level: str = "info") -> None:
        notice = session.push_notice(text, level)
        self._later(get_settings().NOTICE_TTL_S, lambda: session.drop_notice(notice.id), session)
        await self._emit(session, {"type": "notice", "notice": notice.model_dump(mode="json")})

    # ----------------------------
    # Turn start / end
    # ----------------------------
    async def submit(self, session: Session, content: str, action: str | None = None) -> Turn | QueuedMessage:
        if action is not None:
            select_protocol(session.mode, action)
        # an older queued message must start first even if busy was cleared early
        if session.busy or len(session.queue):
            item = session.queue.enqueue(content, action)
            logger.info("Session %s busy, queued %s (%d waiting)", session.session_id, item.id, len(session.queue))
            await self.publish_state(session)
            return item
        turn = self.start_turn(session, content, action)
        await self.publish_state(session)
        return turn

    def _supersede(self, session: Session, turn: Turn, reason: str) -> None:
        turn.cancel.cancel(reason)
        if session.run_driver != turn.turn_id:
            return
        run = session.run
        if run is not None and is_active(run.state):
            session.transition(RunState.CANCELLED)
            if run.state == RunState.PLANNING:
                session.pending_plan = None
        session.run_driver = None

    def start_turn(self, session: Session, content: str, action: str | None = None) -> Turn:
        """
        Turn-start invariant, applied without yielding to the loop: abort the
        previous operation, snapshot ledger indices, mark the session busy.
        """
        previous = session.active_turn
        if previous is not None:
            self._supersede(session, previous, "superseded")

        kind = select_protocol(session.mode, action)
        if action == "explain_failures":
            prompt = explain_failures_prompt(session.last_test_results)
        elif action == "next_step":
            prompt = "The tests pass. What is the most useful next step for this project?"
        else:
            prompt = content

        self._turn_seq += 1
        turn = Turn(
            kind=kind,
            content=content,
            prompt=prompt,
            action=action,
            history=session.history(get_settings().CHAT_HISTORY_LIMIT),
            mark=session.ledger.mark(),
            turn_id=f"{session.session_id}:{self._turn_seq}",
        )
        session.active_turn = turn
        session.busy = True
        self._cancel_banner_clear(session)
        session.activity_banner = _BANNERS[kind]
        session.add_message(ChatMessage(role="user", content=content))

        task = asyncio.create_task(self._run_turn(session, turn), name=f"turn-{turn.turn_id}")
        running = self._tasks.setdefault(session.session_id, set())
        running.add(task)
        task.add_done_callback(running.discard)
        logger.info("Turn %s started (%s)", turn.turn_id, kind.value)
        return turn

    async def _run_turn(self, session: Session, turn: Turn) -> None:
        handlers: dict[TurnKind, Callable[[Session, Turn], Awaitable[None]]] = {
            TurnKind.CHAT: self._chat,
            TurnKind.PLAN_PROJECT: self._plan_project,
            TurnKind.EXECUTE_PROJECT: self._execute_project,
            TurnKind.RUN_TESTS: self._run_tests,
            TurnKind.AUTO_FIX_TESTS: self._auto_fix_tests,
        }
        outcome = TurnOutcome.COMPLETED
        try:
            await handlers[turn.kind](session, turn)
            if turn.backend_error:
                outcome = TurnOutcome.FAILED
        except TurnAborted:
            outcome = TurnOutcome.ABORTED
        except NetworkError as e:
            outcome = TurnOutcome.FAILED
            logger.warning("Turn %s failed at %s: %s", turn.turn_id, e.endpoint, e)
            self._fail(session, turn, str(e))
        except Exception:
            outcome = TurnOutcome.FAILED
            logger.exception("Turn %s crashed", turn.turn_id)
            self._fail(session, turn, "The agent run stopped because of an internal error.")

        await self._finish_turn(session, turn, outcome)

    async def _finish_turn(self, session: Session, turn: Turn, outcome: TurnOutcome) -> None:
        active = session.active_turn is turn
        if outcome == TurnOutcome.ABORTED and active:
            self._supersede(session, turn, "aborted")
        # the activity window needs a message to land on, even for an empty reply
        if not turn.messages:
            turn.messages.append(session.add_message(ChatMessage(role="assistant")))

        thoughts, duration = summarize_thoughts(session.ledger.thoughts_since(turn.mark))
        result = turn.result_message()
        aborted = outcome == TurnOutcome.ABORTED and not turn.backend_error
        for msg in turn.messages:
            if msg is result:
                msg.finalize(thoughts=thoughts, thought_duration_ms=duration, aborted=aborted)
            else:
                msg.finalize(aborted=aborted)

        logger.info("Turn %s %s", turn.turn_id, outcome.value)
        if not active:
            await self.publish_state(session)
            return

        session.active_turn = None
        session.busy = False
        session.activity_banner = _OUTCOME_BANNERS[outcome]
        self._schedule_banner_clear(session)

        # drain before yielding so a concurrent submit queues behind it
        nxt = session.queue.pop_next()
        if nxt is not None:
            logger.info("Starting queued message %s", nxt.id)
            self.start_turn(session, nxt.content, nxt.action)
        await self.publish_state(session)

    def _fail(self, session: Session, turn: Turn, text: str) -> None:
        turn.messages.append(session.add_system_message(text))
        run = session.run
        if run is not None and session.run_driver == turn.turn_id and is_active(run.state):
            session.transition(RunState.ERROR)

    # ----------------------------
    # Run helpers
    # ----------------------------
    def _drive(self, session: Session, turn: Turn, state: RunState) -> None:
        session.transition(state)
        session.run_driver = turn.turn_id

    def _begin_run(self, session: Session, turn: Turn, mode: RunMode, state: RunState) -> None:
        run = session.run
        if run is not None and is_active(run.state):
            if run.state == RunState.PLANNING:
                session.pending_plan = None
            session.transition(RunState.CANCELLED)
        session.start_run(mode)
        self._drive(session, turn, state)

    def _reply(
        self,
        session: Session,
        turn: Turn,
        text: str,
        suggestions: list[Suggestion] | None = None,
        *,
        is_system: bool = False,
    ) -> ChatMessage:
        msg = ChatMessage(role="assistant", content=text, is_system=is_system)
        if suggestions:
            msg.attach_suggestions(suggestions)
        turn.messages.append(session.add_message(msg))
        return msg

    # ----------------------------
    # Sub-protocols
    # ----------------------------
    async def _chat(self, session: Session, turn: Turn) -> None:
        sink = _ChatSink(session, turn)
        mode = "build" if session.mode == SessionMode.BUILD else "chat"
        async with AsyncExitStack() as stack:
            reply = await turn.cancel.guard(
                stack.enter_async_context(self.backend.agent_chat(turn.prompt, turn.history, mode))
            )
            if reply.is_stream:
                outcome, stats = await consume_ndjson(self._tap(session, sink, reply.chunks()), sink, turn.cancel)
            else:
                payload = await turn.cancel.guard(reply.json())
                outcome, stats = StreamOutcome.COMPLETED, consume_json(payload, sink)
        await self._flush(session, sink)
        logger.debug("Turn %s stream: %s", turn.turn_id, stats)
        if outcome == StreamOutcome.ABORTED:
            raise TurnAborted(turn.cancel.reason or "aborted")

    async def _plan_project(self, session: Session, turn: Turn) -> None:
        self._begin_run(session, turn, RunMode.BUILD, RunState.PLANNING)
        session.pending_plan = None
        await self.publish_state(session)

        plan = await turn.cancel.guard(self.backend.plan_project(turn.prompt))
        session.pending_plan = plan
        text = summarize_plan(plan, autopilot=session.autopilot)
        if session.autopilot:
            self._reply(session, turn, text)
            await self._build(session, turn)
        else:
            self._reply(session, turn, text, [START_BUILD])

    async def _execute_project(self, session: Session, turn: Turn) -> None:
        run = session.run
        if session.pending_plan is None or run is None or run.state != RunState.PLANNING:
            text = "There is no project plan waiting to be built. Describe the goal in BUILD mode first."
            self._reply(session, turn, text, is_system=True)
            return
        session.run_driver = turn.turn_id
        await self._build(session, turn)

    async def _build(self, session: Session, turn: Turn) -> None:
        self._drive(session, turn, RunState.EXECUTING)
        session.activity_banner = _BANNERS[TurnKind.EXECUTE_PROJECT]
        await self.publish_state(session)

        await turn.cancel.guard(self.backend.execute_project(session.pending_plan or {}))
        session.pending_plan = None
        self._reply(session, turn, "Build finished. Running the tests to verify it.")

        self._drive(session, turn, RunState.TESTING)
        await self._test_cycle(session, turn)

    async def _run_tests(self, session: Session, turn: Turn) -> None:
        run = session.run
        if run is not None and run.state == RunState.TESTING:
            session.run_driver = turn.turn_id
        elif run is not None and run.state == RunState.FIXING:
            self._drive(session, turn, RunState.TESTING)
        else:
            self._begin_run(session, turn, RunMode.TEST, RunState.TESTING)
        await self._test_cycle(session, turn)

    async def _test_cycle(self, session: Session, turn: Turn) -> None:
        session.activity_banner = _BANNERS[TurnKind.RUN_TESTS]
        await self.publish_state(session)

        data = await turn.cancel.guard(self.backend.run_tests())
        results = parse_test_results(data)
        session.last_test_results = results
        summary = TestSummary.from_results(results)
        self._reply(session, turn, summarize_tests(results), suggest_after_tests(summary.failed))
        if summary.failed == 0:
            self._drive(session, turn, RunState.DONE)

    async def _auto_fix_tests(self, session: Session, turn: Turn) -> None:
        failures = [r for r in session.last_test_results if r.failed]
        if not failures:
            self._reply(session, turn, "There are no failing tests to fix. Run the tests first.", [RERUN_TESTS], is_system=True)
            return

        run = session.run
        if run is not None and run.state == RunState.TESTING:
            self._drive(session, turn, RunState.FIXING)
        elif run is not None and run.state == RunState.FIXING:
            session.run_driver = turn.turn_id
        else:
            self._begin_run(session, turn, RunMode.TEST_FIX, RunState.FIXING)
        await self.publish_state(session)

        payload = [f.model_dump(exclude_none=True) for f in failures]
        data = await turn.cancel.guard(self.backend.fix_tests(payload))
        report = FixReport.model_validate(data)
        if report.still_failing == 0:
            self._reply(session, turn, summarize_fix(report), suggest_after_fix(0))
            self._drive(session, turn, RunState.DONE)
            return

        # verify in the same turn so the Tests step and the failure list are current
        self._reply(session, turn, summarize_fix(report))
        self._drive(session, turn, RunState.TESTING)
        await self._test_cycle(session, turn)

    # ----------------------------
    # Other session operations
    # ----------------------------
    async def abort(self, session: Session) -> bool:
        turn = session.active_turn
        if turn is None:
            return False
        turn.cancel.cancel("aborted by user")
        return True

    async def cancel_queued(self, session: Session, item_id: str) -> bool:
        removed = session.queue.cancel(item_id)
        if removed:
            await self.publish_state(session)
        return removed

    async def decide_risk(self, session: Session, request_id: str, allow: bool) -> None:
        try:
            await session.risk.decide(request_id, allow, self.backend.risk_decision)
        except RiskDecisionSubmitError as e:
            await self.notify(session, f"Could not send your decision: {e}. Try again.", "error")
            await self.publish_state(session)
            raise
        if not allow:
            await self.notify(session, "Action denied. The agent will not run it.", "warning")
        await self.publish_state(session)

    async def set_mode(self, session: Session, mode: SessionMode, autopilot: bool | None = None) -> None:
        session.mode = mode
        if autopilot is not None:
            session.autopilot = autopilot
        await self.publish_state(session)

    async def reset_run(self, session: Session) -> None:
        run = session.run
        if run is None or not is_terminal(run.state):
            raise InvalidTransitionError(run.state.value if run else "none", RunState.IDLE.value)
        session.transition(RunState.IDLE)
        session.run_driver = None
        await self.publish_state(session)

    async def ingest_channel(self, session: Session, raw: str | bytes | dict) -> bool:
        applied = channel.ingest(session, raw)
        if applied:
            await self.publish_state(session)
        return applied

    async def wait_idle(self, session: Session) -> None:
        """Wait until no turn of this session is running (queued ones included)."""
        while True:
            running = [t for t in self._tasks.get(session.session_id, set()) if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [t for group in self._tasks.values() for t in group] + list(self._timers)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class OrchestratorManager:
    def __init__(self) -> None:
        self._orchestrator: TurnOrchestrator | None = None

    def start(self, backend: BackendClient | None = None) -> TurnOrchestrator:
        if self._orchestrator is not None:
            return self._orchestrator
        self._orchestrator = TurnOrchestrator(backend or BackendClient.from_settings())
        return self._orchestrator

    def get(self) -> TurnOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("OrchestratorManager not started yet")
        return self._orchestrator

    async def stop(self) -> None:
        if self._orchestrator is None:
            return
        orchestrator, self._orchestrator = self._orchestrator, None
        await orchestrator.shutdown()
        await orchestrator.backend.aclose()


orchestrator_manager = OrchestratorManager()
