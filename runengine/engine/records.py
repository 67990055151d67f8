from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from runengine.core.errors import MessageFinalizedError
from runengine.utils.ids import new_id, now_ms


AgentEventType = Literal[
    "tool_use",
    "file_change",
    "test_result",
    "progress",
    "complete",
    "error",
    "status",
    "thinking",
]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ----------------------------
# Activity records (append-only)
# ----------------------------
class ThinkingEntry(_Frozen):
    id: str = Field(default_factory=lambda: new_id("thought"))
    content: str
    category: str = "analysis"
    timestamp: int = Field(default_factory=now_ms)


class AgentEvent(_Frozen):
    id: str = Field(default_factory=lambda: new_id("evt"))
    type: AgentEventType
    label: str | None = None
    detail: Any = None
    timestamp: int = Field(default_factory=now_ms)


# ----------------------------
# Chat
# ----------------------------
class Suggestion(_Frozen):
    key: str
    label: str
    action: str


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    thoughts: str | None = None
    thought_duration_ms: int | None = None
    suggestions: list[Suggestion] | None = None
    attachments: list[dict] | None = None
    is_system: bool = False
    aborted: bool = False
    finalized: bool = False

    def append_content(self, delta: str) -> None:
        if self.finalized:
            raise MessageFinalizedError(f"message {self.id} is finalized")
        self.content += delta

    def attach_suggestions(self, suggestions: list[Suggestion]) -> None:
        if self.finalized:
            raise MessageFinalizedError(f"message {self.id} is finalized")
        self.suggestions = list(suggestions)

    def finalize(
        self,
        *,
        thoughts: str | None = None,
        thought_duration_ms: int | None = None,
        aborted: bool = False,
    ) -> None:
        if self.finalized:
            return
        self.thoughts = thoughts
        self.thought_duration_ms = thought_duration_ms
        self.aborted = aborted
        self.finalized = True


class QueuedMessage(_Frozen):
    id: str = Field(default_factory=lambda: new_id("queued"))
    content: str
    action: str | None = None


class RiskPrompt(_Frozen):
    request_id: str
    description: str
    risk: str | None = None
    command: str | None = None
    url: str | None = None
    tool: str | None = None


class Notice(_Frozen):
    id: str = Field(default_factory=lambda: new_id("notice"))
    level: Literal["info", "warning", "error"] = "info"
    text: str
    timestamp: int = Field(default_factory=now_ms)


# ----------------------------
# Backend payload shapes
# ----------------------------
class TestResult(BaseModel):
    __test__ = False  # not a pytest class

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    file: str = ""
    status: str = "unknown"
    duration: float | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status in ("failed", "error")


class FixSuggestion(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    diagnosis: str = ""
    fix: str = ""
    file_path: str = Field(default="", alias="filePath")
    confidence: float | None = None


class FixReport(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    fixed_count: int = Field(default=0, alias="fixedCount")
    still_failing: int = Field(default=0, alias="stillFailing")
    details: Any = None
    suggestions: list[FixSuggestion] = Field(default_factory=list)
