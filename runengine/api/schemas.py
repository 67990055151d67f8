from pydantic import BaseModel, ConfigDict, Field

from runengine.engine.session import SessionMode


class CreateSessionRequest(BaseModel):
    mode: SessionMode = Field(default=SessionMode.CHAT, description="CHAT | BUILD")
    autopilot: bool | None = None


class CreateSessionResponse(BaseModel):
    session_id: str


class SessionListItem(BaseModel):
    session_id: str
    created_at: int
    mode: SessionMode
    busy: bool


class SubmitMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class SubmitResponse(BaseModel):
    session_id: str
    queued: bool
    turn_id: str | None = None
    queued_id: str | None = None


class SetModeRequest(BaseModel):
    mode: SessionMode
    autopilot: bool | None = None


class RiskDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    allow: bool
