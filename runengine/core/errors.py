"""Error taxonomy for the run engine.

Everything the engine raises on purpose derives from `EngineError`, except
`TurnAborted`: a cancelled turn is an outcome, not a failure.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for typed engine errors."""


class NetworkError(EngineError):
    """A backend request was rejected or answered with a non-success status."""

    def __init__(self, message: str, *, endpoint: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class StreamProtocolError(EngineError):
    """A streamed line could not be decoded into a known record shape."""


class InvalidTransitionError(EngineError):
    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"Illegal run transition {from_state!r} -> {to_state!r}")
        self.from_state = from_state
        self.to_state = to_state


class MessageFinalizedError(EngineError):
    """Content of a finalized chat message cannot change."""


class NoPendingRiskPromptError(EngineError):
    pass


class RiskDecisionInFlightError(EngineError):
    pass


class RiskDecisionSubmitError(EngineError):
    """The decision could not be delivered; the prompt stays pending."""


class UnknownSessionError(EngineError):
    pass


class TurnAborted(Exception):
    """Raised inside a turn when its cancel token fires."""
