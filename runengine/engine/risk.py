from __future__ import annotations

import logging
from typing import Awaitable, Callable

from runengine.core.errors import (
    NoPendingRiskPromptError,
    RiskDecisionInFlightError,
    RiskDecisionSubmitError,
)
from runengine.engine.records import RiskPrompt

logger = logging.getLogger(__name__)

SubmitDecision = Callable[[str, bool], Awaitable[object]]


class RiskGate:
    """
    Single-slot approval checkpoint for sensitive backend actions.

    The pending prompt is cleared only after the decision request settles
    successfully. A failed submission leaves it in place for a retry.
    """

    def __init__(self) -> None:
        self._pending: RiskPrompt | None = None
        self._submitting = False

    @property
    def pending(self) -> RiskPrompt | None:
        return self._pending

    @property
    def submitting(self) -> bool:
        return self._submitting

    def publish(self, prompt: RiskPrompt) -> None:
        if self._pending is not None and self._pending.request_id != prompt.request_id:
            logger.warning(
                "Risk prompt %s replaced by %s before a decision was made",
                self._pending.request_id,
                prompt.request_id,
            )
        self._pending = prompt

    def clear_if(self, request_id: str) -> bool:
        if self._pending is not None and self._pending.request_id == request_id:
            self._pending = None
            return True
        return False

    async def decide(self, request_id: str, allow: bool, submit: SubmitDecision) -> RiskPrompt:
        prompt = self._pending
        if prompt is None or prompt.request_id != request_id:
            raise NoPendingRiskPromptError(f"No pending risk prompt {request_id!r}")
        if self._submitting:
            raise RiskDecisionInFlightError("A decision for this prompt is already being submitted")

        self._submitting = True
        try:
            await submit(request_id, allow)
        except Exception as e:
            logger.warning("Risk decision for %s failed: %s", request_id, e)
            raise RiskDecisionSubmitError(str(e) or e.__class__.__name__) from e
        finally:
            self._submitting = False

        # a newer prompt may have arrived while the request was in flight
        self.clear_if(request_id)
        return prompt
