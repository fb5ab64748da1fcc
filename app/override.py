from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

IDLE = "idle"
PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"

Continuation = Callable[[], Union[Any, Awaitable[Any]]]


class OverrideStateError(RuntimeError):
    """Raised when confirm/cancel is called with nothing pending."""


@dataclass
class OverrideRequest:
    blockers: List[str]
    warnings: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"blockers": list(self.blockers), "warnings": list(self.warnings), "context": dict(self.context)}


class OverrideCoordinator:
    """Holds one blocked request until the planner confirms or cancels it."""

    def __init__(self) -> None:
        self.state = IDLE
        self._request: Optional[OverrideRequest] = None
        self._continuation: Optional[Continuation] = None

    @property
    def pending(self) -> Optional[OverrideRequest]:
        return self._request if self.state == PENDING else None

    def request_override(
        self,
        blockers: List[str],
        warnings: List[str],
        context: Optional[Dict[str, Any]],
        on_confirm: Continuation,
    ) -> OverrideRequest:
        if self.state == PENDING:
            logger.info("override request superseded: %s", self._request.context if self._request else {})
        self._request = OverrideRequest(list(blockers), list(warnings), dict(context or {}))
        self._continuation = on_confirm
        self.state = PENDING
        return self._request

    async def confirm(self) -> Any:
        if self.state != PENDING or self._continuation is None:
            raise OverrideStateError("No override is pending.")
        continuation = self._continuation
        self.state = CONFIRMED
        self._request = None
        self._continuation = None
        try:
            result = continuation()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            if self.state == CONFIRMED:
                self.state = IDLE

    def cancel(self) -> None:
        if self.state != PENDING:
            raise OverrideStateError("No override is pending.")
        self.state = CANCELLED
        self._request = None
        self._continuation = None
        self.state = IDLE
