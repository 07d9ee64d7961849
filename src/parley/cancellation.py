"""
Cooperative cancellation for conversational turns.

One CancellationToken is issued per active turn and shared by the response
router call and every synthesis request for that turn. Revoking a token does
not abort outstanding provider requests; every consumer checks the token after
each suspension point and drops the result instead of surfacing it.
"""
from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, TypeVar

from .error_handler import TurnCancelled
from .logging_utils import setup_logger

logger = setup_logger("parley.cancellation", "logs/parley.log")

T = TypeVar("T")


class CancellationToken:
    """Revocable flag with callbacks and an await-then-check helper."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Revoke the token. Returns False if it was already revoked."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Cancellation callback error: {e}")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run callback on revocation; immediately if already revoked."""
        if self._cancelled:
            callback(self._reason or "cancelled")
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled(self._reason or "cancelled")

    async def checkpoint(self, awaitable: Awaitable[T]) -> T:
        """Await, then refuse to hand back the result if revoked meanwhile."""
        self.raise_if_cancelled()
        result = await awaitable
        self.raise_if_cancelled()
        return result

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self._cancelled else "live"
        return f"CancellationToken({self.label!r}, {state})"


def never_cancelled() -> CancellationToken:
    """A fresh token nobody else holds, for callers outside a turn."""
    return CancellationToken("detached")
