"""
Turn bookkeeping: the unit of work from a completed utterance to a fully
streamed (or abandoned) reply, and the single slot that holds the active one.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Optional

from .cancellation import CancellationToken
from .memory import MemorySnapshot


@dataclass(eq=False)
class Turn:
    turn_id: str
    utterance: str
    confidence: float
    memory: MemorySnapshot
    document_text: Optional[str]
    token: CancellationToken
    started_at: float = 0.0
    reply: Optional[str] = None
    chunks_sent: int = field(default=0)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


class TurnSlot:
    """Holds at most one active turn.

    All methods are synchronous so that revoking the current turn and
    installing the next one cannot interleave with other coroutines on the
    same event loop.
    """

    def __init__(self, label: str = "session") -> None:
        self.label = label
        self._active: Optional[Turn] = None
        self._ids = itertools.count(1)

    @property
    def active(self) -> Optional[Turn]:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None

    def is_current(self, turn: Turn) -> bool:
        return self._active is turn and not turn.token.cancelled

    def begin(self, utterance: str, confidence: float, memory: MemorySnapshot,
              document_text: Optional[str] = None, now: float = 0.0) -> Turn:
        """Install a new active turn, revoking whatever was active before"""
        self.revoke("superseded")
        turn_id = f"{self.label}-{next(self._ids)}"
        turn = Turn(
            turn_id=turn_id,
            utterance=utterance,
            confidence=confidence,
            memory=memory,
            document_text=document_text,
            token=CancellationToken(turn_id),
            started_at=now,
        )
        self._active = turn
        return turn

    def revoke(self, reason: str) -> Optional[Turn]:
        """Cancel and clear the active turn. Returns it, or None if the slot was empty."""
        turn, self._active = self._active, None
        if turn is not None:
            turn.token.cancel(reason)
        return turn

    def release(self, turn: Turn) -> bool:
        """Clear the slot if `turn` still owns it (normal completion)."""
        if self._active is turn:
            self._active = None
            return True
        return False
