"""
Barge-in detection.

Every caption the recognizer produces is shown to the InterruptController.
When a turn is generating or speaking and the user says something of
substance, the turn's token is revoked, the slot is freed and the client is
told to stop playback, all in one synchronous step.
"""
from __future__ import annotations

from typing import Callable, Optional

from .logging_utils import setup_logger
from .turns import Turn, TurnSlot

logger = setup_logger("parley.interrupt", "logs/parley.log")


class InterruptController:
    def __init__(self, slot: TurnSlot, notify_stop: Callable[[Turn, str], None], min_chars: int = 3):
        self.slot = slot
        self.notify_stop = notify_stop
        self.min_chars = min_chars
        self.interruptions = 0

    def is_barge_in(self, text: str) -> bool:
        return self.slot.busy and len((text or "").strip()) > self.min_chars

    def observe(self, text: str, is_final: bool = False) -> bool:
        """Check a caption for barge-in. Returns True if a turn was interrupted."""
        if not self.is_barge_in(text):
            return False
        kind = "final" if is_final else "interim"
        return self.interrupt(f"barge-in ({kind})") is not None

    def interrupt(self, reason: str) -> Optional[Turn]:
        """Revoke the active turn, if any, and signal the client to stop playback"""
        turn = self.slot.revoke(reason)
        if turn is None:
            return None
        self.interruptions += 1
        logger.info(f"Interrupted {turn.turn_id}: {reason}")
        self.notify_stop(turn, reason)
        return turn
