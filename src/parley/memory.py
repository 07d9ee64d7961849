"""
Rolling per-session conversation memory.

Tracks the user's name and location as mentioned in speech, the session date,
and the last few utterances and replies. A frozen MemorySnapshot is handed to
each turn so generation never sees memory mutate underneath it.
"""
from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Tuple

_NAME_PATTERN = re.compile(r"\b(?:my name is|i am|i'm|call me)\s+([A-Za-z]+)", re.IGNORECASE)

# Words that follow "I'm"/"I am" far more often than a name does
_NOT_NAMES = frozenset({
    "fine", "good", "great", "okay", "ok", "well", "not", "just", "here", "back",
    "sorry", "sure", "going", "doing", "trying", "looking", "from", "very", "so",
    "tired", "busy", "ready", "done", "happy", "sad", "the", "also", "still",
    "really", "feeling", "asking", "wondering", "thinking", "working", "at", "in",
})

_LOCATION_PATTERNS = [
    re.compile(r"\b(?:in|at|for)\s+([A-Z][a-zA-Z\s]+?)(?:\s+city)?(?:\?|$|,|\.|\s+what|\s+how)", re.IGNORECASE),
    re.compile(r"(?:weather|temperature|forecast)\s+(?:in|at|for)\s+([A-Z][a-zA-Z\s]+)", re.IGNORECASE),
    re.compile(r"(?:city|location|place)\s+(?:is|:)\s+([A-Z][a-zA-Z\s]+)", re.IGNORECASE),
]

_NOT_LOCATIONS = frozenset({
    "today", "tomorrow", "tonight", "now", "here", "home", "the moment", "this week",
    "the weekend", "a while", "me", "you", "it", "the day", "this morning", "this evening",
    "right now", "the week",
})


def detect_name(text: str) -> Optional[str]:
    """Return a self-introduced first name, if the utterance contains one."""
    match = _NAME_PATTERN.search(text or "")
    if not match:
        return None
    name = match.group(1)
    if len(name) <= 2 or name.lower() in _NOT_NAMES:
        return None
    return name[0].upper() + name[1:]


def extract_location(text: str) -> Optional[str]:
    """Best-effort place name from phrases like 'weather in Pune?'."""
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(text or "")
        if match and match.group(1):
            location = match.group(1).strip()
            if 2 < len(location) < 30 and location.lower() not in _NOT_LOCATIONS:
                return location
    return None


def session_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{now.strftime('%A')}, {now.strftime('%B')} {now.day}, {now.year}"


@dataclass(frozen=True)
class MemorySnapshot:
    """Immutable view of session memory taken when a turn starts."""
    user_name: Optional[str] = None
    location: Optional[str] = None
    date: Optional[str] = None
    recent_user: Tuple[str, ...] = ()
    recent_replies: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.user_name or self.location or self.recent_user)

    def render(self, recent_limit: int = 150) -> str:
        """Context block prepended to generation prompts."""
        lines = []
        if self.user_name:
            lines.append(f"User: {self.user_name}")
        if self.location:
            lines.append(f"Location: {self.location}")
        if self.date:
            lines.append(f"Date: {self.date}")
        if self.recent_user:
            recent = " | ".join(self.recent_user[-2:])
            lines.append(f"Recent: {recent[:recent_limit]}")
        return "\n".join(lines)

    def exchanges(self, limit: int = 3) -> List[Dict[str, str]]:
        users = list(self.recent_user)[-limit:]
        replies = list(self.recent_replies)[-limit:]
        return [
            {"user": msg, "assistant": replies[i] if i < len(replies) else ""}
            for i, msg in enumerate(users)
        ]

    def to_message(self) -> Dict[str, Any]:
        return {
            "user_name": self.user_name,
            "location": self.location,
            "date": self.date,
            "history": self.exchanges(),
        }


@dataclass
class SessionMemory:
    """Mutable rolling memory owned by one conversation session."""
    window: int = 4
    user_name: Optional[str] = None
    location: Optional[str] = None
    date: str = field(default_factory=session_date)
    recent_user: Deque[str] = field(default_factory=deque)
    recent_replies: Deque[str] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.recent_user = deque(self.recent_user, maxlen=self.window)
        self.recent_replies = deque(self.recent_replies, maxlen=self.window)

    def observe_utterance(self, text: str) -> None:
        """Pick up name/location mentions from a final transcript."""
        name = detect_name(text)
        if name:
            self.user_name = name
        location = extract_location(text)
        if location:
            self.location = location

    def record_exchange(self, user_text: Optional[str], reply: Optional[str]) -> None:
        if user_text:
            self.recent_user.append(user_text)
        if reply:
            self.recent_replies.append(reply)

    def snapshot(self) -> MemorySnapshot:
        return MemorySnapshot(
            user_name=self.user_name,
            location=self.location,
            date=self.date,
            recent_user=tuple(self.recent_user),
            recent_replies=tuple(self.recent_replies),
        )
