#!/usr/bin/env python3
"""
Parley Session Store
Holds per-conversation state (voice, attached document, rolling memory) and
enforces the two-tier idle expiry: a grace window after socket disconnect and
an absolute idle timeout applied by a periodic sweep.
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .clock import Clock, TimerHandle, default_clock
from .logging_utils import setup_logger
from .memory import SessionMemory

logger = setup_logger("parley.session_store", "logs/parley.log")


@dataclass
class DocumentAttachment:
    """Text extracted from an uploaded document"""
    filename: str
    content: str
    size: int
    uploaded_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class ConversationSession:
    """State for one conversation, keyed by an opaque session token"""
    token: str
    voice_id: str
    memory: SessionMemory
    created_at: float
    last_activity: float
    document: Optional[DocumentAttachment] = None

    @property
    def document_text(self) -> Optional[str]:
        if self.document and self.document.content:
            return self.document.content
        return None


class SessionStore:
    """Thread-safe session table shared by the socket server and HTTP sidecar"""

    def __init__(self, idle_timeout: float = 1800.0, grace_period: float = 300.0,
                 sweep_interval: float = 600.0, default_voice: str = "en-US-terrell",
                 memory_window: int = 4, clock: Optional[Clock] = None):
        self.idle_timeout = idle_timeout
        self.grace_period = grace_period
        self.sweep_interval = sweep_interval
        self.default_voice = default_voice
        self.memory_window = memory_window
        self.clock = clock or default_clock()

        self._sessions: Dict[str, ConversationSession] = {}
        self._grace_timers: Dict[str, TimerHandle] = {}
        self._lock = threading.RLock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, token: str) -> bool:
        with self._lock:
            return token in self._sessions

    def tokens(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def get_or_create(self, token: str) -> ConversationSession:
        """Return the session for token, creating it on first use"""
        with self._lock:
            now = self.clock.time()
            session = self._sessions.get(token)
            if session is None:
                session = ConversationSession(
                    token=token,
                    voice_id=self.default_voice,
                    memory=SessionMemory(window=self.memory_window),
                    created_at=now,
                    last_activity=now,
                )
                self._sessions[token] = session
                logger.info(f"Session created: {token}")
            else:
                session.last_activity = now
            self._cancel_grace(token)
            return session

    def get(self, token: str) -> Optional[ConversationSession]:
        with self._lock:
            return self._sessions.get(token)

    def touch(self, token: str) -> None:
        with self._lock:
            session = self._sessions.get(token)
            if session:
                session.last_activity = self.clock.time()

    def set_voice(self, token: str, voice_id: str) -> ConversationSession:
        with self._lock:
            session = self.get_or_create(token)
            session.voice_id = voice_id
            logger.info(f"Voice for {token} set to {voice_id}")
            return session

    def attach_document(self, token: str, filename: str, content: str, size: int) -> DocumentAttachment:
        with self._lock:
            session = self.get_or_create(token)
            session.document = DocumentAttachment(filename=filename, content=content, size=size)
            logger.info(f"Document stored for {token}: {filename} ({len(content)} chars)")
            return session.document

    def remove(self, token: str) -> bool:
        with self._lock:
            self._cancel_grace(token)
            removed = self._sessions.pop(token, None) is not None
        if removed:
            logger.info(f"Session removed: {token}")
        return removed

    def expire_if_idle(self, token: str, idle_for: float) -> bool:
        """Remove the session if it has been inactive for at least idle_for seconds"""
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return False
            if self.clock.time() - session.last_activity < idle_for:
                return False
        return self.remove(token)

    def sweep(self) -> int:
        """Drop every session idle longer than the absolute timeout"""
        now = self.clock.time()
        with self._lock:
            stale = [t for t, s in self._sessions.items() if now - s.last_activity > self.idle_timeout]
            for token in stale:
                self._cancel_grace(token)
                del self._sessions[token]
        if stale:
            logger.info(f"Swept {len(stale)} idle session(s); {len(self)} remaining")
        return len(stale)

    def schedule_grace_expiry(self, token: str) -> None:
        """After a disconnect, expire the session if it stays idle for the grace window"""
        with self._lock:
            if token not in self._sessions:
                return
            self._cancel_grace(token)
            self._grace_timers[token] = self.clock.call_later(
                self.grace_period, self._grace_elapsed, token)

    def _grace_elapsed(self, token: str) -> None:
        with self._lock:
            self._grace_timers.pop(token, None)
        if self.expire_if_idle(token, self.grace_period):
            logger.info(f"Session expired after disconnect grace: {token}")

    def _cancel_grace(self, token: str) -> None:
        timer = self._grace_timers.pop(token, None)
        if timer is not None:
            timer.cancel()

    async def _sweep_loop(self) -> None:
        while True:
            await self.clock.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    def clear(self) -> None:
        with self._lock:
            for timer in self._grace_timers.values():
                timer.cancel()
            self._grace_timers.clear()
            self._sessions.clear()
