"""
Outbound client channel and wire-message builders.

Messages are enqueued synchronously and written by a single writer task, so
a caller can check a cancellation token and enqueue in one step, and frames
leave in exactly the order they were enqueued.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Union

import websockets

from .logging_utils import setup_logger
from .memory import MemorySnapshot

logger = setup_logger("parley.channel", "logs/parley.log")

STATUS_CONNECTING = "Connecting..."
STATUS_LISTENING = "Listening..."
STATUS_THINKING = "Thinking..."
STATUS_SPEAKING = "Speaking..."
STATUS_STOPPED = "Stopped"


def session_ack(session_id: str) -> Dict[str, Any]:
    return {"type": "session_ack", "session_id": session_id}


def status(label: str) -> Dict[str, Any]:
    return {"type": "status", "status": label}


def transcript(text: str, is_final: bool) -> Dict[str, Any]:
    return {"type": "transcript", "text": text, "is_final": is_final}


def reply(text: str) -> Dict[str, Any]:
    return {"type": "reply", "text": text}


def stop_playback() -> Dict[str, Any]:
    return {"type": "stop_playback"}


def synthesis_complete() -> Dict[str, Any]:
    return {"type": "synthesis_complete"}


def error(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


def voice_ack(voice: str) -> Dict[str, Any]:
    return {"type": "voice_ack", "voice": voice}


def memory_snapshot(snapshot: MemorySnapshot) -> Dict[str, Any]:
    return {"type": "memory_snapshot", "memory": snapshot.to_message()}


_CLOSE = object()
Frame = Union[str, bytes]


class ClientChannel:
    """Ordered, queue-backed sender for one client websocket"""

    def __init__(self, websocket: Any, label: str = "client") -> None:
        self.websocket = websocket
        self.label = label
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False
        self._writer: Optional[asyncio.Task] = None
        self.frames_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send_json(self, message: Dict[str, Any]) -> bool:
        return self._enqueue(json.dumps(message))

    def send_audio(self, audio: bytes) -> bool:
        return self._enqueue(bytes(audio))

    def _enqueue(self, frame: Frame) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(frame)
        return True

    def start(self) -> asyncio.Task:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self.run())
        return self._writer

    async def run(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            try:
                await self.websocket.send(frame)
                self.frames_sent += 1
            except websockets.exceptions.ConnectionClosed:
                logger.info(f"{self.label}: socket closed, dropping outbound frames")
                self._closed = True
                return

    async def close(self) -> None:
        """Stop accepting frames, flush what is queued, and stop the writer"""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)
        if self._writer is not None:
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
