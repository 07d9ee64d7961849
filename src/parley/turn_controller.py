"""
Per-connection conversation state machine.

A TurnController owns one client channel, at most one recognition bridge and
at most one active turn. Recognition callbacks arrive synchronously on the
event loop; anything that has to wait (routing, synthesis, closing sockets)
runs in tasks tracked by the controller so close() can retire them.

States:
    IDLE -> LISTENING -> EVALUATING -> GENERATING -> SYNTHESIZING -> LISTENING
    GENERATING/SYNTHESIZING -> INTERRUPTED -> LISTENING  (barge-in, cancel_reply)
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from . import channel as msg
from .cancellation import CancellationToken
from .clock import Clock, default_clock
from .error_handler import ErrorSeverity, RecognitionError, TurnCancelled, ValidationError, handle_error
from .interrupt import InterruptController
from .logging_utils import log_with_context, setup_logger
from .recognition import RecognitionBridge, RecognitionListener
from .router import ResponseRouter
from .session_store import ConversationSession, SessionStore
from .synthesis import SYNTHESIS_FAILED_MESSAGE, SynthesisStreamer
from .turns import Turn, TurnSlot
from .validation import InputValidator, get_validator

logger = setup_logger("parley.turn_controller", "logs/parley.log")

RECOGNITION_UNAVAILABLE = "Speech recognition is unavailable right now. Please try again."
RECOGNITION_LOST = "Lost connection to speech recognition. Please start listening again."
TURN_FAILED = "Something went wrong while answering. Please try again."

BridgeFactory = Callable[[RecognitionListener], RecognitionBridge]

NEW_UTTERANCE = "new utterance"
LISTENING_ENDED = "listening ended"
# interrupt reasons after which the controller is not going back to plain listening
_QUIET_INTERRUPTS = (NEW_UTTERANCE, LISTENING_ENDED)


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    EVALUATING = "evaluating"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    INTERRUPTED = "interrupted"


class TurnController(RecognitionListener):
    def __init__(self, channel: Any, store: SessionStore, router: ResponseRouter,
                 streamer: SynthesisStreamer, bridge_factory: BridgeFactory,
                 clock: Optional[Clock] = None, validator: Optional[InputValidator] = None,
                 barge_in_min_chars: int = 3, settle_sec: float = 0.15, label: str = "conn"):
        self.channel = channel
        self.store = store
        self.router = router
        self.streamer = streamer
        self.bridge_factory = bridge_factory
        self.clock = clock or default_clock()
        self.validator = validator or get_validator()
        self.settle_sec = settle_sec
        self.label = label

        self.slot = TurnSlot(label)
        self.interrupts = InterruptController(self.slot, self._on_interrupted, barge_in_min_chars)
        self.state = TurnState.IDLE
        self.transitions: List[TurnState] = []
        self.session: Optional[ConversationSession] = None
        self.bridge: Optional[RecognitionBridge] = None

        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[Turn] = set()
        self._closed = False

    # ---- state ----

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_turns(self) -> List[Turn]:
        """Turns still generating or synthesizing with an unrevoked token"""
        return [t for t in self._in_flight if not t.token.cancelled]

    def _set_state(self, state: TurnState) -> None:
        if state is not self.state:
            logger.debug(f"{self.label}: {self.state.value} -> {state.value}")
            self.state = state
            self.transitions.append(state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _send(self, message: Dict[str, Any]) -> bool:
        if self._closed:
            return False
        return self.channel.send_json(message)

    def _emit(self, token: CancellationToken, message: Dict[str, Any]) -> bool:
        """Send a message belonging to a turn, unless that turn has been revoked"""
        if token.cancelled:
            return False
        return self._send(message)

    def _emit_audio(self, token: CancellationToken, audio: bytes) -> bool:
        if token.cancelled or self._closed:
            return False
        return self.channel.send_audio(audio)

    # ---- inbound frames ----

    async def handle_frame(self, frame: Union[str, bytes]) -> None:
        if isinstance(frame, (bytes, bytearray)):
            await self.handle_audio(bytes(frame))
        else:
            await self.handle_message(frame)

    async def handle_message(self, raw: Union[str, Dict[str, Any]]) -> None:
        if self._closed:
            return
        try:
            message = self.validator.validate_control_message(raw)
        except ValidationError as e:
            logger.warning(f"{self.label}: rejected control message ({e.reason}): {e}")
            self._send(msg.error(str(e)))
            return

        msg_type = message["type"]
        if msg_type == "attach_session":
            self._attach(message["session_id"], message.get("voice"))
        elif msg_type == "begin_listening":
            await self._begin_listening(message.get("session_id"))
        elif msg_type == "end_listening":
            await self._end_listening()
        elif msg_type == "cancel_reply":
            self._cancel_reply()
        elif msg_type == "change_voice":
            self._change_voice(message["voice"])

    async def handle_audio(self, frame: bytes) -> None:
        if self._closed or self.bridge is None or not self.bridge.is_open:
            return
        await self.bridge.feed(frame)

    # ---- control operations ----

    def _attach(self, session_id: str, voice: Optional[str] = None) -> ConversationSession:
        self.session = self.store.get_or_create(session_id)
        if voice:
            self.store.set_voice(session_id, voice)
        log_with_context(logger, logging.INFO, "Session attached", session_id=session_id, connection=self.label)
        self._send(msg.session_ack(session_id))
        snapshot = self.session.memory.snapshot()
        if not snapshot.is_empty:
            self._send(msg.memory_snapshot(snapshot))
        self._set_state(TurnState.LISTENING)
        return self.session

    async def _begin_listening(self, session_id: Optional[str] = None) -> None:
        if session_id and (self.session is None or self.session.token != session_id):
            self._attach(session_id)
        if self.session is None:
            self._send(msg.error("Missing session id. Attach a session before listening."))
            return
        if self.bridge is not None and self.bridge.is_open:
            return
        await self._drop_bridge()

        self._send(msg.status(msg.STATUS_CONNECTING))
        bridge = self.bridge_factory(self)
        self.bridge = bridge
        try:
            await bridge.open()
        except RecognitionError as e:
            handle_error(e, "turn_controller", "begin_listening", ErrorSeverity.HIGH,
                         session_id=self.session.token)
            if self.bridge is bridge:
                self.bridge = None
            self._send(msg.error(RECOGNITION_UNAVAILABLE))
            self._send(msg.status(msg.STATUS_STOPPED))
            return
        if self._closed:
            await bridge.close()
            return
        self._set_state(TurnState.LISTENING)
        self._send(msg.status(msg.STATUS_LISTENING))

    async def _end_listening(self) -> None:
        self.interrupts.interrupt(LISTENING_ENDED)
        await self._drop_bridge()
        self._set_state(TurnState.IDLE)
        self._send(msg.status(msg.STATUS_STOPPED))

    def _cancel_reply(self) -> None:
        if self.bridge is not None:
            self.bridge.cancel_pending()
        if self.interrupts.interrupt("cancelled by client") is None and self.state is TurnState.EVALUATING:
            self._set_state(TurnState.LISTENING)

    def _change_voice(self, voice: str) -> None:
        if self.session is None:
            self._send(msg.error("Missing session id. Attach a session before changing voice."))
            return
        self.store.set_voice(self.session.token, voice)
        self._send(msg.voice_ack(voice))

    async def _drop_bridge(self) -> None:
        bridge, self.bridge = self.bridge, None
        if bridge is not None:
            await bridge.close()

    # ---- recognition callbacks ----

    def on_interim(self, text: str) -> None:
        self._send(msg.transcript(text, False))
        self.interrupts.observe(text, is_final=False)

    def on_final(self, text: str, confidence: float) -> None:
        self._send(msg.transcript(text, True))
        self.interrupts.observe(text, is_final=True)
        self._track_evaluation()

    def _track_evaluation(self) -> None:
        """EVALUATING lasts exactly as long as the bridge holds a debouncing utterance"""
        pending = self.bridge is not None and self.bridge.has_pending_utterance
        if pending and self.state is TurnState.LISTENING:
            self._set_state(TurnState.EVALUATING)
        elif not pending and self.state is TurnState.EVALUATING:
            self._set_state(TurnState.LISTENING)

    def on_utterance(self, text: str, confidence: float) -> None:
        self.start_turn(text, confidence)

    def on_recognition_error(self, error: Exception) -> None:
        if self._closed:
            return
        handle_error(error, "turn_controller", "recognition",
                     ErrorSeverity.MEDIUM, session_id=self.session.token if self.session else None)
        self._send(msg.error(RECOGNITION_LOST))
        self._send(msg.status(msg.STATUS_STOPPED))
        if not self.slot.busy:
            self._set_state(TurnState.IDLE)
        self._spawn(self._drop_bridge())

    def _on_interrupted(self, turn: Turn, reason: str) -> None:
        self._send(msg.stop_playback())
        self._set_state(TurnState.INTERRUPTED)
        self._set_state(TurnState.LISTENING)
        if reason not in _QUIET_INTERRUPTS:
            self._send(msg.status(msg.STATUS_LISTENING))

    # ---- turns ----

    def start_turn(self, text: str, confidence: float = 1.0) -> Optional[Turn]:
        """Begin answering a completed utterance, interrupting any active turn first"""
        if self._closed or self.session is None:
            return None
        if self.slot.busy:
            if not self.interrupts.is_barge_in(text):
                logger.info(f"{self.label}: ignoring {text!r} while a reply is in progress")
                return None
            self.interrupts.interrupt(NEW_UTTERANCE)

        session = self.session
        self.store.touch(session.token)
        session.memory.observe_utterance(text)
        turn = self.slot.begin(text, confidence, session.memory.snapshot(),
                               session.document_text, now=self.clock.monotonic())
        log_with_context(logger, logging.INFO, f"Turn started: {text[:80]!r}",
                         session_id=session.token, turn_id=turn.turn_id)
        self._in_flight.add(turn)
        self._spawn(self._run_turn(turn))
        return turn

    async def _run_turn(self, turn: Turn) -> None:
        token = turn.token
        session = self.session
        try:
            token.raise_if_cancelled()
            self._set_state(TurnState.GENERATING)
            self._emit(token, msg.status(msg.STATUS_THINKING))
            reply_text = await self.router.route(turn.utterance, turn.memory, turn.document_text, token)
            token.raise_if_cancelled()

            turn.reply = reply_text
            if session is not None:
                session.memory.record_exchange(turn.utterance, reply_text)
            if not self._emit(token, msg.reply(reply_text)):
                return
            if session is not None:
                self._emit(token, msg.memory_snapshot(session.memory.snapshot()))

            self._set_state(TurnState.SYNTHESIZING)
            self._emit(token, msg.status(msg.STATUS_SPEAKING))
            voice = session.voice_id if session is not None else None
            outcome = await self.streamer.stream(reply_text, voice, token,
                                                 lambda audio: self._emit_audio(token, audio))
            turn.chunks_sent = outcome.sent
            if outcome.all_failed:
                self._emit(token, msg.error(SYNTHESIS_FAILED_MESSAGE))
            elif outcome.completed:
                await self.clock.sleep(self.settle_sec)
                self._emit(token, msg.synthesis_complete())
        except TurnCancelled as e:
            logger.info(f"{turn.turn_id} abandoned: {e.reason}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            handle_error(e, "turn_controller", "run_turn", ErrorSeverity.HIGH,
                         session_id=session.token if session else None, turn_id=turn.turn_id)
            self._emit(token, msg.error(TURN_FAILED))
        finally:
            self._in_flight.discard(turn)
            if self.slot.release(turn) and not self._closed:
                if self.bridge is not None and self.bridge.is_open:
                    self._set_state(TurnState.LISTENING)
                    self._send(msg.status(msg.STATUS_LISTENING))
                else:
                    self._set_state(TurnState.IDLE)

    # ---- teardown ----

    async def close(self) -> None:
        """Tear down the connection. Safe to call more than once; emits nothing."""
        if self._closed:
            return
        self._closed = True
        self.slot.revoke("connection closed")
        await self._drop_bridge()

        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

        if self.session is not None:
            self.store.schedule_grace_expiry(self.session.token)
        self._set_state(TurnState.IDLE)
        logger.info(f"{self.label}: connection closed")
