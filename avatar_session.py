"""Live avatar conversation: model stream -> synthesis stream -> render stream.

  Mic (48kHz float) -> audio_codec -> Gemini Live (text out)
      -> TurnAccumulator -> ElevenLabs stream-input (PCM16)
      -> audio_codec -> Simli avatar

Everything runs on one asyncio loop. Each transport delivers its messages
one at a time to the handlers below, and the barge-in cleanup does all of
its state changes before its first await, so no handler ever sees a
half-interrupted session.
"""

import asyncio
import logging
import time
from enum import Enum

from audio_codec import decode_from_synthesis, encode_for_model
from config import Credentials, SessionConfig
from errors import (ConfigurationError, DecodeError, NotOpenError,
                    TransportConnectionError)
from interruption import Epoch, InterruptionController, InterruptionState
from providers import (ModelEvent, model_audio_message, model_endpoint,
                       model_greeting_message, model_setup_message,
                       parse_model_message, parse_synthesis_message,
                       render_init_message, synthesis_endpoint,
                       synthesis_flush_message, synthesis_init_message,
                       synthesis_text_message)
from renderer import RenderClient
from session_events import EventType, SessionEventBus
from transcript import Transcript
from transport import Transport
from turn_accumulator import TurnAccumulator

logger = logging.getLogger(__name__)

# Human-readable names for ConfigurationError messages
_CREDENTIAL_LABELS = {
    "GEMINI_API_KEY": "Gemini API key",
    "SIMLI_API_KEY": "Simli API key",
    "ELEVENLABS_API_KEY": "ElevenLabs API key",
    "ELEVENLABS_VOICE_ID": "ElevenLabs voice ID",
}


class SessionStatus(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    CLOSED = "closed"
    FAILED = "failed"


class AvatarSession:
    """Owns the three provider streams and the barge-in state machine.

    Args:
        config: SessionConfig; defaults to the module constants
        capture: optional capture collaborator with start(on_frame)/stop();
            started once the model handshake completes. Hosts without one
            call push_audio() themselves.
        connector: websocket connector override, used by tests
        on_status: callback(str) for every status change
        events: SessionEventBus; one is created if not given
    """

    def __init__(self, config: SessionConfig | None = None, capture=None,
                 connector=None, on_status=None, events: SessionEventBus | None = None):
        self.config = config or SessionConfig()
        self._capture = capture
        self._connector = connector
        self.on_status = on_status or (lambda s: None)
        self.events = events or SessionEventBus(
            sid=time.strftime("%Y%m%d_%H%M%S"), log_dir=self.config.log_dir)

        self.status = SessionStatus.IDLE
        self.epoch = Epoch()
        self.transcript = Transcript(self.config.transcript_size)
        self.accumulator = TurnAccumulator(self._forward_text, self._flush_synthesis)
        self.muted = False

        self.model: Transport | None = None
        self.synthesis: Transport | None = None
        self.render: Transport | None = None
        self.renderer: RenderClient | None = None
        self.interruption: InterruptionController | None = None

        self._credentials: Credentials | None = None
        self._model_ready = False
        self._greeted = False
        self._synthesis_active = False  # text sent, final chunk not yet received
        self._audio_q: asyncio.Queue | None = None
        self._audio_task: asyncio.Task | None = None
        self._failure_task: asyncio.Task | None = None
        self._start_token = 0  # bumped by every start()

        self.frames_sent = 0
        self.frames_dropped = 0

    # ── Status ────────────────────────────────────────────────────

    def _set_status(self, status: SessionStatus):
        if status is self.status:
            return
        self.status = status
        logger.info("Avatar session: Status %s", status.value)
        self.on_status(status.value)
        self._emit(EventType.STATUS, status=status.value)

    def _emit(self, event_type: EventType, **payload):
        self.events.emit(event_type, epoch=self.epoch.value, **payload)

    def _is_live(self) -> bool:
        return self.status in (SessionStatus.ACTIVE, SessionStatus.INTERRUPTED)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self, credentials: Credentials):
        """Validate credentials and open render, synthesis and model in that order.

        Raises ConfigurationError for a missing credential and
        TransportConnectionError if any stream fails to open; either way the
        session ends up FAILED with nothing left open.
        """
        if self.status in (SessionStatus.CONNECTING, SessionStatus.ACTIVE,
                           SessionStatus.INTERRUPTED):
            logger.warning("Avatar session: start() while %s, ignoring", self.status.value)
            return

        missing = credentials.missing()
        if missing:
            env = missing[0]
            self._set_status(SessionStatus.FAILED)
            error = ConfigurationError(
                f"{_CREDENTIAL_LABELS[env]} not configured. "
                f"Please add {env} to your environment variables.",
                credential=env)
            self._emit(EventType.ERROR, error=str(error), kind="configuration")
            raise error

        self._start_token += 1
        token = self._start_token
        self._credentials = credentials
        self._set_status(SessionStatus.CONNECTING)
        self._reset_conversation()
        self._build_transports(credentials)

        try:
            # Render first: it must be ready before any audio can target it
            for transport in (self.render, self.synthesis, self.model):
                await transport.connect()
                if self._start_superseded(token):
                    break
        except TransportConnectionError as e:
            if self._start_superseded(token):
                logger.info("Avatar session: Start aborted by stop()")
                return
            logger.error("Avatar session: Start failed: %s", e)
            await self._close_transports()
            self._set_status(SessionStatus.FAILED)
            self._emit(EventType.ERROR, error=str(e), kind="connection",
                       transport=e.transport)
            raise

        if self._start_superseded(token):
            logger.info("Avatar session: Start aborted by stop()")
            return

        self._audio_q = asyncio.Queue(maxsize=self.config.audio_queue_size)
        self._audio_task = asyncio.get_running_loop().create_task(
            self._audio_forward_stage(self._audio_q), name="audio-forward")
        self._set_status(SessionStatus.ACTIVE)

    def _start_superseded(self, token: int) -> bool:
        """True once stop() or a newer start() has taken over from this one."""
        return token != self._start_token or self.status is not SessionStatus.CONNECTING

    async def stop(self):
        """Close everything and return to IDLE. Idempotent, safe mid-start."""
        if self.status in (SessionStatus.IDLE, SessionStatus.CLOSED):
            return
        self._set_status(SessionStatus.CLOSED)
        await self._shutdown()
        self._set_status(SessionStatus.IDLE)
        logger.info("Avatar session: Stopped")

    async def _shutdown(self):
        self.epoch.cancel_pending()
        if self._capture is not None:
            self._capture.stop()
        self._model_ready = False
        task, self._audio_task = self._audio_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
        self._audio_q = None
        self.accumulator.reset_on_interrupt()
        self._synthesis_active = False
        if self.interruption is not None:
            self.interruption.reset()
        await self._close_transports()

    async def _close_transports(self):
        for transport in (self.model, self.synthesis, self.render):
            if transport is not None:
                await transport.close()

    def _reset_conversation(self):
        self.transcript.clear()
        self.accumulator.reset_on_interrupt()
        self._model_ready = False
        self._greeted = False
        self._synthesis_active = False
        self.frames_sent = 0
        self.frames_dropped = 0

    def _build_transports(self, credentials: Credentials):
        cfg = self.config
        common = dict(
            on_unavailable=self._on_transport_unavailable,
            should_reconnect=self._is_live,
            reconnect_delay=cfg.reconnect_delay,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            max_protocol_failures=cfg.max_protocol_failures,
            connector=self._connector,
        )
        self.render = Transport(
            "render", cfg.render_url, self.epoch,
            credential=credentials.render_api_key,
            on_open=self._on_render_open, on_close=self._on_render_closed, **common)
        self.synthesis = Transport(
            "synthesis", synthesis_endpoint(cfg, credentials.synthesis_voice_id), self.epoch,
            credential=credentials.synthesis_api_key,
            on_open=self._on_synthesis_open, on_close=self._on_synthesis_closed, **common)
        self.model = Transport(
            "model", model_endpoint(cfg, credentials.model_api_key), self.epoch,
            credential=credentials.model_api_key,
            on_open=self._on_model_open, on_close=self._on_model_closed, **common)

        self.renderer = RenderClient(self.render)
        self.render.on_message(self.renderer.handle_message)
        self.synthesis.on_message(self._on_synthesis_message)
        self.model.on_message(self._on_model_message)

        self.interruption = InterruptionController(
            self.epoch, self.synthesis, self.renderer, self.accumulator,
            resume_synthesis=self._resume_synthesis,
            is_active=lambda: self.accumulator.is_open or self._synthesis_active,
            on_state_change=self._on_interruption_state,
            recovery_delay=cfg.recovery_delay,
        )

    # ── Transport hooks ───────────────────────────────────────────

    async def _on_render_open(self, transport):
        await transport.send(render_init_message(self.config, self._credentials.render_api_key))
        self._emit(EventType.TRANSPORT_OPEN, transport=transport.name)
        self._emit(EventType.RENDER_CONNECTED)

    def _on_render_closed(self, transport, reason):
        self._emit(EventType.TRANSPORT_CLOSED, transport=transport.name, reason=reason)
        self._emit(EventType.RENDER_DISCONNECTED)

    async def _on_synthesis_open(self, transport):
        await transport.send(synthesis_init_message(self.config, self._credentials.synthesis_api_key))
        self._emit(EventType.TRANSPORT_OPEN, transport=transport.name)

    def _on_synthesis_closed(self, transport, reason):
        self._synthesis_active = False
        self._emit(EventType.TRANSPORT_CLOSED, transport=transport.name, reason=reason)

    async def _on_model_open(self, transport):
        await transport.send(model_setup_message(self.config))
        self._emit(EventType.TRANSPORT_OPEN, transport=transport.name)

    def _on_model_closed(self, transport, reason):
        self._model_ready = False
        self._emit(EventType.TRANSPORT_CLOSED, transport=transport.name, reason=reason)

    def _on_transport_unavailable(self, transport, error):
        if not self._is_live():
            return
        logger.error("Avatar session: %s stream unavailable, failing session", transport.name)
        if self._failure_task is None or self._failure_task.done():
            self._failure_task = asyncio.get_running_loop().create_task(self._fail(error))

    async def _fail(self, error):
        self._set_status(SessionStatus.FAILED)
        self._emit(EventType.ERROR, error=str(error), kind="connection",
                   transport=getattr(error, "transport", None))
        await self._shutdown()

    # ── Model stream ──────────────────────────────────────────────

    async def _on_model_message(self, raw):
        for kind, text in parse_model_message(raw):
            if kind is ModelEvent.SETUP_COMPLETE:
                await self._on_model_ready()
            elif kind is ModelEvent.INTERRUPTED:
                await self.on_model_interrupt_signal()
                return
            elif not self.interruption.forwarding_allowed:
                logger.debug("Avatar session: Dropping model output during interruption")
                return
            elif kind is ModelEvent.TEXT:
                await self.on_model_fragment(text)
            elif kind is ModelEvent.TURN_COMPLETE:
                await self.on_model_turn_complete()

    async def _on_model_ready(self):
        logger.info("Avatar session: Model setup complete")
        self._model_ready = True
        if self._capture is not None and not self._capture.running:
            try:
                self._capture.start(self.push_audio)
            except OSError as e:
                logger.error("Avatar session: Failed to access microphone: %s", e)
                self._emit(EventType.ERROR, error=str(e), kind="capture")
        if not self._greeted:
            self._greeted = True
            await self._send_model(model_greeting_message(self.config.greeting_prompt))

    async def on_model_fragment(self, text: str):
        await self.accumulator.append_fragment(text)

    async def on_model_turn_complete(self):
        full_text = await self.accumulator.complete_turn()
        if not full_text:
            return
        entry = self.transcript.append(full_text)
        logger.info("Avatar session: Turn complete: %s", full_text)
        self._emit(EventType.TURN_COMPLETE, text=full_text, line=str(entry))

    async def on_model_interrupt_signal(self):
        logger.info("Avatar session: Model detected user interruption")
        if await self.interruption.interrupt():
            self._synthesis_active = False
            self._emit(EventType.BARGE_IN, interrupts=self.interruption.interrupt_count)

    async def _send_model(self, payload):
        try:
            await self.model.send(payload)
        except NotOpenError as e:
            logger.debug("Avatar session: Model send skipped: %s", e)

    # ── Synthesis stream ──────────────────────────────────────────

    async def _forward_text(self, text: str):
        if not text.strip():
            return
        self._synthesis_active = True
        await self._send_synthesis(synthesis_text_message(text), self.epoch.value)

    async def _flush_synthesis(self):
        await self._send_synthesis(synthesis_flush_message(), self.epoch.value)

    async def _send_synthesis(self, payload, queued_epoch: int):
        if queued_epoch != self.epoch.value or not self.interruption.forwarding_allowed:
            logger.debug("Avatar session: Synthesis send dropped (interrupted)")
            return
        try:
            await self.synthesis.send(payload)
        except NotOpenError as e:
            logger.debug("Avatar session: Synthesis send skipped: %s", e)

    async def _on_synthesis_message(self, raw):
        audio, is_final = parse_synthesis_message(raw)
        if audio:
            await self.on_synthesis_audio(audio)
        if is_final:
            self.on_synthesis_final()

    async def on_synthesis_audio(self, b64_audio: str):
        if not self.interruption.forwarding_allowed:
            logger.debug("Avatar session: Dropping synthesis audio during interruption")
            return
        try:
            chunk = decode_from_synthesis(b64_audio)
        except DecodeError as e:
            logger.warning("Avatar session: %s", e)
            return
        try:
            await self.renderer.send_audio(chunk)
        except NotOpenError as e:
            logger.debug("Avatar session: Render send skipped: %s", e)

    def on_synthesis_final(self):
        logger.debug("Avatar session: Synthesis finished speaking")
        self._synthesis_active = False

    async def _resume_synthesis(self):
        if not self._is_live():
            return
        epoch = self.epoch.value
        self.synthesis.on_message(self._on_synthesis_message)
        try:
            await self.synthesis.connect()
        except TransportConnectionError as e:
            if self.epoch.value != epoch or not self._is_live():
                logger.debug("Avatar session: Synthesis resume superseded: %s", e)
                return
            logger.warning("Avatar session: Synthesis resume failed: %s", e)
            self.synthesis.arm_reconnect()
            self.synthesis.schedule_reconnect()

    def _on_interruption_state(self, state: InterruptionState):
        if state is InterruptionState.STEADY:
            if self.status is SessionStatus.INTERRUPTED:
                self._set_status(SessionStatus.ACTIVE)
                self._emit(EventType.RECOVERED)
        elif self.status is SessionStatus.ACTIVE:
            self._set_status(SessionStatus.INTERRUPTED)

    # ── Capture path ──────────────────────────────────────────────

    def set_muted(self, muted: bool):
        """Mute the microphone path; captured frames are dropped while muted."""
        self.muted = muted
        logger.info("Avatar session: %s", "Muted" if muted else "Unmuted")

    def push_audio(self, frame):
        """Capture entry point. Drops the frame unless it can be sent right away."""
        if (self.muted or not self._model_ready or self._audio_q is None
                or self.model is None or not self.model.is_open):
            self.frames_dropped += 1
            return
        try:
            self._audio_q.put_nowait(frame)
        except asyncio.QueueFull:
            self.frames_dropped += 1

    async def _audio_forward_stage(self, audio_q: asyncio.Queue):
        """Encode queued frames and stream them to the model."""
        cfg = self.config
        while True:
            frame = await audio_q.get()
            if not self.model.is_open:
                self.frames_dropped += 1
                continue
            b64_audio = encode_for_model(frame, cfg.capture_sample_rate, cfg.model_sample_rate)
            try:
                await self.model.send(model_audio_message(b64_audio))
            except NotOpenError:
                self.frames_dropped += 1
                continue
            self.frames_sent += 1
            if self.frames_sent % 500 == 0:
                logger.debug("Avatar session: Sent %d audio frames", self.frames_sent)
