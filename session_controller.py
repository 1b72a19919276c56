"""State-machine based orchestration of capture and recognition."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import numpy as np

from converter import to_pcm_frame
from errors import ConnectError, DeviceError, PipelineError
from interfaces import CaptureFactory, CaptureSource, SessionFactory, TranscriptionSession
from models import (
    CallSession,
    CallSummary,
    ConnectionState,
    PipelineState,
    RecognitionEvent,
    RecognitionKind,
    StatusKind,
    TranscriptEvent,
)

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[str, str, str], None]
StatusCallback = Callable[[str, str], None]
ErrorCallback = Callable[[str, str], None]
PartialCallback = Callable[[str], None]
StateCallback = Callable[[PipelineState, PipelineState], None]


class _StartCancelled(Exception):
    pass


class PipelineController:
    """Wires a capture source into a transcription session.

    ``start`` and ``stop`` are serialized by one transition lock; the audio
    callback and the recognizer callbacks never take it. A fresh capture
    source and session are built from the factories for every recording.
    """

    def __init__(
        self,
        capture_factory: CaptureFactory,
        session_factory: SessionFactory,
        on_transcript: Optional[TranscriptCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        speaker_role: str = "customer",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._capture_factory = capture_factory
        self._session_factory = session_factory
        self._on_transcript = on_transcript
        self._on_status_change = on_status_change
        self._on_error = on_error
        self._on_partial = on_partial
        self._on_state_change = on_state_change
        self._speaker_role = speaker_role
        self._clock = clock

        self._transition_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._state = PipelineState.IDLE
        self._capture: Optional[CaptureSource] = None
        self._session: Optional[TranscriptionSession] = None
        self._call: Optional[CallSession] = None
        self._prior_sent = 0
        self._prior_dropped = 0
        self.last_error: Optional[PipelineError] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        call = self._call
        return call.session_id if call else None

    @property
    def connection_state(self) -> ConnectionState:
        session = self._session
        return session.state if session else ConnectionState.IDLE

    @property
    def is_recording(self) -> bool:
        return self._state == PipelineState.ACTIVE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Acquire the microphone, connect, then begin streaming.

        Returns True when recording (including when already recording) and
        False when startup failed or was cancelled by ``stop``.
        """
        with self._transition_lock:
            if self._state == PipelineState.ACTIVE:
                logger.warning("Already recording")
                return True
            self._stop_requested.clear()
            self._transition(PipelineState.STARTING)

            capture: Optional[CaptureSource] = None
            session: Optional[TranscriptionSession] = None
            try:
                capture = self._capture_factory()
                capture.open()
                self._check_cancelled()
                session = self._session_factory(self._handle_recognition_event)
                session.connect()
                self._check_cancelled()
                capture.subscribe(self._on_block, on_lost=self._on_capture_lost)
                self._capture, self._session = capture, session
                capture.start()
            except _StartCancelled:
                logger.info("Start cancelled by stop request")
                self._capture = self._session = None
                self._release(capture, session)
                self._transition(PipelineState.IDLE)
                return False
            except PipelineError as exc:
                self._fail_start(exc, capture, session)
                return False
            except Exception as exc:
                wrapped = DeviceError(str(exc)) if session is None else ConnectError(str(exc))
                self._fail_start(wrapped, capture, session)
                return False

            self._call = CallSession.begin(self._clock())
            self._prior_sent = self._prior_dropped = 0
            self.last_error = None
            self._transition(PipelineState.ACTIVE)
            logger.info("Recording started: %s", self._call.session_id)
            # A CLOSED event that arrived while STARTING was not relayed.
            connected = session.state == ConnectionState.OPEN

        if connected:
            self._emit_status(StatusKind.CONNECTED, "Listening...")
        else:
            logger.warning("Recognizer disconnected during start")
            self._emit_status(StatusKind.DISCONNECTED, "Reconnecting...")
        return True

    def stop(self) -> CallSummary:
        """Stop recording and release everything. Safe from any state."""
        self._stop_requested.set()
        with self._transition_lock:
            if self._state != PipelineState.ACTIVE:
                if self._state == PipelineState.FAILED:
                    self._transition(PipelineState.IDLE)
                return CallSummary()

            self._transition(PipelineState.STOPPING)
            capture, session, call = self._capture, self._session, self._call
            self._capture = self._session = None
            ended_at = self._clock()
            self._release(capture, session)

            sent, dropped = self._prior_sent, self._prior_dropped
            if session is not None:
                sent += session.frames_sent
                dropped += session.frames_dropped
            started_at = call.started_at if call else ended_at
            summary = CallSummary(
                session_id=call.session_id if call else None,
                duration_s=max(0.0, ended_at - started_at),
                started_at=started_at,
                ended_at=ended_at,
                frames_sent=sent,
                frames_dropped=dropped,
            )
            self._call = None
            self._transition(PipelineState.IDLE)
            logger.info(
                "Recording stopped: %s (%.1fs, sent=%s, dropped=%s)",
                summary.session_id,
                summary.duration_s,
                sent,
                dropped,
            )

        self._emit_status(StatusKind.STOPPED, "Stopped")
        return summary

    def reconnect(self) -> bool:
        """Re-run only the connect phase while recording.

        The microphone and the session identifier are kept. Never invoked
        automatically; the caller decides when to reconnect.
        """
        failure: Optional[PipelineError] = None
        with self._transition_lock:
            if self._state != PipelineState.ACTIVE:
                return False
            old = self._session
            if old is not None and old.state == ConnectionState.OPEN:
                return True
            self._session = None
            if old is not None:
                self._release(None, old)
                self._prior_sent += old.frames_sent
                self._prior_dropped += old.frames_dropped

            session = self._session_factory(self._handle_recognition_event)
            try:
                session.connect()
            except PipelineError as exc:
                failure = exc
            except Exception as exc:
                failure = ConnectError(str(exc))
            if failure is None:
                self._session = session
            else:
                self._release(None, session)
                self.last_error = failure
                logger.error("Reconnect failed: %s", failure)

        if failure is not None:
            self._emit_error(failure)
            return False
        logger.info("Recognizer reconnected for %s", self.session_id)
        self._emit_status(StatusKind.CONNECTED, "Listening...")
        return True

    # ------------------------------------------------------------------
    # Hot paths (audio thread / recognizer loop thread)
    # ------------------------------------------------------------------

    def _on_block(self, block: np.ndarray) -> None:
        session = self._session
        if session is None:
            return
        session.send(to_pcm_frame(block))

    def _handle_recognition_event(self, event: RecognitionEvent) -> None:
        kind = event.kind
        if kind == RecognitionKind.FINAL:
            call = self._call
            if call is None or not event.text.strip():
                return
            self._emit_transcript(TranscriptEvent(event.text, self._speaker_role, call.session_id))
            return
        if kind == RecognitionKind.PARTIAL:
            if self._on_partial:
                self._on_partial(event.text)
            return
        if kind == RecognitionKind.CLOSED:
            if self._state == PipelineState.ACTIVE:
                logger.warning("Recognizer disconnected while recording: %s", event.message)
                self._emit_status(StatusKind.DISCONNECTED, "Reconnecting...")

    def _on_capture_lost(self, reason: str) -> None:
        # Called on the PortAudio thread, which must not close its own stream.
        threading.Thread(
            target=self._fail_active,
            args=(DeviceError(reason),),
            name="capture-lost",
            daemon=True,
        ).start()

    def _fail_active(self, exc: PipelineError) -> None:
        with self._transition_lock:
            if self._state != PipelineState.ACTIVE:
                return
            capture, session = self._capture, self._session
            self._capture = self._session = None
            self._transition(PipelineState.FAILED)
            self._release(capture, session)
            self._call = None
            self.last_error = exc
            logger.error("Recording failed: %s", exc)
        self._emit_error(exc)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._stop_requested.is_set():
            raise _StartCancelled()

    def _fail_start(
        self,
        exc: PipelineError,
        capture: Optional[CaptureSource],
        session: Optional[TranscriptionSession],
    ) -> None:
        self.last_error = exc
        self._capture = self._session = None
        self._transition(PipelineState.FAILED)
        logger.error("Start failed (%s): %s", exc.code, exc)
        self._release(capture, session)
        self._emit_error(exc)

    def _release(
        self,
        capture: Optional[CaptureSource],
        session: Optional[TranscriptionSession],
    ) -> None:
        if session is not None:
            try:
                session.close()
            except Exception as exc:
                logger.warning("Closing recognizer session failed: %s", exc)
        if capture is not None:
            try:
                capture.close()
            except Exception as exc:
                logger.warning("Closing capture source failed: %s", exc)

    def _emit_transcript(self, event: TranscriptEvent) -> None:
        if self._on_transcript:
            self._on_transcript(event.text, event.speaker, event.session_id)

    def _emit_status(self, status: StatusKind, message: str) -> None:
        logger.info("Status: %s - %s", status.value, message)
        if self._on_status_change:
            self._on_status_change(status.value, message)

    def _emit_error(self, exc: PipelineError) -> None:
        if self._on_error:
            self._on_error(exc.code, exc.user_message)

    def _transition(self, to_state: PipelineState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
