"""Streaming recognizer session over a Deepgram-style websocket.

The session owns one websocket and a private asyncio event loop running on a
background thread. ``send`` is safe to call from the audio callback thread: it
only checks the connection state and hands the frame to the loop without
waiting. Inbound messages, disconnects and send failures are reported to the
owner as ``RecognitionEvent`` values through a single ``on_event`` callback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Optional, Union

import websockets

from errors import (
    TRANSPORT_CLOSED,
    ConnectError,
    ConnectTimeout,
    MalformedMessage,
    SessionError,
)
from interfaces import EventCallback
from models import ConnectionState, RecognitionEvent, RecognitionKind

logger = logging.getLogger(__name__)


def parse_transcript(message: Union[str, bytes]) -> tuple[Optional[str], bool]:
    """Pull ``channel.alternatives[0].transcript`` and ``is_final`` from a message.

    Returns ``(None, False)`` for well-formed messages without a transcript
    (metadata, speech-started notices). Raises ``MalformedMessage`` when the
    payload is not a JSON object.
    """
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(str(exc)) from exc
    if not isinstance(data, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(data).__name__}")

    channel = data.get("channel")
    if not isinstance(channel, dict):
        return None, False
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None, False
    first = alternatives[0]
    if not isinstance(first, dict):
        return None, False
    transcript = first.get("transcript")
    if not isinstance(transcript, str):
        return None, False
    return transcript, bool(data.get("is_final"))


class DeepgramTranscriptionSession:
    def __init__(
        self,
        url: str,
        api_key: str,
        on_event: EventCallback,
        connect_timeout_s: float = 10.0,
        close_timeout_s: float = 2.0,
        outbox_size: int = 32,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._on_event = on_event
        self._connect_timeout_s = connect_timeout_s
        self._close_timeout_s = close_timeout_s
        self._outbox_size = outbox_size

        self._state = ConnectionState.IDLE
        self._state_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ws: Any = None
        self._outbox: Optional[asyncio.Queue[bytes]] = None
        self._tasks: list[asyncio.Task] = []
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the websocket, blocking until the handshake completes.

        Raises ``ConnectTimeout`` when no handshake arrives within the
        connect timeout and ``ConnectError`` for any transport failure.
        """
        with self._state_lock:
            if self._state is not ConnectionState.IDLE:
                raise ConnectError(f"session cannot connect from state {self._state.value}")
            self._state = ConnectionState.CONNECTING
        if not self._api_key:
            self._state = ConnectionState.FAILED
            raise ConnectError("no API key configured")

        loop = asyncio.new_event_loop()
        self._loop = loop
        self._thread = threading.Thread(
            target=self._run_loop, args=(loop,), name="transcription-session", daemon=True
        )
        self._thread.start()

        future = asyncio.run_coroutine_threadsafe(self._open(), loop)
        try:
            future.result()
        except SessionError:
            self._state = ConnectionState.FAILED
            self._shutdown_loop()
            raise
        except Exception as exc:
            self._state = ConnectionState.FAILED
            self._shutdown_loop()
            raise ConnectError(str(exc)) from exc

    def send(self, frame: bytes) -> None:
        """Queue one binary frame; silently dropped unless the session is open."""
        loop = self._loop
        if self._state is not ConnectionState.OPEN or loop is None:
            self._count_drop()
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, frame)
        except RuntimeError:
            # Loop already closed by a concurrent close().
            self._count_drop()

    def handle_message(self, message: Union[str, bytes]) -> None:
        """Parse one inbound message and emit a PARTIAL or FINAL event."""
        try:
            transcript, is_final = parse_transcript(message)
        except MalformedMessage as exc:
            logger.warning("Discarding malformed recognizer message: %s", exc)
            return
        if transcript is None:
            return
        text = transcript.strip()
        if not text:
            return
        if is_final:
            logger.info("FINAL: %r", text)
            self._emit(RecognitionEvent(kind=RecognitionKind.FINAL, text=text))
        else:
            logger.debug("interim: %r", text)
            self._emit(RecognitionEvent(kind=RecognitionKind.PARTIAL, text=text))

    def close(self) -> None:
        """Close the websocket and stop the loop. Idempotent, never raises."""
        with self._state_lock:
            loop = self._loop
            self._state = ConnectionState.CLOSING
        if loop is not None:
            if threading.current_thread() is self._thread:
                # Called from an event handler on the loop thread: the loop
                # may only stop once the websocket close has completed.
                self._loop = self._thread = None
                task = loop.create_task(self._teardown())
                task.add_done_callback(lambda _: loop.stop())
            else:
                try:
                    future = asyncio.run_coroutine_threadsafe(self._teardown(), loop)
                    future.result(timeout=self._close_timeout_s + 1.0)
                except Exception as exc:
                    logger.warning("Recognizer teardown failed: %s", exc)
                self._shutdown_loop()
        with self._state_lock:
            self._state = ConnectionState.CLOSED
        logger.info(
            "Recognizer session closed (sent=%s, dropped=%s)",
            self.frames_sent,
            self.frames_dropped,
        )

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------

    def _run_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    async def _dial(self) -> Any:
        return await websockets.connect(
            self._url,
            subprotocols=["token", self._api_key],
            open_timeout=None,
        )

    async def _open(self) -> None:
        logger.info("Connecting to recognizer: %s", self._url)
        try:
            ws = await asyncio.wait_for(self._dial(), timeout=self._connect_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeout(
                f"no handshake within {self._connect_timeout_s:g}s"
            ) from exc
        except Exception as exc:
            raise ConnectError(str(exc) or type(exc).__name__) from exc

        self._ws = ws
        self._outbox = asyncio.Queue(maxsize=self._outbox_size)
        with self._state_lock:
            still_connecting = self._state is ConnectionState.CONNECTING
            if still_connecting:
                self._state = ConnectionState.OPEN
        if not still_connecting:
            await ws.close()
            raise ConnectError("session closed during handshake")
        self._tasks = [
            asyncio.create_task(self._send_loop(ws)),
            asyncio.create_task(self._receive_loop(ws)),
        ]
        logger.info("Recognizer connected")

    def _enqueue(self, frame: bytes) -> None:
        if self._state is not ConnectionState.OPEN or self._outbox is None:
            self._count_drop()
            return
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            self._count_drop()

    def _count_drop(self) -> None:
        # send() and _enqueue() run on different threads.
        with self._counter_lock:
            self.frames_dropped += 1

    async def _send_loop(self, ws: Any) -> None:
        assert self._outbox is not None
        while True:
            frame = await self._outbox.get()
            try:
                await ws.send(frame)
            except Exception as exc:
                self._transport_closed(f"send failed: {exc}")
                return
            self.frames_sent += 1

    async def _receive_loop(self, ws: Any) -> None:
        error = ""
        try:
            async for message in ws:
                self.handle_message(message)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        self._transport_closed(error)

    def _transport_closed(self, error: str) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.OPEN:
                return
            self._state = ConnectionState.FAILED if error else ConnectionState.CLOSED
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        if error:
            logger.warning("Recognizer connection lost: %s", error)
        else:
            logger.info("Recognizer connection closed by server")
        self._emit(
            RecognitionEvent(
                kind=RecognitionKind.CLOSED,
                code=TRANSPORT_CLOSED if error else "",
                message=error or "connection closed by server",
            )
        )

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(), timeout=self._close_timeout_s)
            except Exception as exc:
                logger.warning("Closing websocket failed: %s", exc)

    def _shutdown_loop(self) -> None:
        loop, thread = self._loop, self._thread
        self._loop = None
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(loop.stop)
        except RuntimeError:
            pass
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._close_timeout_s + 1.0)
        self._thread = None

    def _emit(self, event: RecognitionEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Recognition event handler failed")
