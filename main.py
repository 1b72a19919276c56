"""Console entrypoint: stream the microphone and print final transcripts."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from config import JsonConfigStore, PipelineSettings, build_listen_url, setup_logging
from interfaces import EventCallback
from models import CallSummary
from recognizer import DeepgramTranscriptionSession
from recorder import SoundDeviceCapture, list_input_devices
from session_controller import PipelineController

logger = logging.getLogger(__name__)

RECONNECT_DELAY_S = 2.0


def build_controller(settings: PipelineSettings, runner: Optional["App"] = None) -> PipelineController:
    """Wire the sounddevice capture and websocket session into a controller."""
    url = build_listen_url(settings)
    api_key = settings.resolved_api_key()

    def capture_factory() -> SoundDeviceCapture:
        return SoundDeviceCapture(
            sample_rate=settings.sample_rate,
            block_size=settings.block_size,
            channels=settings.channels,
            device=settings.device,
            echo_cancellation=settings.echo_cancellation,
            noise_suppression=settings.noise_suppression,
            auto_gain_control=settings.auto_gain_control,
        )

    def session_factory(on_event: EventCallback) -> DeepgramTranscriptionSession:
        return DeepgramTranscriptionSession(
            url=url,
            api_key=api_key,
            on_event=on_event,
            connect_timeout_s=settings.connect_timeout_s,
        )

    return PipelineController(
        capture_factory=capture_factory,
        session_factory=session_factory,
        on_transcript=runner.on_transcript if runner else None,
        on_status_change=runner.on_status_change if runner else None,
        on_error=runner.on_error if runner else None,
        speaker_role=settings.speaker_role,
    )


class App:
    def __init__(self, settings: PipelineSettings, auto_reconnect: bool = True) -> None:
        self.settings = settings
        self.auto_reconnect = auto_reconnect
        self.controller = build_controller(settings, runner=self)
        self._done = threading.Event()
        self._reconnect_timer: Optional[threading.Timer] = None

    # ------------------------------------------------------------------
    # Controller callbacks
    # ------------------------------------------------------------------

    def on_transcript(self, text: str, speaker: str, session_id: str) -> None:
        print(f"[{speaker}] {text}", flush=True)

    def on_status_change(self, status: str, message: str) -> None:
        print(f"-- {status}: {message}", file=sys.stderr, flush=True)
        if status == "disconnected" and self.auto_reconnect:
            self._schedule_reconnect()

    def on_error(self, code: str, message: str) -> None:
        print(f"!! {message}", file=sys.stderr, flush=True)

    # ------------------------------------------------------------------
    # Reconnect policy
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._done.is_set():
            return
        self._reconnect_timer = threading.Timer(RECONNECT_DELAY_S, self._reconnect)
        self._reconnect_timer.daemon = True
        self._reconnect_timer.start()

    def _reconnect(self) -> None:
        if self._done.is_set() or not self.controller.is_recording:
            return
        if not self.controller.reconnect():
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        if not self.controller.start():
            return 1
        failed = False
        try:
            while not self._done.wait(0.5):
                if not self.controller.is_recording:
                    failed = True
                    break
        except KeyboardInterrupt:
            pass
        self.quit()
        return 1 if failed else 0

    def request_quit(self) -> None:
        self._done.set()

    def quit(self) -> CallSummary:
        self._done.set()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
        summary = self.controller.stop()
        if summary.session_id:
            print(
                f"-- {summary.session_id}: {summary.duration_s:.1f}s, "
                f"{summary.frames_sent} frames sent, {summary.frames_dropped} dropped",
                file=sys.stderr,
            )
        return summary


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream microphone audio to a speech recognizer")
    parser.add_argument("-c", "--config", type=Path, default=None, help="Path to JSON config file")
    parser.add_argument("--api-key", default=None, help="Recognizer API key (overrides config)")
    parser.add_argument("--model", default=None, help="Recognition model")
    parser.add_argument("--language", default=None, help="Recognition language")
    parser.add_argument("--device", default=None, help="Input device index or name")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument(
        "--no-reconnect",
        action="store_true",
        help="Do not reconnect after the recognizer drops the connection",
    )
    parser.add_argument("--list-devices", action="store_true", help="List input devices and exit")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    settings = JsonConfigStore(path=args.config).load()
    if args.api_key:
        settings.api_key = args.api_key
    if args.model:
        settings.model = args.model
    if args.language:
        settings.language = args.language
    if args.device is not None:
        settings.device = int(args.device) if args.device.isdigit() else args.device
    if args.log_level:
        settings.log_level = args.log_level
    return settings


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args)
    setup_logging(settings.log_level)

    if args.list_devices:
        for device in list_input_devices():
            print(f"{device['id']:>3}  {device['name']} ({device['channels']}ch)")
        return 0

    if not settings.resolved_api_key():
        print("No API key: set DEEPGRAM_API_KEY or pass --api-key", file=sys.stderr)
        return 2

    logger.info("Streaming to %s", build_listen_url(settings))
    app = App(settings, auto_reconnect=not args.no_reconnect)
    signal.signal(signal.SIGTERM, lambda *_: app.request_quit())
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
