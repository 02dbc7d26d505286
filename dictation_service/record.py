"""Dictate from the local microphone until Ctrl-C, then print the transcript.

    python -m dictation_service.record --preset direct
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from common.config import PipelineSettings
from dictation_service.capture import MicrophoneCaptureSource
from dictation_service.errors import DictationError
from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.session import DictationSession

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Record a clinical dictation from the microphone")
    parser.add_argument("--preset", choices=["direct", "streaming"], default=None, help="Chunking preset")
    parser.add_argument("--device", default=None, help="Input device index or name")
    parser.add_argument("--backend", choices=["auto", "worker", "main"], default=None)
    parser.add_argument("--no-denoise", action="store_true", help="Skip noise suppression")
    parser.add_argument("--captions", action="store_true", help="Enable live captions")
    parser.add_argument("--seconds", type=float, default=None, help="Stop automatically after N seconds")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def _device(value):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


async def run(args: argparse.Namespace) -> int:
    overrides: dict = {}
    if args.preset:
        overrides["chunk_preset"] = args.preset
    if args.backend:
        overrides["backend_preference"] = args.backend
    if args.no_denoise:
        overrides["denoise"] = False
    if args.captions:
        overrides["live_captions"] = True
    settings = PipelineSettings(**{**PipelineSettings().model_dump(), **overrides})

    source = MicrophoneCaptureSource(
        device=_device(args.device),
        sample_rate=settings.sample_rate,
        frame_samples=settings.frame_samples,
        max_queued_frames=settings.capture_queue_frames,
    )
    session = DictationSession(source, settings=settings, model_manager=ModelLifecycleManager.instance())
    session.on_progress(lambda percent: print(f"\rLoading model... {percent}%", end="", file=sys.stderr, flush=True))
    session.on_text(lambda text: print(f"\r{text}", file=sys.stderr, flush=True))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop.set)
    loop.add_signal_handler(signal.SIGTERM, stop.set)

    try:
        device = await session.start()
    except DictationError as exc:
        print(f"\nCould not start dictation: {exc}", file=sys.stderr)
        return 1

    print(f"\nRecording from {device.name}. Press Ctrl-C to stop.", file=sys.stderr)
    try:
        await asyncio.wait_for(stop.wait(), timeout=args.seconds)
    except asyncio.TimeoutError:
        pass

    print("\nFinishing transcript...", file=sys.stderr)
    event = await session.stop()
    if event is None:
        return 1

    print(event.final_text)
    if event.terms:
        print("\nTerms:", file=sys.stderr)
        for term in event.terms:
            print(f"  {term.term} ({term.category})", file=sys.stderr)
    if event.skipped_ids:
        print(f"Skipped chunks: {list(event.skipped_ids)}", file=sys.stderr)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
