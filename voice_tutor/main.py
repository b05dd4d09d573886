#!/usr/bin/env python3
"""Voice Tutor - console entry point.

Usage:
    python -m voice_tutor.main --typed                      # Type utterances on stdin
    python -m voice_tutor.main --audio lesson.raw           # Stream raw audio through STT
    python -m voice_tutor.main --session-id s1 --task "Reverse an array in place"
    python -m voice_tutor.main --session-id s1 --show-map   # Print the saved concept map
    python -m voice_tutor.main --session-id s1 --pivot      # Suggest questions for the weakest concept
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from voice_tutor.config import settings
from voice_tutor.events import ConfidenceReached, ErrorEvent, PivotQueueUpdated
from voice_tutor.models import TaskContext
from voice_tutor.services.database import ConceptMapStore
from voice_tutor.session import TutorSession

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s: %(message)s")
log = logging.getLogger(__name__)

AUDIO_FRAME_BYTES = 8000  # 250 ms of 16 kHz, 16-bit mono


def show_map(session_id: str) -> int:
    record = ConceptMapStore().load_record(session_id)
    if record is None:
        print(f"No saved session {session_id!r}")
        return 1
    print(json.dumps(record.concept_map.model_dump(mode="json", by_alias=True), indent=2))
    print("\nPivot queue:")
    for entry in record.pivot_queue:
        print(f"  {entry.confidence:.2f}  {entry.concept} ({entry.category})")
    print(f"\nConfidence reached: {record.confidence_reached}")
    return 0


def print_events(session: TutorSession) -> None:
    session.bus.subscribe(ErrorEvent, lambda e: print(f"[error] {e.message}"))
    session.bus.subscribe(
        PivotQueueUpdated,
        lambda e: log.info(
            "Pivot queue: " + ", ".join(f"{p.concept}={p.confidence:.2f}" for p in e.queue)
        ),
    )
    session.bus.subscribe(
        ConfidenceReached, lambda e: print(f"[tutor note] {e.guidance or 'Confidence reached'}")
    )


async def run_typed(session: TutorSession) -> None:
    """Each stdin line is one finished utterance."""
    print("Type to talk to the tutor. Empty line or Ctrl-D to quit.")
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        text = line.strip()
        if not text:
            break
        if not session.submit_text(text):
            continue
        await session.wait_until_idle()
        history = session.state.history
        if history and history[-1].role == "assistant":
            print(f"Tutor: {history[-1].content}")


async def run_audio(session: TutorSession, path: Path) -> None:
    """Stream a raw PCM file to the transcription service in real time."""
    if not await session.start_recording():
        print(f"[error] {session.state.error}")
        return
    with open(path, "rb") as f:
        while frame := f.read(AUDIO_FRAME_BYTES):
            await session.send_audio(frame)
            await asyncio.sleep(0.25)
    await session.stop_recording()
    await session.wait_until_idle()
    for message in session.state.history:
        speaker = "You" if message.role == "user" else "Tutor"
        print(f"{speaker}: {message.content}")


async def run_session(args: argparse.Namespace) -> None:
    task_context = TaskContext(task=args.task or "")
    if args.code:
        task_context.code = Path(args.code).read_text()

    if args.audio:
        session = TutorSession.with_microphone(args.session_id, task_context=task_context)
    else:
        session = TutorSession(args.session_id, task_context=task_context)
    print_events(session)

    await session.start()
    try:
        if args.pivot:
            questions = await session.pivot_questions()
            if not questions:
                print("Every concept is confidently assessed.")
            for question in questions:
                print(f"- {question}")
        elif args.audio:
            await run_audio(session, Path(args.audio))
        else:
            await run_typed(session)
    finally:
        await session.close()


def main():
    parser = argparse.ArgumentParser(description="Voice Tutor")
    parser.add_argument("--session-id", type=str, default="default")
    parser.add_argument("--task", type=str, default=None, help="What the student is working on")
    parser.add_argument("--code", type=str, default=None, help="File with the student's code")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--typed", action="store_true", help="Read utterances from stdin (default)"
    )
    mode.add_argument("--audio", type=str, default=None, help="Raw 16 kHz PCM file to transcribe")
    mode.add_argument(
        "--show-map", action="store_true", help="Print the saved concept map and exit"
    )
    mode.add_argument(
        "--pivot", action="store_true", help="Print questions for the weakest concept and exit"
    )
    args = parser.parse_args()

    if args.show_map:
        return show_map(args.session_id)

    log.info(f"Config: session={args.session_id}, silence={settings.SILENCE_THRESHOLD_MS}ms")
    asyncio.run(run_session(args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
