#!/usr/bin/env python3
"""
Story Player

Plays an interactive bedtime story in the terminal: narration through the
speakers, background music on a second channel and choices by keyboard,
by voice or by the countdown.

Chapters come from an in-process StoryService by default (needs the API keys
in .env) or from a running server with --server.

Usage:
    python scripts/play_story.py --genre fantasy --voice sarah
    python scripts/play_story.py --server http://localhost:5000 --no-voice
    python scripts/play_story.py --headless --chapters 2   # no audio devices

Keys while playing:
    1 / 2   pick the first / second choice
    p       pause or resume narration
    m       background music on/off
    q       quit
"""

import argparse
import asyncio
import logging
import random
import sys
import threading
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.config import get_settings
from eternal_storyteller.errors import PlaybackBlocked
from eternal_storyteller.main import build_story_service
from eternal_storyteller.models import Chapter, SessionStatus
from eternal_storyteller.player import (
    AmbienceController,
    ChoiceConfig,
    ChoiceResolver,
    LocalChapterSource,
    PlaybackController,
    SimulatedPlayback,
    SpeechHeuristic,
    StoryApiClient,
    StorySession,
)
from eternal_storyteller.services.logger import init_logger


def parse_args():
    parser = argparse.ArgumentParser(description="Play an interactive bedtime story")
    parser.add_argument("--genre", default="fantasy", help="fantasy, adventure, mystery or peaceful")
    parser.add_argument("--voice", default="sarah", help="sarah, david or luna")
    parser.add_argument("--title", help="Story title (random from the genre if omitted)")
    parser.add_argument("--server", help="Use a running storyteller API instead of in-process services")
    parser.add_argument("--chapters", type=int, help="Stop after this many chapters")
    parser.add_argument("--headless", action="store_true", help="Simulated audio, no devices needed")
    parser.add_argument("--no-voice", action="store_true", help="Disable spoken choices")
    parser.add_argument("--no-music", action="store_true", help="Disable background music")
    parser.add_argument("--stop-on-sleep", action="store_true", help="End the story when nobody answers")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args()


def start_keyboard(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    """Feed stdin lines into the queue from a daemon thread"""
    def read():
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.strip().lower())
        loop.call_soon_threadsafe(queue.put_nowait, "q")

    threading.Thread(target=read, daemon=True).start()


def print_chapter(chapter: Chapter):
    print(f"\n📖 Chapter {chapter.chapter_index}\n")
    print(chapter.text)
    print()
    for position, choice in enumerate(chapter.choices, start=1):
        print(f"   {position}. {choice.label}")
    print()


async def handle_keys(queue: asyncio.Queue, session: StorySession, ambience):
    while True:
        command = await queue.get()
        if command == "q":
            session.stop()
            return
        if command == "p":
            try:
                session.playback.toggle_play_pause()
            except PlaybackBlocked as e:
                print(f"⚠️  {e}")
        elif command == "m" and ambience is not None:
            ambience.toggle_play_pause()
        elif command in ("1", "2") and session.chapter is not None:
            choice = session.chapter.choices[int(command) - 1]
            if not session.select(choice.id):
                print("⏳ Wait for the chapter to finish")


async def play(args):
    settings = get_settings()

    if args.server:
        source = StoryApiClient(args.server)
    else:
        source = LocalChapterSource(build_story_service(settings, init_logger(settings)))

    capture = None
    if args.headless:
        narration_device = SimulatedPlayback(duration=3.0, autorun=True, tick=0.1)
        music_device = SimulatedPlayback(duration=30.0, autorun=True, tick=0.5)
    else:
        from eternal_storyteller.player.devices import (
            PygameChannelPlayback,
            PygamePlayback,
            SoundDeviceCapture,
        )
        narration_device = PygamePlayback()
        music_device = PygameChannelPlayback()
        if not args.no_voice:
            capture = SoundDeviceCapture()

    ambience = None
    if not args.no_music:
        ambience = AmbienceController.from_settings(settings, music_device, random_start=True)
        if not ambience.tracks:
            print(f"🎶 No music found in {settings.music_dir}/")
            ambience = None

    rng = random.Random()
    resolver = ChoiceResolver(
        ChoiceConfig.from_settings(settings, voice=not args.no_voice),
        capture=capture,
        transcriber=source.transcribe if capture is not None else None,
        heuristic=SpeechHeuristic.from_settings(settings),
        rng=rng,
    )
    session = StorySession(
        source,
        PlaybackController(narration_device),
        resolver,
        ambience=ambience,
        stop_on_sleep=args.stop_on_sleep,
        rng=rng,
    )

    session.on_chapter = print_chapter
    session.on_error = lambda error: print(f"❌ {error}")
    session.on_blocked = lambda error: print(f"⏸️  Narration is blocked ({error}); press p to start it")
    resolver.on_tick = lambda remaining: (
        print(f"⏰ {remaining}s") if remaining % 15 == 0 or remaining <= 5 else None
    )
    resolver.on_resolved = lambda resolution: print(
        f"🔀 {resolution.path.value}: {resolution.choice_id or 'listener asleep'}"
    )

    def announce(status: SessionStatus):
        if status == SessionStatus.CHOOSING:
            listening = " or say it" if resolver.voice_enabled else ""
            print(f"👉 Press 1 or 2{listening}")

    session.on_status_change = announce

    if ambience is not None:
        ambience.toggle_play_pause()

    queue: asyncio.Queue = asyncio.Queue()
    start_keyboard(asyncio.get_running_loop(), queue)
    keys = asyncio.ensure_future(handle_keys(queue, session, ambience))

    try:
        status = await session.run(args.genre, args.voice, args.title, max_chapters=args.chapters)
    except asyncio.CancelledError:
        status = session.status
    finally:
        keys.cancel()
        await source.close()

    print(f"\n🌙 Story ended ({status.value})")
    return 0 if status != SessionStatus.ERROR else 1


def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
    )
    try:
        sys.exit(asyncio.run(play(args)))
    except KeyboardInterrupt:
        print("\n👋 Good night!")


if __name__ == "__main__":
    main()
