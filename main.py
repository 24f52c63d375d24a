# SPDX-License-Identifier: GPL-3.0-or-later
import argparse
import logging
import os
import sys
import threading
import time
from collections import Counter
from typing import Callable, List, Optional

import archive
from models import Keyframe, Rect, Timeline
from player import PlaybackState, Player
from recorder import Recorder
from settings import APP_DIR, Settings, load_settings

logger = logging.getLogger(__name__)

LOG_FILE = os.path.join(APP_DIR, "automate.log")

# ---- Control surface ----------------------------------------------------------

class Automate:
    """
    Recording/playback control surface shared by a UI and the CLI.

    Everything here runs on the control thread. Global hotkeys only raise
    flags; pump() applies them and drains recorded keyframes.
    """
    def __init__(self, backend=None, screen=None, settings: Optional[Settings] = None,
                 on_status: Optional[Callable[[PlaybackState, str], None]] = None) -> None:
        if backend is None or screen is None:
            # pynput needs a desktop session; only touch it when no fakes were given
            from devices import PynputBackend
            from screen import ScreenCapture
            backend = backend or PynputBackend()
            screen = screen or ScreenCapture()
        self.backend = backend
        self.screen = screen
        self.settings = settings or load_settings()
        self.on_status = on_status or (lambda _state, _msg: None)
        self.recorder = Recorder.from_settings(backend, self.settings, screen)
        self.player = Player.from_settings(backend, self.settings, screen, on_status=self.on_status)
        self.timeline = Timeline()
        self._toggle_requested = threading.Event()
        self._hotkeys = None

    # ---- recording ----
    def begin_recording(self, name: str = "untitled") -> None:
        if self.player.playing:
            raise RuntimeError("Can't record during playback.")
        self.recorder.name = name
        self.recorder.start()

    def end_recording(self) -> Timeline:
        self.timeline = self.recorder.stop()
        return self.timeline

    @property
    def recording(self) -> bool:
        return self.recorder.recording

    def add_image_target(self, region: Rect, tolerance: Optional[float] = None,
                         button: Optional[str] = "left") -> Keyframe:
        if tolerance is None:
            tolerance = self.settings.default_tolerance
        if self.recording:
            return self.recorder.capture_target(region, tolerance, button)
        kf = Keyframe(action=self.recorder.grab_target(region, tolerance, button))
        self.timeline.append(kf)
        return kf

    # ---- playback ----
    def begin_playback(self, timeline: Optional[Timeline] = None) -> threading.Thread:
        if self.recording:
            raise RuntimeError("Stop recording first.")
        if timeline is not None:
            self.timeline = timeline
        return self.player.play(self.timeline)

    def cancel_playback(self) -> None:
        self.player.cancel()

    # ---- persistence ----
    def save(self, path: str) -> None:
        archive.save(self.timeline, path)

    def load(self, path: str) -> Timeline:
        self.timeline = archive.load(path)
        return self.timeline

    # ---- hotkeys / control loop ----
    def request_toggle(self) -> None:
        self._toggle_requested.set()

    def bind_hotkeys(self) -> None:
        if self._hotkeys is not None:
            return
        self._hotkeys = self.backend.hotkeys({
            self.settings.record_hotkey: self.request_toggle,
            self.settings.stop_hotkey: self.cancel_playback,
        })

    def pump(self) -> None:
        """Apply pending hotkey requests and move recorded keyframes into the timeline."""
        if self._toggle_requested.is_set():
            self._toggle_requested.clear()
            if self.recording:
                self.end_recording()
            elif not self.player.playing:
                self.begin_recording(self.recorder.name)
        if self.recording:
            self.recorder.drain()

    def close(self) -> None:
        if self._hotkeys is not None:
            self._hotkeys.stop()
            self._hotkeys = None
        if self.recording:
            self.end_recording()
        self.player.cancel()

# ---- Logging ------------------------------------------------------------------

def setup_logging(verbose: bool = False, log_file: Optional[str] = LOG_FILE) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )

# ---- CLI ----------------------------------------------------------------------

def _print_status(state: PlaybackState, message: str) -> None:
    print(f"{state.value}: {message}" if message else state.value)


def cmd_record(app: Automate, args) -> int:
    app.bind_hotkeys()
    app.begin_recording(args.name or os.path.splitext(os.path.basename(args.output))[0])
    print(f"Recording... ({app.settings.record_hotkey} or Ctrl-C to stop)")
    try:
        while app.recording:
            app.pump()
            time.sleep(0.05)
    except KeyboardInterrupt:
        pass
    finally:
        app.close()
    if args.cull:
        removed = app.timeline.cull_redundant_moves()
        logger.info("Culled %d redundant mouse moves", removed)
    app.save(args.output)
    print(f"Saved {len(app.timeline)} keyframes to {args.output}")
    return 0


def cmd_play(app: Automate, args) -> int:
    app.load(args.input)
    if args.speed is not None:
        app.player.speed = args.speed
    if args.repeats is not None:
        app.player.repeats = args.repeats
    app.bind_hotkeys()
    thread = app.begin_playback()
    try:
        while thread.is_alive():
            thread.join(0.1)
    except KeyboardInterrupt:
        app.cancel_playback()
        thread.join()
    finally:
        app.close()
    return 0 if app.player.state is PlaybackState.COMPLETED else 1


def cmd_info(args) -> int:
    timeline = archive.load(args.input)
    kinds = Counter(kf.kind for kf in timeline)
    print(f"name:      {timeline.name}")
    print(f"created:   {timeline.created.isoformat()}")
    print(f"keyframes: {len(timeline)}")
    print(f"duration:  {timeline.total_duration():.3f}s")
    for kind, count in sorted(kinds.items()):
        print(f"  {kind:<11}{count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="automate", description="Record and replay desktop input.")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("record", help="record input into an archive")
    rec.add_argument("output")
    rec.add_argument("--name")
    rec.add_argument("--cull", action="store_true", help="drop redundant mouse moves before saving")

    play = sub.add_parser("play", help="replay an archive")
    play.add_argument("input")
    play.add_argument("--speed", type=float)
    play.add_argument("--repeats", type=int)

    info = sub.add_parser("info", help="describe an archive")
    info.add_argument("input")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    if args.command == "info":
        return cmd_info(args)
    app = Automate(on_status=_print_status)
    if args.command == "record":
        return cmd_record(app, args)
    return cmd_play(app, args)


# ---- Entry point --------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
