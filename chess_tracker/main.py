"""
Chess Tracker – Main Entry Point
================================

Commands:

  1. **Track**   – Follow a game in a video file and print the moves as
                   they are recognised.
  2. **Replay**  – Rebuild a saved game (``{"startingFEN", "moves"}``)
                   and print its FEN and PGN.

Usage examples
--------------

**Tracking**::

    chess-tracker track \\
        --video game.mp4 \\
        --model pieces.pt \\
        --corners a1=112,690 h1=905,688 h8=790,160 a8=230,162 \\
        --output game.json

**Replay**::

    chess-tracker replay --game game.json
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Tuple

import cv2

from chess_tracker.config import TrackerConfig, load_config
from chess_tracker.errors import CalibrationError, RulesOracleError
from chess_tracker.events import TrackerEvents

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("chess_tracker")


def parse_corner(item: str) -> Tuple[str, Tuple[float, float]]:
    """``"a1=10,20"`` → ``("a1", (10.0, 20.0))``."""
    try:
        key, xy = item.split("=", 1)
        x, y = (float(v) for v in xy.split(","))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"Corner must look like a1=X,Y, got {item!r}"
        ) from exc
    return key.strip().lower(), (x, y)


# ═══════════════════════════════════════════════════════════════════════
# Tracking
# ═══════════════════════════════════════════════════════════════════════

def _build_config(args: argparse.Namespace) -> TrackerConfig:
    config = load_config(args.config) if args.config else TrackerConfig()
    overrides = {}
    if args.min_confidence is not None:
        overrides["min_confidence"] = args.min_confidence
    if args.stable_frames is not None:
        overrides["stable_frames"] = args.stable_frames
    if overrides:
        config = dataclasses.replace(config, **overrides)
    if args.greedy or args.lookahead:
        config = config.with_resolver(
            greedy=args.greedy or config.resolver.greedy,
            lookahead=args.lookahead or config.resolver.lookahead,
        )
    return config


def cmd_track(args: argparse.Namespace) -> None:
    """Track a game through a video file."""
    from chess_tracker.inference.calibration import CornerSet
    from chess_tracker.inference.game_state import GameState
    from chess_tracker.inference.pipeline import FrameLoopController
    from chess_tracker.models.yolo_detector import (
        CornerRefiner,
        PieceDetector,
        YoloCornerOracle,
        YoloPieceOracle,
    )

    config = _build_config(args)

    cap = cv2.VideoCapture(args.video)
    if not cap.isOpened():
        log.error("Could not open video: %s", args.video)
        sys.exit(1)
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    detector = PieceDetector(
        YoloPieceOracle(args.model),
        min_confidence=config.min_confidence,
        anchor=config.anchor,
        occluder_labels=config.occluder_labels,
    )
    refiner = None
    if args.corner_model:
        refiner = CornerRefiner(
            YoloCornerOracle(args.corner_model),
            min_confidence=config.corner_min_confidence,
            min_area=config.min_corner_area,
        )

    events = TrackerEvents(
        on_move_applied=lambda record: print(f"  {game.move_text}"),
        on_move_undone=lambda record: print(f"  (took back {record.san})"),
        on_ambiguous=lambda tied: log.info(
            "Waiting: ambiguous between %s", ", ".join(c.san for c in tied),
        ),
        on_lost_sync=lambda streak: print(
            f"  !! lost sync ({streak} unreadable observations) – check the board"
        ),
    )

    try:
        game = GameState(starting_fen=args.fen)
        controller = FrameLoopController(
            detector,
            CornerSet(dict(args.corners)),
            game=game,
            config=config,
            events=events,
            corner_refiner=refiner,
            frame_size=(width, height),
        )
    except (CalibrationError, RulesOracleError) as exc:
        log.error("%s", exc)
        sys.exit(1)

    frame_idx = 0
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            frame_idx += 1
            if frame_idx % args.every != 0:
                continue
            controller.process(frame)
    except RulesOracleError as exc:
        log.error("Game state corrupted, stopping: %s", exc)
    finally:
        cap.release()

    stats = controller.stats
    print("\n" + "=" * 60)
    print("  CHESS TRACKING RESULT")
    print("=" * 60)
    print(f"  Moves          : {game.pgn_moves}")
    print(f"  FEN            : {game.fen}")
    print(f"  Frames         : {stats.processed} processed, "
          f"{stats.skipped} skipped, {stats.dropped} dropped")
    print(f"  Pipeline speed : {stats.fps:.1f} fps")
    print("=" * 60 + "\n")

    if args.output:
        Path(args.output).write_text(json.dumps(game.to_dict(), indent=2), encoding="utf-8")
        log.info("Game saved to %s", args.output)
    if args.pgn:
        Path(args.pgn).write_text(game.to_pgn({"Event": "Tracked game"}) + "\n", encoding="utf-8")
        log.info("PGN saved to %s", args.pgn)


# ═══════════════════════════════════════════════════════════════════════
# Replay
# ═══════════════════════════════════════════════════════════════════════

def cmd_replay(args: argparse.Namespace) -> None:
    """Rebuild a saved game and print it."""
    from chess_tracker.inference.game_state import GameState

    data = json.loads(Path(args.game).read_text(encoding="utf-8"))
    try:
        game = GameState.from_dict(data)
    except RulesOracleError as exc:
        log.error("Cannot replay %s: %s", args.game, exc)
        sys.exit(1)

    print(game.to_pgn())
    print(f"\nFEN: {game.fen}")


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chess-tracker",
        description="Follow a live chess game from a video of the board.",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # ── track ──
    p_track = sub.add_parser("track", help="Track a game in a video file")
    p_track.add_argument("--video", required=True, help="Path to the video file")
    p_track.add_argument("--model", required=True, help="YOLO piece model (.pt)")
    p_track.add_argument("--corners", nargs=4, required=True, metavar="ID=X,Y", type=parse_corner,
                         help="Pixel positions of the a1, h1, h8 and a8 outer corners")
    p_track.add_argument("--corner-model", default=None,
                         help="YOLO corner model for marker refinement (optional)")
    p_track.add_argument("--config", default=None, help="JSON tracker configuration")
    p_track.add_argument("--fen", default=None, help="Starting position (setup games)")
    p_track.add_argument("--min-confidence", type=float, default=None)
    p_track.add_argument("--stable-frames", type=int, default=None)
    p_track.add_argument("--every", type=int, default=1,
                         help="Only feed every N-th video frame")
    p_track.add_argument("--greedy", action="store_true",
                         help="Accept best partial matches (may take moves back)")
    p_track.add_argument("--lookahead", action="store_true",
                         help="Also consider a move and its reply together")
    p_track.add_argument("--output", default=None, help="Save the game as JSON")
    p_track.add_argument("--pgn", default=None, help="Save the game as PGN")

    # ── replay ──
    p_replay = sub.add_parser("replay", help="Print a saved game")
    p_replay.add_argument("--game", required=True, help="Game JSON file")

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "track": cmd_track,
        "replay": cmd_replay,
    }

    dispatch[args.command](args)


if __name__ == "__main__":
    main()
