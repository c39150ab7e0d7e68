"""
Frame Loop – video frame → game update
======================================

This is the single per-frame entry point for a tracked game.

Pipeline stages:
  1. Corner refinement   – optional, corrects the manual markers
  2. Piece detection     – oracle → filtered, anchored candidates
  3. Occupancy mapping   – candidates → 64-square snapshot
  4. Stabilisation       – keep squares that agreed for K frames
  5. Move resolution     – snapshot vs legal moves of the position
  6. Game update         – apply, confirm or roll back moves

Admission: one frame at a time per game.  A frame that arrives while the
previous one is still in the pipeline, or sooner than
``min_frame_interval`` after the last admitted one, is dropped, never
queued.  Memory stays bounded and staleness is at most one frame.

Cancellation: changing the corners, resizing or resetting the game bumps
a generation counter and clears the stabiliser.  A run that started
before the change discards its result, and moves resolved against an old
game version are refused by ``GameState.apply_move``.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from chess_tracker.config import ResolverConfig, TrackerConfig
from chess_tracker.errors import (
    DegenerateCorners,
    DetectionUnavailable,
    RulesOracleError,
    StalePosition,
)
from chess_tracker.events import TrackerEvents
from chess_tracker.inference.calibration import Calibration, CornerSet, build_calibration
from chess_tracker.inference.game_state import GameState, MoveRecord
from chess_tracker.inference.occupancy import (
    OccupancyMapper,
    OccupancySnapshot,
    OccupancyStabilizer,
)
from chess_tracker.inference.resolver import MoveResolver, Resolution, ResolverState
from chess_tracker.models.yolo_detector import CornerRefiner, PieceDetector

log = logging.getLogger(__name__)


# ── Result dataclasses ────────────────────────────────────────────────

@dataclass(frozen=True)
class FrameOutcome:
    """What happened to one admitted frame."""
    status: str                                     # "processed" | "skipped" | "stale"
    resolution: Optional[Resolution] = None
    applied: Tuple[MoveRecord, ...] = ()
    undone: Tuple[MoveRecord, ...] = ()
    snapshot: Optional[OccupancySnapshot] = None    # stable squares only
    reason: str = ""


@dataclass
class FrameStats:
    """Counters for the status line."""
    admitted: int = 0
    processed: int = 0
    dropped: int = 0
    skipped: int = 0
    stale: int = 0
    fps: float = 0.0          # smoothed pipeline throughput


# ── Controller ────────────────────────────────────────────────────────

class FrameLoopController:
    """Drive detection → mapping → resolution → game state per frame.

    Parameters
    ----------
    detector : PieceDetector
        Piece detection adapter.
    corners : CornerSet
        Initial corner markers.
    game : GameState, optional
        Game to update; a fresh one when ``None``.
    config : TrackerConfig, optional
        Tracker settings.
    events : TrackerEvents, optional
        Outbound callbacks.
    corner_refiner : CornerRefiner, optional
        Run on every admitted frame when given.
    frame_size : (width, height), optional
        Size the corners refer to; needed for ``resize``.
    clock : callable
        Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        detector: PieceDetector,
        corners: CornerSet,
        game: Optional[GameState] = None,
        config: Optional[TrackerConfig] = None,
        events: Optional[TrackerEvents] = None,
        corner_refiner: Optional[CornerRefiner] = None,
        frame_size: Optional[Tuple[int, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or TrackerConfig()
        self.detector = detector
        self.game = game or GameState()
        self.events = events or TrackerEvents()
        self.corner_refiner = corner_refiner
        self.mapper = OccupancyMapper()
        self.stabilizer = OccupancyStabilizer(self.config.stable_frames)
        self.resolver = MoveResolver(self.game.rules, self.config.resolver)
        self.stats = FrameStats()
        self._clock = clock

        self._in_flight = threading.Lock()       # single-slot admission
        self._state_lock = threading.RLock()     # calibration / stabiliser / generation
        self._executor: Optional[ThreadPoolExecutor] = None
        self._generation = 0
        self._last_admitted: Optional[float] = None
        self._frame_size = frame_size
        self._tentative_version: Optional[int] = None
        self._tentative_plies = 0
        self._last_tied: Tuple[str, ...] = ()
        self._terminal_logged = False
        self._failure: Optional[RulesOracleError] = None

        self._calibration = build_calibration(corners, min_area=self.config.min_corner_area)

        log.info(
            "Frame loop ready  stable_frames=%d  greedy=%s  lookahead=%s",
            self.config.stable_frames,
            self.config.resolver.greedy,
            self.config.resolver.lookahead,
        )

    # ── Properties ─────────────────────────────────────────────────────

    @property
    def calibration(self) -> Calibration:
        return self._calibration

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    @property
    def has_tentative_move(self) -> bool:
        return self._tentative_version is not None

    # ── Admission ──────────────────────────────────────────────────────

    def process(
        self,
        frame: np.ndarray,
        resolver_config: Optional[ResolverConfig] = None,
    ) -> Optional[FrameOutcome]:
        """Run the pipeline on *frame* in the calling thread.

        Returns ``None`` when the frame was dropped at admission.

        Raises
        ------
        RulesOracleError
            The game state is inconsistent; call ``reset_game``.
        """
        if not self._admit():
            return None
        try:
            return self._run(frame, resolver_config)
        finally:
            self._in_flight.release()

    def submit(
        self,
        frame: np.ndarray,
        resolver_config: Optional[ResolverConfig] = None,
    ) -> Optional["Future[FrameOutcome]"]:
        """Run the pipeline on a background worker.

        Returns ``None`` if the frame was dropped, else a future holding
        the ``FrameOutcome``.  Never queues more than the running frame.
        """
        if not self._admit():
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame-loop")
        try:
            return self._executor.submit(self._run_and_release, frame, resolver_config)
        except RuntimeError:
            self._in_flight.release()
            raise

    def close(self) -> None:
        """Wait for the running frame and stop the worker thread."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _admit(self) -> bool:
        if self._failure is not None:
            raise self._failure

        if not self._in_flight.acquire(blocking=False):
            self.stats.dropped += 1
            log.debug("Frame dropped: pipeline busy")
            return False

        now = self._clock()
        if (
            self._last_admitted is not None
            and now - self._last_admitted < self.config.min_frame_interval
        ):
            self._in_flight.release()
            self.stats.dropped += 1
            log.debug("Frame dropped: throttled")
            return False

        self._last_admitted = now
        self.stats.admitted += 1
        return True

    def _run_and_release(
        self,
        frame: np.ndarray,
        resolver_config: Optional[ResolverConfig],
    ) -> FrameOutcome:
        try:
            return self._run(frame, resolver_config)
        finally:
            self._in_flight.release()

    # ── Calibration & lifecycle ────────────────────────────────────────

    def set_corners(self, corners: CornerSet) -> Calibration:
        """Replace the corner markers.

        Raises
        ------
        DegenerateCorners
            The corners are unusable; the old calibration stays active.
        """
        try:
            calibration = build_calibration(corners, min_area=self.config.min_corner_area)
        except DegenerateCorners as exc:
            log.warning("Corners rejected, keeping previous calibration: %s", exc)
            raise
        self._install(calibration)
        return calibration

    def resize(self, width: int, height: int) -> None:
        """The frame size changed: rescale corners, restart smoothing."""
        with self._state_lock:
            old = self._frame_size
            self._frame_size = (width, height)
            if old is None or old == (width, height):
                self._invalidate()
                return
            corners = self._calibration.corners.scaled(width / old[0], height / old[1])
        self.set_corners(corners)

    def reset_game(self, starting_fen: Optional[str] = None) -> None:
        """Start a new game; in-flight results are discarded."""
        with self._state_lock:
            self.game.reset(starting_fen)
            self.resolver.reset()
            self._tentative_version = None
            self._tentative_plies = 0
            self._last_tied = ()
            self._terminal_logged = False
            self._failure = None
            self._invalidate()

    def _install(self, calibration: Calibration) -> None:
        with self._state_lock:
            self._calibration = calibration
            self._invalidate()
        log.info("Calibration changed: %s", calibration.corners)
        self.events.emit("on_calibration_changed", calibration)

    def _invalidate(self) -> None:
        self._generation += 1
        self.stabilizer.reset()

    # ── Pipeline ───────────────────────────────────────────────────────

    def _run(
        self,
        frame: np.ndarray,
        resolver_config: Optional[ResolverConfig],
    ) -> FrameOutcome:
        started = self._clock()
        config = resolver_config or self.config.resolver

        with self._state_lock:
            generation = self._generation
            calibration = self._calibration

        # 1. Corner refinement
        if self.corner_refiner is not None:
            calibration, generation = self._refine(frame, calibration, generation)

        # 2. Detection
        try:
            candidates = self.detector.detect(frame, calibration)
        except DetectionUnavailable as exc:
            self.stats.skipped += 1
            log.debug("Frame skipped: %s", exc)
            return FrameOutcome("skipped", reason=str(exc))

        # 3. + 4. Mapping and stabilisation
        raw = self.mapper.map(candidates, calibration)
        with self._state_lock:
            if generation != self._generation:
                return self._stale("calibration changed")
            stable = self.stabilizer.update(raw)

        # 5. + 6. Resolution and game update
        try:
            outcome = self._resolve(stable, config, generation)
        except RulesOracleError as exc:
            log.error("Rules oracle failed, halting until reset_game: %s", exc)
            self._failure = exc
            raise

        self.stats.processed += 1
        self._tick(self._clock() - started)
        return outcome

    def _refine(
        self,
        frame: np.ndarray,
        calibration: Calibration,
        generation: int,
    ) -> Tuple[Calibration, int]:
        try:
            refined = self.corner_refiner.refine(frame, calibration.corners)
        except (DetectionUnavailable, DegenerateCorners) as exc:
            log.debug("Corner refinement ignored: %s", exc)
            return calibration, generation

        # Jitter within corner_tolerance keeps the active calibration
        if refined.max_offset(calibration.corners) <= self.config.corner_tolerance:
            return calibration, generation

        updated = build_calibration(refined, min_area=self.config.min_corner_area)
        self._install(updated)
        with self._state_lock:
            return self._calibration, self._generation

    def _resolve(
        self,
        stable: OccupancySnapshot,
        config: ResolverConfig,
        generation: int,
    ) -> FrameOutcome:
        version, _, position = self.game.snapshot()

        if self.game.is_terminal:
            if not self._terminal_logged:
                log.info("Game over (%s); no further moves are resolved", self.game.result)
                self._terminal_logged = True
            return FrameOutcome("processed", snapshot=stable, reason="game over")

        resolution = self.resolver.resolve(stable, position, config)

        if self._tentative_version is not None:
            if self._tentative_version != version:
                self._tentative_version = None
                self._tentative_plies = 0
            else:
                outcome = self._settle_tentative(stable, resolution, config, version, generation)
                if outcome is not None:
                    return outcome

        self._notify(resolution)

        if resolution.state is not ResolverState.RESOLVED:
            return FrameOutcome("processed", resolution=resolution, snapshot=stable)

        applied = self._apply(resolution, config, version, generation)
        if applied is None:
            return self._stale("game changed during resolution")
        return FrameOutcome("processed", resolution=resolution, applied=applied, snapshot=stable)

    def _settle_tentative(
        self,
        stable: OccupancySnapshot,
        resolution: Resolution,
        config: ResolverConfig,
        version: int,
        generation: int,
    ) -> Optional[FrameOutcome]:
        """Confirm or roll back the last greedily applied step.

        A step is one move, or a (move, reply) pair from lookahead; it is
        judged and undone as a whole.  Returns an outcome when the frame is
        fully handled here, ``None`` to continue with the normal path.
        """
        if resolution.state in (ResolverState.IDLE, ResolverState.RESOLVED):
            # Board agrees with the tentative step (or has moved past it)
            log.debug("Tentative step confirmed")
            self._tentative_version = None
            self._tentative_plies = 0
            return None

        plies = self._tentative_plies
        prior = self.game.previous_position(plies)
        strict = dataclasses.replace(config, greedy=False, lookahead=False)
        before = self.resolver.evaluate(stable, prior, strict)
        step = tuple(r.move for r in self.game.history[-plies:])

        if before.state is ResolverState.IDLE:
            return self._rollback(stable, before, plies, version, generation)

        if before.state is ResolverState.RESOLVED and before.candidate.moves != step:
            return self._rollback(stable, before, plies, version, generation)

        return FrameOutcome("processed", resolution=resolution, snapshot=stable)

    def _rollback(
        self,
        stable: OccupancySnapshot,
        replacement: Resolution,
        plies: int,
        version: int,
        generation: int,
    ) -> FrameOutcome:
        with self._state_lock:
            if generation != self._generation or self.game.version != version:
                return self._stale("game changed during rollback")
            undone = tuple(self.game.undo_last() for _ in range(plies))
            self._tentative_version = None
            self._tentative_plies = 0
        log.info("Rolled back tentative %s", " ".join(r.san for r in reversed(undone)))
        for record in undone:
            self.events.emit("on_move_undone", record)

        applied: Tuple[MoveRecord, ...] = ()
        if replacement.state is ResolverState.RESOLVED:
            applied = self._apply(
                replacement, dataclasses.replace(self.config.resolver, greedy=False),
                version + plies, generation,
            ) or ()
        return FrameOutcome(
            "processed", resolution=replacement, applied=applied, undone=undone,
            snapshot=stable,
        )

    def _apply(
        self,
        resolution: Resolution,
        config: ResolverConfig,
        version: int,
        generation: int,
    ) -> Optional[Tuple[MoveRecord, ...]]:
        """Apply the resolved move(s); ``None`` if the result went stale."""
        candidate = resolution.candidate
        tentative = len(candidate.moves) > 1 or candidate.conflict > config.accept_conflict

        records = []
        stale = False
        expected = version
        with self._state_lock:
            if generation != self._generation:
                return None
            try:
                for move in candidate.moves:
                    records.append(self.game.apply_move(move, expected_version=expected))
                    expected += 1
            except StalePosition as exc:
                log.debug("Discarding stale resolution: %s", exc)
                stale = True
            if records and tentative and not stale:
                self._tentative_version = self.game.version
                self._tentative_plies = len(records)
            else:
                self._tentative_version = None
                self._tentative_plies = 0

        for record in records:
            self.events.emit("on_move_applied", record)
        if stale and not records:
            return None
        return tuple(records)

    def _notify(self, resolution: Resolution) -> None:
        if resolution.state is ResolverState.AMBIGUOUS:
            sans = tuple(c.san for c in resolution.tied)
            if sans != self._last_tied:
                self._last_tied = sans
                self.events.emit("on_ambiguous", resolution.tied)
        else:
            self._last_tied = ()

        if resolution.lost_sync:
            self.events.emit("on_lost_sync", resolution.rejection_streak)

    def _stale(self, reason: str) -> FrameOutcome:
        self.stats.stale += 1
        log.debug("Frame result discarded: %s", reason)
        return FrameOutcome("stale", reason=reason)

    def _tick(self, elapsed: float) -> None:
        if elapsed <= 0:
            return
        rate = 1.0 / elapsed
        self.stats.fps = rate if self.stats.fps == 0 else 0.9 * self.stats.fps + 0.1 * rate
