"""
Occupancy Mapping – detections → per-square snapshot
====================================================

Responsibilities:
  1. Project each candidate's anchor through the calibration and assign
     it to the square it lands on.
  2. Resolve collisions: when two candidates land on one square the more
     confident one wins.  Classes are never averaged.
  3. Fill every square nobody claimed with *empty* at confidence 1.0.
  4. (``OccupancyStabilizer``) only pass a square on once its state has
     been the same for K consecutive frames; unstable squares are left
     out of the snapshot so the resolver ignores them.

Squares are python-chess square indices (a1 = 0 … h8 = 63).
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import chess
import numpy as np

from chess_tracker.inference.calibration import Calibration, square_at
from chess_tracker.models.pieces import CLASS_TO_FEN, board_classes

log = logging.getLogger(__name__)


# ── Data structures ────────────────────────────────────────────────────

@dataclass(frozen=True)
class SquareObservation:
    """What one frame says about one square."""
    piece: Optional[str]        # canonical class name, None = empty
    confidence: float

    @property
    def occupied(self) -> bool:
        return self.piece is not None


@dataclass(frozen=True)
class OccupancySnapshot:
    """Observed state of (a subset of) the 64 squares.

    A square missing from the snapshot is *unknown*, which is different
    from an empty observation.
    """
    squares: Mapping[int, SquareObservation] = field(default_factory=dict)

    def __getitem__(self, square: int) -> SquareObservation:
        return self.squares[square]

    def __contains__(self, square: object) -> bool:
        return square in self.squares

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self.squares))

    def __len__(self) -> int:
        return len(self.squares)

    def items(self) -> List[Tuple[int, SquareObservation]]:
        return sorted(self.squares.items())

    def occupied(self) -> Set[int]:
        """Squares observed as occupied."""
        return {sq for sq, obs in self.squares.items() if obs.occupied}

    def matches_occupancy(self, expected: Mapping[int, object]) -> bool:
        """True if every observed square agrees with *expected* on
        empty vs occupied (classes and confidences ignored).

        *expected* maps occupied squares to anything truthy.
        """
        return all(
            obs.occupied == (expected.get(sq) is not None)
            for sq, obs in self.squares.items()
        )

    def total_weight(self) -> float:
        return float(sum(obs.confidence for obs in self.squares.values()))

    def board_fen(self) -> str:
        """FEN placement field of the snapshot ('?' for unknown squares).

        Used for logging only.
        """
        rows: List[str] = []
        for rank in range(7, -1, -1):
            row, empty = "", 0
            for file in range(8):
                sq = chess.square(file, rank)
                obs = self.squares.get(sq)
                if obs is not None and not obs.occupied:
                    empty += 1
                    continue
                if empty:
                    row += str(empty)
                    empty = 0
                row += "?" if obs is None else CLASS_TO_FEN[obs.piece]
            if empty:
                row += str(empty)
            rows.append(row)
        return "/".join(rows)

    @classmethod
    def from_board(cls, board: chess.Board, confidence: float = 1.0) -> "OccupancySnapshot":
        """Snapshot that exactly matches *board* (handy for tests/replays)."""
        classes = board_classes(board)
        return cls({
            sq: SquareObservation(classes.get(sq), confidence)
            for sq in chess.SQUARES
        })

    @classmethod
    def from_pieces(
        cls,
        pieces: Mapping[int, Optional[str]],
        confidence: float = 1.0,
    ) -> "OccupancySnapshot":
        """Full 64-square snapshot from ``{square: class}``; others empty."""
        return cls({
            sq: SquareObservation(pieces.get(sq), confidence)
            for sq in chess.SQUARES
        })


# ── Mapper ─────────────────────────────────────────────────────────────

class OccupancyMapper:
    """Turn one frame's candidates into a full 64-square snapshot."""

    def map(self, candidates: Iterable, calibration: Calibration) -> OccupancySnapshot:
        """Assign *candidates* (``DetectionCandidate``) to squares.

        Collision policy: the higher-confidence candidate keeps the
        square; on an exact tie the first one seen wins.
        """
        candidates = list(candidates)
        best: Dict[int, SquareObservation] = {}

        if candidates:
            anchors = np.array([c.anchor for c in candidates], dtype=np.float64)
            board_pts = calibration.to_board_many(anchors)

            for cand, (bx, by) in zip(candidates, board_pts):
                square = square_at(float(bx), float(by))
                if square is None:
                    continue
                current = best.get(square)
                if current is None or cand.confidence > current.confidence:
                    best[square] = SquareObservation(cand.piece, cand.confidence)

        squares = {
            sq: best.get(sq, SquareObservation(None, 1.0))
            for sq in chess.SQUARES
        }
        return OccupancySnapshot(squares)


# ── Temporal stabilisation ─────────────────────────────────────────────

@dataclass
class _SquareTrack:
    piece: Optional[str]
    confidences: Deque[float]


class OccupancyStabilizer:
    """Require K consecutive agreeing frames before a square is trusted.

    Parameters
    ----------
    stable_frames : int
        K.  With ``1`` every frame is passed through unchanged.
    """

    def __init__(self, stable_frames: int = 3) -> None:
        if stable_frames < 1:
            raise ValueError(f"stable_frames must be >= 1, got {stable_frames}")
        self.stable_frames = stable_frames
        self._tracks: Dict[int, _SquareTrack] = {}

    def update(self, snapshot: OccupancySnapshot) -> OccupancySnapshot:
        """Feed one frame; return the snapshot of stable squares only.

        The confidence of a stable square is the mean over its streak.
        """
        stable: Dict[int, SquareObservation] = {}

        for sq, obs in snapshot.items():
            track = self._tracks.get(sq)
            if track is None or track.piece != obs.piece:
                track = _SquareTrack(obs.piece, deque(maxlen=self.stable_frames))
                self._tracks[sq] = track
            track.confidences.append(obs.confidence)

            if len(track.confidences) >= self.stable_frames:
                mean_conf = sum(track.confidences) / len(track.confidences)
                stable[sq] = SquareObservation(obs.piece, mean_conf)

        # Squares absent from this frame lose their streak
        for sq in set(self._tracks) - set(snapshot.squares):
            del self._tracks[sq]

        return OccupancySnapshot(stable)

    def reset(self) -> None:
        """Forget all history (calibration change, resize, game reset)."""
        self._tracks = {}
