"""Pytest configuration and shared fixtures for the chess tracker.

Detection models are replaced by ``BoardOracle``, a fake piece oracle
that draws one box per piece so that its bottom-centre sits on the
square centre.  No model files or video are needed.
"""
import logging
from typing import Dict, Optional

import chess
import numpy as np
import pytest

from chess_tracker.config import ResolverConfig, TrackerConfig
from chess_tracker.inference.calibration import CornerSet, build_calibration
from chess_tracker.inference.occupancy import OccupancySnapshot
from chess_tracker.models.pieces import board_classes


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


# Board drawn axis-aligned, 100 px per square, a1 bottom-left
SQUARE_CORNERS = {
    "a1": (100.0, 900.0),
    "h1": (900.0, 900.0),
    "h8": (900.0, 100.0),
    "a8": (100.0, 100.0),
}

# A camera looking at the board from an angle
PERSPECTIVE_CORNERS = {
    "a1": (120.0, 700.0),
    "h1": (880.0, 690.0),
    "h8": (700.0, 200.0),
    "a8": (260.0, 210.0),
}


class BoardOracle:
    """Fake piece oracle reporting the pieces in ``self.pieces``."""

    def __init__(self, calibration, pieces: Dict[int, str], score: float = 0.9):
        self.calibration = calibration
        self.pieces = dict(pieces)
        self.score = score
        self.extra = []          # additional raw rows, e.g. a hand
        self.calls = 0

    @classmethod
    def from_board(cls, calibration, board: chess.Board, score: float = 0.9):
        return cls(calibration, board_classes(board), score)

    def set_board(self, board: chess.Board) -> None:
        self.pieces = board_classes(board)

    def __call__(self, frame):
        self.calls += 1
        rows = []
        for sq, name in sorted(self.pieces.items()):
            cx, cy = self.calibration.square_center_pixel(sq)
            rows.append(((cx - 30.0, cy - 80.0, cx + 30.0, cy), name, self.score))
        return rows + list(self.extra)


def snapshot_of(board: chess.Board, **changes: Optional[str]) -> OccupancySnapshot:
    """Full snapshot of *board* with some squares overridden.

    ``snapshot_of(board, e2=None, e4="white_pawn")``
    """
    pieces = board_classes(board)
    for name, value in changes.items():
        sq = chess.parse_square(name)
        if value is None:
            pieces.pop(sq, None)
        else:
            pieces[sq] = value
    return OccupancySnapshot.from_pieces(pieces)


@pytest.fixture
def frame():
    """A blank 1000×1000 BGR frame; fake oracles ignore its content."""
    return np.zeros((1000, 1000, 3), dtype=np.uint8)


@pytest.fixture
def corners():
    return CornerSet(SQUARE_CORNERS)


@pytest.fixture
def calibration(corners):
    return build_calibration(corners)


@pytest.fixture
def perspective_calibration():
    return build_calibration(PERSPECTIVE_CORNERS)


@pytest.fixture
def start_board():
    return chess.Board()


@pytest.fixture
def resolver_config():
    return ResolverConfig()


@pytest.fixture
def tracker_config():
    """Single-frame stability so each test frame is decisive."""
    return TrackerConfig(stable_frames=1, min_confidence=0.5)
