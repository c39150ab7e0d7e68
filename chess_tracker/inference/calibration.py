"""
Board Calibration – corner markers → homography
===============================================

The user places four markers on the outer corners of a1, h1, h8 and a8.
From those four pixel positions we solve a perspective transform between
the camera image and a canonical board plane in which one unit is one
square:

    a8 (0, 8) ─────── h8 (8, 8)
       │                 │
       │                 │
    a1 (0, 0) ─────── h1 (8, 0)

so ``floor(file), floor(rank)`` of a projected point is the square it
falls on.  Both directions are exposed: ``to_board`` for mapping
detections, ``to_pixel`` for drawing markers and overlays.

Corner input is validated before solving.  Points that coincide, three
collinear corners or a self-intersecting (bow-tie) ordering are rejected
with ``DegenerateCorners``; the caller keeps its previous calibration.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Optional, Sequence, Tuple

import chess
import cv2
import numpy as np

from chess_tracker.errors import CalibrationError, DegenerateCorners

log = logging.getLogger(__name__)

Point = Tuple[float, float]

# Walking order around the board – consecutive keys share an edge
CORNER_KEYS: Tuple[str, ...] = ("a1", "h1", "h8", "a8")

BOARD_CORNERS: Dict[str, Point] = {
    "a1": (0.0, 0.0),
    "h1": (8.0, 0.0),
    "h8": (8.0, 8.0),
    "a8": (0.0, 8.0),
}

MIN_CORNER_AREA: float = 1.0  # pixel²


# ── Corner set ─────────────────────────────────────────────────────────

class CornerSet(Mapping[str, Point]):
    """Immutable mapping ``{"a1" | "h1" | "h8" | "a8": (x, y)}``."""

    __slots__ = ("_points",)

    def __init__(self, points: Mapping[str, Sequence[float]]) -> None:
        keys = set(points)
        if keys != set(CORNER_KEYS):
            missing = sorted(set(CORNER_KEYS) - keys)
            extra = sorted(keys - set(CORNER_KEYS))
            raise CalibrationError(
                f"Corner set needs exactly {CORNER_KEYS}; "
                f"missing={missing} extra={extra}"
            )
        parsed: Dict[str, Point] = {}
        for key in CORNER_KEYS:
            xy = points[key]
            if len(xy) != 2:
                raise CalibrationError(f"Corner {key} must be (x, y), got {xy!r}")
            x, y = float(xy[0]), float(xy[1])
            if not (math.isfinite(x) and math.isfinite(y)):
                raise CalibrationError(f"Corner {key} is not finite: {xy!r}")
            parsed[key] = (x, y)
        self._points = parsed

    def __getitem__(self, key: str) -> Point:
        return self._points[key]

    def __iter__(self) -> Iterator[str]:
        return iter(CORNER_KEYS)

    def __len__(self) -> int:
        return 4

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}=({x:.1f}, {y:.1f})" for k, (x, y) in self._points.items())
        return f"CornerSet({inner})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CornerSet):
            return NotImplemented
        return self._points == other._points

    def __hash__(self) -> int:
        return hash(tuple(self._points[k] for k in CORNER_KEYS))

    def replace(self, **points: Sequence[float]) -> "CornerSet":
        """Return a copy with some corners moved."""
        merged = dict(self._points)
        merged.update(points)
        return CornerSet(merged)

    def max_offset(self, other: "CornerSet") -> float:
        """Largest distance (px) between matching corners of two sets."""
        return max(
            math.hypot(self._points[k][0] - other[k][0], self._points[k][1] - other[k][1])
            for k in CORNER_KEYS
        )

    def scaled(self, sx: float, sy: float) -> "CornerSet":
        """Rescale every corner, e.g. after the frame size changed."""
        return CornerSet({k: (x * sx, y * sy) for k, (x, y) in self._points.items()})

    def as_array(self) -> np.ndarray:
        """4×2 float64 array in ``CORNER_KEYS`` order."""
        return np.array([self._points[k] for k in CORNER_KEYS], dtype=np.float64)


# ── Validation ─────────────────────────────────────────────────────────

def _cross(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def signed_area(pts: np.ndarray) -> float:
    """Shoelace area of a polygon given as an N×2 array."""
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def validate_corners(corners: CornerSet, min_area: float = MIN_CORNER_AREA) -> None:
    """Raise ``DegenerateCorners`` unless the corners form a convex quad.

    Checks, in order:
      1. all four points are distinct;
      2. every triangle of three consecutive corners has area above
         *min_area* (rejects collinear corners);
      3. all turns go the same way (rejects bow-ties);
      4. the quadrilateral area exceeds *min_area*.
    """
    pts = corners.as_array()

    for i in range(4):
        for j in range(i + 1, 4):
            if np.allclose(pts[i], pts[j]):
                raise DegenerateCorners(
                    f"Corners {CORNER_KEYS[i]} and {CORNER_KEYS[j]} coincide"
                )

    turns = []
    for i in range(4):
        o, a, b = pts[i], pts[(i + 1) % 4], pts[(i + 2) % 4]
        cross = _cross(o, a, b)
        if abs(cross) / 2.0 <= min_area:
            raise DegenerateCorners(
                f"Corners {CORNER_KEYS[i]}, {CORNER_KEYS[(i + 1) % 4]}, "
                f"{CORNER_KEYS[(i + 2) % 4]} are (nearly) collinear"
            )
        turns.append(cross > 0)

    if len(set(turns)) != 1:
        raise DegenerateCorners("Corners form a self-intersecting or concave quadrilateral")

    area = abs(signed_area(pts))
    if area <= min_area:
        raise DegenerateCorners(f"Board area {area:.3f} px² is below {min_area}")


# ── Calibration ────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class Calibration:
    """Projective mapping between pixel space and board space.

    Build with ``build_calibration``; never mutated afterwards.
    """
    corners: CornerSet
    homography: np.ndarray          # pixel → board
    inverse: np.ndarray             # board → pixel

    def to_board(self, pixel: Sequence[float]) -> Point:
        """Pixel ``(x, y)`` → board ``(file, rank)`` as floats."""
        out = self.to_board_many(np.asarray([pixel], dtype=np.float64))
        return float(out[0, 0]), float(out[0, 1])

    def to_pixel(self, file: float, rank: float) -> Point:
        """Board ``(file, rank)`` → pixel ``(x, y)``."""
        pt = np.array([[[file, rank]]], dtype=np.float64)
        out = cv2.perspectiveTransform(pt, self.inverse)[0][0]
        return float(out[0]), float(out[1])

    def to_board_many(self, pixels: np.ndarray) -> np.ndarray:
        """Vectorised ``to_board`` for an N×2 array."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if len(pixels) == 0:
            return np.zeros((0, 2), dtype=np.float64)
        return cv2.perspectiveTransform(pixels, self.homography).reshape(-1, 2)

    def square_at_pixel(self, pixel: Sequence[float]) -> Optional[int]:
        """Square under a pixel, or ``None`` when off the board."""
        return square_at(*self.to_board(pixel))

    def square_center_pixel(self, square: int) -> Point:
        """Pixel position of a square's centre (for markers/overlays)."""
        return self.to_pixel(chess.square_file(square) + 0.5, chess.square_rank(square) + 0.5)


def square_at(file: float, rank: float) -> Optional[int]:
    """Board coordinates → the square whose centre is nearest.

    Returns ``None`` for points outside the 8×8 board.
    """
    if not (math.isfinite(file) and math.isfinite(rank)):
        return None
    fi, ri = math.floor(file), math.floor(rank)
    if 0 <= fi < 8 and 0 <= ri < 8:
        return chess.square(fi, ri)
    return None


def build_calibration(
    corners: CornerSet | Mapping[str, Sequence[float]],
    min_area: float = MIN_CORNER_AREA,
) -> Calibration:
    """Validate *corners* and solve the homography.

    Raises
    ------
    DegenerateCorners
        If the corners do not form a usable quadrilateral.
    CalibrationError
        If the corner ids are wrong.
    """
    if not isinstance(corners, CornerSet):
        corners = CornerSet(corners)
    validate_corners(corners, min_area=min_area)

    src = corners.as_array().astype(np.float32)
    dst = np.array([BOARD_CORNERS[k] for k in CORNER_KEYS], dtype=np.float32)
    H = cv2.getPerspectiveTransform(src, dst).astype(np.float64)

    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError as exc:
        raise DegenerateCorners("Homography is singular") from exc

    log.debug("Calibration built from %s", corners)
    return Calibration(corners=corners, homography=H, inverse=H_inv)
