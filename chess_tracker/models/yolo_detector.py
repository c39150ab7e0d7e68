"""
Piece & Corner Detection – oracle adapters
==========================================

The detection models are black boxes.  A *piece oracle* is any callable

    oracle(frame) -> iterable of ((x1, y1, x2, y2), label, score)

and a *corner oracle* any callable

    oracle(frame) -> iterable of ((x, y), corner_id, score)

``YoloPieceOracle`` / ``YoloCornerOracle`` wrap an ``ultralytics`` YOLO
model in that shape; tests plug in plain functions.

Strategy:
  • **Validate** – oracle exceptions and malformed rows become
    ``DetectionUnavailable``; the frame loop skips the frame.
  • **Filter**   – rows below ``min_confidence`` are dropped.  A missing
    detection is absence of evidence, never reported as an empty square.
  • **Anchor**   – each box is reduced to its bottom-centre, which sits on
    the board plane where the piece touches it.  Tall pieces seen from a
    low angle otherwise land one square too far back.
  • **Occluders** – a hand over the board makes the frame unreliable; it
    raises ``FrameOccluded`` so the frame is skipped as a whole.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from chess_tracker.errors import DetectionUnavailable, FrameOccluded
from chess_tracker.inference.calibration import (
    CORNER_KEYS,
    Calibration,
    CornerSet,
    build_calibration,
    MIN_CORNER_AREA,
)
from chess_tracker.models.pieces import normalize_label

log = logging.getLogger(__name__)

Box = Tuple[float, float, float, float]
PieceOracle = Callable[[np.ndarray], Iterable[Tuple[Sequence[float], Any, float]]]
CornerOracle = Callable[[np.ndarray], Iterable[Tuple[Sequence[float], Any, float]]]


# ── Data classes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class DetectionCandidate:
    """One detected object in pixel space."""
    box: Box                     # x1, y1, x2, y2
    piece: Optional[str]         # canonical class name, None = empty square
    confidence: float            # [0, 1]
    anchor: Tuple[float, float]  # pixel point projected onto the board


def box_anchor(box: Box, mode: str = "bottom") -> Tuple[float, float]:
    """Reference point of a box: bottom-centre (default) or centre."""
    x1, y1, x2, y2 = box
    cx = (x1 + x2) / 2
    if mode == "bottom":
        return cx, y2
    return cx, (y1 + y2) / 2


# ── Piece detector ─────────────────────────────────────────────────────

class PieceDetector:
    """Normalise piece-oracle output into ``DetectionCandidate`` lists.

    Parameters
    ----------
    oracle : callable
        The piece-detection oracle.
    min_confidence : float
        Candidates scoring below this are dropped.
    anchor : str
        ``"bottom"`` (box bottom-centre) or ``"center"``.
    occluder_labels : sequence of str
        Labels that mark the frame as occluded rather than being pieces.
    """

    def __init__(
        self,
        oracle: PieceOracle,
        min_confidence: float = 0.5,
        anchor: str = "bottom",
        occluder_labels: Sequence[str] = ("hand",),
    ) -> None:
        self.oracle = oracle
        self.min_confidence = min_confidence
        self.anchor = anchor
        self.occluder_labels = {label.lower() for label in occluder_labels}

    def detect(
        self,
        frame: np.ndarray,
        calibration: Optional[Calibration] = None,
    ) -> List[DetectionCandidate]:
        """Run the oracle on *frame* and return the accepted candidates.

        When *calibration* is given, candidates whose anchor lies off the
        board are dropped here already.

        Raises
        ------
        DetectionUnavailable
            The oracle failed or produced malformed output.
        FrameOccluded
            An occluder was detected above threshold.
        """
        try:
            raw = list(self.oracle(frame))
        except DetectionUnavailable:
            raise
        except Exception as exc:
            raise DetectionUnavailable(f"Piece oracle failed: {exc}") from exc

        candidates: List[DetectionCandidate] = []
        dropped_low = dropped_off_board = 0

        for row in raw:
            box, label, score = _unpack_row(row)

            if str(label).strip().lower() in self.occluder_labels:
                if score >= self.min_confidence:
                    raise FrameOccluded(f"Occluder '{label}' detected (score={score:.2f})")
                continue

            if score < self.min_confidence:
                dropped_low += 1
                continue

            try:
                piece = normalize_label(label)
            except ValueError as exc:
                raise DetectionUnavailable(str(exc)) from exc

            anchor = box_anchor(box, self.anchor)
            if calibration is not None and calibration.square_at_pixel(anchor) is None:
                dropped_off_board += 1
                continue

            candidates.append(DetectionCandidate(
                box=box, piece=piece, confidence=score, anchor=anchor,
            ))

        log.debug(
            "Detections: kept=%d low_conf=%d off_board=%d",
            len(candidates), dropped_low, dropped_off_board,
        )
        return candidates


def _unpack_row(row: Any) -> Tuple[Box, Any, float]:
    """Validate one ``(box, label, score)`` oracle row."""
    try:
        box_raw, label, score_raw = row
        x1, y1, x2, y2 = (float(v) for v in box_raw)
        score = float(score_raw)
    except (TypeError, ValueError) as exc:
        raise DetectionUnavailable(f"Malformed detection row: {row!r}") from exc

    if not all(math.isfinite(v) for v in (x1, y1, x2, y2, score)):
        raise DetectionUnavailable(f"Non-finite values in detection: {row!r}")
    if x2 < x1 or y2 < y1:
        raise DetectionUnavailable(f"Inverted box in detection: {row!r}")
    if not 0.0 <= score <= 1.0:
        raise DetectionUnavailable(f"Score outside [0, 1]: {score}")
    return (x1, y1, x2, y2), label, score


# ── Corner refinement ──────────────────────────────────────────────────

class CornerRefiner:
    """Propose corrections to the manual corner markers.

    For each corner id the highest-scoring oracle point above
    *min_confidence* replaces the current marker; the others are kept.
    """

    def __init__(
        self,
        oracle: CornerOracle,
        min_confidence: float = 0.5,
        min_area: float = MIN_CORNER_AREA,
    ) -> None:
        self.oracle = oracle
        self.min_confidence = min_confidence
        self.min_area = min_area

    def refine(self, frame: np.ndarray, corners: CornerSet) -> CornerSet:
        """Return the refined corner set.

        Raises
        ------
        DetectionUnavailable
            The oracle failed or produced malformed output.
        DegenerateCorners
            The refined corners fail the same checks as manual input.
        """
        try:
            raw = list(self.oracle(frame))
        except Exception as exc:
            raise DetectionUnavailable(f"Corner oracle failed: {exc}") from exc

        best: Dict[str, Tuple[Tuple[float, float], float]] = {}
        for row in raw:
            try:
                point, corner_id, score = row
                x, y = float(point[0]), float(point[1])
                score = float(score)
            except (TypeError, ValueError, IndexError) as exc:
                raise DetectionUnavailable(f"Malformed corner row: {row!r}") from exc

            key = str(corner_id).strip().lower()
            if key not in CORNER_KEYS:
                raise DetectionUnavailable(f"Unknown corner id: {corner_id!r}")
            if not (math.isfinite(x) and math.isfinite(y)) or score < self.min_confidence:
                continue
            if key not in best or score > best[key][1]:
                best[key] = ((x, y), score)

        if not best:
            return corners

        refined = corners.replace(**{k: xy for k, (xy, _) in best.items()})
        build_calibration(refined, min_area=self.min_area)  # same checks as manual input
        log.debug("Corners refined: %s", sorted(best))
        return refined


# ── YOLO oracles ───────────────────────────────────────────────────────

class YoloPieceOracle:
    """Piece oracle backed by an ``ultralytics`` YOLO model."""

    def __init__(self, model_path: str, conf: float = 0.25) -> None:
        from ultralytics import YOLO  # lazy import – optional dependency

        self.model = YOLO(model_path)
        self.conf = conf
        log.info("Loaded piece model %s", model_path)

    def __call__(self, frame: np.ndarray) -> List[Tuple[Box, str, float]]:
        return [
            (box, label, score)
            for box, label, score in _yolo_boxes(self.model, frame, self.conf)
        ]


class YoloCornerOracle:
    """Corner oracle: a YOLO model whose class names are corner ids.

    The centre of each box is reported as the corner point.
    """

    def __init__(self, model_path: str, conf: float = 0.25) -> None:
        from ultralytics import YOLO  # lazy import – optional dependency

        self.model = YOLO(model_path)
        self.conf = conf
        log.info("Loaded corner model %s", model_path)

    def __call__(self, frame: np.ndarray) -> List[Tuple[Tuple[float, float], str, float]]:
        return [
            (((x1 + x2) / 2, (y1 + y2) / 2), label, score)
            for (x1, y1, x2, y2), label, score in _yolo_boxes(self.model, frame, self.conf)
        ]


def _yolo_boxes(model: Any, frame: np.ndarray, conf: float) -> List[Tuple[Box, str, float]]:
    """Run YOLOv8 inference and flatten the boxes of the first result."""
    results = model.predict(source=frame, conf=conf, verbose=False)
    if not results or results[0].boxes is None or len(results[0].boxes) == 0:
        return []

    r = results[0]
    xyxy = r.boxes.xyxy.cpu().numpy()
    classes = r.boxes.cls.cpu().numpy().astype(int)
    scores = r.boxes.conf.cpu().numpy()

    return [
        (tuple(float(v) for v in xyxy[i]), r.names[int(classes[i])], float(scores[i]))
        for i in range(len(xyxy))
    ]
