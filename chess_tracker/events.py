"""Outbound notifications of a tracked game."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

Listener = Optional[Callable[..., Any]]


@dataclass
class TrackerEvents:
    """Callbacks fired by the frame loop.

    Any of them may be ``None``.  A listener that raises is logged and
    ignored so a broken UI hook cannot stall the pipeline.
    """
    on_move_applied: Listener = None          # (MoveRecord)
    on_move_undone: Listener = None           # (MoveRecord)
    on_ambiguous: Listener = None             # (tuple[CandidateMove, ...])
    on_lost_sync: Listener = None             # (rejection_streak: int)
    on_calibration_changed: Listener = None   # (Calibration)

    def emit(self, name: str, *args: Any) -> None:
        listener = getattr(self, name)
        if listener is None:
            return
        try:
            listener(*args)
        except Exception:
            log.exception("Listener %s failed", name)
