"""
Tracker Configuration
=====================

Two dataclasses hold every tunable of the engine:

  • ``ResolverConfig`` – acceptance thresholds of the move resolver.  It is
    frozen and passed explicitly on every resolution call, so the greedy
    toggle is never hidden state.
  • ``TrackerConfig``  – detection, stabilisation and frame-loop settings,
    plus the resolver configuration.

Both can be loaded from a JSON file; the CLI overrides individual fields.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple


@dataclass(frozen=True)
class ResolverConfig:
    """Thresholds used by ``MoveResolver.resolve``.

    Parameters
    ----------
    margin : float
        The best candidate must beat the runner-up by more than this,
        otherwise the observation is ambiguous.
    accept_conflict : float
        Maximum confidence-weighted conflicting evidence a move may carry
        and still be accepted in normal mode.
    reject_conflict : float
        When even the best move carries more conflicting evidence than
        this, the observation is unreachable in one ply and is rejected.
    greedy : bool
        Accept the best partial match (conflict up to ``reject_conflict``).
        Moves accepted this way are tentative and may be rolled back.
    lookahead : bool
        Also score (move, reply) pairs when no single move is acceptable.
    lost_sync_after : int
        Number of consecutive rejections that raises the lost-sync signal.
    """
    margin: float = 0.5
    accept_conflict: float = 0.5
    reject_conflict: float = 1.5
    greedy: bool = False
    lookahead: bool = False
    lost_sync_after: int = 15

    def __post_init__(self) -> None:
        if self.margin < 0:
            raise ValueError(f"margin must be >= 0, got {self.margin}")
        if self.accept_conflict > self.reject_conflict:
            raise ValueError(
                "accept_conflict must not exceed reject_conflict "
                f"({self.accept_conflict} > {self.reject_conflict})"
            )
        if self.lost_sync_after < 1:
            raise ValueError(
                f"lost_sync_after must be >= 1, got {self.lost_sync_after}"
            )


@dataclass
class TrackerConfig:
    """Settings for one tracked game."""
    min_confidence: float = 0.5            # detector score threshold
    anchor: str = "bottom"                 # "bottom" | "center" of the box
    stable_frames: int = 3                 # K frames of agreement per square
    min_frame_interval: float = 0.0        # seconds between admitted frames
    min_corner_area: float = 1.0           # pixel² below which corners are degenerate
    corner_tolerance: float = 2.0          # px a refined corner must move to be installed
    corner_min_confidence: float = 0.5     # corner-refinement score threshold
    occluder_labels: Tuple[str, ...] = ("hand",)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(
                f"min_confidence must be in [0, 1], got {self.min_confidence}"
            )
        if self.anchor not in ("bottom", "center"):
            raise ValueError(f"anchor must be 'bottom' or 'center', got {self.anchor!r}")
        if self.stable_frames < 1:
            raise ValueError(f"stable_frames must be >= 1, got {self.stable_frames}")
        if self.corner_tolerance < 0:
            raise ValueError(f"corner_tolerance must be >= 0, got {self.corner_tolerance}")
        self.occluder_labels = tuple(label.lower() for label in self.occluder_labels)

    def with_resolver(self, **changes: Any) -> "TrackerConfig":
        """Return a copy with some resolver fields replaced."""
        return dataclasses.replace(
            self, resolver=dataclasses.replace(self.resolver, **changes),
        )


def config_from_dict(data: Dict[str, Any]) -> TrackerConfig:
    """Build a ``TrackerConfig`` from a plain dict (e.g. parsed JSON).

    Unknown keys raise ``ValueError`` so typos do not pass silently.
    """
    data = dict(data)
    resolver_data = data.pop("resolver", {}) or {}

    known = {f.name for f in dataclasses.fields(TrackerConfig)} - {"resolver"}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown tracker config keys: {sorted(unknown)}")

    known_resolver = {f.name for f in dataclasses.fields(ResolverConfig)}
    unknown = set(resolver_data) - known_resolver
    if unknown:
        raise ValueError(f"Unknown resolver config keys: {sorted(unknown)}")

    if "occluder_labels" in data:
        data["occluder_labels"] = tuple(data["occluder_labels"])

    return TrackerConfig(resolver=ResolverConfig(**resolver_data), **data)


def load_config(path: str | Path) -> TrackerConfig:
    """Read a JSON configuration file."""
    with open(path, "r", encoding="utf-8") as f:
        return config_from_dict(json.load(f))
