"""
Move Resolver – occupancy snapshot + position → move
====================================================

Given the last known legal position and a (stabilised) occupancy
snapshot, decide which move, if any, was played.

Algorithm
---------
1. If every observed square agrees with the current position on
   empty/occupied, nothing happened → ``IDLE``.
2. Otherwise enumerate the legal moves and the position each produces
   (``CandidateMove``).
3. Score each candidate against the snapshot.  For each observed square
   with confidence ``c``:

   ==========================  ==========================
   expected vs observed        contribution
   ==========================  ==========================
   both empty                  ``+c``
   both occupied, same class   ``+c``
   both occupied, other class  ``0``   (class noise is neutral)
   occupancy disagrees         ``-c``  and ``c`` added to *conflict*
   ==========================  ==========================

4. Rank by score (SAN breaks exact ties, for reproducibility) and decide:

   • best conflict > ``reject_conflict``      → ``REJECTED``
   • best − runner-up ≤ ``margin``            → ``AMBIGUOUS``
   • best conflict > ``accept_conflict``
     and not greedy                           → ``OBSERVING``
   • otherwise                                → ``RESOLVED``

Rejections count towards a streak; when it reaches ``lost_sync_after``
the result carries ``lost_sync=True`` (once per streak).  Any other
outcome ends the streak.

With ``lookahead`` enabled, an observation no single move explains well
enough is also scored against (move, reply) pairs – the opponent may
have answered before the board settled.

``evaluate`` is a pure function of (position, snapshot, config); the only
state kept between calls is the rejection streak and the last state.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import chess

from chess_tracker.config import ResolverConfig
from chess_tracker.inference.occupancy import OccupancySnapshot
from chess_tracker.inference.rules import RulesOracle
from chess_tracker.models.pieces import board_classes

log = logging.getLogger(__name__)


class ResolverState(enum.Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    REJECTED = "rejected"


# ── Data structures ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CandidateMove:
    """A legal move (or move pair) and the position it produces."""
    moves: Tuple[chess.Move, ...]
    sans: Tuple[str, ...]
    position: chess.Board
    score: float = 0.0
    conflict: float = 0.0

    @property
    def move(self) -> chess.Move:
        return self.moves[0]

    @property
    def san(self) -> str:
        return " ".join(self.sans)

    def scored(self, score: float, conflict: float) -> "CandidateMove":
        return CandidateMove(self.moves, self.sans, self.position, score, conflict)


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolution attempt."""
    state: ResolverState
    candidate: Optional[CandidateMove] = None            # set when RESOLVED
    candidates: Tuple[CandidateMove, ...] = ()           # ranked, best first
    tied: Tuple[CandidateMove, ...] = ()                 # set when AMBIGUOUS
    rejection_streak: int = 0
    lost_sync: bool = False

    @property
    def moves(self) -> Tuple[chess.Move, ...]:
        return self.candidate.moves if self.candidate else ()


# ── Scoring ────────────────────────────────────────────────────────────

def score_position(
    expected: Dict[int, str],
    snapshot: OccupancySnapshot,
) -> Tuple[float, float]:
    """Return ``(score, conflict)`` of *expected* against *snapshot*.

    *expected* maps occupied squares to class names.
    """
    score = 0.0
    conflict = 0.0
    for sq, obs in snapshot.squares.items():
        want = expected.get(sq)
        if want is None and obs.piece is None:
            score += obs.confidence
        elif want is not None and obs.piece is not None:
            if want == obs.piece:
                score += obs.confidence
        else:
            score -= obs.confidence
            conflict += obs.confidence
    return score, conflict


def rank_candidates(candidates: Sequence[CandidateMove]) -> List[CandidateMove]:
    """Best first; equal scores ordered by SAN."""
    return sorted(candidates, key=lambda c: (-c.score, c.san))


# ── Resolver ───────────────────────────────────────────────────────────

class MoveResolver:
    """Occupancy-vs-legal-moves reconciliation for one game.

    ``evaluate`` is pure.  ``resolve`` wraps it and keeps the rejection
    streak that drives the lost-sync signal.

    Parameters
    ----------
    rules : RulesOracle, optional
        Rules engine used to enumerate and apply moves.
    config : ResolverConfig, optional
        Default configuration when none is passed per call.
    """

    def __init__(
        self,
        rules: Optional[RulesOracle] = None,
        config: Optional[ResolverConfig] = None,
    ) -> None:
        self.rules = rules or RulesOracle()
        self.config = config or ResolverConfig()
        self.state = ResolverState.IDLE
        self.rejection_streak = 0

    def reset(self) -> None:
        self.state = ResolverState.IDLE
        self.rejection_streak = 0

    # ── Public API ─────────────────────────────────────────────────────

    def resolve(
        self,
        snapshot: OccupancySnapshot,
        position: chess.Board,
        config: Optional[ResolverConfig] = None,
    ) -> Resolution:
        """Evaluate *snapshot* and update the rejection streak."""
        config = config or self.config
        resolution = self.evaluate(snapshot, position, config)

        if resolution.state is ResolverState.REJECTED:
            self.rejection_streak += 1
            lost_sync = self.rejection_streak == config.lost_sync_after
            if lost_sync:
                log.warning(
                    "Lost sync: %d consecutive rejected observations", self.rejection_streak,
                )
            else:
                log.debug("Rejected observation (streak=%d)", self.rejection_streak)
            resolution = dataclasses.replace(
                resolution, rejection_streak=self.rejection_streak, lost_sync=lost_sync,
            )
        else:
            if self.rejection_streak >= config.lost_sync_after:
                log.info("Back in sync after %d rejected observations", self.rejection_streak)
            self.rejection_streak = 0

        self.state = resolution.state
        return resolution

    def evaluate(
        self,
        snapshot: OccupancySnapshot,
        position: chess.Board,
        config: Optional[ResolverConfig] = None,
    ) -> Resolution:
        """Decide what *snapshot* says happened since *position*.

        Has no side effects; the same inputs always give the same result.
        """
        config = config or self.config

        if snapshot.matches_occupancy(position.piece_map()):
            return Resolution(ResolverState.IDLE)

        singles = self._score_all(self.candidate_moves(position), snapshot)
        if not singles:
            log.debug("No legal moves from %s", position.fen())
            return Resolution(ResolverState.REJECTED)

        best = singles[0]
        if config.lookahead and best.conflict > config.accept_conflict:
            pairs = self._score_all(self.candidate_pairs(position), snapshot)
            if pairs and pairs[0].score > best.score + config.margin:
                log.debug("Two-ply candidate %s beats %s", pairs[0].san, best.san)
                return self._decide(rank_candidates(singles + pairs), config)

        return self._decide(singles, config)

    def candidate_moves(self, position: chess.Board) -> List[CandidateMove]:
        """Every legal move with its resulting position."""
        out: List[CandidateMove] = []
        for move in self.rules.legal_moves(position):
            san = self.rules.san(position, move)
            after = position.copy(stack=False)
            after.push(move)
            out.append(CandidateMove((move,), (san,), after))
        return out

    def candidate_pairs(self, position: chess.Board) -> List[CandidateMove]:
        """Every legal (move, reply) pair with its resulting position."""
        out: List[CandidateMove] = []
        for first in self.candidate_moves(position):
            mid = first.position
            for reply in self.rules.legal_moves(mid):
                san = self.rules.san(mid, reply)
                after = mid.copy(stack=False)
                after.push(reply)
                out.append(CandidateMove(first.moves + (reply,), first.sans + (san,), after))
        return out

    # ── Internals ──────────────────────────────────────────────────────

    def _score_all(
        self,
        candidates: List[CandidateMove],
        snapshot: OccupancySnapshot,
    ) -> List[CandidateMove]:
        scored = []
        for cand in candidates:
            score, conflict = score_position(board_classes(cand.position), snapshot)
            scored.append(cand.scored(score, conflict))
        return rank_candidates(scored)

    def _decide(self, ranked: List[CandidateMove], config: ResolverConfig) -> Resolution:
        best = ranked[0]

        if best.conflict > config.reject_conflict:
            return Resolution(ResolverState.REJECTED, candidates=tuple(ranked))

        runner_up = ranked[1].score if len(ranked) > 1 else float("-inf")
        if best.score - runner_up <= config.margin:
            tied = tuple(c for c in ranked if best.score - c.score <= config.margin)
            log.debug("Ambiguous between %s", [c.san for c in tied])
            return Resolution(ResolverState.AMBIGUOUS, candidates=tuple(ranked), tied=tied)

        if best.conflict > config.accept_conflict and not config.greedy:
            return Resolution(ResolverState.OBSERVING, candidates=tuple(ranked))

        log.debug("Resolved %s (score=%.2f conflict=%.2f)", best.san, best.score, best.conflict)
        return Resolution(ResolverState.RESOLVED, candidate=best, candidates=tuple(ranked))
