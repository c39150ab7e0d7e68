"""
Game State – the authoritative position and move history
========================================================

Responsibilities:
  1. Own the current position; nothing else mutates it.  Every change
     goes through ``apply_move``, ``undo_last`` or ``reset``.
  2. Keep one position per ply, so undo is O(1) and restores the exact
     prior FEN.
  3. Render move text for the sidebar (last two plies, numbered) and the
     full game as PGN.
  4. Offer the minimal serialisation contract
     ``{"startingFEN": str, "moves": [san, ...]}``.

Concurrency: mutations hold a lock and are serialised.  The current
position is replaced, never edited in place, so a reader always sees the
position either before or after a move.  ``version`` grows with every
mutation; callers that resolved a move against an older version get
``StalePosition`` instead of corrupting the game.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import chess
import chess.pgn

from chess_tracker.errors import MoveNotFound, RulesOracleError, StalePosition
from chess_tracker.inference.rules import MoveLike, RulesOracle

log = logging.getLogger(__name__)


# ── Data structures ────────────────────────────────────────────────────

@dataclass(frozen=True)
class MoveRecord:
    """One applied move.  Never changed after it is appended."""
    ply: int                    # 1-based half-move index in this game
    move: chess.Move
    san: str
    fen: str                    # FEN after the move
    position: chess.Board       # copy of the position after the move

    @property
    def uci(self) -> str:
        return self.move.uci()


def format_move_text(history: List[str]) -> str:
    """Render the last one or two plies of *history*.

    ==============  =====================================
    plies           text
    ==============  =====================================
    0               ``""``
    1               ``"1. e4"``
    even            ``"<n>.<first> <second>"``
    odd (> 1)       ``"<n>...<first> <n+1>.<second>"``
    ==============  =====================================

    where ``n = len(history) // 2`` and first/second are the last two
    plies.
    """
    if not history:
        return ""
    if len(history) == 1:
        return f"1. {history[-1]}"

    first, second = history[-2], history[-1]
    n = len(history) // 2
    if len(history) % 2 == 0:
        return f"{n}.{first} {second}"
    return f"{n}...{first} {n + 1}.{second}"


# ── Game state ─────────────────────────────────────────────────────────

class GameState:
    """Authoritative game for one tracked board.

    Parameters
    ----------
    starting_fen : str, optional
        Setup position; the standard start when ``None``.
    rules : RulesOracle, optional
        Rules engine; a default python-chess oracle when ``None``.
    """

    def __init__(
        self,
        starting_fen: Optional[str] = None,
        rules: Optional[RulesOracle] = None,
    ) -> None:
        self.rules = rules or RulesOracle()
        self._lock = threading.RLock()
        self._version = 0
        self._starting_fen = ""
        self._positions: List[chess.Board] = []
        self._records: List[MoveRecord] = []
        self._init(starting_fen)

    def _init(self, starting_fen: Optional[str]) -> None:
        start = self.rules.starting_position(starting_fen)
        self._starting_fen = start.fen()
        self._positions = [start]
        self._records = []

    # ── Read access ────────────────────────────────────────────────────

    @property
    def version(self) -> int:
        return self._version

    @property
    def starting_fen(self) -> str:
        return self._starting_fen

    @property
    def position(self) -> chess.Board:
        """A copy of the current position."""
        return self._positions[-1].copy()

    @property
    def fen(self) -> str:
        return self._positions[-1].fen()

    @property
    def history(self) -> Tuple[MoveRecord, ...]:
        return tuple(self._records)

    @property
    def sans(self) -> List[str]:
        return [r.san for r in self._records]

    @property
    def move_text(self) -> str:
        return format_move_text(self.sans)

    @property
    def is_terminal(self) -> bool:
        return self.rules.is_terminal(self._positions[-1])

    @property
    def result(self) -> str:
        return self.rules.result(self._positions[-1])

    def snapshot(self) -> Tuple[int, str, chess.Board]:
        """``(version, fen, position copy)`` taken atomically."""
        with self._lock:
            board = self._positions[-1]
            return self._version, board.fen(), board.copy()

    def previous_position(self, plies: int = 1) -> Optional[chess.Board]:
        """Copy of the position *plies* moves ago, if the history is that long."""
        with self._lock:
            if plies < 1 or plies > len(self._records):
                return None
            return self._positions[-1 - plies].copy()

    def __len__(self) -> int:
        return len(self._records)

    # ── Mutation ───────────────────────────────────────────────────────

    def apply_move(self, move: MoveLike, expected_version: Optional[int] = None) -> MoveRecord:
        """Play *move* on the current position and append a record.

        Parameters
        ----------
        move : chess.Move | str
            Move as ``chess.Move``, UCI or SAN.
        expected_version : int, optional
            If given and the game moved on since, raise ``StalePosition``.

        Raises
        ------
        StalePosition
            *expected_version* does not match.
        RulesOracleError
            The move is not legal here.
        """
        with self._lock:
            if expected_version is not None and expected_version != self._version:
                raise StalePosition(
                    f"Move computed against version {expected_version}, "
                    f"game is at {self._version}"
                )
            current = self._positions[-1]
            parsed = self.rules.parse(current, move)
            san = self.rules.san(current, parsed)
            after = self.rules.apply(current, parsed)

            record = MoveRecord(
                ply=len(self._records) + 1,
                move=parsed,
                san=san,
                fen=after.fen(),
                position=after.copy(),
            )
            self._positions.append(after)
            self._records.append(record)
            self._version += 1

        log.info("Move %d: %s  (%s)", record.ply, san, self.move_text)
        return record

    def undo_last(self) -> MoveRecord:
        """Remove the last move and restore the position before it.

        Raises
        ------
        MoveNotFound
            There is no move to undo.
        """
        with self._lock:
            if not self._records:
                raise MoveNotFound("No move to undo")
            record = self._records.pop()
            self._positions.pop()
            self._version += 1

        log.info("Undid move %d: %s", record.ply, record.san)
        return record

    def reset(self, starting_fen: Optional[str] = None) -> None:
        """Discard all history and start again from *starting_fen*."""
        with self._lock:
            self._init(starting_fen)
            self._version += 1
        log.info("Game reset to %s", self._starting_fen)

    # ── Serialisation ──────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        """``{"startingFEN": ..., "moves": [san, ...]}``."""
        with self._lock:
            return {"startingFEN": self._starting_fen, "moves": self.sans}

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        rules: Optional[RulesOracle] = None,
    ) -> "GameState":
        """Rebuild a game by replaying its moves.

        Raises
        ------
        RulesOracleError
            A stored move is not legal in sequence.
        """
        try:
            starting_fen = data.get("startingFEN")
            moves = list(data.get("moves", []))
        except AttributeError as exc:
            raise RulesOracleError(f"Malformed game data: {data!r}") from exc

        game = cls(starting_fen=starting_fen or None, rules=rules)
        for san in moves:
            game.apply_move(san)
        return game

    def to_pgn(self, headers: Optional[Mapping[str, str]] = None) -> str:
        """Export the game as PGN text.

        Setup positions get ``[SetUp "1"]`` and ``[FEN ...]`` headers.
        """
        with self._lock:
            board = self._positions[-1].copy()
        game = chess.pgn.Game.from_board(board)
        for key, value in (headers or {}).items():
            game.headers[key] = value
        out = io.StringIO()
        exporter = chess.pgn.FileExporter(out)
        game.accept(exporter)
        return out.getvalue().strip()

    @property
    def pgn_moves(self) -> str:
        """Full movetext without headers, e.g. ``"1. e4 e5 2. Nf3 *"``."""
        with self._lock:
            board = self._positions[-1].copy()
        game = chess.pgn.Game.from_board(board)
        exporter = chess.pgn.StringExporter(headers=False, variations=False, comments=False)
        return game.accept(exporter)
