"""
Rules Oracle – python-chess behind a narrow interface
=====================================================

The engine never implements chess rules itself.  It asks four questions:
which moves are legal, what a move produces, the FEN of a position, and
whether the game is over.  ``RulesOracle`` answers them with
``python-chess``; positions are plain ``chess.Board`` objects.

``apply`` never mutates its argument.  Any refusal from the library is
turned into ``RulesOracleError``: given a consistent position it cannot
happen, so it signals a broken game state.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Union

import chess

from chess_tracker.errors import RulesOracleError

log = logging.getLogger(__name__)

MoveLike = Union[chess.Move, str]


class RulesOracle:
    """Legality and move application for ``chess.Board`` positions."""

    def starting_position(self, fen: Optional[str] = None) -> chess.Board:
        """Standard start, or the position described by *fen*."""
        if fen is None:
            return chess.Board()
        try:
            board = chess.Board(fen)
        except ValueError as exc:
            raise RulesOracleError(f"Invalid FEN {fen!r}: {exc}") from exc
        if not board.is_valid():
            raise RulesOracleError(f"Illegal setup position: {fen!r} ({board.status()!r})")
        return board

    def legal_moves(self, position: chess.Board) -> List[chess.Move]:
        """All legal moves, in UCI order for reproducibility."""
        return sorted(position.legal_moves, key=lambda m: m.uci())

    def parse(self, position: chess.Board, move: MoveLike) -> chess.Move:
        """Accept a ``chess.Move``, a UCI string or a SAN string."""
        if isinstance(move, chess.Move):
            parsed = move
        else:
            try:
                parsed = chess.Move.from_uci(move)
            except ValueError:
                try:
                    parsed = position.parse_san(move)
                except ValueError as exc:
                    raise RulesOracleError(
                        f"Cannot parse move {move!r} in {position.fen()}"
                    ) from exc
        if not position.is_legal(parsed):
            raise RulesOracleError(f"Illegal move {parsed.uci()} in {position.fen()}")
        return parsed

    def apply(self, position: chess.Board, move: MoveLike) -> chess.Board:
        """Return a new position with *move* played (history kept)."""
        parsed = self.parse(position, move)
        after = position.copy()
        after.push(parsed)
        return after

    def san(self, position: chess.Board, move: chess.Move) -> str:
        try:
            return position.san(move)
        except (ValueError, AssertionError) as exc:
            raise RulesOracleError(f"Cannot render {move.uci()} in {position.fen()}") from exc

    def to_fen(self, position: chess.Board) -> str:
        return position.fen()

    def is_terminal(self, position: chess.Board) -> bool:
        return position.is_game_over(claim_draw=False)

    def result(self, position: chess.Board) -> str:
        """PGN result token: ``1-0``, ``0-1``, ``1/2-1/2`` or ``*``."""
        return position.result(claim_draw=False)
