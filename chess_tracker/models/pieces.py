"""
Piece Classes – canonical labels and conversions
================================================

Detection models in the wild spell their labels differently
(``white_pawn``, ``white-pawn``, ``wP``, ``P`` …).  Everything inside the
tracker uses the canonical underscore form below; ``normalize_label``
converts oracle output on the way in.

``None`` stands for an empty square throughout the engine.
"""

from __future__ import annotations

from typing import Dict, Optional

import chess


# ── Canonical class list ──────────────────────────────────────────────

EMPTY: str = "empty"

PIECE_CLASSES: list[str] = [
    "white_pawn",
    "white_knight",
    "white_bishop",
    "white_rook",
    "white_queen",
    "white_king",
    "black_pawn",
    "black_knight",
    "black_bishop",
    "black_rook",
    "black_queen",
    "black_king",
]

CLASS_NAMES: list[str] = [EMPTY] + PIECE_CLASSES

# Class label → FEN character
CLASS_TO_FEN: dict[str, str] = {
    "white_pawn": "P",
    "white_knight": "N",
    "white_bishop": "B",
    "white_rook": "R",
    "white_queen": "Q",
    "white_king": "K",
    "black_pawn": "p",
    "black_knight": "n",
    "black_bishop": "b",
    "black_rook": "r",
    "black_queen": "q",
    "black_king": "k",
}

FEN_TO_CLASS: dict[str, str] = {v: k for k, v in CLASS_TO_FEN.items()}

# Short "wp"-style prefixes used by several public datasets
_SHORT_TO_CLASS: dict[str, str] = {
    f"{'w' if fen.isupper() else 'b'}{fen.lower()}": name
    for name, fen in CLASS_TO_FEN.items()
}

_EMPTY_ALIASES = {"empty", "none", "blank", "no_piece"}


def normalize_label(label: str) -> Optional[str]:
    """Map an oracle label to a canonical class name.

    Returns ``None`` for labels meaning "empty square".

    Raises
    ------
    ValueError
        If the label is not a known piece spelling.
    """
    raw = str(label).strip()
    if raw in FEN_TO_CLASS:                # single FEN char, case matters
        return FEN_TO_CLASS[raw]

    key = raw.lower().replace("-", "_").replace(" ", "_")
    if key in _EMPTY_ALIASES:
        return None
    if key in CLASS_TO_FEN:
        return key
    if key in _SHORT_TO_CLASS:
        return _SHORT_TO_CLASS[key]
    raise ValueError(f"Unknown piece label: {label!r}")


def class_for_piece(piece: Optional[chess.Piece]) -> Optional[str]:
    """``chess.Piece`` → canonical class name (``None`` stays ``None``)."""
    if piece is None:
        return None
    return FEN_TO_CLASS[piece.symbol()]


def piece_for_class(name: Optional[str]) -> Optional[chess.Piece]:
    """Canonical class name → ``chess.Piece``."""
    if name is None or name == EMPTY:
        return None
    return chess.Piece.from_symbol(CLASS_TO_FEN[name])


def board_classes(board: chess.Board) -> Dict[int, str]:
    """Occupied squares of *board* as ``{square: class_name}``."""
    return {sq: FEN_TO_CLASS[p.symbol()] for sq, p in board.piece_map().items()}
