"""
Chess Tracker
=============

Follows a live chess game from a video of a physical board and keeps one
authoritative, legal game record.

Architecture:
    1. Calibration        – four corner markers → homography to board space
    2. Detection          – piece oracle (YOLO) → filtered, anchored boxes
    3. Occupancy Mapping  – boxes → per-square snapshot, K-frame stabilised
    4. Move Resolution    – snapshot vs legal moves → resolved / ambiguous /
                            rejected
    5. Game State         – position history, move text, FEN, PGN
    6. Frame Loop         – single-slot admission, drop-not-queue
"""

__version__ = "1.0.0"
