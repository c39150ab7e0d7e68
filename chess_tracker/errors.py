"""Exceptions raised by the tracking engine."""


class TrackerError(Exception):
    """Base error for the chess tracker."""
    pass


class CalibrationError(TrackerError):
    """Corner input could not be turned into a calibration."""
    pass


class DegenerateCorners(CalibrationError):
    """The four corners do not form a usable quadrilateral."""
    pass


class DetectionUnavailable(TrackerError):
    """The detection oracle failed or returned malformed output."""
    pass


class FrameOccluded(DetectionUnavailable):
    """An occluder (e.g. a hand) is over the board in this frame."""
    pass


class RulesOracleError(TrackerError):
    """The rules engine refused an operation on the current position.

    This means the game state is inconsistent; the game instance must be
    reset.
    """
    pass


class MoveNotFound(TrackerError):
    """There is no move to undo."""
    pass


class StalePosition(TrackerError):
    """A move was resolved against a position that is no longer current."""
    pass
