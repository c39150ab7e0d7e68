"""Integration tests for the frame loop controller.

Frames go through the real detector, mapper, stabiliser and resolver;
only the piece oracle is faked.
"""
import threading

import chess
import pytest

from chess_tracker.config import ResolverConfig, TrackerConfig
from chess_tracker.errors import DegenerateCorners, RulesOracleError
from chess_tracker.events import TrackerEvents
from chess_tracker.inference.calibration import CornerSet
from chess_tracker.inference.game_state import GameState
from chess_tracker.inference.pipeline import FrameLoopController
from chess_tracker.inference.resolver import ResolverState
from chess_tracker.inference.rules import RulesOracle
from chess_tracker.models.yolo_detector import CornerRefiner, PieceDetector

from conftest import SQUARE_CORNERS, BoardOracle


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Recorder:
    """Collects every event fired by the controller."""

    def __init__(self):
        self.calls = []

    def events(self):
        return TrackerEvents(
            on_move_applied=lambda r: self.calls.append(("applied", r.san)),
            on_move_undone=lambda r: self.calls.append(("undone", r.san)),
            on_ambiguous=lambda tied: self.calls.append(("ambiguous", tuple(c.san for c in tied))),
            on_lost_sync=lambda streak: self.calls.append(("lost_sync", streak)),
            on_calibration_changed=lambda cal: self.calls.append(("calibration", cal.corners)),
        )

    def named(self, name):
        return [args for kind, args in self.calls if kind == name]


def board_after(*sans):
    board = chess.Board()
    for san in sans:
        board.push_san(san)
    return board


@pytest.fixture
def oracle(calibration, start_board):
    return BoardOracle.from_board(calibration, start_board)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def controller(oracle, corners, tracker_config, recorder):
    ctrl = FrameLoopController(
        PieceDetector(oracle),
        corners,
        config=tracker_config,
        events=recorder.events(),
        frame_size=(1000, 1000),
    )
    yield ctrl
    ctrl.close()


class TestEndToEnd:
    """Frames → moves through the whole pipeline."""

    def test_idle_start_position(self, controller, frame):
        outcome = controller.process(frame)
        assert outcome.status == "processed"
        assert outcome.resolution.state is ResolverState.IDLE
        assert controller.game.sans == []

    def test_opening_moves(self, controller, oracle, frame, recorder):
        controller.process(frame)
        oracle.set_board(board_after("e4"))
        outcome = controller.process(frame)

        assert [r.san for r in outcome.applied] == ["e4"]
        assert controller.game.move_text == "1. e4"

        oracle.set_board(board_after("e4", "e5"))
        controller.process(frame)
        oracle.set_board(board_after("e4", "e5", "Nf3"))
        controller.process(frame)
        controller.process(frame)            # same board again: idle

        assert controller.game.sans == ["e4", "e5", "Nf3"]
        assert controller.game.move_text == "1...e5 2.Nf3"
        assert recorder.named("applied") == ["e4", "e5", "Nf3"]

    def test_perspective_camera(self, perspective_calibration, frame):
        oracle = BoardOracle.from_board(perspective_calibration, board_after("d4"))
        controller = FrameLoopController(
            PieceDetector(oracle),
            perspective_calibration.corners,
            config=TrackerConfig(stable_frames=1),
        )
        controller.process(frame)
        assert controller.game.sans == ["d4"]

    def test_stabiliser_delays_resolution(self, oracle, corners, frame):
        controller = FrameLoopController(
            PieceDetector(oracle), corners, config=TrackerConfig(stable_frames=2),
        )
        oracle.set_board(board_after("e4"))
        controller.process(frame)
        assert controller.game.sans == []
        controller.process(frame)
        assert controller.game.sans == ["e4"]

    def test_ambiguity_reported_once(self, controller, oracle, frame, recorder):
        del oracle.pieces[chess.G1]
        controller.process(frame)
        outcome = controller.process(frame)

        assert outcome.resolution.state is ResolverState.AMBIGUOUS
        assert recorder.named("ambiguous") == [("Nf3", "Nh3")]
        assert controller.game.sans == []

    def test_lost_sync_event(self, oracle, corners, frame, recorder):
        config = TrackerConfig(stable_frames=1).with_resolver(lost_sync_after=2)
        controller = FrameLoopController(
            PieceDetector(oracle), corners, config=config, events=recorder.events(),
        )
        oracle.set_board(board_after("e4", "d5"))
        for _ in range(4):
            outcome = controller.process(frame)

        assert outcome.resolution.state is ResolverState.REJECTED
        assert recorder.named("lost_sync") == [2]
        assert controller.game.sans == []

    def test_lookahead_catches_up_two_plies(self, controller, oracle, frame):
        oracle.set_board(board_after("e4", "e5"))
        controller.process(frame)
        assert controller.game.sans == []

        outcome = controller.process(frame, ResolverConfig(lookahead=True))
        assert [r.san for r in outcome.applied] == ["e4", "e5"]
        assert controller.game.move_text == "1.e4 e5"

    def test_game_over_stops_resolution(self, calibration, corners, frame):
        game = GameState()
        for san in ["f3", "e5", "g4", "Qh4#"]:
            game.apply_move(san)
        oracle = BoardOracle.from_board(calibration, board_after("f3", "e5", "g4"))
        controller = FrameLoopController(
            PieceDetector(oracle), corners, game=game, config=TrackerConfig(stable_frames=1),
        )
        outcome = controller.process(frame)
        assert outcome.reason == "game over"
        assert len(game) == 4


class TestSkippedFrames:

    def test_occluded_frame_is_skipped(self, controller, oracle, frame):
        oracle.set_board(board_after("e4"))
        oracle.extra = [((300.0, 300.0, 700.0, 800.0), "hand", 0.95)]
        outcome = controller.process(frame)

        assert outcome.status == "skipped"
        assert controller.stats.skipped == 1
        assert controller.game.sans == []

        oracle.extra = []
        controller.process(frame)
        assert controller.game.sans == ["e4"]

    def test_oracle_failure_is_skipped(self, corners, tracker_config, frame):
        def broken(frame):
            raise RuntimeError("model crashed")

        controller = FrameLoopController(PieceDetector(broken), corners, config=tracker_config)
        outcome = controller.process(frame)
        assert outcome.status == "skipped"
        assert "model crashed" in outcome.reason


class TestAdmission:
    """One frame in flight; surplus frames are dropped, not queued."""

    def test_second_frame_dropped_while_busy(self, calibration, corners, tracker_config, frame):
        entered = threading.Event()
        release = threading.Event()
        board_oracle = BoardOracle.from_board(calibration, chess.Board())
        active = []
        peak = []

        def slow_oracle(frame):
            active.append(1)
            peak.append(len(active))
            entered.set()
            release.wait(timeout=5)
            active.pop()
            return board_oracle(frame)

        controller = FrameLoopController(PieceDetector(slow_oracle), corners, config=tracker_config)
        try:
            future = controller.submit(frame)
            assert future is not None
            assert entered.wait(timeout=5)

            assert controller.busy
            assert controller.submit(frame) is None
            assert controller.process(frame) is None
            assert controller.stats.dropped == 2

            release.set()
            assert future.result(timeout=5).status == "processed"
        finally:
            release.set()
            controller.close()

        assert max(peak) == 1
        assert not controller.busy
        assert controller.stats.admitted == 1

    def test_throttle(self, oracle, corners, frame):
        clock = FakeClock()
        controller = FrameLoopController(
            PieceDetector(oracle),
            corners,
            config=TrackerConfig(stable_frames=1, min_frame_interval=1.0),
            clock=clock,
        )
        assert controller.process(frame) is not None
        clock.now = 0.5
        assert controller.process(frame) is None
        clock.now = 1.0
        assert controller.process(frame) is not None
        assert controller.stats.dropped == 1
        assert oracle.calls == 2


class TestCalibrationChanges:

    def test_degenerate_corners_keep_old_calibration(self, controller):
        old = controller.calibration
        bad = dict(SQUARE_CORNERS, h8=SQUARE_CORNERS["a1"])
        with pytest.raises(DegenerateCorners):
            controller.set_corners(CornerSet(bad))
        assert controller.calibration is old

    def test_set_corners_resets_stabiliser(self, oracle, corners, frame, recorder):
        controller = FrameLoopController(
            PieceDetector(oracle), corners,
            config=TrackerConfig(stable_frames=2), events=recorder.events(),
        )
        controller.process(frame)
        controller.set_corners(corners.replace(a1=(101.0, 901.0)))
        outcome = controller.process(frame)

        assert len(outcome.snapshot) == 0
        assert len(recorder.named("calibration")) == 1

    def test_resize_rescales_corners(self, controller, recorder):
        controller.resize(500, 500)
        assert controller.calibration.corners["h1"] == (450.0, 450.0)
        assert recorder.named("calibration") == [controller.calibration.corners]

    def test_change_during_run_discards_result(self, calibration, corners, tracker_config, frame):
        board_oracle = BoardOracle.from_board(calibration, board_after("e4"))
        holder = {}

        def resetting_oracle(frame):
            holder["controller"].reset_game()
            return board_oracle(frame)

        controller = FrameLoopController(
            PieceDetector(resetting_oracle), corners, config=tracker_config,
        )
        holder["controller"] = controller
        outcome = controller.process(frame)

        assert outcome.status == "stale"
        assert controller.stats.stale == 1
        assert controller.game.sans == []

    def test_corner_refiner_updates_calibration(self, oracle, corners, frame, recorder):
        refiner = CornerRefiner(lambda frame: [((104.0, 896.0), "a1", 0.9)])
        controller = FrameLoopController(
            PieceDetector(oracle), corners,
            config=TrackerConfig(stable_frames=1),
            events=recorder.events(),
            corner_refiner=refiner,
        )
        outcome = controller.process(frame)

        assert outcome.status == "processed"
        assert controller.calibration.corners["a1"] == (104.0, 896.0)
        assert len(recorder.named("calibration")) == 1

        controller.process(frame)            # same refinement: no new event
        assert len(recorder.named("calibration")) == 1

    def test_corner_jitter_keeps_calibration(self, oracle, corners, frame, recorder):
        jitter = [((100.0, 900.0), "a1", 0.9), ((100.3, 900.0), "a1", 0.9)]
        calls = []

        def jittering_corners(frame):
            calls.append(1)
            return [jitter[len(calls) % 2]]

        controller = FrameLoopController(
            PieceDetector(oracle), corners,
            config=TrackerConfig(stable_frames=3),
            events=recorder.events(),
            corner_refiner=CornerRefiner(jittering_corners),
        )
        oracle.set_board(board_after("e4"))
        for _ in range(6):
            controller.process(frame)

        assert controller.game.sans == ["e4"]
        assert controller.calibration.corners == corners
        assert recorder.named("calibration") == []


class TestGreedyMode:
    """Tentative moves are confirmed or rolled back by later frames."""

    @pytest.fixture
    def greedy(self, tracker_config):
        return tracker_config.with_resolver(greedy=True)

    def test_tentative_move_confirmed(self, oracle, corners, frame, greedy):
        controller = FrameLoopController(PieceDetector(oracle), corners, config=greedy)
        oracle.set_board(board_after("e4"))
        oracle.pieces[chess.H5] = "black_queen"          # phantom detection
        controller.process(frame)

        assert controller.game.sans == ["e4"]
        assert controller.has_tentative_move

        del oracle.pieces[chess.H5]
        controller.process(frame)
        assert controller.game.sans == ["e4"]
        assert not controller.has_tentative_move

    def test_tentative_move_rolled_back(self, oracle, corners, frame, greedy, recorder):
        controller = FrameLoopController(
            PieceDetector(oracle), corners, config=greedy, events=recorder.events(),
        )
        oracle.set_board(board_after("e4"))
        oracle.pieces[chess.H5] = "black_queen"
        controller.process(frame)
        assert controller.game.sans == ["e4"]

        oracle.set_board(chess.Board())                  # the pawn went back
        outcome = controller.process(frame)

        assert [r.san for r in outcome.undone] == ["e4"]
        assert controller.game.sans == []
        assert controller.game.fen == chess.STARTING_FEN
        assert recorder.named("undone") == ["e4"]

    def test_tentative_pair_rolled_back_as_a_whole(self, oracle, corners, frame, greedy, recorder):
        config = greedy.with_resolver(lookahead=True)
        controller = FrameLoopController(
            PieceDetector(oracle), corners, config=config, events=recorder.events(),
        )
        oracle.set_board(board_after("e4", "e5"))
        oracle.pieces[chess.H5] = "black_queen"
        controller.process(frame)
        assert controller.game.sans == ["e4", "e5"]
        assert controller.has_tentative_move

        oracle.set_board(chess.Board())                  # neither move happened
        outcome = controller.process(frame)

        assert [r.san for r in outcome.undone] == ["e5", "e4"]
        assert controller.game.sans == []
        assert controller.game.fen == chess.STARTING_FEN
        assert not controller.has_tentative_move
        assert recorder.named("undone") == ["e5", "e4"]

    def test_tentative_pair_replaced_by_single_move(self, oracle, corners, frame, greedy):
        config = greedy.with_resolver(lookahead=True)
        controller = FrameLoopController(PieceDetector(oracle), corners, config=config)
        oracle.set_board(board_after("e4", "e5"))
        oracle.pieces[chess.H5] = "black_queen"
        controller.process(frame)

        oracle.set_board(board_after("e4"))              # the reply was never played
        outcome = controller.process(frame)

        assert len(outcome.undone) == 2
        assert [r.san for r in outcome.applied] == ["e4"]
        assert controller.game.sans == ["e4"]

    def test_normal_mode_waits(self, oracle, corners, frame, tracker_config):
        controller = FrameLoopController(PieceDetector(oracle), corners, config=tracker_config)
        oracle.set_board(board_after("e4"))
        oracle.pieces[chess.H5] = "black_queen"
        outcome = controller.process(frame)

        assert outcome.resolution.state is ResolverState.OBSERVING
        assert controller.game.sans == []


class BrokenRules(RulesOracle):
    def apply(self, position, move):
        raise RulesOracleError("engine refused a legal move")


class FailingMoveGenerator(RulesOracle):
    def legal_moves(self, position):
        raise RulesOracleError("move generator crashed")


class TestRulesFailure:

    def test_rules_error_halts_the_game(self, oracle, corners, tracker_config, frame):
        game = GameState(rules=BrokenRules())
        controller = FrameLoopController(PieceDetector(oracle), corners, game=game, config=tracker_config)
        oracle.set_board(board_after("e4"))

        with pytest.raises(RulesOracleError):
            controller.process(frame)
        with pytest.raises(RulesOracleError):
            controller.process(frame)

        controller.reset_game()
        oracle.set_board(chess.Board())
        assert controller.process(frame).status == "processed"

    def test_failure_during_resolution_halts_the_game(self, oracle, corners, tracker_config, frame):
        game = GameState(rules=FailingMoveGenerator())
        controller = FrameLoopController(PieceDetector(oracle), corners, game=game, config=tracker_config)
        oracle.set_board(board_after("e4"))

        with pytest.raises(RulesOracleError):
            controller.process(frame)
        oracle.set_board(chess.Board())
        with pytest.raises(RulesOracleError):
            controller.process(frame)

        controller.reset_game()
        assert controller.process(frame).status == "processed"


class TestEvents:

    def test_failing_listener_does_not_stop_pipeline(self, oracle, corners, tracker_config, frame):
        def boom(record):
            raise RuntimeError("ui gone")

        controller = FrameLoopController(
            PieceDetector(oracle), corners, config=tracker_config,
            events=TrackerEvents(on_move_applied=boom),
        )
        oracle.set_board(board_after("e4"))
        outcome = controller.process(frame)
        assert [r.san for r in outcome.applied] == ["e4"]
