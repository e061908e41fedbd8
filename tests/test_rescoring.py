"""Tests for per-game rescoring."""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tpgen.data import WDL, TargetSource
from tpgen.errors import ConfigurationError, InvalidGameDataError
from tpgen.rescoring import GameRescorer, open_tablebase
from tpgen.rescoring.rescorer import FOCUS_KEEP_ONE_IN
from tpgen.utils import clamp_deviations

from conftest import build_game, RUY_LOPEZ


# Rook endgame, few enough pieces for tablebase lookups
ENDGAME_FEN = "8/8/4k3/8/8/4K3/4R3/8 w - - 0 1"
ENDGAME_MOVES = ["e2a2", "e6d6", "a2a6", "d6c5"]


class FakeTablebase:
    """Tablebase returning a fixed answer for every probed position."""

    def __init__(self, answer, max_pieces=7):
        self.answer = answer
        self.max_pieces = max_pieces
        self.probed = []

    def lookup(self, board):
        self.probed.append(board.fen())
        return self.answer


def rescore(game, tablebase=None, deblunder=True, use_tablebase=False, position_focus=False, **kwargs):
    rescorer = GameRescorer(**kwargs)
    rescorer.set_game(game)
    rescorer.compute_rescoring(tablebase)
    rescorer.compute_training_targets(deblunder, use_tablebase, position_focus)
    return rescorer


def make_noise_blunder(game, ply, magnitude):
    """Make the move at ply a non-best move losing `magnitude`."""
    pos = game[ply]
    pos.best_move = next(m for m in pos.policy if m != pos.played_move)
    pos.played_q = pos.best_q - magnitude


class TestBlunderDetection:
    """Tests for noise and unintended blunder detection."""

    def test_clean_game(self):
        """Test a game without blunders keeps its outcomes."""
        game = build_game(RUY_LOPEZ, result_q=1.0, result_d=0.0)
        rescorer = rescore(game)

        assert rescorer.num_noise_blunders == 0
        assert rescorer.num_unintended_blunders == 0
        for i in range(len(game)):
            assert rescorer.target_source[i] == TargetSource.TRAINING
            assert rescorer.new_result_wdl[i] == game[i].result_wdl

    def test_noise_blunder(self):
        """Test a suboptimal non-best move is deblundered."""
        game = build_game(RUY_LOPEZ, result_q=1.0, result_d=0.0)
        make_noise_blunder(game, 5, 0.3)
        rescorer = rescore(game)

        assert rescorer.noise_blunder[5]
        assert rescorer.num_noise_blunders == 1
        assert rescorer.blunder_magnitude[5] == pytest.approx(0.3)

        assert rescorer.target_source[5] == TargetSource.DEBLUNDERED
        assert rescorer.new_result_wdl[5] == game[5].best_wdl
        # Earlier plies inherit the corrected value with alternating perspective
        assert rescorer.new_result_wdl[4] == game[5].best_wdl.reversed()
        assert rescorer.new_result_wdl[3] == game[5].best_wdl
        assert rescorer.target_source[4] == TargetSource.TRAINING
        # Later plies keep the game outcome
        assert rescorer.new_result_wdl[6] == game[6].result_wdl

    def test_small_suboptimality_is_not_blunder(self):
        game = build_game(RUY_LOPEZ)
        make_noise_blunder(game, 5, 0.05)
        rescorer = rescore(game)
        assert not rescorer.noise_blunder[5]
        assert rescorer.target_source[5] == TargetSource.TRAINING

    def test_deblunder_disabled(self):
        """Test blunders are still counted but outcomes kept."""
        game = build_game(RUY_LOPEZ, result_q=1.0, result_d=0.0)
        make_noise_blunder(game, 5, 0.3)
        rescorer = rescore(game, deblunder=False)

        assert rescorer.num_noise_blunders == 1
        assert rescorer.target_source[5] == TargetSource.TRAINING
        assert rescorer.new_result_wdl[5] == game[5].result_wdl

    def test_unintended_blunder(self):
        """Test a best move followed by a large value drop."""
        game = build_game(RUY_LOPEZ)
        # After ply 6 the opponent suddenly evaluates its position as good
        game[7].best_q = game[7].played_q = 0.2
        game[8].best_q = game[8].played_q = -0.2
        rescorer = rescore(game)

        assert rescorer.unintended_blunder[6]
        assert rescorer.num_unintended_blunders == 1
        assert rescorer.blunder_magnitude[6] == pytest.approx(0.25)
        assert rescorer.target_source[6] == TargetSource.DEBLUNDERED

    def test_forward_blunder_sums(self):
        """Test later blunders are summed by the side that made them."""
        game = build_game(RUY_LOPEZ)
        make_noise_blunder(game, 5, 0.3)
        make_noise_blunder(game, 8, 0.2)
        rescorer = rescore(game)

        # Ply 0: blunder at distance 5 by the opponent, distance 8 by us
        assert rescorer.forward_sum_positive_blunders[0] == pytest.approx(0.3)
        assert rescorer.forward_sum_negative_blunders[0] == pytest.approx(0.2)
        # A ply never counts its own blunder
        assert rescorer.forward_sum_positive_blunders[5] == pytest.approx(0.2)
        assert rescorer.forward_sum_negative_blunders[5] == 0.0
        assert rescorer.forward_sum_positive_blunders[7] == pytest.approx(0.2)
        assert rescorer.forward_sum_negative_blunders[8] == 0.0


class TestTablebaseRescoring:
    """Tests for tablebase substitution."""

    def test_substitution(self):
        """Test tablebase truth replaces the game outcome."""
        game = build_game(ENDGAME_MOVES, start_fen=ENDGAME_FEN)
        tablebase = FakeTablebase(WDL.from_result(1))
        rescorer = rescore(game, tablebase, use_tablebase=True)

        assert rescorer.num_tb_lookup == 4
        assert rescorer.num_tb_found == 4
        assert rescorer.num_tb_rescored == 4
        for i in range(len(game)):
            assert rescorer.target_source[i] == TargetSource.TABLEBASE
            assert rescorer.new_result_wdl[i] == WDL.from_result(1)

        record = rescorer.rescored_position(2)
        assert record.tb_lookup and record.tb_found and record.tb_rescored
        assert record.source == TargetSource.TABLEBASE

    def test_matching_tablebase_is_not_rescored(self):
        """Test agreeing lookups are found but not counted as rescored."""
        game = build_game(ENDGAME_MOVES, start_fen=ENDGAME_FEN)
        rescorer = rescore(game, FakeTablebase(WDL.from_result(0)), use_tablebase=True)
        assert rescorer.num_tb_found == 4
        assert rescorer.num_tb_rescored == 0

    def test_not_found(self):
        game = build_game(ENDGAME_MOVES, start_fen=ENDGAME_FEN)
        rescorer = rescore(game, FakeTablebase(None), use_tablebase=True)
        assert rescorer.num_tb_lookup == 4
        assert rescorer.num_tb_found == 0
        assert all(s == TargetSource.TRAINING for s in rescorer.target_source)

    def test_lookup_without_substitution(self):
        """Test lookups are recorded even when substitution is off."""
        game = build_game(ENDGAME_MOVES, start_fen=ENDGAME_FEN)
        rescorer = rescore(game, FakeTablebase(WDL.from_result(1)), use_tablebase=False)
        assert rescorer.num_tb_found == 4
        assert rescorer.num_tb_rescored == 0
        assert rescorer.new_result_wdl[0] == game[0].result_wdl

    def test_castling_rights_not_probed(self):
        """Test positions with castling rights or too many pieces are skipped."""
        game = build_game(RUY_LOPEZ)
        tablebase = FakeTablebase(None, max_pieces=32)
        rescorer = rescore(game, tablebase, use_tablebase=True)

        # Black castles at ply 15; only later positions lack castling rights
        assert not rescorer.tb_lookup[15]
        assert all(rescorer.tb_lookup[16:])
        assert rescorer.num_tb_lookup == len(game) - 16

        assert rescore(game, FakeTablebase(None)).num_tb_lookup == 0

    def test_open_tablebase_requires_directory(self, tmp_path):
        with pytest.raises(ConfigurationError):
            open_tablebase(None)
        with pytest.raises(ConfigurationError):
            open_tablebase(str(tmp_path / "missing"))


class TestForwardTargets:
    """Tests for intermediate targets and forward deviations."""

    def test_intermediate_horizon(self):
        """Test the intermediate target looks ahead with the same side to move."""
        game = build_game(RUY_LOPEZ)
        game[8].best_q = game[8].played_q = 0.5
        rescorer = rescore(game, intermediate_horizon=8)

        assert rescorer.intermediate_best_wdl[0] == game[8].best_wdl
        assert rescorer.delta_q_intermediate[0] == pytest.approx(0.45)
        # Past the end: last position with the same side to move
        assert rescorer.intermediate_best_wdl[15] == game[21].best_wdl
        assert rescorer.intermediate_best_wdl[20] == game[20].best_wdl
        assert rescorer.intermediate_best_wdl[21] == game[21].best_wdl

    def test_forward_deviations(self):
        """Test deviations are measured from each ply's own perspective."""
        game = build_game(RUY_LOPEZ)
        game[3].best_q = game[3].played_q = -0.3
        rescorer = rescore(game)

        # Opponent's -0.3 is +0.3 for ply 0 (best_q 0.05)
        assert rescorer.forward_max_q_deviation[0] == pytest.approx(0.25)
        assert rescorer.forward_min_q_deviation[0] == pytest.approx(0.0)
        # Same side as ply 1 (best_q -0.05)
        assert rescorer.forward_min_q_deviation[1] == pytest.approx(0.25)
        assert rescorer.forward_max_q_deviation[1] == pytest.approx(0.0)

    def test_deviations_beyond_horizon_ignored(self):
        game = build_game(RUY_LOPEZ)
        game[12].best_q = game[12].played_q = 0.9
        rescorer = rescore(game, forward_horizon=8)
        assert rescorer.forward_max_q_deviation[0] == pytest.approx(0.0)
        assert rescorer.forward_max_q_deviation[4] == pytest.approx(0.85)

    def test_clamp_deviations(self):
        """Test q +/- deviation stays within [-1, 1]."""
        assert clamp_deviations(0.9, 0.5, 0.5) == pytest.approx((0.5, 0.1))
        assert clamp_deviations(-0.95, 0.5, 0.2) == pytest.approx((0.05, 0.2))
        assert clamp_deviations(0.0, -0.1, -0.2) == (0.0, 0.0)


class TestPositionFocus:
    """Tests for position focus flags."""

    def test_focus_flags(self):
        """Test only hashed survivors, value errors and high KLD are kept."""
        game = build_game(RUY_LOPEZ)
        game[2].orig_q = game[2].best_q + 0.5
        game[3].kld_policy = 2.0
        rescorer = rescore(game, position_focus=True)

        assert not rescorer.reject_due_to_position_focus[2]
        assert not rescorer.reject_due_to_position_focus[3]
        for i in range(4, len(game)):
            kept = rescorer.fingerprint(i) % FOCUS_KEEP_ONE_IN == 0
            assert rescorer.reject_due_to_position_focus[i] == (not kept)

    def test_disabled(self):
        rescorer = rescore(build_game(RUY_LOPEZ), position_focus=False)
        assert not any(rescorer.reject_due_to_position_focus)


class TestRescoredPosition:
    """Tests for building training records."""

    def test_fields(self):
        """Test record fields are taken from the game and rescoring."""
        game = build_game(RUY_LOPEZ)
        make_noise_blunder(game, 4, 0.3)
        rescorer = rescore(game)
        record = rescorer.rescored_position(5)

        assert record.game_id == game.game_id
        assert record.ply == 5
        assert record.fen == game[5].fen
        assert record.history_fens == tuple(game.history_fens(5))
        assert record.parent_move == game[4].played_move
        assert record.played_move_q_suboptimality == pytest.approx(0.3)
        assert record.prior_wdl == WDL()
        assert rescorer.rescored_position(0).parent_move is None

    def test_prior_wdl(self):
        """Test the prior position's evaluation is reversed to our perspective."""
        game = build_game(RUY_LOPEZ)
        rescorer = rescore(game)

        assert rescorer.rescored_position(0, emit_prior_move_win_loss=True).prior_wdl == WDL()
        record = rescorer.rescored_position(1, emit_prior_move_win_loss=True)
        assert record.prior_wdl == game[0].orig_wdl.reversed()

        game[2].orig_q = float("nan")
        assert rescorer.prior_position_wdl(3) == WDL()

    def test_prior_wdl_after_blunder(self):
        """Test no prior evaluation is emitted for a blundering position."""
        game = build_game(RUY_LOPEZ)
        make_noise_blunder(game, 6, 0.3)
        rescorer = rescore(game)
        assert rescorer.prior_position_wdl(6) == WDL()

    def test_played_move_missing_from_policy(self):
        game = build_game(RUY_LOPEZ)
        del game[3].policy[game[3].played_move]
        rescorer = rescore(game)
        with pytest.raises(InvalidGameDataError):
            rescorer.rescored_position(3)

    def test_steps_out_of_order(self):
        """Test calling steps out of order raises."""
        rescorer = GameRescorer()
        with pytest.raises(RuntimeError):
            rescorer.compute_rescoring()

        rescorer.set_game(build_game(RUY_LOPEZ))
        with pytest.raises(RuntimeError):
            rescorer.compute_training_targets(True, False, False)
        rescorer.compute_rescoring()
        with pytest.raises(RuntimeError):
            rescorer.rescored_position(0)

    def test_reuse_across_games(self):
        """Test set_game discards state from the previous game."""
        rescorer = GameRescorer()
        game = build_game(RUY_LOPEZ)
        make_noise_blunder(game, 5, 0.3)
        rescorer.set_game(game)
        rescorer.compute_rescoring()
        assert rescorer.num_noise_blunders == 1

        rescorer.set_game(build_game(ENDGAME_MOVES, start_fen=ENDGAME_FEN))
        assert len(rescorer) == 4
        assert rescorer.num_noise_blunders == 0
        assert not any(rescorer.noise_blunder)
