"""Tests for block assembly and counterfactual positions."""

from collections import Counter

import pytest
import numpy as np
import chess

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tpgen.config import SamplingConfig
from tpgen.data import WDL, TargetSource
from tpgen.errors import InvalidGameDataError
from tpgen.generator.blocks import BlockAssembler, draw_alternative_move, BLOCK_SIZE
from tpgen.generator.counters import RunCounters
from tpgen.generator.dedup import DedupTracker
from tpgen.generator.sampler import AcceptanceFilter
from tpgen.rescoring import GameRescorer, Evaluation

from conftest import build_game, RUY_LOPEZ


# White is in check with a single legal move (Kxb2)
FORCED_FEN = "k7/8/8/8/8/8/1q6/K7 w - - 0 1"
FORCED_MOVES = ["a1b2", "a8b7", "b2c3"]


class FakeEvaluator:
    def __init__(self, evaluation):
        self.evaluation = evaluation
        self.boards = []

    def evaluate(self, board):
        self.boards.append(board.fen())
        return self.evaluation


class FakeTablebase:
    def __init__(self, answer):
        self.answer = answer
        self.max_pieces = 7

    def lookup(self, board):
        return self.answer


def rescored(game):
    rescorer = GameRescorer()
    rescorer.set_game(game)
    rescorer.compute_rescoring()
    rescorer.compute_training_targets(True, False, False)
    return rescorer


def make_assembler(counters=None, min_ply=0, **kwargs):
    counters = counters or RunCounters()
    config = SamplingConfig(min_position_game_ply=min_ply, position_max_fraction=1.0)
    acceptance = AcceptanceFilter(config, DedupTracker(1.0), counters)
    return BlockAssembler(acceptance, **kwargs)


class TestDrawAlternativeMove:
    """Tests for the counterfactual move draw."""

    def test_never_draws_played_move(self):
        """Test the played move is excluded and all others are reachable."""
        rng = np.random.default_rng(0)
        policy = {"e2e4": 0.98, "d2d4": 0.01, "g1f3": 0.01}
        draws = Counter(draw_alternative_move(policy, "e2e4", rng) for _ in range(200))
        assert "e2e4" not in draws
        assert set(draws) == {"d2d4", "g1f3"}

    def test_uniform_blend(self):
        """Test unlikely moves still get a share of the draws."""
        rng = np.random.default_rng(1)
        policy = {"e2e4": 0.5, "d2d4": 0.5, "a2a3": 0.0}
        draws = Counter(draw_alternative_move(policy, "e2e4", rng) for _ in range(1000))
        # a2a3 gets half of the uniform share: 0.25
        assert 150 < draws["a2a3"] < 350

    def test_zero_weights(self):
        rng = np.random.default_rng(2)
        policy = {"e2e4": 1.0, "d2d4": 0.0}
        assert draw_alternative_move(policy, "e2e4", rng) == "d2d4"

    def test_played_move_missing(self):
        with pytest.raises(InvalidGameDataError):
            draw_alternative_move({"d2d4": 1.0}, "e2e4", np.random.default_rng(0))

    def test_no_alternative(self):
        with pytest.raises(ValueError):
            draw_alternative_move({"e2e4": 1.0}, "e2e4", np.random.default_rng(0))


class TestCanStartBlock:
    """Tests for block start conditions."""

    def test_needs_two_following_positions(self, ruy_lopez_game):
        assembler = make_assembler()
        rescorer = rescored(ruy_lopez_game)
        n = len(ruy_lopez_game)
        assert assembler.can_start_block(ruy_lopez_game, rescorer, n - 3, 0)
        assert not assembler.can_start_block(ruy_lopez_game, rescorer, n - 2, 0)
        assert not assembler.can_start_block(ruy_lopez_game, rescorer, n - 1, 0)

    def test_suboptimal_linking_move(self, ruy_lopez_game):
        """Test near-best moves are required between the forced slots."""
        ruy_lopez_game[1].played_q = ruy_lopez_game[1].best_q - 0.05
        rescorer = rescored(ruy_lopez_game)

        assert not make_assembler().can_start_block(ruy_lopez_game, rescorer, 0, 0)
        assert make_assembler().can_start_block(ruy_lopez_game, rescorer, 2, 0)
        unfiltered = make_assembler(filter_suboptimal_moves=False)
        assert unfiltered.can_start_block(ruy_lopez_game, rescorer, 0, 0)

    def test_follow_up_rejection_not_counted(self, ruy_lopez_game):
        """Test rejected follow-up positions do not touch skip counters."""
        counters = RunCounters()
        assembler = make_assembler(counters, min_ply=3)
        rescorer = rescored(ruy_lopez_game)

        assert not assembler.can_start_block(ruy_lopez_game, rescorer, 1, 0)
        assert counters.skipped_ply_floor.value == 0
        assert assembler.can_start_block(ruy_lopez_game, rescorer, 2, 0)

    def test_failed_attempt_releases_follow_ups(self, ruy_lopez_game):
        """Test follow-ups admitted by a rejected block keep no dedup count."""
        ruy_lopez_game[2].played_q = ruy_lopez_game[2].best_q - 0.05
        rescorer = rescored(ruy_lopez_game)
        dedup = DedupTracker(0.0)
        config = SamplingConfig(position_max_fraction=0.0)
        assembler = BlockAssembler(AcceptanceFilter(config, dedup, RunCounters()))

        assert not assembler.can_start_block(ruy_lopez_game, rescorer, 1, 0)
        assert dedup.count(rescorer.fingerprint(2)) == 0
        assert dedup.count(rescorer.fingerprint(3)) == 0

        assert assembler.can_start_block(ruy_lopez_game, rescorer, 3, 0)
        assert dedup.count(rescorer.fingerprint(4)) == 1
        assert dedup.count(rescorer.fingerprint(5)) == 1

    def test_position_focus_not_applied_to_follow_ups(self, ruy_lopez_game):
        rescorer = rescored(ruy_lopez_game)
        rescorer.reject_due_to_position_focus[5] = True
        assert make_assembler().can_start_block(ruy_lopez_game, rescorer, 4, 0)


class TestAssemble:
    """Tests for block assembly."""

    def test_slots(self, ruy_lopez_game):
        """Test the three game slots and the counterfactual slot."""
        rescorer = rescored(ruy_lopez_game)
        block = make_assembler().assemble(ruy_lopez_game, rescorer, 4, np.random.default_rng(0))

        assert len(block) == BLOCK_SIZE
        assert [u.block_slot for u in block] == [0, 1, 2, 3]
        assert [u.fen for u in block[:3]] == [ruy_lopez_game[j].fen for j in (4, 5, 6)]

        child = block[3]
        parent = ruy_lopez_game[4]
        assert child.source == TargetSource.ACTION_HEAD_DUMMY_MOVE
        assert child.parent_move != parent.played_move
        assert child.parent_move in parent.policy
        assert child.ply == 5
        assert child.played_move is None

        board = chess.Board(parent.fen)
        board.push_uci(child.parent_move)
        assert child.fen == board.fen()
        assert child.history_fens[0] == parent.fen
        assert child.history_fens[1:] == block[0].history_fens[:6]

    def test_single_legal_move(self):
        """Test a forced move repeats the continuation in the last slot."""
        game = build_game(FORCED_MOVES, start_fen=FORCED_FEN)
        assert len(game[0].policy) == 1
        rescorer = rescored(game)
        assembler = make_assembler()

        assert assembler.can_start_block(game, rescorer, 0, 0)
        block = assembler.assemble(game, rescorer, 0, np.random.default_rng(0))
        assert block[3].fen == game[1].fen
        assert block[3].block_slot == 3
        assert block[1].block_slot == 1

    def test_reproducible_with_seed(self, ruy_lopez_game):
        rescorer = rescored(ruy_lopez_game)
        assembler = make_assembler()
        a = [assembler.assemble(ruy_lopez_game, rescorer, 2, np.random.default_rng(5))[3].parent_move
             for _ in range(3)]
        assert len(set(a)) == 1


class TestCounterfactualTargets:
    """Tests for counterfactual value targets."""

    def setup_parent(self):
        game = build_game(RUY_LOPEZ)
        # Ply 0 sees an upside of 0.25 three plies ahead
        game[3].best_q = game[3].played_q = -0.3
        rescorer = rescored(game)
        parent = rescorer.rescored_position(0)
        return rescorer, parent

    def test_targets_from_parent(self):
        """Test targets are the parent's, seen from the other side."""
        rescorer, parent = self.setup_parent()
        child = make_assembler().counterfactual(rescorer, 0, parent, "d2d4")

        assert child.best_wdl == parent.best_wdl.reversed()
        assert child.result_wdl == parent.result_wdl.reversed()
        assert child.deblundered_wdl == parent.deblundered_wdl.reversed()
        assert child.intermediate_wdl == parent.intermediate_wdl.reversed()
        assert child.prior_wdl == WDL()
        # Parent's upside is the child's downside
        assert child.forward_min_q_deviation == pytest.approx(parent.forward_max_q_deviation)
        assert child.forward_max_q_deviation == pytest.approx(parent.forward_min_q_deviation)
        assert child.forward_min_q_deviation == pytest.approx(0.25)
        assert not child.tb_lookup

    def test_evaluator_far_from_parent(self):
        """Test a distant evaluation resets deviations from its uncertainty."""
        rescorer, parent = self.setup_parent()
        evaluator = FakeEvaluator(Evaluation(WDL.from_qd(0.6, 0.2), uncertainty=0.1))
        child = make_assembler(evaluator=evaluator).counterfactual(rescorer, 0, parent, "d2d4")

        assert len(evaluator.boards) == 1
        assert child.best_wdl == WDL.from_qd(0.6, 0.2)
        assert child.uncertainty == pytest.approx(0.1)
        assert child.forward_min_q_deviation == pytest.approx(0.2)
        assert child.forward_max_q_deviation == pytest.approx(0.2)

    def test_evaluator_close_to_parent(self):
        """Test a consistent evaluation keeps the swapped deviations."""
        rescorer, parent = self.setup_parent()
        evaluator = FakeEvaluator(Evaluation(WDL.from_qd(-0.1, 0.3), uncertainty=0.1))
        child = make_assembler(evaluator=evaluator).counterfactual(rescorer, 0, parent, "d2d4")

        assert child.best_wdl == WDL.from_qd(-0.1, 0.3)
        assert child.forward_min_q_deviation == pytest.approx(0.25)
        assert child.forward_max_q_deviation == pytest.approx(0.0)

    def test_deviations_clamped(self):
        """Test deviations are clamped around the new value."""
        rescorer, parent = self.setup_parent()
        evaluator = FakeEvaluator(Evaluation(WDL.from_qd(0.9, 0.0), uncertainty=0.3))
        child = make_assembler(evaluator=evaluator).counterfactual(rescorer, 0, parent, "d2d4")
        assert child.forward_min_q_deviation == pytest.approx(0.6)
        assert child.forward_max_q_deviation == pytest.approx(0.1)

    def test_tablebase_preferred(self):
        """Test tablebase values win over the evaluator."""
        rescorer, parent = self.setup_parent()
        evaluator = FakeEvaluator(Evaluation(WDL.from_qd(0.0, 0.5), uncertainty=0.1))
        assembler = make_assembler(tablebase=FakeTablebase(WDL.from_result(1)), evaluator=evaluator)
        child = assembler.counterfactual(rescorer, 0, parent, "d2d4")

        assert child.tb_lookup and child.tb_found
        assert child.best_wdl == WDL.from_result(1)
        assert child.uncertainty == 0.0
        assert child.forward_min_q_deviation == 0.0
        assert child.forward_max_q_deviation == 0.0
        assert evaluator.boards == []

    def test_tablebase_miss_falls_back(self):
        rescorer, parent = self.setup_parent()
        evaluator = FakeEvaluator(None)
        assembler = make_assembler(tablebase=FakeTablebase(None), evaluator=evaluator)
        child = assembler.counterfactual(rescorer, 0, parent, "d2d4")

        assert child.tb_lookup and not child.tb_found
        assert len(evaluator.boards) == 1
        assert child.best_wdl == parent.best_wdl.reversed()
