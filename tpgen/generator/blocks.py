"""Assembly of related multi-position blocks.

A block holds the positions at plies i, i+1 and i+2 of a game followed by
a counterfactual position reached from ply i by a move other than the one
played.
"""

import dataclasses
import logging
from typing import Mapping, Optional, Tuple

import numpy as np

from ..chess_env.board import board_after_move
from ..data.game import Game, WDL
from ..data.record import RescoredPosition, TargetSource
from ..errors import InvalidGameDataError
from ..rescoring.rescorer import HISTORY_STEPS
from ..rescoring.evaluator import ContinuationEvaluator, Evaluation
from ..rescoring.tablebase import TablebaseOracle
from ..utils import blend_in_uniform, clamp_deviations, normalize
from .sampler import AcceptanceFilter


logger = logging.getLogger(__name__)

BLOCK_SIZE = 4

# Max suboptimality of the moves linking the forced slots
SUBOPTIMAL_MOVE_THRESHOLD = 0.02
UNFILTERED_MOVE_THRESHOLD = 999.0

# Share of uniform weight mixed into the counterfactual move draw
COUNTERFACTUAL_FRACTION_UNIFORM = 0.5

# Value gap beyond which forward deviations are re-estimated from uncertainty
COUNTERFACTUAL_Q_GAP = 0.20
UNCERTAINTY_MULTIPLIER = 2.0


def draw_alternative_move(
    policy: Mapping[str, float],
    played_move: str,
    rng: np.random.Generator
) -> str:
    """Draw a move other than the played one.

    The played move's probability is removed and the rest renormalized
    (uniform if nothing is left), then blended half and half with a
    uniform distribution over the remaining moves.

    Args:
        policy: Search policy {uci: probability}, at least two moves
        played_move: Move actually played
        rng: Random generator

    Returns:
        UCI of the drawn move

    Raises:
        InvalidGameDataError: If the played move is not in the policy
    """
    if played_move not in policy:
        raise InvalidGameDataError(f"Move made in game {played_move} not found in policy moves")

    moves = sorted(uci for uci in policy if uci != played_move)
    if not moves:
        raise ValueError("No alternative move to draw")

    probs = normalize(np.array([policy[uci] for uci in moves]))
    probs = blend_in_uniform(probs, COUNTERFACTUAL_FRACTION_UNIFORM)
    return moves[int(rng.choice(len(moves), p=probs))]


class BlockAssembler:
    """Builds blocks of four related positions."""

    def __init__(
        self,
        acceptance: AcceptanceFilter,
        filter_suboptimal_moves: bool = True,
        emit_prior_move_win_loss: bool = False,
        tablebase: Optional[TablebaseOracle] = None,
        evaluator: Optional[ContinuationEvaluator] = None
    ):
        """Initialize assembler.

        Args:
            acceptance: Filter chain used to vet the follow-up positions
            filter_suboptimal_moves: Require near-best moves between forced slots
            emit_prior_move_win_loss: Passed through to the rescored positions
            tablebase: Exact values for counterfactual positions
            evaluator: Value estimates for counterfactual positions
        """
        self.acceptance = acceptance
        self.move_threshold = SUBOPTIMAL_MOVE_THRESHOLD if filter_suboptimal_moves else UNFILTERED_MOVE_THRESHOLD
        self.emit_prior_move_win_loss = emit_prior_move_win_loss
        self.tablebase = tablebase
        self.evaluator = evaluator

    def can_start_block(self, game: Game, rescorer, i: int, written_this_file: int) -> bool:
        """Check the follow-up positions of a block starting at ply i.

        Plies i+1 and i+2 must pass the acceptance filter (without the
        position focus check) and the moves leading to them must be close
        to the best move. Follow-ups admitted by a failed attempt are
        released again.
        """
        if i + 2 >= len(game):
            return False

        admitted = []
        for j in (i + 1, i + 2):
            if not self.acceptance.accepts(game, rescorer, j, written_this_file,
                                           check_position_focus=False, count_rejections=False):
                self.acceptance.release(rescorer, admitted)
                return False
            admitted.append(j)
            if rescorer.q_suboptimality(j - 1) > self.move_threshold:
                self.acceptance.release(rescorer, admitted)
                return False
        return True

    def assemble(self, game: Game, rescorer, i: int, rng: np.random.Generator) -> Tuple[RescoredPosition, ...]:
        """Build the four units of a block starting at ply i.

        Raises:
            InvalidGameDataError: On malformed positions
        """
        slots = [
            rescorer.rescored_position(j, self.emit_prior_move_win_loss)
            for j in (i, i + 1, i + 2)
        ]

        pos = game[i]
        if len(pos.policy) <= 1:
            logger.debug(f"Single move at ply {i} of game {game.game_id}, reusing continuation")
            slots.append(slots[1])
        else:
            move = draw_alternative_move(pos.policy, pos.played_move, rng)
            slots.append(self.counterfactual(rescorer, i, slots[0], move))

        return tuple(dataclasses.replace(unit, block_slot=k) for k, unit in enumerate(slots))

    def _evaluate(self, board) -> Tuple[Optional[Evaluation], bool, bool]:
        tb_lookup, tb_found = False, False
        if self.tablebase is not None:
            tb_lookup = True
            wdl = self.tablebase.lookup(board)
            if wdl is not None:
                return Evaluation(wdl=wdl, uncertainty=0.0), tb_lookup, True
        if self.evaluator is not None:
            return self.evaluator.evaluate(board), tb_lookup, tb_found
        return None, tb_lookup, tb_found

    def counterfactual(self, rescorer, i: int, parent: RescoredPosition, move: str) -> RescoredPosition:
        """Position reached from ply i by an alternative move.

        Targets are taken from the parent, seen from the other side. A
        tablebase or evaluator value replaces the best W/D/L when available.

        Args:
            rescorer: GameRescorer for the game
            i: Ply of the parent position
            parent: Rescored parent position (slot 1)
            move: UCI of the alternative move
        """
        board = board_after_move(rescorer.board(i), move)
        evaluation, tb_lookup, tb_found = self._evaluate(board)

        # Parent's deviations seen from the other side, like the reversed value targets
        min_dev = parent.forward_max_q_deviation
        max_dev = parent.forward_min_q_deviation
        best_wdl = parent.best_wdl.reversed()
        uncertainty = parent.uncertainty

        if evaluation is not None:
            best_wdl = evaluation.wdl
            uncertainty = evaluation.uncertainty
            if abs(-evaluation.wdl.q - parent.best_q) > COUNTERFACTUAL_Q_GAP:
                min_dev = max_dev = evaluation.uncertainty * UNCERTAINTY_MULTIPLIER

        min_dev, max_dev = clamp_deviations(best_wdl.q, min_dev, max_dev)

        return RescoredPosition(
            game_id=parent.game_id,
            ply=i + 1,
            fen=board.fen(),
            history_fens=((parent.fen,) + parent.history_fens)[:HISTORY_STEPS],
            policy={},
            played_move=None,
            parent_move=move,
            result_wdl=parent.result_wdl.reversed(),
            deblundered_wdl=parent.deblundered_wdl.reversed(),
            best_wdl=best_wdl,
            intermediate_wdl=parent.intermediate_wdl.reversed(),
            prior_wdl=WDL(),
            plies_left=max(0.0, parent.plies_left - 1),
            uncertainty=uncertainty,
            kld_policy=0.0,
            played_move_q_suboptimality=0.0,
            num_visits=0,
            delta_q_forward_abs=parent.delta_q_forward_abs,
            source=TargetSource.ACTION_HEAD_DUMMY_MOVE,
            forward_sum_positive_blunders=parent.forward_sum_positive_blunders,
            forward_sum_negative_blunders=parent.forward_sum_negative_blunders,
            forward_min_q_deviation=min_dev,
            forward_max_q_deviation=max_dev,
            tb_lookup=tb_lookup,
            tb_found=tb_found,
        )
