"""Per-game rescoring of training targets.

For each game the rescorer corrects the recorded outcome (tablebase truth,
deblundering), derives forward-looking statistics for every ply and flags
positions that position focus would drop. One instance is owned by each
worker thread and reused across games.
"""

import logging
from typing import List, Optional

import chess

from ..chess_env.board import piece_count, position_fingerprint
from ..data.game import Game, WDL
from ..data.record import RescoredPosition, TargetSource
from ..errors import InvalidGameDataError
from ..utils import clamp_deviations
from .tablebase import TablebaseOracle


logger = logging.getLogger(__name__)

# Prior-move W/D/L is only informative when the move was not a big blunder
PRIOR_MOVE_SUBOPTIMALITY_THRESHOLD = 0.10

# Position focus: keep 1 in N positions unconditionally
FOCUS_KEEP_ONE_IN = 5
FOCUS_VALUE_ERROR_THRESHOLD = 0.20

HISTORY_STEPS = 7


class GameRescorer:
    """Computes rescored targets for every ply of a game.

    Usage:
        rescorer.set_game(game)
        rescorer.compute_rescoring(tablebase)
        rescorer.compute_training_targets(deblunder, tablebase_enabled, position_focus)
        rescorer.rescored_position(i, emit_prior_move_win_loss)
    """

    def __init__(
        self,
        deblunder_threshold: float = 0.10,
        unintended_blunder_threshold: float = 0.15,
        intermediate_horizon: int = 8,
        forward_horizon: int = 8,
        focus_policy_divergence: float = 1.3
    ):
        """Initialize rescorer.

        Args:
            deblunder_threshold: Suboptimality above which a non-best move is a noise blunder
            unintended_blunder_threshold: Value drop after a best move that counts as a blunder
            intermediate_horizon: Plies ahead (even) for the intermediate value target
            forward_horizon: Plies scanned for forward Q deviations
            focus_policy_divergence: Policy KLD above which position focus keeps a position
        """
        self.deblunder_threshold = deblunder_threshold
        self.unintended_blunder_threshold = unintended_blunder_threshold
        self.intermediate_horizon = intermediate_horizon
        self.forward_horizon = forward_horizon
        self.focus_policy_divergence = focus_policy_divergence
        self.game: Optional[Game] = None
        self._reset(0)

    @classmethod
    def from_config(cls, config) -> "GameRescorer":
        """Create from a RescoringConfig."""
        return cls(
            deblunder_threshold=config.deblunder_threshold,
            unintended_blunder_threshold=config.deblunder_unintended_threshold,
            intermediate_horizon=config.intermediate_horizon,
            forward_horizon=config.forward_horizon,
            focus_policy_divergence=config.focus_policy_divergence,
        )

    def _reset(self, n: int) -> None:
        self._boards: List[Optional[chess.Board]] = [None] * n
        self._fingerprints: List[Optional[int]] = [None] * n

        self.tb_lookup = [False] * n
        self.tb_found = [False] * n
        self.tb_rescored = [False] * n
        self.tb_wdl: List[Optional[WDL]] = [None] * n
        self.noise_blunder = [False] * n
        self.unintended_blunder = [False] * n
        self.blunder_magnitude = [0.0] * n

        self.new_result_wdl: List[WDL] = [WDL()] * n
        self.target_source = [TargetSource.TRAINING] * n
        self.intermediate_best_wdl: List[WDL] = [WDL()] * n
        self.delta_q_intermediate = [0.0] * n
        self.forward_min_q_deviation = [0.0] * n
        self.forward_max_q_deviation = [0.0] * n
        self.forward_sum_positive_blunders = [0.0] * n
        self.forward_sum_negative_blunders = [0.0] * n
        self.reject_due_to_position_focus = [False] * n

        self.num_tb_lookup = 0
        self.num_tb_found = 0
        self.num_tb_rescored = 0
        self.num_unintended_blunders = 0
        self.num_noise_blunders = 0

        self._rescoring_done = False
        self._targets_done = False

    def set_game(self, game: Game) -> None:
        """Start work on a new game, discarding all per-game state."""
        self.game = game
        self._reset(len(game))

    def __len__(self) -> int:
        return 0 if self.game is None else len(self.game)

    def board(self, i: int) -> chess.Board:
        """Board at ply i (cached per game)."""
        if self._boards[i] is None:
            self._boards[i] = self.game.board_at(i)
        return self._boards[i]

    def fingerprint(self, i: int) -> int:
        """Deduplication fingerprint of ply i (cached per game)."""
        if self._fingerprints[i] is None:
            self._fingerprints[i] = position_fingerprint(self.board(i))
        return self._fingerprints[i]

    def q_suboptimality(self, i: int) -> float:
        return self.game[i].q_suboptimality

    def compute_rescoring(self, tablebase: Optional[TablebaseOracle] = None) -> None:
        """Tablebase lookups and blunder detection for every ply.

        Args:
            tablebase: Oracle to probe, or None to skip lookups
        """
        if self.game is None:
            raise RuntimeError("set_game must be called before compute_rescoring")

        n = len(self.game)
        for i in range(n):
            pos = self.game[i]

            if tablebase is not None:
                board = self.board(i)
                if piece_count(board) <= tablebase.max_pieces and not board.castling_rights:
                    self.tb_lookup[i] = True
                    self.num_tb_lookup += 1
                    wdl = tablebase.lookup(board)
                    if wdl is not None:
                        self.tb_found[i] = True
                        self.tb_wdl[i] = wdl
                        self.num_tb_found += 1

            if pos.played_move is None:
                continue

            if pos.played_move != pos.best_move:
                if pos.q_suboptimality > self.deblunder_threshold:
                    self.noise_blunder[i] = True
                    self.blunder_magnitude[i] = pos.q_suboptimality
                    self.num_noise_blunders += 1
            elif i + 1 < n:
                # The best move was played but the opponent's evaluation
                # afterwards shows a big value loss
                drop = pos.best_q - (-self.game[i + 1].best_q)
                if drop > self.unintended_blunder_threshold:
                    self.unintended_blunder[i] = True
                    self.blunder_magnitude[i] = drop
                    self.num_unintended_blunders += 1

        self._rescoring_done = True

    def compute_training_targets(
        self,
        deblunder: bool,
        tablebase: bool,
        position_focus: bool
    ) -> None:
        """Derive the training targets of every ply.

        Args:
            deblunder: Replace outcomes after blunders by the best-move value
            tablebase: Substitute tablebase truth where found
            position_focus: Compute position focus rejection flags
        """
        if not self._rescoring_done:
            raise RuntimeError("compute_rescoring must be called before compute_training_targets")

        game = self.game
        n = len(game)

        # Backward pass: propagate the outcome with a perspective flip per ply
        carried: Optional[WDL] = None
        for i in range(n - 1, -1, -1):
            pos = game[i]
            wdl = pos.result_wdl if carried is None else carried.reversed()
            source = TargetSource.TRAINING

            if tablebase and self.tb_wdl[i] is not None:
                if self.tb_wdl[i] != wdl:
                    self.tb_rescored[i] = True
                    self.num_tb_rescored += 1
                wdl = self.tb_wdl[i]
                source = TargetSource.TABLEBASE
            elif deblunder and (self.noise_blunder[i] or self.unintended_blunder[i]):
                wdl = pos.best_wdl
                source = TargetSource.DEBLUNDERED

            self.new_result_wdl[i] = wdl
            self.target_source[i] = source
            carried = wdl

        for i in range(n):
            best_q = game[i].best_q

            # Intermediate target: same side to move, horizon plies ahead
            j = i + self.intermediate_horizon
            if j >= n:
                j = n - 1 if (n - 1 - i) % 2 == 0 else n - 2
            self.intermediate_best_wdl[i] = game[j].best_wdl
            self.delta_q_intermediate[i] = abs(game[j].best_q - best_q)

            min_dev, max_dev = 0.0, 0.0
            for k in range(1, self.forward_horizon + 1):
                if i + k >= n:
                    break
                q = game[i + k].best_q if k % 2 == 0 else -game[i + k].best_q
                min_dev = max(min_dev, best_q - q)
                max_dev = max(max_dev, q - best_q)
            self.forward_min_q_deviation[i], self.forward_max_q_deviation[i] = \
                clamp_deviations(best_q, min_dev, max_dev)

            positive, negative = 0.0, 0.0
            for j in range(i + 1, n):
                if (j - i) % 2 == 1:
                    positive += self.blunder_magnitude[j]
                else:
                    negative += self.blunder_magnitude[j]
            self.forward_sum_positive_blunders[i] = positive
            self.forward_sum_negative_blunders[i] = negative

            if position_focus:
                self.reject_due_to_position_focus[i] = not self._is_focus_position(i)

        self._targets_done = True

    def _is_focus_position(self, i: int) -> bool:
        if self.fingerprint(i) % FOCUS_KEEP_ONE_IN == 0:
            return True
        pos = self.game[i]
        value_error = abs(pos.orig_q - pos.best_q)
        # NaN compares False
        if value_error > FOCUS_VALUE_ERROR_THRESHOLD:
            return True
        return pos.kld_policy > self.focus_policy_divergence

    def prior_position_wdl(self, i: int) -> WDL:
        """Network W/D/L of the previous position, from this ply's side to move.

        All zero when unavailable (first ply, NaN evaluation or the move
        leading here was a big blunder).
        """
        if i == 0:
            return WDL()
        if self.game[i].q_suboptimality >= PRIOR_MOVE_SUBOPTIMALITY_THRESHOLD:
            return WDL()
        prior = self.game[i - 1].orig_wdl
        if not prior.is_finite():
            return WDL()
        return prior.reversed()

    def rescored_position(self, i: int, emit_prior_move_win_loss: bool = False) -> RescoredPosition:
        """Build the immutable training record for ply i.

        Raises:
            InvalidGameDataError: If the position fails validation
        """
        if not self._targets_done:
            raise RuntimeError("compute_training_targets must be called before rescored_position")

        game = self.game
        pos = game[i]
        context = f"(game {game.game_id}, ply {i})"
        pos.validate(context)
        if pos.played_move is not None and pos.played_move not in pos.policy:
            raise InvalidGameDataError(f"Played move {pos.played_move} missing from policy {context}")

        return RescoredPosition(
            game_id=game.game_id,
            ply=i,
            fen=pos.fen,
            history_fens=tuple(game.history_fens(i, HISTORY_STEPS)),
            policy=pos.policy,
            played_move=pos.played_move,
            parent_move=None if i == 0 else game[i - 1].played_move,
            result_wdl=pos.result_wdl,
            deblundered_wdl=self.new_result_wdl[i],
            best_wdl=pos.best_wdl,
            intermediate_wdl=self.intermediate_best_wdl[i],
            prior_wdl=self.prior_position_wdl(i) if emit_prior_move_win_loss else WDL(),
            plies_left=pos.plies_left,
            uncertainty=pos.uncertainty,
            kld_policy=pos.kld_policy,
            played_move_q_suboptimality=0.0 if i == 0 else game[i - 1].q_suboptimality,
            num_visits=pos.num_visits,
            delta_q_forward_abs=self.delta_q_intermediate[i],
            source=self.target_source[i],
            forward_sum_positive_blunders=self.forward_sum_positive_blunders[i],
            forward_sum_negative_blunders=self.forward_sum_negative_blunders[i],
            forward_min_q_deviation=self.forward_min_q_deviation[i],
            forward_max_q_deviation=self.forward_max_q_deviation[i],
            tb_lookup=self.tb_lookup[i],
            tb_found=self.tb_found[i],
            tb_rescored=self.tb_rescored[i],
        )

    def dump(self) -> None:
        """Log the per-ply rescoring table (debug)."""
        for i in range(len(self)):
            pos = self.game[i]
            logger.debug(
                f"{i:3d} {pos.played_move or '-':6s} best={pos.best_q:+.3f} "
                f"result={self.new_result_wdl[i].q:+.3f} src={self.target_source[i].name} "
                f"noise={int(self.noise_blunder[i])} unintended={int(self.unintended_blunder[i])} "
                f"dev=-{self.forward_min_q_deviation[i]:.3f}/+{self.forward_max_q_deviation[i]:.3f} "
                f"focus_reject={int(self.reject_due_to_position_focus[i])}"
            )
