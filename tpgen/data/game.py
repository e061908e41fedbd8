"""Game and position data structures read from archives.

A Game is the ordered sequence of positions of one recorded game, each
carrying the search metadata produced when the game was played.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import chess

from ..chess_env.board import board_from_fen
from ..errors import InvalidGameDataError


@dataclass(frozen=True)
class WDL:
    """Win/draw/loss probabilities from one player's perspective."""
    win: float = 0.0
    draw: float = 0.0
    loss: float = 0.0

    @property
    def q(self) -> float:
        """Expected score in [-1, 1]."""
        return self.win - self.loss

    @classmethod
    def from_qd(cls, q: float, d: float) -> "WDL":
        """Create from expected score and draw probability."""
        return cls(win=(1.0 + q - d) / 2.0, draw=d, loss=(1.0 - q - d) / 2.0)

    @classmethod
    def from_result(cls, result: int) -> "WDL":
        """Create from a decisive result: 1 win, 0 draw, -1 loss."""
        return cls(float(result > 0), float(result == 0), float(result < 0))

    def reversed(self) -> "WDL":
        """Same outcome from the opponent's perspective."""
        return WDL(win=self.loss, draw=self.draw, loss=self.win)

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.win, self.draw, self.loss))

    def as_tuple(self):
        return (self.win, self.draw, self.loss)


@dataclass
class Position:
    """A single position of a game with its search metadata.

    Values are from the perspective of the side to move:
    - result_q/result_d: final game outcome
    - best_q/best_d: search value of the best move
    - played_q/played_d: search value of the move actually played
    - orig_q/orig_d: raw network evaluation (may be NaN)
    """
    fen: str
    policy: Dict[str, float]
    played_move: Optional[str] = None
    best_move: Optional[str] = None
    result_q: float = 0.0
    result_d: float = 1.0
    best_q: float = 0.0
    best_d: float = 0.0
    played_q: float = 0.0
    played_d: float = 0.0
    orig_q: float = float("nan")
    orig_d: float = float("nan")
    plies_left: float = 0.0
    uncertainty: float = 0.0
    kld_policy: float = 0.0
    num_visits: int = 0

    @property
    def result_wdl(self) -> WDL:
        return WDL.from_qd(self.result_q, self.result_d)

    @property
    def best_wdl(self) -> WDL:
        return WDL.from_qd(self.best_q, self.best_d)

    @property
    def orig_wdl(self) -> WDL:
        return WDL.from_qd(self.orig_q, self.orig_d)

    @property
    def q_suboptimality(self) -> float:
        """How much worse the played move was than the best move."""
        if self.played_move is None:
            return 0.0
        return max(0.0, self.best_q - self.played_q)

    def validate(self, context: str = "") -> None:
        """Check the record looks sane.

        Raises:
            InvalidGameDataError: On malformed policy or values
        """
        if not self.policy:
            raise InvalidGameDataError(f"Empty policy {context}: {self.fen}")
        total = 0.0
        for uci, p in self.policy.items():
            if not math.isfinite(p) or p < 0:
                raise InvalidGameDataError(f"Bad policy probability {uci}={p} {context}: {self.fen}")
            total += p
        if total > 1.0001:
            raise InvalidGameDataError(f"Policy sums to {total:.4f} {context}: {self.fen}")
        for value in (self.result_q, self.best_q, self.played_q):
            if not -1.0001 <= value <= 1.0001:
                raise InvalidGameDataError(f"Value {value} out of range {context}: {self.fen}")

    def to_dict(self) -> dict:
        return {
            "fen": self.fen,
            "policy": self.policy,
            "played": self.played_move,
            "best": self.best_move,
            "result": [self.result_q, self.result_d],
            "best_qd": [self.best_q, self.best_d],
            "played_qd": [self.played_q, self.played_d],
            "orig_qd": [_json_float(self.orig_q), _json_float(self.orig_d)],
            "plies_left": self.plies_left,
            "uncertainty": self.uncertainty,
            "kld": self.kld_policy,
            "visits": self.num_visits,
        }

    @classmethod
    def from_dict(cls, row: dict) -> "Position":
        orig = row.get("orig_qd") or [None, None]
        return cls(
            fen=row["fen"],
            policy={str(k): float(v) for k, v in row["policy"].items()},
            played_move=row.get("played"),
            best_move=row.get("best"),
            result_q=float(row["result"][0]),
            result_d=float(row["result"][1]),
            best_q=float(row["best_qd"][0]),
            best_d=float(row["best_qd"][1]),
            played_q=float(row["played_qd"][0]),
            played_d=float(row["played_qd"][1]),
            orig_q=_float_or_nan(orig[0]),
            orig_d=_float_or_nan(orig[1]),
            plies_left=float(row.get("plies_left", 0.0)),
            uncertainty=float(row.get("uncertainty", 0.0)),
            kld_policy=float(row.get("kld", 0.0)),
            num_visits=int(row.get("visits", 0)),
        )


@dataclass
class Game:
    """A complete recorded game."""
    game_id: str
    positions: List[Position] = field(default_factory=list)
    is_frc: bool = False

    def __len__(self) -> int:
        return len(self.positions)

    def __getitem__(self, ply: int) -> Position:
        return self.positions[ply]

    def board_at(self, ply: int) -> chess.Board:
        """Board at a ply (parsed from FEN, no move stack)."""
        return board_from_fen(self.positions[ply].fen, chess960=self.is_frc)

    def history_fens(self, ply: int, steps: int = 7) -> List[str]:
        """FENs of the positions before a ply, most recent first."""
        return [self.positions[j].fen for j in range(ply - 1, max(-1, ply - 1 - steps), -1)]

    def to_dict(self) -> dict:
        return {
            "game_id": self.game_id,
            "frc": self.is_frc,
            "positions": [p.to_dict() for p in self.positions],
        }

    @classmethod
    def from_dict(cls, row: dict) -> "Game":
        try:
            positions = [Position.from_dict(p) for p in row["positions"]]
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise InvalidGameDataError(f"Malformed game {row.get('game_id', '?')}: {e}") from e
        return cls(
            game_id=str(row.get("game_id", "")),
            positions=positions,
            is_frc=bool(row.get("frc", False)),
        )


def _float_or_nan(value) -> float:
    return float("nan") if value is None else float(value)


def _json_float(value: float) -> Optional[float]:
    return None if math.isnan(value) else value
