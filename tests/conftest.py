"""Shared fixtures: synthetic games, archives and a recording writer."""

import threading

import chess
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tpgen.data import Game, Position, write_archive


# Ruy Lopez main line, no repeated positions
RUY_LOPEZ = [
    "e2e4", "e7e5", "g1f3", "b8c6", "f1b5", "a7a6", "b5a4", "g8f6",
    "e1g1", "f8e7", "f1e1", "b7b5", "a4b3", "d7d6", "c2c3", "e8g8",
    "h2h3", "c6a5", "b3c2", "c7c5", "d2d4", "d8c7",
]

# Queen's Gambit Declined, shares only the start position with RUY_LOPEZ
QUEENS_GAMBIT = [
    "d2d4", "d7d5", "c2c4", "e7e6", "b1c3", "g8f6", "c1g5", "f8e7",
    "e2e3", "e8g8", "g1f3", "h7h6", "g5h4", "b7b6", "c4d5", "f6d5",
]


def build_game(
    moves,
    game_id="game",
    best_q=0.05,
    result_q=0.0,
    result_d=1.0,
    start_fen=None,
    is_frc=False,
    played_share=0.6,
):
    """Build a game where every played move is the best move.

    Values alternate sign with the side to move so consecutive positions
    agree with each other (no blunders).
    """
    board = chess.Board(start_fen) if start_fen else chess.Board()
    positions = []
    for ply, uci in enumerate(moves):
        legal = sorted(m.uci() for m in board.legal_moves)
        assert uci in legal, f"{uci} is not legal in {board.fen()}"
        others = [m for m in legal if m != uci]
        if others:
            policy = {m: (1.0 - played_share) / len(others) for m in others}
            policy[uci] = played_share
        else:
            policy = {uci: 1.0}

        sign = 1.0 if ply % 2 == 0 else -1.0
        q = best_q * sign
        positions.append(Position(
            fen=board.fen(),
            policy=policy,
            played_move=uci,
            best_move=uci,
            result_q=result_q * sign,
            result_d=result_d,
            best_q=q,
            best_d=0.3,
            played_q=q,
            played_d=0.3,
            orig_q=q,
            orig_d=0.3,
            plies_left=float(len(moves) - ply),
            uncertainty=0.05,
            kld_policy=0.1,
            num_visits=100,
        ))
        board.push_uci(uci)
    return Game(game_id=game_id, positions=positions, is_frc=is_frc)


class RecordingWriter:
    """In-memory writer that keeps every written unit."""

    def __init__(self, postprocessor=None):
        self.postprocessor = postprocessor
        self.writes = []
        self.shutdown_calls = 0
        self._num_written = 0
        self._num_rejected = 0
        self._lock = threading.Lock()

    @property
    def num_positions_written(self):
        return self._num_written

    @property
    def num_positions_rejected_by_postprocessor(self):
        return self._num_rejected

    def write(self, shard_index, min_legal_move_probability, *units):
        with self._lock:
            if self.postprocessor is not None and not self.postprocessor(units):
                self._num_rejected += len(units)
                return False
            self.writes.append((shard_index, units))
            self._num_written += len(units)
            return True

    def shutdown(self):
        self.shutdown_calls += 1


@pytest.fixture
def ruy_lopez_game():
    return build_game(RUY_LOPEZ, game_id="ruy")


@pytest.fixture
def recording_writer():
    return RecordingWriter()


@pytest.fixture
def archive_dir(tmp_path):
    """Factory writing archives into a fresh directory.

    Usage: archive_dir({"a.tar": [game, ...], ...}) -> directory path
    """
    source = tmp_path / "archives"
    source.mkdir()

    def make(archives):
        for name, games in archives.items():
            write_archive(str(source / name), games)
        return str(source)

    return make
