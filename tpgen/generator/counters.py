"""Thread-safe run counters."""

import threading
from dataclasses import dataclass, field, fields
from typing import Dict


class AtomicCounter:
    """Integer counter with fetch-and-add semantics."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def add(self, amount: int) -> int:
        """Add to the counter and return the new value."""
        with self._lock:
            self._value += amount
            return self._value

    def increment(self) -> int:
        return self.add(1)

    @property
    def value(self) -> int:
        return self._value

    def __int__(self) -> int:
        return self._value

    def __repr__(self) -> str:
        return f"AtomicCounter({self._value})"


def _counter():
    return field(default_factory=AtomicCounter)


@dataclass
class RunCounters:
    """Named counters shared by all workers of a run.

    In single-position mode every scanned ply ends up in exactly one of
    positions_sent_to_writer, claims_refused or a skipped_* counter.
    """
    positions_scanned: AtomicCounter = _counter()
    positions_sent_to_writer: AtomicCounter = _counter()
    positions_lost_to_write_errors: AtomicCounter = _counter()
    claims_refused: AtomicCounter = _counter()
    skipped_modulus: AtomicCounter = _counter()
    skipped_ply_floor: AtomicCounter = _counter()
    skipped_position_focus: AtomicCounter = _counter()
    skipped_duplicate: AtomicCounter = _counter()
    skipped_position_filter: AtomicCounter = _counter()
    skipped_block_rejected: AtomicCounter = _counter()
    games_processed: AtomicCounter = _counter()
    games_skipped_at_file_start: AtomicCounter = _counter()
    frc_games_skipped: AtomicCounter = _counter()
    files_processed: AtomicCounter = _counter()
    file_errors: AtomicCounter = _counter()
    tb_lookup: AtomicCounter = _counter()
    tb_found: AtomicCounter = _counter()
    tb_rescored: AtomicCounter = _counter()
    unintended_blunders: AtomicCounter = _counter()
    noise_blunders: AtomicCounter = _counter()

    def snapshot(self) -> Dict[str, int]:
        """Current values of all counters."""
        return {f.name: getattr(self, f.name).value for f in fields(self)}

    def fold_rescorer(self, rescorer) -> None:
        """Add the per-game counters of a GameRescorer."""
        self.tb_lookup.add(rescorer.num_tb_lookup)
        self.tb_found.add(rescorer.num_tb_found)
        self.tb_rescored.add(rescorer.num_tb_rescored)
        self.unintended_blunders.add(rescorer.num_unintended_blunders)
        self.noise_blunders.add(rescorer.num_noise_blunders)
