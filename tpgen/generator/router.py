"""Claiming of output slots and routing of units to shards."""

import threading
from typing import Optional, Sequence

from ..data.record import RescoredPosition
from .counters import RunCounters


class ShardRouter:
    """Hands out write slots and routes units to output shards.

    The shard of a unit is derived from the global claim counter, so load
    stays balanced across files and threads of unequal speed.
    """

    def __init__(self, writer, counters: RunCounters, num_shards: int, num_positions_total: int):
        self.writer = writer
        self.counters = counters
        self.num_shards = num_shards
        self.num_positions_total = num_positions_total
        self._lock = threading.Lock()

    def outstanding(self) -> int:
        """Claimed positions that were not vetoed or lost to a failed write."""
        return (self.counters.positions_sent_to_writer.value
                - self.writer.num_positions_rejected_by_postprocessor
                - self.counters.positions_lost_to_write_errors.value)

    def claim(self, block_size: int) -> Optional[int]:
        """Reserve block_size positions of the quota.

        Refused once the outstanding claims cover the quota, which bounds
        the overshoot to less than one unit.

        Returns:
            Shard index for the unit, or None if the quota is covered
        """
        with self._lock:
            if self.outstanding() >= self.num_positions_total:
                return None
            claimed_index = self.counters.positions_sent_to_writer.add(block_size)
        return (claimed_index // block_size) % self.num_shards

    def route(self, shard_index: int, min_legal_move_probability: float,
              units: Sequence[RescoredPosition]) -> bool:
        """Hand a claimed unit to the writer.

        A unit whose write raises gives its claim back to the quota before
        the error propagates.
        """
        try:
            return self.writer.write(shard_index, min_legal_move_probability, *units)
        except Exception:
            with self._lock:
                self.counters.positions_lost_to_write_errors.add(len(units))
            raise
