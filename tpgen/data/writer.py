"""Sharded writer for encoded training records.

Each shard buffers records in memory and flushes them every `batch_size`
records to `<base>.shard<N>.<chunk>.npz`. Units written in one call
(a single position or a whole block) always land in the same chunk, in
order.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .record import RescoredPosition, encode_training_record, record_dtypes


logger = logging.getLogger(__name__)


class _Shard:
    def __init__(self, index: int):
        self.index = index
        self.lock = threading.Lock()
        self.pending: List[Dict[str, np.ndarray]] = []
        self.num_chunks = 0


class ShardWriter:
    """Writes training records to N output shards.

    Thread-safe: each shard has its own lock, so writers routed to
    different shards do not contend.
    """

    def __init__(
        self,
        target_base: Optional[str],
        num_shards: int,
        batch_size: int,
        postprocessor: Optional[Callable[[Sequence[RescoredPosition]], bool]] = None
    ):
        """Initialize the writer.

        Args:
            target_base: Output path prefix (None counts and discards records)
            num_shards: Number of output shards
            batch_size: Records per flushed chunk
            postprocessor: Optional veto called with the units of each write
        """
        if num_shards <= 0:
            raise ValueError("num_shards must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self.target_base = target_base
        self.num_shards = num_shards
        self.batch_size = batch_size
        self.postprocessor = postprocessor

        self._shards = [_Shard(i) for i in range(num_shards)]
        self._stats_lock = threading.Lock()
        self._num_written = 0
        self._num_rejected = 0
        self._shutdown = False
        self.files_written: List[str] = []

    @property
    def num_positions_written(self) -> int:
        """Positions accepted so far (monotonic)."""
        return self._num_written

    @property
    def num_positions_rejected_by_postprocessor(self) -> int:
        return self._num_rejected

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown

    def write(
        self,
        shard_index: int,
        min_legal_move_probability: float,
        *units: RescoredPosition
    ) -> bool:
        """Write one position or one block of related positions.

        Args:
            shard_index: Target shard
            min_legal_move_probability: Policy floor for every listed move
            *units: Positions making up the unit

        Returns:
            True if written, False if vetoed by the postprocessor

        Raises:
            RuntimeError: If called after shutdown
        """
        if self._shutdown:
            raise RuntimeError("ShardWriter.write called after shutdown")
        if not units:
            raise ValueError("write requires at least one position")
        if not 0 <= shard_index < self.num_shards:
            raise ValueError(f"Invalid shard index {shard_index}")

        if self.postprocessor is not None and not self.postprocessor(units):
            with self._stats_lock:
                self._num_rejected += len(units)
            return False

        if self.target_base is not None:
            records = [encode_training_record(u, min_legal_move_probability) for u in units]
            shard = self._shards[shard_index]
            with shard.lock:
                shard.pending.extend(records)
                if len(shard.pending) >= self.batch_size:
                    self._flush(shard)

        with self._stats_lock:
            self._num_written += len(units)
        return True

    def _flush(self, shard: _Shard) -> None:
        """Write a shard's pending records (caller holds the shard lock)."""
        if not shard.pending:
            return

        arrays = {}
        for name, (_, dtype) in record_dtypes().items():
            arrays[name] = np.stack([r[name] for r in shard.pending]).astype(dtype)

        path = f"{self.target_base}.shard{shard.index}.{shard.num_chunks:05d}.npz"
        np.savez_compressed(path, **arrays)
        logger.debug(f"Flushed {len(shard.pending)} records to {path}")

        with self._stats_lock:
            self.files_written.append(path)
        shard.num_chunks += 1
        shard.pending = []

    def shutdown(self) -> None:
        """Flush all shards and refuse further writes (idempotent)."""
        with self._stats_lock:
            if self._shutdown:
                return
            self._shutdown = True

        for shard in self._shards:
            with shard.lock:
                self._flush(shard)
        logger.info(f"Shard writer closed: {self._num_written} positions written, "
                    f"{self._num_rejected} rejected by postprocessor")
