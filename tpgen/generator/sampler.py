"""Position sampling: stride decimation and the acceptance filter chain."""

import time
from typing import Optional

import numpy as np

from ..config import SamplingConfig
from ..data.game import Game
from .counters import RunCounters
from .dedup import DedupTracker


# Positions written in a file pass between skip modulus reseeds
RESEED_INTERVAL = 500


class PositionSampler:
    """Per-worker stride decimation state.

    Roughly one position in `position_skip_count` is considered: the one
    whose file scan counter matches the current skip modulus. The modulus
    is reseeded periodically so the stride does not look deterministic.
    After a candidate is rejected by a filter, the following position is
    considered regardless of the stride.
    """

    def __init__(self, position_skip_count: int, rng: Optional[np.random.Generator] = None):
        """Initialize sampler.

        Args:
            position_skip_count: Stride between considered positions
            rng: Seeded generator; the wall clock is used when None
        """
        self.position_skip_count = position_skip_count
        self._rng = rng
        self.skip_modulus = 0
        self.scan_counter = 0
        self.exempt_from_modulus = False

    def start_file(self) -> None:
        self.scan_counter = 0
        self.exempt_from_modulus = False
        self.reseed()

    def start_game(self) -> None:
        self.exempt_from_modulus = False

    def reseed(self) -> None:
        if self._rng is not None:
            self.skip_modulus = int(self._rng.integers(self.position_skip_count))
        else:
            self.skip_modulus = (time.time_ns() // 100) % self.position_skip_count

    def should_consider(self, written_this_file: int) -> bool:
        """Advance the scan counter and check the stride for the next ply.

        Args:
            written_this_file: Positions written so far in this file pass

        Returns:
            True if the ply should go through the acceptance filter
        """
        self.scan_counter += 1
        if written_this_file % RESEED_INTERVAL == 0:
            self.reseed()

        is_modulus_match = self.scan_counter % self.position_skip_count == self.skip_modulus
        return is_modulus_match or self.exempt_from_modulus

    def record_rejection(self) -> None:
        self.exempt_from_modulus = True

    def record_acceptance(self) -> None:
        self.exempt_from_modulus = False


class AcceptanceFilter:
    """Chain of per-position acceptance checks.

    Checks, in order: minimum game ply, position focus, deduplication and
    the optional user predicate. Each rejection is counted under its own
    counter.
    """

    def __init__(self, config: SamplingConfig, dedup: DedupTracker, counters: RunCounters):
        self.min_ply = config.min_position_game_ply
        self.position_filter = config.position_filter
        self.dedup = dedup
        self.counters = counters

    def accepts(
        self,
        game: Game,
        rescorer,
        i: int,
        written_this_file: int,
        check_position_focus: bool = True,
        count_rejections: bool = True
    ) -> bool:
        """Check whether the position at ply i may be written.

        Args:
            game: Game being scanned
            rescorer: GameRescorer already run on the game
            i: Ply index
            written_this_file: Positions written so far in this file pass
            check_position_focus: Apply the rescorer's position focus flags
            count_rejections: Increment the skip counter of a failing check

        Returns:
            True if accepted (the dedup count was incremented; undo with
            `release` if the position is not written)
        """
        counter = None
        if i < self.min_ply:
            counter = self.counters.skipped_ply_floor
        elif check_position_focus and rescorer.reject_due_to_position_focus[i]:
            counter = self.counters.skipped_position_focus
        elif not self.dedup.admit(rescorer.fingerprint(i), written_this_file):
            counter = self.counters.skipped_duplicate
        elif self.position_filter is not None and not self.position_filter(game, i, rescorer.board(i)):
            self.dedup.release(rescorer.fingerprint(i))
            counter = self.counters.skipped_position_filter

        if counter is None:
            return True
        if count_rejections:
            counter.increment()
        return False

    def release(self, rescorer, plies) -> None:
        """Give back the dedup admissions of accepted plies that were not written."""
        for j in plies:
            self.dedup.release(rescorer.fingerprint(j))
