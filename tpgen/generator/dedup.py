"""Shared fingerprint usage tracker for position deduplication."""

import threading
from typing import Dict


class DedupTracker:
    """Limits how often one position may be written.

    Maps position fingerprint to the number of admissions that were not
    given back, i.e. the written positions that carry it.
    The map only grows during a run; its size is bounded by the number
    of distinct positions seen.
    """

    def __init__(self, max_fraction: float):
        """Initialize tracker.

        Args:
            max_fraction: Max share of a file pass's written positions that
                may repeat one fingerprint (>= 1 disables deduplication)
        """
        self.max_fraction = max_fraction
        self._counts: Dict[int, int] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_fraction < 1.0

    def admit(self, fingerprint: int, written_this_file: int) -> bool:
        """Decide whether a position may be used and record it if so.

        A fingerprint never seen before is always admitted. A repeat is
        rejected when nothing was written this file pass yet or when its
        count relative to the written total already reaches max_fraction.

        Args:
            fingerprint: Position fingerprint
            written_this_file: Positions written so far in this file pass

        Returns:
            True if admitted (its count was incremented)
        """
        if not self.enabled:
            return True

        with self._lock:
            used = self._counts.get(fingerprint, 0)
            if used > 0:
                if written_this_file == 0 or used / written_this_file >= self.max_fraction:
                    return False
            self._counts[fingerprint] = used + 1
            return True

    def release(self, fingerprint: int) -> None:
        """Undo one admission of a position that was not written.

        The fingerprint stays in the map; a count of zero is treated as
        never seen.
        """
        if not self.enabled:
            return

        with self._lock:
            used = self._counts.get(fingerprint, 0)
            if used > 0:
                self._counts[fingerprint] = used - 1

    def count(self, fingerprint: int) -> int:
        return self._counts.get(fingerprint, 0)

    def __len__(self) -> int:
        return len(self._counts)
