"""Run statistics: periodic status lines and the final summary.

Lines are space-delimited `key=value` pairs, the first pair being
`kind=status` or `kind=summary`, e.g.:

    kind=status pct_done=12.50 pos_per_sec=8123 scanned=240000 sent=12500 ...
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .counters import RunCounters


logger = logging.getLogger(__name__)

# Positions sent between status lines when no target file is configured
STATUS_INTERVAL_POSITIONS = 1_000_000

# Line key -> counter name
_COUNTER_KEYS = (
    ("scanned", "positions_scanned"),
    ("sent", "positions_sent_to_writer"),
    ("write_errors", "positions_lost_to_write_errors"),
    ("claims_refused", "claims_refused"),
    ("skip_modulus", "skipped_modulus"),
    ("skip_ply_floor", "skipped_ply_floor"),
    ("skip_focus", "skipped_position_focus"),
    ("skip_dups", "skipped_duplicate"),
    ("reject_pre", "skipped_position_filter"),
    ("skip_block", "skipped_block_rejected"),
    ("games", "games_processed"),
    ("games_skipped", "games_skipped_at_file_start"),
    ("frc_reject", "frc_games_skipped"),
    ("files", "files_processed"),
    ("file_errors", "file_errors"),
    ("tb_lookup", "tb_lookup"),
    ("tb_found", "tb_found"),
    ("tb_rescored", "tb_rescored"),
    ("err_blunders", "unintended_blunders"),
    ("noise_blunders", "noise_blunders"),
)


def format_status_line(fields: Dict[str, object]) -> str:
    """Format fields as a `key=value` line (spaces in values become `_`)."""
    parts = []
    for key, value in fields.items():
        if isinstance(value, float):
            text = f"{value:.2f}"
        else:
            text = str(value).replace(" ", "_")
        parts.append(f"{key}={text}")
    return " ".join(parts)


def parse_status_line(line: str) -> Dict[str, Union[int, float, str]]:
    """Parse a status or summary line back into a dict.

    Numeric values are converted to int or float; anything else stays text.
    """
    fields: Dict[str, Union[int, float, str]] = {}
    for token in line.split():
        key, sep, value = token.partition("=")
        if not sep:
            continue
        try:
            fields[key] = int(value)
        except ValueError:
            try:
                fields[key] = float(value)
            except ValueError:
                fields[key] = value
    return fields


class StatsAggregator:
    """Builds and emits run statistics from the shared counters."""

    def __init__(
        self,
        counters: RunCounters,
        writer,
        num_positions_total: int,
        target_file_base: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.counters = counters
        self.writer = writer
        self.num_positions_total = num_positions_total
        self.target_file_base = target_file_base
        self._clock = clock
        self._start_time = clock()
        self._last_status_sent = -STATUS_INTERVAL_POSITIONS
        self._lock = threading.Lock()
        self.num_status_lines = 0

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._start_time

    def positions_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.writer.num_positions_written / elapsed

    def _fields(self, kind: str) -> Dict[str, object]:
        written = self.writer.num_positions_written
        snapshot = self.counters.snapshot()
        fields: Dict[str, object] = {
            "kind": kind,
            "pct_done": 100.0 * written / self.num_positions_total,
            "pos_per_sec": self.positions_per_second(),
            "written": written,
        }
        for key, name in _COUNTER_KEYS:
            fields[key] = snapshot[name]
        fields["reject_post"] = self.writer.num_positions_rejected_by_postprocessor
        return fields

    def status_line(self, filename: Optional[str] = None) -> str:
        fields = self._fields("status")
        if filename is not None:
            fields["file"] = Path(filename).name
        return format_status_line(fields)

    def maybe_emit_status(self, filename: Optional[str] = None) -> Optional[str]:
        """Emit a status line if one is due.

        Due whenever a target file is configured, otherwise once enough
        positions were sent since the previous line.

        Returns:
            The emitted line, or None
        """
        sent = self.counters.positions_sent_to_writer.value
        with self._lock:
            if self.target_file_base is None and sent - self._last_status_sent < STATUS_INTERVAL_POSITIONS:
                return None
            self._last_status_sent = sent
            self.num_status_lines += 1

        line = self.status_line(filename)
        logger.info(line)
        return line

    def summary_line(self) -> str:
        """Final summary line (always includes every counter)."""
        fields = self._fields("summary")
        fields["elapsed_sec"] = self.elapsed_seconds
        return format_status_line(fields)

    def write_summary(self) -> str:
        """Log the summary line and write it next to the output files."""
        line = self.summary_line()
        logger.info(line)
        if self.target_file_base is not None:
            path = f"{self.target_file_base}.summary.txt"
            with open(path, "w") as f:
                f.write(line + "\n")
        return line
