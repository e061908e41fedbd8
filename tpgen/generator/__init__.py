"""Training position generation pipeline."""

from .counters import AtomicCounter, RunCounters
from .dedup import DedupTracker
from .work_queue import WorkQueue
from .sampler import PositionSampler, AcceptanceFilter
from .blocks import BlockAssembler, draw_alternative_move, BLOCK_SIZE
from .router import ShardRouter
from .stats import StatsAggregator, format_status_line, parse_status_line
from .orchestrator import TrainingPositionGenerator, FileResult, RunSummary

__all__ = [
    "AtomicCounter",
    "RunCounters",
    "DedupTracker",
    "WorkQueue",
    "PositionSampler",
    "AcceptanceFilter",
    "BlockAssembler",
    "draw_alternative_move",
    "BLOCK_SIZE",
    "ShardRouter",
    "StatsAggregator",
    "format_status_line",
    "parse_status_line",
    "TrainingPositionGenerator",
    "FileResult",
    "RunSummary",
]
