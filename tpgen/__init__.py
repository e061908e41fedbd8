"""Training Position Generator.

Turns archives of recorded chess games into deduplicated, rescored and
sharded training records.
"""

__version__ = "0.1.0"

from .config import (
    GeneratorConfig,
    SamplingConfig,
    RescoringConfig,
    OutputConfig,
    SUPPORTED_BLOCK_SIZES,
)
from .errors import (
    GeneratorError,
    ConfigurationError,
    NoInputFilesError,
    WorkQueueEmptyError,
    TooManyFileErrorsError,
    InvalidGameDataError,
)
from .generator import TrainingPositionGenerator, RunSummary

__all__ = [
    "GeneratorConfig",
    "SamplingConfig",
    "RescoringConfig",
    "OutputConfig",
    "SUPPORTED_BLOCK_SIZES",
    "GeneratorError",
    "ConfigurationError",
    "NoInputFilesError",
    "WorkQueueEmptyError",
    "TooManyFileErrorsError",
    "InvalidGameDataError",
    "TrainingPositionGenerator",
    "RunSummary",
]
