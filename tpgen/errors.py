"""Exception hierarchy for the training position generator.

Fatal errors abort a whole run; per-file errors are caught by the
orchestrator and only counted against the error budget.
"""

__all__ = [
    "GeneratorError",
    "ConfigurationError",
    "NoInputFilesError",
    "WorkQueueEmptyError",
    "TooManyFileErrorsError",
    "InvalidGameDataError",
]


class GeneratorError(RuntimeError):
    """Base class for all generator errors."""


class ConfigurationError(GeneratorError, ValueError):
    """Invalid or unsupported configuration (fatal at startup)."""


class NoInputFilesError(GeneratorError):
    """No archive files matched in the source directory."""


class WorkQueueEmptyError(GeneratorError):
    """A worker found the file queue empty while work remained.

    Files are always re-enqueued after processing, so this indicates
    more workers than files rather than a transient condition.
    """


class TooManyFileErrorsError(GeneratorError):
    """The per-file exception budget was exhausted."""

    def __init__(self, num_errors: int, limit: int):
        super().__init__(
            f"Too many exceptions while reading archives ({num_errors} > {limit}), aborting"
        )
        self.num_errors = num_errors
        self.limit = limit


class InvalidGameDataError(GeneratorError):
    """A game record failed integrity validation."""
