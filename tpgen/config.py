"""Configuration dataclasses for the training position generator."""

import dataclasses
from dataclasses import dataclass, field
from typing import Callable, Optional, TextIO

from .errors import ConfigurationError


# Block sizes understood by the generator (0 and 1 both mean single positions)
SUPPORTED_BLOCK_SIZES = (0, 1, 4)


@dataclass
class SamplingConfig:
    """Configuration for position sampling and diversity constraints."""
    position_skip_count: int = 20  # Emit roughly one position in this many
    min_position_game_ply: int = 0
    position_max_fraction: float = 0.001  # Max share of a file pass taken by one position (>= 1 disables)
    block_size: int = 1  # Related positions per written unit (0/1 = single, 4 = block mode)
    filter_suboptimal_block_moves: bool = True
    max_games_skipped_at_file_start: int = 0
    position_filter: Optional[Callable] = None  # (game, ply, board) -> bool


@dataclass
class RescoringConfig:
    """Configuration for per-game rescoring."""
    deblunder: bool = True
    deblunder_threshold: float = 0.10
    deblunder_unintended_threshold: float = 0.15
    rescore_with_tablebase: bool = False
    tablebase_directory: Optional[str] = None
    enable_position_focus: bool = False
    focus_policy_divergence: float = 1.3
    emit_prior_move_win_loss: bool = False
    intermediate_horizon: int = 8  # Plies ahead for the intermediate value target (even)
    forward_horizon: int = 8  # Plies scanned for forward Q deviations


@dataclass
class OutputConfig:
    """Configuration for the sharded output."""
    target_file_base: Optional[str] = None
    num_shards: int = 4
    batch_size: int = 4096
    min_probability_for_legal_move: float = 0.0
    postprocessor: Optional[Callable] = None  # (units) -> bool


@dataclass
class GeneratorConfig:
    """Master configuration combining all sub-configs."""
    source_directory: str = "."
    num_positions_total: int = 1_000_000
    num_threads: int = 8
    filename_filter: Optional[Callable[[str], bool]] = None
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    rescoring: RescoringConfig = field(default_factory=RescoringConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    max_file_exceptions: int = 500
    seed: Optional[int] = None  # Fixes the skip modulus and block draws when set
    verbose: bool = False

    @property
    def block_size(self) -> int:
        """Number of positions in each written unit (always >= 1)."""
        return max(1, self.sampling.block_size)

    @property
    def block_mode(self) -> bool:
        return self.block_size > 1

    def validate(self) -> None:
        """Raise ConfigurationError for unusable settings."""
        if self.num_positions_total <= 0:
            raise ConfigurationError("num_positions_total must be > 0")
        if self.num_threads <= 0:
            raise ConfigurationError("num_threads must be > 0")
        if self.output.num_shards <= 0:
            raise ConfigurationError("num_shards must be > 0")
        if self.output.batch_size <= 0:
            raise ConfigurationError("batch_size must be > 0")
        if self.sampling.position_skip_count < 1:
            raise ConfigurationError("position_skip_count must be >= 1")
        if self.sampling.min_position_game_ply < 0:
            raise ConfigurationError("min_position_game_ply must be >= 0")
        if self.sampling.position_max_fraction < 0:
            raise ConfigurationError("position_max_fraction must be >= 0")
        if self.sampling.block_size not in SUPPORTED_BLOCK_SIZES:
            raise ConfigurationError(
                f"Unsupported block size {self.sampling.block_size}; "
                f"only {SUPPORTED_BLOCK_SIZES} are supported"
            )
        if self.sampling.max_games_skipped_at_file_start < 0:
            raise ConfigurationError("max_games_skipped_at_file_start must be >= 0")
        if not 0.0 <= self.output.min_probability_for_legal_move < 1.0:
            raise ConfigurationError("min_probability_for_legal_move must be in [0, 1)")
        if self.rescoring.intermediate_horizon < 0 or self.rescoring.intermediate_horizon % 2:
            raise ConfigurationError("intermediate_horizon must be a non-negative even number of plies")
        if self.rescoring.forward_horizon < 0:
            raise ConfigurationError("forward_horizon must be >= 0")
        if self.max_file_exceptions < 0:
            raise ConfigurationError("max_file_exceptions must be >= 0")

    def resolved(self) -> "GeneratorConfig":
        """Return a validated copy with derived settings applied.

        The shard count is clamped so every shard can receive at least
        one full batch.
        """
        self.validate()
        max_shards = max(1, self.num_positions_total // self.output.batch_size)
        output = dataclasses.replace(
            self.output,
            num_shards=min(self.output.num_shards, max_shards),
        )
        sampling = dataclasses.replace(self.sampling, block_size=self.block_size)
        return dataclasses.replace(self, sampling=sampling, output=output)

    def dump(self, stream: TextIO) -> None:
        """Write the configuration as `key: value` lines."""
        for name, value in _flatten(self):
            stream.write(f"{name}: {value}\n")


def _flatten(config, prefix: str = ""):
    for f in dataclasses.fields(config):
        value = getattr(config, f.name)
        name = f"{prefix}{f.name}"
        if dataclasses.is_dataclass(value):
            yield from _flatten(value, prefix=f"{name}.")
        elif callable(value):
            yield name, getattr(value, "__qualname__", repr(value))
        else:
            yield name, value
