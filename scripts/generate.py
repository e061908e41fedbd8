#!/usr/bin/env python3
"""Generate training positions from a directory of game archives."""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tpgen import (
    GeneratorConfig,
    SamplingConfig,
    RescoringConfig,
    OutputConfig,
    SUPPORTED_BLOCK_SIZES,
    GeneratorError,
    TrainingPositionGenerator,
)


def setup_logging(log_file: str = None, verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=format_str, handlers=handlers)


def build_config(args) -> GeneratorConfig:
    """Map command line arguments onto the configuration dataclasses."""
    filename_filter = None
    if args.filename_contains:
        needle = args.filename_contains
        filename_filter = lambda path: needle in Path(path).name

    return GeneratorConfig(
        source_directory=args.source,
        num_positions_total=args.positions,
        num_threads=args.threads,
        filename_filter=filename_filter,
        sampling=SamplingConfig(
            position_skip_count=args.skip_count,
            min_position_game_ply=args.min_ply,
            position_max_fraction=args.max_fraction,
            block_size=args.block_size,
            filter_suboptimal_block_moves=not args.no_block_move_filter,
            max_games_skipped_at_file_start=args.max_games_skipped,
        ),
        rescoring=RescoringConfig(
            deblunder=not args.no_deblunder,
            deblunder_threshold=args.deblunder_threshold,
            rescore_with_tablebase=args.tablebase is not None,
            tablebase_directory=args.tablebase,
            enable_position_focus=args.position_focus,
            emit_prior_move_win_loss=args.emit_prior_wdl,
        ),
        output=OutputConfig(
            target_file_base=args.output,
            num_shards=args.shards,
            batch_size=args.batch_size,
            min_probability_for_legal_move=args.min_legal_prob,
        ),
        max_file_exceptions=args.max_file_exceptions,
        seed=args.seed,
        verbose=args.verbose,
    )


def main():
    parser = argparse.ArgumentParser(description="Generate training positions from game archives")

    # Input / output
    parser.add_argument("--source", type=str, required=True,
                        help="Directory containing .tar game archives")
    parser.add_argument("--output", type=str, default=None,
                        help="Output file base name (omit to count positions without writing)")
    parser.add_argument("--filename-contains", type=str, default=None,
                        help="Only use archives whose name contains this text")
    parser.add_argument("--positions", type=int, default=1_000_000,
                        help="Total number of positions to generate")
    parser.add_argument("--threads", type=int, default=8,
                        help="Number of worker threads")
    parser.add_argument("--shards", type=int, default=4,
                        help="Number of output shards")
    parser.add_argument("--batch-size", type=int, default=4096,
                        help="Records per output chunk")

    # Sampling
    parser.add_argument("--skip-count", type=int, default=20,
                        help="Use roughly one position in this many")
    parser.add_argument("--min-ply", type=int, default=0,
                        help="Skip positions before this ply")
    parser.add_argument("--max-fraction", type=float, default=0.001,
                        help="Max fraction of positions repeating one position (>= 1 disables)")
    parser.add_argument("--block-size", type=int, default=1, choices=SUPPORTED_BLOCK_SIZES,
                        help="Positions per written unit (4 = related-position blocks)")
    parser.add_argument("--no-block-move-filter", action="store_true",
                        help="Allow suboptimal moves between block positions")
    parser.add_argument("--max-games-skipped", type=int, default=0,
                        help="Skip a random number of games below this at the start of each file")

    # Rescoring
    parser.add_argument("--no-deblunder", action="store_true",
                        help="Keep original game outcomes after blunders")
    parser.add_argument("--deblunder-threshold", type=float, default=0.10,
                        help="Suboptimality above which a move counts as a blunder")
    parser.add_argument("--tablebase", type=str, default=None,
                        help="Syzygy directory (enables tablebase rescoring)")
    parser.add_argument("--position-focus", action="store_true",
                        help="Keep mostly positions where the network was wrong")
    parser.add_argument("--emit-prior-wdl", action="store_true",
                        help="Emit the prior position's W/D/L")
    parser.add_argument("--min-legal-prob", type=float, default=0.0,
                        help="Minimum policy probability for every legal move")

    # Misc
    parser.add_argument("--max-file-exceptions", type=int, default=500,
                        help="Abort after this many failed file passes")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for reproducible sampling")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Also write the log to this file")
    parser.add_argument("--no-progress", action="store_true",
                        help="Disable the progress bar")
    parser.add_argument("--verbose", action="store_true",
                        help="Verbose logging")

    args = parser.parse_args()

    setup_logging(args.log_file, args.verbose)
    logger = logging.getLogger(__name__)

    try:
        generator = TrainingPositionGenerator(build_config(args))
        summary = generator.run(progress=not args.no_progress)
    except GeneratorError as e:
        logger.error(f"Generation failed: {e}")
        return 1

    logger.info("=" * 60)
    logger.info(f"Positions written: {summary.positions_written:,} "
                f"({summary.positions_per_second:,.0f}/sec)")
    logger.info(f"Output files: {len(summary.files_written)}")
    logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
