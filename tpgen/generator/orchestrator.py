"""Training position generator: drives workers over the archive files.

Each worker repeatedly takes an archive from the shared queue, scans all
of its games (rescoring each game, then sampling positions), puts the
archive back at the tail and stops once the requested number of
positions has been written.
"""

import io
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np
from tqdm import tqdm

from ..config import GeneratorConfig
from ..data.archive import ArchiveFile, iter_games, list_archive_files
from ..data.game import Game
from ..data.writer import ShardWriter
from ..errors import TooManyFileErrorsError
from ..rescoring.evaluator import ContinuationEvaluator
from ..rescoring.rescorer import GameRescorer
from ..rescoring.tablebase import TablebaseOracle, open_tablebase
from .blocks import BlockAssembler
from .counters import RunCounters
from .dedup import DedupTracker
from .router import ShardRouter
from .sampler import AcceptanceFilter, PositionSampler
from .stats import StatsAggregator
from .work_queue import WorkQueue


logger = logging.getLogger(__name__)


@dataclass
class FileResult:
    """Outcome of one pass over an archive file."""
    archive: ArchiveFile
    positions_written: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunSummary:
    """Final statistics of a completed run."""
    positions_requested: int
    positions_written: int
    positions_rejected_by_postprocessor: int
    elapsed_seconds: float
    positions_per_second: float
    counters: Dict[str, int]
    summary_line: str
    files_written: List[str] = field(default_factory=list)


@dataclass
class _WorkerState:
    rescorer: GameRescorer
    sampler: PositionSampler
    rng: np.random.Generator
    written_this_file: int = 0


class TrainingPositionGenerator:
    """Generates training positions from a directory of game archives.

    Shared state (file queue, dedup tracker, counters) is owned by the
    generator and handed to the workers; rescorers and random generators
    are per worker.
    """

    def __init__(
        self,
        config: GeneratorConfig,
        *,
        writer=None,
        tablebase: Optional[TablebaseOracle] = None,
        evaluator: Optional[ContinuationEvaluator] = None,
        dedup: Optional[DedupTracker] = None,
        counters: Optional[RunCounters] = None,
        reader: Callable[[str], Iterator[Game]] = iter_games
    ):
        """Validate the configuration and prepare a run.

        Args:
            config: Generator configuration
            writer: Output writer (a ShardWriter is created if None)
            tablebase: Tablebase oracle (opened from the configured directory if None)
            evaluator: Optional value source for counterfactual block positions
            dedup: Shared dedup tracker (created if None)
            counters: Shared run counters (created if None)
            reader: Callable yielding the games of an archive path

        Raises:
            ConfigurationError: On invalid settings or a missing tablebase
            NoInputFilesError: If no archive file matches
        """
        self.config = config.resolved()
        cfg = self.config

        self.files = list_archive_files(cfg.source_directory, cfg.filename_filter)
        logger.info(f"Found {len(self.files)} archive files in {cfg.source_directory}")

        self.use_tablebase = cfg.rescoring.rescore_with_tablebase
        if self.use_tablebase and tablebase is None:
            tablebase = open_tablebase(cfg.rescoring.tablebase_directory)
        self.tablebase = tablebase if self.use_tablebase else None

        self.writer = writer if writer is not None else ShardWriter(
            target_base=cfg.output.target_file_base,
            num_shards=cfg.output.num_shards,
            batch_size=cfg.output.batch_size,
            postprocessor=cfg.output.postprocessor,
        )
        self.counters = counters if counters is not None else RunCounters()
        self.dedup = dedup if dedup is not None else DedupTracker(cfg.sampling.position_max_fraction)
        self.reader = reader

        self.queue = WorkQueue(self.files)
        self.router = ShardRouter(self.writer, self.counters, cfg.output.num_shards, cfg.num_positions_total)
        self.stats = StatsAggregator(self.counters, self.writer, cfg.num_positions_total,
                                     cfg.output.target_file_base)
        self.acceptance = AcceptanceFilter(cfg.sampling, self.dedup, self.counters)
        self.blocks = BlockAssembler(
            self.acceptance,
            filter_suboptimal_moves=cfg.sampling.filter_suboptimal_block_moves,
            emit_prior_move_win_loss=cfg.rescoring.emit_prior_move_win_loss,
            tablebase=self.tablebase,
            evaluator=evaluator,
        ) if cfg.block_mode else None

        self._lock = threading.Lock()
        self._abort_event = threading.Event()
        self._fatal_error: Optional[BaseException] = None
        self._active_workers = 0
        self._started = False

        self._dump_options()

    def _dump_options(self) -> None:
        buffer = io.StringIO()
        self.config.dump(buffer)
        logger.info("Options:")
        for line in buffer.getvalue().splitlines():
            logger.info(f"  {line}")

        base = self.config.output.target_file_base
        if base is not None:
            with open(f"{base}.options.txt", "w") as f:
                self.config.dump(f)

    @property
    def num_workers(self) -> int:
        return min(len(self.files), self.config.num_threads)

    def run(self, progress: bool = False) -> RunSummary:
        """Run the generator to completion.

        Args:
            progress: Show a tqdm progress bar of written positions

        Returns:
            RunSummary

        Raises:
            RuntimeError: If called more than once
            WorkQueueEmptyError, TooManyFileErrorsError: On fatal run errors
        """
        if self._started:
            raise RuntimeError("TrainingPositionGenerator.run may only be called once")
        self._started = True

        total = self.config.num_positions_total
        num_workers = self.num_workers
        logger.info(f"Generating {total:,} positions with {num_workers} workers")

        self._active_workers = num_workers
        threads = [
            threading.Thread(target=self._worker, args=(k,), name=f"tpgen-worker-{k}", daemon=True)
            for k in range(num_workers)
        ]
        for thread in threads:
            thread.start()

        try:
            if progress:
                self._join_with_progress(threads, total)
            else:
                for thread in threads:
                    thread.join()
        finally:
            summary_line = self.stats.write_summary()

        if self._fatal_error is not None:
            raise self._fatal_error

        return RunSummary(
            positions_requested=total,
            positions_written=self.writer.num_positions_written,
            positions_rejected_by_postprocessor=self.writer.num_positions_rejected_by_postprocessor,
            elapsed_seconds=self.stats.elapsed_seconds,
            positions_per_second=self.stats.positions_per_second(),
            counters=self.counters.snapshot(),
            summary_line=summary_line,
            files_written=list(getattr(self.writer, "files_written", [])),
        )

    def _join_with_progress(self, threads: List[threading.Thread], total: int) -> None:
        with tqdm(total=total, desc="Generating", unit="pos") as pbar:
            alive = list(threads)
            while alive:
                alive[0].join(timeout=0.5)
                written = min(self.writer.num_positions_written, total)
                pbar.update(written - pbar.n)
                pbar.set_postfix({
                    'games': self.counters.games_processed.value,
                    'errors': self.counters.file_errors.value
                })
                alive = [t for t in threads if t.is_alive()]

    def _should_stop(self) -> bool:
        return (self._abort_event.is_set()
                or self.writer.num_positions_written >= self.config.num_positions_total)

    def _abort(self, error: BaseException) -> None:
        with self._lock:
            if self._fatal_error is None:
                self._fatal_error = error
        self._abort_event.set()

    def _new_worker_state(self, worker_id: int) -> _WorkerState:
        seed = self.config.seed
        rng = np.random.default_rng(None if seed is None else [seed, worker_id])
        sampler = PositionSampler(
            self.config.sampling.position_skip_count,
            rng=None if seed is None else rng
        )
        return _WorkerState(
            rescorer=GameRescorer.from_config(self.config.rescoring),
            sampler=sampler,
            rng=rng,
        )

    def _worker(self, worker_id: int) -> None:
        state = self._new_worker_state(worker_id)
        try:
            while not self._should_stop():
                archive = self.queue.get()
                result = self._process_file(archive, state)
                self.queue.put(archive)
                self.counters.files_processed.increment()
                if not result.ok:
                    self._record_file_error(result)
                self.stats.maybe_emit_status(archive.path)
        except Exception as e:
            logger.error(f"Worker {worker_id} aborting run: {e}")
            self._abort(e)
        finally:
            with self._lock:
                self._active_workers -= 1
                last = self._active_workers == 0
            if last:
                self.writer.shutdown()

    def _record_file_error(self, result: FileResult) -> None:
        """Count a failed file pass against the error budget.

        Raises:
            TooManyFileErrorsError: Once the budget is exceeded
        """
        logger.error(
            f"Exception processing {result.archive.name}, skipping remainder of file "
            f"({result.positions_written} positions written): {result.error}",
            exc_info=result.error
        )
        num_errors = self.counters.file_errors.increment()
        if num_errors > self.config.max_file_exceptions:
            raise TooManyFileErrorsError(num_errors, self.config.max_file_exceptions)

    def _process_file(self, archive: ArchiveFile, state: _WorkerState) -> FileResult:
        """Scan one archive from the start.

        Errors are returned in the result rather than raised.
        """
        result = FileResult(archive=archive)
        state.written_this_file = 0
        state.sampler.start_file()

        max_skipped = self.config.sampling.max_games_skipped_at_file_start
        num_games_to_skip = int(state.rng.integers(max_skipped)) if max_skipped > 0 else 0

        try:
            for game_index, game in enumerate(self.reader(archive.path)):
                if self._should_stop():
                    break
                if game_index < num_games_to_skip:
                    self.counters.games_skipped_at_file_start.increment()
                    continue
                if not self._process_game(game, state, result):
                    break
        except Exception as e:
            result.error = e
        return result

    def _rescore(self, game: Game, rescorer: GameRescorer) -> None:
        rescoring = self.config.rescoring
        rescorer.set_game(game)
        rescorer.compute_rescoring(self.tablebase)
        rescorer.compute_training_targets(rescoring.deblunder, self.use_tablebase,
                                          rescoring.enable_position_focus)
        self.counters.fold_rescorer(rescorer)
        if self.config.verbose:
            rescorer.dump()

    def _process_game(self, game: Game, state: _WorkerState, result: FileResult) -> bool:
        """Sample positions from one game.

        Returns:
            False if the file pass should end (quota covered)
        """
        counters = self.counters
        counters.games_processed.increment()

        # Castling moves of Chess960 games cannot be represented
        if game.is_frc:
            counters.frc_games_skipped.increment()
            return True

        rescorer = state.rescorer
        sampler = state.sampler
        self._rescore(game, rescorer)
        sampler.start_game()

        for i in range(len(game)):
            if self._should_stop():
                return False
            counters.positions_scanned.increment()

            if not sampler.should_consider(state.written_this_file):
                counters.skipped_modulus.increment()
                continue

            if not self.acceptance.accepts(game, rescorer, i, state.written_this_file):
                sampler.record_rejection()
                continue
            sampler.record_acceptance()

            if self.blocks is not None:
                if not self.blocks.can_start_block(game, rescorer, i, state.written_this_file):
                    self.acceptance.release(rescorer, (i,))
                    counters.skipped_block_rejected.increment()
                    continue
                admitted = (i, i + 1, i + 2)
            else:
                admitted = (i,)

            try:
                written = self._write_unit(game, rescorer, i, state, result)
            except Exception:
                self.acceptance.release(rescorer, admitted)
                raise
            if not written:
                self.acceptance.release(rescorer, admitted)
            if written is None:
                return False

        return True

    def _write_unit(self, game: Game, rescorer: GameRescorer, i: int,
                    state: _WorkerState, result: FileResult) -> Optional[bool]:
        """Build the unit starting at ply i, claim its slots and write it.

        Returns:
            None if the claim was refused (quota covered), otherwise whether
            the writer kept the unit
        """
        block_size = self.config.block_size
        if self.blocks is not None:
            units = self.blocks.assemble(game, rescorer, i, state.rng)
        else:
            units = (rescorer.rescored_position(i, self.config.rescoring.emit_prior_move_win_loss),)

        shard_index = self.router.claim(block_size)
        if shard_index is None:
            self.counters.claims_refused.increment()
            return None
        state.written_this_file += block_size
        result.positions_written += block_size
        return self.router.route(shard_index, self.config.output.min_probability_for_legal_move, units)
