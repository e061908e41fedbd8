"""Game data, archives and training record output."""

from .game import WDL, Position, Game
from .archive import ArchiveFile, list_archive_files, iter_games, write_archive
from .record import TargetSource, RescoredPosition, encode_training_record, record_dtypes
from .writer import ShardWriter

__all__ = [
    "WDL",
    "Position",
    "Game",
    "ArchiveFile",
    "list_archive_files",
    "iter_games",
    "write_archive",
    "TargetSource",
    "RescoredPosition",
    "encode_training_record",
    "record_dtypes",
    "ShardWriter",
]
