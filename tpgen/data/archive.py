"""Game archive reading and writing.

An archive is a tar file whose members are JSON Lines files (optionally
gzip-compressed), one game per line in the Game.to_dict() schema.
"""

import gzip
import io
import json
import logging
import os
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from ..errors import InvalidGameDataError, NoInputFilesError
from ..utils import stable_name_hash
from .game import Game


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = ".tar"

_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True)
class ArchiveFile:
    """An archive file enumerated from the source directory."""
    path: str
    size_bytes: int

    @property
    def name(self) -> str:
        return Path(self.path).name


def list_archive_files(
    directory: str,
    filename_filter: Optional[Callable[[str], bool]] = None
) -> List[ArchiveFile]:
    """Enumerate archives in a directory, ordered by a stable name hash.

    Args:
        directory: Directory to scan (not recursive)
        filename_filter: Optional predicate on the full path

    Returns:
        List of ArchiveFile

    Raises:
        NoInputFilesError: If the directory is missing or nothing matches
    """
    if not os.path.isdir(directory):
        raise NoInputFilesError(f"Source directory not found: {directory}")

    paths = [
        str(p) for p in Path(directory).iterdir()
        if p.is_file() and p.name.endswith(ARCHIVE_EXTENSION)
    ]
    if filename_filter is not None:
        paths = [p for p in paths if filename_filter(p)]
    if not paths:
        raise NoInputFilesError(f"No matching {ARCHIVE_EXTENSION} files found in {directory}")

    # Name order is often correlated with time; the hash decorrelates it
    paths.sort(key=lambda p: (stable_name_hash(p), p))
    files = [ArchiveFile(path=p, size_bytes=os.path.getsize(p)) for p in paths]
    logger.debug(f"Found {len(files)} archive files in {directory}")
    return files


def _open_member_text(data: bytes) -> io.TextIOBase:
    if data[:2] == _GZIP_MAGIC:
        data = gzip.decompress(data)
    return io.StringIO(data.decode("utf-8"))


def iter_games(path: str) -> Iterator[Game]:
    """Lazily yield the games stored in an archive.

    Args:
        path: Archive path

    Raises:
        InvalidGameDataError: On a malformed line
        tarfile.TarError, OSError: On a damaged archive
    """
    with tarfile.open(path, "r") as tar:
        for member in tar:
            if not member.isfile():
                continue
            if not (member.name.endswith(".jsonl") or member.name.endswith(".jsonl.gz")):
                continue
            handle = tar.extractfile(member)
            if handle is None:
                continue
            with handle:
                text = _open_member_text(handle.read())
            for line_num, line in enumerate(text, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    row = json.loads(line)
                except json.JSONDecodeError as e:
                    raise InvalidGameDataError(
                        f"{Path(path).name}:{member.name}:{line_num}: {e}"
                    ) from e
                yield Game.from_dict(row)


def write_archive(path: str, games: Iterable[Game], member_name: str = "games.jsonl.gz") -> int:
    """Write games into a new archive with a single member.

    Returns:
        Number of games written
    """
    lines = [json.dumps(game.to_dict()) for game in games]
    payload = ("\n".join(lines) + "\n").encode("utf-8")
    if member_name.endswith(".gz"):
        payload = gzip.compress(payload)

    info = tarfile.TarInfo(name=member_name)
    info.size = len(payload)
    with tarfile.open(path, "w") as tar:
        tar.addfile(info, io.BytesIO(payload))
    return len(lines)
