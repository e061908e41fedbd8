"""Rotating queue of archive files shared by the workers."""

import threading
from collections import deque
from typing import Iterable

from ..data.archive import ArchiveFile
from ..errors import WorkQueueEmptyError


class WorkQueue:
    """Round-robin file queue.

    Workers take a file from the head, process it completely and put it
    back at the tail, so the queue never runs dry while there are at most
    as many workers as files.
    """

    def __init__(self, files: Iterable[ArchiveFile]):
        self._queue: deque = deque(files)
        self._lock = threading.Lock()

    def get(self) -> ArchiveFile:
        """Take the next file.

        Raises:
            WorkQueueEmptyError: If no file is available
        """
        with self._lock:
            if not self._queue:
                raise WorkQueueEmptyError("Work queue unexpectedly empty")
            return self._queue.popleft()

    def put(self, archive: ArchiveFile) -> None:
        """Re-enqueue a processed file at the tail."""
        with self._lock:
            self._queue.append(archive)

    def __len__(self) -> int:
        return len(self._queue)
