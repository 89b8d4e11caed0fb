"""
Row-Identifier Store Module

This module captures the ROWIDs of every source row to copy with a single
execution of the key query, then serves positional ranges of them to the
workers as SYS.ODCIVARCHAR2LIST bind objects.

Two backends:
- InMemoryRowIdStore: a Python list, slices are direct copies
- DiskRowIdStore: an append-only, length-prefixed record log in a temporary
  directory; every read opens its own file handle and skips to the start
  record, so workers read concurrently without locking

The store is written exactly once (capture) and never mutated afterwards.
"""

from abc import ABC, abstractmethod
from typing import List, Optional
import logging
import os
import shutil
import struct
import tempfile
import time

logger = logging.getLogger(__name__)

ROWID_LIST_TYPE = "SYS.ODCIVARCHAR2LIST"

STORE_MEMORY = "memory"
STORE_DISK = "disk"

# Rows fetched per round trip while capturing
CAPTURE_ARRAYSIZE = int(os.environ.get('PIPE_CAPTURE_ARRAYSIZE', '10000'))

# Record header: unsigned 16-bit length (UROWIDs stay far below 64K)
_RECORD_HEADER = struct.Struct('>H')
_LOG_FILE_NAME = "rowids.log"


class RowIdStore(ABC):
    """Captured ROWIDs of one run."""

    def __init__(self):
        self._captured = False

    def capture(self, connection, key_query: str) -> int:
        """
        Execute the key query once and store every returned ROWID in result order.

        Args:
            connection: Source oracledb connection
            key_query: Statement selecting only the ROWID

        Returns:
            Number of captured ROWIDs

        Raises:
            RuntimeError: If the store was already captured
        """
        if self._captured:
            raise RuntimeError("ROWIDs have already been captured for this store")

        start_time = time.time()
        cursor = connection.cursor()
        try:
            cursor.arraysize = CAPTURE_ARRAYSIZE
            cursor.prefetchrows = CAPTURE_ARRAYSIZE
            cursor.execute(key_query)
            while True:
                rows = cursor.fetchmany()
                if not rows:
                    break
                self._append([str(row[0]) for row in rows])
        finally:
            cursor.close()
        self._finish_capture()
        self._captured = True

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(f"Captured {self.count():,} ROWIDs in {elapsed_ms:,.0f} ms")
        return self.count()

    def extract(self, connection, start: int, end: int):
        """
        Return ROWIDs [start, end) as a collection bind for the fetch query.

        Args:
            connection: Connection the collection object is created on
            start: First row index (inclusive)
            end: Last row index (exclusive)
        """
        rowid_list_type = connection.gettype(ROWID_LIST_TYPE)
        return rowid_list_type.newobject(self.read(start, end))

    def read(self, start: int, end: int) -> List[str]:
        """
        Return ROWIDs [start, end) in capture order.

        Raises:
            RuntimeError: If called before capture completed
            IndexError: If the range is outside [0, count)
        """
        if not self._captured:
            raise RuntimeError("ROWIDs must be captured before they can be read")
        if start < 0 or end > self.count() or start > end:
            raise IndexError(f"Range [{start}, {end}) is outside of [0, {self.count()})")
        return self._read(start, end)

    @abstractmethod
    def count(self) -> int:
        """Number of captured ROWIDs."""

    @abstractmethod
    def release(self) -> None:
        """Discard all resources held by the store."""

    @abstractmethod
    def _append(self, rowids: List[str]) -> None:
        pass

    def _finish_capture(self) -> None:
        pass

    @abstractmethod
    def _read(self, start: int, end: int) -> List[str]:
        pass


class InMemoryRowIdStore(RowIdStore):
    """ROWIDs held in a Python list."""

    def __init__(self):
        super().__init__()
        self._rowids: List[str] = []

    def count(self) -> int:
        return len(self._rowids)

    def release(self) -> None:
        self._rowids = []

    def _append(self, rowids: List[str]) -> None:
        self._rowids.extend(rowids)

    def _read(self, start: int, end: int) -> List[str]:
        return self._rowids[start:end]


class DiskRowIdStore(RowIdStore):
    """
    ROWIDs held in an append-only log file.

    Reads cost O(start + (end - start)) record skips; workers read
    increasing ranges, so this stays sequential in practice.
    """

    def __init__(self, owner: str, table: str, directory: Optional[str] = None):
        super().__init__()
        self.directory = tempfile.mkdtemp(prefix=f"{owner}_{table}.", dir=directory)
        self.path = os.path.join(self.directory, _LOG_FILE_NAME)
        self._writer = open(self.path, 'ab')
        self._count = 0
        logger.info(f"ROWID log for {owner}.{table} created in '{self.directory}'")

    def count(self) -> int:
        return self._count

    def _append(self, rowids: List[str]) -> None:
        for rowid in rowids:
            data = rowid.encode('ascii')
            self._writer.write(_RECORD_HEADER.pack(len(data)))
            self._writer.write(data)
        self._count += len(rowids)

    def _finish_capture(self) -> None:
        self._writer.close()
        self._writer = None

    def _read(self, start: int, end: int) -> List[str]:
        rowids: List[str] = []
        with open(self.path, 'rb') as reader:
            for _ in range(start):
                (length,) = _RECORD_HEADER.unpack(reader.read(_RECORD_HEADER.size))
                reader.seek(length, os.SEEK_CUR)
            for _ in range(end - start):
                (length,) = _RECORD_HEADER.unpack(reader.read(_RECORD_HEADER.size))
                rowids.append(reader.read(length).decode('ascii'))
        return rowids

    def release(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        try:
            shutil.rmtree(self.directory)
        except OSError as e:
            logger.error(f"Unable to delete ROWID log files in '{self.directory}' due to '{e}' error!")


def create_store(backend: str, owner: str, table: str, directory: Optional[str] = None) -> RowIdStore:
    """
    Create the ROWID store for a run.

    Args:
        backend: STORE_MEMORY or STORE_DISK
        owner: Source schema (used to name the disk log directory)
        table: Source table (used to name the disk log directory)
        directory: Parent directory for the disk log (OS temp dir when None)
    """
    if backend == STORE_DISK:
        return DiskRowIdStore(owner, table, directory)
    if backend == STORE_MEMORY:
        return InMemoryRowIdStore()
    raise ValueError(f"Unknown ROWID store backend '{backend}'")
