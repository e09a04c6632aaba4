"""Chunk sequencer: regroup a record sequence into fixed-size batches."""

from typing import Iterable, Iterator, List, NamedTuple, Tuple

from .error_handler import ConfigurationError
from .models import Record


class Batch(NamedTuple):
    rows: Tuple[Record, ...]
    index: int
    rows_in_chunk: int
    rows_so_far: int


class ChunkSequencer:
    """Pull iterator yielding full batches of ``chunk_size`` records.

    The last batch holds the remainder when it is non-empty; an empty input
    yields no batches. Records are pulled from the source only while a batch
    is being filled.
    """

    def __init__(self, records: Iterable[Record], chunk_size: int):
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ConfigurationError(
                f"chunk_size must be a positive integer, got {chunk_size!r}",
                config_key='chunk_size')
        self._source: Iterator[Record] = iter(records)
        self.chunk_size = chunk_size
        self.index = 0
        self.rows_so_far = 0
        self.done = False

    def __iter__(self):
        return self

    def __next__(self) -> Batch:
        if self.done:
            raise StopIteration

        rows: List[Record] = []
        try:
            for record in self._source:
                rows.append(record)
                if len(rows) == self.chunk_size:
                    break
        except Exception:
            self.done = True
            raise

        if len(rows) < self.chunk_size:
            self.done = True
        if not rows:
            raise StopIteration

        self.index += 1
        self.rows_so_far += len(rows)
        return Batch(tuple(rows), self.index, len(rows), self.rows_so_far)


def regroup(records: Iterable[Record], chunk_size: int) -> ChunkSequencer:
    """Regroup ``records`` into batches; fails on a bad chunk size before any row is read."""
    return ChunkSequencer(records, chunk_size)
