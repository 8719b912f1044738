"""score_etl.reader

Checkpointed, streaming reader over a delimited score file.

Line numbers count data rows only: the first row after the header is
line 1. Blank physical lines are skipped by the csv module and are not
counted. The same numbering is used by count_data_rows(), by the job
checkpoint (last_processed_line) and by the error CSV.
"""

from __future__ import annotations

import csv
import hashlib
from collections.abc import Iterator
from pathlib import Path

from score_etl.normalize import normalize_header
from score_etl.shared import SourceTruncated, SourceUnreadable

SOURCE_ENCODING = "utf-8-sig"
_FINGERPRINT_BLOCK = 1 << 20


def file_fingerprint(path: Path) -> str:
    """SHA-256 of the whole file, read in 1 MiB blocks."""
    digest = hashlib.sha256()
    try:
        with path.open("rb") as fh:
            for block in iter(lambda: fh.read(_FINGERPRINT_BLOCK), b""):
                digest.update(block)
    except OSError as exc:
        raise SourceUnreadable(f"cannot read {path}: {exc}") from exc
    return digest.hexdigest()


def count_data_rows(path: Path, delimiter: str = ",") -> int:
    """Pre-scan: number of data rows (header excluded)."""
    with CheckpointedReader(path, delimiter=delimiter) as reader:
        return sum(1 for _ in reader)


class CheckpointedReader:
    """Lazy (line_number, cells) iterator with a one-shot skip_to().

    Usage:
        with CheckpointedReader(path) as reader:
            reader.skip_to(job.last_processed_line)
            for line, cells in reader:
                ...
    """

    def __init__(self, path: Path, delimiter: str = ",") -> None:
        self._path = path
        self._delimiter = delimiter
        self._fh = None
        self._rows: Iterator[list[str]] | None = None
        self._line = 0
        self.header: list[str] = []

    def __enter__(self) -> CheckpointedReader:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self) -> None:
        try:
            self._fh = open(self._path, newline="", encoding=SOURCE_ENCODING)
        except OSError as exc:
            raise SourceUnreadable(f"cannot open {self._path}: {exc}") from exc
        self._rows = csv.reader(self._fh, delimiter=self._delimiter)
        try:
            raw_header = next(self._rows)
        except StopIteration:
            self.close()
            raise SourceUnreadable(f"{self._path} has no header row") from None
        except (csv.Error, UnicodeDecodeError) as exc:
            self.close()
            raise SourceUnreadable(f"cannot decode header of {self._path}: {exc}") from exc
        self.header = normalize_header(raw_header)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    @property
    def line(self) -> int:
        """Line number of the last row consumed (0 before the first)."""
        return self._line

    def skip_to(self, checkpoint: int) -> None:
        """Read and discard rows 1..checkpoint without yielding them."""
        if self._rows is None:
            raise RuntimeError("reader is not open")
        if self._line != 0:
            raise RuntimeError("skip_to() must be called before iteration starts")
        data_rows = self._data_rows()
        while self._line < checkpoint:
            try:
                next(data_rows)
            except StopIteration:
                raise SourceTruncated(checkpoint, self._line) from None
            self._line += 1

    def _data_rows(self) -> Iterator[list[str]]:
        assert self._rows is not None
        for cells in self._rows:
            # csv yields [] for blank physical lines
            if cells:
                yield cells

    def __iter__(self) -> Iterator[tuple[int, list[str]]]:
        if self._rows is None:
            raise RuntimeError("reader is not open")
        for cells in self._data_rows():
            self._line += 1
            yield self._line, cells
