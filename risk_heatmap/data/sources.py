"""
Re-iterable row sources.

The preparation pipeline reads its input twice (analysis pass, then encoding
pass) and the prediction pipeline may read it a third time when a filtered
request has to fall back to the whole dataset. A row source is therefore any
object whose ``__iter__`` starts a fresh pass and yields one mapping per row,
keyed by normalised column name.

Two implementations are provided:

  CsvRowSource    - streams a CSV file in pandas chunks, never holding more
                    than one chunk in memory.
  RecordRowSource - wraps an in-memory sequence of mappings (tests, callers
                    that already hold rows).

Usage:

    from risk_heatmap.data.sources import CsvRowSource

    source = CsvRowSource("data/raw/crimes.csv", column_map=column_map)
    for row in source:
        ...
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pandas as pd

from risk_heatmap.data.columns import ColumnMap, normalize_column_name, normalize_header
from risk_heatmap.errors import DatasetError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000


def _clean_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


class CsvRowSource:
    """
    Stream the rows of a CSV file as dictionaries keyed by normalised header.

    Every cell is read as a string (``dtype=str``) so that numeric parsing is
    left to the encoder, which knows how to treat blank and malformed values.
    Lines with more fields than the header are skipped.
    """

    def __init__(
        self,
        path: Path | str,
        column_map: ColumnMap | None = None,
        chunksize: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.path = Path(path)
        self.column_map = column_map
        self.chunksize = max(1, int(chunksize))

    def header(self) -> list[str]:
        """Read and normalise the header row without loading any data."""
        if not self.path.exists():
            raise DatasetError(f"Dataset file not found: {self.path.name}")
        try:
            frame = pd.read_csv(
                self.path, header=None, nrows=1, dtype=str, keep_default_na=False, encoding="utf-8-sig"
            )
        except pd.errors.EmptyDataError as exc:
            raise DatasetError(f"Dataset file is empty: {self.path.name}") from exc
        # Raw header cells: pandas would already have renamed duplicates.
        return normalize_header(frame.iloc[0].tolist())

    def validate(self) -> list[str]:
        """
        Check that the header carries every required column.

        Returns:
            The normalised header.

        Raises:
            DatasetError: If the file is missing, empty, or lacks a required column.
        """
        header = self.header()
        if self.column_map is not None:
            missing = self.column_map.missing_required(header)
            if missing:
                raise DatasetError(
                    f"Dataset is missing required columns: {', '.join(missing)}"
                )
        return header

    def __iter__(self) -> Iterator[dict[str, Any]]:
        header = self.validate()
        reader = pd.read_csv(
            self.path,
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            chunksize=self.chunksize,
            on_bad_lines="skip",
        )
        with reader:
            for chunk in reader:
                chunk.columns = header
                for record in chunk.to_dict("records"):
                    yield {key: _clean_cell(value) for key, value in record.items()}

    def __repr__(self) -> str:
        return f"CsvRowSource({str(self.path)!r})"


class RecordRowSource:
    """
    Re-iterable source over rows already held in memory.

    Keys are normalised on the way out, so records can use the same raw
    column names a CSV header would.
    """

    def __init__(self, records: Sequence[Mapping[str, Any]]) -> None:
        if iter(records) is records:
            raise TypeError(
                "RecordRowSource needs a re-iterable sequence, not a one-shot iterator"
            )
        self.records = records

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for record in self.records:
            if not isinstance(record, Mapping):
                logger.debug("Skipping non-mapping record of type %s", type(record).__name__)
                continue
            yield {
                normalize_column_name(str(key)): _clean_cell(value)
                for key, value in record.items()
            }

    def __len__(self) -> int:
        return len(self.records)
