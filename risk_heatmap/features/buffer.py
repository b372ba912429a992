"""
Disk-spillable buffer of encoded rows and the label-threshold policy.

The buffer is written once by the encoding pass and then read any number of
times (statistics pass, split, grid search). Rows are kept as JSON lines in a
``tempfile.SpooledTemporaryFile``: they stay in memory up to the spill
threshold (256 KiB by default) and move to an anonymous temporary file
beyond it, so dataset size is bounded by disk rather than by heap.

Labels are resolved on the way out. Rows with an explicit label keep it
(any value > 0 is positive). When at least one row has no explicit label, a
risk threshold is chosen from a 101-bin histogram of every row's risk at the
75th percentile, and unlabelled rows at or above it (and above zero) become
positive. If the dataset would still have no positive row at all, the first
row carrying the maximum observed risk is forced positive so that training
always sees both classes.

Usage:

    with StreamingRowBuffer() as buffer:
        for row in encoded_rows:
            buffer.append(row)
        buffer.seal()
        for item in buffer:
            item.features, item.label
"""

from __future__ import annotations

import gc
import json
import logging
import math
import tempfile
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any

import pandas as pd

from risk_heatmap.features.encoding import EncodedRow

logger = logging.getLogger(__name__)

SPILL_THRESHOLD_BYTES = 262_144
ITERATION_GC_INTERVAL = 10_000
LABEL_PERCENTILE = 0.75
HISTOGRAM_BINS = 101
# Any threshold above 1.0 means "never generate a positive label".
NO_THRESHOLD = 1.1
_FORCE_TOLERANCE = 1e-9


def determine_risk_threshold(
    histogram: Sequence[int],
    total: int,
    percentile: float = LABEL_PERCENTILE,
) -> float:
    """
    Risk cutoff at the given percentile of a 101-bin risk histogram.

    Returns NO_THRESHOLD when fewer than two bins are populated, since a
    single risk level cannot be split into two classes.
    """
    active = sum(1 for count in histogram if count > 0)
    if active <= 1 or total <= 0:
        return NO_THRESHOLD

    target_rank = math.floor(percentile * max(total - 1, 0)) + 1
    cumulative = 0
    for bin_index, count in enumerate(histogram):
        cumulative += count
        if cumulative >= target_rank:
            return bin_index / 100
    return 0.0


@dataclass(frozen=True)
class LabelPolicy:
    """How a buffered row's binary label is derived from its raw label and risk."""

    threshold: float = NO_THRESHOLD
    max_risk: float = 0.0
    force_max_risk_positive: bool = False

    def resolve(self, raw_label: Any, risk: float) -> int:
        if raw_label is not None:
            try:
                return 1 if float(raw_label) > 0 else 0
            except (TypeError, ValueError):
                pass
        if self.threshold > 1.0:
            return 0
        return 1 if risk >= self.threshold and risk > 0.0 else 0


@dataclass
class BufferedRow:
    features: list[float]
    label: int
    risk: float
    timestamp: pd.Timestamp | None = None


class StreamingRowBuffer:
    """
    Append-only, then read-many, disk-spillable sequence of encoded rows.

    Every call to ``iter()`` starts an independent read with its own file
    offset, so nested or repeated passes never disturb each other.
    """

    def __init__(
        self,
        include_timestamps: bool = True,
        spill_threshold: int = SPILL_THRESHOLD_BYTES,
        gc_interval: int = ITERATION_GC_INTERVAL,
        label_percentile: float = LABEL_PERCENTILE,
    ) -> None:
        self.include_timestamps = include_timestamps
        self.spill_threshold = int(spill_threshold)
        self.gc_interval = max(1, int(gc_interval))
        self.label_percentile = label_percentile
        self._file = tempfile.SpooledTemporaryFile(max_size=self.spill_threshold, mode="w+b")
        self._bytes_written = 0
        self._row_count = 0
        self._histogram = [0] * HISTOGRAM_BINS
        self._max_risk = 0.0
        self._raw_positive = 0
        self._needs_generated = False
        self._generated_positive = 0
        self._policy: LabelPolicy | None = None

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(self, row: EncodedRow) -> None:
        if self._policy is not None:
            raise RuntimeError("Cannot append to a sealed buffer")

        risk = max(0.0, min(1.0, float(row.risk)))
        self._max_risk = max(self._max_risk, risk)
        self._histogram[max(0, min(HISTOGRAM_BINS - 1, math.floor(risk * 100)))] += 1

        if row.raw_label is None:
            self._needs_generated = True
        elif row.raw_label > 0:
            self._raw_positive += 1

        payload: dict[str, Any] = {
            "features": [float(v) for v in row.features],
            "risk": risk,
            "raw_label": row.raw_label,
        }
        if self.include_timestamps and row.timestamp is not None:
            payload["timestamp"] = row.timestamp.isoformat()

        line = (json.dumps(payload) + "\n").encode("utf-8")
        self._file.seek(0, 2)
        self._file.write(line)
        self._bytes_written += len(line)
        self._row_count += 1

    def seal(self) -> LabelPolicy:
        """
        Freeze the buffer and derive its label policy.

        Idempotent: sealing twice returns the same policy.
        """
        if self._policy is not None:
            return self._policy

        if self._row_count == 0:
            self._policy = LabelPolicy(NO_THRESHOLD, self._max_risk, False)
            return self._policy

        threshold = (
            determine_risk_threshold(self._histogram, self._row_count, self.label_percentile)
            if self._needs_generated
            else NO_THRESHOLD
        )

        if self._needs_generated and threshold <= 1.0:
            self._generated_positive = self._count_generated_positives(threshold)

        total_positive = self._raw_positive + self._generated_positive
        force = total_positive == 0 and self._max_risk > 0.0
        self._policy = LabelPolicy(threshold, self._max_risk, force)

        logger.info(
            "Buffer sealed: %d rows, threshold=%.2f, positives=%d raw + %d generated%s",
            self._row_count,
            threshold,
            self._raw_positive,
            self._generated_positive,
            ", forcing max-risk row positive" if force else "",
        )
        return self._policy

    def _count_generated_positives(self, threshold: float) -> int:
        positive = 0
        for payload in self._read_payloads():
            if payload.get("raw_label") is not None:
                continue
            risk = float(payload["risk"])
            if risk >= threshold and risk > 0.0:
                positive += 1
        return positive

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read_payloads(self) -> Iterator[dict[str, Any]]:
        offset = 0
        processed = 0
        while True:
            self._file.seek(offset)
            line = self._file.readline()
            if not line:
                return
            offset = self._file.tell()
            line = line.strip()
            if not line:
                continue
            payload = json.loads(line)
            if not isinstance(payload, dict) or "features" not in payload or "risk" not in payload:
                continue
            yield payload
            processed += 1
            if processed % self.gc_interval == 0:
                collected = gc.collect()
                logger.debug("Buffer read %d rows, collected %d objects", processed, collected)

    def __iter__(self) -> Iterator[BufferedRow]:
        if self._policy is None:
            raise RuntimeError("Buffer must be sealed before it can be read")

        policy = self._policy
        forced = False
        for payload in self._read_payloads():
            risk = float(payload["risk"])
            label = policy.resolve(payload.get("raw_label"), risk)
            if policy.force_max_risk_positive and not forced and abs(risk - policy.max_risk) < _FORCE_TOLERANCE:
                label = 1
                forced = True

            timestamp = None
            if self.include_timestamps and isinstance(payload.get("timestamp"), str):
                timestamp = pd.Timestamp(payload["timestamp"])

            yield BufferedRow(
                features=[float(v) for v in payload["features"]],
                label=label,
                risk=risk,
                timestamp=timestamp,
            )

    def __len__(self) -> int:
        return self._row_count

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def sealed(self) -> bool:
        return self._policy is not None

    @property
    def label_policy(self) -> LabelPolicy | None:
        return self._policy

    @property
    def spilled(self) -> bool:
        """True once the buffered rows no longer fit under the spill threshold."""
        return self._bytes_written > self.spill_threshold

    @property
    def generated_labels(self) -> bool:
        """True when at least one label is derived from the risk threshold."""
        return self._needs_generated and self._policy is not None and self._policy.threshold <= 1.0

    @property
    def positive_count(self) -> int:
        forced = 1 if self._policy is not None and self._policy.force_max_risk_positive else 0
        return self._raw_positive + self._generated_positive + forced

    @property
    def max_risk(self) -> float:
        return self._max_risk

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "StreamingRowBuffer":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
