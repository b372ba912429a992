"""
Column-name normalisation and logical column mapping.

Physical column names in uploaded datasets vary wildly ("Crime Type",
"crime-type", "\\ufeffTimestamp"). Every name is normalised to a lowercase
snake_case form before it is matched, both in the dataset header and in the
schema mapping supplied by the caller.

Usage:

    from risk_heatmap.data.columns import ColumnMap, normalize_header

    column_map = ColumnMap.from_mapping({"category": "Crime Type", "label": "Outcome"})
    header = normalize_header(["Timestamp", "Latitude", "Longitude", "Crime Type"])
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

REQUIRED_COLUMNS: tuple[str, ...] = ("timestamp", "latitude", "longitude", "category")

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_UNDERSCORES = re.compile(r"_+")


def normalize_column_name(column: str) -> str:
    """
    Normalise a raw column name to lowercase snake_case.

    Strips a leading UTF-8 BOM and surrounding whitespace, lower-cases,
    turns hyphens and slashes into spaces, collapses every run of
    non-alphanumeric characters into a single underscore and trims
    underscores from both ends. Returns "" for a blank name.
    """
    column = column.lstrip("\ufeff").strip()
    if not column:
        return ""
    column = column.lower().replace("-", " ").replace("/", " ")
    column = _NON_ALNUM.sub("_", column)
    column = _UNDERSCORES.sub("_", column)
    return column.strip("_")


def normalize_header(header: Iterable[Any]) -> list[str]:
    """
    Normalise a header row, making duplicate names unique.

    The second occurrence of a name becomes ``<name>_2``, the third
    ``<name>_3`` and so on. Blank names become ``column_<position>``.
    """
    seen: dict[str, int] = {}
    result: list[str] = []
    for position, raw in enumerate(header, start=1):
        name = normalize_column_name("" if raw is None else str(raw))
        if not name:
            name = f"column_{position}"
        count = seen.get(name, 0) + 1
        seen[name] = count
        result.append(name if count == 1 else f"{name}_{count}")
    return result


def _resolve_mapped_column(mapping: Mapping[str, Any], key: str, default: str) -> str:
    value = mapping.get(key, default)
    if not isinstance(value, str) or not value.strip():
        value = default
    return normalize_column_name(value) or normalize_column_name(default) or default


@dataclass(frozen=True)
class ColumnMap:
    """Logical field name -> normalised physical column name for one dataset."""

    timestamp: str = "timestamp"
    latitude: str = "latitude"
    longitude: str = "longitude"
    category: str = "category"
    risk_score: str = "risk_score"
    label: str = "label"

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None = None) -> "ColumnMap":
        """
        Resolve a column map from a user-supplied schema mapping.

        The mapping uses the keys timestamp, latitude, longitude, category,
        risk (``risk_score`` is accepted as an alias) and label. Missing,
        non-string or blank entries fall back to the logical name itself.
        """
        mapping = dict(mapping or {})
        if "risk" not in mapping and "risk_score" in mapping:
            mapping["risk"] = mapping["risk_score"]
        return cls(
            timestamp=_resolve_mapped_column(mapping, "timestamp", "timestamp"),
            latitude=_resolve_mapped_column(mapping, "latitude", "latitude"),
            longitude=_resolve_mapped_column(mapping, "longitude", "longitude"),
            category=_resolve_mapped_column(mapping, "category", "category"),
            risk_score=_resolve_mapped_column(mapping, "risk", "risk_score"),
            label=_resolve_mapped_column(mapping, "label", "label"),
        )

    def required(self) -> tuple[str, ...]:
        """Physical names of the columns every dataset must provide."""
        return tuple(getattr(self, field) for field in REQUIRED_COLUMNS)

    def missing_required(self, header: Iterable[str]) -> list[str]:
        """Required physical columns absent from an already normalised header."""
        present = set(header)
        return [name for name in self.required() if name not in present]

    def to_dict(self) -> dict[str, str]:
        return asdict(self)
