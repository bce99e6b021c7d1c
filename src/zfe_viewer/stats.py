"""Aggregates over the active working set: KPI cards, radar profile, index table, histogram."""
from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

import pandas as pd

from zfe_viewer.cells import (
    FIELD_KEYS,
    INDICES,
    NORMALIZED_INDEX_KEYS,
    VARIABLES,
    CellRecord,
)

HISTOGRAM_BINS = 10
EQUIPMENT_FIELDS = ('5_NBR_BORN', '6_NBR_ARRE', '4_NBR_ARCE', '7_LONG_PIS')


def active_working_set(all_cells: Sequence[CellRecord], selection: Sequence[CellRecord]) -> Sequence[CellRecord]:
    return selection if len(selection) > 0 else all_cells


def _numeric_values(working_set: Sequence[CellRecord], field: str) -> pd.Series:
    if field not in FIELD_KEYS:
        raise KeyError(f"Unknown cell field: {field}")
    values = [record.value(field) for record in working_set]
    return pd.Series([v for v in values if v is not None], dtype='float64')


def _mean(values: pd.Series) -> float:
    if values.empty:
        return 0.0
    return float(values.mean())


def summarize(working_set: Sequence[CellRecord], field: str) -> Dict[str, float]:
    """Count, mean and nearest-rank 90th percentile of ``field``.

    ``count`` is the size of the working set; mean and p90 only use records
    where the field is numeric. p90 is the sorted value at
    ``floor(0.9 * n)`` with ``n`` the number of numeric values.
    """
    values = _numeric_values(working_set, field)
    if values.empty:
        return {'count': len(working_set), 'mean': 0.0, 'p90': 0.0}
    ordered = values.sort_values(ignore_index=True)
    p90 = float(ordered.iloc[int(math.floor(0.9 * len(ordered)))])
    return {'count': len(working_set), 'mean': _mean(values), 'p90': p90}


def _strip_normalized(key: str) -> str:
    return key[:-2] if key.endswith('_n') else key


def radar_profile(
    working_set: Sequence[CellRecord],
    index_keys: Sequence[str] = NORMALIZED_INDEX_KEYS,
) -> List[Dict[str, float]]:
    return [
        {'label': _strip_normalized(key), 'value': _mean(_numeric_values(working_set, key))}
        for key in index_keys
    ]


def index_table(working_set: Sequence[CellRecord], selected_index: Optional[str] = None) -> List[Dict]:
    rows = []
    for entry in INDICES:
        rows.append(
            {
                'key': entry.key,
                'label': entry.label,
                'normalized': entry.normalized,
                'raw_mean': _mean(_numeric_values(working_set, entry.key)),
                'normalized_mean': _mean(_numeric_values(working_set, entry.normalized)),
                'active': entry.normalized == selected_index,
            }
        )
    return rows


def variable_means(working_set: Sequence[CellRecord]) -> List[Dict]:
    return [
        {
            'key': entry.key,
            'label': entry.label,
            'editable': entry.editable,
            'raw_mean': _mean(_numeric_values(working_set, entry.key)),
            'normalized_mean': _mean(_numeric_values(working_set, entry.normalized)),
        }
        for entry in VARIABLES
    ]


def field_total(working_set: Sequence[CellRecord], field: str) -> float:
    values = _numeric_values(working_set, field)
    return float(values.sum()) if not values.empty else 0.0


def equipment_totals(working_set: Sequence[CellRecord]) -> Dict[str, float]:
    return {key: field_total(working_set, key) for key in EQUIPMENT_FIELDS}


def histogram(working_set: Sequence[CellRecord], field: str, bin_count: int = HISTOGRAM_BINS) -> List[Dict[str, float]]:
    if bin_count < 1:
        raise ValueError(f"bin_count must be at least 1, got {bin_count}")
    values = _numeric_values(working_set, field)
    values = values[values.abs() != math.inf]
    if values.empty:
        return []
    low = float(values.min())
    high = float(values.max())
    width = (high - low) / bin_count
    counts = [0] * bin_count
    for value in values:
        idx = int(math.floor((value - low) / width)) if width else 0
        counts[min(idx, bin_count - 1)] += 1
    return [
        {'start': low + i * width, 'end': low + (i + 1) * width, 'count': count}
        for i, count in enumerate(counts)
    ]
