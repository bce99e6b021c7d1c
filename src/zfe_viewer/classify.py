"""Four-band colour classification of index values for markers and legends."""
from __future__ import annotations

import math
from enum import Enum
from typing import Dict, List, Optional


class Bucket(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    VERY_HIGH = 'very_high'


BUCKET_COLORS: Dict[Bucket, str] = {
    Bucket.LOW: '#003DA5',
    Bucket.MEDIUM: '#66BB6A',
    Bucket.HIGH: '#FFA726',
    Bucket.VERY_HIGH: '#FF3D00',
}

LEGEND_ITEMS = [
    (Bucket.LOW, 'Faible (0-0.25)'),
    (Bucket.MEDIUM, 'Moyen (0.25-0.5)'),
    (Bucket.HIGH, 'Élevé (0.5-0.75)'),
    (Bucket.VERY_HIGH, 'Très élevé (0.75-1)'),
]


def classify(value: Optional[float]) -> Optional[Bucket]:
    # Bounds belong to the lower bucket: 0.25 is LOW, 0.5 MEDIUM, 0.75 HIGH.
    if value is None or isinstance(value, bool):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value):
        return None
    if value > 0.75:
        return Bucket.VERY_HIGH
    if value > 0.5:
        return Bucket.HIGH
    if value > 0.25:
        return Bucket.MEDIUM
    return Bucket.LOW


def bucket_color(value: Optional[float]) -> Optional[str]:
    bucket = classify(value)
    if bucket is None:
        return None
    return BUCKET_COLORS[bucket]


def legend() -> List[Dict[str, str]]:
    return [
        {'bucket': bucket.value, 'label': label, 'color': BUCKET_COLORS[bucket]}
        for bucket, label in LEGEND_ITEMS
    ]
