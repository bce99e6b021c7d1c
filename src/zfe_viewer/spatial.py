"""Pointer hit-testing and neighbourhood ("zone") selection over located cells."""
from __future__ import annotations

import math
from enum import Enum
from typing import Iterable, List, Optional, Protocol, Tuple

from zfe_viewer.cells import CellRecord, Location

HIT_RADIUS_PX = 10.0
# Planar distance in degrees, roughly 1 km around Grenoble; not geodesic.
ZONE_THRESHOLD_DEG = 0.01


class LocationProjector(Protocol):
    def project_location(self, location: Location) -> Tuple[float, float]:
        ...


class HitPolicy(Enum):
    FIRST = 'first'
    CLOSEST = 'closest'


def find_nearest(
    cursor: Tuple[float, float],
    points: Iterable[CellRecord],
    transform: LocationProjector,
    radius_px: float = HIT_RADIUS_PX,
    policy: HitPolicy = HitPolicy.FIRST,
) -> Optional[CellRecord]:
    """Return the cell under the cursor.

    With ``HitPolicy.FIRST`` the first cell in iteration order within
    ``radius_px`` wins; ``HitPolicy.CLOSEST`` returns the smallest distance,
    keeping the earlier cell on ties. Cells without a location never match.
    """
    best = None
    best_dist = math.inf
    for point in points:
        if point.location is None:
            continue
        x, y = transform.project_location(point.location)
        dist = math.hypot(cursor[0] - x, cursor[1] - y)
        if dist >= radius_px:
            continue
        if policy is HitPolicy.FIRST:
            return point
        if dist < best_dist:
            best = point
            best_dist = dist
    return best


def select_zone(
    anchor: CellRecord,
    all_points: Iterable[CellRecord],
    threshold_deg: float = ZONE_THRESHOLD_DEG,
) -> List[CellRecord]:
    if anchor.location is None:
        return []
    lat0, lng0 = anchor.location
    zone = []
    for point in all_points:
        if point.location is None:
            continue
        if math.hypot(point.location.lat - lat0, point.location.lng - lng0) < threshold_deg:
            zone.append(point)
    if not any(point is anchor for point in zone):
        zone.insert(0, anchor)
    return zone
