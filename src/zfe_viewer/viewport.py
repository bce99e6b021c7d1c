"""Screen transforms: bounding box to canvas, zoom/pan viewport, and slippy-map tiles."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from zfe_viewer.cells import Location

MIN_ZOOM = float(os.environ.get('ZFE_MIN_ZOOM', 0.5))
MAX_ZOOM = float(os.environ.get('ZFE_MAX_ZOOM', 3.0))
BOUNDS_MARGIN = 0.1
TILE_SIZE = 256

WHEEL_ZOOM_IN = 1.1
WHEEL_ZOOM_OUT = 0.9
BUTTON_ZOOM_IN = 1.2
BUTTON_ZOOM_OUT = 0.8

Point = Tuple[float, float]


@dataclass(frozen=True)
class Bounds:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def center(self) -> Location:
        return Location((self.min_lat + self.max_lat) / 2, (self.min_lng + self.max_lng) / 2)


def compute_bounds(locations: Iterable[Location], margin: float = BOUNDS_MARGIN) -> Optional[Bounds]:
    locations = list(locations)
    if not locations:
        return None
    lats = [loc.lat for loc in locations]
    lngs = [loc.lng for loc in locations]
    lat_pad = (max(lats) - min(lats)) * margin
    lng_pad = (max(lngs) - min(lngs)) * margin
    return Bounds(
        min_lat=min(lats) - lat_pad,
        max_lat=max(lats) + lat_pad,
        min_lng=min(lngs) - lng_pad,
        max_lng=max(lngs) + lng_pad,
    )


def world_position(location: Location, bounds: Bounds, width: float, height: float) -> Point:
    lng_span = bounds.max_lng - bounds.min_lng
    lat_span = bounds.max_lat - bounds.min_lat
    # A single row or column of cells has no extent on that axis; centre it.
    x = (location.lng - bounds.min_lng) / lng_span * width if lng_span else width / 2
    y = height - (location.lat - bounds.min_lat) / lat_span * height if lat_span else height / 2
    return x, y


class PannableTransform:
    """Pan bookkeeping shared by screen transforms.

    A drag gesture owns the pan from ``begin_drag`` to ``end_drag``; while it
    is held, ``pan_by`` refuses other writers.
    """

    _drag_last: Optional[Point] = None

    def _shift(self, dx: float, dy: float) -> None:
        raise NotImplementedError

    @property
    def dragging(self) -> bool:
        return self._drag_last is not None

    def pan_by(self, dx: float, dy: float) -> None:
        if self.dragging:
            raise RuntimeError('Pan is held by an active drag gesture')
        self._shift(dx, dy)

    def begin_drag(self, cursor: Point) -> None:
        self._drag_last = (float(cursor[0]), float(cursor[1]))

    def drag_to(self, cursor: Point) -> None:
        if self._drag_last is None:
            return
        last_x, last_y = self._drag_last
        self._shift(cursor[0] - last_x, cursor[1] - last_y)
        self._drag_last = (float(cursor[0]), float(cursor[1]))

    def end_drag(self) -> None:
        self._drag_last = None


class ViewportTransform(PannableTransform):
    """Zoom factor and pixel pan applied on top of world (canvas) coordinates."""

    def __init__(
        self,
        min_zoom: Optional[float] = None,
        max_zoom: Optional[float] = None,
        zoom: float = 1.0,
        pan: Point = (0.0, 0.0),
    ) -> None:
        if min_zoom is not None and max_zoom is not None and min_zoom > max_zoom:
            raise ValueError(f"min_zoom {min_zoom} is above max_zoom {max_zoom}")
        self.min_zoom = min_zoom
        self.max_zoom = max_zoom
        self.zoom = self._clamp(zoom)
        self.pan = (float(pan[0]), float(pan[1]))
        self._drag_last: Optional[Point] = None

    def _clamp(self, zoom: float) -> float:
        if self.min_zoom is not None:
            zoom = max(self.min_zoom, zoom)
        if self.max_zoom is not None:
            zoom = min(self.max_zoom, zoom)
        if not zoom > 0 or math.isinf(zoom):
            raise ValueError(f"Zoom must stay positive and finite, got {zoom}")
        return zoom

    def project(self, world_x: float, world_y: float) -> Point:
        return world_x * self.zoom + self.pan[0], world_y * self.zoom + self.pan[1]

    def unproject(self, screen_x: float, screen_y: float) -> Point:
        return (screen_x - self.pan[0]) / self.zoom, (screen_y - self.pan[1]) / self.zoom

    def zoom_at(self, factor: float, anchor: Optional[Point] = None) -> float:
        """Scale the zoom by ``factor``; with an anchor, keep the point under it fixed."""
        new_zoom = self._clamp(self.zoom * factor)
        if anchor is not None:
            world_x, world_y = self.unproject(*anchor)
            self.pan = (anchor[0] - world_x * new_zoom, anchor[1] - world_y * new_zoom)
        self.zoom = new_zoom
        return self.zoom

    def _shift(self, dx: float, dy: float) -> None:
        self.pan = (self.pan[0] + dx, self.pan[1] + dy)

    def reset(self) -> None:
        self._drag_last = None
        self.zoom = self._clamp(1.0)
        self.pan = (0.0, 0.0)

    def zoom_level(self) -> int:
        # Map-like level shown on the dashboard; rounds half up.
        return int(math.floor(8 + self.zoom * 4 + 0.5))


class CanvasProjection:
    """Location to screen pixels through the data bounds and a viewport."""

    def __init__(self, bounds: Bounds, viewport: ViewportTransform, width: float, height: float) -> None:
        self.bounds = bounds
        self.viewport = viewport
        self.width = width
        self.height = height

    def project_location(self, location: Location) -> Point:
        return self.viewport.project(*world_position(location, self.bounds, self.width, self.height))

    def zoom_level(self) -> int:
        return self.viewport.zoom_level()


class TileTransform(PannableTransform):
    """Web-Mercator pixel projection at an integer zoom level, as used by tile maps."""

    def __init__(
        self,
        center: Location,
        zoom: int = 12,
        width: float = 800,
        height: float = 600,
        min_level: int = 0,
        max_level: int = 19,
    ) -> None:
        self.min_level = min_level
        self.max_level = max_level
        self.level = max(min_level, min(max_level, int(zoom)))
        self.center = center
        self.width = width
        self.height = height
        self._home = (center, self.level)

    def _world_pixels(self, location: Location) -> Point:
        scale = TILE_SIZE * 2 ** self.level
        lat = max(-85.05112878, min(85.05112878, location.lat))
        sin_lat = math.sin(math.radians(lat))
        x = (location.lng + 180.0) / 360.0 * scale
        y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * scale
        return x, y

    def project_location(self, location: Location) -> Point:
        x, y = self._world_pixels(location)
        cx, cy = self._world_pixels(self.center)
        return x - cx + self.width / 2, y - cy + self.height / 2

    def unproject(self, screen_x: float, screen_y: float) -> Location:
        scale = TILE_SIZE * 2 ** self.level
        cx, cy = self._world_pixels(self.center)
        x = screen_x - self.width / 2 + cx
        y = screen_y - self.height / 2 + cy
        lng = x / scale * 360.0 - 180.0
        lat = math.degrees(math.atan(math.sinh(math.pi - 2 * math.pi * y / scale)))
        return Location(lat, lng)

    def zoom_at(self, factor: float, anchor: Optional[Point] = None) -> float:
        # Tile maps step whole levels; the anchor keeps the pointed location fixed.
        if not factor > 0:
            raise ValueError(f"Zoom factor must be positive, got {factor}")
        pinned = self.unproject(*anchor) if anchor is not None else None
        if factor > 1:
            self.level = min(self.max_level, self.level + 1)
        elif factor < 1:
            self.level = max(self.min_level, self.level - 1)
        if pinned is not None:
            x, y = self.project_location(pinned)
            self._shift(anchor[0] - x, anchor[1] - y)
        return float(self.level)

    def _shift(self, dx: float, dy: float) -> None:
        self.center = self.unproject(self.width / 2 - dx, self.height / 2 - dy)

    def reset(self) -> None:
        self._drag_last = None
        self.center, self.level = self._home

    def zoom_level(self) -> int:
        return self.level
