"""Map engine: owns cells, viewport and hover/selection state and derives each frame."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from zfe_viewer import stats
from zfe_viewer.cells import (
    DEFAULT_INDEX,
    FIELD_KEYS,
    CellCollection,
    CellRecord,
    apply_variable_edit,
)
from zfe_viewer.classify import BUCKET_COLORS, LEGEND_ITEMS, classify
from zfe_viewer.spatial import HIT_RADIUS_PX, HitPolicy, find_nearest, select_zone
from zfe_viewer.viewport import (
    BUTTON_ZOOM_IN,
    BUTTON_ZOOM_OUT,
    MAX_ZOOM,
    MIN_ZOOM,
    WHEEL_ZOOM_IN,
    WHEEL_ZOOM_OUT,
    CanvasProjection,
    TileTransform,
    ViewportTransform,
    compute_bounds,
)

TITLE = 'Zone à Faibles Émissions - Grenoble Métropole'
MARKER_RADIUS = 6
HOVER_RADIUS = 8
CULL_MARGIN_PX = 20
GRID_DIVISIONS = 10
# Pointer travel below this between press and release counts as a click.
CLICK_TOLERANCE_PX = 3.0

BASEMAP_STYLES: Dict[str, Dict[str, str]] = {
    'osm': {'background': '#ffffff', 'grid': '#e5e7eb'},
    'esri': {'background': '#f8f9fa', 'grid': '#dee2e6'},
    'satellite': {'background': '#2d3748', 'grid': '#4a5568'},
    'topo': {'background': '#f7fafc', 'grid': '#e2e8f0'},
}

Point = Tuple[float, float]
Transform = Union[ViewportTransform, TileTransform]


@dataclass(frozen=True)
class Marker:
    cell_id: str
    x: float
    y: float
    radius: float
    color: str
    outlined: bool = False


@dataclass(frozen=True)
class LegendPanel:
    x: float
    y: float
    width: float
    height: float
    fill: str
    edge: str
    text_color: str
    title: str
    items: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class Tooltip:
    x: float
    y: float
    lines: Tuple[str, ...]


@dataclass(frozen=True)
class Frame:
    width: float
    height: float
    background: str
    grid_color: str
    text_color: str
    title: str
    grid_lines: Tuple[Tuple[Point, Point], ...] = ()
    markers: Tuple[Marker, ...] = ()
    legend: Optional[LegendPanel] = None
    tooltip: Optional[Tooltip] = None


def _fmt(value: Optional[float], decimals: int) -> str:
    if value is None:
        return 'n/a'
    return f"{value:.{decimals}f}"


class MapEngine:
    """Interactive state of the cell map.

    Every change (cells, index, basemap, viewport, hover, selection) triggers
    a full recompute: listeners registered with :meth:`on_render` are called
    and are expected to redraw from :meth:`frame`.
    """

    def __init__(
        self,
        cells: Optional[CellCollection] = None,
        index_key: str = DEFAULT_INDEX,
        basemap: str = 'osm',
        width: float = 800,
        height: float = 600,
        transform: Optional[Transform] = None,
        hit_policy: HitPolicy = HitPolicy.FIRST,
        hit_radius_px: float = HIT_RADIUS_PX,
        zoom_about_cursor: bool = False,
    ) -> None:
        self.cells = cells if cells is not None else CellCollection()
        self.index_key = self._check_index(index_key)
        self.basemap = self._check_basemap(basemap)
        self.width = width
        self.height = height
        self.transform = transform if transform is not None else ViewportTransform(MIN_ZOOM, MAX_ZOOM)
        self.hit_policy = hit_policy
        self.hit_radius_px = hit_radius_px
        self.zoom_about_cursor = zoom_about_cursor
        self.edit_mode = False
        self.hovered_id: Optional[str] = None
        self.selected_id: Optional[str] = None
        self.cursor: Optional[Point] = None
        self._zone_ids: Tuple[str, ...] = ()
        self._press_at: Optional[Point] = None
        self._render_listeners: List[Callable[[], None]] = []
        self._zoom_listeners: List[Callable[[int], None]] = []
        self._selection_listeners: List[Callable[[Sequence[CellRecord]], None]] = []
        self._hover_listeners: List[Callable[[Optional[CellRecord]], None]] = []

    @staticmethod
    def _check_index(key: str) -> str:
        if key not in FIELD_KEYS:
            raise ValueError(f"Unknown index key: {key}")
        return key

    @staticmethod
    def _check_basemap(style: str) -> str:
        if style not in BASEMAP_STYLES:
            raise ValueError(f"Unknown basemap {style!r}. Available: {', '.join(BASEMAP_STYLES)}")
        return style

    # ---- notifications -------------------------------------------------------------------

    def on_render(self, callback: Callable[[], None]) -> None:
        self._render_listeners.append(callback)

    def on_zoom_change(self, callback: Callable[[int], None]) -> None:
        self._zoom_listeners.append(callback)
        callback(self.zoom_level)

    def on_selection_change(self, callback: Callable[[Sequence[CellRecord]], None]) -> None:
        self._selection_listeners.append(callback)

    def on_hover_change(self, callback: Callable[[Optional[CellRecord]], None]) -> None:
        self._hover_listeners.append(callback)

    def _invalidate(self) -> None:
        for callback in self._render_listeners:
            callback()

    def _notify_zoom(self, before: int) -> None:
        level = self.zoom_level
        if level != before:
            for callback in self._zoom_listeners:
                callback(level)

    def _notify_selection(self) -> None:
        working_set = self.working_set
        for callback in self._selection_listeners:
            callback(working_set)

    def _set_hover(self, record: Optional[CellRecord]) -> None:
        cell_id = record.cell_id if record is not None else None
        if cell_id == self.hovered_id:
            return
        self.hovered_id = cell_id
        for callback in self._hover_listeners:
            callback(record)

    # ---- state ---------------------------------------------------------------------------

    @property
    def zoom_level(self) -> int:
        return self.transform.zoom_level()

    @property
    def hovered(self) -> Optional[CellRecord]:
        return self.cells.by_id(self.hovered_id)

    @property
    def selected(self) -> Optional[CellRecord]:
        return self.cells.by_id(self.selected_id)

    @property
    def selection(self) -> List[CellRecord]:
        if not self._zone_ids:
            return []
        wanted = set(self._zone_ids)
        return [record for record in self.cells if record.cell_id in wanted]

    @property
    def working_set(self) -> Sequence[CellRecord]:
        return stats.active_working_set(self.cells, self.selection)

    def set_cells(self, cells: CellCollection) -> None:
        # Hover and selection are ids, so they re-resolve against the new cells.
        self.cells = cells
        self._invalidate()

    def set_index(self, key: str) -> None:
        self.index_key = self._check_index(key)
        self._invalidate()

    def set_basemap(self, style: str) -> None:
        self.basemap = self._check_basemap(style)
        self._invalidate()

    def resize(self, width: float, height: float) -> None:
        self.width = width
        self.height = height
        if isinstance(self.transform, TileTransform):
            self.transform.width = width
            self.transform.height = height
        self._invalidate()

    def set_edit_mode(self, enabled: bool) -> None:
        self.edit_mode = enabled
        if enabled:
            self.transform.end_drag()
            self._press_at = None
        self._invalidate()

    def edit_variable(self, key: str, value: float) -> None:
        if not self.edit_mode:
            raise RuntimeError('Variables can only be edited in edit mode')
        self.set_cells(apply_variable_edit(self.cells, key, value))

    def clear_selection(self) -> None:
        self.selected_id = None
        self._zone_ids = ()
        self._notify_selection()
        self._invalidate()

    # ---- projection and hit-testing ------------------------------------------------------

    def projection(self):
        if isinstance(self.transform, TileTransform):
            return self.transform
        bounds = compute_bounds(record.location for record in self.cells.located())
        if bounds is None:
            return None
        return CanvasProjection(bounds, self.transform, self.width, self.height)

    def hit_test(self, cursor: Point) -> Optional[CellRecord]:
        projection = self.projection()
        if projection is None:
            return None
        return find_nearest(
            cursor,
            self.cells.located(),
            projection,
            radius_px=self.hit_radius_px,
            policy=self.hit_policy,
        )

    # ---- gestures ------------------------------------------------------------------------

    def _zoom(self, factor: float, anchor: Optional[Point] = None) -> None:
        before = self.zoom_level
        self.transform.zoom_at(factor, anchor)
        self._notify_zoom(before)
        self._invalidate()

    def wheel(self, delta_y: float, cursor: Optional[Point] = None) -> None:
        if self.edit_mode:
            return
        factor = WHEEL_ZOOM_OUT if delta_y > 0 else WHEEL_ZOOM_IN
        self._zoom(factor, cursor if self.zoom_about_cursor else None)

    def zoom_in(self) -> None:
        if self.edit_mode:
            return
        self._zoom(BUTTON_ZOOM_IN)

    def zoom_out(self) -> None:
        if self.edit_mode:
            return
        self._zoom(BUTTON_ZOOM_OUT)

    def reset_view(self) -> None:
        if self.edit_mode:
            return
        before = self.zoom_level
        self.transform.reset()
        self._notify_zoom(before)
        self._invalidate()

    def press(self, cursor: Point) -> None:
        if self.edit_mode:
            return
        self._press_at = cursor
        self.transform.begin_drag(cursor)

    def move(self, cursor: Point) -> None:
        if self.edit_mode:
            return
        self.cursor = cursor
        if self.transform.dragging:
            self.transform.drag_to(cursor)
            self._invalidate()
            return
        self._set_hover(self.hit_test(cursor))
        self._invalidate()

    def release(self, cursor: Optional[Point] = None) -> None:
        if self.edit_mode:
            return
        pressed = self._press_at
        self._press_at = None
        self.transform.end_drag()
        if pressed is None or cursor is None:
            return
        if math.hypot(cursor[0] - pressed[0], cursor[1] - pressed[1]) < CLICK_TOLERANCE_PX:
            self.click(cursor)

    def leave(self) -> None:
        self._press_at = None
        self.transform.end_drag()

    def click(self, cursor: Point) -> None:
        """Select the zone around the hovered cell, or clear the selection on a miss."""
        if self.edit_mode:
            return
        anchor = self.hovered or self.hit_test(cursor)
        if anchor is None:
            self.clear_selection()
            return
        self.selected_id = anchor.cell_id
        zone = select_zone(anchor, self.cells)
        self._zone_ids = tuple(record.cell_id for record in zone)
        self._notify_selection()
        self._invalidate()

    # ---- derived output ------------------------------------------------------------------

    def frame(self) -> Frame:
        style = BASEMAP_STYLES[self.basemap]
        dark = self.basemap == 'satellite'
        text_color = '#ffffff' if dark else '#374151'
        width, height = self.width, self.height

        grid_lines = []
        for i in range(GRID_DIVISIONS + 1):
            x = width / GRID_DIVISIONS * i
            y = height / GRID_DIVISIONS * i
            grid_lines.append(((x, 0.0), (x, height)))
            grid_lines.append(((0.0, y), (width, y)))

        markers = []
        projection = self.projection()
        if projection is not None:
            for record in self.cells.located():
                bucket = classify(record.value(self.index_key))
                if bucket is None:
                    continue
                x, y = projection.project_location(record.location)
                if (
                    x < -CULL_MARGIN_PX
                    or x > width + CULL_MARGIN_PX
                    or y < -CULL_MARGIN_PX
                    or y > height + CULL_MARGIN_PX
                ):
                    continue
                markers.append(
                    Marker(
                        cell_id=record.cell_id,
                        x=x,
                        y=y,
                        radius=HOVER_RADIUS if record.cell_id == self.hovered_id else MARKER_RADIUS,
                        color=BUCKET_COLORS[bucket],
                        outlined=record.cell_id == self.selected_id,
                    )
                )

        legend_y = height - 80
        legend = LegendPanel(
            x=20,
            y=legend_y - 10,
            width=200,
            height=70,
            fill='rgba(45, 55, 72, 0.9)' if dark else 'rgba(255, 255, 255, 0.9)',
            edge='#718096' if dark else '#d1d5db',
            text_color=text_color,
            title='Légende',
            items=tuple((BUCKET_COLORS[bucket], label) for bucket, label in LEGEND_ITEMS),
        )

        tooltip = None
        hovered = self.hovered
        if hovered is not None and self.cursor is not None:
            tooltip = Tooltip(self.cursor[0] + 10, self.cursor[1] - 10, tuple(self.tooltip(hovered)))

        return Frame(
            width=width,
            height=height,
            background=style['background'],
            grid_color=style['grid'],
            text_color=text_color,
            title=TITLE,
            grid_lines=tuple(grid_lines),
            markers=tuple(markers),
            legend=legend,
            tooltip=tooltip,
        )

    def tooltip(self, record: CellRecord) -> List[str]:
        location = record.location
        coords = f"{location.lat:.4f}, {location.lng:.4f}" if location else 'n/a'
        return [
            f"Carreau {record.cell_id}",
            f"{self.index_key}: {_fmt(record.value(self.index_key), 3)}",
            f"Ménages: {_fmt(record.value('men'), 1)}",
            f"Individus: {_fmt(record.value('ind'), 0)}",
            f"Ménages précaires: {_fmt(record.value('men_pauv'), 1)}",
            f"Coordonnées: {coords}",
        ]

    def dashboard(self) -> Dict:
        working_set = self.working_set
        return {
            'zoom_level': self.zoom_level,
            'index': self.index_key,
            'selection_size': len(self.selection),
            'summary': stats.summarize(working_set, self.index_key),
            'radar': stats.radar_profile(working_set),
            'indices': stats.index_table(working_set, self.index_key),
            'histogram': stats.histogram(working_set, self.index_key),
            'variables': stats.variable_means(self.cells),
            'precarious_households': stats.field_total(self.cells, 'men_pauv'),
            'equipment': stats.equipment_totals(self.cells),
        }
