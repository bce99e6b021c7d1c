#!/usr/bin/env python3
"""Interactive matplotlib viewer for the grid-cell map and its dashboard charts."""
from __future__ import annotations

import argparse
import math
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import matplotlib
from matplotlib.axes import Axes
from matplotlib.collections import LineCollection
from matplotlib.patches import Circle, Rectangle

from zfe_viewer.cells import DATA_URL, DEFAULT_INDEX, DatasetLoader
from zfe_viewer.engine import BASEMAP_STYLES, Frame, MapEngine
from zfe_viewer.spatial import HitPolicy

_RGBA_RE = re.compile(r'rgba\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*,\s*([\d.]+)\s*\)')

Color = Union[str, Tuple[float, float, float, float]]


def _mpl_color(color: str) -> Color:
    match = _RGBA_RE.fullmatch(color.strip())
    if not match:
        return color
    r, g, b, a = match.groups()
    return int(r) / 255, int(g) / 255, int(b) / 255, float(a)


class CanvasRenderer:
    """Paint engine frames onto a matplotlib Axes whose data units are canvas pixels."""

    def __init__(self, ax: Axes) -> None:
        self.ax = ax
        self.engine: Optional[MapEngine] = None
        self._cids: List[int] = []
        self._charts: Optional[DashboardCharts] = None

    def draw(self, frame: Frame) -> None:
        ax = self.ax
        ax.clear()
        ax.set_xlim(0, frame.width)
        ax.set_ylim(frame.height, 0)
        ax.set_aspect('equal')
        ax.set_axis_off()
        ax.add_patch(Rectangle((0, 0), frame.width, frame.height, facecolor=frame.background, edgecolor='none', zorder=0))
        ax.add_collection(LineCollection(frame.grid_lines, colors=frame.grid_color, linewidths=0.5, zorder=1))
        ax.text(20, 30, frame.title, color=frame.text_color, fontsize=11, zorder=5)

        for marker in frame.markers:
            ax.add_patch(
                Circle(
                    (marker.x, marker.y),
                    marker.radius,
                    facecolor=marker.color,
                    edgecolor='#000000' if marker.outlined else 'none',
                    linewidth=2 if marker.outlined else 0,
                    zorder=3,
                )
            )

        legend = frame.legend
        if legend is not None:
            ax.add_patch(
                Rectangle(
                    (legend.x, legend.y),
                    legend.width,
                    legend.height,
                    facecolor=_mpl_color(legend.fill),
                    edgecolor=legend.edge,
                    linewidth=1,
                    zorder=6,
                )
            )
            ax.text(legend.x + 10, legend.y + 15, legend.title, color=legend.text_color, fontsize=9, zorder=7)
            for i, (color, label) in enumerate(legend.items):
                y = legend.y + 25 + i * 12
                ax.add_patch(Circle((legend.x + 15, y), 4, facecolor=color, edgecolor='none', zorder=7))
                ax.text(legend.x + 25, y + 3, label, color=legend.text_color, fontsize=7, zorder=7)

        tooltip = frame.tooltip
        if tooltip is not None:
            ax.text(
                tooltip.x,
                tooltip.y,
                '\n'.join(tooltip.lines),
                fontsize=8,
                va='bottom',
                ha='left',
                zorder=10,
                bbox=dict(facecolor='white', edgecolor='#d1d5db', alpha=0.95, pad=4),
            )

    def redraw(self) -> None:
        if self.engine is None:
            return
        self.draw(self.engine.frame())
        if self._charts is not None:
            self._charts.draw(self.engine)
        self.ax.figure.canvas.draw_idle()

    def connect(self, engine: MapEngine, charts: Optional[DashboardCharts] = None) -> None:
        """Route canvas events into the engine and redraw on every engine change."""
        self.engine = engine
        self._charts = charts
        canvas = self.ax.figure.canvas

        def _cursor(event) -> Optional[Tuple[float, float]]:
            if event.inaxes is not self.ax or event.xdata is None or event.ydata is None:
                return None
            return float(event.xdata), float(event.ydata)

        def on_scroll(event):
            cursor = _cursor(event)
            if cursor is None:
                return
            engine.wheel(-1.0 if event.button == 'up' else 1.0, cursor)

        def on_press(event):
            cursor = _cursor(event)
            if cursor is None or event.button != 1:
                return
            engine.press(cursor)

        def on_motion(event):
            cursor = _cursor(event)
            if cursor is None:
                return
            engine.move(cursor)

        def on_release(event):
            if event.button != 1:
                return
            engine.release(_cursor(event))

        def on_leave(_event):
            engine.leave()

        def on_resize(_event):
            bbox = self.ax.get_window_extent()
            engine.resize(bbox.width, bbox.height)

        def on_key(event):
            if event.key in ('+', '='):
                engine.zoom_in()
            elif event.key == '-':
                engine.zoom_out()
            elif event.key in ('0', 'home'):
                engine.reset_view()
            elif event.key == 'escape':
                engine.clear_selection()

        self._cids = [
            canvas.mpl_connect('scroll_event', on_scroll),
            canvas.mpl_connect('button_press_event', on_press),
            canvas.mpl_connect('motion_notify_event', on_motion),
            canvas.mpl_connect('button_release_event', on_release),
            canvas.mpl_connect('figure_leave_event', on_leave),
            canvas.mpl_connect('key_press_event', on_key),
            canvas.mpl_connect('resize_event', on_resize),
        ]
        engine.on_render(self.redraw)
        self.redraw()

    def disconnect(self) -> None:
        canvas = self.ax.figure.canvas
        for cid in self._cids:
            canvas.mpl_disconnect(cid)
        self._cids = []

    def save(self, path: Path, dpi: int = 100) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self.ax.figure.savefig(path, dpi=dpi)


def draw_radar(ax: Axes, profile: Sequence[Dict[str, float]]) -> None:
    """Radar of the normalized index means; ``ax`` must be a polar Axes."""
    ax.clear()
    if not profile:
        return
    count = len(profile)
    # First axis points up and the profile runs clockwise.
    angles = [math.pi / 2 - i * 2 * math.pi / count for i in range(count)]
    values = [min(max(entry['value'], 0.0), 1.0) for entry in profile]
    ax.set_ylim(0, 1)
    ax.set_yticks([0.2, 0.4, 0.6, 0.8, 1.0])
    ax.set_yticklabels([])
    ax.set_xticks(angles)
    ax.set_xticklabels([entry['label'] for entry in profile], fontsize=7)
    closed_angles = angles + angles[:1]
    closed_values = values + values[:1]
    ax.plot(closed_angles, closed_values, color='#003DA5', linewidth=2)
    ax.fill(closed_angles, closed_values, color=(0, 61 / 255, 165 / 255, 0.2))


def draw_histogram(ax: Axes, bins: Sequence[Dict[str, float]], label: str = '') -> None:
    ax.clear()
    if not bins:
        return
    starts = [entry['start'] for entry in bins]
    widths = [(entry['end'] - entry['start']) or 1.0 for entry in bins]
    counts = [entry['count'] for entry in bins]
    ax.bar(starts, counts, width=[w * 0.9 for w in widths], align='edge', color='#003DA5')
    ax.spines['top'].set_visible(False)
    ax.spines['right'].set_visible(False)
    ax.tick_params(labelsize=7)
    if label:
        ax.set_title(label, fontsize=8)


class DashboardCharts:
    """KPI text, radar and histogram axes beside the map."""

    def __init__(self, kpi_ax: Axes, radar_ax: Axes, hist_ax: Axes) -> None:
        self.kpi_ax = kpi_ax
        self.radar_ax = radar_ax
        self.hist_ax = hist_ax

    def draw(self, engine: MapEngine) -> None:
        snapshot = engine.dashboard()
        summary = snapshot['summary']
        self.kpi_ax.clear()
        self.kpi_ax.set_axis_off()
        lines = [
            f"Niveau de zoom : {snapshot['zoom_level']}",
            f"Nombre de carreaux : {summary['count']}",
            f"Moyenne {snapshot['index']} : {summary['mean']:.3f}",
            f"Percentile 90 : {summary['p90']:.3f}",
        ]
        if snapshot['selection_size']:
            lines.append(f"Zone sélectionnée : {snapshot['selection_size']} carreaux")
        self.kpi_ax.text(0, 1, '\n'.join(lines), va='top', fontsize=9, transform=self.kpi_ax.transAxes)
        draw_radar(self.radar_ax, snapshot['radar'])
        draw_histogram(self.hist_ax, snapshot['histogram'], label=f"Distribution {snapshot['index']}")


def _show_load_error(plt, loader: DatasetLoader):
    fig = plt.figure(figsize=(8, 3))
    fig.text(0.5, 0.6, 'Erreur de chargement', ha='center', color='#ef4444', fontsize=14)
    fig.text(0.5, 0.45, loader.error or '', ha='center', fontsize=8, wrap=True)
    fig.text(0.5, 0.25, 'Appuyez sur "r" pour recharger', ha='center', fontsize=9)

    def on_key(event):
        if event.key == 'r' and loader.reload() is not None:
            plt.close(fig)

    fig.canvas.mpl_connect('key_press_event', on_key)
    plt.show()


def build_figure(plt, engine: MapEngine):
    fig = plt.figure(figsize=(13, 7))
    grid = fig.add_gridspec(3, 2, width_ratios=[3, 1])
    map_ax = fig.add_subplot(grid[:, 0])
    kpi_ax = fig.add_subplot(grid[0, 1])
    radar_ax = fig.add_subplot(grid[1, 1], projection='polar')
    hist_ax = fig.add_subplot(grid[2, 1])
    bbox = map_ax.get_window_extent()
    engine.resize(bbox.width, bbox.height)
    renderer = CanvasRenderer(map_ax)
    renderer.connect(engine, DashboardCharts(kpi_ax, radar_ax, hist_ax))
    return fig, renderer


def main() -> None:
    parser = argparse.ArgumentParser(description='Explore the 200m cell grid: wheel to zoom, drag to pan, click to select a zone.')
    parser.add_argument('--source', default=DATA_URL, help='URL or path of the cell CSV')
    parser.add_argument('--index', default=DEFAULT_INDEX, help='Index column used to colour cells')
    parser.add_argument('--basemap', default='osm', choices=sorted(BASEMAP_STYLES))
    parser.add_argument('--hit-policy', default=HitPolicy.FIRST.value, choices=[p.value for p in HitPolicy])
    parser.add_argument('--zoom-about-cursor', action='store_true', help='Keep the point under the cursor fixed when zooming')
    parser.add_argument('--png', type=Path, help='Render once to this PNG instead of opening a window')
    args = parser.parse_args()

    if args.png:
        matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    loader = DatasetLoader(args.source)
    cells = loader.load()
    if cells is None and not args.png:
        _show_load_error(plt, loader)
        cells = loader.cells
    if cells is None:
        print(f"Load failed: {loader.error}", file=sys.stderr)
        sys.exit(1)
    print(f"Loaded {len(cells)} cells ({len(cells.located())} located)")

    try:
        engine = MapEngine(
            cells,
            index_key=args.index,
            basemap=args.basemap,
            hit_policy=HitPolicy(args.hit_policy),
            zoom_about_cursor=args.zoom_about_cursor,
        )
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    engine.on_zoom_change(lambda level: print(f"Zoom level {level}"))
    fig, renderer = build_figure(plt, engine)
    if args.png:
        renderer.save(args.png)
        print(f"✔️  Wrote {args.png}")
        return
    plt.show()


if __name__ == '__main__':
    main()
