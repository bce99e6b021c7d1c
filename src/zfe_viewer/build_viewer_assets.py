#!/usr/bin/env python3
"""Generate the tile-map viewer assets (data + HTML) from the grid-cell layer."""
from __future__ import annotations

import argparse
import json
import math
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from zfe_viewer.cells import (
    DATA_URL,
    DEFAULT_INDEX,
    INDICES,
    CellCollection,
    LoadFailure,
    cells_to_frame,
    load_cells,
)
from zfe_viewer.classify import bucket_color, legend
from zfe_viewer.engine import TITLE, MapEngine
from zfe_viewer.spatial import ZONE_THRESHOLD_DEG
from zfe_viewer.viewport import TileTransform, compute_bounds

OUTPUT_DIR = Path(os.environ.get('ZFE_VIEWER_OUTPUT', Path.cwd() / 'zfe_viewer'))
TILE_URL = os.environ.get('ZFE_TILE_URL', 'https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png')
TILE_ATTRIBUTION = '&copy; OpenStreetMap contributors'
INITIAL_TILE_ZOOM = 13


def _display_path(path: Path) -> Path:
    try:
        return path.relative_to(Path.cwd())
    except ValueError:
        return path


def _clean(value: Optional[float]) -> Optional[float]:
    if value is None or math.isnan(value):
        return None
    return float(value)


def _index_label(index_key: str) -> str:
    for entry in INDICES:
        if index_key in (entry.key, entry.normalized):
            return entry.label
    return index_key


def _cell_points(cells: CellCollection, index_key: str) -> List[Dict]:
    points = []
    for record in cells.located():
        value = record.value(index_key)
        points.append(
            {
                'id': record.cell_id,
                'lat': record.location.lat,
                'lng': record.location.lng,
                'value': _clean(value),
                'color': bucket_color(value),
                'men': _clean(record.value('men')),
                'ind': _clean(record.value('ind')),
                'menPauv': _clean(record.value('men_pauv')),
            }
        )
    return points


def tile_transform_for(cells: CellCollection, width: float = 800, height: float = 600) -> TileTransform:
    bounds = compute_bounds(record.location for record in cells.located())
    if bounds is None:
        raise ValueError('No located cells to centre the tile map on')
    return TileTransform(bounds.center, zoom=INITIAL_TILE_ZOOM, width=width, height=height)


def build_payload(engine: MapEngine) -> Dict:
    cells = engine.cells
    center = engine.transform.center if isinstance(engine.transform, TileTransform) else None
    if center is None:
        bounds = compute_bounds(record.location for record in cells.located())
        center = bounds.center if bounds else None
    return {
        'title': TITLE,
        'index': engine.index_key,
        'indexLabel': _index_label(engine.index_key),
        'legend': legend(),
        'center': {'lat': center.lat, 'lng': center.lng} if center else None,
        'zoom': engine.zoom_level,
        'zoneThresholdDeg': ZONE_THRESHOLD_DEG,
        'tileUrl': TILE_URL,
        'tileAttribution': TILE_ATTRIBUTION,
        'cells': _cell_points(cells, engine.index_key),
        'cellCount': len(cells),
        'nonSpatialCount': len(cells) - len(cells.located()),
        'droppedRows': cells.dropped_rows,
        'dashboard': engine.dashboard(),
    }


class TileMapRenderer:
    """Renders the engine state as a Leaflet page backed by a tile provider."""

    def __init__(self, output_dir: Optional[Path] = None) -> None:
        self.output_dir = output_dir or OUTPUT_DIR

    def render(self, engine: MapEngine) -> Tuple[Path, Path]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        data_js = _write_data_js(build_payload(engine), self.output_dir)
        html = _write_map_html(self.output_dir)
        return data_js, html


def _write_data_js(payload: Dict, output_dir: Path) -> Path:
    data_js = output_dir / 'zfe_data.js'
    data_js.write_text(f"window.ZFE_DATA = {json.dumps(payload)};\n", encoding='utf-8')
    print(f"✔️  Wrote {_display_path(data_js)}")
    return data_js


def _write_map_html(output_dir: Path) -> Path:
    html_path = output_dir / 'zfe_map.html'
    html_template = """<!DOCTYPE html>
<html lang='fr'>
<head>
  <meta charset='utf-8' />
  <title>ZFE · Grenoble Métropole</title>
  <meta name='viewport' content='width=device-width, initial-scale=1' />
  <link rel='stylesheet' href='https://unpkg.com/leaflet@1.9.4/dist/leaflet.css' />
  <style>
    * { box-sizing: border-box; }
    body { margin: 0; font-family: 'Inter', -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f8fafc; color: #1f2937; }
    header { padding: 18px 32px; border-bottom: 1px solid #e5e7eb; background: #ffffff; display: flex; justify-content: space-between; align-items: center; }
    h1 { font-size: 1.25rem; margin: 0; }
    .badge { border: 1px solid #d1d5db; border-radius: 999px; padding: 4px 12px; font-size: 0.8rem; }
    .layout { display: flex; height: calc(100vh - 66px); }
    #map { flex: 1; }
    aside { width: 360px; overflow-y: auto; padding: 16px; border-left: 1px solid #e5e7eb; background: #ffffff; }
    .card { border: 1px solid #e5e7eb; border-radius: 12px; padding: 12px; margin-bottom: 12px; }
    .card .label { font-size: 0.8rem; color: #6b7280; }
    .card .value { font-size: 1.5rem; font-weight: 700; }
    .index-row { display: flex; justify-content: space-between; padding: 6px 8px; border: 1px solid transparent; border-radius: 8px; }
    .index-row.active { background: rgba(0,61,165,0.08); border-color: #003DA5; }
    .index-row small { color: #6b7280; }
    .legend { display: flex; flex-direction: column; gap: 4px; font-size: 0.8rem; }
    .legend i { width: 10px; height: 10px; border-radius: 50%; display: inline-block; margin-right: 6px; }
    #info-card { position: absolute; z-index: 1000; pointer-events: none; display: none; background: rgba(255,255,255,0.95); border: 1px solid #d1d5db; border-radius: 10px; padding: 10px 12px; font-size: 0.85rem; }
    #info-card.visible { display: block; }
  </style>
</head>
<body>
<header>
  <h1 id='title'></h1>
  <span class='badge' id='zoom-level'></span>
</header>
<div class='layout'>
  <div id='map'></div>
  <aside>
    <div class='card'><div class='label'>Nombre de carreaux</div><div class='value' id='kpi-count'></div></div>
    <div class='card'><div class='label' id='kpi-mean-label'></div><div class='value' id='kpi-mean'></div></div>
    <div class='card'><div class='label'>Percentile 90</div><div class='value' id='kpi-p90'></div></div>
    <div class='card'><div class='label'>Indices synthétiques</div><div id='index-table'></div></div>
    <div class='card'><div class='label'>Légende</div><div class='legend' id='legend'></div></div>
  </aside>
</div>
<div id='info-card'></div>
<script src='https://unpkg.com/leaflet@1.9.4/dist/leaflet.js'></script>
<script src='zfe_data.js'></script>
<script>
  const data = window.ZFE_DATA;
  const dash = data.dashboard;
  const setText = (id, text) => { document.getElementById(id).textContent = text; };
  const fmt = (v, d) => (v === null || v === undefined || Number.isNaN(v)) ? 'n/a' : Number(v).toFixed(d);

  setText('title', data.title);
  setText('kpi-mean-label', `Moyenne ${data.index}`);

  function summarize(cells) {
    const values = cells.map((c) => c.value).filter((v) => v !== null).sort((a, b) => a - b);
    if (!values.length) return { count: cells.length, mean: 0, p90: 0 };
    const mean = values.reduce((a, b) => a + b, 0) / values.length;
    return { count: cells.length, mean, p90: values[Math.floor(values.length * 0.9)] };
  }

  function renderKpis(summary) {
    setText('kpi-count', summary.count);
    setText('kpi-mean', fmt(summary.mean, 3));
    setText('kpi-p90', fmt(summary.p90, 3));
  }

  renderKpis(dash.summary);

  const table = document.getElementById('index-table');
  dash.indices.forEach((row) => {
    const el = document.createElement('div');
    el.className = 'index-row' + (row.active ? ' active' : '');
    el.innerHTML = `<div><strong>${row.key}</strong><br/><small>${row.label}</small></div>` +
      `<div style='text-align:right'>${fmt(row.raw_mean, 2)}<br/><small>${fmt(row.normalized_mean, 3)}</small></div>`;
    table.appendChild(el);
  });

  const legendEl = document.getElementById('legend');
  data.legend.forEach((item) => {
    const el = document.createElement('span');
    el.innerHTML = `<i style='background:${item.color}'></i>${item.label}`;
    legendEl.appendChild(el);
  });

  const center = data.center || { lat: 45.1885, lng: 5.7245 };
  const map = L.map('map').setView([center.lat, center.lng], data.zoom);
  L.tileLayer(data.tileUrl, { attribution: data.tileAttribution, maxZoom: 19 }).addTo(map);
  const showZoom = () => setText('zoom-level', `Niveau de zoom : ${map.getZoom()}`);
  map.on('zoomend', showZoom);
  showZoom();

  const infoCard = document.getElementById('info-card');
  let selected = null;
  const markers = new Map();

  function selectZone(anchor) {
    const zone = data.cells.filter((c) => Math.hypot(c.lat - anchor.lat, c.lng - anchor.lng) < data.zoneThresholdDeg);
    if (!zone.includes(anchor)) zone.unshift(anchor);
    return zone;
  }

  data.cells.forEach((cell) => {
    if (!cell.color) return;
    const marker = L.circleMarker([cell.lat, cell.lng], {
      radius: 6, color: '#000000', weight: 0, fillColor: cell.color, fillOpacity: 0.9,
    }).addTo(map);
    markers.set(cell, marker);
    marker.on('mouseover', (event) => {
      marker.setRadius(8);
      infoCard.innerHTML = `<strong>Carreau ${cell.id}</strong><br/>` +
        `${data.index}: ${fmt(cell.value, 3)}<br/>Ménages: ${fmt(cell.men, 1)}<br/>` +
        `Individus: ${fmt(cell.ind, 0)}<br/>Ménages précaires: ${fmt(cell.menPauv, 1)}<br/>` +
        `Coordonnées: ${cell.lat.toFixed(4)}, ${cell.lng.toFixed(4)}`;
      infoCard.style.left = `${event.originalEvent.clientX + 10}px`;
      infoCard.style.top = `${event.originalEvent.clientY - 10}px`;
      infoCard.classList.add('visible');
    });
    marker.on('mouseout', () => {
      marker.setRadius(6);
      infoCard.classList.remove('visible');
    });
    marker.on('click', (event) => {
      L.DomEvent.stopPropagation(event);
      if (selected && markers.has(selected)) markers.get(selected).setStyle({ weight: 0 });
      selected = cell;
      marker.setStyle({ weight: 2 });
      renderKpis(summarize(selectZone(cell)));
    });
  });

  map.on('click', () => {
    if (selected && markers.has(selected)) markers.get(selected).setStyle({ weight: 0 });
    selected = null;
    renderKpis(dash.summary);
  });
</script>
</body>
</html>
"""
    html_path.write_text(html_template, encoding='utf-8')
    print(f"✔️  Wrote {_display_path(html_path)}")
    return html_path


def main() -> None:
    parser = argparse.ArgumentParser(description='Build the tile-map viewer (HTML + data) for the grid-cell layer.')
    parser.add_argument('--source', default=DATA_URL, help='URL or path of the cell CSV')
    parser.add_argument('--index', default=DEFAULT_INDEX, help='Index column used to colour cells')
    parser.add_argument('--outdir', type=Path, default=OUTPUT_DIR)
    parser.add_argument('--csv', action='store_true', help='Also write the processed cells with coordinates')
    args = parser.parse_args()

    try:
        cells = load_cells(args.source)
    except LoadFailure as exc:
        print(f"Load failed: {exc}", file=sys.stderr)
        sys.exit(1)
    if cells.dropped_rows:
        print(f"⚠️  Dropped {cells.dropped_rows} malformed rows")
    try:
        engine = MapEngine(cells, index_key=args.index, transform=tile_transform_for(cells))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)
    TileMapRenderer(args.outdir).render(engine)
    if args.csv:
        csv_path = args.outdir / 'zfe_cells.csv'
        cells_to_frame(cells).to_csv(csv_path, index=False)
        print(f"✔️  Wrote {_display_path(csv_path)}")


if __name__ == '__main__':
    main()
