#!/usr/bin/env python3
"""Load the 200m grid-cell layer and derive cell locations from their identifiers."""
from __future__ import annotations

import argparse
import csv
import io
import math
import os
import re
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import pandas as pd
import requests

DATA_URL = os.environ.get(
    'ZFE_DATA_URL',
    'https://hebbkx1anhila5yf.public.blob.vercel-storage.com/Couche-CWc5bx81JIbbVgVLZhbsgDH7RMDtmX.csv',
)
FETCH_TIMEOUT = float(os.environ.get('ZFE_FETCH_TIMEOUT', 30))
OUTPUT_ROOT = Path(os.environ.get('ZFE_VIEWER_OUTPUT', Path.cwd() / 'zfe_viewer'))

CELL_ID_FIELD = 'idcar_200m'

# Local linear approximation calibrated on Grenoble, not a CRS transform.
LAT0 = 45.1885
LNG0 = 5.7245
NORTHING0 = 2469000
EASTING0 = 3982000
K_LAT = 111000
K_LNG = 85000

_CELL_ID_RE = re.compile(r'N(\d+)E(\d+)')

RAW_FIELDS = (
    'ind', 'men', 'men_pauv', 'men_1ind', 'men_5ind', 'men_prop', 'men_fmp', 'ind_snv',
    'men_surf', 'men_coll', 'men_mais', 'log_av45', 'log_45_70', 'log_70_90', 'log_ap90',
    'log_inc', 'log_soc',
)
NORMALIZED_FIELDS = tuple(f'{key}_n' for key in RAW_FIELDS)
INFRASTRUCTURE_FIELDS = (
    '1_NBR_SERV', '2_NBR_ALL', '3_NBR_PARK', '4_NBR_ARCE', '5_NBR_BORN', '6_NBR_ARRE',
    '7_LONG_PIS', '8_BAT_Nomb',
)
# Shapefile-truncated names of the normalized infrastructure columns.
NORMALIZED_INFRASTRUCTURE_FIELDS = ('4_NBR_AR_1', '5_NBR_BO_1', '6_NBR_AR_1', '7_LONG_P_1')
DISTANCE_FIELDS = (
    '1_DIS_SERV', '2_DIS_ALLP', '3_DIS_VPAR', '4_DIS_ARCE', '5_DIS_BORN', '6_DIS_ARRE', '7_DIS_PIST',
)


class IndexSpec(NamedTuple):
    key: str
    label: str
    normalized: str


class VariableSpec(NamedTuple):
    key: str
    label: str
    normalized: str
    editable: bool


# Declaration order is the radar axis order.
INDICES: Tuple[IndexSpec, ...] = (
    IndexSpec('EWB', 'Bien-être économique', 'EWB_n'),
    IndexSpec('SSI', "Stock d'offre", 'SSI_n'),
    IndexSpec('SAI', 'Accessibilité', 'SAI_n'),
    IndexSpec('SAVI', 'Services', 'SAVI_n'),
    IndexSpec('SCV', 'Capacité composite', 'SCV_n'),
    IndexSpec('TPI', 'Pression/implantation', 'TPI_n'),
    IndexSpec('EVUL', 'Vulnérabilité', 'EVUL_n'),
    IndexSpec('GAI', 'Adaptabilité inverse', 'GAI_n'),
)
INDEX_KEYS = tuple(entry.key for entry in INDICES)
NORMALIZED_INDEX_KEYS = tuple(entry.normalized for entry in INDICES)
DEFAULT_INDEX = 'EWB_n'

VARIABLES: Tuple[VariableSpec, ...] = (
    VariableSpec('men', 'Ménages', 'men_n', True),
    VariableSpec('men_pauv', 'Ménages précaires', 'men_pauv_n', True),
    VariableSpec('ind', 'Individus', 'ind_n', True),
    VariableSpec('5_NBR_BORN', 'Bornes de recharge', '5_NBR_BO_1', True),
    VariableSpec('6_NBR_ARRE', 'Arrêts de transport', '6_NBR_AR_1', True),
    VariableSpec('4_NBR_ARCE', 'Arceaux vélos', '4_NBR_AR_1', True),
    VariableSpec('7_LONG_PIS', 'Pistes cyclables', '7_LONG_P_1', True),
)

FIELD_KEYS = frozenset(
    RAW_FIELDS
    + NORMALIZED_FIELDS
    + INDEX_KEYS
    + NORMALIZED_INDEX_KEYS
    + INFRASTRUCTURE_FIELDS
    + NORMALIZED_INFRASTRUCTURE_FIELDS
    + DISTANCE_FIELDS
)


class LoadFailure(RuntimeError):
    """The cell layer could not be fetched or parsed."""


class Location(NamedTuple):
    lat: float
    lng: float


@dataclass(frozen=True)
class CellRecord:
    cell_id: str
    values: Mapping[str, float] = field(default_factory=dict)
    attributes: Mapping[str, str] = field(default_factory=dict)
    location: Optional[Location] = None

    @property
    def is_spatial(self) -> bool:
        return self.location is not None

    def value(self, key: str) -> Optional[float]:
        """Numeric value of a known field, or None when missing or not a number."""
        if key not in FIELD_KEYS:
            raise KeyError(f"Unknown cell field: {key}")
        value = self.values.get(key)
        if value is None or math.isnan(value):
            return None
        return value


@dataclass(frozen=True)
class CellCollection:
    records: Tuple[CellRecord, ...] = ()
    dropped_rows: int = 0

    def __iter__(self) -> Iterator[CellRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, idx: int) -> CellRecord:
        return self.records[idx]

    def located(self) -> List[CellRecord]:
        return [record for record in self.records if record.location is not None]

    def by_id(self, cell_id: Optional[str]) -> Optional[CellRecord]:
        if cell_id is None:
            return None
        for record in self.records:
            if record.cell_id == cell_id:
                return record
        return None


def locate_cell(cell_id: Optional[str]) -> Optional[Location]:
    if not cell_id:
        return None
    match = _CELL_ID_RE.search(cell_id)
    if not match:
        return None
    northing = int(match.group(1))
    easting = int(match.group(2))
    return Location(
        LAT0 + (northing - NORTHING0) / K_LAT,
        LNG0 + (easting - EASTING0) / K_LNG,
    )


def _clean_text(value: str) -> str:
    return value.strip().replace('"', '')


def _coerce(value: str) -> Optional[float]:
    if not value or '_' in value:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def _build_record(row: Dict[str, str]) -> CellRecord:
    values: Dict[str, float] = {}
    attributes: Dict[str, str] = {}
    for name, text in row.items():
        if name == CELL_ID_FIELD:
            continue
        number = _coerce(text)
        if name in FIELD_KEYS and number is not None:
            values[name] = number
        elif name in FIELD_KEYS:
            values[name] = math.nan
        else:
            attributes[name] = text
    cell_id = row.get(CELL_ID_FIELD, '')
    return CellRecord(cell_id=cell_id, values=values, attributes=attributes, location=locate_cell(cell_id))


def parse_cells_csv(text: str) -> CellCollection:
    """Split the delimited payload into records.

    Uses the stdlib csv reader rather than pandas.read_csv so that rows with
    the wrong column count are dropped and counted instead of padded.
    """
    text = text.lstrip('\ufeff')
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return CellCollection()
    rows = csv.reader(io.StringIO('\n'.join(lines)))
    headers = [_clean_text(name) for name in next(rows)]
    records = []
    dropped = 0
    for raw in rows:
        if len(raw) != len(headers):
            dropped += 1
            continue
        records.append(_build_record(dict(zip(headers, (_clean_text(v) for v in raw)))))
    return CellCollection(records=tuple(records), dropped_rows=dropped)


def fetch_cells_csv(url: str = DATA_URL, timeout: float = FETCH_TIMEOUT) -> str:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise LoadFailure(f"Could not fetch cell layer from {url}: {exc}") from exc
    # Decode as UTF-8 whatever charset the server declares; drops a leading BOM.
    try:
        return response.content.decode('utf-8-sig')
    except UnicodeDecodeError as exc:
        raise LoadFailure(f"Cell layer from {url} is not UTF-8: {exc}") from exc


def load_cells(source: str = DATA_URL, timeout: float = FETCH_TIMEOUT) -> CellCollection:
    if source.startswith(('http://', 'https://')):
        text = fetch_cells_csv(source, timeout=timeout)
    else:
        path = Path(source)
        if not path.exists():
            raise LoadFailure(f"Missing source file: {path}")
        try:
            text = path.read_text(encoding='utf-8-sig')
        except UnicodeDecodeError as exc:
            raise LoadFailure(f"Cell layer in {path} is not UTF-8: {exc}") from exc
    try:
        return parse_cells_csv(text)
    except csv.Error as exc:
        raise LoadFailure(f"Could not parse cell layer from {source}: {exc}") from exc


class DatasetLoader:
    """One-shot load of the cell layer with a loading/ready/error lifecycle."""

    LOADING = 'loading'
    READY = 'ready'
    ERROR = 'error'

    def __init__(self, source: str = DATA_URL, timeout: float = FETCH_TIMEOUT) -> None:
        self.source = source
        self.timeout = timeout
        self.state = self.LOADING
        self.cells: Optional[CellCollection] = None
        self.error: Optional[str] = None

    def load(self) -> Optional[CellCollection]:
        self.state = self.LOADING
        self.error = None
        try:
            cells = load_cells(self.source, timeout=self.timeout)
        except LoadFailure as exc:
            self.state = self.ERROR
            self.error = str(exc)
            self.cells = None
            return None
        self.cells = cells
        self.state = self.READY
        return cells

    def reload(self) -> Optional[CellCollection]:
        return self.load()


def apply_variable_edit(cells: CellCollection, key: str, value: float) -> CellCollection:
    editable = {entry.key for entry in VARIABLES if entry.editable}
    if key not in editable:
        raise ValueError(f"Variable {key!r} is not editable")
    records = tuple(
        replace(record, values={**record.values, key: float(value)})
        for record in cells.records
    )
    return CellCollection(records=records, dropped_rows=cells.dropped_rows)


def cells_to_frame(cells: Sequence[CellRecord]) -> pd.DataFrame:
    rows = []
    for record in cells:
        row: Dict[str, object] = {CELL_ID_FIELD: record.cell_id}
        row.update(record.attributes)
        row.update(record.values)
        row['lat'] = record.location.lat if record.location else None
        row['lng'] = record.location.lng if record.location else None
        rows.append(row)
    return pd.DataFrame(rows)


def _write_csv(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    try:
        display_path = path.relative_to(Path.cwd())
    except ValueError:
        display_path = path
    print(f"✔️  Wrote {display_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description='Fetch the grid-cell layer and write it with derived coordinates.')
    parser.add_argument('--source', default=DATA_URL, help='URL or path of the cell CSV')
    parser.add_argument('--output', type=Path, default=OUTPUT_ROOT / 'zfe_cells.csv')
    args = parser.parse_args()

    try:
        cells = load_cells(args.source)
    except LoadFailure as exc:
        print(f"Load failed: {exc}", file=sys.stderr)
        sys.exit(1)
    located = len(cells.located())
    print(f"Loaded {len(cells)} cells ({located} located, {len(cells) - located} without location)")
    if cells.dropped_rows:
        print(f"⚠️  Dropped {cells.dropped_rows} malformed rows")
    _write_csv(cells_to_frame(cells), args.output)


if __name__ == '__main__':
    main()
