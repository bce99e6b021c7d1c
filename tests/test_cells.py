import math

import pytest
import requests

from zfe_viewer import cells

SAMPLE_CSV = '''"idcar_200m","men","ind","men_pauv","EWB","EWB_n","SSI_n","commune"
"CRS3035RES200mN2469200E3982600",10,25.5,2,1.5,0.3,0.8,"Grenoble"
"CRS3035RES200mN2469400E3982600",4,9,,0.7,0.9,0.1,Grenoble

"BADID",3,7,1,0.2,0.1,0.2,Echirolles
"CRS3035RES200mN2469000E3982000",1,2
'''


class _FakeResponse:
    def __init__(self, text: str, status_code: int = 200):
        self.content = text.encode('utf-8')
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


def test_locate_cell_matches_calibration_example():
    location = cells.locate_cell('N2469200E3982600')

    assert location is not None
    assert location.lat == pytest.approx(45.1885 + 200 / 111000)
    assert location.lng == pytest.approx(5.7245 + 600 / 85000)
    assert location.lat == pytest.approx(45.19030, abs=1e-5)
    assert location.lng == pytest.approx(5.73156, abs=1e-5)


def test_locate_cell_finds_pattern_inside_longer_identifier_and_is_idempotent():
    first = cells.locate_cell('CRS3035RES200mN2469200E3982600')
    second = cells.locate_cell('CRS3035RES200mN2469200E3982600')

    assert first == second == cells.locate_cell('N2469200E3982600')


@pytest.mark.parametrize('cell_id', ['', None, 'BADID', 'N2469200', 'E3982600N2469200', 'Nabc E123'])
def test_locate_cell_returns_none_without_pattern(cell_id):
    assert cells.locate_cell(cell_id) is None


def test_parse_cells_csv_coerces_numbers_and_keeps_text():
    collection = cells.parse_cells_csv(SAMPLE_CSV)

    assert len(collection) == 3
    assert collection.dropped_rows == 1
    first = collection[0]
    assert first.cell_id == 'CRS3035RES200mN2469200E3982600'
    assert first.value('ind') == pytest.approx(25.5)
    assert first.value('EWB_n') == pytest.approx(0.3)
    assert first.attributes == {'commune': 'Grenoble'}
    assert first.is_spatial


def test_parse_cells_csv_marks_missing_values_and_non_spatial_rows():
    collection = cells.parse_cells_csv(SAMPLE_CSV)

    assert collection[1].value('men_pauv') is None
    assert math.isnan(collection[1].values['men_pauv'])
    bad = collection.by_id('BADID')
    assert bad is not None
    assert bad.location is None
    assert bad.value('men') == 3
    assert [record.cell_id for record in collection.located()] == [
        'CRS3035RES200mN2469200E3982600',
        'CRS3035RES200mN2469400E3982600',
    ]


def test_parse_cells_csv_empty_payload():
    collection = cells.parse_cells_csv('\n\n')

    assert len(collection) == 0
    assert collection.dropped_rows == 0


def test_record_value_rejects_unknown_fields():
    record = cells.parse_cells_csv(SAMPLE_CSV)[0]

    with pytest.raises(KeyError):
        record.value('commune')


def test_load_cells_from_local_file(tmp_path):
    path = tmp_path / 'cells.csv'
    path.write_text(SAMPLE_CSV, encoding='utf-8')

    collection = cells.load_cells(str(path))

    assert len(collection) == 3


def test_load_cells_missing_file_is_a_load_failure(tmp_path):
    with pytest.raises(cells.LoadFailure):
        cells.load_cells(str(tmp_path / 'missing.csv'))


def test_fetch_uses_single_get_and_parses(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return _FakeResponse(SAMPLE_CSV)

    monkeypatch.setattr(cells.requests, 'get', fake_get)
    collection = cells.load_cells('https://example.org/cells.csv', timeout=5)

    assert calls == [('https://example.org/cells.csv', 5)]
    assert len(collection) == 3


def test_fetch_non_2xx_raises_load_failure(monkeypatch):
    monkeypatch.setattr(cells.requests, 'get', lambda url, timeout: _FakeResponse('', status_code=503))

    with pytest.raises(cells.LoadFailure, match='503'):
        cells.fetch_cells_csv('https://example.org/cells.csv')


def test_dataset_loader_error_state_and_reload(monkeypatch):
    responses = [requests.ConnectionError('network down'), _FakeResponse(SAMPLE_CSV)]

    def fake_get(url, timeout):
        outcome = responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(cells.requests, 'get', fake_get)
    loader = cells.DatasetLoader('https://example.org/cells.csv')
    assert loader.state == cells.DatasetLoader.LOADING

    assert loader.load() is None
    assert loader.state == cells.DatasetLoader.ERROR
    assert 'network down' in loader.error

    collection = loader.reload()
    assert loader.state == cells.DatasetLoader.READY
    assert loader.error is None
    assert collection is loader.cells
    assert len(collection) == 3


def test_apply_variable_edit_returns_new_collection():
    collection = cells.parse_cells_csv(SAMPLE_CSV)

    edited = cells.apply_variable_edit(collection, 'men', 12)

    assert all(record.value('men') == 12 for record in edited)
    assert collection[0].value('men') == 10
    assert [record.location for record in edited] == [record.location for record in collection]


def test_apply_variable_edit_rejects_non_editable_keys():
    collection = cells.parse_cells_csv(SAMPLE_CSV)

    with pytest.raises(ValueError):
        cells.apply_variable_edit(collection, 'EWB_n', 0.5)


def test_cells_to_frame_has_coordinates():
    df = cells.cells_to_frame(cells.parse_cells_csv(SAMPLE_CSV))

    assert {'idcar_200m', 'men', 'commune', 'lat', 'lng'} <= set(df.columns)
    assert df['lat'].isna().sum() == 1


def test_index_declaration_order_is_fixed():
    assert cells.NORMALIZED_INDEX_KEYS == ('EWB_n', 'SSI_n', 'SAI_n', 'SAVI_n', 'SCV_n', 'TPI_n', 'EVUL_n', 'GAI_n')
    assert set(cells.NORMALIZED_INDEX_KEYS) <= cells.FIELD_KEYS


@pytest.mark.parametrize('text', ['inf', '-inf', 'Infinity', 'nan'])
def test_non_finite_numbers_are_missing_values(text):
    collection = cells.parse_cells_csv(f'idcar_200m,EWB_n\nN2469200E3982600,0.3\nN2469400E3982600,{text}\n')

    assert collection[0].value('EWB_n') == pytest.approx(0.3)
    assert collection[1].value('EWB_n') is None


def test_load_cells_strips_byte_order_mark(tmp_path):
    path = tmp_path / 'cells.csv'
    path.write_text('\ufeffidcar_200m,EWB_n\nN2469200E3982600,0.3\n', encoding='utf-8')

    collection = cells.load_cells(str(path))

    assert collection[0].cell_id == 'N2469200E3982600'
    assert collection[0].attributes == {}
    assert len(collection.located()) == 1


def test_parse_cells_csv_strips_byte_order_mark_from_text():
    collection = cells.parse_cells_csv('\ufeffidcar_200m,EWB_n\nN2469200E3982600,0.3\n')

    assert collection[0].is_spatial


def test_fetch_decodes_utf8_without_declared_charset(monkeypatch):
    body = '\ufeffidcar_200m,EWB_n,commune\nN2469200E3982600,0.3,Échirolles\n'

    def fake_get(url, timeout):
        response = requests.Response()
        response.status_code = 200
        response.headers['Content-Type'] = 'text/csv'
        response.encoding = requests.utils.get_encoding_from_headers(response.headers)
        response._content = body.encode('utf-8')
        return response

    monkeypatch.setattr(cells.requests, 'get', fake_get)
    collection = cells.load_cells('https://example.org/cells.csv')

    assert collection[0].cell_id == 'N2469200E3982600'
    assert collection[0].attributes == {'commune': 'Échirolles'}


def test_fetch_rejects_non_utf8_payload(monkeypatch):
    class _Latin1Response(_FakeResponse):
        def __init__(self):
            super().__init__('')
            self.content = 'idcar_200m,commune\nN2469200E3982600,\xc9chirolles\n'.encode('latin-1')

    monkeypatch.setattr(cells.requests, 'get', lambda url, timeout: _Latin1Response())

    with pytest.raises(cells.LoadFailure, match='not UTF-8'):
        cells.fetch_cells_csv('https://example.org/cells.csv')
