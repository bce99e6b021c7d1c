import math
import random

import pytest

from zfe_viewer import stats
from zfe_viewer.cells import NORMALIZED_INDEX_KEYS, CellRecord


def _cells(field, values):
    return [CellRecord(cell_id=f'c{i}', values={field: v}) for i, v in enumerate(values)]


def test_active_working_set_prefers_selection():
    everything = _cells('EWB_n', [0.1, 0.2, 0.3])

    assert stats.active_working_set(everything, []) is everything
    assert stats.active_working_set(everything, everything[:1]) == everything[:1]


def test_summarize_uses_nearest_rank_p90():
    summary = stats.summarize(_cells('EWB_n', [0.1, 0.2, 0.3, 0.9]), 'EWB_n')

    assert summary['count'] == 4
    assert summary['mean'] == pytest.approx(0.375)
    assert summary['p90'] == pytest.approx(0.9)


def test_summarize_ten_values():
    summary = stats.summarize(_cells('SSI_n', list(range(1, 11))), 'SSI_n')

    assert summary['p90'] == 10
    assert summary['mean'] == pytest.approx(5.5)


def test_summarize_empty_working_set():
    assert stats.summarize([], 'EWB_n') == {'count': 0, 'mean': 0.0, 'p90': 0.0}


def test_summarize_counts_records_but_skips_missing_values():
    working_set = _cells('EWB_n', [0.2, math.nan, 0.4]) + [CellRecord(cell_id='empty')]

    summary = stats.summarize(working_set, 'EWB_n')

    assert summary['count'] == 4
    assert summary['mean'] == pytest.approx(0.3)


def test_summarize_is_permutation_invariant():
    values = [0.05, 0.9, 0.33, 0.41, 0.77, 0.12, 0.6]
    shuffled = list(values)
    random.Random(7).shuffle(shuffled)

    assert stats.summarize(_cells('EWB_n', values), 'EWB_n') == pytest.approx(
        stats.summarize(_cells('EWB_n', shuffled), 'EWB_n')
    )


def test_unknown_field_raises_key_error():
    with pytest.raises(KeyError):
        stats.summarize(_cells('EWB_n', [0.1]), 'not_a_field')


def test_radar_profile_follows_index_order():
    working_set = [
        CellRecord(cell_id='a', values={'EWB_n': 0.2, 'GAI_n': 1.0}),
        CellRecord(cell_id='b', values={'EWB_n': 0.4}),
    ]

    profile = stats.radar_profile(working_set)

    assert [entry['label'] for entry in profile] == ['EWB', 'SSI', 'SAI', 'SAVI', 'SCV', 'TPI', 'EVUL', 'GAI']
    assert profile[0]['value'] == pytest.approx(0.3)
    assert profile[1]['value'] == 0.0
    assert profile[-1]['value'] == pytest.approx(1.0)


def test_radar_profile_empty_set_is_all_zero():
    profile = stats.radar_profile([])

    assert len(profile) == len(NORMALIZED_INDEX_KEYS)
    assert all(entry['value'] == 0.0 for entry in profile)


def test_index_table_marks_active_index():
    working_set = [CellRecord(cell_id='a', values={'SAI': 12.0, 'SAI_n': 0.6})]

    rows = stats.index_table(working_set, 'SAI_n')

    active = [row for row in rows if row['active']]
    assert [row['key'] for row in active] == ['SAI']
    assert active[0]['raw_mean'] == 12.0
    assert active[0]['normalized_mean'] == pytest.approx(0.6)
    assert len(rows) == 8


def test_variable_means_and_totals():
    working_set = [
        CellRecord(cell_id='a', values={'men': 10.0, 'men_pauv': 2.0, '5_NBR_BORN': 1.0}),
        CellRecord(cell_id='b', values={'men': 20.0, 'men_pauv': math.nan, '7_LONG_PIS': 150.0}),
    ]

    means = {row['key']: row for row in stats.variable_means(working_set)}

    assert means['men']['raw_mean'] == pytest.approx(15.0)
    assert means['men_pauv']['raw_mean'] == pytest.approx(2.0)
    assert stats.field_total(working_set, 'men_pauv') == 2.0
    assert stats.equipment_totals(working_set) == {
        '5_NBR_BORN': 1.0,
        '6_NBR_ARRE': 0.0,
        '4_NBR_ARCE': 0.0,
        '7_LONG_PIS': 150.0,
    }


def test_histogram_bins_cover_range():
    bins = stats.histogram(_cells('EWB_n', [0.0, 0.1, 0.5, 0.95, 1.0]), 'EWB_n', bin_count=4)

    assert [b['count'] for b in bins] == [2, 0, 1, 2]
    assert bins[0]['start'] == 0.0
    assert bins[-1]['end'] == pytest.approx(1.0)


def test_histogram_equal_values_land_in_first_bin():
    bins = stats.histogram(_cells('EWB_n', [0.4, 0.4, 0.4]), 'EWB_n')

    assert len(bins) == stats.HISTOGRAM_BINS
    assert bins[0]['count'] == 3
    assert sum(b['count'] for b in bins) == 3


def test_histogram_edge_cases():
    assert stats.histogram([], 'EWB_n') == []
    with pytest.raises(ValueError):
        stats.histogram(_cells('EWB_n', [0.1]), 'EWB_n', bin_count=0)


def test_histogram_skips_infinite_values():
    working_set = _cells('EWB_n', [0.1, math.inf, 0.9, -math.inf])

    bins = stats.histogram(working_set, 'EWB_n', bin_count=2)

    assert [b['count'] for b in bins] == [1, 1]
    assert bins[-1]['end'] == pytest.approx(0.9)
    assert stats.histogram(_cells('EWB_n', [math.inf]), 'EWB_n') == []
