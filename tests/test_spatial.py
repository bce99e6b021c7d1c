import pytest

from zfe_viewer.cells import CellRecord, Location
from zfe_viewer.spatial import HitPolicy, find_nearest, select_zone


class _DegreeProjector:
    """1000 px per degree, origin at (lng 0, lat 0)."""

    def project_location(self, location):
        return location.lng * 1000, location.lat * 1000


def _cell(cell_id, lat=None, lng=None):
    location = Location(lat, lng) if lat is not None else None
    return CellRecord(cell_id=cell_id, location=location)


def test_first_policy_returns_first_within_radius():
    points = [_cell('far', 0.008, 0.0), _cell('near', 0.001, 0.0)]

    hit = find_nearest((0.0, 0.0), points, _DegreeProjector(), radius_px=10)

    assert hit.cell_id == 'far'


def test_closest_policy_returns_smallest_distance():
    points = [_cell('far', 0.008, 0.0), _cell('near', 0.001, 0.0)]

    hit = find_nearest((0.0, 0.0), points, _DegreeProjector(), radius_px=10, policy=HitPolicy.CLOSEST)

    assert hit.cell_id == 'near'


def test_closest_policy_keeps_earlier_point_on_ties():
    points = [_cell('a', 0.003, 0.0), _cell('b', -0.003, 0.0)]

    hit = find_nearest((0.0, 0.0), points, _DegreeProjector(), policy=HitPolicy.CLOSEST)

    assert hit.cell_id == 'a'


def test_radius_is_exclusive():
    points = [_cell('edge', 0.0, 0.010)]

    assert find_nearest((0.0, 0.0), points, _DegreeProjector(), radius_px=10) is None
    assert find_nearest((0.5, 0.0), points, _DegreeProjector(), radius_px=10).cell_id == 'edge'


def test_non_spatial_points_never_match():
    points = [_cell('nowhere'), _cell('here', 0.0, 0.0)]

    assert find_nearest((0.0, 0.0), points, _DegreeProjector()).cell_id == 'here'
    assert find_nearest((0.0, 0.0), [_cell('nowhere')], _DegreeProjector()) is None


def test_select_zone_keeps_iteration_order_and_excludes_far_points():
    anchor = _cell('anchor', 45.19, 5.73)
    points = [
        _cell('north', 45.195, 5.73),
        anchor,
        _cell('far', 45.3, 5.73),
        _cell('nowhere'),
        _cell('east', 45.19, 5.738),
    ]

    zone = select_zone(anchor, points, threshold_deg=0.01)

    assert [p.cell_id for p in zone] == ['north', 'anchor', 'east']


def test_select_zone_distance_is_strict():
    anchor = _cell('anchor', 0.0, 0.0)
    boundary = _cell('boundary', 0.0, 0.01)

    zone = select_zone(anchor, [anchor, boundary], threshold_deg=0.01)

    assert zone == [anchor]


def test_select_zone_always_contains_anchor():
    anchor = _cell('anchor', 45.19, 5.73)
    others = [_cell('x', 45.191, 5.73)]

    assert select_zone(anchor, others, threshold_deg=0.0) == [anchor]
    zone = select_zone(anchor, others, threshold_deg=0.01)
    assert zone[0] is anchor
    assert len(zone) == 2


def test_select_zone_grows_with_threshold():
    anchor = _cell('anchor', 0.0, 0.0)
    points = [anchor] + [_cell(str(i), 0.0, i * 0.002) for i in range(1, 10)]

    sizes = [len(select_zone(anchor, points, threshold_deg=t)) for t in (0.001, 0.005, 0.011, 0.05)]

    assert sizes == sorted(sizes)
    assert sizes[0] == 1
    assert sizes[-1] == 10


def test_select_zone_without_anchor_location_is_empty():
    assert select_zone(_cell('nowhere'), [_cell('a', 0.0, 0.0)]) == []


@pytest.mark.parametrize('policy', list(HitPolicy))
def test_find_nearest_empty_input(policy):
    assert find_nearest((0.0, 0.0), [], _DegreeProjector(), policy=policy) is None
