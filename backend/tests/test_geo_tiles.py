import pytest

from app.errors import ValidationError
from app.services.geo import Bounds, Point, bounds_from_radius, clamp_limit, clamp_radius, haversine_meters, parse_lat_lng
from app.services.tiles import neighbor_tiles, tile_bounds, tile_categories, tile_key


def test_haversine_zero_distance():
    assert haversine_meters(13.75, 100.5, 13.75, 100.5) == 0


def test_bounds_reject_inverted_latitude():
    with pytest.raises(ValidationError):
        Bounds.from_corners(13.9, 100.35, 13.65, 100.65)


def test_bounds_reject_inverted_longitude():
    with pytest.raises(ValidationError):
        Bounds.from_corners(13.65, 100.65, 13.9, 100.35)


def test_bounds_center_is_midpoint():
    bounds = Bounds.from_corners(10.0, 100.0, 12.0, 102.0)
    assert bounds.center == Point(11.0, 101.0)


def test_radius_and_limit_are_clamped():
    assert clamp_radius(5, minimum=100, maximum=100_000, default=2_000) == 100
    assert clamp_radius(10_000_000, minimum=100, maximum=100_000, default=2_000) == 100_000
    assert clamp_radius(None, minimum=100, maximum=100_000, default=2_000) == 2_000
    assert clamp_limit(5_000, maximum=200, default=50) == 200
    assert clamp_limit(0, maximum=200, default=50) == 50


def test_bounds_from_radius_contains_center():
    bounds = bounds_from_radius(13.75, 100.5, 1_000)
    assert bounds.contains(13.75, 100.5)
    assert bounds.ne.lat - bounds.sw.lat == pytest.approx(2_000 / 111_320)


def test_parse_lat_lng_rejects_garbage():
    assert parse_lat_lng("13.7, 100.5") == Point(13.7, 100.5)
    with pytest.raises(ValidationError):
        parse_lat_lng("north-ish")


def test_tile_key_format_and_round_trip():
    bounds = Bounds.from_corners(13.65, 100.35, 13.9, 100.65)
    key = tile_key(bounds, ["food", "coffee"], 0.05)

    assert key == "t0.05:13.65,100.35:13.9,100.65|coffee,food"
    assert tile_bounds(key) == bounds
    assert tile_categories(key) == ["coffee", "food"]


def test_nearby_viewports_share_a_tile_key():
    first = Bounds.from_corners(13.751, 100.501, 13.759, 100.509)
    second = Bounds.from_corners(13.752, 100.502, 13.758, 100.508)
    assert tile_key(first, [], 0.05) == tile_key(second, [], 0.05)
    assert tile_key(first, [], 0.05).endswith("|*")


def test_neighbor_tiles_start_with_center_cell():
    center = Point(13.76, 100.52)
    cells = neighbor_tiles(center, 9, 0.05)

    assert len(cells) == 9
    assert cells[0].contains(center.lat, center.lng)
    assert len({(cell.sw.lat, cell.sw.lng) for cell in cells}) == 9
