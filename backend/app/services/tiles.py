from __future__ import annotations

import math

from ..errors import ValidationError
from .geo import Bounds, Point, haversine_meters

_EPSILON = 1e-9


def _format_coord(value: float) -> str:
    return f"{round(value, 6):g}"


def quantize_bounds(bounds: Bounds, tile_size: float) -> Bounds:
    """Snap bounds outward to the tile grid so nearby viewports share a key."""
    sw_lat = math.floor(bounds.sw.lat / tile_size + _EPSILON) * tile_size
    sw_lng = math.floor(bounds.sw.lng / tile_size + _EPSILON) * tile_size
    ne_lat = math.ceil(bounds.ne.lat / tile_size - _EPSILON) * tile_size
    ne_lng = math.ceil(bounds.ne.lng / tile_size - _EPSILON) * tile_size
    if ne_lat <= sw_lat:
        ne_lat = sw_lat + tile_size
    if ne_lng <= sw_lng:
        ne_lng = sw_lng + tile_size
    return Bounds(
        sw=Point(round(max(-90.0, sw_lat), 6), round(max(-180.0, sw_lng), 6)),
        ne=Point(round(min(90.0, ne_lat), 6), round(min(180.0, ne_lng), 6)),
    )


def tile_key(bounds: Bounds, categories: list[str] | tuple[str, ...], tile_size: float) -> str:
    quantized = quantize_bounds(bounds, tile_size)
    category_part = ",".join(sorted(set(categories))) or "*"
    return (
        f"t{tile_size:g}:"
        f"{_format_coord(quantized.sw.lat)},{_format_coord(quantized.sw.lng)}:"
        f"{_format_coord(quantized.ne.lat)},{_format_coord(quantized.ne.lng)}"
        f"|{category_part}"
    )


def tile_bounds(key: str) -> Bounds:
    try:
        grid_part, _ = key.split("|", maxsplit=1)
        _, sw_raw, ne_raw = grid_part.split(":")
        sw_lat, sw_lng = (float(value) for value in sw_raw.split(","))
        ne_lat, ne_lng = (float(value) for value in ne_raw.split(","))
    except ValueError:
        raise ValidationError(f"Malformed tile key: {key!r}") from None
    return Bounds.from_corners(sw_lat, sw_lng, ne_lat, ne_lng)


def tile_categories(key: str) -> list[str]:
    _, _, category_part = key.partition("|")
    if not category_part or category_part == "*":
        return []
    return category_part.split(",")


def neighbor_tiles(center: Point, count: int, tile_size: float) -> list[Bounds]:
    """Return the grid cell holding ``center`` followed by the nearest surrounding cells."""
    if count <= 0:
        return []
    row = math.floor(center.lat / tile_size + _EPSILON)
    col = math.floor(center.lng / tile_size + _EPSILON)

    cells: list[Bounds] = []
    ring = 0
    while len(cells) < count and ring <= count:
        ring_cells: list[Bounds] = []
        for d_row in range(-ring, ring + 1):
            for d_col in range(-ring, ring + 1):
                if max(abs(d_row), abs(d_col)) != ring:
                    continue
                sw_lat = (row + d_row) * tile_size
                sw_lng = (col + d_col) * tile_size
                if sw_lat < -90.0 or sw_lat + tile_size > 90.0:
                    continue
                if sw_lng < -180.0 or sw_lng + tile_size > 180.0:
                    continue
                ring_cells.append(
                    Bounds(
                        sw=Point(round(sw_lat, 6), round(sw_lng, 6)),
                        ne=Point(round(sw_lat + tile_size, 6), round(sw_lng + tile_size, 6)),
                    )
                )
        ring_cells.sort(
            key=lambda cell: (
                haversine_meters(center.lat, center.lng, cell.center.lat, cell.center.lng),
                cell.sw.lat,
                cell.sw.lng,
            )
        )
        cells.extend(ring_cells)
        ring += 1
    return cells[:count]
