import numpy as np
import pytest

from plantakeoff.core.errors import InvalidConfiguration
from plantakeoff.core.tile_grid import TileGridPlanner


def test_a4_sheet_grid_dimensions():
    grid = TileGridPlanner(tile_size=672, overlap=64).plan(3508, 2480)

    assert grid.step == 608
    assert grid.tiles_x == 6
    assert grid.tiles_y == 5
    assert len(grid) == 30


def test_last_column_and_row_sit_flush_against_edges():
    grid = TileGridPlanner(tile_size=672, overlap=64).plan(3508, 2480)

    assert max(t.x + t.width for t in grid) == 3508
    assert max(t.y + t.height for t in grid) == 2480
    assert all(t.width == 672 for t in grid)
    assert min(t.height for t in grid) >= 64


@pytest.mark.parametrize("width,height,tile_size,overlap", [
    (3508, 2480, 672, 64),
    (672, 672, 672, 64),
    (700, 650, 672, 64),
    (500, 300, 672, 64),
    (1281, 609, 256, 32),
    (999, 1001, 100, 10),
])
def test_tiles_cover_every_pixel(width, height, tile_size, overlap):
    grid = TileGridPlanner(tile_size, overlap).plan(width, height)

    covered = np.zeros((height, width), dtype=bool)
    for tile in grid:
        assert 0 <= tile.x and tile.x + tile.width <= width
        assert 0 <= tile.y and tile.y + tile.height <= height
        covered[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width] = True

    assert covered.all()


def test_small_image_gets_single_clipped_tile():
    grid = TileGridPlanner(672, 64).plan(500, 300)

    assert len(grid) == 1
    tile = grid.tiles[0]
    assert (tile.x, tile.y, tile.width, tile.height) == (0, 0, 500, 300)
    assert tile.overlaps == ()


def test_planning_is_deterministic():
    planner = TileGridPlanner(672, 64)

    first = planner.plan(3508, 2480).tiles
    second = TileGridPlanner(672, 64).plan(3508, 2480).tiles

    assert first == second


def test_tiles_are_row_major_with_sequential_ids():
    grid = TileGridPlanner(672, 64).plan(3508, 2480)

    assert [t.tile_id for t in grid] == list(range(30))
    assert [(t.y, t.x) for t in grid] == sorted((t.y, t.x) for t in grid)


def test_overlapping_tiles_are_linked():
    grid = TileGridPlanner(672, 64).plan(3508, 2480)

    assert set(grid.get(0).overlaps) == {1, 6, 7}
    for tile in grid:
        for other_id in tile.overlaps:
            assert tile.tile_id in grid.get(other_id).overlaps


def test_unknown_tile_id_raises():
    grid = TileGridPlanner(672, 64).plan(1000, 1000)

    with pytest.raises(KeyError):
        grid.get(999)


@pytest.mark.parametrize("tile_size,overlap", [(672, 672), (672, 700), (0, 0), (-10, 5), (672, 0)])
def test_invalid_tiling_parameters(tile_size, overlap):
    with pytest.raises(InvalidConfiguration):
        TileGridPlanner(tile_size, overlap)


def test_invalid_image_dimensions():
    with pytest.raises(InvalidConfiguration):
        TileGridPlanner(672, 64).plan(0, 100)
