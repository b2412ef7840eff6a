"""Tests for the command line entry point."""

from __future__ import annotations

import json

import geopandas as gpd
from shapely.geometry import Point

import main as cli


def _write_grid(path) -> None:
    holes = [(x, y) for y in (0.0, 4.0, 8.0) for x in (0.0, 3.0, 6.0, 9.0)]
    gdf = gpd.GeoDataFrame(
        {"hole": [f"H{index}" for index in range(len(holes))]},
        geometry=[Point(x, y) for x, y in holes],
        crs="EPSG:32654",
    )
    gdf.to_file(path, driver="GPKG")


def test_main_prints_report_and_writes_labels(tmp_path, capsys) -> None:
    """A successful run prints the JSON report and writes labelled points."""
    source = tmp_path / "holes.gpkg"
    output = tmp_path / "labelled.geojson"
    _write_grid(source)

    code = cli.main([str(source), "--id-field", "hole", "--output", str(output)])

    assert code == 0
    report = json.loads(capsys.readouterr().out)
    assert report["row_count"] == 3
    assert report["pattern_type"] == "straight"
    labelled = gpd.read_file(output)
    assert sorted(set(labelled["row_id"])) == [1, 2, 3]


def test_main_returns_error_for_missing_file(tmp_path) -> None:
    """A missing input file fails with exit code 1."""
    assert cli.main([str(tmp_path / "missing.gpkg")]) == 1


def test_build_parser_defaults() -> None:
    """Parser defaults match the detection defaults."""
    args = cli.build_parser().parse_args(["holes.gpkg"])
    assert args.id_field == "fid"
    assert args.snake_angle == 90.0
    assert args.force_direction is None
