"""GeoDataFrame adapters for row detection input and output."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import LineString

from holerows.core.models import HolePoint, PatternResult
from holerows.utils.row_detection.validation import point_spacing_and_burden

LABEL_COLUMNS = [
    "fid",
    "row_id",
    "position_id",
    "sub_pattern",
    "is_orphan",
    "spacing",
    "burden",
    "geometry",
]


def load_points_data(source: str | Path | dict) -> gpd.GeoDataFrame:
    """Load input points from a file path or an object bundle.

    Parameters
    ----------
    source : str | pathlib.Path | dict
        Vector file path readable by ``geopandas.read_file``, or a bundle
        dict holding a ``points_gdf`` GeoDataFrame.

    Returns
    -------
    geopandas.GeoDataFrame
        Loaded points dataframe.

    Examples
    --------
    >>> gdf = load_points_data("/tmp/holes.gpkg")
    >>> isinstance(gdf, gpd.GeoDataFrame)
    True
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"points file not found: {path}")
        return gpd.read_file(path)
    if isinstance(source, dict) and isinstance(source.get("points_gdf"), gpd.GeoDataFrame):
        return source["points_gdf"].copy()
    raise TypeError("source must be a file path or a bundle with points_gdf")


def points_from_geodataframe(
    gdf: gpd.GeoDataFrame,
    id_field: str = "fid",
    token_field: str | None = None,
    z_field: str | None = None,
) -> list[HolePoint]:
    """Convert Point features to :class:`HolePoint` records.

    Parameters
    ----------
    gdf : geopandas.GeoDataFrame
        Point features.
    id_field : str, optional
        Column used as hole id; row positions are used when it is missing.
    token_field : str | None, optional
        Column holding sequence tokens.
    z_field : str | None, optional
        Column holding collar elevation; geometry z is used when omitted.

    Returns
    -------
    list[HolePoint]
        One record per feature, in frame order.
    """
    if not isinstance(gdf, gpd.GeoDataFrame):
        raise TypeError("gdf must be a GeoDataFrame")
    if gdf.empty:
        raise ValueError("points data is empty")
    if not bool((gdf.geometry.geom_type == "Point").all()):
        raise ValueError("points geometry must contain Point only")
    if token_field is not None and token_field not in gdf.columns:
        raise ValueError(f"token field not found: {token_field}")
    if z_field is not None and z_field not in gdf.columns:
        raise ValueError(f"z field not found: {z_field}")
    if id_field in gdf.columns and not gdf[id_field].isna().any():
        hole_ids = gdf[id_field].tolist()
    else:
        hole_ids = list(range(len(gdf)))
    points: list[HolePoint] = []
    for position, geometry in enumerate(gdf.geometry):
        z_value = _z_value(gdf, position, geometry, z_field)
        token = None
        if token_field is not None:
            raw = gdf[token_field].iloc[position]
            token = None if pd.isna(raw) else str(raw)
        points.append(
            HolePoint(
                hole_id=_plain(hole_ids[position]),
                x=float(geometry.x),
                y=float(geometry.y),
                z=z_value,
                sequence_token=token,
            )
        )
    return points


def build_labels_result(
    points_gdf: gpd.GeoDataFrame,
    result: PatternResult,
) -> gpd.GeoDataFrame:
    """Build the labelled points frame preserving input row order.

    Returns
    -------
    geopandas.GeoDataFrame
        Columns ``fid``, ``row_id``, ``position_id``, ``sub_pattern``,
        ``is_orphan``, ``spacing``, ``burden`` and ``geometry``. Orphans get
        ``-1`` row and position ids.
    """
    if len(points_gdf) != len(result.hole_ids):
        raise ValueError("points_gdf length must match the detection result")
    row_id, position_id = result.row_assignments()
    sub_pattern = np.full(len(result.hole_ids), -1, dtype=np.int64)
    for row in result.rows:
        sub_pattern[list(row.indices)] = row.sub_pattern
    is_orphan = np.zeros(len(result.hole_ids), dtype=bool)
    is_orphan[list(result.orphan_indices)] = True
    points_xy = _geometry_xy(points_gdf)
    spacing, burden = point_spacing_and_burden(
        points_xy,
        [row.indices for row in result.rows],
        [row.sub_pattern for row in result.rows],
    )
    frame = gpd.GeoDataFrame(
        {
            "fid": list(result.hole_ids),
            "row_id": row_id,
            "position_id": position_id,
            "sub_pattern": sub_pattern,
            "is_orphan": is_orphan,
            "spacing": spacing,
            "burden": burden,
        },
        geometry=points_gdf.geometry.to_numpy(),
        crs=points_gdf.crs,
    )
    return gpd.GeoDataFrame(frame[LABEL_COLUMNS], geometry="geometry", crs=points_gdf.crs)


def build_row_lines(
    result: PatternResult,
    points_xy: np.ndarray,
    crs: Any = None,
) -> gpd.GeoDataFrame:
    """Build one backbone LineString per row with at least two points."""
    points_array = np.asarray(points_xy, dtype=np.float64)
    records: list[dict[str, Any]] = []
    geometries: list[LineString] = []
    for row in result.rows:
        if len(row) < 2:
            continue
        records.append(
            {
                "row_id": row.row_index,
                "sub_pattern": row.sub_pattern,
                "shape": row.shape.value,
                "method": row.method,
                "n_points": len(row),
                "bearing": row.direction_deg,
            }
        )
        geometries.append(LineString(points_array[list(row.indices)]))
    columns = ["row_id", "sub_pattern", "shape", "method", "n_points", "bearing"]
    return gpd.GeoDataFrame(
        pd.DataFrame(records, columns=columns), geometry=geometries, crs=crs
    )


def labels_to_dataframe(result: PatternResult) -> pd.DataFrame:
    """Tabulate ``hole_id``, ``row_id`` and ``position_id`` per input point."""
    row_id, position_id = result.row_assignments()
    return pd.DataFrame(
        {
            "hole_id": list(result.hole_ids),
            "row_id": row_id,
            "position_id": position_id,
            "is_orphan": row_id < 0,
        }
    )


def _geometry_xy(gdf: gpd.GeoDataFrame) -> np.ndarray:
    return np.column_stack(
        (gdf.geometry.x.to_numpy(dtype=float), gdf.geometry.y.to_numpy(dtype=float))
    )


def _z_value(gdf: gpd.GeoDataFrame, position: int, geometry: Any, z_field: str | None) -> float:
    if z_field is not None:
        raw = gdf[z_field].iloc[position]
        return 0.0 if pd.isna(raw) else float(raw)
    if geometry.has_z:
        return float(geometry.z)
    return 0.0


def _plain(value: Any) -> Any:
    """Unwrap numpy scalars so ids hash and compare like Python values."""
    return value.item() if isinstance(value, np.generic) else value
