#!/usr/bin/env python
"""
HoleRows - row and position inference for drilled hole patterns.

Main entry point for the command line tool.

Usage
-----
    uv run python main.py holes.gpkg --token-field seq --output labelled.gpkg

or:
    python main.py holes.shp
"""

import argparse
import json
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    """
    Build the command line parser.

    Returns
    -------
    argparse.ArgumentParser
        Parser for the ``main`` entry point.
    """
    parser = argparse.ArgumentParser(
        prog="holerows",
        description="Group hole positions into ordered rows.",
    )
    parser.add_argument("input", help="Point vector file readable by GeoPandas")
    parser.add_argument("--id-field", default="fid", help="Column holding hole ids")
    parser.add_argument("--token-field", default=None, help="Column holding sequence tokens")
    parser.add_argument("--output", default=None, help="Write labelled points to this file")
    parser.add_argument(
        "--snake-angle",
        type=float,
        default=90.0,
        help="Turn in degrees that starts a new row along a winding sequence",
    )
    parser.add_argument(
        "--force-direction",
        choices=["forward", "serpentine"],
        default=None,
        help="Skip direction detection and number positions this way",
    )
    parser.add_argument("--log-level", default="INFO", help="Loguru level name")
    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for HoleRows.

    Parameters
    ----------
    argv : list[str] | None, optional
        Arguments without the program name; defaults to ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (0 for success, non-zero for error).
    """
    from loguru import logger

    from holerows.core.config import DetectionConfig
    from holerows.core.errors import RowDetectionError
    from holerows.core.row_detector import RowDetector
    from holerows.utils.row_detection.io import (
        build_labels_result,
        load_points_data,
        points_from_geodataframe,
    )

    args = build_parser().parse_args(argv)

    # Configure logging
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
               "<level>{message}</level>",
        level=args.log_level.upper(),
    )

    logger.info(f"Loading points from {args.input}")
    try:
        config = DetectionConfig(
            snake_angle_deg=args.snake_angle,
            force_direction=args.force_direction,
        )
        points_gdf = load_points_data(args.input)
        points = points_from_geodataframe(
            points_gdf, id_field=args.id_field, token_field=args.token_field
        )
        result = RowDetector(config).detect(points)
    except (RowDetectionError, OSError, TypeError, ValueError) as exc:
        logger.error(f"Row detection failed: {exc}")
        return 1

    for warning in result.warnings:
        logger.warning(warning)
    print(json.dumps(result.to_report(), indent=2, default=str))

    if args.output:
        output_path = Path(args.output)
        labelled = build_labels_result(points_gdf, result)
        labelled.to_file(output_path)
        logger.info(f"Labelled points written to {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
