"""Dependency contract tests for the runtime stack.

This module locks expected runtime dependency behavior.
"""

from pathlib import Path
import tomllib

PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def _project() -> dict:
    return tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))["project"]


def test_runtime_dependencies_contract() -> None:
    """Ensure runtime dependencies include the GIS and numeric stack.

    Returns
    -------
    None

    Examples
    --------
    >>> test_runtime_dependencies_contract()
    """
    deps = _project()["dependencies"]
    for name in ("numpy", "scipy", "scikit-learn", "shapely", "geopandas", "loguru"):
        assert any(dep.startswith(name) for dep in deps), name


def test_no_viewer_only_dependencies() -> None:
    """Ensure map-viewer libraries are not pulled in by the engine.

    Returns
    -------
    None
    """
    deps = _project()["dependencies"]
    for name in ("pyqtgraph", "PySide6-Fluent-Widgets", "rasterio", "easyidp"):
        assert not any(dep.startswith(name) for dep in deps), name


def test_pytest_is_a_test_extra() -> None:
    """Ensure pytest is declared for the test extra only."""
    project = _project()
    assert any(dep.startswith("pytest") for dep in project["optional-dependencies"]["test"])
    assert not any(dep.startswith("pytest") for dep in project["dependencies"])
