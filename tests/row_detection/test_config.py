"""Tests for detection configuration validation."""

from __future__ import annotations

import pytest

from holerows.core.config import DetectionConfig
from holerows.core.errors import ConfigurationError
from holerows.core.models import DirectionType


def test_default_config_is_valid() -> None:
    """Default thresholds should pass validation."""
    config = DetectionConfig()
    assert config.snake_angle_deg == 90.0
    assert config.force_direction is None


def test_force_direction_accepts_text() -> None:
    """Direction names should be coerced into ``DirectionType``."""
    config = DetectionConfig(force_direction="Serpentine")
    assert config.force_direction is DirectionType.SERPENTINE


def test_force_direction_rejects_unknown_name() -> None:
    """Unknown direction names should raise ConfigurationError."""
    with pytest.raises(ConfigurationError):
        DetectionConfig(force_direction="sideways")


@pytest.mark.parametrize("angle", [70.0, 110.0])
def test_snake_angle_outside_range_is_rejected(angle: float) -> None:
    """Winding break angle should stay within [75, 105] degrees."""
    with pytest.raises(ConfigurationError):
        DetectionConfig(snake_angle_deg=angle)


def test_threshold_ordering_is_checked() -> None:
    """Curved ratio above straight ratio should be rejected."""
    with pytest.raises(ConfigurationError):
        DetectionConfig(ratio_straight=3.0, ratio_curved=5.0)


def test_fraction_fields_are_bounded() -> None:
    """Confidence thresholds outside (0, 1] should be rejected."""
    with pytest.raises(ConfigurationError):
        DetectionConfig(min_confidence=1.5)


def test_replace_returns_validated_copy() -> None:
    """``replace`` should keep other fields and validate the override."""
    config = DetectionConfig(snake_angle_deg=80.0)
    updated = config.replace(min_confidence=0.6)
    assert updated.snake_angle_deg == 80.0
    assert updated.min_confidence == 0.6
    assert config.min_confidence == 0.5
    with pytest.raises(ConfigurationError):
        config.replace(snake_angle_deg=10.0)


def test_replace_rejects_unknown_field() -> None:
    """Unknown field names should raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match="unknown"):
        DetectionConfig().replace(not_a_field=1)


def test_configuration_error_is_a_value_error() -> None:
    """Callers catching ValueError should also catch configuration errors."""
    with pytest.raises(ValueError):
        DetectionConfig(winding_window=1)
