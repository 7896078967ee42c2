"""Tests for DetectionParameters validation and conversion."""

import math

import pytest

from uvc_bridge.devices import (
    DEFAULT_DETECTION,
    BridgeError,
    DetectionParameters,
    InvalidParametersError,
)


class TestDefaults:
    def test_default_values(self):
        params = DetectionParameters()
        assert params.enabled is True
        assert params.apply_pre_blur is False
        assert params.dp == 1.0
        assert params.min_dist == 120.0
        assert params.param1 == 60.0
        assert params.param2 == 30.0
        assert params.min_radius == 20
        assert params.max_radius == 110

    def test_defaults_validate(self):
        assert DEFAULT_DETECTION.validate() is DEFAULT_DETECTION

    def test_frozen(self):
        with pytest.raises(AttributeError):
            DEFAULT_DETECTION.dp = 2.0  # type: ignore[misc]


class TestValidate:
    """Tests for DetectionParameters.validate()."""

    @pytest.mark.parametrize(
        "changes",
        [
            {"dp": 0},
            {"dp": -1.0},
            {"min_dist": -0.5},
            {"param1": 0},
            {"param2": 0},
            {"param2": -10},
            {"min_radius": -1},
            {"min_radius": 50, "max_radius": 10},
            {"dp": math.nan},
            {"param1": math.inf},
            {"dp": "1.0"},
            {"param2": True},
            {"min_radius": 20.5},
            {"max_radius": None},
        ],
    )
    def test_rejects(self, changes):
        """Verifies each invalid field is rejected with InvalidParametersError.

        Arrangement:
        1. Default parameters with one or two fields replaced.

        Action:
        Calls validate().

        Assertion Strategy:
        Raises InvalidParametersError, which is also a ValueError and a
        BridgeError so either family of handler catches it.
        """
        params = DEFAULT_DETECTION.replace(**changes)
        with pytest.raises(InvalidParametersError) as exc_info:
            params.validate()
        assert isinstance(exc_info.value, ValueError)
        assert isinstance(exc_info.value, BridgeError)

    def test_error_names_field(self):
        with pytest.raises(InvalidParametersError, match="max_radius"):
            DetectionParameters(min_radius=50, max_radius=10).validate()

    @pytest.mark.parametrize(
        "changes",
        [
            {"min_dist": 0},
            {"min_radius": 0, "max_radius": 0},
            {"min_radius": 40, "max_radius": 40},
            {"dp": 2},
            {"enabled": False, "apply_pre_blur": True},
        ],
    )
    def test_accepts_boundaries(self, changes):
        DEFAULT_DETECTION.replace(**changes).validate()

    def test_disabled_parameters_still_validated(self):
        with pytest.raises(InvalidParametersError):
            DetectionParameters(enabled=False, dp=0).validate()


class TestConversion:
    def test_replace_returns_new_instance(self):
        changed = DEFAULT_DETECTION.replace(param2=40.0)
        assert changed.param2 == 40.0
        assert DEFAULT_DETECTION.param2 == 30.0

    def test_dict_round_trip(self):
        params = DetectionParameters(apply_pre_blur=True, param2=42.0)
        assert DetectionParameters.from_dict(params.to_dict()) == params

    def test_from_dict_ignores_unknown_keys(self):
        params = DetectionParameters.from_dict({"param1": 80, "gamma": 2})
        assert params.param1 == 80
        assert params.dp == DEFAULT_DETECTION.dp
