import pytest

from pointmls.core.errors import InvalidArgument
from pointmls.core.mls_defaults import (
    ENV_CREASE_ANGLE_DEG,
    ENV_FILTER_SCALE,
    ENV_MAX_PROJECTION_ITERS,
    ENV_MC_RESOLUTION,
    ENV_RADIUS_NEIGHBORS,
    ENV_SIGMA_N,
    ENV_SMALL_COMPONENT_RATIO,
    load_mls_defaults,
)
from pointmls.core.parameters import MlsParameters


def _clear_mls_env(monkeypatch):
    for key in (
        ENV_FILTER_SCALE,
        ENV_MAX_PROJECTION_ITERS,
        ENV_SIGMA_N,
        ENV_CREASE_ANGLE_DEG,
        ENV_MC_RESOLUTION,
        ENV_SMALL_COMPONENT_RATIO,
        ENV_RADIUS_NEIGHBORS,
    ):
        monkeypatch.delenv(key, raising=False)


def test_mls_defaults_without_env(monkeypatch):
    _clear_mls_env(monkeypatch)
    defaults = load_mls_defaults()

    assert defaults.filter_scale == 2.0
    assert defaults.projection_accuracy == 1e-4
    assert defaults.max_projection_iters == 15
    assert defaults.sigma_n == 0.75
    assert defaults.max_refitting_iters == 3
    assert defaults.max_subdivisions == 0
    assert defaults.crease_angle_deg == 2.0
    assert defaults.mc_resolution == 200
    assert defaults.small_component_ratio == 0.1
    assert defaults.radius_neighbors == 16


def test_mls_defaults_with_valid_env(monkeypatch):
    _clear_mls_env(monkeypatch)
    monkeypatch.setenv(ENV_FILTER_SCALE, "3.5")
    monkeypatch.setenv(ENV_MAX_PROJECTION_ITERS, "40")
    monkeypatch.setenv(ENV_SIGMA_N, "1.25")
    monkeypatch.setenv(ENV_MC_RESOLUTION, "64")
    monkeypatch.setenv(ENV_RADIUS_NEIGHBORS, "8")

    defaults = load_mls_defaults()

    assert defaults.filter_scale == 3.5
    assert defaults.max_projection_iters == 40
    assert defaults.sigma_n == 1.25
    assert defaults.mc_resolution == 64
    assert defaults.radius_neighbors == 8


def test_mls_defaults_invalid_values_fallback(monkeypatch):
    _clear_mls_env(monkeypatch)
    monkeypatch.setenv(ENV_FILTER_SCALE, "0")
    monkeypatch.setenv(ENV_MAX_PROJECTION_ITERS, "abc")
    monkeypatch.setenv(ENV_SIGMA_N, "nan")
    monkeypatch.setenv(ENV_CREASE_ANGLE_DEG, "270")
    monkeypatch.setenv(ENV_MC_RESOLUTION, "1")
    monkeypatch.setenv(ENV_SMALL_COMPONENT_RATIO, "1.5")

    defaults = load_mls_defaults()

    assert defaults.filter_scale == 2.0
    assert defaults.max_projection_iters == 15
    assert defaults.sigma_n == 0.75
    assert defaults.crease_angle_deg == 2.0
    assert defaults.mc_resolution == 200
    assert defaults.small_component_ratio == 0.1


def test_parameters_from_host_mapping():
    params = MlsParameters.from_mapping(
        {
            "FilterScale": "3.0",
            "MaxSubdivisions": 2,
            "ThAngleInDegree": 15,
            "SelectionOnly": "true",
            "CurvatureType": 3,
            "sigma_n": 1.5,
        }
    )

    assert params.filter_scale == 3.0
    assert params.max_subdivisions == 2
    assert params.crease_angle_deg == 15.0
    assert params.selection_only is True
    assert params.curvature_type == "k2"
    assert params.sigma_n == 1.5


def test_parameters_curvature_type_names():
    assert MlsParameters.from_mapping({"CurvatureType": "ApproxMean"}).curvature_type == "approx_mean"
    assert MlsParameters.from_mapping({"CurvatureType": "4"}).curvature_type == "approx_mean"
    assert MlsParameters.from_mapping({"curvature_type": "Gauss"}).curvature_type == "gauss"


@pytest.mark.parametrize(
    "values",
    [
        {"NoSuchParameter": 1},
        {"FilterScale": -1.0},
        {"MaxProjectionIters": 0},
        {"Resolution": 1},
        {"NbFaceRatio": 2.0},
        {"CurvatureType": 9},
        {"SigmaN": "wide"},
    ],
)
def test_parameters_reject_bad_values(values):
    with pytest.raises(InvalidArgument):
        MlsParameters.from_mapping(values)


def test_parameters_follow_env_defaults(monkeypatch):
    _clear_mls_env(monkeypatch)
    monkeypatch.setenv(ENV_FILTER_SCALE, "4.0")

    params = MlsParameters.from_defaults(load_mls_defaults())

    assert params.filter_scale == 4.0
    assert params.resolution == 200
