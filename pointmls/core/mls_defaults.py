"""
Default MLS parameters.

Values can be overridden via environment variables to avoid hardcoded tuning
in multiple entrypoints. Invalid or out-of-range values fall back silently.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import os


ENV_FILTER_SCALE = "POINTMLS_FILTER_SCALE"
ENV_PROJECTION_ACCURACY = "POINTMLS_PROJECTION_ACCURACY"
ENV_MAX_PROJECTION_ITERS = "POINTMLS_MAX_PROJECTION_ITERS"
ENV_SPHERICAL_PARAMETER = "POINTMLS_SPHERICAL_PARAMETER"
ENV_SIGMA_N = "POINTMLS_SIGMA_N"
ENV_MAX_REFITTING_ITERS = "POINTMLS_MAX_REFITTING_ITERS"
ENV_MAX_SUBDIVISIONS = "POINTMLS_MAX_SUBDIVISIONS"
ENV_CREASE_ANGLE_DEG = "POINTMLS_CREASE_ANGLE_DEG"
ENV_MC_RESOLUTION = "POINTMLS_MC_RESOLUTION"
ENV_SMALL_COMPONENT_RATIO = "POINTMLS_SMALL_COMPONENT_RATIO"
ENV_RADIUS_NEIGHBORS = "POINTMLS_RADIUS_NEIGHBORS"


@dataclass(frozen=True)
class MlsDefaults:
    filter_scale: float
    projection_accuracy: float
    max_projection_iters: int
    spherical_parameter: float
    sigma_n: float
    max_refitting_iters: int
    max_subdivisions: int
    crease_angle_deg: float
    mc_resolution: int
    small_component_ratio: float
    radius_neighbors: int


def _read_int_env(
    env_name: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if min_value is not None and value < min_value:
        return default
    if max_value is not None and value > max_value:
        return default
    return value


def _read_float_env(
    env_name: str,
    default: float,
    *,
    min_value: float | None = None,
    max_value: float | None = None,
    exclusive_min: bool = False,
) -> float:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if not math.isfinite(value):
        return default
    if min_value is not None:
        if value < min_value or (exclusive_min and value == min_value):
            return default
    if max_value is not None and value > max_value:
        return default
    return value


def load_mls_defaults() -> MlsDefaults:
    return MlsDefaults(
        filter_scale=_read_float_env(ENV_FILTER_SCALE, 2.0, min_value=0.0, exclusive_min=True),
        projection_accuracy=_read_float_env(
            ENV_PROJECTION_ACCURACY, 1e-4, min_value=0.0, exclusive_min=True
        ),
        max_projection_iters=_read_int_env(ENV_MAX_PROJECTION_ITERS, 15, min_value=1, max_value=1000),
        # any real value is accepted for the spherical parameter
        spherical_parameter=_read_float_env(ENV_SPHERICAL_PARAMETER, 1.0),
        sigma_n=_read_float_env(ENV_SIGMA_N, 0.75, min_value=0.0, exclusive_min=True),
        max_refitting_iters=_read_int_env(ENV_MAX_REFITTING_ITERS, 3, min_value=0, max_value=100),
        max_subdivisions=_read_int_env(ENV_MAX_SUBDIVISIONS, 0, min_value=0, max_value=10),
        crease_angle_deg=_read_float_env(ENV_CREASE_ANGLE_DEG, 2.0, min_value=0.0, max_value=180.0),
        mc_resolution=_read_int_env(ENV_MC_RESOLUTION, 200, min_value=2, max_value=4096),
        small_component_ratio=_read_float_env(
            ENV_SMALL_COMPONENT_RATIO, 0.1, min_value=0.0, max_value=1.0
        ),
        radius_neighbors=_read_int_env(ENV_RADIUS_NEIGHBORS, 16, min_value=1, max_value=1024),
    )


DEFAULTS = load_mls_defaults()
