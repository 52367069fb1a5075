"""
Per-run MLS parameters.

Hosts pass configuration as plain key/value pairs. Both snake_case names and the
names used by the MeshLab parameter dialogs ("FilterScale", "SigmaN", ...) are
accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import math
from typing import Any, Mapping, Optional

from .errors import InvalidArgument
from .mls_defaults import DEFAULTS, MlsDefaults


HOST_PARAMETER_NAMES = {
    "FilterScale": "filter_scale",
    "ProjectionAccuracy": "projection_accuracy",
    "MaxProjectionIters": "max_projection_iters",
    "SphericalParameter": "spherical_parameter",
    "AccurateNormal": "accurate_normal",
    "SigmaN": "sigma_n",
    "MaxRefittingIters": "max_refitting_iters",
    "MaxSubdivisions": "max_subdivisions",
    "ThAngleInDegree": "crease_angle_deg",
    "Resolution": "resolution",
    "NbFaceRatio": "small_component_ratio",
    "NonClosedOnly": "non_closed_only",
    "NbNeighbors": "radius_neighbors",
    "SelectionOnly": "selection_only",
    "CurvatureType": "curvature_type",
}

_CURVATURE_TYPE_BY_INDEX = ("mean", "gauss", "k1", "k2", "approx_mean")


@dataclass(frozen=True)
class MlsParameters:
    """
    Parameters of one MLS run.

    Attributes:
        filter_scale: spatial filter scale, relative to the per-point radius
        projection_accuracy: projection threshold, relative to the local radius
        max_projection_iters: projection iteration cap
        spherical_parameter: APSS plane (0) / sphere (1) blend
        accurate_normal: APSS gradient hint (full MLS derivative vs. sphere gradient)
        sigma_n: RIMLS normal reweighting width
        max_refitting_iters: RIMLS refitting passes (0 or 1 = plain IMLS)
        max_subdivisions: refinement passes of the projection workflow
        crease_angle_deg: refinement crease angle
        resolution: marching cubes cells per bounding-box axis
        small_component_ratio: face ratio below which components are dropped
        non_closed_only: only open components count as small
        radius_neighbors: neighbor count of the spacing estimate
        selection_only: restrict projection/colorization to selected vertices
        curvature_type: mean | gauss | k1 | k2 | approx_mean
    """

    filter_scale: float = DEFAULTS.filter_scale
    projection_accuracy: float = DEFAULTS.projection_accuracy
    max_projection_iters: int = DEFAULTS.max_projection_iters
    spherical_parameter: float = DEFAULTS.spherical_parameter
    accurate_normal: bool = True
    sigma_n: float = DEFAULTS.sigma_n
    max_refitting_iters: int = DEFAULTS.max_refitting_iters
    max_subdivisions: int = DEFAULTS.max_subdivisions
    crease_angle_deg: float = DEFAULTS.crease_angle_deg
    resolution: int = DEFAULTS.mc_resolution
    small_component_ratio: float = DEFAULTS.small_component_ratio
    non_closed_only: bool = False
    radius_neighbors: int = DEFAULTS.radius_neighbors
    selection_only: bool = False
    curvature_type: str = "mean"

    @classmethod
    def from_defaults(cls, defaults: Optional[MlsDefaults] = None) -> "MlsParameters":
        d = defaults if defaults is not None else DEFAULTS
        return cls(
            filter_scale=d.filter_scale,
            projection_accuracy=d.projection_accuracy,
            max_projection_iters=d.max_projection_iters,
            spherical_parameter=d.spherical_parameter,
            sigma_n=d.sigma_n,
            max_refitting_iters=d.max_refitting_iters,
            max_subdivisions=d.max_subdivisions,
            crease_angle_deg=d.crease_angle_deg,
            resolution=d.mc_resolution,
            small_component_ratio=d.small_component_ratio,
            radius_neighbors=d.radius_neighbors,
        )

    @classmethod
    def from_mapping(
        cls,
        values: Mapping[str, Any],
        *,
        defaults: Optional[MlsDefaults] = None,
    ) -> "MlsParameters":
        """Build parameters from a host mapping. Unknown keys raise InvalidArgument."""
        base = cls.from_defaults(defaults)
        known = {f.name: f for f in fields(cls)}
        updates: dict[str, Any] = {}
        for raw_key, raw_value in dict(values or {}).items():
            key = HOST_PARAMETER_NAMES.get(str(raw_key), str(raw_key))
            if key not in known:
                raise InvalidArgument(f"Unknown MLS parameter: {raw_key!r}")
            current = getattr(base, key)
            try:
                if key == "curvature_type":
                    updates[key] = _coerce_curvature_type(raw_value)
                elif isinstance(current, bool):
                    updates[key] = _coerce_bool(raw_value)
                elif isinstance(current, int):
                    updates[key] = int(raw_value)
                elif isinstance(current, float):
                    updates[key] = float(raw_value)
                else:
                    updates[key] = raw_value
            except (TypeError, ValueError) as e:
                raise InvalidArgument(f"Invalid value for {raw_key!r}: {raw_value!r}") from e
        params = replace(base, **updates)
        params.validate()
        return params

    def validate(self) -> "MlsParameters":
        if not math.isfinite(self.filter_scale) or self.filter_scale <= 0.0:
            raise InvalidArgument(f"filter_scale must be > 0 (got {self.filter_scale})")
        if not math.isfinite(self.projection_accuracy) or self.projection_accuracy <= 0.0:
            raise InvalidArgument(f"projection_accuracy must be > 0 (got {self.projection_accuracy})")
        if int(self.max_projection_iters) < 1:
            raise InvalidArgument(f"max_projection_iters must be >= 1 (got {self.max_projection_iters})")
        if not math.isfinite(self.sigma_n) or self.sigma_n <= 0.0:
            raise InvalidArgument(f"sigma_n must be > 0 (got {self.sigma_n})")
        if int(self.max_refitting_iters) < 0:
            raise InvalidArgument(f"max_refitting_iters must be >= 0 (got {self.max_refitting_iters})")
        if int(self.max_subdivisions) < 0:
            raise InvalidArgument(f"max_subdivisions must be >= 0 (got {self.max_subdivisions})")
        if int(self.resolution) < 2:
            raise InvalidArgument(f"resolution must be >= 2 (got {self.resolution})")
        if int(self.radius_neighbors) < 1:
            raise InvalidArgument(f"radius_neighbors must be >= 1 (got {self.radius_neighbors})")
        if not math.isfinite(self.small_component_ratio) or not 0.0 <= self.small_component_ratio <= 1.0:
            raise InvalidArgument(f"small_component_ratio must be in [0, 1] (got {self.small_component_ratio})")
        _coerce_curvature_type(self.curvature_type)
        return self


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off", ""}:
            return False
        raise ValueError(value)
    return bool(value)


def _coerce_curvature_type(value: Any) -> str:
    # hosts send the enum index of the dialog list (Mean, Gauss, K1, K2, ApproxMean)
    if isinstance(value, (int,)) and not isinstance(value, bool):
        if 0 <= int(value) < len(_CURVATURE_TYPE_BY_INDEX):
            return _CURVATURE_TYPE_BY_INDEX[int(value)]
        raise InvalidArgument(f"Unknown curvature type index: {value}")
    name = str(value).strip().lower().replace("-", "_")
    if name.isdigit():
        return _coerce_curvature_type(int(name))
    if name == "approxmean":
        name = "approx_mean"
    if name not in _CURVATURE_TYPE_BY_INDEX:
        raise InvalidArgument(f"Unknown curvature type: {value!r}")
    return name
