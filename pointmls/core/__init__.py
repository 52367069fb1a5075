"""
Core processing modules for PointMLS
"""

from .errors import MlsError, InvalidArgument, Cancelled, NumericFault
from .logging_utils import configure_logging
from .point_set import PointSet
from .parameters import MlsParameters
from .spacing import estimate_radii
from .mls_surface import MlsSurface
from .apss import APSSModel
from .rimls import RIMLSModel
from .projection import ProjectionResult
from .curvature import CurvatureType, CurvatureSample, weingarten_map
from .refiner import AdaptiveRefiner, EdgeAnglePredicate
from .iso_surface import IsoSurfaceExtractor, ExtractedMesh
from .mls_filters import (
    build_surface,
    estimate_radius_from_density,
    select_small_components,
    mls_projection,
    colorize_curvature,
    marching_cubes,
)

configure_logging()

__all__ = [
    # Errors
    'MlsError',
    'InvalidArgument',
    'Cancelled',
    'NumericFault',
    # Logging
    'configure_logging',
    # Data
    'PointSet',
    'MlsParameters',
    # Spacing
    'estimate_radii',
    # MLS surfaces
    'MlsSurface',
    'APSSModel',
    'RIMLSModel',
    'ProjectionResult',
    # Differential geometry
    'CurvatureType',
    'CurvatureSample',
    'weingarten_map',
    # Refinement
    'AdaptiveRefiner',
    'EdgeAnglePredicate',
    # Iso-surface
    'IsoSurfaceExtractor',
    'ExtractedMesh',
    # Filters
    'build_surface',
    'estimate_radius_from_density',
    'select_small_components',
    'mls_projection',
    'colorize_curvature',
    'marching_cubes',
]
