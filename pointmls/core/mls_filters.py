"""
MLS Filters Module
MLS 필터 (투영 / 곡률 색상화 / 마칭 큐브 / 반경 추정 / 작은 컴포넌트 선택)

Host facing entry points. Each filter validates its parameters first, works on
copies while a progress callback may still cancel, then writes its results back
on the host collection and returns a small report for logging.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import logging
from typing import Any, Mapping, Optional, Union

import numpy as np

from .apss import GRADIENT_ACCURATE, GRADIENT_APPROX, APSSModel
from .components import delete_faces, face_components
from .components import select_small_components as _select_small_faces
from .curvature import CurvatureType, evaluate_curvature, select_curvature
from .errors import InvalidArgument
from .iso_surface import ExtractedMesh, IsoSurfaceExtractor
from .logging_utils import reset_log_once
from .mls_surface import MlsSurface
from .parameters import MlsParameters
from .point_set import PointSet
from .progress import ProgressCallback, ProgressReporter
from .refiner import AdaptiveRefiner, RefinementReport
from .rimls import RIMLSModel
from .spacing import ensure_radii, estimate_radii

_LOGGER = logging.getLogger(__name__)

VARIANT_APSS = "apss"
VARIANT_RIMLS = "rimls"

# vertices per projection / curvature batch
BATCH_SIZE = 4096

ParamsLike = Union[MlsParameters, Mapping[str, Any], None]


def _as_parameters(params: ParamsLike) -> MlsParameters:
    if params is None:
        return MlsParameters.from_defaults()
    if isinstance(params, MlsParameters):
        return params.validate()
    return MlsParameters.from_mapping(params)


def _normalize_variant(variant: str) -> str:
    v = str(variant).strip().lower()
    if v not in {VARIANT_APSS, VARIANT_RIMLS}:
        raise InvalidArgument(f"Unknown MLS variant: {variant!r} (expected 'apss' or 'rimls')")
    return v


def _commit(target: PointSet, source: PointSet) -> None:
    for f in fields(PointSet):
        setattr(target, f.name, getattr(source, f.name))


def _start_run(callback: Optional[ProgressCallback]) -> ProgressReporter:
    # warnings repeated inside loops are reported once per filter run
    reset_log_once()
    return ProgressReporter(callback)


def build_surface(
    point_set: PointSet,
    variant: str = VARIANT_APSS,
    params: ParamsLike = None,
    *,
    gradient_hint: Optional[str] = None,
) -> MlsSurface:
    """
    Build the MLS surface of ``point_set``.

    Args:
        point_set: control points (radii are estimated when missing)
        variant: "apss" or "rimls"
        params: MlsParameters or a host mapping
        gradient_hint: APSS only, overrides ``params.accurate_normal``

    Returns:
        APSSModel or RIMLSModel
    """
    p = _as_parameters(params)
    v = _normalize_variant(variant)
    if v == VARIANT_RIMLS:
        return RIMLSModel(
            point_set,
            filter_scale=p.filter_scale,
            projection_accuracy=p.projection_accuracy,
            max_projection_iters=p.max_projection_iters,
            sigma_n=p.sigma_n,
            max_refitting_iters=p.max_refitting_iters,
        )
    if gradient_hint is None:
        gradient_hint = GRADIENT_ACCURATE if p.accurate_normal else GRADIENT_APPROX
    return APSSModel(
        point_set,
        filter_scale=p.filter_scale,
        projection_accuracy=p.projection_accuracy,
        max_projection_iters=p.max_projection_iters,
        spherical_parameter=p.spherical_parameter,
        gradient_hint=gradient_hint,
    )


def _prepare_control(point_set: PointSet, p: MlsParameters) -> tuple[int, bool]:
    """Pre-MLS cleaning and radius estimate, in place on a working copy."""
    if point_set.n_points == 0:
        raise InvalidArgument("MLS filters need a non-empty point set")
    removed = point_set.remove_unreferenced_vertices()
    if removed:
        _LOGGER.info("Pre-MLS Cleaning: Removed %d unreferenced vertices", removed)
    computed = ensure_radii(point_set, p.radius_neighbors)
    return removed, computed


# ----------------------------------------------------------------------
# radius / components


@dataclass
class RadiusReport:
    n_points: int
    k: int
    mean_radius: float


def estimate_radius_from_density(point_set: PointSet, params: ParamsLike = None) -> RadiusReport:
    """Overwrite ``point_set.radii`` with the density based estimate."""
    p = _as_parameters(params)
    point_set.radii = estimate_radii(point_set.positions, p.radius_neighbors)
    report = RadiusReport(
        n_points=point_set.n_points,
        k=int(p.radius_neighbors),
        mean_radius=float(point_set.radii.mean()),
    )
    _LOGGER.info("Radius from density: k=%d, mean radius %.6g", report.k, report.mean_radius)
    return report


@dataclass
class ComponentReport:
    n_components: int
    n_selected_faces: int
    n_selected_vertices: int
    face_selection: np.ndarray = field(repr=False)
    n_deleted_faces: int = 0
    n_deleted_vertices: int = 0


def select_small_components(
    mesh: PointSet,
    params: ParamsLike = None,
    *,
    delete: bool = False,
) -> ComponentReport:
    """
    Select the faces of small connected components.

    The vertex selection of ``mesh`` is replaced by the vertices of the selected
    faces; with ``delete=True`` those faces and their vertices are removed.
    """
    p = _as_parameters(params)
    if not mesh.has_faces:
        raise InvalidArgument("Small component selection needs a triangle mesh")

    comps = face_components(mesh.faces)
    face_sel = _select_small_faces(
        mesh.faces, p.small_component_ratio, non_closed_only=p.non_closed_only
    )
    vert_sel = np.zeros(mesh.n_points, dtype=bool)
    vert_sel[mesh.faces[face_sel].reshape(-1)] = True
    report = ComponentReport(
        n_components=comps.n_components,
        n_selected_faces=int(np.count_nonzero(face_sel)),
        n_selected_vertices=int(np.count_nonzero(vert_sel)),
        face_selection=face_sel,
    )
    mesh.selection = vert_sel
    if delete and report.n_selected_faces:
        report.n_deleted_faces, report.n_deleted_vertices = delete_faces(mesh, face_sel)
        mesh.selection = None
    _LOGGER.info(
        "Selected %d faces of small components (%d components total)",
        report.n_selected_faces,
        report.n_components,
    )
    return report


# ----------------------------------------------------------------------
# projection


@dataclass
class ProjectionReport:
    variant: str
    n_projected: int = 0
    n_converged: int = 0
    n_degenerate: int = 0
    n_removed_unreferenced: int = 0
    radii_computed: bool = False
    refinement: Optional[RefinementReport] = None


def mls_projection(
    control: PointSet,
    proxy: Optional[PointSet] = None,
    variant: str = VARIANT_APSS,
    params: ParamsLike = None,
    callback: Optional[ProgressCallback] = None,
) -> ProjectionReport:
    """
    Project the vertices of ``proxy`` onto the MLS surface of ``control``.

    With ``max_subdivisions > 0`` the proxy mesh is refined between projection
    passes. Projected vertices receive the MLS normal. ``proxy`` defaults to the
    control set itself (the surface is built from a copy).

    The pre-MLS cleaning and the radius estimate of ``control`` are written back
    together with the projection.

    Raises:
        InvalidArgument: bad parameters or inputs
        Cancelled: the callback asked to stop; ``control`` and ``proxy`` are
            left untouched
    """
    p = _as_parameters(params)
    v = _normalize_variant(variant)
    same = proxy is None or proxy is control
    reporter = _start_run(callback)

    report = ProjectionReport(variant=v)
    cleaned = control.copy()
    report.n_removed_unreferenced, report.radii_computed = _prepare_control(cleaned, p)

    reporter.report(1, "Create the MLS data structures...", force=True)
    model = build_surface(cleaned, v, p)

    target = control if same else proxy
    work = cleaned.copy() if same else proxy.copy()
    refiner = AdaptiveRefiner(p.max_subdivisions, p.crease_angle_deg)
    n_passes = p.max_subdivisions + 1
    pass_index = [0]

    def _project(mesh: PointSet, mask: np.ndarray) -> None:
        idx = np.flatnonzero(mask)
        if mesh.normals is None:
            mesh.normals = np.zeros_like(mesh.positions)
        lo = 1 + 98 * pass_index[0] / n_passes
        step = reporter.span(lo, lo + 98 / n_passes, "MLS projection...")
        for start in range(0, idx.size, BATCH_SIZE):
            chunk = idx[start:start + BATCH_SIZE]
            res = model.project(mesh.positions[chunk], with_normal=True)
            ok = ~res.degenerate
            mesh.positions[chunk[ok]] = res.position[ok]
            mesh.normals[chunk[ok]] = res.normal[ok]
            report.n_converged += res.n_converged
            report.n_degenerate += res.n_degenerate
            step((start + chunk.size) / idx.size)
        report.n_projected += int(idx.size)
        pass_index[0] += 1

    report.refinement = refiner.run(work, _project, selection_only=p.selection_only, reporter=reporter)
    if not same:
        _commit(control, cleaned)
    _commit(target, work)

    if report.n_degenerate:
        _LOGGER.warning(
            "MLS projection: %d vertex projections hit a degenerate gradient or left the domain",
            report.n_degenerate,
        )
    _LOGGER.info("Successfully projected %d vertices", target.n_points)
    reporter.report(100, "MLS projection done", force=True)
    return report


# ----------------------------------------------------------------------
# curvature colorization


def quality_ramp(quality: np.ndarray, q_min: float, q_max: float) -> np.ndarray:
    """
    Red -> yellow -> green -> cyan -> blue color ramp over [q_min, q_max].

    Returns:
        (N, 4) uint8 RGBA
    """
    q = np.asarray(quality, dtype=np.float64).reshape(-1)
    span = float(q_max) - float(q_min)
    if not np.isfinite(span) or span <= 0.0:
        t = np.full(q.shape, 0.5)
    else:
        t = np.clip((q - float(q_min)) / span, 0.0, 1.0)

    # 4 segments: R->Y, Y->G, G->C, C->B
    keys = np.array([
        [255, 0, 0],
        [255, 255, 0],
        [0, 255, 0],
        [0, 255, 255],
        [0, 0, 255],
    ], dtype=np.float64)
    s = t * 4.0
    seg = np.minimum(s.astype(np.int64), 3)
    frac = (s - seg)[:, None]
    rgb = keys[seg] * (1.0 - frac) + keys[seg + 1] * frac

    out = np.empty((q.shape[0], 4), dtype=np.uint8)
    out[:, :3] = np.round(rgb).astype(np.uint8)
    out[:, 3] = 255
    return out


@dataclass
class ColorizeReport:
    variant: str
    curvature_type: str
    n_evaluated: int = 0
    n_invalid: int = 0
    quality_range: tuple[float, float] = (0.0, 0.0)
    radii_computed: bool = False


def colorize_curvature(
    point_set: PointSet,
    variant: str = VARIANT_APSS,
    params: ParamsLike = None,
    callback: Optional[ProgressCallback] = None,
) -> ColorizeReport:
    """
    Per-vertex MLS curvature into ``quality`` and a color ramp into ``colors``.

    Each vertex is projected onto the surface (without moving it) and the
    curvature is evaluated there. Principal curvatures and directions go to
    ``k1``/``k2``/``pd1``/``pd2``. Vertices with a degenerate gradient get 0.

    Raises:
        InvalidArgument: bad parameters, or APPROX_MEAN with the RIMLS variant
        Cancelled: the callback asked to stop; ``point_set`` is left untouched
    """
    p = _as_parameters(params)
    v = _normalize_variant(variant)
    ct = CurvatureType.parse(p.curvature_type)
    if ct is CurvatureType.APPROX_MEAN and v != VARIANT_APSS:
        raise InvalidArgument("Approximate mean curvature is only available with APSS")
    reporter = _start_run(callback)

    report = ColorizeReport(variant=v, curvature_type=ct.value)
    work = point_set.copy()
    _, report.radii_computed = _prepare_control(work, p)

    reporter.report(1, "Create the MLS data structures...", force=True)
    # the colorization always uses the full MLS gradient
    model = build_surface(work, v, p, gradient_hint=GRADIENT_ACCURATE)

    n = work.n_points
    mask = work.selected_mask() if p.selection_only else np.ones(n, dtype=bool)
    idx = np.flatnonzero(mask)

    def _slot(value, shape):
        return np.zeros(shape, dtype=np.float64) if value is None else np.array(value, dtype=np.float64)

    quality = _slot(work.quality, (n,))
    k1 = _slot(work.k1, (n,))
    k2 = _slot(work.k2, (n,))
    pd1 = _slot(work.pd1, (n, 3))
    pd2 = _slot(work.pd2, (n, 3))

    step = reporter.span(1, 98, "MLS colorization...")
    for start in range(0, idx.size, BATCH_SIZE):
        chunk = idx[start:start + BATCH_SIZE]
        on_surface = model.project(work.positions[chunk], with_normal=False).position

        if ct is CurvatureType.APPROX_MEAN:
            c = np.asarray(model.approx_mean_curvature(on_surface), dtype=np.float64)
            bad = ~np.isfinite(c)
            c[bad] = 0.0
        else:
            sample = evaluate_curvature(model, on_surface)
            good = sample.valid
            bad = ~good
            k1[chunk[good]] = sample.k1[good]
            k2[chunk[good]] = sample.k2[good]
            pd1[chunk[good]] = sample.dir1[good]
            pd2[chunk[good]] = sample.dir2[good]
            c = np.where(good, select_curvature(sample, ct), 0.0)

        quality[chunk] = c
        report.n_invalid += int(np.count_nonzero(bad))
        step((start + chunk.size) / idx.size)
    report.n_evaluated = int(idx.size)

    reporter.report(99, "Curvature to color...")
    if n:
        q_lo, q_hi = np.percentile(quality, [1.0, 99.0])
        report.quality_range = (float(q_lo), float(q_hi))
    work.quality = quality
    work.k1 = k1
    work.k2 = k2
    work.pd1 = pd1
    work.pd2 = pd2
    work.colors = quality_ramp(quality, *report.quality_range)
    _commit(point_set, work)

    if report.n_invalid:
        _LOGGER.warning("MLS colorization: %d vertices with a degenerate gradient", report.n_invalid)
    _LOGGER.info(
        "MLS colorization (%s, %s): %d vertices, quality range [%.6g, %.6g]",
        v,
        ct.value,
        report.n_evaluated,
        report.quality_range[0],
        report.quality_range[1],
    )
    reporter.report(100, "MLS colorization done", force=True)
    return report


# ----------------------------------------------------------------------
# marching cubes


def marching_cubes(
    point_set: PointSet,
    variant: str = VARIANT_APSS,
    params: ParamsLike = None,
    callback: Optional[ProgressCallback] = None,
) -> ExtractedMesh:
    """
    Polygonize the MLS surface of ``point_set`` into a new mesh.

    Raises:
        InvalidArgument: bad parameters or inputs
        Cancelled: the callback asked to stop; no mesh is returned and
            ``point_set`` is left untouched
    """
    p = _as_parameters(params)
    v = _normalize_variant(variant)
    reporter = _start_run(callback)
    work = point_set.copy()
    _prepare_control(work, p)

    reporter.report(1, "Create the MLS data structures...", force=True)
    model = build_surface(work, v, p)
    extractor = IsoSurfaceExtractor(model, p.resolution, p.small_component_ratio)
    mesh = extractor.extract(reporter)
    _commit(point_set, work)
    _LOGGER.info(
        "Marching cubes MLS meshing done: %d vertices, %d faces",
        mesh.n_vertices,
        mesh.n_faces,
    )
    return mesh
