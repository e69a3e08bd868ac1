"""
pipeline.py - Batch runner and end-to-end analysis

Per-image work (spatial index, intensity surface, association curves,
local profiles) is independent across images and runs on a bounded
process pool; results are merged by image id. A failing or degenerate
image is recorded and excluded without stopping its siblings. Testing,
region discovery and feature assembly run after every image finished.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

import pandas as pd

from .data.config import AnalysisConfig, ColumnConfig, DegenerateImageWarning
from .data.core import ImageData, SpatialCohort
from .data.loaders import build_cohort
from .features.tables import FeatureTables, build_feature_tables
from .spatial.neighborhoods import local_profiles_from_counts, profile_columns
from .spatial.regions import RegionResult, discover_regions
from .spatial.ripley import CURVE_COLUMNS, cross_l_matrix, curves_frame, prepare_image
from .stats.testing import AssociationTestReport, compare_conditions

logger = logging.getLogger(__name__)


@dataclass
class ImageResult:
    """
    Per-image output of the worker pool.

    status is 'ok', 'degenerate' or 'failed'; reason explains the last two.
    """

    image_id: str
    status: str
    curves: pd.DataFrame | None = None
    profiles: pd.DataFrame | None = None
    reason: str | None = None


@dataclass
class AnalysisResult:
    """
    Everything produced by run_analysis.

    Attributes
    ----------
    cohort : SpatialCohort
    curves : pd.DataFrame
        AssociationCurve table for every image (NaN rows for excluded ones).
    test_report : AssociationTestReport
    regions : RegionResult
    features : FeatureTables
    excluded_images : dict
        image id -> reason (degenerate or failed).
    config : AnalysisConfig
    """

    cohort: SpatialCohort
    curves: pd.DataFrame
    test_report: AssociationTestReport
    regions: RegionResult
    features: FeatureTables
    excluded_images: dict = field(default_factory=dict)
    config: AnalysisConfig | None = None

    def summary(self) -> dict:
        return {
            "cohort": self.cohort.summary(),
            "tests": self.test_report.summary(),
            "regions": self.regions.summary(),
            "imputed": self.features.imputed,
            "excluded_images": dict(self.excluded_images),
        }


# ========== Per-image tasks (top level so they pickle) ==========


def _image_task(image: ImageData, cell_types: list[str], config: AnalysisConfig, what: tuple[str, ...]) -> ImageResult:
    index, counts = prepare_image(image, config)
    if counts is None:
        return ImageResult(
            image_id=image.image_id,
            status="degenerate",
            curves=curves_frame(image.image_id, None, cell_types, config.radii),
            reason=index.degenerate_reason,
        )

    curves = profiles = None
    if "curves" in what:
        values = cross_l_matrix(image.codes, counts, config.radii, config.min_cells_per_type)
        curves = curves_frame(image.image_id, values, cell_types, config.radii)
    if "profiles" in what:
        profiles = local_profiles_from_counts(image.cell_ids, counts, cell_types, config.radii)
    return ImageResult(image_id=image.image_id, status="ok", curves=curves, profiles=profiles)


def _safe_image_task(image, cell_types, config, what) -> ImageResult:
    try:
        return _image_task(image, cell_types, config, what)
    except Exception as e:
        logger.exception(f"Image '{image.image_id}' failed")
        return ImageResult(
            image_id=image.image_id,
            status="failed",
            curves=curves_frame(image.image_id, None, cell_types, config.radii),
            reason=f"{type(e).__name__}: {e}",
        )


def map_images(
    cohort: SpatialCohort,
    task: Callable[..., ImageResult],
    config: AnalysisConfig,
    *args,
) -> dict[str, ImageResult]:
    """
    Run a per-image task over every image of the cohort.

    Parameters
    ----------
    cohort : SpatialCohort
    task : callable
        Top-level function task(image, cell_types, config, *args) ->
        ImageResult. Must catch its own per-image errors.
    config : AnalysisConfig
        n_jobs sets the pool size; 1 runs in-process.

    Returns
    -------
    dict
        image id -> ImageResult, in cohort image order.
    """
    cell_types = list(cohort.cell_types)
    results = {}

    if config.n_jobs == 1 or cohort.n_images <= 1:
        for image in cohort.iter_images():
            results[image.image_id] = task(image, cell_types, config, *args)
    else:
        n_workers = min(config.n_jobs, cohort.n_images)
        with ProcessPoolExecutor(max_workers=n_workers) as pool:
            futures = {
                pool.submit(task, image, cell_types, config, *args): image.image_id
                for image in cohort.iter_images()
            }
            for future in as_completed(futures):
                image_id = futures[future]
                try:
                    results[image_id] = future.result()
                except Exception as e:
                    # Worker process died or result failed to unpickle
                    logger.error(f"Image '{image_id}' failed in worker: {e}")
                    results[image_id] = ImageResult(
                        image_id=image_id,
                        status="failed",
                        curves=curves_frame(image_id, None, cell_types, config.radii),
                        reason=f"{type(e).__name__}: {e}",
                    )

    return {image_id: results[image_id] for image_id in cohort.image_ids}


def _excluded(results: dict[str, ImageResult]) -> dict[str, str]:
    return {k: f"{r.status}: {r.reason}" for k, r in results.items() if r.status != "ok"}


def _warn_excluded(excluded: dict[str, str]) -> None:
    if not excluded:
        return
    listing = "; ".join(f"{k} ({v})" for k, v in list(excluded.items())[:10])
    warnings.warn(
        f"{len(excluded)} images excluded from aggregation: {listing}",
        DegenerateImageWarning,
        stacklevel=3,
    )


def _merge_curves(results: dict[str, ImageResult]) -> pd.DataFrame:
    frames = [r.curves for r in results.values() if r.curves is not None]
    if not frames:
        return pd.DataFrame(columns=CURVE_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def _merge_profiles(results: dict[str, ImageResult], cell_types: list[str], config: AnalysisConfig) -> pd.DataFrame:
    frames = [r.profiles for r in results.values() if r.profiles is not None]
    if not frames:
        return pd.DataFrame(columns=profile_columns(cell_types, config.radii))
    return pd.concat(frames)


# ========== Entry points ==========


def compute_association_curves(
    cohort: SpatialCohort,
    config: AnalysisConfig | None = None,
) -> tuple[pd.DataFrame, dict[str, str]]:
    """
    AssociationCurve table for every image of the cohort.

    Returns
    -------
    curves : pd.DataFrame
        [image_id, type_from, type_to, radius, value]
    excluded : dict
        image id -> reason for degenerate or failed images (their rows
        are all NaN).
    """
    config = config or AnalysisConfig()
    results = map_images(cohort, _safe_image_task, config, ("curves",))
    excluded = _excluded(results)
    curves = _merge_curves(results)

    n_na = int(curves["value"].isna().sum())
    print(
        f"  ✓ Association curves: {cohort.n_images} images, {cohort.n_types} types, "
        f"{len(config.radii)} radii ({n_na:,} of {len(curves):,} values NA)"
    )
    _warn_excluded(excluded)
    return curves, excluded


def compute_local_profiles(
    cohort: SpatialCohort,
    config: AnalysisConfig | None = None,
) -> tuple[pd.DataFrame, dict[str, str]]:
    """
    Local association profile of every cell in non-degenerate images.

    Returns
    -------
    profiles : pd.DataFrame
        (n_cells x n_radii * n_types), indexed by cell id.
    excluded : dict
        image id -> reason for images without profiles.
    """
    config = config or AnalysisConfig()
    results = map_images(cohort, _safe_image_task, config, ("profiles",))
    excluded = _excluded(results)
    profiles = _merge_profiles(results, list(cohort.cell_types), config)
    print(f"  ✓ Local profiles: {len(profiles):,} cells x {profiles.shape[1]} features")
    _warn_excluded(excluded)
    return profiles, excluded


def run_analysis(
    cells: pd.DataFrame,
    images: pd.DataFrame,
    config: AnalysisConfig | None = None,
    type_proportions: pd.DataFrame | None = None,
) -> AnalysisResult:
    """
    Full analysis: curves, condition tests, regions and feature tables.

    Parameters
    ----------
    cells : pd.DataFrame
        Cell table (id, image id, x, y, cell type).
    images : pd.DataFrame
        Image table (id, condition, optional subject id / width / height).
    config : AnalysisConfig, optional
        Column names are taken from config.columns.
    type_proportions : pd.DataFrame, optional
        Externally supplied cell-type proportions per image. Computed
        from the cohort when omitted.

    Returns
    -------
    AnalysisResult
    """
    config = config or AnalysisConfig()
    print(f"\nSpatial association analysis (radii={list(config.radii)}, sigma={config.sigma:g})")

    cohort = build_cohort(cells, images, columns=config.columns)

    results = map_images(cohort, _safe_image_task, config, ("curves", "profiles"))
    excluded = _excluded(results)
    cell_types = list(cohort.cell_types)
    curves = _merge_curves(results)
    profiles = _merge_profiles(results, cell_types, config)
    print(f"  ✓ Per-image work: {cohort.n_images - len(excluded)} ok, {len(excluded)} excluded")

    test_report = compare_conditions(curves, cohort.images, config, excluded_images=excluded)

    cell_images = cohort.cells.set_index("cell_id")["image_id"]
    regions = discover_regions(profiles, cell_images, config, image_ids=cohort.image_ids)

    if type_proportions is None:
        type_proportions = cohort.cell_type_proportions()
    features = build_feature_tables(type_proportions, curves, regions.proportions, config)

    _warn_excluded(excluded)
    return AnalysisResult(
        cohort=cohort,
        curves=curves,
        test_report=test_report,
        regions=regions,
        features=features,
        excluded_images=excluded,
        config=config,
    )


def load_and_run(
    cells: pd.DataFrame,
    images: pd.DataFrame,
    columns: ColumnConfig | None = None,
    **options,
) -> AnalysisResult:
    """Convenience wrapper: build AnalysisConfig from keyword options and run."""
    config = AnalysisConfig(columns=columns or ColumnConfig(), **options)
    return run_analysis(cells, images, config)
