"""
config.py - Configuration and exceptions for spatassoc

Contains:
- ColumnConfig: Input column names
- AnalysisConfig: Every analysis option, validated eagerly
- Exception and warning classes
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

import numpy as np

CONDITION_TESTS = ("two-sample-rank", "two-sample-mean", "mixed-effect")

# Public names -> statsmodels.stats.multitest method codes
FDR_METHODS = {
    "benjamini-hochberg": "fdr_bh",
    "benjamini-yekutieli": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
}

RADIUS_REDUCTIONS = ("per-radius", "mean", "auc", "single")
PAIR_MODES = ("ordered", "unordered")
EDGE_CORRECTIONS = ("isotropic", "none")


class SpatassocError(Exception):
    """Base exception for spatassoc errors."""

    pass


class ConfigError(SpatassocError, ValueError):
    """Raised when an analysis option is invalid."""

    pass


class DataError(SpatassocError, ValueError):
    """Raised when input cell or image tables are malformed."""

    def __init__(self, message: str, column: str | None = None, image_id: str | None = None):
        self.column = column
        self.image_id = image_id
        super().__init__(message)


class JoinMismatchError(SpatassocError):
    """Raised when feature views disagree on their image-id sets."""

    def __init__(self, mismatches: dict[str, dict[str, list[str]]]):
        self.mismatches = mismatches
        parts = []
        for view, diff in mismatches.items():
            if diff["missing"]:
                parts.append(f"{view} missing {diff['missing']}")
            if diff["extra"]:
                parts.append(f"{view} has extra {diff['extra']}")
        super().__init__("Feature views disagree on image ids: " + "; ".join(parts))


class DegenerateImageWarning(UserWarning):
    """An image had too few cells for some or all statistics."""

    pass


class ConvergenceWarning(UserWarning):
    """k-means stopped at the iteration cap before assignments settled."""

    pass


@dataclass
class ColumnConfig:
    """Column names for the cell and image input tables."""

    # Cell table
    cell_id_col: str = "cell_id"
    image_id_col: str = "image_id"
    x_col: str = "x"
    y_col: str = "y"
    cell_type_col: str = "cell_type"

    # Image table
    condition_col: str = "condition"
    subject_col: str = "subject_id"
    width_col: str = "width"
    height_col: str = "height"

    def cell_columns(self) -> list[str]:
        """Required columns of the cell table."""
        return [self.cell_id_col, self.image_id_col, self.x_col, self.y_col, self.cell_type_col]

    def image_columns(self) -> list[str]:
        """Required columns of the image table."""
        return [self.image_id_col, self.condition_col]


@dataclass
class AnalysisConfig:
    """
    Options for the association, testing and region analyses.

    Validated on construction; an invalid value raises ConfigError before
    any computation starts.

    Attributes
    ----------
    radii : tuple of float
        Positive, strictly increasing distances (coordinate units).
    sigma : float
        Gaussian bandwidth of the intensity surface.
    min_cells_per_type : int
        Types with fewer cells in an image give NA for that image.
    k_regions : int
        Number of regions for k-means.
    kmeans_max_iter : int
        Iteration cap for k-means.
    kmeans_n_init : int
        Number of seeded k-means restarts.
    random_seed : int
        Seed for k-means and permutation envelopes.
    condition_test : str
        'two-sample-rank', 'two-sample-mean' or 'mixed-effect'.
    fdr_method : str
        'benjamini-hochberg', 'benjamini-yekutieli', 'bonferroni' or 'holm'.
    radius_reduction : str
        'per-radius', 'mean', 'auc' or 'single'.
    test_radius : float, optional
        Radius used when radius_reduction='single'.
    pair_mode : str
        'ordered' tests (A, B) and (B, A) separately; 'unordered' averages them.
    reference_condition : str, optional
        Baseline group for effects. Defaults to the first sorted condition.
    n_jobs : int
        Worker processes for per-image work (1 = serial).
    edge_correction : str
        'isotropic' (Ripley) or 'none'.
    missing_value : float
        Value replacing NA in every feature view.
    """

    radii: tuple[float, ...] = (20.0, 50.0, 100.0)
    sigma: float = 50.0
    min_cells_per_type: int = 5
    k_regions: int = 5
    kmeans_max_iter: int = 300
    kmeans_n_init: int = 10
    random_seed: int = 42
    condition_test: str = "two-sample-rank"
    fdr_method: str = "benjamini-hochberg"
    radius_reduction: str = "mean"
    test_radius: float | None = None
    pair_mode: str = "ordered"
    reference_condition: str | None = None
    n_jobs: int = 1
    edge_correction: str = "isotropic"
    missing_value: float = 0.0
    columns: ColumnConfig = field(default_factory=ColumnConfig)

    def __post_init__(self):
        self.radii = tuple(float(r) for r in np.atleast_1d(self.radii))
        self._validate()

    def _validate(self) -> None:
        radii = np.asarray(self.radii)
        if len(radii) == 0:
            raise ConfigError("radii must contain at least one distance")
        if not np.all(np.isfinite(radii)) or np.any(radii <= 0):
            raise ConfigError(f"radii must be positive and finite, got {self.radii}")
        if np.any(np.diff(radii) <= 0):
            raise ConfigError(f"radii must be strictly increasing, got {self.radii}")

        if not np.isfinite(self.sigma) or self.sigma <= 0:
            raise ConfigError(f"sigma must be positive, got {self.sigma}")

        for name in ("min_cells_per_type", "k_regions", "kmeans_max_iter", "kmeans_n_init", "n_jobs"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")

        _check_choice("condition_test", self.condition_test, CONDITION_TESTS)
        _check_choice("fdr_method", self.fdr_method, tuple(FDR_METHODS))
        _check_choice("radius_reduction", self.radius_reduction, RADIUS_REDUCTIONS)
        _check_choice("pair_mode", self.pair_mode, PAIR_MODES)
        _check_choice("edge_correction", self.edge_correction, EDGE_CORRECTIONS)

        if self.radius_reduction == "single":
            if self.test_radius is None:
                raise ConfigError("radius_reduction='single' requires test_radius")
            if not np.any(np.isclose(radii, self.test_radius)):
                raise ConfigError(f"test_radius {self.test_radius} is not one of radii {self.radii}")
        elif self.test_radius is not None:
            raise ConfigError("test_radius is only used with radius_reduction='single'")

        if not np.isfinite(self.missing_value):
            raise ConfigError("missing_value must be finite")

    @property
    def multitest_method(self) -> str:
        """statsmodels method code for fdr_method."""
        return FDR_METHODS[self.fdr_method]

    def to_dict(self) -> dict:
        """Plain dictionary of every option (for run reports)."""
        return asdict(self)


def _check_choice(name: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ConfigError(f"Unknown {name}: {value!r}. Use one of {list(choices)}")
