"""
regions.py - Region discovery by clustering local association profiles

Pools the local profiles of every cell of every image, standardizes the
features and partitions cells into K regions with seeded k-means. Each
region's profile (mean raw feature vector) describes which cell types
dominate it; each image gets the fraction of its cells in every region.
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler

from ..data.config import AnalysisConfig, ConvergenceWarning


@dataclass
class RegionResult:
    """
    Output of one region-discovery run.

    Attributes
    ----------
    labels : pd.Series
        Region label (1..K) per cell, indexed by cell id.
    profiles : pd.DataFrame
        RegionProfile: mean raw feature vector per region (K x n_features).
    proportions : pd.DataFrame
        Fraction of each image's cells per region (n_images x K).
    converged : bool
        False if k-means stopped at the iteration cap.
    n_iter : int
        Iterations used by the retained k-means run.
    inertia : float
        Within-cluster sum of squares on standardized features.
    """

    labels: pd.Series
    profiles: pd.DataFrame
    proportions: pd.DataFrame
    converged: bool
    n_iter: int
    inertia: float

    @property
    def k(self) -> int:
        return len(self.profiles)

    def dominant_types(self, radius: float | None = None) -> pd.Series:
        """
        Cell type with the highest local value per region.

        Parameters
        ----------
        radius : float, optional
            Restrict to features at this radius. Defaults to the largest.
        """
        cols = self.profiles.columns
        radii = sorted({float(m.group(1)) for c in cols if (m := re.search(r"_r([^_]+)$", c))})
        if radius is None:
            radius = radii[-1]
        suffix = f"_r{radius:g}"
        sub = self.profiles[[c for c in cols if c.endswith(suffix)]]
        sub.columns = [c[: -len(suffix)] for c in sub.columns]
        # Empty regions have an all-NaN profile
        filled = sub.dropna(how="all")
        return filled.idxmax(axis=1).reindex(sub.index).rename("dominant_type")

    def summary(self) -> dict:
        return {
            "k": self.k,
            "n_cells": len(self.labels),
            "converged": self.converged,
            "n_iter": self.n_iter,
            "region_sizes": self.labels.value_counts().sort_index().to_dict(),
        }

    def __repr__(self) -> str:
        return (
            f"RegionResult(k={self.k}, {len(self.labels):,} cells, "
            f"converged={self.converged}, n_iter={self.n_iter})"
        )


class RegionDiscoverer:
    """
    Seeded k-means over standardized local association profiles.

    Parameters
    ----------
    k_regions : int
        Number of regions.
    max_iter : int
        Iteration cap. k-means stops earlier once assignments no longer
        change.
    n_init : int
        Number of seeded restarts; the lowest-inertia run is kept.
    random_seed : int
        Seed for centroid initialization.
    """

    def __init__(self, k_regions: int = 5, max_iter: int = 300, n_init: int = 10, random_seed: int = 42):
        if k_regions < 1:
            raise ValueError(f"k_regions must be >= 1, got {k_regions}")
        self.k_regions = k_regions
        self.max_iter = max_iter
        self.n_init = n_init
        self.random_seed = random_seed

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> RegionDiscoverer:
        return cls(
            k_regions=config.k_regions,
            max_iter=config.kmeans_max_iter,
            n_init=config.kmeans_n_init,
            random_seed=config.random_seed,
        )

    def fit(
        self,
        profiles: pd.DataFrame,
        cell_images: pd.Series,
        image_ids: pd.Index | None = None,
    ) -> RegionResult:
        """
        Cluster pooled profiles and summarize regions per image.

        Parameters
        ----------
        profiles : pd.DataFrame
            Local association profiles of all cells (rows indexed by
            cell id).
        cell_images : pd.Series
            Image id per cell id (must cover profiles.index).
        image_ids : pd.Index, optional
            Images to report proportions for. Images without profiled
            cells get an all-NaN row. Defaults to the images in
            cell_images.

        Returns
        -------
        RegionResult
        """
        n_cells = len(profiles)
        if n_cells < self.k_regions:
            raise ValueError(f"Cannot form {self.k_regions} regions from {n_cells} cells")

        X = profiles.to_numpy(dtype=float)
        # Constant features get unit scale, so no division by zero
        X_std = StandardScaler().fit_transform(X)

        km = KMeans(
            n_clusters=self.k_regions,
            max_iter=self.max_iter,
            n_init=self.n_init,
            tol=0.0,
            random_state=self.random_seed,
        )
        with warnings.catch_warnings():
            # Fewer distinct points than clusters is reported by sklearn; the
            # result is still a valid partition.
            warnings.filterwarnings("ignore", message="Number of distinct clusters")
            codes = km.fit_predict(X_std)

        n_iter = int(km.n_iter_)
        # Assignments that settle on the last allowed iteration also report
        # n_iter == max_iter; those runs end on a fixed point
        converged = n_iter < self.max_iter or _is_fixed_point(X_std, codes, km.cluster_centers_)
        if not converged:
            warnings.warn(
                f"k-means did not converge within {self.max_iter} iterations "
                f"(k={self.k_regions}); increase kmeans_max_iter or change k_regions",
                ConvergenceWarning,
                stacklevel=2,
            )

        region_names = pd.Index(np.arange(1, self.k_regions + 1), name="region")
        labels = pd.Series(codes + 1, index=profiles.index, name="region")

        # RegionProfile: mean raw features per region
        region_profiles = profiles.groupby(labels.to_numpy()).mean()
        region_profiles = region_profiles.reindex(region_names)
        region_profiles.index.name = "region"

        images_of_cells = cell_images.reindex(profiles.index)
        if image_ids is None:
            image_ids = pd.Index(sorted(images_of_cells.unique()), name="image_id")
        counts = pd.crosstab(images_of_cells.to_numpy(), labels.to_numpy())
        counts = counts.reindex(index=image_ids, columns=region_names, fill_value=0)
        totals = counts.sum(axis=1)
        proportions = counts.div(totals.replace(0, np.nan), axis=0)
        proportions.index.name = "image_id"
        proportions.columns.name = "region"

        result = RegionResult(
            labels=labels,
            profiles=region_profiles,
            proportions=proportions,
            converged=converged,
            n_iter=n_iter,
            inertia=float(km.inertia_),
        )

        # Report
        sizes = labels.value_counts().sort_index()
        dominant = result.dominant_types()
        print(f"  ✓ Identified {self.k_regions} regions " f"(n_iter={n_iter}, converged={converged}):")
        for region, count in sizes.items():
            print(f"    region {region}: {count:,} cells (dominant: {dominant.loc[region]})")

        return result


def _is_fixed_point(X: np.ndarray, codes: np.ndarray, centers: np.ndarray) -> bool:
    """True when every non-empty cluster centre is the mean of its assigned cells."""
    for k in range(len(centers)):
        members = codes == k
        if members.any() and not np.allclose(X[members].mean(axis=0), centers[k], rtol=1e-10, atol=1e-12):
            return False
    return True


def discover_regions(
    profiles: pd.DataFrame,
    cell_images: pd.Series,
    config: AnalysisConfig,
    image_ids: pd.Index | None = None,
) -> RegionResult:
    """Run RegionDiscoverer with the options in config."""
    return RegionDiscoverer.from_config(config).fit(profiles, cell_images, image_ids=image_ids)
