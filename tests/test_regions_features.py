"""
test_regions_features.py - Region discovery and per-image feature tables

How to run:
    pytest tests/test_regions_features.py -v
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from spatassoc.data import AnalysisConfig, ConvergenceWarning, DataError, JoinMismatchError, build_cohort
from spatassoc.features import FeatureTableBuilder, curves_to_wide, pair_label
from spatassoc.pipeline import compute_association_curves, compute_local_profiles
from spatassoc.spatial import RegionDiscoverer, discover_regions


@pytest.fixture
def cohort_profiles(cohort_tables, cohort_config):
    """(cohort, profiles, cell -> image series) for the 8-image cohort."""
    cohort = build_cohort(*cohort_tables)
    profiles, _ = compute_local_profiles(cohort, cohort_config)
    cell_images = cohort.cells.set_index("cell_id")["image_id"]
    return cohort, profiles, cell_images


# ===========================================================================
# SECTION 1 — RegionDiscoverer
# ===========================================================================


class TestRegionDiscoverer:

    def test_labels_and_shapes(self, cohort_profiles, cohort_config):
        cohort, profiles, cell_images = cohort_profiles
        result = discover_regions(profiles, cell_images, cohort_config, image_ids=cohort.image_ids)
        assert result.k == 3
        assert set(result.labels.unique()) <= {1, 2, 3}
        assert result.labels.index.equals(profiles.index)
        assert result.profiles.shape == (3, profiles.shape[1])
        assert result.proportions.shape == (8, 3)

    def test_proportions_sum_to_one(self, cohort_profiles, cohort_config):
        cohort, profiles, cell_images = cohort_profiles
        result = discover_regions(profiles, cell_images, cohort_config, image_ids=cohort.image_ids)
        np.testing.assert_allclose(result.proportions.sum(axis=1), 1.0)

    def test_single_region_profile_is_global_mean(self, cohort_profiles):
        _, profiles, cell_images = cohort_profiles
        result = RegionDiscoverer(k_regions=1, n_init=1).fit(profiles, cell_images)
        np.testing.assert_allclose(result.profiles.loc[1].to_numpy(), profiles.mean().to_numpy())
        assert (result.labels == 1).all()

    def test_same_seed_same_partition(self, cohort_profiles):
        _, profiles, cell_images = cohort_profiles
        a = RegionDiscoverer(k_regions=3, random_seed=7).fit(profiles, cell_images)
        b = RegionDiscoverer(k_regions=3, random_seed=7).fit(profiles, cell_images)
        pd.testing.assert_series_equal(a.labels, b.labels)

    def test_iteration_cap_warns(self, cohort_profiles):
        _, profiles, cell_images = cohort_profiles
        with pytest.warns(ConvergenceWarning):
            result = RegionDiscoverer(k_regions=3, max_iter=1, n_init=1).fit(profiles, cell_images)
        assert not result.converged

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_settling_on_last_iteration_is_converged(self, cohort_profiles, seed):
        """A run capped at exactly the iterations it needs still converged."""
        _, profiles, cell_images = cohort_profiles
        free = RegionDiscoverer(k_regions=3, n_init=1, max_iter=1000, random_seed=seed).fit(profiles, cell_images)
        assert free.converged

        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            capped = RegionDiscoverer(k_regions=3, n_init=1, max_iter=free.n_iter, random_seed=seed).fit(
                profiles, cell_images
            )
        assert capped.converged
        pd.testing.assert_series_equal(capped.labels, free.labels)

    def test_too_few_cells(self, cohort_profiles):
        _, profiles, cell_images = cohort_profiles
        with pytest.raises(ValueError):
            RegionDiscoverer(k_regions=5).fit(profiles.iloc[:3], cell_images)

    def test_dominant_types(self, cohort_profiles, cohort_config):
        _, profiles, cell_images = cohort_profiles
        result = discover_regions(profiles, cell_images, cohort_config)
        dominant = result.dominant_types(radius=15.0)
        assert set(dominant.dropna()) <= {"A", "B", "C"}
        assert len(dominant) == 3

    def test_image_without_profiles_gets_nan_row(self, cohort_profiles, cohort_config):
        cohort, profiles, cell_images = cohort_profiles
        image_ids = pd.Index(list(cohort.image_ids) + ["img_empty"], name="image_id")
        result = discover_regions(profiles, cell_images, cohort_config, image_ids=image_ids)
        assert result.proportions.loc["img_empty"].isna().all()


# ===========================================================================
# SECTION 2 — Feature views
# ===========================================================================


class TestFeatureTables:

    def test_pair_label(self):
        assert pair_label("T", "Tumor", 50.0) == "T→Tumor@50"
        assert pair_label("T", "Tumor", np.nan, ordered=False) == "T|Tumor"

    def test_curves_to_wide_per_radius(self, two_image_tables):
        cfg = AnalysisConfig(radii=(10.0, 20.0), sigma=1e4, min_cells_per_type=2, radius_reduction="per-radius")
        cohort = build_cohort(*two_image_tables)
        curves, _ = compute_association_curves(cohort, cfg)
        wide = curves_to_wide(curves, cfg)
        assert wide.shape == (2, 8)
        assert wide.loc["img1", "A→B@10"] == pytest.approx(-10.0)

    def test_builder_aligns_and_imputes(self):
        props = pd.DataFrame({"A": [0.5, 1.0]}, index=["i2", "i1"])
        assoc = pd.DataFrame({"A→A": [np.nan, 2.0]}, index=["i1", "i2"])
        regions = pd.DataFrame({1: [1.0, 1.0]}, index=["i1", "i2"])
        tables = FeatureTableBuilder(missing_value=-1.0).build(props, assoc, regions)
        assert list(tables.image_ids) == ["i1", "i2"]
        assert tables.type_proportions.loc["i1", "A"] == 1.0
        assert tables.association.loc["i1", "A→A"] == -1.0
        assert tables.imputed == {"type_proportions": 0, "association": 1, "region_proportions": 0}

    def test_join_mismatch_is_reported_per_view(self):
        props = pd.DataFrame({"A": [1.0, 1.0]}, index=["i1", "i2"])
        assoc = pd.DataFrame({"A→A": [0.0]}, index=["i1"])
        regions = pd.DataFrame({1: [1.0, 1.0, 1.0]}, index=["i1", "i2", "i3"])
        with pytest.raises(JoinMismatchError) as excinfo:
            FeatureTableBuilder().build(props, assoc, regions)
        mismatches = excinfo.value.mismatches
        assert mismatches["association"]["missing"] == ["i2", "i3"]
        assert mismatches["region_proportions"]["extra"] == ["i2", "i3"]

    def test_duplicate_image_ids(self):
        props = pd.DataFrame({"A": [1.0, 1.0]}, index=["i1", "i1"])
        other = pd.DataFrame({"x": [0.0]}, index=["i1"])
        with pytest.raises(DataError):
            FeatureTableBuilder().build(props, other, other)
