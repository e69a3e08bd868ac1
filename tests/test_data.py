"""
test_data.py - Configuration, validation and the SpatialCohort container

How to run:
    pytest tests/ -v                      # run all tests
    pytest tests/test_data.py -v          # only this file
    pytest tests/ -v -k "Config"          # only tests with "Config" in the name
"""

import numpy as np
import pandas as pd
import pytest

from spatassoc.data import (
    AnalysisConfig,
    ColumnConfig,
    ConfigError,
    DataError,
    SpatassocError,
    Window,
    build_cohort,
)

# ===========================================================================
# SECTION 1 — AnalysisConfig validation
#
# Every invalid option must fail at construction time with ConfigError,
# before any computation starts.
# ===========================================================================


class TestAnalysisConfig:

    def test_defaults_are_valid(self):
        cfg = AnalysisConfig()
        assert cfg.radii == (20.0, 50.0, 100.0)
        assert cfg.multitest_method == "fdr_bh"

    def test_radii_coerced_to_float_tuple(self):
        cfg = AnalysisConfig(radii=[10, 20])
        assert cfg.radii == (10.0, 20.0)

    @pytest.mark.parametrize("radii", [(), (0.0, 10.0), (-5.0,), (20.0, 10.0), (10.0, 10.0)])
    def test_bad_radii(self, radii):
        with pytest.raises(ConfigError):
            AnalysisConfig(radii=radii)

    def test_bad_sigma(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(sigma=0)

    @pytest.mark.parametrize("name", ["min_cells_per_type", "k_regions", "kmeans_max_iter", "n_jobs"])
    def test_integer_options_must_be_positive(self, name):
        with pytest.raises(ConfigError):
            AnalysisConfig(**{name: 0})

    def test_bool_is_not_an_integer_option(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(k_regions=True)

    @pytest.mark.parametrize(
        "option, value",
        [
            ("condition_test", "anova"),
            ("fdr_method", "storey"),
            ("radius_reduction", "max"),
            ("pair_mode", "both"),
            ("edge_correction", "border"),
        ],
    )
    def test_unknown_choice(self, option, value):
        with pytest.raises(ConfigError, match=option):
            AnalysisConfig(**{option: value})

    def test_single_radius_needs_test_radius(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(radius_reduction="single")

    def test_test_radius_must_be_a_radius(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(radii=(10.0, 20.0), radius_reduction="single", test_radius=15.0)
        cfg = AnalysisConfig(radii=(10.0, 20.0), radius_reduction="single", test_radius=20)
        assert cfg.test_radius == 20

    def test_test_radius_without_single_is_rejected(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(test_radius=20.0)

    def test_non_finite_missing_value(self):
        with pytest.raises(ConfigError):
            AnalysisConfig(missing_value=np.nan)

    def test_config_error_is_value_error(self):
        """ConfigError subclasses both the package base and ValueError."""
        with pytest.raises(ValueError):
            AnalysisConfig(sigma=-1)
        assert issubclass(ConfigError, SpatassocError)

    def test_to_dict_round_trips_options(self):
        d = AnalysisConfig(k_regions=3).to_dict()
        assert d["k_regions"] == 3
        assert d["columns"]["x_col"] == "x"


# ===========================================================================
# SECTION 2 — build_cohort input validation
# ===========================================================================


class TestBuildCohortValidation:

    def test_missing_cell_column_is_named(self, two_image_tables):
        cells, images = two_image_tables
        with pytest.raises(DataError) as excinfo:
            build_cohort(cells.drop(columns="cell_type"), images)
        assert excinfo.value.column == "cell_type"

    def test_missing_condition_column(self, two_image_tables):
        cells, images = two_image_tables
        with pytest.raises(DataError) as excinfo:
            build_cohort(cells, images.drop(columns="condition"))
        assert excinfo.value.column == "condition"

    def test_unknown_image_id(self, two_image_tables):
        cells, images = two_image_tables
        with pytest.raises(DataError) as excinfo:
            build_cohort(cells, images[images["image_id"] != "img2"])
        assert excinfo.value.image_id == "img2"

    def test_cell_outside_window(self, two_image_tables):
        cells, images = two_image_tables
        cells = cells.copy()
        cells.loc[0, "x"] = 55.0
        with pytest.raises(DataError) as excinfo:
            build_cohort(cells, images)
        assert excinfo.value.image_id == "img1"

    def test_non_finite_coordinate(self, two_image_tables):
        cells, images = two_image_tables
        cells = cells.copy()
        cells.loc[2, "y"] = np.nan
        with pytest.raises(DataError):
            build_cohort(cells, images)

    def test_duplicate_cell_ids(self, two_image_tables):
        cells, images = two_image_tables
        cells = cells.copy()
        cells.loc[1, "cell_id"] = cells.loc[0, "cell_id"]
        with pytest.raises(DataError, match="Duplicate cell ids"):
            build_cohort(cells, images)

    def test_duplicate_image_ids(self, two_image_tables):
        cells, images = two_image_tables
        with pytest.raises(DataError, match="Duplicate image ids"):
            build_cohort(cells, pd.concat([images, images.iloc[[0]]], ignore_index=True))

    def test_non_positive_window(self, two_image_tables):
        cells, images = two_image_tables
        images = images.copy()
        images.loc[0, "width"] = 0.0
        with pytest.raises(DataError):
            build_cohort(cells, images)

    def test_custom_column_names(self, two_image_tables):
        cells, images = two_image_tables
        cells = cells.rename(columns={"x": "cx", "y": "cy", "cell_type": "label"})
        images = images.rename(columns={"condition": "group"})
        cols = ColumnConfig(x_col="cx", y_col="cy", cell_type_col="label", condition_col="group")
        cohort = build_cohort(cells, images, columns=cols)
        assert cohort.n_cells == 8
        assert list(cohort.conditions) == ["A", "B"]


# ===========================================================================
# SECTION 3 — SpatialCohort contents
# ===========================================================================


class TestSpatialCohort:

    def test_counts(self, two_image_tables):
        cohort = build_cohort(*two_image_tables)
        assert cohort.n_cells == 8
        assert cohort.n_images == 2
        assert list(cohort.cell_types) == ["A", "B"]

    def test_explicit_window(self, two_image_tables):
        cohort = build_cohort(*two_image_tables)
        assert cohort.window("img1") == Window(0.0, 0.0, 40.0, 40.0)

    def test_bounding_box_window_without_size(self, two_image_tables):
        cells, images = two_image_tables
        cohort = build_cohort(cells, images.drop(columns=["width", "height"]))
        assert cohort.window("img2").bounds == (5.0, 5.0, 35.0, 35.0)

    def test_subjects_absent(self, two_image_tables):
        cohort = build_cohort(*two_image_tables)
        assert not cohort.has_subjects

    def test_get_image_is_sorted_by_cell_id(self, cohort_tables):
        cells, images = cohort_tables
        shuffled = cells.sample(frac=1.0, random_state=0)
        image = build_cohort(shuffled, images).get_image("img3")
        assert list(image.cell_ids) == sorted(image.cell_ids)
        assert image.coords.shape == (image.n_cells, 2)

    def test_get_unknown_image(self, two_image_tables):
        cohort = build_cohort(*two_image_tables)
        with pytest.raises(KeyError):
            cohort.get_image("nope")

    def test_type_proportions_sum_to_one(self, cohort_tables):
        props = build_cohort(*cohort_tables).cell_type_proportions()
        assert props.shape == (8, 3)
        np.testing.assert_allclose(props.sum(axis=1), 1.0)

    def test_image_without_cells_has_nan_proportions(self, two_image_tables):
        cells, images = two_image_tables
        empty = pd.DataFrame([{"image_id": "img9", "condition": "A", "width": 40.0, "height": 40.0}])
        cohort = build_cohort(cells, pd.concat([images, empty], ignore_index=True))
        props = cohort.cell_type_proportions()
        assert props.loc["img9"].isna().all()
        assert cohort.get_image("img9").n_cells == 0
