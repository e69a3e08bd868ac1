"""
conftest.py - Shared test fixtures for spatassoc

pytest reads this file before running any test. Every fixture defined
here is available to all test files by name, without importing it.

    @pytest.fixture
    def my_fixture():
        return something_useful

    def test_something(my_fixture):   ← pytest sees the name and injects it
        assert my_fixture == expected

The fixtures build small synthetic cohorts whose spatial structure is
known in advance: random (CSR), co-located, segregated, and a tiny
two-image layout whose cross-L values can be worked out by hand.
"""

import numpy as np
import pandas as pd
import pytest

from spatassoc.data.config import AnalysisConfig

# ===========================================================================
# Constants — the size of our fake datasets
# ===========================================================================

WINDOW = 1000.0  # side of the square window for the point-pattern fixtures
N_PER_TYPE = 500  # cells per type in the CSR fixture


def make_tables(cells_by_image, conditions, subjects=None, size=None):
    """
    Build (cells, images) input tables.

    cells_by_image : dict image_id -> list of (x, y, cell_type)
    conditions     : dict image_id -> condition
    subjects       : dict image_id -> subject id (optional)
    size           : window side; when given, width/height columns are added
    """
    rows = []
    for image_id, cells in cells_by_image.items():
        for i, (x, y, t) in enumerate(cells):
            rows.append({"cell_id": f"{image_id}_c{i:04d}", "image_id": image_id, "x": x, "y": y, "cell_type": t})
    cells_df = pd.DataFrame(rows, columns=["cell_id", "image_id", "x", "y", "cell_type"])

    images_df = pd.DataFrame({"image_id": list(conditions), "condition": list(conditions.values())})
    if subjects is not None:
        images_df["subject_id"] = [subjects[i] for i in images_df["image_id"]]
    if size is not None:
        images_df["width"] = size
        images_df["height"] = size
    return cells_df, images_df


# ===========================================================================
# Fixture 1: complete spatial randomness (two independent types)
# ===========================================================================


@pytest.fixture
def csr_tables():
    """
    One image, two independent uniform point sets of 500 cells each.

    Under CSR the centred cross-L should be ~0 at every radius.
    """
    rng = np.random.default_rng(42)
    xy_a = rng.uniform(0, WINDOW, (N_PER_TYPE, 2))
    xy_b = rng.uniform(0, WINDOW, (N_PER_TYPE, 2))
    cells = [(x, y, "A") for x, y in xy_a] + [(x, y, "B") for x, y in xy_b]
    return make_tables({"csr": cells}, {"csr": "ctrl"}, size=WINDOW)


@pytest.fixture
def csr_config():
    """Large bandwidth so the intensity surface is essentially flat."""
    return AnalysisConfig(radii=(50.0, 100.0), sigma=5000.0, min_cells_per_type=5, k_regions=2)


# ===========================================================================
# Fixture: shared density gradient (inhomogeneous but independent)
# ===========================================================================


@pytest.fixture
def gradient_tables():
    """
    Three images, 300 A and 300 B cells each, both drawn independently from
    a density proportional to x^2.

    The types share the trend but do not interact, so a correctly
    inhomogeneous cross-L is ~0 while a flat-intensity one is positive.
    """
    rng = np.random.default_rng(11)
    cells_by_image = {}
    for i in range(3):
        cells = []
        for t in ("A", "B"):
            # Inverse CDF of x^2 on [0, WINDOW]
            x = WINDOW * rng.uniform(0, 1, 300) ** (1.0 / 3.0)
            y = rng.uniform(0, WINDOW, 300)
            cells += [(a, b, t) for a, b in zip(x, y)]
        cells_by_image[f"grad{i}"] = cells
    conditions = {image_id: "ctrl" for image_id in cells_by_image}
    return make_tables(cells_by_image, conditions, size=WINDOW)


# ===========================================================================
# Fixture 2: co-located and segregated types
# ===========================================================================


@pytest.fixture
def colocated_tables():
    """
    Every B cell sits within a few units of an A cell.

    A→B should be strongly positive at short radii.
    """
    rng = np.random.default_rng(7)
    xy_a = rng.uniform(50, WINDOW - 50, (200, 2))
    xy_b = xy_a + rng.normal(0, 3, xy_a.shape)
    cells = [(x, y, "A") for x, y in xy_a] + [(x, y, "B") for x, y in xy_b]
    return make_tables({"coloc": cells}, {"coloc": "ctrl"}, size=WINDOW)


@pytest.fixture
def segregated_tables():
    """
    A fills the left half of the window, B the right half.

    A→B should be negative (avoidance).
    """
    rng = np.random.default_rng(11)
    xy_a = np.column_stack([rng.uniform(0, WINDOW / 2 - 50, 300), rng.uniform(0, WINDOW, 300)])
    xy_b = np.column_stack([rng.uniform(WINDOW / 2 + 50, WINDOW, 300), rng.uniform(0, WINDOW, 300)])
    cells = [(x, y, "A") for x, y in xy_a] + [(x, y, "B") for x, y in xy_b]
    return make_tables({"seg": cells}, {"seg": "ctrl"}, size=WINDOW)


# ===========================================================================
# Fixture 3: tiny two-image scenario with hand-computed curves
# ===========================================================================


@pytest.fixture
def two_image_tables():
    """
    Two 40 x 40 images, 2 A cells and 2 B cells each.

    img1 (condition 'A'): A and B interleaved on the corners of a square
        A at (11, 11), (29, 29); B at (29, 11), (11, 29)
    img2 (condition 'B'): A pair in one corner, B pair in the opposite one
        A at (5, 5), (5, 13); B at (35, 35), (35, 27)

    With a flat intensity surface (sigma = 1e4) and radii (10, 20):
        (A, B): img1 ≈ (-10, +13.3), img2 = (-10, -20)
        (A, A): img1 = (-10, -20),   img2 ≈ (+20.1, +10.1)
    """
    cells = {
        "img1": [(11, 11, "A"), (29, 29, "A"), (29, 11, "B"), (11, 29, "B")],
        "img2": [(5, 5, "A"), (5, 13, "A"), (35, 35, "B"), (35, 27, "B")],
    }
    return make_tables(cells, {"img1": "A", "img2": "B"}, size=40.0)


@pytest.fixture
def two_image_config():
    return AnalysisConfig(
        radii=(10.0, 20.0),
        sigma=1e4,
        min_cells_per_type=2,
        k_regions=2,
        radius_reduction="mean",
    )


# ===========================================================================
# Fixture 4: multi-image cohort with two conditions and subjects
# ===========================================================================


@pytest.fixture
def cohort_tables():
    """
    Eight random images (4 per condition, 2 images per subject).

    Condition 'treated' has B cells attached to A cells; 'ctrl' is random.
    """
    rng = np.random.default_rng(3)
    cells, conditions, subjects = {}, {}, {}
    for i in range(8):
        image_id = f"img{i}"
        treated = i >= 4
        xy_a = rng.uniform(20, 480, (60, 2))
        if treated:
            xy_b = np.clip(xy_a + rng.normal(0, 4, xy_a.shape), 0, 500)
        else:
            xy_b = rng.uniform(0, 500, (60, 2))
        xy_c = rng.uniform(0, 500, (40, 2))
        cells[image_id] = (
            [(x, y, "A") for x, y in xy_a] + [(x, y, "B") for x, y in xy_b] + [(x, y, "C") for x, y in xy_c]
        )
        conditions[image_id] = "treated" if treated else "ctrl"
        subjects[image_id] = f"s{i // 2}"
    return make_tables(cells, conditions, subjects=subjects, size=500.0)


@pytest.fixture
def cohort_config():
    return AnalysisConfig(radii=(15.0, 30.0, 60.0), sigma=200.0, min_cells_per_type=5, k_regions=3)


# ===========================================================================
# Fixture 5: a cohort with a single-cell image
# ===========================================================================


@pytest.fixture
def tables_with_single_cell_image(two_image_tables):
    """two_image_tables plus 'img3' (condition 'A') holding one cell."""
    cells, images = two_image_tables
    extra_cell = pd.DataFrame([{"cell_id": "img3_c0000", "image_id": "img3", "x": 20.0, "y": 20.0, "cell_type": "A"}])
    extra_image = pd.DataFrame([{"image_id": "img3", "condition": "A", "width": 40.0, "height": 40.0}])
    return (
        pd.concat([cells, extra_cell], ignore_index=True),
        pd.concat([images, extra_image], ignore_index=True),
    )
