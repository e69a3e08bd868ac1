"""
loaders.py - Validate input tables and build a SpatialCohort

Input contract: a cell table (cell id, image id, x, y, cell type) and an
image table (image id, condition, optional subject id, optional window
width/height). Any schema problem is fatal and raised as DataError
naming the offending column, image or cell.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .config import ColumnConfig, DataError
from .core import SpatialCohort, Window

logger = logging.getLogger(__name__)


class CohortValidator:
    """Handles validation of the cell and image input tables."""

    def __init__(self, columns: ColumnConfig):
        self.columns = columns

    def validate_columns(self, df: pd.DataFrame, required_cols: list[str], df_name: str) -> None:
        """Raise DataError for the first required column not in df."""
        if not isinstance(df, pd.DataFrame):
            raise DataError(f"{df_name} must be a pandas DataFrame, got {type(df).__name__}")
        for col in required_cols:
            if col not in df.columns:
                raise DataError(f"Column '{col}' not found in {df_name}", column=col)

    def validate_no_nulls(self, df: pd.DataFrame, cols: list[str], df_name: str) -> None:
        for col in cols:
            n_null = int(df[col].isna().sum())
            if n_null:
                raise DataError(f"Column '{col}' in {df_name} has {n_null} missing values", column=col)

    def validate_unique(self, values: pd.Series, what: str, col: str) -> None:
        dup = values[values.duplicated()]
        if len(dup):
            raise DataError(f"Duplicate {what}: {sorted(dup.unique().tolist())[:5]}", column=col)


def build_cohort(
    cells: pd.DataFrame,
    images: pd.DataFrame,
    columns: ColumnConfig | None = None,
) -> SpatialCohort:
    """
    Validate the input tables and build a SpatialCohort.

    Parameters
    ----------
    cells : pd.DataFrame
        One row per cell with id, image id, x, y and cell-type columns.
    images : pd.DataFrame
        One row per image with id and condition columns; optional
        subject id and window width/height columns.
    columns : ColumnConfig, optional
        Column names. Defaults to ColumnConfig().

    Returns
    -------
    SpatialCohort

    Raises
    ------
    DataError
        Missing columns, null ids or labels, non-finite coordinates,
        duplicate ids, cells referencing unknown images, or cells
        outside an explicit window.
    """
    columns = columns or ColumnConfig()
    validator = CohortValidator(columns)

    # --- Cell table ---
    validator.validate_columns(cells, columns.cell_columns(), "cell table")
    validator.validate_no_nulls(
        cells, [columns.cell_id_col, columns.image_id_col, columns.cell_type_col], "cell table"
    )

    cell_df = pd.DataFrame(
        {
            "cell_id": cells[columns.cell_id_col].astype(str).to_numpy(),
            "image_id": cells[columns.image_id_col].astype(str).to_numpy(),
            "x": pd.to_numeric(cells[columns.x_col], errors="coerce").to_numpy(dtype=float),
            "y": pd.to_numeric(cells[columns.y_col], errors="coerce").to_numpy(dtype=float),
            "cell_type": cells[columns.cell_type_col].astype(str).to_numpy(),
        }
    )

    bad_xy = ~np.isfinite(cell_df[["x", "y"]].to_numpy()).all(axis=1)
    if bad_xy.any():
        first = cell_df.loc[bad_xy].iloc[0]
        raise DataError(
            f"{int(bad_xy.sum())} cells have non-finite coordinates "
            f"(first: cell '{first['cell_id']}' in image '{first['image_id']}')",
            column=columns.x_col,
            image_id=first["image_id"],
        )

    validator.validate_unique(cell_df["cell_id"], "cell ids", columns.cell_id_col)

    # --- Image table ---
    validator.validate_columns(images, columns.image_columns(), "image table")
    validator.validate_no_nulls(images, [columns.image_id_col, columns.condition_col], "image table")

    image_ids = images[columns.image_id_col].astype(str)
    validator.validate_unique(image_ids, "image ids", columns.image_id_col)

    image_df = pd.DataFrame(
        {"condition": images[columns.condition_col].astype(str).to_numpy()},
        index=pd.Index(image_ids.to_numpy(), name="image_id"),
    )
    if columns.subject_col in images.columns:
        subjects = images[columns.subject_col].to_numpy()
        image_df["subject_id"] = [None if pd.isna(s) else str(s) for s in subjects]
    else:
        image_df["subject_id"] = None

    unknown = sorted(set(cell_df["image_id"]) - set(image_df.index))
    if unknown:
        raise DataError(
            f"{len(unknown)} image ids in the cell table are missing from the image table: {unknown[:5]}",
            column=columns.image_id_col,
            image_id=unknown[0],
        )

    image_df = _attach_windows(image_df, images, cell_df, columns)

    cell_types = pd.Index(sorted(cell_df["cell_type"].unique()), name="cell_type")
    cell_df["cell_type"] = pd.Categorical(cell_df["cell_type"], categories=cell_types)

    cohort = SpatialCohort(cell_df, image_df, cell_types)

    with_cells = set(cell_df["image_id"])
    empty = [i for i in cohort.image_ids if i not in with_cells]
    if empty:
        logger.warning(f"{len(empty)} images have no cells: {empty[:5]}")

    print(f"  ✓ Cohort: {cohort.n_cells:,} cells, {cohort.n_images} images, " f"{cohort.n_types} cell types")
    return cohort


def _attach_windows(
    image_df: pd.DataFrame,
    images: pd.DataFrame,
    cell_df: pd.DataFrame,
    columns: ColumnConfig,
) -> pd.DataFrame:
    """
    Add xmin/ymin/xmax/ymax per image.

    Explicit width/height give the window (0, 0, width, height);
    otherwise the bounding box of the image's cells is used.
    """
    has_width = columns.width_col in images.columns and columns.height_col in images.columns
    widths = pd.Series(np.nan, index=image_df.index)
    heights = pd.Series(np.nan, index=image_df.index)
    if has_width:
        widths[:] = pd.to_numeric(images[columns.width_col], errors="coerce").to_numpy(dtype=float)
        heights[:] = pd.to_numeric(images[columns.height_col], errors="coerce").to_numpy(dtype=float)

    grouped = {k: g[["x", "y"]].to_numpy() for k, g in cell_df.groupby("image_id", sort=False)}

    bounds = []
    for image_id in image_df.index:
        coords = grouped.get(image_id, np.empty((0, 2)))
        w, h = widths[image_id], heights[image_id]

        if np.isfinite(w) and np.isfinite(h):
            if w <= 0 or h <= 0:
                raise DataError(
                    f"Image '{image_id}' has non-positive window {w} x {h}",
                    column=columns.width_col,
                    image_id=image_id,
                )
            window = Window(0.0, 0.0, float(w), float(h))
            outside = ~window.contains(coords)
            if outside.any():
                raise DataError(
                    f"Image '{image_id}': {int(outside.sum())} cells lie outside the "
                    f"{w:g} x {h:g} window",
                    image_id=image_id,
                )
        else:
            window = Window.from_coords(coords)
        bounds.append(window.bounds)

    bounds = np.array(bounds, dtype=float).reshape(-1, 4)
    image_df = image_df.copy()
    image_df["xmin"] = bounds[:, 0]
    image_df["ymin"] = bounds[:, 1]
    image_df["xmax"] = bounds[:, 2]
    image_df["ymax"] = bounds[:, 3]
    return image_df
