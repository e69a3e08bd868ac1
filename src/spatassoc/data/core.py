"""
core.py - SpatialCohort, the validated multi-image cell container

Holds every cell (id, image, coordinates, type code) and every image
(condition, subject, observation window) of one analysis run. Cell types
form a closed enumeration resolved once here; all downstream feature
positions and matrix columns derive from it.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class Window:
    """Rectangular observation window of one image."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    def contains(self, coords: np.ndarray) -> np.ndarray:
        """Boolean mask of points inside the window (edges included)."""
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        return (
            (coords[:, 0] >= self.xmin)
            & (coords[:, 0] <= self.xmax)
            & (coords[:, 1] >= self.ymin)
            & (coords[:, 1] <= self.ymax)
        )

    @classmethod
    def from_coords(cls, coords: np.ndarray) -> Window:
        """Bounding box of a set of points (zero area when < 2 distinct points)."""
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        if len(coords) == 0:
            return cls(0.0, 0.0, 0.0, 0.0)
        xmin, ymin = coords.min(axis=0)
        xmax, ymax = coords.max(axis=0)
        return cls(float(xmin), float(ymin), float(xmax), float(ymax))


@dataclass
class ImageData:
    """
    Everything a per-image worker needs, as plain arrays.

    Picklable so it can be shipped to worker processes.

    Attributes
    ----------
    image_id : str
    cell_ids : np.ndarray
        Cell ids sorted ascending.
    coords : np.ndarray (n, 2)
    codes : np.ndarray (n,)
        Integer cell-type codes into SpatialCohort.cell_types.
    n_types : int
        Size of the closed cell-type enumeration.
    window : Window
    """

    image_id: str
    cell_ids: np.ndarray
    coords: np.ndarray
    codes: np.ndarray
    n_types: int
    window: Window

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)

    def type_counts(self) -> np.ndarray:
        return np.bincount(self.codes, minlength=self.n_types)


class SpatialCohort:
    """
    Validated cells and images of one analysis run.

    Build through ``spatassoc.data.build_cohort`` rather than directly;
    the constructor assumes normalized, validated frames.

    Attributes
    ----------
    cells : pd.DataFrame
        Columns cell_id, image_id, x, y, cell_type (categorical over
        cell_types), sorted by (image_id, cell_id).
    images : pd.DataFrame
        Indexed by image_id (sorted), columns condition, subject_id,
        xmin, ymin, xmax, ymax.
    cell_types : pd.Index
        Closed, sorted cell-type enumeration.
    """

    def __init__(self, cells: pd.DataFrame, images: pd.DataFrame, cell_types: pd.Index):
        self._cell_types = pd.Index(cell_types, name="cell_type")
        self._images = images.sort_index()
        self._cells = cells.sort_values(["image_id", "cell_id"]).reset_index(drop=True)
        self._codes = pd.Categorical(self._cells["cell_type"], categories=self._cell_types).codes.astype(np.int64)

        # image_id -> (start, stop) rows in the sorted cell table
        image_col = self._cells["image_id"].to_numpy()
        self._slices = {}
        if len(image_col):
            boundaries = np.flatnonzero(image_col[1:] != image_col[:-1]) + 1
            starts = np.concatenate([[0], boundaries])
            stops = np.concatenate([boundaries, [len(image_col)]])
            for start, stop in zip(starts, stops):
                self._slices[image_col[start]] = (int(start), int(stop))

    # ========== Properties ==========

    @property
    def cells(self) -> pd.DataFrame:
        return self._cells

    @property
    def images(self) -> pd.DataFrame:
        return self._images

    @property
    def cell_types(self) -> pd.Index:
        return self._cell_types

    @property
    def type_codes(self) -> np.ndarray:
        return self._codes

    @property
    def image_ids(self) -> pd.Index:
        return self._images.index

    @property
    def n_cells(self) -> int:
        return len(self._cells)

    @property
    def n_images(self) -> int:
        return len(self._images)

    @property
    def n_types(self) -> int:
        return len(self._cell_types)

    @property
    def conditions(self) -> pd.Series:
        return self._images["condition"]

    @property
    def has_subjects(self) -> bool:
        return self._images["subject_id"].notna().all()

    # ========== Access ==========

    def window(self, image_id: str) -> Window:
        row = self._images.loc[image_id]
        return Window(float(row["xmin"]), float(row["ymin"]), float(row["xmax"]), float(row["ymax"]))

    def get_image(self, image_id: str) -> ImageData:
        """Plain-array view of one image's cells."""
        if image_id not in self._images.index:
            raise KeyError(f"Image '{image_id}' not in cohort")
        start, stop = self._slices.get(image_id, (0, 0))
        block = self._cells.iloc[start:stop]
        return ImageData(
            image_id=image_id,
            cell_ids=block["cell_id"].to_numpy(),
            coords=block[["x", "y"]].to_numpy(dtype=float),
            codes=self._codes[start:stop],
            n_types=self.n_types,
            window=self.window(image_id),
        )

    def iter_images(self) -> Iterator[ImageData]:
        for image_id in self.image_ids:
            yield self.get_image(image_id)

    def cell_type_proportions(self) -> pd.DataFrame:
        """
        Fraction of each cell type per image.

        Returns
        -------
        pd.DataFrame
            (n_images x n_types), rows sum to 1. Images without cells
            give an all-NaN row.
        """
        counts = pd.crosstab(self._cells["image_id"], self._cells["cell_type"], dropna=False)
        counts = counts.reindex(index=self.image_ids, columns=self._cell_types, fill_value=0)
        totals = counts.sum(axis=1)
        props = counts.div(totals.replace(0, np.nan), axis=0)
        props.index.name = "image_id"
        props.columns.name = "cell_type"
        return props

    # ========== Reporting ==========

    def summary(self) -> dict:
        per_image = self._cells.groupby("image_id").size().reindex(self.image_ids, fill_value=0)
        return {
            "n_cells": self.n_cells,
            "n_images": self.n_images,
            "n_types": self.n_types,
            "cell_types": list(self._cell_types),
            "conditions": self.conditions.value_counts().sort_index().to_dict(),
            "has_subjects": self.has_subjects,
            "min_cells_per_image": int(per_image.min()) if len(per_image) else 0,
            "max_cells_per_image": int(per_image.max()) if len(per_image) else 0,
        }

    def __repr__(self) -> str:
        return (
            f"SpatialCohort({self.n_cells:,} cells, {self.n_images} images, "
            f"{self.n_types} cell types)"
        )
