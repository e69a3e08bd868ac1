"""
index.py - Per-image nearest-neighbour index over cell centroids

Thin wrapper around scipy's KDTree that also flags images too small or
too collapsed to support point-pattern statistics.
"""

from __future__ import annotations

import numpy as np
from scipy.spatial import KDTree

from ..data.core import Window


class SpatialIndex:
    """
    KD-tree over the centroids of one image.

    Parameters
    ----------
    coords : np.ndarray (n, 2)
        Cell centroids.
    window : Window, optional
        Observation window. Defaults to the bounding box of coords.

    Attributes
    ----------
    is_degenerate : bool
        True when the image has fewer than 2 cells, all cells share one
        coordinate, or the window has zero area.
    degenerate_reason : str or None
    """

    def __init__(self, coords: np.ndarray, window: Window | None = None):
        self.coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        self.window = window if window is not None else Window.from_coords(self.coords)
        self.n = len(self.coords)
        self.degenerate_reason = self._check_degenerate()
        self._tree = KDTree(self.coords) if self.n > 0 else None

    def _check_degenerate(self) -> str | None:
        if self.n < 2:
            return f"{self.n} cell(s); need at least 2"
        if np.all(self.coords == self.coords[0]):
            return "all cells share the same coordinate"
        if self.window.area <= 0:
            return "window has zero area (cells are collinear)"
        return None

    @property
    def is_degenerate(self) -> bool:
        return self.degenerate_reason is not None

    def query_radius(self, points: np.ndarray, r: float) -> list[np.ndarray]:
        """
        Indices of all cells within distance r of each query point.

        Returns one sorted integer array per point; empty when nothing
        lies within r.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        if self._tree is None:
            return [np.empty(0, dtype=np.int64) for _ in range(len(points))]
        hits = self._tree.query_ball_point(points, r, return_sorted=True)
        return [np.asarray(h, dtype=np.int64) for h in hits]

    def query_knn(self, points: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        """
        Distances and indices of the k nearest cells to each point.

        k is capped at the number of cells.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        k = min(k, self.n)
        if k == 0:
            return np.empty((len(points), 0)), np.empty((len(points), 0), dtype=np.int64)
        dists, idx = self._tree.query(points, k=k)
        return dists.reshape(len(points), k), idx.reshape(len(points), k)

    def nearest_neighbor_distances(self) -> np.ndarray:
        """Distance from every cell to its nearest other cell (NaN if alone)."""
        if self.n < 2:
            return np.full(self.n, np.nan)
        # k=2 because the query includes the point itself
        dists, _ = self._tree.query(self.coords, k=2)
        return dists[:, 1]

    def pairs_within(self, r: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        All ordered pairs (i, j), i != j, with distance <= r.

        Returns
        -------
        src, dst : np.ndarray
            Both directions of every unordered pair.
        dist : np.ndarray
            Pair distances.
        """
        if self.n < 2:
            empty = np.empty(0, dtype=np.int64)
            return empty, empty, np.empty(0)
        pairs = self._tree.query_pairs(r, output_type="ndarray")
        if len(pairs) == 0:
            empty = np.empty(0, dtype=np.int64)
            return empty, empty, np.empty(0)
        # query_pairs returns a set internally; sort for a stable order
        pairs = pairs[np.lexsort((pairs[:, 1], pairs[:, 0]))]
        i, j = pairs[:, 0], pairs[:, 1]
        d = np.sqrt(np.sum((self.coords[i] - self.coords[j]) ** 2, axis=1))
        src = np.concatenate([i, j])
        dst = np.concatenate([j, i])
        return src, dst, np.concatenate([d, d])

    def __repr__(self) -> str:
        status = f"degenerate: {self.degenerate_reason}" if self.is_degenerate else "ok"
        return f"SpatialIndex({self.n} cells, window={self.window.bounds}, {status})"
