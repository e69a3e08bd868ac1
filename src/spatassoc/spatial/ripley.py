"""
ripley.py - Inhomogeneous, edge-corrected cross-L functions

For every ordered pair of cell types (A, B) in an image, counts type-B
neighbours within r of each type-A cell, weights each neighbour by
Ripley's isotropic edge correction, divides by the expected local
density of B at the A cell, and transforms the image-level cross-K to
the centred L scale:

    K_AB(r) = mean over A cells of  sum_j e_ij 1(d_ij <= r) / lambda_B(x_i)
    L_AB(r) - r = sqrt(K_AB(r) / pi) - r

Under complete spatial randomness the value is ~0; positive means
attraction, negative avoidance.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product

import numpy as np
import pandas as pd

from ..data.config import AnalysisConfig
from ..data.core import ImageData, Window
from .index import SpatialIndex
from .intensity import IntensityEstimator

CURVE_COLUMNS = ["image_id", "type_from", "type_to", "radius", "value"]

# Edge weights are capped at 1 / _MIN_FRACTION
_MIN_FRACTION = 0.01


@dataclass
class EnvelopeResult:
    """
    Observed cross-L curve with a label-permutation envelope.

    Attributes
    ----------
    r : np.ndarray
        Radii.
    statistic : np.ndarray
        Observed L(r) - r.
    envelope_lo, envelope_hi : np.ndarray
        Pointwise permutation quantiles.
    n_permutations : int
    label : str
        'A→B'.
    """

    r: np.ndarray
    statistic: np.ndarray
    envelope_lo: np.ndarray
    envelope_hi: np.ndarray
    n_permutations: int
    label: str = ""

    @property
    def above(self) -> np.ndarray:
        """Radii where the observed curve exceeds the envelope (attraction)."""
        return self.r[self.statistic > self.envelope_hi]

    @property
    def below(self) -> np.ndarray:
        """Radii where the observed curve falls under the envelope (avoidance)."""
        return self.r[self.statistic < self.envelope_lo]

    def summary(self) -> dict:
        return {
            "label": self.label,
            "n_radii": len(self.r),
            "n_permutations": self.n_permutations,
            "n_above": len(self.above),
            "n_below": len(self.below),
        }

    def __repr__(self) -> str:
        s = self.summary()
        return f"EnvelopeResult({s['label']}, {s['n_above']} above, {s['n_below']} below)"


def isotropic_edge_weights(points: np.ndarray, d: np.ndarray, window: Window) -> np.ndarray:
    """
    Ripley isotropic edge-correction weights for a rectangular window.

    The weight is 1 / (fraction of the circle of radius d centred at the
    point that lies inside the window). Each edge closer than d removes
    an arc of 2*arccos(t/d); where two adjacent edges both cut the
    circle and the corner lies inside it, their arcs overlap by
    a_x + a_y - pi/2.

    Parameters
    ----------
    points : np.ndarray (m, 2)
        Circle centres (the "from" cells).
    d : np.ndarray (m,)
        Circle radii (pair distances).
    window : Window

    Returns
    -------
    np.ndarray (m,)
        Weights >= 1, capped at 1 / 0.01.
    """
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    d = np.asarray(d, dtype=float)
    weights = np.ones(len(d))
    pos = d > 0
    if not pos.any():
        return weights

    p, dd = points[pos], d[pos][:, None]
    xmin, ymin, xmax, ymax = window.bounds
    # left, right, bottom, top
    t = np.column_stack([p[:, 0] - xmin, xmax - p[:, 0], p[:, 1] - ymin, ymax - p[:, 1]])
    t = np.maximum(t, 0.0)
    angle = np.where(t < dd, np.arccos(np.clip(t / dd, -1.0, 1.0)), 0.0)

    lost = 2.0 * angle.sum(axis=1)
    for ix, iy in ((0, 2), (0, 3), (1, 2), (1, 3)):
        lost -= np.maximum(angle[:, ix] + angle[:, iy] - np.pi / 2, 0.0)

    fraction = np.clip(1.0 - lost / (2 * np.pi), _MIN_FRACTION, 1.0)
    weights[pos] = 1.0 / fraction
    return weights


def corrected_neighbor_counts(
    index: SpatialIndex,
    codes: np.ndarray,
    n_types: int,
    radii: tuple[float, ...],
    intensity: np.ndarray,
    correction: str = "isotropic",
) -> np.ndarray:
    """
    Edge- and intensity-corrected neighbour counts per cell, radius and type.

    For cell i, radius r and type B:

        c[i, r, B] = sum_{j in B, j != i, d_ij <= r} e_ij / lambda_B(x_i)

    with lambda_B(x_i) = (n_B - [type(i) == B]) / (n - 1) * lambda_{-i}(x_i),
    the type-B share of the leave-one-out intensity at the anchor. Under
    randomness c ~ pi r^2.

    Parameters
    ----------
    index : SpatialIndex
        Index over the image's cells.
    codes : np.ndarray (n,)
        Integer cell-type codes.
    n_types : int
        Size of the cell-type enumeration.
    radii : tuple of float
        Increasing radii.
    intensity : np.ndarray (n,)
        Leave-one-out overall intensity lambda_{-i}(x_i) at each cell
        (IntensityEstimator.at_cells).
    correction : str
        'isotropic' or 'none'.

    Returns
    -------
    np.ndarray (n, n_radii, n_types)
        NaN where no other cell of type B exists in the image.
    """
    if correction not in ("isotropic", "none"):
        raise ValueError(f"Unknown correction: {correction}. Use 'isotropic' or 'none'.")

    codes = np.asarray(codes, dtype=np.int64)
    n = len(codes)
    n_r = len(radii)
    raw = np.zeros((n, n_r, n_types))

    src, dst, dist = index.pairs_within(max(radii))
    if len(src):
        if correction == "isotropic":
            w = isotropic_edge_weights(index.coords[src], dist, index.window)
        else:
            w = np.ones(len(src))
        flat_all = src * n_types + codes[dst]
        for k, r in enumerate(radii):
            within = dist <= r
            raw[:, k, :] = np.bincount(
                flat_all[within], weights=w[within], minlength=n * n_types
            ).reshape(n, n_types)

    # Expected density of each type at each anchor cell; the anchor is left
    # out of both the type count and the intensity
    type_counts = np.bincount(codes, minlength=n_types).astype(float)
    others = type_counts[None, :] - (codes[:, None] == np.arange(n_types)[None, :])
    expected = others / max(n - 1, 1) * np.asarray(intensity, dtype=float)[:, None]

    with np.errstate(divide="ignore", invalid="ignore"):
        counts = raw / expected[:, None, :]
    counts = np.where((expected > 0)[:, None, :], counts, np.nan)
    return counts


def prepare_image(image: ImageData, config: AnalysisConfig) -> tuple[SpatialIndex, np.ndarray | None]:
    """
    Build the index and corrected counts for one image.

    Returns (index, counts); counts is None for a degenerate image.
    """
    index = SpatialIndex(image.coords, image.window)
    if index.is_degenerate:
        return index, None
    intensity = IntensityEstimator(image.coords, image.window, config.sigma).at_cells()
    counts = corrected_neighbor_counts(
        index,
        image.codes,
        image.n_types,
        config.radii,
        intensity,
        correction=config.edge_correction,
    )
    return index, counts


def cross_l_matrix(
    codes: np.ndarray,
    counts: np.ndarray,
    radii: tuple[float, ...],
    min_cells_per_type: int,
) -> np.ndarray:
    """
    Centred cross-L values for every ordered type pair.

    Parameters
    ----------
    codes : np.ndarray (n,)
    counts : np.ndarray (n, n_radii, n_types)
        From corrected_neighbor_counts.
    radii : tuple of float
    min_cells_per_type : int
        Pairs where either type has fewer cells give NaN.

    Returns
    -------
    np.ndarray (n_types, n_types, n_radii)
        [A, B, k] = L_AB(r_k) - r_k.
    """
    n_types = counts.shape[2]
    r = np.asarray(radii, dtype=float)
    type_counts = np.bincount(codes, minlength=n_types)
    out = np.full((n_types, n_types, len(r)), np.nan)

    for a in range(n_types):
        if type_counts[a] < min_cells_per_type:
            continue
        k_ab = counts[codes == a].mean(axis=0)  # (n_radii, n_types)
        for b in range(n_types):
            if type_counts[b] < min_cells_per_type:
                continue
            out[a, b] = np.sqrt(k_ab[:, b] / np.pi) - r
    return out


def curves_frame(
    image_id: str,
    values: np.ndarray | None,
    cell_types: list[str],
    radii: tuple[float, ...],
) -> pd.DataFrame:
    """
    Long AssociationCurve table for one image.

    values=None produces the all-NaN rows of a degenerate image.
    """
    n_types, n_r = len(cell_types), len(radii)
    if values is None:
        values = np.full((n_types, n_types, n_r), np.nan)
    rows = list(product(range(n_types), range(n_types), range(n_r)))
    a_idx = np.array([row[0] for row in rows], dtype=np.int64)
    b_idx = np.array([row[1] for row in rows], dtype=np.int64)
    r_idx = np.array([row[2] for row in rows], dtype=np.int64)
    types = np.asarray(cell_types, dtype=object)
    return pd.DataFrame(
        {
            "image_id": image_id,
            "type_from": types[a_idx],
            "type_to": types[b_idx],
            "radius": np.asarray(radii, dtype=float)[r_idx],
            "value": values[a_idx, b_idx, r_idx],
        },
        columns=CURVE_COLUMNS,
    )


def image_association_curves(
    image: ImageData,
    cell_types: list[str],
    config: AnalysisConfig,
) -> pd.DataFrame:
    """
    Compute the AssociationCurve rows of one image.

    Parameters
    ----------
    image : ImageData
        One image's cells.
    cell_types : list of str
        Closed cell-type enumeration (matching image.codes).
    config : AnalysisConfig

    Returns
    -------
    pd.DataFrame
        Columns image_id, type_from, type_to, radius, value; one row
        per ordered pair (A = B included) and radius. value is NaN for
        degenerate images and under-populated types.
    """
    index, counts = prepare_image(image, config)
    if counts is None:
        return curves_frame(image.image_id, None, cell_types, config.radii)
    values = cross_l_matrix(image.codes, counts, config.radii, config.min_cells_per_type)
    return curves_frame(image.image_id, values, cell_types, config.radii)


def permutation_envelope(
    image: ImageData,
    cell_types: list[str],
    type_from: str,
    type_to: str,
    config: AnalysisConfig,
    n_permutations: int = 99,
    confidence: float = 0.95,
) -> EnvelopeResult:
    """
    Label-permutation envelope for one image and type pair.

    Cell positions (and so the intensity surface and edge weights) are
    kept; type labels are shuffled to simulate no association between
    types. The observed curve is significant at r where it falls outside
    the envelope.

    Parameters
    ----------
    image : ImageData
    cell_types : list of str
    type_from, type_to : str
        Source and target cell types.
    config : AnalysisConfig
        Radii, sigma, correction, threshold and random_seed are used.
    n_permutations : int
        Number of label shuffles.
    confidence : float
        Envelope coverage (e.g., 0.95).

    Returns
    -------
    EnvelopeResult
    """
    for t in (type_from, type_to):
        if t not in cell_types:
            raise ValueError(f"Unknown cell type '{t}'")
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    a, b = cell_types.index(type_from), cell_types.index(type_to)
    index = SpatialIndex(image.coords, image.window)
    if index.is_degenerate:
        raise ValueError(f"Image '{image.image_id}' is degenerate: {index.degenerate_reason}")

    intensity = IntensityEstimator(image.coords, image.window, config.sigma).at_cells()

    def _pair_curve(codes):
        counts = corrected_neighbor_counts(
            index, codes, image.n_types, config.radii, intensity, correction=config.edge_correction
        )
        return cross_l_matrix(codes, counts, config.radii, config.min_cells_per_type)[a, b]

    observed = _pair_curve(image.codes)

    rng = np.random.default_rng(config.random_seed)
    sims = np.zeros((n_permutations, len(config.radii)))
    for s in range(n_permutations):
        sims[s] = _pair_curve(rng.permutation(image.codes))

    alpha = 1 - confidence
    envelope_lo = np.nanpercentile(sims, 100 * alpha / 2, axis=0)
    envelope_hi = np.nanpercentile(sims, 100 * (1 - alpha / 2), axis=0)

    result = EnvelopeResult(
        r=np.asarray(config.radii, dtype=float),
        statistic=observed,
        envelope_lo=envelope_lo,
        envelope_hi=envelope_hi,
        n_permutations=n_permutations,
        label=f"{type_from}→{type_to}",
    )
    print(
        f"  ✓ Envelope ({confidence:.0%}, {n_permutations} permutations) {result.label}: "
        f"{len(result.above)} radii above, {len(result.below)} below"
    )
    return result
