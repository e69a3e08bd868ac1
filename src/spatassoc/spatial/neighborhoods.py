"""
neighborhoods.py - Per-cell local association profiles (LISA curves)

The per-cell analogue of the image-level cross-L: for every cell, every
radius and every cell type, the corrected count of that type around the
cell on the centred L scale. Concatenated over radii these give one
fixed-length feature vector per cell, used to discover regions.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from ..data.config import AnalysisConfig
from ..data.core import ImageData
from .ripley import prepare_image


def profile_columns(cell_types: list[str], radii: tuple[float, ...]) -> list[str]:
    """Feature names, radius-major then cell type: '{type}_r{radius}'."""
    return [f"{t}_r{r:g}" for r in radii for t in cell_types]


def local_profiles_from_counts(
    cell_ids: np.ndarray,
    counts: np.ndarray,
    cell_types: list[str],
    radii: tuple[float, ...],
) -> pd.DataFrame:
    """
    Turn corrected counts into local L profiles.

    Types with no other cell in the image have no corrected count
    (NaN); they contribute a count of 0, i.e. a local value of -r.

    Parameters
    ----------
    cell_ids : np.ndarray (n,)
    counts : np.ndarray (n, n_radii, n_types)
        From ripley.corrected_neighbor_counts.
    cell_types : list of str
    radii : tuple of float

    Returns
    -------
    pd.DataFrame
        (n_cells x n_radii * n_types), indexed by cell id.
    """
    r = np.asarray(radii, dtype=float)
    filled = np.nan_to_num(counts, nan=0.0)
    local_l = np.sqrt(filled / np.pi) - r[None, :, None]
    n = len(cell_ids)
    return pd.DataFrame(
        local_l.reshape(n, -1),
        index=pd.Index(cell_ids, name="cell_id"),
        columns=profile_columns(cell_types, radii),
    )


def local_association_profiles(
    image: ImageData,
    cell_types: list[str],
    config: AnalysisConfig,
) -> pd.DataFrame | None:
    """
    Local association profile of every cell in one image.

    Parameters
    ----------
    image : ImageData
    cell_types : list of str
        Closed cell-type enumeration.
    config : AnalysisConfig

    Returns
    -------
    pd.DataFrame or None
        (n_cells x n_radii * n_types) feature table indexed by cell id;
        None for a degenerate image.
    """
    _, counts = prepare_image(image, config)
    if counts is None:
        return None
    return local_profiles_from_counts(image.cell_ids, counts, cell_types, config.radii)
