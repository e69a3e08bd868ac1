"""
tables.py - Per-image feature views for an external classifier

Three views keyed by image id:
- type proportions: fraction of each cell type per image
- association summary: one column per type pair (and radius, unless
  reduced) from the association curves
- region proportions: fraction of each image's cells per region

Missing values are replaced by a neutral value (AnalysisConfig.missing_value,
0 by default) and counted per view. Views must cover exactly the same
image ids; a mismatch raises JoinMismatchError rather than subsetting.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ..data.config import AnalysisConfig, DataError, JoinMismatchError
from ..stats.testing import reduce_curves, symmetrize_pairs

VIEW_NAMES = ("type_proportions", "association", "region_proportions")


def pair_label(type_from: str, type_to: str, radius: float | None, ordered: bool = True) -> str:
    """Column label of one association feature, e.g. 'Tcell→Tumor@50'."""
    sep = "→" if ordered else "|"
    label = f"{type_from}{sep}{type_to}"
    if radius is not None and np.isfinite(radius):
        label += f"@{radius:g}"
    return label


def curves_to_wide(curves: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """
    Reshape association curves to one row per image.

    Pair mode and radius reduction follow config, so the columns match
    what AssociationTestEngine tests. NaN entries are kept.

    Returns
    -------
    pd.DataFrame
        (n_images x n_features), indexed by image id.
    """
    ordered = config.pair_mode == "ordered"
    data = curves if ordered else symmetrize_pairs(curves)
    data = reduce_curves(data, config)
    if data.empty:
        return pd.DataFrame(index=pd.Index([], name="image_id"))

    radius = data["radius"].to_numpy(dtype=float)
    labels = [
        pair_label(a, b, r, ordered=ordered)
        for a, b, r in zip(data["type_from"], data["type_to"], radius)
    ]
    data = data.assign(feature=labels)
    order = list(dict.fromkeys(data.sort_values(["type_from", "type_to", "radius"])["feature"]))
    wide = data.pivot(index="image_id", columns="feature", values="value")
    wide = wide.reindex(columns=order)
    wide.columns.name = None
    return wide


@dataclass
class FeatureTables:
    """
    The three aligned feature views.

    Attributes
    ----------
    type_proportions, association, region_proportions : pd.DataFrame
        Indexed by the same sorted image ids.
    imputed : dict
        view name -> number of entries filled with the neutral value.
    missing_value : float
        The neutral value used.
    """

    type_proportions: pd.DataFrame
    association: pd.DataFrame
    region_proportions: pd.DataFrame
    imputed: dict = field(default_factory=dict)
    missing_value: float = 0.0

    @property
    def image_ids(self) -> pd.Index:
        return self.type_proportions.index

    def as_dict(self) -> dict[str, pd.DataFrame]:
        return {name: getattr(self, name) for name in VIEW_NAMES}

    def __repr__(self) -> str:
        shapes = ", ".join(f"{name}={getattr(self, name).shape}" for name in VIEW_NAMES)
        return f"FeatureTables({len(self.image_ids)} images; {shapes})"


class FeatureTableBuilder:
    """
    Join the three feature views on image id.

    Parameters
    ----------
    missing_value : float
        Neutral value replacing NaN in every view.
    """

    def __init__(self, missing_value: float = 0.0):
        self.missing_value = float(missing_value)

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> FeatureTableBuilder:
        return cls(missing_value=config.missing_value)

    def build(
        self,
        type_proportions: pd.DataFrame,
        association: pd.DataFrame,
        region_proportions: pd.DataFrame,
    ) -> FeatureTables:
        """
        Align and impute the three views.

        Parameters
        ----------
        type_proportions : pd.DataFrame
            Cell-type proportions per image (supplied by the cell-typing
            step or SpatialCohort.cell_type_proportions()).
        association : pd.DataFrame
            Wide association summary (see curves_to_wide).
        region_proportions : pd.DataFrame
            RegionResult.proportions.

        Returns
        -------
        FeatureTables

        Raises
        ------
        JoinMismatchError
            If the views do not share the identical image-id set.
        DataError
            If a view has duplicated image ids.
        """
        views = {
            "type_proportions": type_proportions,
            "association": association,
            "region_proportions": region_proportions,
        }
        for name, view in views.items():
            idx = pd.Index(view.index.astype(str))
            if idx.has_duplicates:
                dup = idx[idx.duplicated()].unique().tolist()
                raise DataError(f"{name} has duplicated image ids: {dup[:5]}", image_id=dup[0])

        id_sets = {name: set(view.index.astype(str)) for name, view in views.items()}
        all_ids = set().union(*id_sets.values())
        shared = set.intersection(*id_sets.values())
        if shared != all_ids:
            # "extra": ids this view has that some other view lacks
            mismatches = {
                name: {"missing": sorted(all_ids - ids), "extra": sorted(ids - shared)}
                for name, ids in id_sets.items()
                if (all_ids - ids) or (ids - shared)
            }
            raise JoinMismatchError(mismatches)

        image_ids = pd.Index(sorted(all_ids), name="image_id")
        aligned, imputed = {}, {}
        for name, view in views.items():
            view = view.copy()
            view.index = pd.Index(view.index.astype(str), name="image_id")
            view = view.reindex(image_ids).astype(float)
            n_missing = int(view.isna().to_numpy().sum())
            imputed[name] = n_missing
            aligned[name] = view.fillna(self.missing_value)

        tables = FeatureTables(**aligned, imputed=imputed, missing_value=self.missing_value)

        print(f"  ✓ Feature tables: {len(image_ids)} images")
        for name in VIEW_NAMES:
            print(
                f"    {name}: {aligned[name].shape[1]} features, "
                f"{imputed[name]} missing entries set to {self.missing_value:g}"
            )
        return tables


def build_feature_tables(
    type_proportions: pd.DataFrame,
    curves: pd.DataFrame,
    region_proportions: pd.DataFrame,
    config: AnalysisConfig,
) -> FeatureTables:
    """Reshape curves and join all three views with the options in config."""
    association = curves_to_wide(curves, config)
    return FeatureTableBuilder.from_config(config).build(type_proportions, association, region_proportions)
