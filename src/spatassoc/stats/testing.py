"""
testing.py - Between-condition tests of pairwise association

Reduces each image's association curves to one value per type pair
(or per pair and radius), compares the two condition groups with a
rank, mean or mixed-model test, and controls the false discovery rate
jointly over every tested pair.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats
from scipy.integrate import trapezoid
from statsmodels.stats.multitest import multipletests

from ..data.config import AnalysisConfig, DataError

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "type_from",
    "type_to",
    "radius",
    "statistic",
    "effect",
    "n_reference",
    "n_comparison",
    "p_value",
    "adjusted_p_value",
]


@dataclass
class AssociationTestReport:
    """
    Between-condition association tests with FDR correction.

    Attributes
    ----------
    table : pd.DataFrame
        One row per tested pair (and radius when not reduced), columns
        type_from, type_to, radius (NaN when reduced), statistic, effect
        (mean comparison - mean reference), n_reference, n_comparison,
        p_value, adjusted_p_value. Sorted by adjusted p, raw p, pair.
    excluded_images : dict
        image id -> reason, for images left out of every test.
    reference : str
    comparison : str
    method : str
        condition_test used.
    fdr_method : str
    """

    table: pd.DataFrame
    excluded_images: dict = field(default_factory=dict)
    reference: str = ""
    comparison: str = ""
    method: str = ""
    fdr_method: str = ""

    def significant(self, alpha: float = 0.05) -> pd.DataFrame:
        """Rows with adjusted p-value below alpha."""
        return self.table[self.table["adjusted_p_value"] < alpha]

    def summary(self) -> dict:
        return {
            "n_tests": int(self.table["p_value"].notna().sum()),
            "n_rows": len(self.table),
            "n_significant_0.05": len(self.significant(0.05)),
            "reference": self.reference,
            "comparison": self.comparison,
            "method": self.method,
            "fdr_method": self.fdr_method,
            "n_excluded_images": len(self.excluded_images),
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"AssociationTestReport({s['n_rows']} rows, {s['n_significant_0.05']} "
            f"significant, {s['comparison']} vs {s['reference']}, {s['method']})"
        )


def symmetrize_pairs(curves: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse (A, B) and (B, A) into one unordered pair.

    The unordered value is the mean of both directions (NaN if either
    direction is NaN). Pairs are labelled with type_from <= type_to.
    """
    df = curves.copy()
    a = df["type_from"].astype(str).to_numpy()
    b = df["type_to"].astype(str).to_numpy()
    df["type_from"] = np.where(a <= b, a, b)
    df["type_to"] = np.where(a <= b, b, a)
    grouped = df.groupby(["image_id", "type_from", "type_to", "radius"], sort=True)["value"]
    return grouped.agg(lambda v: v.mean(skipna=False)).reset_index()


def reduce_curves(curves: pd.DataFrame, config: AnalysisConfig) -> pd.DataFrame:
    """
    Reduce association curves across radii.

    Parameters
    ----------
    curves : pd.DataFrame
        Long table [image_id, type_from, type_to, radius, value].
    config : AnalysisConfig
        radius_reduction: 'per-radius' (unchanged), 'mean', 'auc'
        (trapezoid over radii) or 'single' (test_radius only).

    Returns
    -------
    pd.DataFrame
        Same columns; radius is NaN after 'mean' or 'auc'. A curve with
        any NaN radius reduces to NaN.
    """
    method = config.radius_reduction
    if method == "per-radius" or curves.empty:
        return curves.copy()
    if method == "single":
        keep = np.isclose(curves["radius"].to_numpy(dtype=float), config.test_radius)
        return curves.loc[keep].reset_index(drop=True)

    radii = np.asarray(config.radii, dtype=float)
    wide = curves.set_index(["image_id", "type_from", "type_to", "radius"])["value"].unstack("radius")
    wide = wide.reindex(columns=radii)
    values = wide.to_numpy(dtype=float)

    if method == "mean":
        reduced = values.mean(axis=1)
    elif method == "auc":
        if len(radii) < 2:
            raise ValueError("radius_reduction='auc' needs at least two radii")
        reduced = trapezoid(values, x=radii, axis=1)
    else:
        raise ValueError(f"Unknown radius_reduction: {method}")

    out = wide.index.to_frame(index=False)
    out["radius"] = np.nan
    out["value"] = reduced
    return out[["image_id", "type_from", "type_to", "radius", "value"]]


class AssociationTestEngine:
    """
    Compare per-image association values between two conditions.

    Parameters
    ----------
    config : AnalysisConfig
        condition_test, fdr_method, radius_reduction, test_radius,
        pair_mode and reference_condition are used.
    """

    def __init__(self, config: AnalysisConfig):
        self.config = config

    def run(
        self,
        curves: pd.DataFrame,
        images: pd.DataFrame,
        excluded_images: dict | None = None,
    ) -> AssociationTestReport:
        """
        Test every type pair for a between-condition difference.

        Parameters
        ----------
        curves : pd.DataFrame
            AssociationCurve table.
        images : pd.DataFrame
            Indexed by image id with 'condition' and, for mixed-effect
            tests, 'subject_id'.
        excluded_images : dict, optional
            image id -> reason for degenerate or failed images; their
            rows are dropped before any test.

        Returns
        -------
        AssociationTestReport

        Raises
        ------
        DataError
            Not exactly two conditions among the included images, an
            unknown reference condition, missing subject ids for the
            mixed-effect test, or curves for unknown images.
        """
        cfg = self.config
        excluded = dict(excluded_images or {})

        unknown = sorted(set(curves["image_id"]) - set(images.index))
        if unknown:
            raise DataError(f"Curves reference images missing from the image table: {unknown[:5]}", image_id=unknown[0])

        data = curves[~curves["image_id"].isin(list(excluded))]
        if cfg.pair_mode == "unordered":
            data = symmetrize_pairs(data)
        data = reduce_curves(data, cfg)

        included = images.loc[sorted(set(data["image_id"]))]
        if "subject_id" not in included.columns:
            included = included.assign(subject_id=None)
        conditions = sorted(included["condition"].unique())
        if len(conditions) != 2:
            raise DataError(
                f"Need exactly two conditions among included images, found {conditions}",
                column="condition",
            )
        reference = cfg.reference_condition if cfg.reference_condition is not None else conditions[0]
        if reference not in conditions:
            raise DataError(f"reference_condition '{reference}' not among conditions {conditions}", column="condition")
        comparison = conditions[1] if reference == conditions[0] else conditions[0]

        if cfg.condition_test == "mixed-effect" and included["subject_id"].isna().any():
            missing = included.index[included["subject_id"].isna()].tolist()
            raise DataError(
                f"mixed-effect test needs subject_id for every image; missing for {missing[:5]}",
                column="subject_id",
                image_id=missing[0],
            )

        data = data.join(included[["condition", "subject_id"]], on="image_id")

        rows = []
        for (type_from, type_to, radius), group in data.groupby(
            ["type_from", "type_to", "radius"], sort=True, dropna=False
        ):
            group = group.dropna(subset=["value"])
            ref_vals = group.loc[group["condition"] == reference, "value"].to_numpy(dtype=float)
            cmp_vals = group.loc[group["condition"] == comparison, "value"].to_numpy(dtype=float)
            statistic, p_value = self._compare(group, ref_vals, cmp_vals, reference, (type_from, type_to, radius))
            effect = cmp_vals.mean() - ref_vals.mean() if len(ref_vals) and len(cmp_vals) else np.nan
            rows.append(
                {
                    "type_from": type_from,
                    "type_to": type_to,
                    "radius": radius,
                    "statistic": statistic,
                    "effect": effect,
                    "n_reference": len(ref_vals),
                    "n_comparison": len(cmp_vals),
                    "p_value": p_value,
                }
            )

        table = pd.DataFrame(rows, columns=RESULT_COLUMNS[:-1])
        table["adjusted_p_value"] = adjust_pvalues(table["p_value"].to_numpy(dtype=float), cfg.multitest_method)
        table = sort_results(table)

        report = AssociationTestReport(
            table=table,
            excluded_images=excluded,
            reference=reference,
            comparison=comparison,
            method=cfg.condition_test,
            fdr_method=cfg.fdr_method,
        )

        n_tested = int(table["p_value"].notna().sum())
        n_sig = len(report.significant(0.05))
        print(
            f"  ✓ Association tests ({cfg.condition_test}, {comparison} vs {reference}): "
            f"{n_tested} tests, {n_sig} with adjusted p < 0.05"
        )
        if excluded:
            print(f"    ⚠ {len(excluded)} images excluded: {sorted(excluded)[:5]}")
        return report

    def _compare(self, group, ref_vals, cmp_vals, reference, key) -> tuple[float, float]:
        method = self.config.condition_test
        if len(ref_vals) == 0 or len(cmp_vals) == 0:
            return np.nan, np.nan

        if method == "two-sample-rank":
            res = stats.mannwhitneyu(cmp_vals, ref_vals, alternative="two-sided")
            return float(res.statistic), float(res.pvalue)

        if method == "two-sample-mean":
            if len(ref_vals) < 2 or len(cmp_vals) < 2:
                return np.nan, np.nan
            with np.errstate(divide="ignore", invalid="ignore"):
                res = stats.ttest_ind(cmp_vals, ref_vals, equal_var=False)
            return float(res.statistic), float(res.pvalue)

        return _mixed_effect_test(group, reference, key)


def _mixed_effect_test(group: pd.DataFrame, reference: str, key) -> tuple[float, float]:
    """Random-intercept-per-subject linear model; z and p of the condition term."""
    if group["subject_id"].nunique() < 2:
        return np.nan, np.nan
    model_df = pd.DataFrame(
        {
            "value": group["value"].to_numpy(dtype=float),
            "condition": group["condition"].to_numpy(),
            "subject": group["subject_id"].to_numpy(),
        }
    )
    formula = f"value ~ C(condition, Treatment(reference={reference!r}))"
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit = smf.mixedlm(formula, model_df, groups=model_df["subject"]).fit(reml=True)
    except (np.linalg.LinAlgError, ValueError) as e:
        logger.warning(f"Mixed model failed for {key}: {e}")
        return np.nan, np.nan

    terms = [t for t in fit.params.index if t.startswith("C(condition")]
    if not terms:
        return np.nan, np.nan
    return float(fit.tvalues[terms[0]]), float(fit.pvalues[terms[0]])


def adjust_pvalues(p_values: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjustment over the finite p-values.

    NaN p-values (untestable rows) are left NaN and do not count as
    tests.
    """
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full(len(p_values), np.nan)
    ok = np.isfinite(p_values)
    if ok.any():
        _, adj, _, _ = multipletests(p_values[ok], method=method)
        # Guard against floating drift below the raw value
        adjusted[ok] = np.maximum(adj, p_values[ok])
    return adjusted


def sort_results(table: pd.DataFrame) -> pd.DataFrame:
    """Sort by adjusted p, raw p, then pair name and radius; NaN last."""
    return table.sort_values(
        ["adjusted_p_value", "p_value", "type_from", "type_to", "radius"],
        na_position="last",
        kind="mergesort",
    ).reset_index(drop=True)


def compare_conditions(
    curves: pd.DataFrame,
    images: pd.DataFrame,
    config: AnalysisConfig,
    excluded_images: dict | None = None,
) -> AssociationTestReport:
    """Run AssociationTestEngine with the options in config."""
    return AssociationTestEngine(config).run(curves, images, excluded_images=excluded_images)
