"""
stats - Between-condition testing of pairwise association

AssociationTestEngine
    Reduce curves across radii, compare two conditions per type pair
    (Mann-Whitney U, Welch t or mixed model), FDR-correct jointly.
"""

from .testing import (
    AssociationTestEngine,
    AssociationTestReport,
    compare_conditions,
    reduce_curves,
    symmetrize_pairs,
    adjust_pvalues,
)

__all__ = [
    'AssociationTestEngine',
    'AssociationTestReport',
    'compare_conditions',
    'reduce_curves',
    'symmetrize_pairs',
    'adjust_pvalues',
]
