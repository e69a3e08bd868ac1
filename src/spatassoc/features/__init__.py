"""
features - Per-image feature views for downstream classifiers
"""

from .tables import (
    FeatureTableBuilder,
    FeatureTables,
    build_feature_tables,
    curves_to_wide,
    pair_label,
)

__all__ = [
    'FeatureTableBuilder',
    'FeatureTables',
    'build_feature_tables',
    'curves_to_wide',
    'pair_label',
]
