"""
data - Input validation, configuration and the cohort container

This module contains the SpatialCohort data structure, the
configuration classes, and the exception/warning taxonomy.
"""

from .config import (
    ColumnConfig,
    AnalysisConfig,
    SpatassocError,
    ConfigError,
    DataError,
    JoinMismatchError,
    DegenerateImageWarning,
    ConvergenceWarning,
)

from .core import SpatialCohort, ImageData, Window
from .loaders import build_cohort, CohortValidator

__all__ = [
    # Core class
    'SpatialCohort',
    'ImageData',
    'Window',

    # Configuration
    'ColumnConfig',
    'AnalysisConfig',

    # Loading
    'build_cohort',
    'CohortValidator',

    # Exceptions
    'SpatassocError',
    'ConfigError',
    'DataError',
    'JoinMismatchError',
    'DegenerateImageWarning',
    'ConvergenceWarning',
]
