# src/spatassoc/__init__.py

"""
spatassoc - Spatial association analysis for multiplexed tissue images
"""

# Core data structures
from .data.core import SpatialCohort
from .data.config import (
    AnalysisConfig,
    ColumnConfig,
    SpatassocError,
    ConfigError,
    DataError,
    JoinMismatchError,
    DegenerateImageWarning,
    ConvergenceWarning,
)
from .data.loaders import build_cohort

# Pipeline
from .pipeline import (
    AnalysisResult,
    run_analysis,
    load_and_run,
    compute_association_curves,
    compute_local_profiles,
)

# Import submodules
from . import data
from . import spatial
from . import stats
from . import features

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'SpatialCohort',
    'AnalysisConfig',
    'ColumnConfig',
    'build_cohort',

    # Pipeline
    'AnalysisResult',
    'run_analysis',
    'load_and_run',
    'compute_association_curves',
    'compute_local_profiles',

    # Exceptions
    'SpatassocError',
    'ConfigError',
    'DataError',
    'JoinMismatchError',
    'DegenerateImageWarning',
    'ConvergenceWarning',

    # Submodules
    'data',
    'spatial',
    'stats',
    'features',
]
