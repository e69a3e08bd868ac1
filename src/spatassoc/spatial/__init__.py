"""
spatial - Per-image spatial statistics for spatassoc

index : SpatialIndex
    KD-tree radius / k-nearest-neighbour queries over cell centroids.

intensity : IntensityEstimator
    Window-normalized Gaussian kernel intensity surface.

ripley : Pairwise association
    Inhomogeneous, edge-corrected cross-type L-function per image,
    plus a label-permutation envelope for single images.

neighborhoods : Local association profiles
    Per-cell contributions to the cross-L estimator (LISA-style).

regions : Region discovery
    k-means over local profiles, region profiles and per-image
    region proportions.

Usage
-----
>>> import spatassoc as sa
>>>
>>> cohort = sa.build_cohort(cells, images)
>>> config = sa.AnalysisConfig(radii=(20, 50, 100))
>>> image = cohort.get_image('slide_01')
>>> curves = sa.spatial.image_association_curves(image, list(cohort.cell_types), config)
>>> profiles = sa.spatial.local_association_profiles(image, list(cohort.cell_types), config)
"""

from .index import SpatialIndex
from .intensity import IntensityEstimator
from .ripley import (
    CURVE_COLUMNS,
    EnvelopeResult,
    isotropic_edge_weights,
    corrected_neighbor_counts,
    cross_l_matrix,
    curves_frame,
    image_association_curves,
    permutation_envelope,
)
from .neighborhoods import (
    profile_columns,
    local_profiles_from_counts,
    local_association_profiles,
)
from .regions import RegionDiscoverer, RegionResult, discover_regions

__all__ = [
    # Index and intensity
    'SpatialIndex',
    'IntensityEstimator',

    # Pairwise association
    'CURVE_COLUMNS',
    'EnvelopeResult',
    'isotropic_edge_weights',
    'corrected_neighbor_counts',
    'cross_l_matrix',
    'curves_frame',
    'image_association_curves',
    'permutation_envelope',

    # Local profiles
    'profile_columns',
    'local_profiles_from_counts',
    'local_association_profiles',

    # Regions
    'RegionDiscoverer',
    'RegionResult',
    'discover_regions',
]
