"""autotune_prep - Retrospective categorization of CGM and pump history.

This package attributes every ~5 minute glucose bucket to the driver that
dominated it (carb absorption, unannounced meal, insulin sensitivity or
basal) and extracts carb-ratio calibration windows, as input for tuning
basal rates, ISF and carb ratio.

Main Components:
    Categorizer: Bucket, categorize and rebalance one history (Stages 1-3)
    Profile: Schedules and absorption parameters
    CategorizedDataset: The four bucket collections plus CR windows

Quick Start:
    >>> from autotune_prep import Categorizer, Profile
    >>>
    >>> profile = Profile.from_dict(profile_json)
    >>> categorizer = Categorizer()
    >>> dataset = categorizer.run(glucose_entries, treatments, profile)
    >>> dataset.counts(), dataset.cr_frame()
"""

from autotune_prep.categorize import Categorizer
from autotune_prep.dataset import CategorizedDataset, CRDatum
from autotune_prep.glucose import Bucket, bucketize
from autotune_prep.iob import iob_total, insulin_doses, resolve_insulin_action
from autotune_prep.profile import Profile, basal_lookup, isf_lookup

__version__ = "0.1.0"

__all__ = [
    "Categorizer",
    "CategorizedDataset",
    "CRDatum",
    "Bucket",
    "bucketize",
    "Profile",
    "basal_lookup",
    "isf_lookup",
    "iob_total",
    "insulin_doses",
    "resolve_insulin_action",
    "__version__",
]
