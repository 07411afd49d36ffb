"""Post-pass that corrects category skew.

The rules are fixed, not tunable:

1. UAM handling (first match wins)
   - UAM-as-basal mode, or more than 12 CSF buckets (1h+ of announced
     absorption, so UAM is most likely the unannounced tail of announced
     meals): all UAM goes to basal.
   - UAM more than twice basal: UAM merged into basal, lowest-deviation
     half kept.
   - UAM more than twice ISF and fewer than 10 ISF: same, into ISF.
2. Independently, if ``4*basal + ISF < CSF`` and fewer than 10 ISF, all
   CSF is folded into ISF.

Buckets only ever move as whole collections; none is duplicated.
"""

import logging
from dataclasses import replace
from typing import List

from autotune_prep.dataset import CategorizedDataset
from autotune_prep.glucose import Bucket
from autotune_prep.interface.autotune_interface import (
    CSF_REBALANCE_MIN,
    ISF_REBALANCE_MAX,
    Category,
    CategorizationWarning,
)

logger = logging.getLogger(__name__)


def lowest_deviation_half(buckets: List[Bucket]) -> List[Bucket]:
    """Stable sort by deviation, keep the lower floor(n/2)."""
    ranked = sorted(buckets, key=lambda b: b.deviation)
    return ranked[: len(ranked) // 2]


def _retag(buckets: List[Bucket], category: Category) -> List[Bucket]:
    return [replace(bucket, category=category) for bucket in buckets]


def rebalance(dataset: CategorizedDataset, categorize_uam_as_basal: bool = False) -> CategorizedDataset:
    """Return a new dataset with the collections rebalanced.

    Moved buckets are copied and re-tagged with their new category; the input
    dataset is left as it was. CR samples pass through untouched.
    """
    csf, isf, uam, basal = list(dataset.csf), list(dataset.isf), list(dataset.uam), list(dataset.basal)
    warnings = dataset.warnings

    csf_n, isf_n, uam_n, basal_n = len(csf), len(isf), len(uam), len(basal)

    if categorize_uam_as_basal:
        logger.info("categorize_uam_as_basal set: categorizing all %d UAM buckets as basal", uam_n)
        basal = basal + _retag(uam, Category.BASAL)
        uam = []
        warnings |= CategorizationWarning.UAM_AS_BASAL
    elif csf_n > CSF_REBALANCE_MIN:
        logger.info(
            "Found at least 1h of carb absorption: assuming all meals were announced, "
            "and categorizing %d UAM buckets as basal", uam_n
        )
        basal = basal + _retag(uam, Category.BASAL)
        uam = []
        warnings |= CategorizationWarning.UAM_AS_BASAL
    elif 2 * basal_n < uam_n:
        logger.warning("Too many deviations categorized as unannounced meals")
        logger.info("Adding %d UAM deviations to %d basal ones", uam_n, basal_n)
        basal = _retag(lowest_deviation_half(basal + uam), Category.BASAL)
        uam = []
        logger.info("Selected the lowest 50%%, leaving %d basal+UAM ones", len(basal))
        warnings |= CategorizationWarning.UAM_MERGED_BASAL
    elif 2 * isf_n < uam_n and isf_n < ISF_REBALANCE_MAX:
        logger.info("Adding %d UAM deviations to %d ISF ones", uam_n, isf_n)
        isf = _retag(lowest_deviation_half(isf + uam), Category.ISF)
        uam = []
        logger.info("Selected the lowest 50%%, leaving %d ISF+UAM ones", len(isf))
        warnings |= CategorizationWarning.UAM_MERGED_ISF

    basal_n = len(basal)
    isf_n = len(isf)
    if 4 * basal_n + isf_n < csf_n and isf_n < ISF_REBALANCE_MAX:
        logger.warning("Too many deviations categorized as meals")
        logger.info("Adding %d CSF deviations to %d ISF ones", csf_n, isf_n)
        isf = isf + _retag(csf, Category.ISF)
        csf = []
        warnings |= CategorizationWarning.CSF_MERGED_ISF

    return CategorizedDataset(
        csf=csf,
        isf=isf,
        uam=uam,
        basal=basal,
        cr_data=list(dataset.cr_data),
        warnings=warnings,
    )
