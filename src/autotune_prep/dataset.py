"""Categorized output: four bucket collections plus carb-ratio samples."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import polars as pl

from autotune_prep.formats.frames import BUCKET_SCHEMA, CR_SCHEMA
from autotune_prep.glucose import Bucket
from autotune_prep.interface.autotune_interface import (
    NO_WARNINGS,
    Category,
    CategorizationWarning,
)


@dataclass
class CRDatum:
    """One carb-ratio calibration window.

    `insulin` stays None until the delivered insulin has been summed.
    """
    initial_iob: float
    initial_bg: float
    initial_carb_time: datetime
    end_iob: float
    end_bg: float
    end_time: datetime
    carbs: float
    elapsed_minutes: int
    insulin: Optional[float] = None

    @property
    def is_carbs_only(self) -> bool:
        """No insulin on board at either end and none delivered in between."""
        return not self.insulin and not self.initial_iob and not self.end_iob

    def to_row(self) -> Dict[str, Any]:
        return {
            "initial_carb_time": self.initial_carb_time.astimezone(timezone.utc),
            "end_time": self.end_time.astimezone(timezone.utc),
            "elapsed_minutes": self.elapsed_minutes,
            "initial_bg": float(self.initial_bg),
            "end_bg": float(self.end_bg),
            "initial_iob": self.initial_iob,
            "end_iob": self.end_iob,
            "carbs": self.carbs,
            "insulin": self.insulin,
        }


@dataclass
class CategorizedDataset:
    csf: List[Bucket] = field(default_factory=list)
    isf: List[Bucket] = field(default_factory=list)
    uam: List[Bucket] = field(default_factory=list)
    basal: List[Bucket] = field(default_factory=list)
    cr_data: List[CRDatum] = field(default_factory=list)
    warnings: CategorizationWarning = NO_WARNINGS

    def collection(self, category: Category) -> List[Bucket]:
        collections = {
            Category.CSF: self.csf,
            Category.ISF: self.isf,
            Category.UAM: self.uam,
            Category.BASAL: self.basal,
        }
        if category not in collections:
            raise ValueError(f"No collection for category {category}")
        return collections[category]

    def counts(self) -> Dict[Category, int]:
        return {
            Category.CSF: len(self.csf),
            Category.ISF: len(self.isf),
            Category.UAM: len(self.uam),
            Category.BASAL: len(self.basal),
        }

    @property
    def is_empty(self) -> bool:
        """True when nothing was classified; callers treat this as insufficient data."""
        return not any(self.counts().values()) and not self.cr_data

    def to_frame(self, category: Optional[Category] = None) -> pl.DataFrame:
        """Buckets of one category (or all, sorted by time) as a polars frame."""
        if category is None:
            buckets = self.csf + self.isf + self.uam + self.basal
        else:
            buckets = self.collection(category)
        frame = BUCKET_SCHEMA.build_frame([b.to_row() for b in buckets])
        return frame.sort("datetime") if category is None else frame

    def cr_frame(self) -> pl.DataFrame:
        return CR_SCHEMA.build_frame([d.to_row() for d in self.cr_data])
