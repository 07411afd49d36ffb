"""Glucose readings and ~5 minute buckets.

Raw readings arrive in several shapes (Nightscout entries, CGM exports,
polars frames). They are normalized into `GlucoseSample`s and merged into
`Bucket`s: every reading within 2 minutes of a bucket's first (anchor)
reading is averaged into it. Gaps are never interpolated; a long sensor
gap simply yields no buckets for that span.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import polars as pl

from autotune_prep.interface.autotune_interface import (
    BUCKET_DEADBAND_MINUTES,
    MIN_GLUCOSE_ACCEPTED,
    AbsorptionMarker,
    Category,
    first_present,
    to_datetime,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GlucoseSample:
    timestamp: datetime
    glucose: float


@dataclass
class Bucket:
    """A synthetic ~5 minute glucose reading plus categorization annotations."""
    timestamp: datetime
    glucose: float
    sample_count: int = 1
    avg_delta: Optional[float] = None
    delta: Optional[float] = None
    bgi: Optional[float] = None
    deviation: Optional[float] = None
    dev_5m: Optional[float] = None
    iob: Optional[float] = None
    category: Category = Category.NONE
    meal_absorption: Optional[AbsorptionMarker] = None
    uam_absorption: Optional[AbsorptionMarker] = None
    meal_carbs: Optional[float] = None
    invalid_isf: bool = False

    def to_row(self) -> Dict[str, Any]:
        return {
            "category": str(self.category),
            "meal_absorption": str(self.meal_absorption) if self.meal_absorption else None,
            "uam_absorption": str(self.uam_absorption) if self.uam_absorption else None,
            "invalid_isf": self.invalid_isf,
            "datetime": self.timestamp.astimezone(timezone.utc),
            "glucose": float(self.glucose),
            "avg_delta": self.avg_delta,
            "delta": self.delta,
            "bgi": self.bgi,
            "deviation": self.deviation,
            "iob": self.iob,
            "meal_carbs": self.meal_carbs,
        }


def _resolve_sample_time(record: Mapping[str, Any]) -> Optional[datetime]:
    # first resolvable representation wins
    timestamp = to_datetime(record.get("date"))
    if timestamp is None:
        display_time = record.get("displayTime")
        if isinstance(display_time, str):
            timestamp = to_datetime(display_time.replace("T", " "))
    if timestamp is None:
        timestamp = to_datetime(record.get("dateString"))
    if timestamp is None:
        timestamp = to_datetime(record.get("datetime"))
    return timestamp


def to_sample(record: Any) -> Optional[GlucoseSample]:
    """Normalize one raw reading; None when it has no time or glucose is below 39."""
    if isinstance(record, (GlucoseSample, Bucket)):
        timestamp, glucose = record.timestamp, record.glucose
    elif isinstance(record, Mapping):
        timestamp = _resolve_sample_time(record)
        glucose = first_present(record, "glucose", "sgv")
    else:
        return None
    if timestamp is None or glucose is None:
        return None
    try:
        glucose = float(glucose)
    except (TypeError, ValueError):
        return None
    if glucose < MIN_GLUCOSE_ACCEPTED:
        return None
    return GlucoseSample(timestamp=timestamp, glucose=glucose)


def prepare_glucose(glucose: Any) -> List[GlucoseSample]:
    """Accepted samples sorted newest first."""
    if glucose is None:
        return []
    records = glucose.to_dicts() if isinstance(glucose, pl.DataFrame) else glucose
    samples = [s for s in (to_sample(r) for r in records) if s is not None]
    samples.sort(key=lambda s: s.timestamp, reverse=True)
    return samples


def bucketize(glucose: Iterable[Any]) -> List[Bucket]:
    """Merge readings into buckets, newest first.

    A reading starts a new bucket when it is at least 2 minutes away from
    the current bucket's anchor; otherwise the bucket's glucose becomes the
    mean of all its readings. Output that is already spaced 2+ minutes
    apart comes back unchanged.
    """
    samples = prepare_glucose(glucose)
    if not samples:
        return []

    buckets = [Bucket(timestamp=samples[0].timestamp, glucose=samples[0].glucose)]
    anchor = samples[0]
    total = samples[0].glucose
    for sample in samples[1:]:
        elapsed_minutes = (sample.timestamp - anchor.timestamp).total_seconds() / 60
        if abs(elapsed_minutes) >= BUCKET_DEADBAND_MINUTES:
            buckets.append(Bucket(timestamp=sample.timestamp, glucose=sample.glucose))
            anchor = sample
            total = sample.glucose
        else:
            current = buckets[-1]
            total += sample.glucose
            current.sample_count += 1
            current.glucose = total / current.sample_count

    logger.debug("Bucketed %d readings into %d buckets", len(samples), len(buckets))
    return buckets
