"""Abstract Base Class interface for the retrospective categorization pipeline.

Separated into three stages:
- Stage 1: Bucketing raw glucose into ~5 minute buckets
- Stage 2: Categorizing buckets by dominant driver (carbs, insulin, basal)
- Stage 3: Rebalancing skewed category populations
"""

import math
from datetime import datetime, timezone
from abc import ABC, abstractmethod
from enum import Flag, auto
from typing import Any, Iterable, Mapping, Optional, Sequence

from autotune_prep.interface.schema import EnumLiteral

# Bucketing
BUCKET_DEADBAND_MINUTES = 2  # readings closer than this to the bucket anchor are averaged
MIN_GLUCOSE_ACCEPTED = 39  # raw readings below this are sensor error codes
MIN_GLUCOSE_VALID = 40  # buckets below this are not usable for deviations
LOOKAHEAD_BUCKETS = 4  # avgDelta spans 4 buckets (20 minutes)
TICK_MINUTES = 5

# Categorization
HISTORY_WINDOW_HOURS = 6  # insulin history handed to the IOB engine per bucket
PUMP_BASAL_AVERAGE_HOURS = 4  # pump basal averaged over this many hourly lookups
LOW_BG_DEVIATION_CLAMP = 80  # positive deviations are zeroed below this BG
UAM_DEVIATION_THRESHOLD = 6
MIN_CR_WINDOW_MINUTES = 60
MIN_CARBS_COUNTED = 1

# Rebalancing
CSF_REBALANCE_MIN = 12  # >1h of announced carb absorption
ISF_REBALANCE_MAX = 10

# IOB engine
MIN_DIA_HOURS = 3
MIN_DIA_HOURS_EXPONENTIAL = 5
BASAL_PULSE_THRESHOLD = 0.1  # doses smaller than this are net-basal pulses
TEMP_BASAL_PULSE_UNITS = 0.05

# Schedules
MINUTES_PER_DAY = 1440
INVALID_SENSITIVITY = -1


class Category(EnumLiteral):
    """Final category of a classified bucket."""
    NONE = "none"
    CSF = "csf"
    UAM = "uam"
    ISF = "ISF"
    BASAL = "basal"


class AbsorptionMarker(EnumLiteral):
    """Transition marker placed on the first/last bucket of an absorption run."""
    START = "start"
    END = "end"


class AbsorptionState(EnumLiteral):
    """Hysteresis flag for carb absorption (and, separately, UAM detection)."""
    IDLE = "idle"
    ACTIVE = "active"


class InsulinCurve(EnumLiteral):
    """Supported insulin action curves."""
    BILINEAR = "bilinear"
    RAPID_ACTING = "rapid-acting"
    ULTRA_RAPID = "ultra-rapid"


DEFAULT_CURVE = InsulinCurve.RAPID_ACTING


class CategorizationWarning(Flag):
    """Warnings that can occur during categorization and rebalancing.

    These are flags that can be combined using bitwise OR operations.
    Example: warnings = CategorizationWarning.INVALID_ISF | CategorizationWarning.UAM_AS_BASAL
    """
    INSUFFICIENT_DATA = auto()  # No glucose/treatments, or too few buckets to classify
    INVALID_ISF = auto()  # ISF schedule did not cover midnight; -1 propagated
    INVALID_BASAL = auto()  # Basal schedule malformed; affected buckets skipped
    UNSUPPORTED_CURVE = auto()  # Unknown curve name replaced with rapid-acting
    UAM_AS_BASAL = auto()  # All UAM buckets categorized as basal
    UAM_MERGED_BASAL = auto()  # UAM dominated basal; merged and lower half kept
    UAM_MERGED_ISF = auto()  # UAM dominated ISF; merged and lower half kept
    CSF_MERGED_ISF = auto()  # Too many meal deviations; CSF folded into ISF


NO_WARNINGS = CategorizationWarning(0)


class MalformedDataError(ValueError):
    """Raised when a raw record cannot be converted properly."""
    pass


class MalformedScheduleError(ValueError):
    """Raised when a schedule document cannot be parsed into entries at all."""
    pass


class ZeroValidInputError(ValueError):
    """Raised when there are no valid data points to work on."""
    pass


def round_half_up(value: float, digits: int) -> float:
    """Round like JavaScript's ``Math.round(value * 10**digits) / 10**digits``.

    Python's ``round`` uses banker's rounding; the thresholds downstream were
    tuned against half-up rounding, so keep that.
    """
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


class AutotunePrep(ABC):
    """Abstract base class for retrospective categorization (Stages 1-3).

    This interface handles:
    - Stage 1: Bucketing irregular glucose readings
    - Stage 2: Walking the buckets through the deviation state machine
    - Stage 3: Rebalancing the four category collections

    Implementations hold no state between runs apart from collected warnings.
    """

    # ===== STAGE 1: Bucketing =====

    @classmethod
    @abstractmethod
    def bucketize(cls, glucose: Iterable[Any]) -> list:
        """Convert raw glucose readings into newest-first buckets.

        Args:
            glucose: Raw readings (dicts, polars rows, samples or buckets)

        Returns:
            List of buckets, strictly newest first
        """
        pass

    # ===== STAGE 2: Categorization =====

    @abstractmethod
    def categorize(
        self,
        glucose: Iterable[Any],
        treatments: Optional[Sequence[Any]],
        profile: Any,
        pump_history: Optional[Sequence[Any]] = None,
    ) -> Any:
        """Classify every usable bucket and extract carb-ratio windows.

        Args:
            glucose: Raw glucose readings
            treatments: Carb (and optionally insulin) events; None means no data
            profile: Profile with schedules and absorption parameters
            pump_history: Insulin deliveries for IOB; defaults to treatments

        Returns:
            CategorizedDataset (empty when inputs are missing)
        """
        pass

    # ===== STAGE 3: Rebalancing =====

    @abstractmethod
    def rebalance(self, dataset: Any) -> Any:
        """Move whole category collections when one is over-represented.

        Args:
            dataset: Output of categorize()

        Returns:
            Rebalanced CategorizedDataset
        """
        pass


def first_present(record: Mapping[str, Any], *keys: str) -> Any:
    """Return the first value among keys that is present and not None/empty."""
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def to_datetime(value: Any) -> Optional[datetime]:
    """Resolve a raw timestamp into a timezone-aware datetime.

    Accepts datetimes, epoch milliseconds and ISO-8601 strings. Naive values
    are taken as UTC. Returns None when the value cannot be resolved.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return None
