"""Profile schedules and time-of-day lookups.

Basal and ISF schedules are piecewise functions over minutes since local
midnight. Lookups read the wall-clock hour/minute of the timestamp they are
given, so callers convert timestamps into the profile's time zone first.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from autotune_prep.interface.autotune_interface import (
    DEFAULT_CURVE,
    INVALID_SENSITIVITY,
    MINUTES_PER_DAY,
    MalformedScheduleError,
    round_half_up,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BasalScheduleEntry:
    """Basal rate (U/hr) active from `minutes` past midnight."""
    minutes: int
    rate: float


@dataclass(frozen=True)
class ISFScheduleEntry:
    """Insulin sensitivity (mg/dL per U) active from `offset` minutes past midnight."""
    offset: int
    sensitivity: float


BasalSchedule = Tuple[BasalScheduleEntry, ...]
ISFSchedule = Tuple[ISFScheduleEntry, ...]


class IsfMemo(NamedTuple):
    """Cached active ISF interval ``[offset, end_offset)``."""
    offset: int
    end_offset: int
    sensitivity: float


class IsfLookupResult(NamedTuple):
    sensitivity: float
    memo: Optional[IsfMemo]

    @property
    def is_valid(self) -> bool:
        return self.sensitivity != INVALID_SENSITIVITY


def _minutes_of_day(timestamp: datetime) -> int:
    return timestamp.hour * 60 + timestamp.minute


def _entry_minutes(entry: Mapping[str, Any]) -> int:
    if entry.get("minutes") is not None:
        return int(entry["minutes"])
    if entry.get("offset") is not None:
        return int(entry["offset"])
    start = entry.get("start")
    if isinstance(start, str) and ":" in start:
        hours, minutes = start.split(":")[:2]
        return int(hours) * 60 + int(minutes)
    raise MalformedScheduleError(f"Schedule entry has no start time: {dict(entry)}")


def basal_schedule_from_records(records: Sequence[Mapping[str, Any]]) -> BasalSchedule:
    """Build a basal schedule from pump-style records.

    Accepts ``{"minutes": 0, "rate": 0.8}``, ``{"start": "00:00:00", "rate": 0.8}``
    or ``{"offset": 0, "rate": 0.8}`` entries.

    Raises:
        MalformedScheduleError: If the schedule is empty or an entry is unreadable
    """
    if not records:
        raise MalformedScheduleError("Basal schedule is empty")
    try:
        entries = [
            BasalScheduleEntry(minutes=_entry_minutes(r), rate=float(r["rate"]))
            for r in records
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedScheduleError(f"Unreadable basal schedule: {e}") from e
    return tuple(sorted(entries, key=lambda e: e.minutes))


def isf_schedule_from_records(document: Any) -> ISFSchedule:
    """Build an ISF schedule from ``{"sensitivities": [...]}`` or a bare list.

    Raises:
        MalformedScheduleError: If the schedule is empty or an entry is unreadable
    """
    records = document.get("sensitivities") if isinstance(document, Mapping) else document
    if not records:
        raise MalformedScheduleError("ISF schedule is empty")
    try:
        entries = [
            ISFScheduleEntry(offset=_entry_minutes(r), sensitivity=float(r["sensitivity"]))
            for r in records
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedScheduleError(f"Unreadable ISF schedule: {e}") from e
    return tuple(sorted(entries, key=lambda e: e.offset))


def basal_lookup(schedule: Sequence[BasalScheduleEntry], timestamp: datetime) -> Optional[float]:
    """Return the basal rate (U/hr) active at the timestamp's time of day.

    The active entry is the last one whose start is not after the query;
    times past the final entry use the final entry. A final rate of exactly
    zero marks a malformed schedule: it is logged and None is returned.
    """
    entries = sorted(schedule, key=lambda e: e.minutes)
    basal_rate = entries[-1].rate
    if basal_rate == 0:
        logger.error("Bad basal schedule, final rate is 0: %s", entries)
        return None
    now_minutes = _minutes_of_day(timestamp)
    for current, following in zip(entries, entries[1:]):
        if current.minutes <= now_minutes < following.minutes:
            basal_rate = current.rate
            break
    return round_half_up(basal_rate, 3)


def isf_lookup(
    schedule: Sequence[ISFScheduleEntry],
    timestamp: datetime,
    last_result: Optional[IsfMemo] = None,
) -> IsfLookupResult:
    """Return the ISF active at the timestamp's time of day, with a one-slot memo.

    When the query falls inside the memoized ``[offset, end_offset)`` interval
    no scan is done. The memo is only valid for the schedule that produced
    it; the categorizer feeds it back while walking one schedule through
    monotonically advancing query times.

    A schedule whose first entry does not start at midnight returns
    INVALID_SENSITIVITY (-1) with the memo left untouched.
    """
    now_minutes = _minutes_of_day(timestamp)
    if last_result is not None and last_result.offset <= now_minutes < last_result.end_offset:
        return IsfLookupResult(last_result.sensitivity, last_result)

    entries = sorted(schedule, key=lambda e: e.offset)
    if not entries or entries[0].offset != 0:
        logger.error("ISF schedule does not start at offset 0: %s", entries)
        return IsfLookupResult(INVALID_SENSITIVITY, last_result)

    active = entries[-1]
    end_minutes = MINUTES_PER_DAY
    for current, following in zip(entries, entries[1:]):
        if current.offset <= now_minutes < following.offset:
            active = current
            end_minutes = following.offset
            break

    memo = IsfMemo(active.offset, end_minutes, active.sensitivity)
    return IsfLookupResult(active.sensitivity, memo)


def max_daily_basal(schedule: Sequence[BasalScheduleEntry]) -> float:
    """Highest scheduled basal rate (U/hr)."""
    return max(entry.rate for entry in schedule)


def max_basal_lookup(settings: Mapping[str, Any]) -> Optional[float]:
    """Pump's configured maximum temp basal rate (U/hr), if present."""
    value = settings.get("maxBasal")
    return float(value) if value is not None else None


@dataclass
class Profile:
    """Absorption parameters and schedules consumed by the categorizer.

    `basal_profile` is the schedule being tuned and drives category
    decisions; `pump_basal_profile` is what the pump actually ran and only
    feeds the IOB engine. It defaults to the tuned schedule.
    """
    carb_ratio: float
    isf_profile: ISFSchedule
    basal_profile: BasalSchedule
    pump_basal_profile: Optional[BasalSchedule] = None
    min_5m_carbimpact: float = 8.0
    dia: float = 3.0
    curve: str = str(DEFAULT_CURVE)
    max_cob: float = 120.0
    use_custom_peak_time: bool = False
    insulin_peak_time: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.pump_basal_profile is None:
            self.pump_basal_profile = self.basal_profile

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        pump_basal_records: Optional[List[Mapping[str, Any]]] = None,
    ) -> "Profile":
        """Build a profile from oref0-style profile JSON.

        Raises:
            MalformedScheduleError: If a schedule is missing or unreadable
            KeyError: If carb_ratio is missing
        """
        if "isfProfile" not in data or "basalprofile" not in data:
            raise MalformedScheduleError("Profile needs both 'isfProfile' and 'basalprofile'")
        basal = basal_schedule_from_records(data["basalprofile"])
        pump_basal = (
            basal_schedule_from_records(pump_basal_records)
            if pump_basal_records is not None else None
        )
        known = {
            "carb_ratio", "isfProfile", "basalprofile", "min_5m_carbimpact", "dia",
            "curve", "maxCOB", "useCustomPeakTime", "insulinPeakTime",
        }
        return cls(
            carb_ratio=float(data["carb_ratio"]),
            isf_profile=isf_schedule_from_records(data["isfProfile"]),
            basal_profile=basal,
            pump_basal_profile=pump_basal,
            min_5m_carbimpact=float(data.get("min_5m_carbimpact", 8.0)),
            dia=float(data.get("dia", 3.0)),
            curve=str(data.get("curve", DEFAULT_CURVE)),
            max_cob=float(data.get("maxCOB", 120.0)),
            use_custom_peak_time=bool(data.get("useCustomPeakTime", False)),
            insulin_peak_time=data.get("insulinPeakTime"),
            extra={k: v for k, v in data.items() if k not in known},
        )
