"""Treatment records: carbs, boluses and temp basals."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from autotune_prep.interface.autotune_interface import (
    MalformedDataError,
    first_present,
    to_datetime,
)


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Treatment:
    """A carb entry, an insulin delivery or a temp basal segment.

    `duration` is in minutes and only meaningful together with `rate`.
    """
    timestamp: datetime
    carbs: Optional[float] = None
    insulin: Optional[float] = None
    rate: Optional[float] = None
    duration: Optional[float] = None

    @property
    def is_temp_basal(self) -> bool:
        return self.rate is not None and bool(self.duration)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Treatment":
        """Build a treatment from a Nightscout/oref0-style dict.

        The timestamp comes from `timestamp`, `created_at` or `date`,
        first resolvable wins.

        Raises:
            MalformedDataError: If no timestamp can be resolved
        """
        timestamp = None
        for key in ("timestamp", "created_at", "date"):
            timestamp = to_datetime(first_present(record, key))
            if timestamp is not None:
                break
        if timestamp is None:
            raise MalformedDataError(f"Treatment has no usable timestamp: {dict(record)}")
        rate = _as_float(first_present(record, "rate", "absolute"))
        return cls(
            timestamp=timestamp,
            carbs=_as_float(record.get("carbs")),
            insulin=_as_float(record.get("insulin")),
            rate=rate,
            duration=_as_float(record.get("duration")) if rate is not None else None,
        )


def to_treatments(records: Iterable[Any]) -> List[Treatment]:
    """Normalize a mix of dicts and Treatment objects."""
    return [r if isinstance(r, Treatment) else Treatment.from_record(r) for r in records]
