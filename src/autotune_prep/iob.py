"""Insulin on board and insulin activity.

Insulin deliveries are reduced to bolus-equivalent pulses (`InsulinDose`).
Boluses map one-to-one; temp basals are expanded into ±0.05 U pulses of
*net* insulin relative to the scheduled basal, so a temp below schedule
contributes negative IOB. Each pulse decays along one of three action
curves:

- ``bilinear``: the classic 3h triangle, stretched to the configured DIA
- ``rapid-acting``: exponential model, peak 75 minutes (Novolog, Humalog, Apidra)
- ``ultra-rapid``: exponential model, peak 55 minutes (Fiasp)
"""

import bisect
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from autotune_prep.interface.autotune_interface import (
    BASAL_PULSE_THRESHOLD,
    DEFAULT_CURVE,
    MIN_DIA_HOURS,
    MIN_DIA_HOURS_EXPONENTIAL,
    TEMP_BASAL_PULSE_UNITS,
    InsulinCurve,
    round_half_up,
)
from autotune_prep.treatments import Treatment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurveDefaults:
    require_long_dia: bool
    peak: int
    peak_bounds: Optional[Tuple[int, int]] = None


CURVE_DEFAULTS: Dict[InsulinCurve, CurveDefaults] = {
    # peak is unused by the bilinear curve
    InsulinCurve.BILINEAR: CurveDefaults(require_long_dia=False, peak=75),
    InsulinCurve.RAPID_ACTING: CurveDefaults(require_long_dia=True, peak=75, peak_bounds=(50, 120)),
    InsulinCurve.ULTRA_RAPID: CurveDefaults(require_long_dia=True, peak=55, peak_bounds=(35, 100)),
}


@dataclass(frozen=True)
class InsulinDose:
    """A bolus-equivalent insulin pulse."""
    timestamp: datetime
    insulin: float


@dataclass(frozen=True)
class IOBResult:
    """IOB snapshot at `time`; only meaningful at that instant."""
    iob: float
    activity: float
    basal_iob: float
    bolus_iob: float
    net_basal_insulin: float
    bolus_insulin: float
    time: datetime


@dataclass(frozen=True)
class InsulinAction:
    """Resolved curve parameters after DIA floors and fallbacks."""
    curve: InsulinCurve
    dia: float
    peak: float
    fell_back: bool = False


def resolve_insulin_action(
    curve_name: Optional[str],
    dia: float,
    use_custom_peak_time: bool = False,
    insulin_peak_time: Optional[float] = None,
) -> InsulinAction:
    """Pick the curve, apply the DIA floors and settle the peak time.

    DIA is floored at 3h for every curve and at 5h for the exponential
    curves. An unknown curve name is logged and replaced by rapid-acting.
    """
    name = (curve_name or str(InsulinCurve.BILINEAR)).lower()
    fell_back = False
    try:
        curve = InsulinCurve(name)
    except ValueError:
        logger.warning(
            'Unsupported curve function: "%s". Supported curves: "bilinear", '
            '"rapid-acting" (Novolog, Novorapid, Humalog, Apidra) and "ultra-rapid" (Fiasp). '
            'Defaulting to "%s".', name, DEFAULT_CURVE
        )
        curve = DEFAULT_CURVE
        fell_back = True

    dia = max(dia, MIN_DIA_HOURS)
    defaults = CURVE_DEFAULTS[curve]
    if defaults.require_long_dia and dia < MIN_DIA_HOURS_EXPONENTIAL:
        dia = MIN_DIA_HOURS_EXPONENTIAL

    peak: float = defaults.peak
    if defaults.peak_bounds and use_custom_peak_time and insulin_peak_time is not None:
        low, high = defaults.peak_bounds
        peak = min(max(float(insulin_peak_time), low), high)
    return InsulinAction(curve=curve, dia=dia, peak=peak, fell_back=fell_back)


def _bilinear_contrib(insulin: float, mins_ago: float, dia: float) -> Tuple[float, float]:
    default_dia = 3.0  # reference curve duration, hours
    peak = 75  # reference peak, minutes
    end = 180  # reference end, minutes

    time_scalar = default_dia / dia
    scaled_mins_ago = time_scalar * mins_ago
    activity_peak = 2 / (dia * 60)
    slope_up = activity_peak / peak
    slope_down = -1 * (activity_peak / (end - peak))

    if scaled_mins_ago < peak:
        activity = insulin * (slope_up * scaled_mins_ago)
        x1 = (scaled_mins_ago / 5) + 1
        iob = insulin * ((-0.001852 * x1 * x1) + (0.001852 * x1) + 1.000000)
    elif scaled_mins_ago < end:
        mins_past_peak = scaled_mins_ago - peak
        activity = insulin * (activity_peak + (slope_down * mins_past_peak))
        x2 = (scaled_mins_ago - peak) / 5
        iob = insulin * ((0.001323 * x2 * x2) + (-0.054233 * x2) + 0.555560)
    else:
        return 0.0, 0.0
    return activity, iob


def _exponential_contrib(insulin: float, mins_ago: float, dia: float, peak: float) -> Tuple[float, float]:
    end = dia * 60
    if mins_ago >= end:
        return 0.0, 0.0
    tau = peak * (1 - peak / end) / (1 - 2 * peak / end)
    a = 2 * tau / end
    s = 1 / (1 - a + (1 + a) * math.exp(-end / tau))
    decay = math.exp(-mins_ago / tau)
    activity = insulin * (s / tau ** 2) * mins_ago * (1 - mins_ago / end) * decay
    iob = insulin * (1 - s * (1 - a) * ((mins_ago ** 2 / (tau * end * (1 - a)) - mins_ago / tau - 1) * decay + 1))
    return activity, iob


def dose_contribution(dose: InsulinDose, time: datetime, action: InsulinAction) -> Tuple[float, float]:
    """(activity, iob) contributed by one dose at `time`, elapsed time rounded to whole minutes."""
    if not dose.insulin:
        return 0.0, 0.0
    mins_ago = round_half_up((time - dose.timestamp).total_seconds() / 60, 0)
    if action.curve == InsulinCurve.BILINEAR:
        return _bilinear_contrib(dose.insulin, mins_ago, action.dia)
    return _exponential_contrib(dose.insulin, mins_ago, action.dia, action.peak)


def iob_total(doses: Iterable[InsulinDose], time: datetime, action: InsulinAction) -> IOBResult:
    """Sum IOB and activity of every dose delivered within DIA before `time`.

    Doses at or before `time` and strictly after `time - DIA` count. Pulses
    smaller than 0.1 U are attributed to basal, the rest to bolus.
    """
    iob = activity = 0.0
    basal_iob = bolus_iob = 0.0
    net_basal_insulin = bolus_insulin = 0.0
    dia_ago = time - timedelta(hours=action.dia)

    for dose in doses:
        if dose.timestamp > time or dose.timestamp <= dia_ago:
            continue
        activity_contrib, iob_contrib = dose_contribution(dose, time, action)
        iob += iob_contrib
        activity += activity_contrib
        if dose.insulin and iob_contrib:
            if dose.insulin < BASAL_PULSE_THRESHOLD:
                basal_iob += iob_contrib
                net_basal_insulin += dose.insulin
            else:
                bolus_iob += iob_contrib
                bolus_insulin += dose.insulin

    return IOBResult(
        iob=round_half_up(iob, 3),
        activity=round_half_up(activity, 4),
        basal_iob=round_half_up(basal_iob, 3),
        bolus_iob=round_half_up(bolus_iob, 3),
        net_basal_insulin=round_half_up(net_basal_insulin, 3),
        bolus_insulin=round_half_up(bolus_insulin, 3),
        time=time,
    )


def _temp_basal_pulses(temp: Treatment, duration: float, scheduled_rate: float) -> List[InsulinDose]:
    net_rate = temp.rate - scheduled_rate
    net_amount = round_half_up(net_rate * duration / 60, 2)
    pulse = -TEMP_BASAL_PULSE_UNITS if net_amount < 0 else TEMP_BASAL_PULSE_UNITS
    count = int(round_half_up(net_amount / pulse, 0))
    if count <= 0:
        return []
    spacing = duration / count
    return [
        InsulinDose(timestamp=temp.timestamp + timedelta(minutes=j * spacing), insulin=pulse)
        for j in range(count)
    ]


def insulin_doses(
    history: Sequence[Treatment],
    scheduled_basal: Callable[[datetime], Optional[float]],
) -> List[InsulinDose]:
    """Reduce boluses and temp basals to pulses, sorted by time.

    `scheduled_basal` returns the rate a temp is measured against. A temp is
    cut short when the next temp starts before it ends. Temps whose
    scheduled rate is unknown are skipped.
    """
    doses = [
        InsulinDose(timestamp=t.timestamp, insulin=t.insulin)
        for t in history if t.insulin
    ]
    temps = sorted(
        (t for t in history if t.is_temp_basal),
        key=lambda t: t.timestamp,
    )
    for current, following in zip(temps, temps[1:] + [None]):
        duration = current.duration
        if following is not None:
            gap = (following.timestamp - current.timestamp).total_seconds() / 60
            duration = min(duration, gap)
        if duration <= 0:
            continue
        scheduled_rate = scheduled_basal(current.timestamp)
        if scheduled_rate is None:
            logger.warning("No scheduled basal for temp at %s, skipping", current.timestamp)
            continue
        doses.extend(_temp_basal_pulses(current, duration, scheduled_rate))
    doses.sort(key=lambda d: d.timestamp)
    return doses


class InsulinHistory:
    """Time-sorted pump history with fast windowing.

    Treatments are kept in an immutable, ascending sequence; `window()`
    bisects instead of rescanning the full history for every bucket.
    """

    def __init__(self, history: Iterable[Treatment]):
        self._items: Tuple[Treatment, ...] = tuple(
            sorted((t for t in history if t.insulin or t.is_temp_basal), key=lambda t: t.timestamp)
        )
        self._times = [t.timestamp for t in self._items]

    def __len__(self) -> int:
        return len(self._items)

    @property
    def treatments(self) -> Tuple[Treatment, ...]:
        return self._items

    def window(self, end: datetime, hours: float) -> Tuple[Treatment, ...]:
        """Treatments strictly inside ``(end - hours, end)``."""
        start = end - timedelta(hours=hours)
        lo = bisect.bisect_right(self._times, start)
        hi = bisect.bisect_left(self._times, end)
        return self._items[lo:hi]
