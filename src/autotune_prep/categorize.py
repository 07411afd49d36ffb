"""Retrospective categorization of glucose buckets.

Each bucket is attributed to the physiological driver that dominated its
glucose movement:

- CSF: carbs were being absorbed
- UAM: rise with no carbs entered (unannounced meal)
- ISF: insulin activity dominated
- basal: scheduled basal activity dominated, or an unexplained rise

Buckets are stored newest first and walked from index ``len-5`` down to 1,
i.e. chronologically oldest to newest. The four oldest buckets only serve
as the 20 minute look-back for avgDelta; the newest bucket is never
classified. Treatments are consumed oldest first through a cursor, so
each one is attributed exactly once per run.

Stateful accumulators (COB, absorption and UAM hysteresis, the open
carb-ratio window, the ISF memo) live in one `CategorizationContext`
created per run.
"""

import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterable, List, Optional, Sequence

from autotune_prep.dataset import CategorizedDataset, CRDatum
from autotune_prep.dosed import insulin_dosed
from autotune_prep.glucose import Bucket, bucketize
from autotune_prep.interface.autotune_interface import (
    HISTORY_WINDOW_HOURS,
    LOOKAHEAD_BUCKETS,
    LOW_BG_DEVIATION_CLAMP,
    MIN_CARBS_COUNTED,
    MIN_CR_WINDOW_MINUTES,
    MIN_GLUCOSE_VALID,
    NO_WARNINGS,
    PUMP_BASAL_AVERAGE_HOURS,
    TICK_MINUTES,
    UAM_DEVIATION_THRESHOLD,
    AbsorptionMarker,
    AbsorptionState,
    AutotunePrep,
    Category,
    CategorizationWarning,
    round_half_up,
)
from autotune_prep.iob import (
    InsulinAction,
    InsulinHistory,
    insulin_doses,
    iob_total,
    resolve_insulin_action,
)
from autotune_prep.profile import IsfMemo, Profile, basal_lookup, isf_lookup
from autotune_prep.rebalance import rebalance
from autotune_prep.treatments import to_treatments

logger = logging.getLogger(__name__)


@dataclass
class CRWindow:
    """An open carb-ratio window."""
    initial_iob: float
    initial_bg: float
    initial_carb_time: datetime
    carbs: float = 0.0


@dataclass
class CategorizationContext:
    """Mutable state threaded through one categorization run.

    Category transitions (`classify`), evaluated in order:

    ========================================  =========  ==============================
    condition                                 category   flag update
    ========================================  =========  ==============================
    COB > 0 or absorbing or meal carbs > 0    CSF        absorbing = IOB >= basal/2
                                                         and deviation > 0; meal carbs
                                                         reset once idle with no COB
    IOB > 2*basal or deviation > 6 or uam     UAM        uam = deviation > 0
    basalBGI > -4*BGI                         basal
    avgDelta > 0 and avgDelta > -2*BGI        basal
    otherwise                                 ISF
    ========================================  =========  ==============================
    """
    meal_cob: float = 0.0
    meal_carbs: float = 0.0
    absorption: AbsorptionState = AbsorptionState.IDLE
    uam: AbsorptionState = AbsorptionState.IDLE
    last_category: Category = Category.NONE
    cr_window: Optional[CRWindow] = None
    isf_memo: Optional[IsfMemo] = None

    def add_carbs(self, carbs: float) -> None:
        self.meal_cob += carbs
        self.meal_carbs += carbs

    def absorb(self, deviation: float, min_5m_carbimpact: float, carb_ratio: float, sens: float) -> float:
        """Absorb carbs for one tick; COB never drops below zero."""
        ci = max(deviation, min_5m_carbimpact)
        absorbed = ci * carb_ratio / sens
        self.meal_cob = max(0.0, self.meal_cob - absorbed)
        return absorbed

    def classify(
        self,
        iob: float,
        current_basal: float,
        deviation: float,
        avg_delta: float,
        bgi: float,
        basal_bgi: float,
    ) -> Category:
        if self.meal_cob > 0 or self.absorption is AbsorptionState.ACTIVE or self.meal_carbs > 0:
            # meal insulin decayed: absorption ends after this bucket unless COB remains
            if iob < current_basal / 2:
                self.absorption = AbsorptionState.IDLE
            elif deviation > 0:
                self.absorption = AbsorptionState.ACTIVE
            else:
                self.absorption = AbsorptionState.IDLE
            if self.absorption is AbsorptionState.IDLE and not self.meal_cob:
                self.meal_carbs = 0.0
            return Category.CSF

        if iob > 2 * current_basal or deviation > UAM_DEVIATION_THRESHOLD or self.uam is AbsorptionState.ACTIVE:
            self.uam = AbsorptionState.ACTIVE if deviation > 0 else AbsorptionState.IDLE
            return Category.UAM

        if basal_bgi > -4 * bgi:
            return Category.BASAL
        # unexplained rise: blame basal rather than ISF
        if avg_delta > 0 and avg_delta > -2 * bgi:
            return Category.BASAL
        return Category.ISF


class Categorizer(AutotunePrep):
    """Bucket, categorize and rebalance one patient's history.

    Time-of-day schedule lookups are made in `tz` (default UTC); pass the
    profile's time zone when timestamps come in as UTC.

    Processing warnings are collected in a list during a run and can be
    retrieved via get_warnings() or checked via has_warnings(). Each call to
    categorize() starts a fresh list.
    """

    def __init__(self, categorize_uam_as_basal: bool = False, tz: Optional[tzinfo] = None):
        self.categorize_uam_as_basal = categorize_uam_as_basal
        self.tz = tz or timezone.utc
        self._warnings: List[CategorizationWarning] = []

    def get_warnings(self) -> List[CategorizationWarning]:
        return self._warnings.copy()

    def has_warnings(self) -> bool:
        return len(self._warnings) > 0

    def _add_warning(self, warning: CategorizationWarning) -> None:
        if warning not in self._warnings:
            self._warnings.append(warning)

    def _combined_warnings(self) -> CategorizationWarning:
        combined = NO_WARNINGS
        for warning in self._warnings:
            combined |= warning
        return combined

    def _empty(self) -> CategorizedDataset:
        self._add_warning(CategorizationWarning.INSUFFICIENT_DATA)
        return CategorizedDataset(warnings=self._combined_warnings())

    # ===== STAGE 1: Bucketing =====

    @classmethod
    def bucketize(cls, glucose: Iterable[Any]) -> List[Bucket]:
        return bucketize(glucose)

    # ===== STAGE 2: Categorization =====

    def categorize(
        self,
        glucose: Iterable[Any],
        treatments: Optional[Sequence[Any]],
        profile: Profile,
        pump_history: Optional[Sequence[Any]] = None,
    ) -> CategorizedDataset:
        """Classify buckets and collect carb-ratio windows.

        `treatments` supplies carbs; `pump_history` supplies boluses and temp
        basals for IOB and falls back to `treatments`. Inputs are copied,
        never mutated. Returns an empty dataset flagged INSUFFICIENT_DATA
        when treatments are missing or fewer than six buckets exist.
        """
        self._warnings = []
        if treatments is None:
            logger.warning("No treatments given")
            return self._empty()

        buckets = self.bucketize(glucose)
        last_index = len(buckets) - 1 - LOOKAHEAD_BUCKETS
        if last_index < 1:
            logger.warning("Only %d glucose buckets, need at least %d", len(buckets), LOOKAHEAD_BUCKETS + 2)
            return self._empty()

        carb_events = sorted(to_treatments(treatments), key=lambda t: t.timestamp)
        history = InsulinHistory(
            to_treatments(pump_history) if pump_history is not None else carb_events
        )
        action = resolve_insulin_action(
            profile.curve, profile.dia, profile.use_custom_peak_time, profile.insulin_peak_time
        )
        if action.fell_back:
            self._add_warning(CategorizationWarning.UNSUPPORTED_CURVE)

        # treatments older than the oldest bucket are never attributed
        oldest = buckets[-1].timestamp
        cursor = bisect.bisect_left([t.timestamp for t in carb_events], oldest)

        dataset = CategorizedDataset()
        ctx = CategorizationContext()

        for i in range(last_index, 0, -1):
            bucket = buckets[i]
            bg_time = bucket.timestamp

            my_carbs = 0.0
            while cursor < len(carb_events) and carb_events[cursor].timestamp < bg_time:
                treatment = carb_events[cursor]
                cursor += 1
                if treatment.carbs is not None and treatment.carbs >= MIN_CARBS_COUNTED:
                    ctx.add_carbs(treatment.carbs)
                    my_carbs += treatment.carbs

            bg = bucket.glucose
            lookback = buckets[i + LOOKAHEAD_BUCKETS].glucose
            if bg is None or lookback is None or bg < MIN_GLUCOSE_VALID or lookback < MIN_GLUCOSE_VALID:
                continue

            self._process_bucket(
                i, buckets, bucket, my_carbs, ctx, profile, history, action, dataset
            )

        self._fill_cr_insulin(dataset, history, profile)
        dataset.warnings = self._combined_warnings()
        return dataset

    def _process_bucket(
        self,
        i: int,
        buckets: List[Bucket],
        bucket: Bucket,
        my_carbs: float,
        ctx: CategorizationContext,
        profile: Profile,
        history: InsulinHistory,
        action: InsulinAction,
        dataset: CategorizedDataset,
    ) -> None:
        bg_time = bucket.timestamp
        local_time = bg_time.astimezone(self.tz)
        bg = bucket.glucose

        delta = bg - buckets[i + 1].glucose
        avg_delta = round_half_up((bg - buckets[i + LOOKAHEAD_BUCKETS].glucose) / LOOKAHEAD_BUCKETS, 2)
        bucket.avg_delta = avg_delta
        bucket.delta = round_half_up(delta, 2)

        isf_result = isf_lookup(profile.isf_profile, local_time, ctx.isf_memo)
        sens = isf_result.sensitivity
        ctx.isf_memo = isf_result.memo
        if not isf_result.is_valid:
            # the sentinel flows into BGI/deviation below; flag the bucket so it shows
            bucket.invalid_isf = True
            self._add_warning(CategorizationWarning.INVALID_ISF)

        # IOB uses the pump's basal averaged over 4h to dampen divergence
        # from the tuned schedule; everything else uses the tuned rate
        pump_basals = [
            basal_lookup(profile.pump_basal_profile, local_time - timedelta(hours=h))
            for h in range(PUMP_BASAL_AVERAGE_HOURS)
        ]
        current_basal = basal_lookup(profile.basal_profile, local_time)
        if current_basal is None or any(rate is None for rate in pump_basals):
            self._add_warning(CategorizationWarning.INVALID_BASAL)
            return
        iob_basal = round_half_up(sum(pump_basals) / len(pump_basals), 3)

        # mg/dL per 5m of pure scheduled basal activity
        basal_bgi = round_half_up(current_basal * sens / 60 * TICK_MINUTES, 2)

        window = history.window(bg_time, HISTORY_WINDOW_HOURS)
        doses = insulin_doses(window, lambda _: iob_basal)
        iob = iob_total(doses, bg_time, action)
        bucket.iob = iob.iob

        bgi = round_half_up(-iob.activity * sens * TICK_MINUTES, 2)
        bucket.bgi = bgi

        deviation = avg_delta - bgi
        dev_5m = delta - bgi
        if bg < LOW_BG_DEVIATION_CLAMP and deviation > 0:
            deviation = 0.0
        deviation = round_half_up(deviation, 2)
        bucket.deviation = deviation
        bucket.dev_5m = round_half_up(dev_5m, 2)

        if ctx.meal_cob > 0:
            ctx.absorb(deviation, profile.min_5m_carbimpact, profile.carb_ratio, sens)

        self._track_carb_ratio(ctx, bucket, iob.iob, current_basal, my_carbs, i == 1, dataset)

        category = ctx.classify(
            iob=iob.iob,
            current_basal=current_basal,
            deviation=deviation,
            avg_delta=avg_delta,
            bgi=bgi,
            basal_bgi=basal_bgi,
        )
        self._assign(bucket, category, ctx, dataset)

        logger.debug(
            "%s mealCOB: %.1f mealCarbs: %s BGI: %.1f IOB: %.1f at %s dev: %.2f avgDev: %.2f "
            "avgDelta: %.2f %s %s %s",
            ctx.absorption, ctx.meal_cob, ctx.meal_carbs, bgi, iob.iob,
            local_time.strftime("%H:%M:%S"), bucket.dev_5m, deviation, avg_delta,
            category, bg, my_carbs,
        )

    def _track_carb_ratio(
        self,
        ctx: CategorizationContext,
        bucket: Bucket,
        iob: float,
        current_basal: float,
        my_carbs: float,
        final: bool,
        dataset: CategorizedDataset,
    ) -> None:
        """Open, extend or close the carb-ratio window.

        A window opens when COB first appears and stays open while COB
        remains or IOB exceeds half the tuned basal. Closing on the final
        bucket with COB left, or after less than 60 minutes, drops it.
        """
        if not (ctx.meal_cob > 0 or ctx.cr_window is not None):
            return
        if ctx.cr_window is None:
            ctx.cr_window = CRWindow(
                initial_iob=iob, initial_bg=bucket.glucose, initial_carb_time=bucket.timestamp
            )
            logger.debug(
                "CRInitialIOB: %s CRInitialBG: %s CRInitialCarbTime: %s",
                iob, bucket.glucose, bucket.timestamp,
            )
        ctx.cr_window.carbs += my_carbs

        if not final and (ctx.meal_cob > 0 or iob > current_basal / 2):
            return

        window = ctx.cr_window
        elapsed = int(round_half_up((bucket.timestamp - window.initial_carb_time).total_seconds() / 60, 0))
        logger.debug("CREndIOB: %s CREndBG: %s CREndTime: %s", iob, bucket.glucose, bucket.timestamp)
        if elapsed < MIN_CR_WINDOW_MINUTES or (final and ctx.meal_cob > 0):
            logger.info("Ignoring %d m CR period.", elapsed)
        else:
            dataset.cr_data.append(CRDatum(
                initial_iob=window.initial_iob,
                initial_bg=window.initial_bg,
                initial_carb_time=window.initial_carb_time,
                end_iob=iob,
                end_bg=bucket.glucose,
                end_time=bucket.timestamp,
                carbs=window.carbs,
                elapsed_minutes=elapsed,
            ))
        ctx.cr_window = None

    @staticmethod
    def _assign(
        bucket: Bucket,
        category: Category,
        ctx: CategorizationContext,
        dataset: CategorizedDataset,
    ) -> None:
        previous = ctx.last_category
        if previous == Category.CSF and category != Category.CSF:
            dataset.csf[-1].meal_absorption = AbsorptionMarker.END
            logger.debug("end carb absorption")
        if previous == Category.UAM and category != Category.UAM:
            dataset.uam[-1].uam_absorption = AbsorptionMarker.END
            logger.debug("end unannounced meal absorption")

        if category == Category.CSF:
            if previous != Category.CSF:
                bucket.meal_absorption = AbsorptionMarker.START
                logger.debug("start carb absorption")
            bucket.meal_carbs = ctx.meal_carbs
        elif category == Category.UAM and previous != Category.UAM:
            bucket.uam_absorption = AbsorptionMarker.START
            logger.debug("start unannounced meal absorption")

        bucket.category = category
        dataset.collection(category).append(bucket)
        ctx.last_category = category

    def _fill_cr_insulin(self, dataset: CategorizedDataset, history: InsulinHistory, profile: Profile) -> None:
        """Sum insulin delivered per CR window; drop windows that never saw insulin.

        Temp basals count as their net pulses against the pump's schedule.
        """
        if not dataset.cr_data:
            return
        doses = insulin_doses(
            history.treatments,
            lambda t: basal_lookup(profile.pump_basal_profile, t.astimezone(self.tz)),
        )
        for datum in dataset.cr_data:
            datum.insulin = insulin_dosed(datum.initial_carb_time, datum.end_time, doses)
        carbs_only = [d for d in dataset.cr_data if d.is_carbs_only]
        for datum in carbs_only:
            logger.info("Ignoring CR period from %s: no insulin involved", datum.initial_carb_time)
        dataset.cr_data = [d for d in dataset.cr_data if not d.is_carbs_only]

    # ===== STAGE 3: Rebalancing =====

    def rebalance(self, dataset: CategorizedDataset) -> CategorizedDataset:
        rebalanced = rebalance(dataset, categorize_uam_as_basal=self.categorize_uam_as_basal)
        for warning in CategorizationWarning:
            if rebalanced.warnings & warning:
                self._add_warning(warning)
        return rebalanced

    def run(
        self,
        glucose: Iterable[Any],
        treatments: Optional[Sequence[Any]],
        profile: Profile,
        pump_history: Optional[Sequence[Any]] = None,
    ) -> CategorizedDataset:
        """categorize() followed by rebalance()."""
        dataset = self.categorize(glucose, treatments, profile, pump_history)
        if dataset.is_empty:
            return dataset
        return self.rebalance(dataset)
