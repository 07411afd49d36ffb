"""Insulin delivered inside a time window."""

from datetime import datetime
from typing import Iterable

from autotune_prep.interface.autotune_interface import round_half_up
from autotune_prep.iob import InsulinDose


def insulin_dosed(start: datetime, end: datetime, doses: Iterable[InsulinDose]) -> float:
    """Sum insulin of doses with ``start < timestamp <= end``, rounded to 3 decimals."""
    total = sum(
        dose.insulin for dose in doses
        if dose.insulin and start < dose.timestamp <= end
    )
    return round_half_up(total, 3)
