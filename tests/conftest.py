"""Shared fixtures: synthetic glucose series and profiles."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Sequence

import pytest

from autotune_prep import Profile

BASE_TIME = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def minutes(n: float) -> datetime:
    return BASE_TIME + timedelta(minutes=n)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def glucose_series() -> Callable[..., List[Dict[str, Any]]]:
    """Build Nightscout-style entries, oldest first, `step` minutes apart."""
    def build(values: Sequence[float], step: float = 5, start: datetime = BASE_TIME) -> List[Dict[str, Any]]:
        return [
            {"dateString": (start + timedelta(minutes=step * i)).isoformat(), "sgv": value}
            for i, value in enumerate(values)
        ]
    return build


@pytest.fixture
def profile_data() -> Dict[str, Any]:
    """Flat profile: CR 10, ISF 50, basal 1.0 U/hr, rapid-acting with DIA 5h."""
    return {
        "carb_ratio": 10,
        "isfProfile": {"sensitivities": [{"offset": 0, "sensitivity": 50}]},
        "basalprofile": [{"minutes": 0, "rate": 1.0}],
        "dia": 5,
        "curve": "rapid-acting",
        "min_5m_carbimpact": 8,
        "maxCOB": 120,
    }


@pytest.fixture
def make_profile(profile_data) -> Callable[..., Profile]:
    def build(**overrides: Any) -> Profile:
        data = dict(profile_data)
        data.update(overrides)
        return Profile.from_dict(data)
    return build


def at(n: float) -> str:
    """ISO timestamp `n` minutes after BASE_TIME."""
    return minutes(n).isoformat()


@pytest.fixture
def at_minutes() -> Callable[[float], str]:
    return at
