"""Interface package for retrospective categorization.

This package provides base interfaces, constants and utilities shared by the
bucketing, categorization and rebalancing stages.
"""

from autotune_prep.interface.schema import (
    EnumLiteral,
    ColumnSchema,
    FrameSchemaDefinition,
)
from autotune_prep.interface.autotune_interface import (
    AutotunePrep,
    Category,
    AbsorptionMarker,
    AbsorptionState,
    InsulinCurve,
    CategorizationWarning,
    NO_WARNINGS,
    MalformedDataError,
    MalformedScheduleError,
    ZeroValidInputError,
    INVALID_SENSITIVITY,
    MIN_CR_WINDOW_MINUTES,
    HISTORY_WINDOW_HOURS,
    round_half_up,
)

__all__ = [
    # Schema definitions
    "EnumLiteral",
    "ColumnSchema",
    "FrameSchemaDefinition",
    # Core interfaces
    "AutotunePrep",
    # Enums
    "Category",
    "AbsorptionMarker",
    "AbsorptionState",
    "InsulinCurve",
    # Exceptions
    "MalformedDataError",
    "MalformedScheduleError",
    "ZeroValidInputError",
    # Warnings
    "CategorizationWarning",
    "NO_WARNINGS",
    # Constants
    "INVALID_SENSITIVITY",
    "MIN_CR_WINDOW_MINUTES",
    "HISTORY_WINDOW_HOURS",
    # Utilities
    "round_half_up",
]
