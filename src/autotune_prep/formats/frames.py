"""Frame schemas for categorized output.

Service columns carry the categorization tags; data columns carry the
reading and the numbers the categorizer derived for it.
"""

import polars as pl

from autotune_prep.interface.schema import FrameSchemaDefinition

UTC_DATETIME = pl.Datetime(time_unit="us", time_zone="UTC")

BUCKET_SCHEMA = FrameSchemaDefinition(
    service_columns=[
        {"name": "category", "dtype": pl.Utf8,
         "description": "Final category: csf, ISF, uam or basal"},
        {"name": "meal_absorption", "dtype": pl.Utf8,
         "description": "start/end marker of a carb absorption run"},
        {"name": "uam_absorption", "dtype": pl.Utf8,
         "description": "start/end marker of an unannounced meal run"},
        {"name": "invalid_isf", "dtype": pl.Boolean,
         "description": "ISF lookup returned the invalid sentinel for this bucket"},
    ],
    data_columns=[
        {"name": "datetime", "dtype": UTC_DATETIME,
         "description": "Bucket anchor time"},
        {"name": "glucose", "dtype": pl.Float64, "unit": "mg/dL",
         "description": "Mean glucose of the readings in the bucket"},
        {"name": "avg_delta", "dtype": pl.Float64, "unit": "mg/dL/5m",
         "description": "Average 5 minute change over the preceding 20 minutes"},
        {"name": "delta", "dtype": pl.Float64, "unit": "mg/dL/5m",
         "description": "Change since the preceding bucket"},
        {"name": "bgi", "dtype": pl.Float64, "unit": "mg/dL/5m",
         "description": "Glucose impact of insulin activity"},
        {"name": "deviation", "dtype": pl.Float64, "unit": "mg/dL/5m",
         "description": "avg_delta minus bgi"},
        {"name": "iob", "dtype": pl.Float64, "unit": "U",
         "description": "Insulin on board"},
        {"name": "meal_carbs", "dtype": pl.Float64, "unit": "g",
         "description": "Carbs of the meal being absorbed (CSF buckets only)"},
    ],
    primary_key=["datetime"],
)

CR_SCHEMA = FrameSchemaDefinition(
    service_columns=[],
    data_columns=[
        {"name": "initial_carb_time", "dtype": UTC_DATETIME,
         "description": "Window start"},
        {"name": "end_time", "dtype": UTC_DATETIME,
         "description": "Window end"},
        {"name": "elapsed_minutes", "dtype": pl.Int64, "unit": "min",
         "description": "Window length"},
        {"name": "initial_bg", "dtype": pl.Float64, "unit": "mg/dL",
         "description": "Glucose at window start"},
        {"name": "end_bg", "dtype": pl.Float64, "unit": "mg/dL",
         "description": "Glucose at window end"},
        {"name": "initial_iob", "dtype": pl.Float64, "unit": "U",
         "description": "Insulin on board at window start"},
        {"name": "end_iob", "dtype": pl.Float64, "unit": "U",
         "description": "Insulin on board at window end"},
        {"name": "carbs", "dtype": pl.Float64, "unit": "g",
         "description": "Carbs entered during the window"},
        {"name": "insulin", "dtype": pl.Float64, "unit": "U",
         "description": "Insulin delivered during the window"},
    ],
    primary_key=["initial_carb_time"],
)
