"""Base Schema Infrastructure.

This module defines the base types, enums, and schema builder classes
used to describe the polars frames produced from categorized data.
"""

import polars as pl
from enum import Enum
from typing import Dict, Any, List, Union, Type, TypedDict, NotRequired


class EnumLiteral(str, Enum):
    """
    A general base class for string-based enums that behave like literals.
    Ensures compatibility with str comparisons and retains enum benefits.
    """
    def __new__(cls, value, *args, **kwargs):
        obj = str.__new__(cls, value)
        obj._value_ = value
        return obj

    def __str__(self):
        # String representation directly returns the value
        return self.value

    def __eq__(self, other):
        # Allow direct comparison with strings
        if isinstance(other, str):
            return self.value == other
        return super().__eq__(other)

    def __hash__(self):
        # Use the hash of the value to behave like a string in hashable contexts
        return hash(self.value)

    def __repr__(self):
        return self.value


class ColumnSchema(TypedDict):
    """Schema definition for a single column."""
    name: str
    dtype: Union[Type[pl.DataType], pl.DataType]
    description: str
    unit: NotRequired[str]
    constraints: NotRequired[Dict[str, Any]]


class FrameSchemaDefinition:
    """Schema definition builder for output frames.

    Splits columns into service columns (category tags, transition markers)
    and data columns (time, glucose and the derived numeric fields), the same
    matryoshka layout used for CGM data: stripping service columns leaves a
    purely numeric frame.
    """

    def __init__(
        self,
        service_columns: List[ColumnSchema],
        data_columns: List[ColumnSchema],
        primary_key: List[str] | None = None
    ) -> None:
        """Initialize schema definition.

        Args:
            service_columns: Metadata columns (e.g., category, meal_absorption)
            data_columns: Data columns (e.g., datetime, glucose, deviation)
            primary_key: Optional list of field names that form the primary key
        """
        self.service_columns = service_columns
        self.data_columns = data_columns
        self.primary_key = primary_key

    def get_polars_schema(self, data_only: bool = False) -> Dict[str, pl.DataType]:
        """Get Polars dtype schema dictionary.

        Args:
            data_only: If True, return only data columns (excludes service columns)

        Returns:
            Dictionary mapping column names to Polars data types
        """
        columns = self.data_columns if data_only else self.service_columns + self.data_columns
        return {col["name"]: col["dtype"] for col in columns}

    def get_column_names(self, data_only: bool = False) -> List[str]:
        """Get list of all column names.

        Args:
            data_only: If True, return only data column names

        Returns:
            List of column names in schema order
        """
        columns = self.data_columns if data_only else self.service_columns + self.data_columns
        return [col["name"] for col in columns]

    def build_frame(self, rows: List[Dict[str, Any]], data_only: bool = False) -> pl.DataFrame:
        """Build a frame from row dicts, enforcing column order and dtypes.

        An empty row list still yields a correctly typed, zero-height frame.
        """
        schema = self.get_polars_schema(data_only=data_only)
        names = self.get_column_names(data_only=data_only)
        if not rows:
            return pl.DataFrame(schema=schema)
        frame = pl.DataFrame(
            [{name: row.get(name) for name in names} for row in rows],
            schema=schema,
        )
        return frame.select(names)

    def validate_dataframe(self, dataframe: pl.DataFrame, data_only: bool = False) -> None:
        """Check that a frame carries exactly the schema's columns and dtypes.

        Raises:
            ValueError: On a missing column or dtype mismatch
        """
        expected = self.get_polars_schema(data_only=data_only)
        missing = [name for name in expected if name not in dataframe.columns]
        if missing:
            raise ValueError(f"Missing columns: {missing}")
        for name, dtype in expected.items():
            if dataframe.schema[name] != dtype:
                raise ValueError(
                    f"Column '{name}' has dtype {dataframe.schema[name]}, expected {dtype}"
                )
