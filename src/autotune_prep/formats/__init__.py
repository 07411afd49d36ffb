"""Output frame schemas."""

from autotune_prep.formats.frames import BUCKET_SCHEMA, CR_SCHEMA

__all__ = ["BUCKET_SCHEMA", "CR_SCHEMA"]
