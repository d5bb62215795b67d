"""Naming conventions shared by everything that inspects lookup columns."""

from __future__ import annotations

import re
from typing import Optional

LOOKUP_SUFFIX = "_value"
LOOKUP_ATTRIBUTE_TYPES = {"Lookup", "Customer", "Owner"}
LOOKUP_LOGICAL_NAME_ANNOTATION = "@Microsoft.Dynamics.CRM.lookuplogicalname"

_VALUE_SUFFIX_RE = re.compile(r"_value.*$")


def is_lookup_column(column_name: Optional[str]) -> bool:
    """True for `_<attr>_value` columns and their `_value@...` annotations."""
    if not isinstance(column_name, str) or not column_name:
        return False
    return column_name.endswith(LOOKUP_SUFFIX) or f"{LOOKUP_SUFFIX}@" in column_name


def is_lookup_value_column(column_name: Optional[str]) -> bool:
    """Like is_lookup_column, but excludes annotation keys."""
    return is_lookup_column(column_name) and "@" not in column_name


def extract_field_name(column_name: str) -> str:
    """`_parentcustomerid_value` -> `parentcustomerid`."""
    name = _VALUE_SUFFIX_RE.sub("", column_name)
    return name[1:] if name.startswith("_") else name


def lookup_field_name(attribute_name: str) -> str:
    """`parentcustomerid` -> `_parentcustomerid_value`."""
    return f"_{attribute_name}{LOOKUP_SUFFIX}"


def is_lookup_type(data_type: Optional[str]) -> bool:
    return bool(data_type) and data_type in LOOKUP_ATTRIBUTE_TYPES


def build_filter(lookup_column: str, record_id: str) -> str:
    """
    Filter expression for child records of one parent record.

    The id goes in unquoted: the platform compares lookup columns as GUIDs.
    """
    if not lookup_column or not record_id:
        raise ValueError("lookup_column and record_id are both required")
    return f"{lookup_column} eq {record_id}"
