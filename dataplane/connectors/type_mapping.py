"""
Native column type to canonical type mapping.

Pure functions only; every connector routes its introspected native type
strings through map_column_type.
"""

import re
from enum import Enum
from typing import Optional, Tuple


class CanonicalType(str, Enum):
    """Platform-wide semantic column types."""
    STRING = "string"
    NUMBER = "number"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    BINARY = "binary"
    ARRAY = "array"
    OBJECT = "object"
    JSON = "json"
    SPATIAL = "spatial"
    REFERENCE = "reference"


ARRAY_PREFIXES = ("array", "repeated")
OBJECT_PREFIXES = ("map", "struct", "record", "object", "row(")
JSON_KEYWORDS = ("json", "variant")
SPATIAL_KEYWORDS = ("geometry", "geography", "point", "polygon", "linestring")
BINARY_KEYWORDS = ("blob", "bytea", "binary", "bytes", "base64", "image")
DATETIME_KEYWORDS = ("date", "time", "interval")
FLOAT_KEYWORDS = ("decimal", "numeric", "float", "double", "real", "money", "currency", "percent")
NUMBER_KEYWORDS = ("int", "serial", "number")
STRING_KEYWORDS = ("char", "text", "string", "clob", "uuid", "enum", "xml", "citext")
# SaaS field types that are strings by name only
STRING_NAMES = frozenset({
    "id", "picklist", "multipicklist", "email", "phone", "url", "combobox", "textarea",
})

_PARAMS = re.compile(r"\(([^)]*)\)")


def _scale(native: str) -> Optional[int]:
    match = _PARAMS.search(native)
    if not match:
        return None
    parts = [p.strip() for p in match.group(1).split(",")]
    if len(parts) < 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def _head(native: str) -> str:
    """Type name with any parameter list removed."""
    return native.split("(", 1)[0].strip()


def map_column_type(native_type: str) -> str:
    """
    Map a native type string to a canonical type.

    Precedence: array, object, json, spatial, binary, boolean, datetime,
    float, number, string, reference. Unrecognised strings are returned
    unchanged.
    """
    if not native_type:
        return native_type

    base = native_type.strip().lower()
    head = _head(base)

    if base.startswith(ARRAY_PREFIXES) or base.endswith("[]"):
        return CanonicalType.ARRAY.value
    if base.startswith(OBJECT_PREFIXES):
        return CanonicalType.OBJECT.value
    if any(k in head for k in JSON_KEYWORDS):
        return CanonicalType.JSON.value
    if any(k in head for k in SPATIAL_KEYWORDS):
        return CanonicalType.SPATIAL.value
    if any(k in head for k in BINARY_KEYWORDS):
        return CanonicalType.BINARY.value
    if "bool" in head or head == "bit":
        return CanonicalType.BOOLEAN.value
    if any(k in head for k in DATETIME_KEYWORDS):
        return CanonicalType.DATETIME.value
    if any(k in head for k in FLOAT_KEYWORDS):
        return CanonicalType.FLOAT.value
    if any(k in head for k in NUMBER_KEYWORDS):
        # NUMBER(p, s) with a fractional scale holds decimals
        if head == "number" and (_scale(base) or 0) > 0:
            return CanonicalType.FLOAT.value
        return CanonicalType.NUMBER.value
    if head in STRING_NAMES or any(k in head for k in STRING_KEYWORDS):
        return CanonicalType.STRING.value
    if "reference" in head:
        return CanonicalType.REFERENCE.value

    return native_type


def parse_type_parameters(native_type: str) -> Tuple[Optional[int], Optional[int]]:
    """Return (length or precision, scale) from e.g. VARCHAR(255) or NUMERIC(12,4)."""
    match = _PARAMS.search(native_type or "")
    if not match:
        return None, None
    parts = [p.strip() for p in match.group(1).split(",")]
    try:
        first = int(parts[0])
    except ValueError:
        return None, None
    return first, _scale(native_type)
