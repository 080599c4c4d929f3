"""Field value type registry.

Each named type knows how to convert an incoming client value into the
stored representation, raising ValueError when the value does not fit.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

from metaguard.auth.password import PasswordService

ConvertFn = Callable[[Any], Any]

OBJECT_ID_PATTERN = re.compile(r"[0-9a-fA-F]{24}")

_password_service = PasswordService()


@dataclass(frozen=True)
class FieldType:
    name: str
    convert: ConvertFn


def _convert_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar value")
    return str(value).strip()


def _convert_number(value: Any) -> float | int:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ValueError(f"'{value}' is not a number")
    return int(number) if number.is_integer() else number


def _convert_int(value: Any) -> int:
    number = _convert_number(value)
    if isinstance(number, float) and not number.is_integer():
        raise ValueError(f"'{value}' is not an integer")
    return int(number)


def _convert_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValueError(f"'{value}' is not a boolean")


def _convert_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"'{value}' is not an ISO date")


def _convert_array(value: Any) -> list:
    if not isinstance(value, list):
        raise ValueError("expected an array")
    return value


def _convert_object(value: Any) -> dict:
    if not isinstance(value, dict):
        raise ValueError("expected an object")
    return value


def _convert_password(value: Any) -> str:
    text = _convert_string(value)
    if not text:
        raise ValueError("password must not be empty")
    if _password_service.is_hash(text):
        return text
    return _password_service.hash(text)


def _convert_ref(value: Any) -> str:
    # Either the target's id string or its label; labels are resolved to ids
    # against the target collection before the write
    text = _convert_string(value)
    if not text:
        raise ValueError("reference must not be empty")
    return text


FIELD_TYPES: dict[str, FieldType] = {
    "string": FieldType(name="string", convert=_convert_string),
    "text": FieldType(name="text", convert=_convert_string),
    "number": FieldType(name="number", convert=_convert_number),
    "int": FieldType(name="int", convert=_convert_int),
    "boolean": FieldType(name="boolean", convert=_convert_boolean),
    "date": FieldType(name="date", convert=_convert_date),
    "array": FieldType(name="array", convert=_convert_array),
    "object": FieldType(name="object", convert=_convert_object),
    "password": FieldType(name="password", convert=_convert_password),
    "ref": FieldType(name="ref", convert=_convert_ref),
}


def register_type(field_type: FieldType) -> None:
    """Register an application type. Re-registering a name replaces it."""
    FIELD_TYPES[field_type.name] = field_type


def int_enum_type(name: str, values: list[int]) -> FieldType:
    """Build a type that only accepts the given integer values."""
    allowed = frozenset(values)

    def convert(value: Any) -> int:
        number = _convert_int(value)
        if number not in allowed:
            raise ValueError(f"{number} is not one of {sorted(allowed)}")
        return number

    return FieldType(name=name, convert=convert)


def is_registered(type_name: str) -> bool:
    return type_name in FIELD_TYPES


def get_field_type(type_name: str) -> FieldType:
    """Get a field type definition, defaulting to string if unknown."""
    return FIELD_TYPES.get(type_name, FIELD_TYPES["string"])


def convert_value(type_name: str, value: Any) -> Any:
    """Convert a client value for a field type. None passes through."""
    if value is None:
        return None
    return get_field_type(type_name).convert(value)
