"""
Safely casts Any values obtained from JSON parsing to the correct types.

We use this module when reading back the archival data format. Each
accessor asserts that the value has the required type and raises
ValueError otherwise. A missing (or null) value becomes the zero value
of the expected type, except for the optional accessors.
"""

from __future__ import annotations

from typing import (
    Any,
    Dict,
    List,
    Optional,
)


def as_integer(value: Any) -> int:
    # Note: bool is a subclass of int but we don't want to accept it
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return value


def as_float(value: Any) -> float:
    # JSON does not distinguish 1 and 1.0, so we also accept integers
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"expected a float, got {value!r}")
    return float(value)


def as_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected a bool, got {value!r}")
    return value


def as_list(value: Any) -> List:
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {value!r}")
    return value


class DictWrapper:
    """Wrapper for a dict decoded from JSON with typed accessors."""

    def __init__(self, value: Any):
        if not isinstance(value, dict):
            raise ValueError(f"expected a dictionary, got {value!r}")
        self._value: Dict[str, Any] = dict(value)

    def _get(self, key: str) -> Any:
        return self._value.get(as_string(key))

    def getinteger(self, key: str) -> int:
        v = self._get(key)
        return 0 if v is None else as_integer(v)

    def getfloat(self, key: str) -> float:
        v = self._get(key)
        return 0.0 if v is None else as_float(v)

    def getstring(self, key: str) -> str:
        v = self._get(key)
        return "" if v is None else as_string(v)

    def getoptionalstring(self, key: str) -> Optional[str]:
        v = self._get(key)
        return None if v is None else as_string(v)

    def getfailure(self, key: str) -> Optional[str]:
        # A failure is a OONI data type in the archival data format
        # that corresponds to an optional string.
        return self.getoptionalstring(key)

    def getbool(self, key: str) -> bool:
        v = self._get(key)
        return False if v is None else as_bool(v)

    def getlist(self, key: str) -> List:
        v = self._get(key)
        return [] if v is None else as_list(v)

    def getdictionary(self, key: str) -> DictWrapper:
        v = self._get(key)
        return DictWrapper({} if v is None else v)

    def getany(self, key: str) -> Any:
        # Sometimes you need to obtain the given key as Any.
        return self._get(key)

    def unwrap(self) -> Dict[str, Any]:
        return self._value
