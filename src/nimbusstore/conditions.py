"""
Condition maps for bucket policy statements

A policy condition block looks like::

    {"StringEquals": {"s3:prefix": ["photos/"]}}

``ConditionMap`` is the outer mapping (operator to key map) and
``ConditionKeyMap`` the inner one (condition key to a set of values).
"""

from typing import Dict, Iterable, Optional, Set

from .error import PolicyException


class ConditionKeyMap(dict):
    """Condition key to set of values, e.g. ``{"s3:prefix": {"photos/"}}``."""

    def __init__(self, values: Optional[Dict[str, Iterable[str]]] = None):
        super().__init__()
        for key, value in (values or {}).items():
            self[key] = _as_set(value)

    def add(self, key: str, values: Iterable[str]) -> None:
        """Insert a new key. Re-adding an existing key with different values is an error."""
        values = set(values)
        if key in self and self[key] != values:
            raise PolicyException(f"Condition key '{key}' already exists with different values.")
        self[key] = values

    def put(self, key: str, values: Iterable[str]) -> None:
        """Union ``values`` into the set stored under ``key``."""
        self.setdefault(key, set()).update(values)

    def remove(self, key: str, values: Iterable[str]) -> None:
        """Subtract ``values`` from ``key``; the key is dropped once empty."""
        if key not in self:
            return
        self[key] -= set(values)
        if not self[key]:
            del self[key]

    def copy(self) -> "ConditionKeyMap":
        return ConditionKeyMap({key: set(values) for key, values in self.items()})

    def to_dict(self) -> Dict[str, object]:
        # Single values serialize as a bare string, which is what S3 returns.
        out = {}
        for key in sorted(self):
            values = sorted(self[key])
            out[key] = values[0] if len(values) == 1 else values
        return out


class ConditionMap(dict):
    """Condition operator (``StringEquals``, ``StringNotEquals``, ...) to ``ConditionKeyMap``."""

    def __init__(self, values: Optional[Dict[str, Dict[str, Iterable[str]]]] = None):
        super().__init__()
        for operator, key_map in (values or {}).items():
            self[operator] = ConditionKeyMap(key_map)

    def put(self, operator: str, key_map: ConditionKeyMap) -> None:
        """Merge ``key_map`` into the map for ``operator``, creating a copy if absent."""
        if operator in self:
            for key, values in key_map.items():
                self[operator].put(key, values)
        else:
            self[operator] = ConditionKeyMap(key_map)

    def put_all(self, other: "ConditionMap") -> None:
        for operator, key_map in other.items():
            self.put(operator, key_map)

    def copy(self) -> "ConditionMap":
        result = ConditionMap()
        for operator, key_map in self.items():
            result[operator] = ConditionKeyMap(key_map)
        return result

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {operator: self[operator].to_dict() for operator in sorted(self)}


def _as_set(value) -> Set[str]:
    if isinstance(value, str):
        return {value}
    return set(value)
