# widgetsmith/services/parameters.py
"""
Parameter coercion and merging.

A tool's `parameters_schema` maps names to default values; the runtime type
of each default decides how an incoming value is coerced:

    bool         -> bool ("true", "1", "yes", "on" are truthy strings)
    int / float  -> float for strings (0 when unparsable or not finite), numbers kept
    list         -> list of strings (a newline-delimited string is split)
    anything else -> str
"""
import math
from typing import Any, Dict, List, Mapping, Optional

_TRUTHY = {"true", "1", "yes", "on"}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _coerce_number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return 0 if isinstance(value, float) and not math.isfinite(value) else value
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return 0
    # NaN and infinities are not valid JSON
    return number if math.isfinite(number) else 0


def _coerce_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, str) else str(item) for item in value]
    if value is None:
        return []
    return [line for line in str(value).split("\n") if line]


def coerce_value(default: Any, value: Any) -> Any:
    """Coerce `value` to the runtime type of `default`."""
    # bool before numbers: bool is a subclass of int
    if isinstance(default, bool):
        return _coerce_bool(value)
    if isinstance(default, (int, float)):
        return _coerce_number(value)
    if isinstance(default, list):
        return _coerce_list(value)
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def coerce_parameters(schema: Mapping[str, Any], params: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce every key known to the schema; unknown keys pass through."""
    coerced: Dict[str, Any] = {}
    for key, value in params.items():
        if key in schema:
            coerced[key] = coerce_value(schema[key], value)
        else:
            coerced[key] = value
    return coerced


def resolve_effective_parameters(
    schema: Optional[Mapping[str, Any]],
    current: Optional[Mapping[str, Any]],
    requested: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    current_parameters overlaid with the request, then coerced against the schema.
    Keys missing from both keep being absent; render() falls back to its own defaults.
    """
    merged: Dict[str, Any] = dict(current or {})
    merged.update(requested or {})
    return coerce_parameters(schema or {}, merged)


def initial_parameters(schema: Optional[Mapping[str, Any]], current: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Parameters for the automatic first run: current values, or schema defaults when empty."""
    if current:
        return resolve_effective_parameters(schema, current, None)
    return dict(schema or {})
