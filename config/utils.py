"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy or dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
    else:
        getter = getattr(source, 'get', None)
        candidate = getter(section, {}) if callable(getter) else {}

    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(candidate, dict):
        return dict(candidate)
    return {}


def merged_section(source: Any, section: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a config section on top of defaults; missing or null keys keep the default."""
    merged = dict(defaults)
    for key, value in get_config_section(source, section).items():
        if value is not None:
            merged[key] = value
    return merged


def as_bool(value: Any, default: bool = False) -> bool:
    """Interpret YAML/env flags; unresolved ``${VAR}`` placeholders count as unset."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if not text or (text.startswith('${') and text.endswith('}')):
        return default
    return text in ('1', 'true', 'yes', 'on')


def as_secret(value: Any):
    """Return a credential string or None when it is missing or an unresolved placeholder."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or (text.startswith('${') and text.endswith('}')):
        return None
    return text
