# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Helpers behind oauthguard's layered configuration: ``OAUTHGUARD_*``
environment lookups, duration strings (``30s``, ``15m``, ``2h``, ``1d``)
and YAML/JSON settings files.
"""

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

ENV_PREFIX = "OAUTHGUARD_"

_DURATION_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)\s*([smhd])$')
_PLAIN_NUMBER = re.compile(r'^\d+(?:\.\d+)?$')
_DURATION_UNITS = {
    's': 'seconds',
    'm': 'minutes',
    'h': 'hours',
    'd': 'days',
}
_TRUTHY = frozenset({'true', '1', 'yes', 'on'})


def env_key(key: str, prefix: str = ENV_PREFIX) -> str:
    return f"{prefix}{key.upper()}"


def load_config_from_env(prefix: str = ENV_PREFIX) -> Dict[str, str]:
    """Collect every ``{prefix}*`` variable, keyed by the lower-cased remainder."""
    return {
        name[len(prefix):].lower(): value
        for name, value in os.environ.items()
        if name.startswith(prefix)
    }


def _cast(value: str, cast_type: type) -> Any:
    if cast_type is bool:
        return value.strip().lower() in _TRUTHY
    if cast_type is list:
        return [item.strip() for item in value.split(',') if item.strip()]
    if cast_type is timedelta:
        return parse_duration(value)
    return cast_type(value)


def get_config_value(key: str, default: Any = None,
                     cast_type: Optional[type] = None,
                     env_prefix: str = ENV_PREFIX) -> Any:
    """
    Read ``key`` from the environment, falling back to ``default``.

    Values that fail to cast to ``cast_type`` also fall back to ``default``.
    """
    raw = os.environ.get(env_key(key, env_prefix))
    if raw is None:
        return default
    if cast_type is None:
        return raw

    try:
        return _cast(raw, cast_type)
    except (ValueError, TypeError):
        return default


def parse_duration_string(duration_str: str) -> timedelta:
    """Parse '30s', '5m', '2h' or '1d' (fractions allowed) into a timedelta."""
    if not isinstance(duration_str, str):
        raise ValueError("Duration must be a string")

    match = _DURATION_PATTERN.match(duration_str.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration format: {duration_str}")

    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: float(amount)})


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Accept a timedelta, a number of seconds or a duration string."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str) and _PLAIN_NUMBER.match(value.strip()):
        return timedelta(seconds=float(value))
    return parse_duration_string(value)


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """Load a settings mapping from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == '.json':
        loader = json.loads
    elif suffix in ('.yaml', '.yml'):
        loader = yaml.safe_load
    else:
        raise ValueError(f"Unsupported configuration file format: {suffix}")

    return loader(path.read_text(encoding='utf-8')) or {}
