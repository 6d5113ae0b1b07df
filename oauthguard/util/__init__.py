# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Utility helpers for oauthguard configuration.
"""

from .config import (
    load_config_from_env,
    get_config_value,
    parse_duration_string,
    parse_duration,
    load_config_file,
)

__all__ = [
    'load_config_from_env',
    'get_config_value',
    'parse_duration_string',
    'parse_duration',
    'load_config_file',
]
