# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Common helpers shared across oauthguard packages.
"""

from .utils import (
    get_current_time,
    generate_id,
    generate_correlation_id,
    to_seconds,
    isoformat_or_none,
    sanitize_dict,
)

__all__ = [
    'get_current_time',
    'generate_id',
    'generate_correlation_id',
    'to_seconds',
    'isoformat_or_none',
    'sanitize_dict',
]
