"""Miscellaneous small utilities shared across modules."""
from __future__ import annotations

import os
import secrets
import string
from typing import List, Optional


def env_bool(name: str, default: bool) -> bool:
    """Parse an environment variable as a boolean.

    Values like ``1``, ``true``, ``yes`` and ``on`` are treated as ``True`` while
    ``0``/``false``/``no``/``off`` map to ``False``.  If the variable is not set
    the ``default`` value is returned.
    """

    val = os.getenv(name)
    if val is None:
        return default
    try:
        return bool(int(val))
    except ValueError:
        return val.strip().lower() in {"true", "t", "yes", "y", "on"}


def env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    """Parse a comma separated environment variable into a list of strings."""
    val = os.getenv(name)
    if val is None:
        return list(default or [])
    return [item.strip() for item in val.split(",") if item.strip()]


def random_user_id(prefix: str = "user_") -> str:
    """Return a short random participant id such as ``user_k3j9x0q2a``."""
    alphabet = string.ascii_lowercase + string.digits
    return prefix + "".join(secrets.choice(alphabet) for _ in range(9))


__all__ = ["env_bool", "env_list", "random_user_id"]
