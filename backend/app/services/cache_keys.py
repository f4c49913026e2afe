"""Stable, versioned cache keys."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def stable_json(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


def hash_params(params: Mapping[str, Any]) -> str:
    return hashlib.sha256(stable_json(params).encode("utf-8")).hexdigest()[:24]


def build_cache_key(view: str, version: int, scope: str, params: Mapping[str, Any]) -> str:
    """``{view}_v{version}:{scope}:{hash}``; bump ``version`` when a view's output changes meaning."""

    return f"{view}_v{version}:{scope}:{hash_params(params)}"
