"""Shared type aliases for structured payloads (log context, summaries)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union

JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]  # Any for recursive slots
JsonDict = dict[str, Any]
JsonMapping = Mapping[str, Any]
