"""
governance_engines.tracer -- ENGINE_TRACE records for pure engine calls.

Responsibility:
    ``@traced_engine`` logs one DEBUG record per engine call: engine name
    and version, a fingerprint of selected keyword inputs, an optional
    one-line summary of the result, and the call's duration.  Two calls
    with equal fingerprinted inputs produce equal fingerprints, so a trace
    can be matched to the decision it explains.

Architecture position:
    Engines -- support for the pure calculation layer.  Logs through the
    plain ``logging`` module under the ``governance_kernel`` namespace, so
    the kernel's JSON handler receives it while this module imports
    nothing from the kernel.  Nothing is computed when DEBUG is off.
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

_logger = logging.getLogger("governance_kernel.engines.trace")


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return {name: _plain(getattr(value, name)) for name in value.__dataclass_fields__}
    return value


def input_fingerprint(fields: tuple[str, ...], kwargs: Mapping[str, Any]) -> str:
    """First 16 hex chars of a SHA-256 over the named keyword arguments."""
    selected = {name: _plain(kwargs.get(name)) for name in fields}
    canonical = json.dumps(selected, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
    summarize: Callable[[Any], Any] | None = None,
) -> Callable:
    """Wrap an engine function so each call emits ENGINE_TRACE at DEBUG."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _logger.isEnabledFor(logging.DEBUG):
                return func(*args, **kwargs)

            started = time.perf_counter()
            result = func(*args, **kwargs)
            trace: dict[str, Any] = {
                "engine_name": engine_name,
                "engine_version": engine_version,
                "function": func.__qualname__,
                "input_fingerprint": input_fingerprint(fingerprint_fields, kwargs),
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            }
            if summarize is not None:
                trace["result_summary"] = summarize(result)
            _logger.debug("ENGINE_TRACE", extra=trace)
            return result

        return wrapper

    return decorator
