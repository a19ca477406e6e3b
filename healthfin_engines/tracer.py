"""
healthfin_engines.tracer -- HEALTHFIN_ENGINE_TRACE records for pure engines.

Responsibility:
    ``@traced_engine`` wraps an engine entry point and logs one record
    per call: engine name and version, a fingerprint of the selected
    arguments, the wall time, and whether the call raised.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; engines stay free of I/O.

Invariants enforced:
    - The fingerprint is SHA-256 (16 hex chars) over the canonical JSON
      of the selected arguments, positional or keyword, so the same
      inputs trace identically across processes.
    - Arguments are read, never mutated.

Failure modes:
    - A selected argument the call did not receive and that has no
      default is fingerprinted as null.
    - An engine exception is traced with ``outcome="error"`` and
      re-raised unchanged.
"""

from __future__ import annotations

import functools
import inspect
import time
from collections.abc import Callable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any

from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.utils.hashing import hash_payload

_logger = get_logger("engines.tracer")

TRACE_MESSAGE = "HEALTHFIN_ENGINE_TRACE"


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, str, Decimal)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(str(_plain(v)) for v in value)
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    selected = {name: _plain(arguments.get(name)) for name in fingerprint_fields}
    return hash_payload(selected)[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Decorator emitting HEALTHFIN_ENGINE_TRACE around an engine call.

    Args:
        engine_name: Engine identifier (e.g., "aggregation").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Parameter names included in the fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind_partial(*args, **kwargs)
                bound.apply_defaults()
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.monotonic()
            outcome = "ok"
            try:
                return func(*args, **kwargs)
            except Exception:
                outcome = "error"
                raise
            finally:
                _logger.info(
                    TRACE_MESSAGE,
                    extra={
                        "trace_type": TRACE_MESSAGE,
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "input_fingerprint": fingerprint,
                        "duration_ms": round((time.monotonic() - started) * 1000, 2),
                        "outcome": outcome,
                        "function": func.__qualname__,
                    },
                )

        return wrapper

    return decorator
