# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Facet Contributors

"""Logging for Facet pipeline runs.

Records emitted while a run is in progress carry three pieces of run state:

- ``correlation_id``: one id per :meth:`AccessPipeline.run`
- ``stage``: the pipeline stage executing when the record was emitted
- ``context``: a short prefix of the context address the stage works on

Collaborator retries add ``collaborator`` (ledger, encryption_oracle,
proving_backend). :class:`RunStateFilter` copies the run state onto each
record; :class:`JSONFormatter` and :class:`TextFormatter` render it.

Values handed to :meth:`StageLogger.stage` pass through :func:`redact`
before they are logged. Secret values, key material and nonces are never
written out.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import CoreSettings

ADDRESS_PREFIX = 16
MAX_FIELD_CHARS = 200
REDACTED = "[REDACTED]"
SENSITIVE_MARKERS = ("secret", "private", "shared", "key", "nonce", "plaintext", "witness")

RUN_STATE_FIELDS = ("correlation_id", "stage", "context", "collaborator")

_correlation_id: ContextVar[str | None] = ContextVar("facet_correlation_id", default=None)
_stage: ContextVar[str | None] = ContextVar("facet_stage", default=None)
_context: ContextVar[str | None] = ContextVar("facet_context", default=None)


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Iterator[str]:
    """Scope one pipeline run; yields its correlation id."""
    cid = correlation_id or generate_correlation_id()
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


def run_state() -> dict[str, str]:
    """The run state of the current task, without unset entries."""
    state = {
        "correlation_id": _correlation_id.get(),
        "stage": _stage.get(),
        "context": _context.get(),
    }
    return {name: value for name, value in state.items() if value}


class RunStateFilter(logging.Filter):
    """Copy the current run state onto every record.

    Values passed explicitly through ``extra`` are kept.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        state = run_state()
        for name in RUN_STATE_FIELDS:
            if getattr(record, name, None) is None:
                setattr(record, name, state.get(name))
        return True


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with run state as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in RUN_STATE_FIELDS:
            value = getattr(record, name, None)
            if value:
                entry[name] = value

        fields = getattr(record, "stage_fields", None)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line format for terminals: ``time level logger [run stage context] message``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s %(run_tag)s%(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        cid = getattr(record, "correlation_id", None)
        parts = [
            cid[:8] if cid else None,
            getattr(record, "stage", None),
            getattr(record, "context", None),
            getattr(record, "collaborator", None),
        ]
        tag = " ".join(p for p in parts if p)
        record.run_tag = f"[{tag}] " if tag else ""
        return super().format(record)


def configure_logging(
    settings: CoreSettings | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Install Facet handlers on the root logger.

    Level, format and log file come from ``settings`` (``FACET_LOG_LEVEL``,
    ``FACET_LOG_FORMAT``, ``FACET_LOG_FILE``). With no format set, JSON is
    used unless ``stream`` is a terminal. The log file is always JSON.
    """
    from .config import get_config

    settings = settings or get_config()
    stream = stream or sys.stderr

    log_format = settings.log_format.strip().lower()
    use_json = log_format == "json" or (log_format != "text" and not stream.isatty())

    console = logging.StreamHandler(stream)
    console.setFormatter(JSONFormatter() if use_json else TextFormatter())
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    for handler in handlers:
        handler.addFilter(RunStateFilter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Stage logging
# ---------------------------------------------------------------------------


def redact(value: Any, name: str = "") -> Any:
    """Make a stage argument safe to log.

    Entries whose name contains a sensitive marker are replaced, bytes are
    reduced to their length and long strings are cut.
    """
    if name and any(marker in name.lower() for marker in SENSITIVE_MARKERS):
        return REDACTED
    if isinstance(value, dict):
        return {key: redact(item, str(key)) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [redact(item) for item in value]
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
        return value[:MAX_FIELD_CHARS] + "..."
    return value


class StageLogger:
    """Times pipeline stages and logs their start and outcome."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("facet.pipeline.stages")

    @contextmanager
    def stage(self, name: str, context_address: str | None = None, **fields: Any) -> Iterator[None]:
        """Run the body as stage ``name``.

        Sets the stage (and the context prefix, when given) as run state for
        the duration of the body. A failure is logged at WARNING with the
        exception type only, then re-raised.
        """
        stage_token = _stage.set(name)
        context_token = _context.set(context_address[:ADDRESS_PREFIX]) if context_address else None
        self.logger.debug("Stage %s started", name, extra={"stage_fields": redact(fields)})
        started = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.logger.warning(
                "Stage %s failed after %.1fms: %s", name, _elapsed_ms(started), type(exc).__name__
            )
            raise
        else:
            self.logger.debug("Stage %s finished in %.1fms", name, _elapsed_ms(started))
        finally:
            if context_token is not None:
                _context.reset(context_token)
            _stage.reset(stage_token)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


stage_logger = StageLogger()
