"""Structured logging for the engine and the CLI.

structlog events are rendered through stdlib handlers, one per configured
output, each with its own format and level. Two things are specific to
vaultrank:

- query correlation: every line logged inside ``query_scope`` carries that
  query's ``request_id``, so one search can be followed from query
  embedding through candidate gathering to fusion
- CLI verbosity: ``console_level`` overrides the level of stderr/stdout
  outputs only, so ``vaultrank -v`` shows debug output on the terminal while
  file outputs keep the level the vault config gives them
"""

from __future__ import annotations

import contextlib
import logging
import sys
from collections.abc import Iterator
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

if TYPE_CHECKING:
    from vaultrank.config.models import LoggingConfig, LogOutputConfig

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

CONSOLE_DESTINATIONS = ("stderr", "stdout")

# watchfiles logs every filtered change at debug and the index dir lives in
# the vault; httpx logs one line per remote embedding request.
_QUIET_LOGGERS = ("watchfiles.main", "httpx", "httpcore")


def get_request_id() -> str | None:
    return _request_id.get()


@contextlib.contextmanager
def query_scope(request_id: str | None = None) -> Iterator[str]:
    """Tag every log line emitted in the block with a query correlation id."""
    rid = request_id or uuid4().hex[:12]
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


def _add_request_id(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if rid := get_request_id():
        event_dict.setdefault("request_id", rid)
    return event_dict


def _level(name: str) -> int:
    return logging.getLevelNamesMapping().get(name.upper(), logging.INFO)


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    console_level: str | None = None,
) -> None:
    """Install handlers for every output in ``config``.

    Args:
        config: Logging section of the resolved config. Defaults to one
            console output on stderr.
        console_level: Level forced on console outputs (CLI verbosity).
    """
    from vaultrank.config.models import LoggingConfig

    config = config or LoggingConfig()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
        _add_request_id,  # type: ignore[list-item]
    ]

    handlers = [
        _build_handler(output, config.level, console_level, shared_processors)
        for output in config.outputs
    ]
    # Root passes everything any handler wants; handlers filter
    root_level = min((h.level for h in handlers), default=_level(config.level))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured per CLI invocation, so no caching
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    for old in root_logger.handlers:
        old.close()
    root_logger.handlers.clear()
    root_logger.setLevel(root_level)
    for handler in handlers:
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _build_handler(
    output: LogOutputConfig,
    default_level: str,
    console_level: str | None,
    shared_processors: list[structlog.types.Processor],
) -> logging.Handler:
    is_console = output.destination in CONSOLE_DESTINATIONS
    if is_console and console_level is not None:
        level = console_level
    else:
        level = output.level or default_level

    if output.format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=is_console and sys.stderr.isatty(),
            pad_event_to=0,
            pad_level=False,
        )

    handler: logging.Handler
    if output.destination == "stderr":
        handler = logging.StreamHandler(sys.stderr)
    elif output.destination == "stdout":
        handler = logging.StreamHandler(sys.stdout)
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")

    handler.setLevel(_level(level))
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors)
    )
    return handler
