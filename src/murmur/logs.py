"""Centralized logging configuration for murmur using structlog."""

import logging
import time
from typing import Any

import numpy as np
import structlog
from structlog.dev import BRIGHT, DIM, RESET_ALL, Column, ConsoleRenderer, KeyValueColumnFormatter
from structlog.typing import EventDict, Processor, WrappedLogger

from murmur.format import Pretty, Unit

_STARTED_AT = time.monotonic()

_LIBRARY_LOGGERS = ["websockets", "asyncio"]

_SESSION_ID_CHARS = 8


def ansi_fg(rgb: int) -> str:
  """ANSI 24-bit foreground escape for a 0xRRGGBB color."""
  return f"\x1b[38;2;{rgb >> 16 & 0xFF};{rgb >> 8 & 0xFF};{rgb & 0xFF}m"


_LEVEL_LABELS = {
  "debug": ("dbug", 0x908CAA),
  "info": ("info", 0x9CCFD8),
  "warning": ("warn", 0xF6C177),
  "error": ("eror", 0xEB6F92),
  "exception": ("exc!", 0xEB6F92),
  "critical": ("crit", 0xEB6F92),
}


class FloatPrecisionProcessor:
  """
  Round floats in log events, including floats nested in lists, dicts and numpy arrays.

  Durations and peak levels are logged on every audio chunk, so unrounded values make the
  console unreadable.
  """

  def __init__(self, digits: int = 3, skip: set[str] | None = None):
    self.digits = digits
    self.skip = skip or set()

  def round_value(self, value: Any) -> Any:
    match value:
      case bool():
        return value
      case float() | np.floating():
        return round(float(value), self.digits)
      case np.ndarray():
        return self.round_value(value.tolist())
      case list():
        return [self.round_value(item) for item in value]
      case dict():
        return {key: self.round_value(item) for key, item in value.items()}
    return value

  def __call__(self, _: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() - self.skip:
      event_dict[key] = self.round_value(event_dict[key])
    return event_dict


def _render_units(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
  """Render unit and pretty wrappers as strings so JSON output doesn't see bare tuples."""
  for key, value in event_dict.items():
    if isinstance(value, (Unit, Pretty)):
      event_dict[key] = str(value)
  return event_dict


def _elapsed_processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
  """Stamp each event with the time since startup as +[h:][m:]ss.mmm."""
  minutes, seconds = divmod(time.monotonic() - _STARTED_AT, 60)
  hours, minutes = divmod(int(minutes), 60)
  if hours:
    stamp = f"{hours:02d}:{minutes:02d}:{seconds:06.3f}"
  elif minutes:
    stamp = f"{minutes:02d}:{seconds:06.3f}"
  else:
    stamp = f"{seconds:06.3f}"
  event_dict["timestamp"] = f"+{stamp}"
  return event_dict


def _compact_level_processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
  """Replace the level name with a colored four-character label."""
  if label := _LEVEL_LABELS.get(event_dict.get("level")):
    text, color = label
    event_dict["level"] = f"[{ansi_fg(color)}{text}{RESET_ALL}]"
  return event_dict


def _short_session_processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
  """Generated session ids are 32 hex chars; the console only needs a prefix."""
  session = event_dict.get("session")
  if isinstance(session, str) and len(session) > _SESSION_ID_CHARS:
    event_dict["session"] = session[:_SESSION_ID_CHARS]
  return event_dict


def _column(key: str, value_style: str, **kwargs: Any) -> Column:
  return Column(
    key,
    KeyValueColumnFormatter(
      key_style=None, value_style=value_style, reset_style=RESET_ALL, value_repr=str, **kwargs
    ),
  )


def _console_renderer() -> ConsoleRenderer:
  bracketed = {"prefix": "[", "postfix": "]"}

  return ConsoleRenderer(
    colors=True,
    columns=[
      Column(
        "",
        KeyValueColumnFormatter(
          key_style=ansi_fg(0x6E6A86),
          value_style=ansi_fg(0xF6C177),
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      _column("timestamp", DIM),
      _column("level", ""),
      _column("logger_name", ansi_fg(0x7D6B95), **bracketed),
      _column("logger", ansi_fg(0x7D6B95), **bracketed),
      _column("session", ansi_fg(0x31748F), **bracketed),
      _column("event", BRIGHT, width=30),
    ],
  )


def setup_logging(
  level: str = "INFO", json_output: bool = False, correlation_id: str | None = None
) -> None:
  """Configure structured logging for the relay process."""

  shared_processors: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.stdlib.ExtraAdder(),
    FloatPrecisionProcessor(digits=3, skip={"session"}),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
  ]

  if correlation_id:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

  if json_output:
    shared_processors.extend([_render_units, structlog.processors.TimeStamper(fmt="iso")])
    log_renderer: Processor = structlog.processors.JSONRenderer()
  else:
    shared_processors.extend(
      [_compact_level_processor, _elapsed_processor, _short_session_processor]
    )
    log_renderer = _console_renderer()

  structlog.configure(
    processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
  )

  handler = logging.StreamHandler()
  handler.setFormatter(
    structlog.stdlib.ProcessorFormatter(
      foreign_pre_chain=shared_processors,
      processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, log_renderer],
    )
  )
  root_logger = logging.getLogger()
  root_logger.handlers.clear()
  root_logger.addHandler(handler)
  root_logger.setLevel(level)

  # Library chatter only surfaces when it matters
  for name in _LIBRARY_LOGGERS:
    library_logger = logging.getLogger(name)
    library_logger.handlers.clear()
    library_logger.setLevel(logging.WARNING)
    library_logger.propagate = True


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
  """Get a structured logger, optionally bound with initial context such as a session id."""
  return structlog.get_logger(name, **initial_values)
