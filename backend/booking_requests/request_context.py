from __future__ import annotations

import logging
from contextvars import ContextVar
from typing import Optional


_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def set_correlation_id(cid: Optional[str]) -> None:
  _correlation_id.set(cid)


def get_correlation_id() -> Optional[str]:
  return _correlation_id.get()


class CorrelationIdFilter(logging.Filter):
  """Stamp every log record with the current request's correlation id.

  Records emitted outside a request (workers, startup) get "-".
  """

  def filter(self, record: logging.LogRecord) -> bool:
    record.correlation_id = _correlation_id.get() or "-"
    return True
