"""Correlation IDs for database operations.

Every maintenance run, recovery and HTTP request carries one correlation ID so
that the structured log lines it produces can be grouped together.
"""

import contextvars
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import uuid4

NO_CORRELATION_ID = 'no-correlation-id'

correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
  'correlation_id', default=NO_CORRELATION_ID
)


def get_correlation_id() -> str:
  """Return the correlation ID of the current context."""
  return correlation_id.get()


def set_correlation_id(value: str) -> None:
  """Set the correlation ID for the current context.

  Args:
      value: Identifier to attach to subsequent log lines
  """
  correlation_id.set(value)


@contextmanager
def correlation_scope(value: Optional[str] = None) -> Iterator[str]:
  """Run a block under its own correlation ID.

  The previous ID is restored when the block exits, so nested operations
  (a recovery that triggers a backup) keep their caller's ID afterwards.

  Args:
      value: Explicit ID to use; a new UUID is generated when omitted

  Yields:
      The correlation ID active inside the block

  Usage:
      with correlation_scope() as run_id:
          manager.perform_routine_maintenance()
  """
  token = correlation_id.set(value or str(uuid4()))
  try:
    yield correlation_id.get()
  finally:
    correlation_id.reset(token)
