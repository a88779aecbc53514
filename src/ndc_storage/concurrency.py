"""Bounded task groups with first-error cancellation."""

from __future__ import annotations

import contextvars
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Iterator, Sequence, TypeVar

from loguru import logger

from ndc_storage.errors import RequestCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal shared by every task of a request.

    A child token reports cancelled as soon as it or any ancestor is cancelled.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled()


_current_token: contextvars.ContextVar[CancellationToken | None] = contextvars.ContextVar(
    "ndc_storage_cancellation_token", default=None
)


@contextmanager
def cancellation_scope(token: CancellationToken) -> Iterator[CancellationToken]:
    """Bind ``token`` as the current token for code running in this context."""
    reset = _current_token.set(token)
    try:
        yield token
    finally:
        _current_token.reset(reset)


def current_token() -> CancellationToken | None:
    return _current_token.get()


def raise_if_cancelled() -> None:
    """Checkpoint for long-running work such as paginated listings."""
    token = _current_token.get()
    if token is not None and token.is_cancelled():
        raise RequestCancelledError()


def run_bounded(tasks: Sequence[Callable[[], T]], limit: int) -> list[T]:
    """Run ``tasks`` with at most ``limit`` in flight.

    Results are returned in input order. The first task error cancels the
    siblings that have not started yet and is re-raised once the group has
    drained; errors raised later never replace it.
    """
    if len(tasks) <= 1 or limit <= 1:
        results: list[T] = []
        for task in tasks:
            raise_if_cancelled()
            results.append(task())
        return results

    group = CancellationToken(current_token())
    slots: list[T | None] = [None] * len(tasks)
    first_error: list[Exception] = []
    lock = threading.Lock()

    def _run(index: int, task: Callable[[], T]) -> None:
        if group.is_cancelled():
            return
        try:
            with cancellation_scope(group):
                slots[index] = task()
        except Exception as e:
            with lock:
                if not first_error:
                    first_error.append(e)
            group.cancel()

    workers = min(limit, len(tasks))
    logger.debug(f"running {len(tasks)} tasks with {workers} workers")
    with ThreadPoolExecutor(max_workers=workers) as executor:
        for index, task in enumerate(tasks):
            ctx = contextvars.copy_context()
            executor.submit(ctx.run, _run, index, task)

    if first_error:
        raise first_error[0]
    if group.is_cancelled():
        raise RequestCancelledError()
    return slots  # type: ignore[return-value]
