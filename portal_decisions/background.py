"""Utilities for running remote calls on the shared worker pool."""

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextvars import copy_context
from typing import Any, Callable

_executor = ThreadPoolExecutor(max_workers=4)


class RemoteCallTimeout(Exception):
    """Raised when a bounded remote call does not complete in time."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} did not complete within {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


def run_async(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
    """Submit *func* to the shared thread pool with the caller's contextvars."""

    context = copy_context()

    def runner() -> Any:
        return context.run(func, *args, **kwargs)

    return _executor.submit(runner)


def call_with_timeout(
    func: Callable[..., Any],
    /,
    *args: Any,
    timeout: float | None,
    operation: str,
    on_late_result: Callable[[Any], None] | None = None,
    **kwargs: Any,
) -> Any:
    """Run *func* on the worker pool and wait at most *timeout* seconds.

    A ``None`` timeout calls *func* inline. The worker is not interrupted on
    expiry. If it had not started it is cancelled; otherwise its eventual
    return value is handed to *on_late_result*, in the caller's context, once
    it finishes without raising.
    """

    if timeout is None:
        return func(*args, **kwargs)

    future = run_async(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        if not future.cancel() and on_late_result is not None:
            _deliver_late_result(future, on_late_result)
        raise RemoteCallTimeout(operation, timeout) from exc


def _deliver_late_result(future: Future, callback: Callable[[Any], None]) -> None:
    context = copy_context()

    def deliver(done: Future) -> None:
        if done.exception() is None:
            context.run(callback, done.result())

    future.add_done_callback(deliver)
