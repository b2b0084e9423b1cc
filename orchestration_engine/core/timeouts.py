"""Bounded calls for collaborators that do not take a timeout themselves."""

import concurrent.futures
import threading
from typing import Any, Callable, TypeVar

T = TypeVar("T")


class CallTimeout(TimeoutError):
    pass


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
    """
    Run fn in a helper thread and wait at most `timeout` seconds.

    On timeout the helper thread is abandoned (it is a daemon) and
    CallTimeout is raised; exceptions raised by fn propagate unchanged.
    """
    future: concurrent.futures.Future = concurrent.futures.Future()

    def runner():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(target=runner, daemon=True, name=f"bounded-{getattr(fn, '__name__', 'call')}")
    thread.start()
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        raise CallTimeout(f"{getattr(fn, '__name__', 'call')} timed out after {timeout}s")
