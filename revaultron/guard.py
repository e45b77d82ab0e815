from __future__ import annotations

import functools
import threading
from typing import Any, Callable, TypeVar

from revaultron.errors import ReentrantCall

F = TypeVar("F", bound=Callable[..., Any])


def non_reentrant(method: F) -> F:
    """Reject nested or concurrent entry into guarded methods of one object.

    All guarded methods of an instance share a single lock, so a swap venue or
    token callback that calls back into the same object mid-update fails with
    ``ReentrantCall`` before any state is read or written.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        lock = self.__dict__.get("_reentrancy_lock")
        if lock is None:
            lock = self.__dict__.setdefault("_reentrancy_lock", threading.Lock())
        if not lock.acquire(blocking=False):
            raise ReentrantCall(f"{type(self).__name__}.{method.__name__}")
        try:
            return method(self, *args, **kwargs)
        finally:
            lock.release()

    return wrapper  # type: ignore[return-value]
