"""Handle on an operation that completes in the background."""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Any, Callable

from warabi.backend import WarabiError


class AsyncRequest:
    """Wraps a future; ``wait`` returns its (optionally post-processed) result.

    The completion callback runs once, on the first ``wait``; later calls
    return the same value or raise the same error.
    """

    def __init__(
        self,
        future: Future | None = None,
        on_complete: Callable[[Any], Any] | None = None,
    ) -> None:
        self._future = future
        self._on_complete = on_complete
        self._lock = threading.Lock()
        self._waited = False
        self._value: Any = None
        self._error: BaseException | None = None

    def __bool__(self) -> bool:
        return self._future is not None

    def _require_valid(self) -> Future:
        if self._future is None:
            raise WarabiError("Invalid AsyncRequest object")
        return self._future

    def wait(self) -> Any:
        """Block until the operation completes and return its result."""
        future = self._require_valid()
        with self._lock:
            if not self._waited:
                self._waited = True
                try:
                    result = future.result()
                    if self._on_complete is not None:
                        result = self._on_complete(result)
                    self._value = result
                except Exception as exc:
                    self._error = exc
        if self._error is not None:
            raise self._error
        return self._value

    def completed(self) -> bool:
        """Tell whether the operation has finished, without blocking."""
        return self._require_valid().done()

    def __enter__(self) -> AsyncRequest:
        return self

    def __exit__(self, exc_type: object, *exc_info: object) -> None:
        if self and exc_type is None:
            self.wait()