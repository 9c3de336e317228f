"""Change notification helper shared by the sync components."""

import logging
from collections.abc import Callable
from typing import Generic, ParamSpec


logger = logging.getLogger(__name__)

P = ParamSpec("P")


class Listeners(Generic[P]):
    """Ordered set of callbacks invoked synchronously on the event loop.

    A failing listener is logged and does not stop the others, so a broken
    subscriber can never break the component that emits.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: list[Callable[P, None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[P, None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A callable that removes the callback again
        """
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def emit(self, *args: P.args, **kwargs: P.kwargs) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args, **kwargs)
            except Exception:
                logger.exception("%s listener failed", self._name)
