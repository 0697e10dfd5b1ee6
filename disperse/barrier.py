"""Completion barrier for outstanding asynchronous work.

The set of tasks in a run is not known up front: an image command can fork
one file per rotation angle, an upload can be followed by a delete. Rather than
collecting a fixed list of futures, every stage calls ``begin()`` when it starts
something whose completion is not observable synchronously and ``end()`` when
that work settles. Once the synchronous enumeration has been marked with
``clear()`` and the count drains to zero, the finalize callback runs exactly
once.
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from .logger import Logger

if TYPE_CHECKING:
    from .models import ExternalAsset

T = TypeVar("T")


class AsyncTaskBarrier:
    """Counts outstanding units of work and fires a single finalize callback.

    Attributes:
        on_finalize: Called once when the count reaches zero after ``clear()``.
        on_result: Optional hook receiving ``(result, asset)`` for every task
            that ends without an error.
    """

    def __init__(
        self,
        on_finalize: Callable[[], Any],
        logger: Logger | None = None,
        on_result: Callable[[Any, ExternalAsset | None], None] | None = None,
    ):
        self.on_finalize = on_finalize
        self.on_result = on_result
        self.logger = logger or Logger()
        self._count = 0
        self._cleared = False
        self._finalized = False
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def cleared(self) -> bool:
        return self._cleared

    @property
    def finalized(self) -> bool:
        return self._finalized

    def begin(self) -> None:
        """Register one outstanding task."""
        with self._lock:
            if self._finalized:
                return
            self._count += 1

    def end(
        self,
        error: BaseException | str | None = None,
        result: Any = None,
        asset: ExternalAsset | None = None,
    ) -> None:
        """Retire one task.

        Errors are logged, never raised, so a failed task cannot abort its
        siblings. Calls arriving after finalize are ignored.
        """
        with self._lock:
            if self._finalized:
                return
            if self._count > 0:
                self._count -= 1
        if error is not None:
            where = asset.relative_uri if asset is not None else "task"
            self.logger.write_fail(["Task failed", where], error)
        elif result is not None and self.on_result is not None:
            self.on_result(result, asset)
        self._check()

    def clear(self) -> None:
        """Mark the synchronous enumeration phase complete and check for zero."""
        self._cleared = True
        self._check()

    async def track(self, awaitable: Awaitable[T], asset: ExternalAsset | None = None) -> T | None:
        """Await ``awaitable`` as one registered task.

        Returns:
            The awaited result, or None if it raised. The exception is passed
            to ``end()`` and logged there. Cancellation propagates, but the
            task is still retired.
        """
        self.begin()
        error: BaseException | None = None
        result = None
        try:
            result = await awaitable
        except Exception as exc:
            error = exc
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.end(error, result, asset)
        return result

    def _check(self) -> None:
        with self._lock:
            if self._finalized or not self._cleared or self._count > 0:
                return
            self._finalized = True
        self.on_finalize()
