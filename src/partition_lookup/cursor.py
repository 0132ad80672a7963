"""
Single-pass async cursor over a paged driver result.

The driver delivers each page of a ``ResponseFuture`` to the callbacks
registered on it, on the driver's I/O thread. ``RowCursor`` bridges those
callbacks onto the event loop and exposes the rows as an async iterator that
requests the next page only once the current one is consumed.

A failure while fetching a page ends iteration quietly; the error is raised
by ``close()``. Callers must drain the cursor and call ``close()`` before
treating the result as complete.
"""

import asyncio
from typing import Any, AsyncIterator


class CursorStateError(RuntimeError):
    """Raised when a cursor is iterated twice or closed before draining."""


class RowCursor:
    """
    Lazy, finite, non-restartable stream of rows.

    Example:
        cursor = RowCursor(session.execute_async(statement, params))
        rows = [row async for row in cursor]
        cursor.close()  # raises the terminal error, if any
    """

    def __init__(self, response_future: Any):
        self._future = response_future
        self._loop = asyncio.get_running_loop()
        self._pages: asyncio.Queue = asyncio.Queue()
        self._error: BaseException | None = None
        self._started = False
        self._exhausted = False
        self.rows_read = 0

        response_future.add_callbacks(self._on_page, self._on_error)

    def _on_page(self, rows):
        self._loop.call_soon_threadsafe(self._pages.put_nowait, (rows, None))

    def _on_error(self, error):
        self._loop.call_soon_threadsafe(self._pages.put_nowait, (None, error))

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._started:
            raise CursorStateError("RowCursor can only be iterated once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            rows, error = await self._pages.get()
            if error is not None:
                self._error = error
                break

            for row in rows or ():
                self.rows_read += 1
                yield row

            if not self._future.has_more_pages:
                break
            self._future.start_fetching_next_page()

        self._exhausted = True

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def close(self) -> None:
        """
        Report the terminal status of the stream.

        Raises:
            The error that ended the stream, if any
            CursorStateError: If the stream was not drained
        """
        if self._error is not None:
            raise self._error
        if not self._exhausted:
            raise CursorStateError("RowCursor closed before it was drained")
