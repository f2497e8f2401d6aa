"""
Row stream cursors.

``RecordStream`` turns any iterable of database rows into the
``current()/next()/valid()/close()`` cursor the merge iterator expects.
It keeps exactly one converted row ahead of the caller.
"""

from typing import Any, Callable, Iterable, Optional

from ..core.sources import RowStream, RowT


_EXHAUSTED = object()


class RecordStream(RowStream[RowT]):
    """
    Cursor over an iterable of rows with a one-row prefetch.

    Args:
        rows: Rows to walk, typically a streamed SQLAlchemy ``Result``
        factory: Converts a raw row into the record handed to callers
        on_close: Called once when the stream is closed, e.g. to release a connection
    """

    def __init__(self, rows: Iterable[Any], factory: Callable[[Any], RowT] = None,
                 on_close: Callable[[], None] = None):
        self._rows = rows
        self._iterator = iter(rows)
        self._factory = factory
        self._on_close = on_close
        self._current: Any = _EXHAUSTED
        self._closed = False
        self._fetch()

    def _fetch(self) -> None:
        row = next(self._iterator, _EXHAUSTED)
        if row is not _EXHAUSTED and self._factory is not None:
            row = self._factory(row)
        self._current = row

    def current(self) -> Optional[RowT]:
        if self._current is _EXHAUSTED:
            return None
        return self._current

    def next(self) -> None:
        if not self._closed and self._current is not _EXHAUSTED:
            self._fetch()

    def valid(self) -> bool:
        return not self._closed and self._current is not _EXHAUSTED

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._current = _EXHAUSTED
        try:
            close_rows = getattr(self._rows, 'close', None)
            if close_rows is not None:
                close_rows()
        finally:
            if self._on_close is not None:
                self._on_close()

    @property
    def closed(self) -> bool:
        return self._closed
