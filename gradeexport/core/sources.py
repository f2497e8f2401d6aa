"""
Row source contracts.

The merge iterator never talks to a database directly. It asks a
``GradebookSource`` for two ordered ``RowStream`` cursors described by a
``StreamQuery``, plus the suspended user ids and the staleness flag of the
course total.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Generic, Optional, Sequence, Set, Tuple, TypeVar

from .models import GradeRow, SortKey, UserRow

RowT = TypeVar('RowT')


class RowStream(ABC, Generic[RowT]):
    """
    Forward-only cursor over an ordered result.

    ``current()`` is only meaningful while ``valid()`` is true.
    """

    @abstractmethod
    def current(self) -> Optional[RowT]:
        pass

    @abstractmethod
    def next(self) -> None:
        pass

    @abstractmethod
    def valid(self) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


@dataclass(frozen=True)
class StreamQuery:
    """
    Everything the query layer needs to produce both streams.

    Both streams built from the same query share the same ordering.
    """
    course_id: int
    group_id: int = 0
    sort_keys: Tuple[SortKey, ...] = field(default_factory=tuple)
    only_active: bool = False
    include_custom_fields: bool = False
    # enrolment reference time, shared by every statement of one iteration
    now: Optional[int] = None


class GradebookSource(ABC):
    """Query layer collaborator of the merge iterator."""

    def current_time(self) -> int:
        """Unix time used to decide which enrolments are active."""
        return int(time.time())

    @abstractmethod
    def course_needs_update(self, course_id: int) -> bool:
        """Whether the course aggregate grade item must be recalculated."""
        pass

    @abstractmethod
    def open_user_stream(self, query: StreamQuery) -> RowStream[UserRow]:
        pass

    @abstractmethod
    def open_grade_stream(self, query: StreamQuery, item_ids: Sequence[int]) -> RowStream[GradeRow]:
        pass

    @abstractmethod
    def suspended_user_ids(self, course_id: int, now: Optional[int] = None) -> Set[int]:
        """Users whose enrolment is suspended, not yet started or expired at ``now``."""
        pass
