"""
Graded Users Iterator

This module walks all users that are graded in a course and returns, one
user at a time, the user's profile row together with a grade and a
feedback entry for every requested grade item.

Users and grades come from two separate cursors that are sorted by the
same compound key. The grade cursor is read one row past the current user
to find where that user's grades end; the extra row is kept in a single
pushback slot until the user it belongs to comes up. Memory use does not
depend on the number of users or grades.

Usage:
    iterator = GradedUserIterator(source, course, grade_items, group_id=0,
                                  sortfield1='groupname', sortorder1='ASC',
                                  sortfield2='firstname', sortorder2='ASC')
    iterator.require_active_enrolment(False)
    iterator.allow_user_custom_fields(True)

    with iterator:
        if not iterator.init():
            raise StaleAggregateError(course.id)
        for bundle in iterator:
            write_row(bundle)
"""

import warnings
from typing import Dict, Iterator, List, Mapping, Optional, Set

from ..config.constants import SORT_ASC, SORT_DIRECTIONS, SORTABLE_USER_FIELDS
from ..utils.logger import get_logger
from .bundles import empty_grade_feedback, split_grade_feedback
from .errors import InvalidSortError, StreamConfigurationWarning, StreamConsistencyWarning
from .models import Course, FeedbackValue, GradeItem, GradeRow, GradeValue, SortKey, UserGradeBundle
from .sources import GradebookSource, RowStream, StreamQuery


def build_sort_keys(sortfield1: Optional[str] = 'lastname', sortorder1: str = SORT_ASC,
                    sortfield2: Optional[str] = 'firstname', sortorder2: str = SORT_ASC) -> List[SortKey]:
    """
    Build the ordering shared by the user and grade streams.

    The user id is appended as a final ascending key unless one of the
    configured fields already is the id, so the order is total.

    Args:
        sortfield1: First user field to sort by; empty means sort by id only
        sortorder1: ASC or DESC
        sortfield2: Optional second user field
        sortorder2: ASC or DESC

    Returns:
        List[SortKey]: Ordering components, most significant first

    Raises:
        InvalidSortError: If a field or direction is not supported
    """
    if not sortfield1:
        return [SortKey('id', SORT_ASC)]

    keys = [SortKey(sortfield1, _check_direction(sortorder1))]
    if sortfield2:
        keys.append(SortKey(sortfield2, _check_direction(sortorder2)))

    for key in keys:
        if key.field not in SORTABLE_USER_FIELDS:
            raise InvalidSortError(f"Cannot sort users by '{key.field}'")

    if all(key.field != 'id' for key in keys):
        keys.append(SortKey('id', SORT_ASC))

    return keys


def _check_direction(direction: Optional[str]) -> str:
    normalized = (direction or SORT_ASC).upper()
    if normalized not in SORT_DIRECTIONS:
        raise InvalidSortError(f"Unknown sort direction '{direction}'")
    return normalized


class GradedUserIterator:
    """
    Iterates over all users graded in a course.

    The iterator owns both cursors between ``init()`` and ``close()``.
    ``close()`` must always be called; using the iterator as a context
    manager does that.
    """

    def __init__(self, source: GradebookSource, course: Course,
                 grade_items: Optional[Mapping[int, GradeItem]] = None, group_id: int = 0,
                 sortfield1: Optional[str] = 'lastname', sortorder1: str = SORT_ASC,
                 sortfield2: Optional[str] = 'firstname', sortorder2: str = SORT_ASC):
        """
        Initialize the iterator. No query is issued here.

        Args:
            source: Query layer that opens the user and grade streams
            course: Course whose users are iterated
            grade_items: Ordered mapping of item id to grade item, None for user data only
            group_id: Only iterate members of this group, 0 means all groups
            sortfield1: First user field to sort by
            sortorder1: ASC or DESC
            sortfield2: Second user field to sort by
            sortorder2: ASC or DESC
        """
        self.source = source
        self.course = course
        self.grade_items = grade_items
        self.group_id = group_id or 0
        self.sort_keys = build_sort_keys(sortfield1, sortorder1, sortfield2, sortorder2)

        self.only_active = False
        self.include_custom_fields = False

        self._users: Optional[RowStream] = None
        self._grades: Optional[RowStream] = None
        self._pushback: Optional[GradeRow] = None
        self._suspended: Set[int] = set()

        self.logger = get_logger(__name__)

    def init(self) -> bool:
        """
        Open the user and grade streams.

        Returns:
            bool: False if the course total needs recalculation, True otherwise
        """
        self.close()

        if self.source.course_needs_update(self.course.id):
            self.logger.warning("Course grades need recalculation, refusing to iterate",
                                course_id=self.course.id)
            return False

        # one reference time so both streams apply the same enrolment window
        now = self.source.current_time()
        query = StreamQuery(
            course_id=self.course.id,
            group_id=self.group_id,
            sort_keys=tuple(self.sort_keys),
            only_active=self.only_active,
            include_custom_fields=self.include_custom_fields,
            now=now,
        )

        self._users = self.source.open_user_stream(query)

        if self.only_active:
            self._suspended = set()
        else:
            self._suspended = set(self.source.suspended_user_ids(self.course.id, now=now))

        if self.grade_items:
            self._grades = self.source.open_grade_stream(query, [item.id for item in self.grade_items.values()])

        self.logger.debug("Graded users iterator initialised",
                          course_id=self.course.id,
                          group_id=self.group_id,
                          grade_items=len(self.grade_items or {}),
                          suspended_users=len(self._suspended))
        return True

    def next_user(self) -> Optional[UserGradeBundle]:
        """
        Return the next user with all grades and feedback.

        Returns:
            Optional[UserGradeBundle]: The next bundle, or None when no users are left
        """
        if self._users is None:
            return None

        if not self._users.valid():
            if self._pushback is not None:
                # the streams disagree on membership, drop what is left
                leftover = self._pushback
                self._pushback = None
                message = (f"Grade row for user {leftover.userid} (item {leftover.itemid}) "
                           f"left over after the last user of course {self.course.id}")
                self.logger.warning(message, category=StreamConsistencyWarning.__name__)
                warnings.warn(message, StreamConsistencyWarning, stacklevel=2)
            return None

        user = self._users.current()
        self._users.next()

        grade_records: Dict[int, GradeRow] = {}
        while True:
            current = self._pop()
            if current is None or current.userid is None:
                break

            if current.userid != user.id:
                # belongs to a later user
                self._push(current)
                break

            grade_records[current.itemid] = current

        grades: Dict[int, GradeValue] = {}
        feedbacks: Dict[int, FeedbackValue] = {}

        if self.grade_items:
            for grade_item in self.grade_items.values():
                record = grade_records.get(grade_item.id)
                if record is not None:
                    grade, feedback = split_grade_feedback(record)
                else:
                    grade, feedback = empty_grade_feedback(user.id, grade_item.id)
                grades[grade_item.id] = grade
                feedbacks[grade_item.id] = feedback

        user.suspended = user.id in self._suspended

        return UserGradeBundle(user=user, grades=grades, feedbacks=feedbacks)

    def close(self) -> None:
        """Close both streams. Safe to call at any time and more than once."""
        if self._users is not None:
            self._users.close()
            self._users = None
        if self._grades is not None:
            self._grades.close()
            self._grades = None
        self._pushback = None

    def require_active_enrolment(self, only_active: bool = True) -> None:
        """
        Limit the iteration to users with an active enrolment.

        Args:
            only_active: True to skip suspended, not yet started and expired enrolments
        """
        if self._users is not None:
            message = "Calling require_active_enrolment() has no effect unless you call init() again"
            self.logger.warning(message)
            warnings.warn(message, StreamConfigurationWarning, stacklevel=2)
        self.only_active = bool(only_active)

    def allow_user_custom_fields(self, allow: bool = True) -> None:
        """
        Join custom profile fields into the user rows.

        Args:
            allow: Whether to include custom profile fields
        """
        self.include_custom_fields = bool(allow)

    def _push(self, grade: GradeRow) -> None:
        self._pushback = grade

    def _pop(self) -> Optional[GradeRow]:
        if self._pushback is not None:
            grade = self._pushback
            self._pushback = None
            return grade

        if self._grades is None or not self._grades.valid():
            return None

        current = self._grades.current()
        self._grades.next()
        return current

    def __iter__(self) -> Iterator[UserGradeBundle]:
        return self

    def __next__(self) -> UserGradeBundle:
        bundle = self.next_user()
        if bundle is None:
            raise StopIteration
        return bundle

    def __enter__(self) -> 'GradedUserIterator':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
