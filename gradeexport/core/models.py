"""
Gradebook Data Model

This module defines the records exchanged between the query layer, the
merge iterator and the export writer. Rows coming out of the database are
plain dataclasses; optional columns are ``None`` rather than missing.

Records:
- Course: the enrolment and grading scope of an export
- GradeItem: one gradable column (activity, category or course total)
- UserRow: one enrolled user plus the sort keys shared with GradeRow
- GradeRow: one recorded grade for a (user, item) pair
- GradeValue / FeedbackValue: a grade split from its feedback
- UserGradeBundle: everything the writer needs for one output row
- SortKey: one component of the stream ordering
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..config.constants import DEFAULT_FEEDBACK_FORMAT, ITEMTYPE_COURSE, SORT_ASC


@dataclass(frozen=True)
class Course:
    """The course being exported."""
    id: int
    shortname: str = ''
    fullname: str = ''


@dataclass
class GradeItem:
    """
    A gradable component of a course.

    The ``id`` is the join key into grade rows. ``needsupdate`` is only
    meaningful on the course aggregate item.
    """
    id: int
    courseid: int
    itemtype: str
    itemname: Optional[str] = None
    itemmodule: Optional[str] = None
    sortorder: int = 0
    grademin: float = 0.0
    grademax: float = 100.0
    needsupdate: bool = False

    @property
    def is_course_item(self) -> bool:
        return self.itemtype == ITEMTYPE_COURSE


@dataclass
class UserRow:
    """One enrolled user as produced by the user stream."""
    id: int
    username: str = ''
    firstname: str = ''
    lastname: str = ''
    email: str = ''
    idnumber: str = ''
    institution: str = ''
    department: str = ''
    phone1: str = ''
    city: str = ''
    country: str = ''
    sortkey1: Any = None
    sortkey2: Any = None
    groupname: Optional[str] = None
    custom_fields: Dict[str, Optional[str]] = field(default_factory=dict)
    suspended: bool = False

    @property
    def fullname(self) -> str:
        return f"{self.firstname} {self.lastname}"


@dataclass
class GradeRow:
    """
    One recorded grade as produced by the grade stream.

    A row whose ``userid`` is ``None`` marks the end of the stream.
    """
    id: Optional[int]
    userid: Optional[int]
    itemid: int
    rawgrade: Optional[float] = None
    finalgrade: Optional[float] = None
    feedback: Optional[str] = None
    feedbackformat: int = DEFAULT_FEEDBACK_FORMAT
    hidden: bool = False
    overridden: bool = False
    timemodified: Optional[int] = None
    sortkey1: Any = None
    sortkey2: Any = None


@dataclass
class GradeValue:
    """A grade without its feedback; ``id`` is None when no grade was recorded."""
    userid: int
    itemid: int
    id: Optional[int] = None
    rawgrade: Optional[float] = None
    finalgrade: Optional[float] = None
    hidden: bool = False
    overridden: bool = False
    timemodified: Optional[int] = None

    @property
    def is_recorded(self) -> bool:
        return self.id is not None


@dataclass
class FeedbackValue:
    """Feedback text and the format it is written in."""
    feedback: str = ''
    feedbackformat: int = DEFAULT_FEEDBACK_FORMAT


@dataclass
class UserGradeBundle:
    """
    One user with a grade and a feedback entry for every configured item.

    Both mappings are keyed by grade item id and follow the configured item
    order.
    """
    user: UserRow
    grades: Dict[int, GradeValue] = field(default_factory=dict)
    feedbacks: Dict[int, FeedbackValue] = field(default_factory=dict)


@dataclass(frozen=True)
class SortKey:
    """One ordering component shared by the user and grade streams."""
    field: str
    direction: str = SORT_ASC


def course_from_mapping(data: Mapping[str, Any]) -> Course:
    return Course(id=int(data['id']),
                  shortname=data.get('shortname') or '',
                  fullname=data.get('fullname') or '')


def grade_item_from_mapping(data: Mapping[str, Any]) -> GradeItem:
    return GradeItem(
        id=int(data['id']),
        courseid=int(data['courseid']),
        itemtype=data['itemtype'],
        itemname=data.get('itemname'),
        itemmodule=data.get('itemmodule'),
        sortorder=data.get('sortorder') or 0,
        grademin=float(data['grademin']) if data.get('grademin') is not None else 0.0,
        grademax=float(data['grademax']) if data.get('grademax') is not None else 100.0,
        needsupdate=bool(data.get('needsupdate')),
    )
