"""
Gradebook Query Layer

This module builds and runs the SQL behind the two streams the graded
users iterator merges. Both statements share one set of user filters and
one ORDER BY, so a user's grade rows come out in the same relative place
as the user row itself.

Features:
- Enrolment filter with optional restriction to active enrolments
- Gradebook role filter (only users holding a graded role)
- Group filter, or the user's group name when no group is selected
- Custom profile fields joined as ``customfield_<shortname>`` columns
- Server-side streaming with a configurable fetch size
- Suspended user lookup and course total staleness check

Usage:
    engine = create_gradebook_engine('postgresql://export@db/gradebook')
    source = SqlGradebookSource(engine, QuerySettings(custom_profile_fields=['studentno']))

    iterator = GradedUserIterator(source, source.get_course(12), source.get_grade_items(12))
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from sqlalchemy import and_, create_engine, false, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from ..config.constants import DEFAULT_GRADEBOOK_ROLES, ENROL_USER_ACTIVE, ITEMTYPE_COURSE, SORT_DESC
from ..core.models import (
    Course, GradeItem, GradeRow, SortKey, UserRow, course_from_mapping, grade_item_from_mapping,
)
from ..core.sources import GradebookSource, RowStream, StreamQuery
from ..utils.logger import get_logger
from . import schema
from .streams import RecordStream

USER_COLUMNS = (
    'id', 'username', 'firstname', 'lastname', 'email', 'idnumber',
    'institution', 'department', 'phone1', 'city', 'country',
)

GRADE_COLUMNS = (
    'id', 'userid', 'itemid', 'rawgrade', 'finalgrade', 'feedback',
    'feedbackformat', 'hidden', 'overridden', 'timemodified',
)


@dataclass
class QuerySettings:
    """
    Site settings the query layer needs.

    An empty ``gradebook_roles`` list disables the role filter.
    """
    gradebook_roles: List[int] = field(default_factory=lambda: list(DEFAULT_GRADEBOOK_ROLES))
    custom_profile_fields: List[str] = field(default_factory=list)
    fetch_size: int = 500
    clock: Callable[[], int] = field(default=lambda: int(time.time()))


@dataclass(frozen=True)
class CustomFieldDefinition:
    """A custom profile field as stored in ``user_info_field``."""
    id: int
    shortname: str
    name: str
    datatype: str = 'text'
    defaultdata: Optional[str] = None

    @property
    def column_label(self) -> str:
        return f"customfield_{self.shortname}"


def create_gradebook_engine(url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for a gradebook database.

    In-memory SQLite databases share a single connection so that both
    streams see the same data.
    """
    if url in ('sqlite://', 'sqlite:///:memory:'):
        return create_engine(url, echo=echo, poolclass=StaticPool,
                             connect_args={'check_same_thread': False})
    return create_engine(url, echo=echo, pool_pre_ping=True)


def user_row_from_mapping(row: Mapping[str, Any],
                          custom_fields: Sequence[CustomFieldDefinition] = ()) -> UserRow:
    return UserRow(
        id=row['id'],
        username=row['username'] or '',
        firstname=row['firstname'] or '',
        lastname=row['lastname'] or '',
        email=row['email'] or '',
        idnumber=row['idnumber'] or '',
        institution=row['institution'] or '',
        department=row['department'] or '',
        phone1=row['phone1'] or '',
        city=row['city'] or '',
        country=row['country'] or '',
        sortkey1=row.get('sortkey1'),
        sortkey2=row.get('sortkey2'),
        groupname=row.get('groupname'),
        custom_fields={f.shortname: row.get(f.column_label) for f in custom_fields},
    )


def grade_row_from_mapping(row: Mapping[str, Any]) -> GradeRow:
    return GradeRow(
        id=row['id'],
        userid=row['userid'],
        itemid=row['itemid'],
        rawgrade=row['rawgrade'],
        finalgrade=row['finalgrade'],
        feedback=row['feedback'],
        feedbackformat=row['feedbackformat'],
        hidden=bool(row['hidden']),
        overridden=bool(row['overridden']),
        timemodified=row['timemodified'],
        sortkey1=row.get('sortkey1'),
        sortkey2=row.get('sortkey2'),
    )


class SqlGradebookSource(GradebookSource):
    """
    SQLAlchemy implementation of the gradebook row source.

    Every opened stream holds its own connection until it is closed.
    """

    def __init__(self, engine: Engine, settings: QuerySettings = None):
        """
        Initialize the query layer.

        Args:
            engine: Engine bound to the gradebook database
            settings: Role, custom field and fetch settings
        """
        self.engine = engine
        self.settings = settings or QuerySettings()
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Shared statement parts
    # ------------------------------------------------------------------

    def _active_enrolment(self, now: int):
        e = schema.enrolments
        return and_(e.c.status == ENROL_USER_ACTIVE,
                    e.c.timestart <= now,
                    or_(e.c.timeend == 0, e.c.timeend > now))

    def _user_criteria(self, query: StreamQuery) -> List[Any]:
        """WHERE criteria shared by the user and grade statements."""
        u = schema.user
        e = schema.enrolments
        ra = schema.role_assignments
        gm = schema.groups_members

        enrolled = select(e.c.id).where(e.c.courseid == query.course_id, e.c.userid == u.c.id)
        if query.only_active:
            now = query.now if query.now is not None else self.current_time()
            enrolled = enrolled.where(self._active_enrolment(now))

        criteria = [u.c.deleted == false(), enrolled.exists()]

        if self.settings.gradebook_roles:
            graded = select(ra.c.id).where(ra.c.courseid == query.course_id,
                                           ra.c.userid == u.c.id,
                                           ra.c.roleid.in_(self.settings.gradebook_roles))
            criteria.append(graded.exists())

        if query.group_id:
            member = select(gm.c.id).where(gm.c.groupid == query.group_id, gm.c.userid == u.c.id)
            criteria.append(member.exists())

        return criteria

    def _groupname(self, course_id: int):
        """First group name (alphabetically) of the user in the course, NULL if ungrouped."""
        g = schema.groups
        gm = schema.groups_members
        return (select(func.min(g.c.name))
                .select_from(g.join(gm, gm.c.groupid == g.c.id))
                .where(g.c.courseid == course_id, gm.c.userid == schema.user.c.id)
                .scalar_subquery())

    def _sort_columns(self, query: StreamQuery) -> List[Any]:
        """Labelled sort expressions, ``sortkey1`` first."""
        columns = []
        for index, key in enumerate(query.sort_keys, 1):
            if key.field == 'groupname':
                expression = self._groupname(query.course_id)
            else:
                expression = schema.user.c[key.field]
            columns.append(expression.label(f"sortkey{index}"))
        return columns

    @staticmethod
    def _order_by(sort_columns: List[Any], sort_keys: Sequence[SortKey]) -> List[Any]:
        return [column.desc() if key.direction == SORT_DESC else column.asc()
                for column, key in zip(sort_columns, sort_keys)]

    def _open_stream(self, statement, factory: Callable[[Mapping[str, Any]], Any]) -> RowStream:
        connection = self.engine.connect()
        try:
            result = connection.execution_options(
                stream_results=True,
                yield_per=self.settings.fetch_size,
            ).execute(statement)
            return RecordStream(result.mappings(), factory, on_close=connection.close)
        except Exception:
            connection.close()
            raise

    # ------------------------------------------------------------------
    # GradebookSource
    # ------------------------------------------------------------------

    def open_user_stream(self, query: StreamQuery) -> RowStream:
        u = schema.user
        sort_columns = self._sort_columns(query)

        columns = [u.c[name] for name in USER_COLUMNS] + sort_columns
        if not query.group_id:
            columns.append(self._groupname(query.course_id).label('groupname'))

        from_clause = u
        custom_fields = self.get_custom_field_definitions() if query.include_custom_fields else []
        for index, custom_field in enumerate(custom_fields):
            data = schema.user_info_data.alias(f"cf{index}")
            from_clause = from_clause.outerjoin(
                data, and_(data.c.userid == u.c.id, data.c.fieldid == custom_field.id))
            columns.append(data.c.data.label(custom_field.column_label))

        statement = (select(*columns)
                     .select_from(from_clause)
                     .where(*self._user_criteria(query))
                     .order_by(*self._order_by(sort_columns, query.sort_keys)))

        self.logger.debug("Opening user stream",
                          course_id=query.course_id,
                          group_id=query.group_id,
                          only_active=query.only_active,
                          custom_fields=len(custom_fields))

        return self._open_stream(statement, lambda row: user_row_from_mapping(row, custom_fields))

    def open_grade_stream(self, query: StreamQuery, item_ids: Sequence[int]) -> RowStream:
        u = schema.user
        g = schema.grade_grades
        sort_columns = self._sort_columns(query)

        columns = [g.c[name] for name in GRADE_COLUMNS] + sort_columns

        statement = (select(*columns)
                     .select_from(g.join(u, g.c.userid == u.c.id))
                     .where(g.c.itemid.in_(list(item_ids)), *self._user_criteria(query))
                     .order_by(*self._order_by(sort_columns, query.sort_keys), g.c.itemid.asc()))

        self.logger.debug("Opening grade stream",
                          course_id=query.course_id,
                          grade_items=len(item_ids))

        return self._open_stream(statement, grade_row_from_mapping)

    def current_time(self) -> int:
        return int(self.settings.clock())

    def course_needs_update(self, course_id: int) -> bool:
        gi = schema.grade_items
        statement = select(gi.c.needsupdate).where(gi.c.courseid == course_id,
                                                   gi.c.itemtype == ITEMTYPE_COURSE)
        with self.engine.connect() as connection:
            needsupdate = connection.execute(statement).scalar()
        return bool(needsupdate)

    def suspended_user_ids(self, course_id: int, now: Optional[int] = None) -> Set[int]:
        e = schema.enrolments
        if now is None:
            now = self.current_time()
        active = select(e.c.userid).where(e.c.courseid == course_id, self._active_enrolment(now))
        statement = (select(e.c.userid).distinct()
                     .where(e.c.courseid == course_id, e.c.userid.not_in(active)))
        with self.engine.connect() as connection:
            return set(connection.execute(statement).scalars())

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_course(self, course_id: int) -> Optional[Course]:
        c = schema.course
        with self.engine.connect() as connection:
            row = connection.execute(select(c).where(c.c.id == course_id)).mappings().first()
        return course_from_mapping(row) if row is not None else None

    def get_grade_items(self, course_id: int, item_ids: Optional[Sequence[int]] = None) -> Dict[int, GradeItem]:
        """
        Grade items of a course in gradebook order.

        Args:
            course_id: Course to read
            item_ids: Restrict to these ids, None for every item

        Returns:
            Dict[int, GradeItem]: Ordered mapping of item id to item
        """
        gi = schema.grade_items
        statement = select(gi).where(gi.c.courseid == course_id).order_by(gi.c.sortorder, gi.c.id)
        if item_ids is not None:
            statement = statement.where(gi.c.id.in_(list(item_ids)))
        with self.engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        items = [grade_item_from_mapping(row) for row in rows]
        return {item.id: item for item in items}

    def get_custom_field_definitions(self, shortnames: Optional[Sequence[str]] = None) -> List[CustomFieldDefinition]:
        """Configured custom profile fields, in category then field order."""
        if shortnames is None:
            shortnames = self.settings.custom_profile_fields
        if not shortnames:
            return []

        f = schema.user_info_field
        cat = schema.user_info_category
        statement = (select(f.c.id, f.c.shortname, f.c.name, f.c.datatype, f.c.defaultdata)
                     .select_from(f.join(cat, f.c.categoryid == cat.c.id))
                     .where(f.c.shortname.in_(list(shortnames)))
                     .order_by(cat.c.sortorder, f.c.sortorder))
        with self.engine.connect() as connection:
            rows = connection.execute(statement).mappings().all()
        return [CustomFieldDefinition(id=row['id'], shortname=row['shortname'], name=row['name'],
                                      datatype=row['datatype'], defaultdata=row['defaultdata'])
                for row in rows]
