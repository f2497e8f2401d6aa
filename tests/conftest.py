"""Shared fixtures: a seeded SQLite gradebook and in-memory row sources."""

from typing import Dict, List, Sequence, Set

import pytest
from sqlalchemy import insert

from gradeexport.config.constants import FORMAT_HTML, FORMAT_PLAIN
from gradeexport.core.models import GradeRow, UserRow
from gradeexport.core.sources import GradebookSource, StreamQuery
from gradeexport.storage import schema
from gradeexport.storage.queries import QuerySettings, SqlGradebookSource, create_gradebook_engine
from gradeexport.storage.streams import RecordStream

NOW = 1_700_000_000
DAY = 86400


def _insert_rows(conn, table, rows) -> None:
    # Rows carry differing column sets; insert one at a time so each keeps its own defaults.
    for row in rows:
        conn.execute(insert(table), row)


def seed_gradebook(engine) -> None:
    """
    Course 1 (MATH101):
      1 Alice Anderson   student, groups Red and Blue
      2 Bob Brown        student, group Red
      3 Carol Clark      student, no group
      4 Dave Davis       student, suspended enrolment, group Blue
      5 Eve Evans        non-gradebook role
      6 Frank Fox        student, deleted account
      8 Hank Hill        student, enrolment ended yesterday
    Course 2 (HIST200):
      7 Grace Green      student
    """
    users = [
        (1, 'alice', 'Alice', 'Anderson', False),
        (2, 'bob', 'Bob', 'Brown', False),
        (3, 'carol', 'Carol', 'Clark', False),
        (4, 'dave', 'Dave', 'Davis', False),
        (5, 'eve', 'Eve', 'Evans', False),
        (6, 'frank', 'Frank', 'Fox', True),
        (7, 'grace', 'Grace', 'Green', False),
        (8, 'hank', 'Hank', 'Hill', False),
    ]

    with engine.begin() as conn:
        _insert_rows(conn, schema.course, [
            {'id': 1, 'shortname': 'MATH101', 'fullname': 'Mathematics 101'},
            {'id': 2, 'shortname': 'HIST200', 'fullname': 'History 200'},
        ])
        _insert_rows(conn, schema.user, [
            {'id': uid, 'username': username, 'firstname': first, 'lastname': last,
             'email': f"{username}@example.edu", 'idnumber': f"ID{uid:03d}", 'deleted': deleted}
            for uid, username, first, last, deleted in users
        ])
        _insert_rows(conn, schema.enrolments, [
            {'courseid': 1, 'userid': 1, 'status': 0},
            {'courseid': 1, 'userid': 2, 'status': 0, 'timestart': NOW - DAY},
            {'courseid': 1, 'userid': 3, 'status': 0, 'timeend': NOW + DAY},
            {'courseid': 1, 'userid': 4, 'status': 1},
            {'courseid': 1, 'userid': 5, 'status': 0},
            {'courseid': 1, 'userid': 6, 'status': 0},
            {'courseid': 1, 'userid': 8, 'status': 0, 'timeend': NOW - DAY},
            {'courseid': 2, 'userid': 7, 'status': 0},
        ])
        _insert_rows(conn, schema.role_assignments, [
            {'courseid': 1, 'userid': 1, 'roleid': 5},
            {'courseid': 1, 'userid': 2, 'roleid': 5},
            {'courseid': 1, 'userid': 3, 'roleid': 5},
            {'courseid': 1, 'userid': 4, 'roleid': 5},
            {'courseid': 1, 'userid': 5, 'roleid': 3},
            {'courseid': 1, 'userid': 6, 'roleid': 5},
            {'courseid': 1, 'userid': 8, 'roleid': 5},
            {'courseid': 2, 'userid': 7, 'roleid': 5},
        ])
        _insert_rows(conn, schema.groups, [
            {'id': 10, 'courseid': 1, 'name': 'Blue'},
            {'id': 11, 'courseid': 1, 'name': 'Red'},
            {'id': 20, 'courseid': 2, 'name': 'Aardvarks'},
        ])
        _insert_rows(conn, schema.groups_members, [
            {'groupid': 11, 'userid': 1},
            {'groupid': 10, 'userid': 1},
            {'groupid': 11, 'userid': 2},
            {'groupid': 10, 'userid': 4},
            {'groupid': 20, 'userid': 3},
        ])
        _insert_rows(conn, schema.grade_items, [
            {'id': 100, 'courseid': 1, 'itemtype': 'course', 'sortorder': 4, 'grademax': 100.0},
            {'id': 101, 'courseid': 1, 'itemtype': 'mod', 'itemmodule': 'assign', 'itemname': 'Essay',
             'sortorder': 1, 'grademax': 100.0},
            {'id': 102, 'courseid': 1, 'itemtype': 'mod', 'itemmodule': 'quiz', 'itemname': 'Quiz 1',
             'sortorder': 2, 'grademax': 100.0},
            {'id': 103, 'courseid': 1, 'itemtype': 'manual', 'itemname': 'Participation',
             'sortorder': 3, 'grademax': 10.0},
            {'id': 200, 'courseid': 2, 'itemtype': 'course', 'sortorder': 1, 'grademax': 100.0},
        ])
        _insert_rows(conn, schema.grade_grades, [
            {'userid': 1, 'itemid': 101, 'rawgrade': 85.0, 'finalgrade': 85.0,
             'feedback': '<p>Good <b>work</b></p>', 'feedbackformat': FORMAT_HTML},
            {'userid': 1, 'itemid': 102, 'rawgrade': 93.0, 'finalgrade': 93.0},
            {'userid': 1, 'itemid': 100, 'finalgrade': 89.0},
            {'userid': 2, 'itemid': 101, 'rawgrade': 70.0, 'finalgrade': 70.0,
             'feedback': 'Needs more sources', 'feedbackformat': FORMAT_PLAIN},
            {'userid': 2, 'itemid': 100, 'finalgrade': 70.0},
            {'userid': 4, 'itemid': 102, 'rawgrade': 50.0, 'finalgrade': 50.0},
            {'userid': 5, 'itemid': 101, 'rawgrade': 99.0, 'finalgrade': 99.0},
            {'userid': 6, 'itemid': 101, 'rawgrade': 10.0, 'finalgrade': 10.0},
            {'userid': 7, 'itemid': 200, 'finalgrade': 55.0},
        ])
        _insert_rows(conn, schema.user_info_category, [
            {'id': 1, 'name': 'Student record', 'sortorder': 1},
        ])
        _insert_rows(conn, schema.user_info_field, [
            {'id': 1, 'shortname': 'studentno', 'name': 'Student number', 'categoryid': 1,
             'sortorder': 1, 'defaultdata': ''},
            {'id': 2, 'shortname': 'program', 'name': 'Program', 'categoryid': 1,
             'sortorder': 2, 'defaultdata': 'Undeclared'},
        ])
        _insert_rows(conn, schema.user_info_data, [
            {'userid': 1, 'fieldid': 1, 'data': 'S001'},
            {'userid': 1, 'fieldid': 2, 'data': 'Mathematics'},
            {'userid': 2, 'fieldid': 1, 'data': '0'},
        ])


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'gradebook.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_gradebook_engine(database_url)
    schema.create_schema(engine)
    seed_gradebook(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def query_settings():
    return QuerySettings(custom_profile_fields=['studentno', 'program'], fetch_size=2, clock=lambda: NOW)


@pytest.fixture
def source(engine, query_settings):
    return SqlGradebookSource(engine, query_settings)


class ListGradebookSource(GradebookSource):
    """Row source backed by lists, recording the streams it hands out."""

    def __init__(self, users: List[UserRow], grades: List[GradeRow],
                 suspended: Set[int] = (), needs_update: bool = False):
        self.users = users
        self.grades = grades
        self.suspended = set(suspended)
        self.needs_update = needs_update
        self.queries: List[StreamQuery] = []
        self.item_ids: List[Sequence[int]] = []
        self.streams: List[RecordStream] = []

    def course_needs_update(self, course_id: int) -> bool:
        return self.needs_update

    def open_user_stream(self, query: StreamQuery) -> RecordStream:
        self.queries.append(query)
        stream = RecordStream(list(self.users))
        self.streams.append(stream)
        return stream

    def open_grade_stream(self, query: StreamQuery, item_ids: Sequence[int]) -> RecordStream:
        self.item_ids.append(list(item_ids))
        stream = RecordStream([g for g in self.grades if g.itemid in item_ids])
        self.streams.append(stream)
        return stream

    def suspended_user_ids(self, course_id: int, now: int = None) -> Set[int]:
        return set(self.suspended)


def make_users(*user_ids: int) -> List[UserRow]:
    return [UserRow(id=uid, username=f"user{uid}", firstname=f"First{uid}", lastname=f"Last{uid}")
            for uid in user_ids]


def make_grade(user_id, item_id: int, finalgrade: float = None, feedback: str = None,
               grade_id: int = None) -> GradeRow:
    return GradeRow(id=grade_id if grade_id is not None else (user_id or 0) * 1000 + item_id,
                    userid=user_id, itemid=item_id, rawgrade=finalgrade, finalgrade=finalgrade,
                    feedback=feedback)


@pytest.fixture
def list_source_factory():
    return ListGradebookSource
