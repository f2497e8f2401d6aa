"""Tests for the SQL query layer against a seeded SQLite gradebook."""

import itertools
import warnings

from conftest import DAY, NOW

from gradeexport.core.errors import StreamConsistencyWarning
from gradeexport.core.iterator import GradedUserIterator, build_sort_keys
from gradeexport.core.models import Course
from gradeexport.core.sources import StreamQuery
from gradeexport.storage.queries import QuerySettings, SqlGradebookSource


def drain(stream):
    rows = []
    try:
        while stream.valid():
            rows.append(stream.current())
            stream.next()
    finally:
        stream.close()
    return rows


def user_query(**kwargs):
    kwargs.setdefault('course_id', 1)
    kwargs.setdefault('sort_keys', tuple(build_sort_keys('lastname', 'ASC', 'firstname', 'ASC')))
    return StreamQuery(**kwargs)


class TestUserStream:
    """Test user selection and ordering."""

    def test_graded_users_only(self, source):
        users = drain(source.open_user_stream(user_query()))

        # non-gradebook role (5), deleted (6) and other course (7) excluded
        assert [u.id for u in users] == [1, 2, 3, 4, 8]

    def test_only_active(self, source):
        users = drain(source.open_user_stream(user_query(only_active=True)))

        assert [u.id for u in users] == [1, 2, 3]

    def test_not_yet_started_enrolment_excluded_when_active_only(self, engine, query_settings):
        query_settings.clock = lambda: NOW - 2 * 86400
        source = SqlGradebookSource(engine, query_settings)

        users = drain(source.open_user_stream(user_query(only_active=True)))

        assert 2 not in [u.id for u in users]

    def test_descending_order(self, source):
        query = user_query(sort_keys=tuple(build_sort_keys('firstname', 'DESC', None)))
        users = drain(source.open_user_stream(query))

        assert [u.firstname for u in users] == ['Hank', 'Dave', 'Carol', 'Bob', 'Alice']

    def test_groupname_is_first_group_in_course(self, source):
        users = {u.id: u for u in drain(source.open_user_stream(user_query()))}

        assert users[1].groupname == 'Blue'
        assert users[2].groupname == 'Red'
        assert users[3].groupname is None
        assert users[4].groupname == 'Blue'

    def test_sort_by_groupname(self, source):
        query = user_query(sort_keys=tuple(build_sort_keys('groupname', 'ASC', 'firstname', 'ASC')))
        users = drain(source.open_user_stream(query))

        assert [u.id for u in users] == [3, 8, 1, 4, 2]
        assert users[0].sortkey1 is None
        assert users[2].sortkey1 == 'Blue'

    def test_group_filter(self, source):
        users = drain(source.open_user_stream(user_query(group_id=10)))

        assert [u.id for u in users] == [1, 4]
        assert all(u.groupname is None for u in users)

    def test_custom_fields(self, source):
        users = {u.id: u for u in drain(source.open_user_stream(user_query(include_custom_fields=True)))}

        assert users[1].custom_fields == {'studentno': 'S001', 'program': 'Mathematics'}
        assert users[2].custom_fields == {'studentno': '0', 'program': None}
        assert users[3].custom_fields == {'studentno': None, 'program': None}

    def test_custom_fields_off(self, source):
        users = drain(source.open_user_stream(user_query()))

        assert all(u.custom_fields == {} for u in users)

    def test_empty_role_list_disables_role_filter(self, engine):
        source = SqlGradebookSource(engine, QuerySettings(gradebook_roles=[], clock=lambda: NOW))
        users = drain(source.open_user_stream(user_query()))

        assert 5 in [u.id for u in users]

    def test_stream_releases_connection(self, engine, source):
        stream = source.open_user_stream(user_query())
        assert engine.pool.checkedout() == 1

        stream.close()
        assert engine.pool.checkedout() == 0


class TestGradeStream:
    """Test grade selection and ordering."""

    def test_same_order_as_users(self, source):
        query = user_query()
        grades = drain(source.open_grade_stream(query, [100, 101, 102, 103]))

        assert [(g.userid, g.itemid) for g in grades] == [
            (1, 100), (1, 101), (1, 102), (2, 100), (2, 101), (4, 102)]

    def test_item_filter(self, source):
        grades = drain(source.open_grade_stream(user_query(), [102]))

        assert [(g.userid, g.itemid) for g in grades] == [(1, 102), (4, 102)]

    def test_excluded_users_have_no_grades(self, source):
        grades = drain(source.open_grade_stream(user_query(), [101]))

        assert {g.userid for g in grades} == {1, 2}

    def test_group_filter(self, source):
        grades = drain(source.open_grade_stream(user_query(group_id=11), [100, 101, 102]))

        assert {g.userid for g in grades} == {1, 2}


class TestLookups:
    """Test course, grade item and enrolment lookups."""

    def test_get_course(self, source):
        course = source.get_course(1)

        assert course == Course(id=1, shortname='MATH101', fullname='Mathematics 101')
        assert source.get_course(999) is None

    def test_grade_items_in_gradebook_order(self, source):
        grade_items = source.get_grade_items(1)

        assert list(grade_items) == [101, 102, 103, 100]
        assert grade_items[100].is_course_item
        assert grade_items[103].grademax == 10.0

    def test_grade_items_subset(self, source):
        assert list(source.get_grade_items(1, [100, 102])) == [102, 100]

    def test_suspended_user_ids(self, source):
        assert source.suspended_user_ids(1) == {4, 8}

    def test_course_needs_update(self, engine, source):
        from sqlalchemy import update
        from gradeexport.storage import schema

        assert source.course_needs_update(1) is False

        with engine.begin() as conn:
            conn.execute(update(schema.grade_items).where(schema.grade_items.c.id == 100).values(needsupdate=True))

        assert source.course_needs_update(1) is True
        assert source.course_needs_update(2) is False

    def test_course_without_total_is_not_stale(self, source):
        assert source.course_needs_update(999) is False

    def test_custom_field_definitions(self, source):
        fields = source.get_custom_field_definitions()

        assert [f.shortname for f in fields] == ['studentno', 'program']
        assert fields[1].defaultdata == 'Undeclared'
        assert fields[0].column_label == 'customfield_studentno'
        assert source.get_custom_field_definitions([]) == []


class TestIteratorOnDatabase:
    """Run the iterator over real streams."""

    def test_full_merge(self, source):
        course = source.get_course(1)
        iterator = GradedUserIterator(source, course, source.get_grade_items(1))

        with iterator:
            assert iterator.init()
            bundles = list(iterator)

        assert [b.user.id for b in bundles] == [1, 2, 3, 4, 8]
        assert bundles[0].grades[101].finalgrade == 85.0
        assert bundles[0].grades[100].finalgrade == 89.0
        assert not bundles[0].grades[103].is_recorded
        assert bundles[1].feedbacks[101].feedback == 'Needs more sources'
        assert all(not g.is_recorded for g in bundles[2].grades.values())
        assert bundles[3].grades[102].finalgrade == 50.0
        assert [b.user.suspended for b in bundles] == [False, False, False, True, True]

    def test_connections_released_after_iteration(self, engine, source):
        iterator = GradedUserIterator(source, source.get_course(1), source.get_grade_items(1))

        with iterator:
            iterator.init()
            iterator.next_user()
            assert engine.pool.checkedout() == 2

        assert engine.pool.checkedout() == 0

    def test_streams_share_one_reference_time(self, engine, query_settings):
        from sqlalchemy import insert
        from gradeexport.storage import schema

        with engine.begin() as conn:
            conn.execute(insert(schema.grade_grades), [
                {'userid': 3, 'itemid': 101, 'rawgrade': 60.0, 'finalgrade': 60.0},
                {'userid': 8, 'itemid': 101, 'rawgrade': 40.0, 'finalgrade': 40.0},
            ])

        # each reading is a day later: Bob's enrolment starts and Hank's ends in between
        ticks = itertools.count(NOW - DAY - 1, DAY)
        readings = []

        def clock():
            readings.append(next(ticks))
            return readings[-1]

        query_settings.clock = clock
        source = SqlGradebookSource(engine, query_settings)
        iterator = GradedUserIterator(source, source.get_course(1), source.get_grade_items(1, [101]))
        iterator.require_active_enrolment(True)

        with warnings.catch_warnings():
            warnings.simplefilter('error', StreamConsistencyWarning)
            with iterator:
                assert iterator.init()
                bundles = list(iterator)

        assert len(readings) == 1
        assert {b.user.id: b.grades[101].finalgrade for b in bundles} == {1: 85.0, 3: 60.0, 8: 40.0}

    def test_suspended_ids_at_given_time(self, source):
        assert source.suspended_user_ids(1, now=NOW - DAY - 1) == {2, 4}
