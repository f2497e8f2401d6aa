"""
Gradebook database schema.

SQLAlchemy Core table definitions for the parts of the gradebook the
export reads: users, enrolments, role assignments, groups, grade items,
grades and custom profile fields.
"""

from sqlalchemy import (
    Boolean, Column, Float, ForeignKey, Index, Integer, MetaData, String, Table, Text,
)
from sqlalchemy.engine import Engine

from ..config.constants import DEFAULT_FEEDBACK_FORMAT, ENROL_USER_ACTIVE

metadata = MetaData()

user = Table(
    'user', metadata,
    Column('id', Integer, primary_key=True),
    Column('username', String(100), nullable=False, default=''),
    Column('firstname', String(100), nullable=False, default=''),
    Column('lastname', String(100), nullable=False, default=''),
    Column('email', String(100), nullable=False, default=''),
    Column('idnumber', String(255), nullable=False, default=''),
    Column('institution', String(255), nullable=False, default=''),
    Column('department', String(255), nullable=False, default=''),
    Column('phone1', String(20), nullable=False, default=''),
    Column('city', String(120), nullable=False, default=''),
    Column('country', String(2), nullable=False, default=''),
    Column('deleted', Boolean, nullable=False, default=False),
)

course = Table(
    'course', metadata,
    Column('id', Integer, primary_key=True),
    Column('shortname', String(255), nullable=False, default=''),
    Column('fullname', String(254), nullable=False, default=''),
)

enrolments = Table(
    'enrolments', metadata,
    Column('id', Integer, primary_key=True),
    Column('courseid', Integer, ForeignKey('course.id'), nullable=False),
    Column('userid', Integer, ForeignKey('user.id'), nullable=False),
    Column('status', Integer, nullable=False, default=ENROL_USER_ACTIVE),
    # unix timestamps, 0 means unbounded
    Column('timestart', Integer, nullable=False, default=0),
    Column('timeend', Integer, nullable=False, default=0),
    Index('ix_enrolments_course_user', 'courseid', 'userid'),
)

role_assignments = Table(
    'role_assignments', metadata,
    Column('id', Integer, primary_key=True),
    Column('courseid', Integer, ForeignKey('course.id'), nullable=False),
    Column('userid', Integer, ForeignKey('user.id'), nullable=False),
    Column('roleid', Integer, nullable=False),
    Index('ix_role_assignments_course_user', 'courseid', 'userid'),
)

groups = Table(
    'groups', metadata,
    Column('id', Integer, primary_key=True),
    Column('courseid', Integer, ForeignKey('course.id'), nullable=False),
    Column('name', String(254), nullable=False),
)

groups_members = Table(
    'groups_members', metadata,
    Column('id', Integer, primary_key=True),
    Column('groupid', Integer, ForeignKey('groups.id'), nullable=False),
    Column('userid', Integer, ForeignKey('user.id'), nullable=False),
    Index('ix_groups_members_user', 'userid', 'groupid'),
)

grade_items = Table(
    'grade_items', metadata,
    Column('id', Integer, primary_key=True),
    Column('courseid', Integer, ForeignKey('course.id'), nullable=False),
    Column('itemtype', String(30), nullable=False),
    Column('itemname', String(255)),
    Column('itemmodule', String(30)),
    Column('sortorder', Integer, nullable=False, default=0),
    Column('grademin', Float, nullable=False, default=0.0),
    Column('grademax', Float, nullable=False, default=100.0),
    Column('needsupdate', Boolean, nullable=False, default=False),
)

grade_grades = Table(
    'grade_grades', metadata,
    Column('id', Integer, primary_key=True),
    Column('itemid', Integer, ForeignKey('grade_items.id'), nullable=False),
    Column('userid', Integer, ForeignKey('user.id'), nullable=False),
    Column('rawgrade', Float),
    Column('finalgrade', Float),
    Column('feedback', Text),
    Column('feedbackformat', Integer, nullable=False, default=DEFAULT_FEEDBACK_FORMAT),
    Column('hidden', Boolean, nullable=False, default=False),
    Column('overridden', Boolean, nullable=False, default=False),
    Column('timemodified', Integer),
    Index('ix_grade_grades_user_item', 'userid', 'itemid', unique=True),
)

user_info_category = Table(
    'user_info_category', metadata,
    Column('id', Integer, primary_key=True),
    Column('name', String(255), nullable=False),
    Column('sortorder', Integer, nullable=False, default=0),
)

user_info_field = Table(
    'user_info_field', metadata,
    Column('id', Integer, primary_key=True),
    Column('shortname', String(255), nullable=False, unique=True),
    Column('name', Text, nullable=False),
    Column('datatype', String(255), nullable=False, default='text'),
    Column('categoryid', Integer, ForeignKey('user_info_category.id'), nullable=False),
    Column('sortorder', Integer, nullable=False, default=0),
    Column('defaultdata', Text),
)

user_info_data = Table(
    'user_info_data', metadata,
    Column('id', Integer, primary_key=True),
    Column('userid', Integer, ForeignKey('user.id'), nullable=False),
    Column('fieldid', Integer, ForeignKey('user_info_field.id'), nullable=False),
    Column('data', Text, nullable=False, default=''),
    Index('ix_user_info_data_user_field', 'userid', 'fieldid', unique=True),
)


def create_schema(engine: Engine) -> None:
    """Create all gradebook tables that do not exist yet."""
    metadata.create_all(engine)
