"""
Gradebook Constants and Defaults

This module defines the fixed values shared by the query layer, the merge
iterator and the export writer: text formats, enrolment states, sort
fields, grade display types and the default letter scale. Configuration
defaults that reference these values live here too, so the settings
schema and the command line agree on them.
"""

from typing import Any, Dict, List, Tuple, Type


# =============================================================================
# TEXT FORMATS
# =============================================================================

FORMAT_MOODLE = 0
FORMAT_HTML = 1
FORMAT_PLAIN = 2
FORMAT_MARKDOWN = 4

DEFAULT_FEEDBACK_FORMAT = FORMAT_MOODLE


# =============================================================================
# ENROLMENTS AND ROLES
# =============================================================================

ENROL_USER_ACTIVE = 0
ENROL_USER_SUSPENDED = 1

# Student role in a stock gradebook install
DEFAULT_GRADEBOOK_ROLES = [5]


# =============================================================================
# GRADE ITEMS
# =============================================================================

ITEMTYPE_COURSE = 'course'
ITEMTYPE_CATEGORY = 'category'
ITEMTYPE_MOD = 'mod'
ITEMTYPE_MANUAL = 'manual'


# =============================================================================
# ORDERING
# =============================================================================

SORT_ASC = 'ASC'
SORT_DESC = 'DESC'
SORT_DIRECTIONS = (SORT_ASC, SORT_DESC)

SORTABLE_USER_FIELDS = (
    'id', 'username', 'firstname', 'lastname', 'email', 'idnumber',
    'institution', 'department', 'city', 'country', 'groupname',
)


# =============================================================================
# PROFILE FIELDS
# =============================================================================

USER_DEFAULT_FIELDS = (
    'id', 'username', 'firstname', 'lastname', 'fullname', 'email',
    'idnumber', 'institution', 'department', 'phone1', 'city', 'country',
)

DEFAULT_PROFILE_FIELDS = ['fullname', 'email']

FIELD_LABELS = {
    'id': 'ID',
    'username': 'Username',
    'firstname': 'First name',
    'lastname': 'Last name',
    'fullname': 'Full name',
    'email': 'Email address',
    'idnumber': 'ID number',
    'institution': 'Institution',
    'department': 'Department',
    'phone1': 'Phone',
    'city': 'City/town',
    'country': 'Country',
    'group': 'Group',
}


# =============================================================================
# GRADE DISPLAY
# =============================================================================

DISPLAY_REAL = 'real'
DISPLAY_PERCENTAGE = 'percentage'
DISPLAY_LETTER = 'letter'
DISPLAY_TYPES = (DISPLAY_REAL, DISPLAY_PERCENTAGE, DISPLAY_LETTER)

DISPLAY_LABELS = {
    DISPLAY_REAL: 'Real',
    DISPLAY_PERCENTAGE: 'Percentage',
    DISPLAY_LETTER: 'Letter',
}

# (lower boundary in percent, letter), highest first
DEFAULT_GRADE_LETTERS: List[Tuple[float, str]] = [
    (93.0, 'A'),
    (90.0, 'A-'),
    (87.0, 'B+'),
    (83.0, 'B'),
    (80.0, 'B-'),
    (77.0, 'C+'),
    (73.0, 'C'),
    (70.0, 'C-'),
    (67.0, 'D+'),
    (60.0, 'D'),
    (0.0, 'F'),
]

EMPTY_GRADE = '-'


# =============================================================================
# EXPORT STRINGS
# =============================================================================

STR_GRADES = 'Grades'
STR_SUSPENDED = 'Suspended'
STR_YES = 'Yes'
STR_FEEDBACK = 'Feedback'
STR_COURSE_TOTAL = 'Course total'
STR_CATEGORY_TOTAL = 'Category total'
STR_TIME_EXPORTED = 'Last downloaded from this course'


# =============================================================================
# CONFIGURATION DEFAULTS AND TYPES
# =============================================================================

class ConfigDefaults:
    """
    Centralized defaults for the export options.

    Each entry maps a key to ``(default_value, expected_type)``.
    """

    EXPORT = {
        'display_types': ([DISPLAY_REAL], list),
        'decimal_points': (2, int),
        'export_feedback': (False, bool),
        'feedback_as_markdown': (False, bool),
        'only_active': (False, bool),
        'include_custom_fields': (True, bool),
        'sortfield1': ('groupname', str),
        'sortorder1': (SORT_ASC, str),
        'sortfield2': ('firstname', str),
        'sortorder2': (SORT_ASC, str),
        'output_folder': ('exports', str),
    }

    GRADEBOOK = {
        'gradebook_roles': (list(DEFAULT_GRADEBOOK_ROLES), list),
        'profile_fields': (list(DEFAULT_PROFILE_FIELDS), list),
        'custom_profile_fields': ([], list),
    }

    DATABASE = {
        'url': ('sqlite:///gradebook.db', str),
        'fetch_size': (500, int),
        'echo': (False, bool),
    }

    @classmethod
    def get_default_and_type(cls, section: str, key: str) -> Tuple[Any, Type]:
        """
        Get default value and expected type for a configuration setting.

        Args:
            section: Configuration section name
            key: Configuration key name

        Returns:
            Tuple of (default_value, expected_type)
        """
        section_map: Dict[str, Dict[str, Tuple[Any, Type]]] = {
            'export': cls.EXPORT,
            'gradebook': cls.GRADEBOOK,
            'database': cls.DATABASE,
        }

        if section in section_map and key in section_map[section]:
            return section_map[section][key]

        return (None, str)

    @classmethod
    def get_default(cls, section: str, key: str) -> Any:
        """Get just the default value for a setting."""
        default, _ = cls.get_default_and_type(section, key)
        return default
