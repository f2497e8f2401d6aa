"""
CSV Grade Export Module

This module writes the grades of a course to a CSV file with one row per
graded user. It drives the graded users iterator and turns each bundle
into profile columns, a suspended flag, one column per grade item and
display type, an optional feedback column per item and the export time.

Columns:
- Profile fields (full name first, then configured fields, group, custom fields)
- Suspended (only when users with inactive enrolments are included)
- Per grade item: one column per display type, plus feedback if requested
- Last downloaded from this course (Unix timestamp)

Usage:
    source = SqlGradebookSource(engine, settings)
    course = source.get_course(12)
    exporter = GradeCsvExporter(source, course, source.get_grade_items(12),
                                ExportOptions(export_feedback=True))
    stats = exporter.export_to_file(Path('exports') / exporter.get_download_filename())
"""

import csv
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TextIO

from ..config.constants import (
    ConfigDefaults, DEFAULT_PROFILE_FIELDS, DISPLAY_REAL, SORT_ASC, STR_GRADES, STR_SUSPENDED,
    STR_TIME_EXPORTED, STR_YES,
)
from ..core.errors import StaleAggregateError
from ..core.iterator import GradedUserIterator
from ..core.models import Course, GradeItem, UserGradeBundle
from ..storage.queries import SqlGradebookSource
from ..utils.logger import get_logger, log_execution_time
from ..utils.progress import ProgressTracker
from .fields import FieldDescriptor, get_user_field_value, get_user_profile_fields
from .formatting import format_column_name, format_feedback, format_grade, normalize_display_types


@dataclass
class ExportOptions:
    """Options of one export run."""
    group_id: int = 0
    only_active: bool = False
    export_feedback: bool = False
    feedback_as_markdown: bool = False
    display_types: List[str] = field(default_factory=lambda: [DISPLAY_REAL])
    decimal_points: int = 2
    include_custom_fields: bool = True
    profile_fields: List[str] = field(default_factory=lambda: list(DEFAULT_PROFILE_FIELDS))
    sortfield1: Optional[str] = 'groupname'
    sortorder1: str = SORT_ASC
    sortfield2: Optional[str] = 'firstname'
    sortorder2: str = SORT_ASC

    def __post_init__(self):
        self.display_types = normalize_display_types(self.display_types)
        if self.decimal_points < 0:
            raise ValueError("decimal_points must not be negative")

    @classmethod
    def from_config(cls, config, **overrides) -> 'ExportOptions':
        """
        Build options from the application configuration.

        Keyword overrides that are None are ignored, so command line flags
        that were not given keep the configured value.
        """
        values = {
            'only_active': config.safe_get('export.only_active', ConfigDefaults.get_default('export', 'only_active'), bool),
            'export_feedback': config.safe_get('export.export_feedback', False, bool),
            'feedback_as_markdown': config.safe_get('export.feedback_as_markdown', False, bool),
            'display_types': config.safe_get('export.display_types', [DISPLAY_REAL], list),
            'decimal_points': config.safe_get('export.decimal_points', 2, int),
            'include_custom_fields': config.safe_get('export.include_custom_fields', True, bool),
            'profile_fields': config.safe_get('gradebook.profile_fields', list(DEFAULT_PROFILE_FIELDS), list),
            'sortfield1': config.safe_get('export.sortfield1', 'groupname', str),
            'sortorder1': config.safe_get('export.sortorder1', SORT_ASC, str),
            'sortfield2': config.safe_get('export.sortfield2', 'firstname', str),
            'sortorder2': config.safe_get('export.sortorder2', SORT_ASC, str),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def sanitize_filename(filename: str) -> str:
    """Make a file name safe for the local filesystem."""
    invalid_chars = ['<', '>', ':', '"', '/', '\\', '|', '?', '*']
    sanitized = filename

    for char in invalid_chars:
        sanitized = sanitized.replace(char, '_')

    sanitized = sanitized.strip(' .')

    if not sanitized:
        sanitized = "grades.csv"

    return sanitized


class GradeCsvExporter:
    """
    Writes one CSV row per graded user of a course.

    The iterator is created, initialised and closed by every write, also
    when writing fails.
    """

    def __init__(self, source: SqlGradebookSource, course: Course,
                 grade_items: Mapping[int, GradeItem], options: ExportOptions = None,
                 progress_tracker: ProgressTracker = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the exporter.

        Args:
            source: Query layer of the gradebook database
            course: Course to export
            grade_items: Ordered mapping of the grade items to export
            options: Export options
            progress_tracker: Optional progress tracker for UI updates
            clock: Source of the export timestamp
        """
        self.source = source
        self.course = course
        self.grade_items = grade_items
        self.options = options or ExportOptions()
        self.progress_tracker = progress_tracker
        self.clock = clock
        self.logger = get_logger(__name__)

        self.stats = {
            'users': 0,
            'grade_items': len(grade_items),
            'output_file': None,
            'start_time': None,
            'end_time': None,
            'duration_seconds': 0,
        }

    def get_download_filename(self) -> str:
        """File name of the export, e.g. ``MATH101 Grades.csv``."""
        return sanitize_filename(f"{self.course.shortname} {STR_GRADES}.csv")

    def get_profile_fields(self) -> List[FieldDescriptor]:
        custom_fields = []
        if self.options.include_custom_fields:
            custom_fields = self.source.get_custom_field_definitions()
        return get_user_profile_fields(self.options.profile_fields, custom_fields)

    def build_header(self, profile_fields: List[FieldDescriptor]) -> List[str]:
        header = [f.fullname for f in profile_fields]

        if not self.options.only_active:
            header.append(STR_SUSPENDED)

        several_types = len(self.options.display_types) > 1
        for grade_item in self.grade_items.values():
            for display_type in self.options.display_types:
                header.append(format_column_name(grade_item, False, display_type if several_types else None))
            if self.options.export_feedback:
                header.append(format_column_name(grade_item, True))

        header.append(STR_TIME_EXPORTED)
        return header

    def build_row(self, bundle: UserGradeBundle, profile_fields: List[FieldDescriptor],
                  exported_at: int) -> List[Any]:
        user = bundle.user
        row: List[Any] = [get_user_field_value(user, f) for f in profile_fields]

        if not self.options.only_active:
            row.append(STR_YES if user.suspended else '')

        for item_id, grade_item in self.grade_items.items():
            grade = bundle.grades[item_id]
            for display_type in self.options.display_types:
                row.append(format_grade(grade, grade_item, display_type, self.options.decimal_points))
            if self.options.export_feedback:
                row.append(format_feedback(bundle.feedbacks[item_id], self.options.feedback_as_markdown))

        row.append(exported_at)
        return row

    def create_iterator(self) -> GradedUserIterator:
        iterator = GradedUserIterator(
            self.source, self.course, self.grade_items, self.options.group_id,
            self.options.sortfield1, self.options.sortorder1,
            self.options.sortfield2, self.options.sortorder2,
        )
        iterator.require_active_enrolment(self.options.only_active)
        iterator.allow_user_custom_fields(self.options.include_custom_fields)
        return iterator

    def write(self, stream: TextIO) -> Dict[str, Any]:
        """
        Write the export to an open text stream.

        Args:
            stream: Text stream opened with ``newline=''``

        Returns:
            Dict[str, Any]: Export statistics

        Raises:
            StaleAggregateError: If the course grades need recalculation
        """
        self.stats['start_time'] = datetime.now()
        self.stats['users'] = 0

        self.logger.set_context(course_id=self.course.id, course_name=self.course.shortname,
                                group_id=self.options.group_id)

        profile_fields = self.get_profile_fields()

        with self.create_iterator() as iterator:
            if not iterator.init():
                raise StaleAggregateError(self.course.id)

            writer = csv.writer(stream)
            writer.writerow(self.build_header(profile_fields))

            if self.progress_tracker:
                self.progress_tracker.start_export(self.course.shortname or str(self.course.id),
                                                   course_id=self.course.id)

            exported_at = int(self.clock())
            for bundle in iterator:
                writer.writerow(self.build_row(bundle, profile_fields, exported_at))
                self.stats['users'] += 1

                if self.progress_tracker:
                    self.progress_tracker.update_user_progress(self.stats['users'])

            if self.progress_tracker:
                self.progress_tracker.complete_export()

        self.stats['end_time'] = datetime.now()
        self.stats['duration_seconds'] = (self.stats['end_time'] - self.stats['start_time']).total_seconds()

        self.logger.info("Grade export written",
                         users=self.stats['users'],
                         grade_items=self.stats['grade_items'],
                         duration_seconds=self.stats['duration_seconds'])
        return self.stats

    @log_execution_time
    def export_to_file(self, output_path: Path) -> Dict[str, Any]:
        """
        Write the export to a file.

        The file only appears under its final name once it is complete.

        Args:
            output_path: Destination CSV file

        Returns:
            Dict[str, Any]: Export statistics
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = output_path.with_name(output_path.name + '.part')

        try:
            with open(partial_path, 'w', encoding='utf-8', newline='') as csvfile:
                self.write(csvfile)
            partial_path.replace(output_path)
        except BaseException:
            if self.progress_tracker:
                self.progress_tracker.cleanup()
            partial_path.unlink(missing_ok=True)
            raise

        self.stats['output_file'] = str(output_path)
        self.logger.info("Exported grades", file_path=str(output_path))
        return self.stats
