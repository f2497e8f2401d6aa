"""Exceptions and warnings raised by the grade export core."""


class GradeExportError(Exception):
    """Base exception for grade export errors."""
    pass


class StaleAggregateError(GradeExportError):
    """The course total needs recalculation, exported totals would be wrong."""

    def __init__(self, course_id: int):
        super().__init__(f"Grades of course {course_id} need to be recalculated before export")
        self.course_id = course_id


class InvalidSortError(GradeExportError, ValueError):
    """Unknown sort field or sort direction."""
    pass


class StreamConsistencyWarning(UserWarning):
    """Grade rows were left over after the user stream ended."""
    pass


class StreamConfigurationWarning(UserWarning):
    """A stream setting was changed after the streams were opened."""
    pass
