"""Tests for row stream cursors and the grade/feedback split helpers."""

from gradeexport.config.constants import DEFAULT_FEEDBACK_FORMAT, FORMAT_HTML
from gradeexport.core.bundles import empty_grade_feedback, split_grade_feedback
from gradeexport.core.models import GradeRow
from gradeexport.storage.streams import RecordStream


class ClosableRows(list):
    closed = False

    def close(self):
        self.closed = True


class TestRecordStream:
    """Test the current/next/valid/close cursor."""

    def test_walks_rows(self):
        stream = RecordStream([1, 2, 3])
        seen = []
        while stream.valid():
            seen.append(stream.current())
            stream.next()

        assert seen == [1, 2, 3]
        assert stream.current() is None

    def test_empty(self):
        stream = RecordStream([])
        assert not stream.valid()
        assert stream.current() is None
        stream.next()
        assert not stream.valid()

    def test_factory_applied(self):
        stream = RecordStream([{'v': 1}, {'v': 2}], factory=lambda row: row['v'] * 10)
        assert stream.current() == 10
        stream.next()
        assert stream.current() == 20

    def test_close_releases_rows_and_connection(self):
        rows = ClosableRows([1, 2])
        released = []
        stream = RecordStream(rows, on_close=lambda: released.append(True))

        stream.close()
        stream.close()

        assert rows.closed
        assert released == [True]
        assert stream.closed
        assert not stream.valid()
        assert stream.current() is None

    def test_next_after_close(self):
        stream = RecordStream([1, 2])
        stream.close()
        stream.next()
        assert not stream.valid()


class TestBundleHelpers:
    """Test present and synthesized grade/feedback pairs."""

    def test_split_grade_feedback(self):
        row = GradeRow(id=7, userid=3, itemid=10, rawgrade=80.0, finalgrade=82.5,
                       feedback='<p>Nice</p>', feedbackformat=FORMAT_HTML,
                       hidden=True, overridden=True, timemodified=123)
        grade, feedback = split_grade_feedback(row)

        assert (grade.id, grade.userid, grade.itemid) == (7, 3, 10)
        assert grade.rawgrade == 80.0
        assert grade.finalgrade == 82.5
        assert grade.hidden and grade.overridden
        assert grade.timemodified == 123
        assert grade.is_recorded
        assert feedback.feedback == '<p>Nice</p>'
        assert feedback.feedbackformat == FORMAT_HTML

    def test_split_missing_feedback(self):
        row = GradeRow(id=1, userid=1, itemid=1, finalgrade=1.0, feedback=None, feedbackformat=None)
        _, feedback = split_grade_feedback(row)

        assert feedback.feedback == ''
        assert feedback.feedbackformat == DEFAULT_FEEDBACK_FORMAT

    def test_empty_grade_feedback(self):
        grade, feedback = empty_grade_feedback(4, 11)

        assert grade.userid == 4
        assert grade.itemid == 11
        assert grade.id is None
        assert grade.finalgrade is None
        assert not grade.is_recorded
        assert feedback.feedback == ''
        assert feedback.feedbackformat == DEFAULT_FEEDBACK_FORMAT
