"""
Bundle assembly helpers.

Both helpers return a ``(GradeValue, FeedbackValue)`` pair. They are the
only place that decides what a missing grade or missing feedback looks
like.
"""

from typing import Tuple

from ..config.constants import DEFAULT_FEEDBACK_FORMAT
from .models import FeedbackValue, GradeRow, GradeValue


def split_grade_feedback(row: GradeRow) -> Tuple[GradeValue, FeedbackValue]:
    """
    Split a recorded grade row into its grade and its feedback.

    Args:
        row: Grade row read from the grade stream

    Returns:
        Tuple[GradeValue, FeedbackValue]: grade without feedback fields, and the feedback
    """
    grade = GradeValue(
        userid=row.userid,
        itemid=row.itemid,
        id=row.id,
        rawgrade=row.rawgrade,
        finalgrade=row.finalgrade,
        hidden=row.hidden,
        overridden=row.overridden,
        timemodified=row.timemodified,
    )
    feedbackformat = row.feedbackformat if row.feedbackformat is not None else DEFAULT_FEEDBACK_FORMAT
    feedback = FeedbackValue(feedback=row.feedback or '', feedbackformat=feedbackformat)
    return grade, feedback


def empty_grade_feedback(user_id: int, item_id: int) -> Tuple[GradeValue, FeedbackValue]:
    """Synthesize the pair used when a user has no grade for an item."""
    return (GradeValue(userid=user_id, itemid=item_id),
            FeedbackValue(feedback='', feedbackformat=DEFAULT_FEEDBACK_FORMAT))
