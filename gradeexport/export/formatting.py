"""
Grade and feedback formatting.

Turns grade values into the strings written to the export: real values,
percentages or letters, a column title per grade item, and feedback text
converted from its stored format.
"""

from typing import List, Optional, Sequence, Tuple

import markdownify
from bs4 import BeautifulSoup

from ..config.constants import (
    DEFAULT_GRADE_LETTERS, DISPLAY_LABELS, DISPLAY_LETTER, DISPLAY_PERCENTAGE, DISPLAY_REAL,
    DISPLAY_TYPES, EMPTY_GRADE, FORMAT_HTML, FORMAT_MOODLE, ITEMTYPE_CATEGORY, ITEMTYPE_COURSE,
    STR_CATEGORY_TOTAL, STR_COURSE_TOTAL, STR_FEEDBACK,
)
from ..core.models import FeedbackValue, GradeItem, GradeValue


def normalize_display_types(display_types: Sequence[str]) -> List[str]:
    """
    Validate and de-duplicate the requested display types.

    Raises:
        ValueError: If a display type is unknown
    """
    result = []
    for display_type in display_types:
        display_type = display_type.strip().lower()
        if display_type not in DISPLAY_TYPES:
            raise ValueError(f"Unknown grade display type '{display_type}', "
                             f"expected one of {', '.join(DISPLAY_TYPES)}")
        if display_type not in result:
            result.append(display_type)
    return result or [DISPLAY_REAL]


def grade_percentage(value: float, item: GradeItem) -> Optional[float]:
    grade_range = item.grademax - item.grademin
    if grade_range <= 0:
        return None
    return (value - item.grademin) / grade_range * 100.0


def grade_letter(percentage: float,
                 letters: Sequence[Tuple[float, str]] = DEFAULT_GRADE_LETTERS) -> str:
    # rounding keeps 92.999999 from falling below the A boundary
    percentage = round(percentage, 5)
    for boundary, letter in letters:
        if percentage >= boundary:
            return letter
    return letters[-1][1] if letters else EMPTY_GRADE


def format_grade(grade: GradeValue, item: GradeItem, display_type: str = DISPLAY_REAL,
                 decimals: int = 2) -> str:
    """
    Format one grade for output.

    Args:
        grade: Grade value, possibly synthesized
        item: Grade item the grade belongs to
        display_type: real, percentage or letter
        decimals: Decimal places for real and percentage values

    Returns:
        str: Formatted grade, ``-`` when there is no final grade
    """
    if grade.finalgrade is None:
        return EMPTY_GRADE

    value = float(grade.finalgrade)

    if display_type == DISPLAY_REAL:
        return f"{value:.{decimals}f}"

    percentage = grade_percentage(value, item)
    if percentage is None:
        return EMPTY_GRADE

    if display_type == DISPLAY_PERCENTAGE:
        return f"{percentage:.{decimals}f} %"
    if display_type == DISPLAY_LETTER:
        return grade_letter(percentage)

    raise ValueError(f"Unknown grade display type '{display_type}'")


def format_feedback(feedback: FeedbackValue, as_markdown: bool = False) -> str:
    """
    Convert stored feedback to plain text, or to Markdown when asked.

    Only HTML feedback is converted; other formats are written as stored.
    """
    text = feedback.feedback or ''
    if not text:
        return ''

    if feedback.feedbackformat in (FORMAT_HTML, FORMAT_MOODLE) and '<' in text:
        if as_markdown:
            return markdownify.markdownify(text, heading_style='ATX').strip()
        soup = BeautifulSoup(text, 'html.parser')
        return soup.get_text(' ', strip=True)

    return text.strip()


def format_column_name(item: GradeItem, feedback: bool = False,
                       display_name: Optional[str] = None) -> str:
    """
    Column title for a grade item.

    Args:
        item: Grade item
        feedback: True for the feedback column of the item
        display_name: Display type to append, None when only one type is exported

    Returns:
        str: e.g. ``Assignment: Essay 1 (Real)`` or ``Course total (Feedback)``
    """
    if item.itemtype == ITEMTYPE_COURSE:
        name = STR_COURSE_TOTAL
    elif item.itemtype == ITEMTYPE_CATEGORY:
        name = f"{item.itemname}: {STR_CATEGORY_TOTAL}" if item.itemname else STR_CATEGORY_TOTAL
    elif item.itemmodule:
        name = f"{item.itemmodule.capitalize()}: {item.itemname or ''}".rstrip()
    else:
        name = item.itemname or f"Item {item.id}"

    if feedback:
        return f"{name} ({STR_FEEDBACK})"
    if display_name:
        return f"{name} ({DISPLAY_LABELS.get(display_name, display_name)})"
    return name
