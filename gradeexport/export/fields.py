"""
Profile field columns.

Resolves the configured profile columns once, before any user is read,
into ``FieldDescriptor`` values. Each descriptor carries the accessor that
reads its raw value from a user row, so no field is looked up by name
while rows are written.
"""

import math
import re
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Any, Callable, Iterable, List, Optional, Sequence

from ..config.constants import FIELD_LABELS, USER_DEFAULT_FIELDS
from ..core.models import UserRow
from ..storage.queries import CustomFieldDefinition

# Covered by the leading full name column
_NAME_FIELDS = ('firstname', 'lastname', 'fullname')

# Same shape PHP's is_numeric() accepts; no nan, inf or digit separators
_NUMERIC = re.compile(r'\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*')

Accessor = Callable[[UserRow], Any]

_DERIVED_ACCESSORS = {
    'fullname': attrgetter('fullname'),
    'group': attrgetter('groupname'),
}


def _custom_accessor(shortname: str) -> Accessor:
    return lambda user: user.custom_fields.get(shortname)


@dataclass(frozen=True)
class FieldDescriptor:
    """
    One profile column of the export.

    ``customid`` is 0 for standard fields. ``accessor`` is filled in from
    the shortname when not given; an unknown standard field is rejected
    here rather than when the first row is written.
    """
    shortname: str
    fullname: str
    customid: int = 0
    datatype: Optional[str] = None
    default: Optional[str] = None
    accessor: Optional[Accessor] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if self.accessor is None:
            object.__setattr__(self, 'accessor', self._resolve_accessor())

    def _resolve_accessor(self) -> Accessor:
        if self.is_custom:
            return _custom_accessor(self.shortname)
        if self.shortname in _DERIVED_ACCESSORS:
            return _DERIVED_ACCESSORS[self.shortname]
        if self.shortname in USER_DEFAULT_FIELDS:
            return attrgetter(self.shortname)
        raise ValueError(f"Unknown user profile field '{self.shortname}'")

    @property
    def is_custom(self) -> bool:
        return bool(self.customid)


def get_user_profile_fields(profile_fields: Iterable[str],
                            custom_fields: Sequence[CustomFieldDefinition] = ()) -> List[FieldDescriptor]:
    """
    Build the ordered list of profile columns.

    The full name column always comes first and the group column always
    follows the standard fields. Unknown standard fields are skipped, and
    first and last name are dropped because the full name covers them.

    Args:
        profile_fields: Standard user field shortnames, in column order
        custom_fields: Custom profile fields to append, already in display order

    Returns:
        List[FieldDescriptor]: Profile columns in output order
    """
    fields = []
    for shortname in profile_fields:
        shortname = shortname.strip()
        if shortname not in USER_DEFAULT_FIELDS:
            continue
        fields.append(FieldDescriptor(shortname=shortname,
                                      fullname=FIELD_LABELS.get(shortname, shortname)))

    fields.append(FieldDescriptor(shortname='group', fullname=FIELD_LABELS['group']))

    for custom_field in custom_fields:
        fields.append(FieldDescriptor(shortname=custom_field.shortname,
                                      fullname=custom_field.name,
                                      customid=custom_field.id,
                                      datatype=custom_field.datatype,
                                      default=custom_field.defaultdata,
                                      accessor=_custom_accessor(custom_field.shortname)))

    fields = [f for f in fields if f.is_custom or f.shortname not in _NAME_FIELDS]

    fields.insert(0, FieldDescriptor(shortname='fullname', fullname=FIELD_LABELS['fullname']))
    return fields


def get_user_field_value(user: UserRow, field: FieldDescriptor) -> str:
    """
    Read the value of a profile column for a user.

    An empty custom field falls back to the field default; a numeric zero
    is a value, not empty.
    """
    value = field.accessor(user)

    if field.is_custom:
        if value or _is_numeric(value):
            return str(value)
        return field.default or ''

    return '' if value is None else str(value)


def _is_numeric(value) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        return _NUMERIC.fullmatch(value) is not None
    return False
