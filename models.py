"""In-memory record model for the daily attendance tally.

The form edits exactly one attendance record at a time. Its shape is fixed and
small, so it is modelled with plain dataclasses rather than a generic nested
dictionary:

* :class:`CountSet` – the four social-category counts for one gender.
* :class:`CategoryBlock` – girls and boys counts for one attendance type.
* :class:`AttendanceRecord` – class name, date and the two blocks
  (``classAttendance`` and the ``mdmAttendance`` meal programme).
* :class:`AuthenticatedTeacher` – identity returned by a successful login.

Counts are integers in ``[0, 99]`` or :data:`EMPTY`, a sentinel for an unfilled
field that is distinct from ``0``. On the wire ``EMPTY`` is the empty string.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple, Union

CATEGORIES: Tuple[str, ...] = ("SC", "ST", "SEBC", "OTHER")
GENDERS: Tuple[str, ...] = ("girls", "boys")
BLOCKS: Tuple[str, ...] = ("classAttendance", "mdmAttendance")

MIN_COUNT = 0
MAX_COUNT = 99

_INTEGER_RE = re.compile(r"^([+-]?)0*(\d*)$")


class Blank(enum.Enum):
    """Marker type for a count the user has not filled in."""

    EMPTY = ""

    def __repr__(self) -> str:
        return "EMPTY"


EMPTY = Blank.EMPTY

Count = Union[int, Blank]


class InvalidCount(ValueError):
    """Raised when a keystroke value is not an integer."""


def clamp_count(value: int) -> int:
    return max(MIN_COUNT, min(MAX_COUNT, value))


def sanitize_count(raw: Any) -> Count:
    """Turn raw field input into a count.

    Blank input yields :data:`EMPTY`, never ``0``. Integers (optionally signed)
    are clamped into ``[0, 99]``. Anything else raises :class:`InvalidCount`.
    """
    if raw is None or raw is EMPTY:
        return EMPTY
    if isinstance(raw, bool):
        raise InvalidCount(f"not a count: {raw!r}")
    if isinstance(raw, int):
        return clamp_count(raw)
    text = str(raw).strip()
    if not text:
        return EMPTY
    match = _INTEGER_RE.match(text)
    if match is None or text.lstrip("+-") == "":
        raise InvalidCount(f"not a count: {raw!r}")
    sign, digits = match.groups()
    # Clamp by digit count; int() refuses very long digit strings.
    if not digits:
        return 0
    if sign == "-":
        return MIN_COUNT
    if len(digits) > len(str(MAX_COUNT)):
        return MAX_COUNT
    return clamp_count(int(digits))


def _normalize_leaf(value: Any) -> Count:
    # Server cells may hold null, "", numbers or numeric strings.
    if value is None:
        return EMPTY
    try:
        return sanitize_count(value)
    except InvalidCount:
        if isinstance(value, float) and value.is_integer():
            return clamp_count(int(value))
        return EMPTY


def count_to_wire(value: Count) -> Union[int, str]:
    return EMPTY.value if value is EMPTY else value


@dataclass
class CountSet:
    """Counts per social category for one gender, in fixed category order."""

    counts: Dict[str, Count] = field(default_factory=lambda: {c: EMPTY for c in CATEGORIES})

    def __getitem__(self, category: str) -> Count:
        return self.counts[category]

    def __setitem__(self, category: str, value: Count) -> None:
        if category not in CATEGORIES:
            raise KeyError(category)
        self.counts[category] = value

    def total(self) -> int:
        # EMPTY counts as zero here only; the stored value stays EMPTY.
        return sum(v for v in self.counts.values() if v is not EMPTY)

    def to_dict(self) -> Dict[str, Union[int, str]]:
        return {c: count_to_wire(self.counts[c]) for c in CATEGORIES}

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "CountSet":
        payload = payload if isinstance(payload, Mapping) else {}
        return cls({c: _normalize_leaf(payload.get(c)) for c in CATEGORIES})


@dataclass
class DerivedTotals:
    total_girls: int
    total_boys: int
    grand_total: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalGirls": self.total_girls,
            "totalBoys": self.total_boys,
            "grandTotal": self.grand_total,
        }


@dataclass
class CategoryBlock:
    """Girls and boys counts for one attendance type."""

    girls: CountSet = field(default_factory=CountSet)
    boys: CountSet = field(default_factory=CountSet)

    def gender(self, name: str) -> CountSet:
        if name not in GENDERS:
            raise KeyError(name)
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Dict[str, Union[int, str]]]:
        return {"girls": self.girls.to_dict(), "boys": self.boys.to_dict()}

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> "CategoryBlock":
        payload = payload if isinstance(payload, Mapping) else {}
        return cls(
            girls=CountSet.from_payload(payload.get("girls")),
            boys=CountSet.from_payload(payload.get("boys")),
        )


def calculate_totals(block: CategoryBlock) -> DerivedTotals:
    """Per-gender and grand totals for ``block``."""
    total_girls = block.girls.total()
    total_boys = block.boys.total()
    return DerivedTotals(total_girls, total_boys, total_girls + total_boys)


@dataclass
class AttendanceRecord:
    """The record being edited for one class on one date."""

    class_name: str
    date: date
    class_attendance: CategoryBlock = field(default_factory=CategoryBlock)
    mdm_attendance: CategoryBlock = field(default_factory=CategoryBlock)

    @classmethod
    def blank(cls, class_name: str, on: date) -> "AttendanceRecord":
        return cls(class_name=class_name, date=on)

    @classmethod
    def from_service(cls, class_name: str, on: date, data: Mapping[str, Any]) -> "AttendanceRecord":
        """Build a record from fetched service data.

        Only the two known blocks and their fixed leaves are read, so any
        null or missing value becomes :data:`EMPTY`. ``className`` and ``date``
        always come from the caller's selection, not from the payload.
        """
        return cls(
            class_name=class_name,
            date=on,
            class_attendance=CategoryBlock.from_payload(data.get("classAttendance")),
            mdm_attendance=CategoryBlock.from_payload(data.get("mdmAttendance")),
        )

    def block(self, name: str) -> CategoryBlock:
        if name == "classAttendance":
            return self.class_attendance
        if name == "mdmAttendance":
            return self.mdm_attendance
        raise KeyError(name)

    def get(self, ref: "FieldRef") -> Count:
        return self.block(ref.block).gender(ref.gender)[ref.category]

    def set(self, ref: "FieldRef", value: Count) -> None:
        self.block(ref.block).gender(ref.gender)[ref.category] = value

    def totals(self) -> Dict[str, DerivedTotals]:
        return {name: calculate_totals(self.block(name)) for name in BLOCKS}

    def attendance_data(self) -> Dict[str, Any]:
        return {name: self.block(name).to_dict() for name in BLOCKS}

    def to_payload(self) -> Dict[str, Any]:
        """Full upsert payload with every one of the 16 leaves present."""
        return {
            "className": self.class_name,
            "date": self.date.isoformat(),
            "attendanceData": self.attendance_data(),
        }


class FieldRef(NamedTuple):
    block: str
    category: str
    gender: str

    @property
    def id(self) -> str:
        return f"{self.block}-{self.category}-{self.gender}"


# Keyboard traversal order of the form's count fields.
FIELD_ORDER: Tuple[FieldRef, ...] = tuple(
    FieldRef(block, category, gender)
    for block in BLOCKS
    for category in CATEGORIES
    for gender in GENDERS
)

_FIELD_INDEX: Dict[str, int] = {ref.id: i for i, ref in enumerate(FIELD_ORDER)}


def field_index(field_id: str) -> int:
    """Position of ``field_id`` in :data:`FIELD_ORDER`; ``KeyError`` if unknown."""
    return _FIELD_INDEX[field_id]


@dataclass(frozen=True)
class AuthenticatedTeacher:
    name: str
    assigned_class: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AuthenticatedTeacher":
        return cls(name=str(payload.get("name", "")), assigned_class=str(payload["assignedClass"]))

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "assignedClass": self.assigned_class}


__all__ = [
    "AttendanceRecord",
    "AuthenticatedTeacher",
    "BLOCKS",
    "Blank",
    "CATEGORIES",
    "CategoryBlock",
    "Count",
    "CountSet",
    "DerivedTotals",
    "EMPTY",
    "FIELD_ORDER",
    "FieldRef",
    "GENDERS",
    "InvalidCount",
    "calculate_totals",
    "clamp_count",
    "count_to_wire",
    "field_index",
    "sanitize_count",
]
