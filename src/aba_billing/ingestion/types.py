"""Type definitions for the time-log ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping


class MappingError(ValueError):
    """Raised when a column mapping cannot drive an import."""


class IngestionStrategy(str, Enum):
    """How raw rows become shift rows."""

    FINGERPRINT_SCANNER = "FINGERPRINT_SCANNER"
    EVENT_BASED = "EVENT_BASED"
    STANDARD = "STANDARD"


# Accepted spellings for each mapping field (camelCase from the UI, snake_case in Python)
_MAPPING_ALIASES: dict[str, tuple[str, ...]] = {
    "employee_name": ("employee_name", "employeeName"),
    "employee_external_id": ("employee_external_id", "employeeExternalId"),
    "work_date": ("work_date", "workDate"),
    "in_time": ("in_time", "inTime"),
    "out_time": ("out_time", "outTime"),
    "event_type": ("event_type", "eventType"),
    "minutes_worked": ("minutes_worked", "minutesWorked"),
    "hours_worked": ("hours_worked", "hoursWorked"),
}


def _column(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class ColumnMapping:
    """Which source column feeds each logical field."""

    work_date: str | None = None
    employee_name: str | None = None
    employee_external_id: str | None = None
    in_time: str | None = None
    out_time: str | None = None
    event_type: str | None = None
    minutes_worked: str | None = None
    hours_worked: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ColumnMapping:
        values: dict[str, str | None] = {}
        for name, aliases in _MAPPING_ALIASES.items():
            values[name] = next(
                (_column(data[alias]) for alias in aliases if alias in data),
                None,
            )
        return cls(**values)

    def to_dict(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in _MAPPING_ALIASES}

    @property
    def employee_column(self) -> str | None:
        return self.employee_name or self.employee_external_id

    @property
    def same_time_column(self) -> bool:
        return bool(self.in_time and self.out_time and self.in_time == self.out_time)

    @property
    def only_in_time(self) -> bool:
        return bool(self.in_time and not self.out_time)

    @property
    def separate_time_columns(self) -> bool:
        return bool(self.in_time and self.out_time and self.in_time != self.out_time)

    def validate(self) -> None:
        """Raise MappingError unless the mapping can produce shift rows."""
        if not self.work_date:
            raise MappingError("Work Date mapping is required")
        if not self.employee_column:
            raise MappingError("Either Employee Name or Employee External ID mapping is required")
        has_time_field = (
            self.minutes_worked
            or self.hours_worked
            or self.in_time
            or self.event_type
        )
        if not has_time_field:
            raise MappingError(
                "At least one time field must be mapped: Minutes Worked, Hours Worked, "
                "In Time (with or without Out Time), or Event Type for event-based files."
            )


@dataclass(frozen=True)
class TimeLogMapping:
    """Column mapping for the raw punch-log ingestion path."""

    employee_column: str
    timestamp_column: str | None = None
    date_column: str | None = None
    time_column: str | None = None
    event_type_column: str | None = None

    def validate(self) -> None:
        if not self.employee_column:
            raise MappingError("Employee column mapping is required")
        if not self.timestamp_column and not (self.date_column and self.time_column):
            raise MappingError("Either timestamp column or both date and time columns are required")


@dataclass
class RawPunchRow:
    """One source row reduced to the fields the reconciler needs."""

    index: int
    row: dict[str, Any]
    employee_key: str
    employee_name_raw: str | None
    employee_external_id_raw: str | None
    work_date: date
    time_value: Any = None
    event_text: str = ""

    @property
    def is_clock_in(self) -> bool:
        return "in" in self.event_text or self.event_text in ("clock-in", "clockin")

    @property
    def is_clock_out(self) -> bool:
        return "out" in self.event_text or self.event_text in ("clock-out", "clockout")


@dataclass
class ShiftRow:
    """A reconciled IN/OUT shift ready for persistence."""

    row_index: int
    employee_name_raw: str | None
    employee_external_id_raw: str | None
    work_date: date
    in_time: datetime | None = None
    out_time: datetime | None = None
    minutes_worked: int | None = None
    hours_worked: Decimal | None = None
    raw_json: dict[str, Any] = field(default_factory=dict)

    @property
    def is_incomplete(self) -> bool:
        return bool(self.raw_json.get("isIncomplete", self.out_time is None))


@dataclass
class ReconcileResult:
    """Output of one reconciliation pass."""

    strategy: IngestionStrategy
    rows: list[ShiftRow]
    total_rows: int
    skipped_indices: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return len(self.rows)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped_indices)
