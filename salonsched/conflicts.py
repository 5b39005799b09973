"""Conflict detection and working-hours validation for a professional's calendar.

Intervals are half-open: ``[start, end)``. Two intervals overlap iff each one
starts before the other ends, so back-to-back appointments never conflict.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterator

from .errors import OutsideWorkingHours, SchedulingConflict
from .models import SLOT_GRID_MINUTES, Appointment, Schedule, TimeBlock

ONE_WEEK = timedelta(weeks=1)


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def block_occurrences(block: TimeBlock, start: datetime, end: datetime) -> Iterator[tuple[datetime, datetime]]:
    """Yield the occurrences of ``block`` that overlap ``[start, end)``.

    A recurring block repeats every week from its first occurrence onwards.
    """
    if not block.is_recurring:
        if overlaps(block.starts_at, block.ends_at, start, end):
            yield block.starts_at, block.ends_at
        return

    length = block.ends_at - block.starts_at
    week = max(0, (start - block.ends_at) // ONE_WEEK)
    while True:
        occurrence_start = block.starts_at + week * ONE_WEEK
        if occurrence_start >= end:
            return
        occurrence_end = occurrence_start + length
        if overlaps(occurrence_start, occurrence_end, start, end):
            yield occurrence_start, occurrence_end
        week += 1


def occupied_cells(start: datetime, end: datetime, grid_minutes: int = SLOT_GRID_MINUTES) -> list[datetime]:
    """Grid cells touched by ``[start, end)``; used as the booking uniqueness keys."""
    cell = start.replace(second=0, microsecond=0)
    cell -= timedelta(minutes=cell.minute % grid_minutes)
    step = timedelta(minutes=grid_minutes)
    cells = []
    while cell < end:
        cells.append(cell)
        cell += step
    return cells


@dataclass
class Conflicts:
    appointments: list[Appointment] = field(default_factory=list)
    blocks: list[TimeBlock] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.appointments or self.blocks)

    def raise_if_any(self) -> None:
        if not self:
            return
        if self.appointments:
            message = "Professional has a conflicting appointment"
        else:
            message = "Professional is unavailable at this time"
        raise SchedulingConflict(
            message,
            appointment_ids=[appointment.appointment_id for appointment in self.appointments],
            block_ids=[block.block_id for block in self.blocks],
        )


def find_conflicts(store, staff_id: int, start: datetime, end: datetime, exclude_id: int | None = None) -> Conflicts:
    """Collect the occupying appointments and time blocks overlapping the interval."""
    return Conflicts(
        appointments=store.find_conflicts(staff_id, start, end, exclude_id=exclude_id),
        blocks=store.find_blocks(staff_id, start, end),
    )


def check_working_hours(schedule: Schedule | None, start: datetime, end: datetime) -> None:
    if schedule is None or not schedule.is_active:
        raise OutsideWorkingHours("Professional does not work on this day")
    if end.date() != start.date():
        raise OutsideWorkingHours("Appointment must start and end on the same day")
    if start.time() < schedule.start_time or end.time() > schedule.end_time:
        raise OutsideWorkingHours(
            "Appointment is outside working hours "
            f"({schedule.start_time.strftime('%H:%M')}-{schedule.end_time.strftime('%H:%M')})"
        )
    if schedule.has_break and overlaps(start.time(), end.time(), schedule.break_start, schedule.break_end):
        raise OutsideWorkingHours(
            "Appointment overlaps the professional's break "
            f"({schedule.break_start.strftime('%H:%M')}-{schedule.break_end.strftime('%H:%M')})"
        )
