"""Today's on-duty roster.

Busy status is never stored as a flag. An entry only records until when it is
busy, and :func:`status_of` compares that against the time of the read, so
an entry becomes available again without anything having to clear it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import List, Optional

from . import data_manager, log
from .constants import RosterStatus
from .errors import NotFoundError, ValidationError
from .ledger import align_to


@dataclass(frozen=True)
class RosterEntry:
    """One slot of the roster; ``position`` is the 1-based display order."""

    position: int
    staff_name: str
    busy_until: Optional[datetime] = None


def status_of(entry: RosterEntry, now: datetime) -> RosterStatus:
    """``busy`` while ``now`` is before ``entry.busy_until``, else ``available``."""
    if entry.busy_until is not None and align_to(now, entry.busy_until) < entry.busy_until:
        return RosterStatus.BUSY
    return RosterStatus.AVAILABLE


class Roster:
    """Ordered list of staff on duty for a single business day.

    Positions always run ``1..N`` without gaps: removing an entry moves every
    later entry up by one. Nothing here is persisted.
    """

    def __init__(
        self,
        max_size: int = data_manager.DEFAULT_ROSTER_SIZE,
        *,
        business_day: Optional[date] = None,
    ):
        if max_size <= 0:
            raise ValueError("Roster size must be greater than zero")
        self.max_size = max_size
        self.business_day = business_day
        self._entries: List[RosterEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[RosterEntry]:
        return list(self._entries)

    def entry_at(self, position: int) -> RosterEntry:
        """Return the entry at ``position``.

        Raises:
            NotFoundError: If no entry occupies that position.
        """
        if not 1 <= position <= len(self._entries):
            log.warning("Roster position %s is not occupied", position)
            raise NotFoundError(f"No roster entry at position {position}")
        return self._entries[position - 1]

    def add_to_roster(self, staff_name: str) -> RosterEntry:
        """Append ``staff_name`` at the next free position.

        Raises:
            ValidationError: If the name is blank, already on the roster, or
                the roster is full.
        """
        name = (staff_name or "").strip()
        if not name:
            raise ValidationError("Staff name is required")
        if any(entry.staff_name == name for entry in self._entries):
            log.warning("'%s' is already on the roster", name)
            raise ValidationError(f"'{name}' is already on the roster")
        if len(self._entries) >= self.max_size:
            log.warning("Roster is full (%d positions)", self.max_size)
            raise ValidationError(f"Roster is full ({self.max_size} positions)")

        entry = RosterEntry(position=len(self._entries) + 1, staff_name=name)
        self._entries.append(entry)
        log.info("Added '%s' to the roster at position %d", name, entry.position)
        return entry

    def remove_from_roster(self, position: int) -> RosterEntry:
        removed = self.entry_at(position)
        del self._entries[position - 1]
        self._renumber()
        log.info("Removed '%s' from roster position %d", removed.staff_name, position)
        return removed

    def reorder(self, position_a: int, position_b: int) -> None:
        """Swap the staff occupying two positions; busy times travel with them."""
        first = self.entry_at(position_a)
        second = self.entry_at(position_b)
        self._entries[position_a - 1] = replace(second, position=position_a)
        self._entries[position_b - 1] = replace(first, position=position_b)
        log.info("Swapped roster positions %d and %d", position_a, position_b)

    def set_busy(self, position: int, until: Optional[datetime]) -> RosterEntry:
        """Mark the entry busy until ``until``; ``None`` makes it available now."""
        entry = replace(self.entry_at(position), busy_until=until)
        self._entries[position - 1] = entry
        log.info("Roster position %d ('%s') busy until %s", position, entry.staff_name, until)
        return entry

    def clear_roster(self) -> None:
        self._entries.clear()
        log.info("Cleared the roster")

    def roll_over(self, today: date) -> bool:
        """Start a fresh roster when ``today`` is a new business day.

        Returns:
            bool: ``True`` if the roster was cleared.
        """
        if self.business_day == today:
            return False
        cleared = self.business_day is not None and bool(self._entries)
        if cleared:
            self.clear_roster()
        self.business_day = today
        return cleared

    def status_of(self, position: int, now: datetime) -> RosterStatus:
        return status_of(self.entry_at(position), now)

    def available(self, now: datetime) -> List[RosterEntry]:
        return [entry for entry in self._entries if status_of(entry, now) is RosterStatus.AVAILABLE]

    def serve_next(self, now: datetime, minutes: int) -> RosterEntry:
        """Assign the next customer to the first available entry by position.

        Raises:
            ValidationError: If ``minutes`` is not positive.
            NotFoundError: If every entry is busy or the roster is empty.
        """
        if minutes <= 0:
            raise ValidationError("Session length must be greater than zero")
        candidates = self.available(now)
        if not candidates:
            log.warning("No staff available to serve the next customer")
            raise NotFoundError("No staff available")
        return self.set_busy(candidates[0].position, now + timedelta(minutes=minutes))

    def _renumber(self) -> None:
        self._entries = [
            replace(entry, position=index)
            for index, entry in enumerate(self._entries, start=1)
        ]
