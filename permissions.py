"""Who may change an assessment record, and how its lock state is labelled.

Everything here is a pure function of a record (or a group of records) and
an :class:`Actor`. Nothing raises: callers turn a ``False`` into a rejected
operation.

A record is a *Draft* while ``exported_to_admin`` is false and *Locked*
afterwards. Admins may always edit or delete; trainers only their own drafts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from models import ROLE_ADMIN, ROLE_TRAINER

DRAFT = 'Draft'
LOCKED = 'Locked'

OCCASION_DRAFT = 'Draft'
OCCASION_PARTIALLY_LOCKED = 'Partially-Locked'
OCCASION_FULLY_LOCKED = 'Fully-Locked'


@dataclass(frozen=True)
class Actor:
    role: str
    id: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_trainer(self) -> bool:
        return self.role == ROLE_TRAINER


def is_locked(record) -> bool:
    return bool(record.exported_to_admin)


def can_edit(record, actor: Actor) -> bool:
    if actor.is_admin:
        return True
    if actor.is_trainer:
        return actor.id == record.trainer_id and not is_locked(record)
    return False


def can_delete(record, actor: Actor) -> bool:
    # Same rule as editing: a trainer may delete exactly what they may edit.
    return can_edit(record, actor)


def can_export(record, actor: Actor) -> bool:
    """Only the owning trainer hands a draft over to admin."""
    return actor.is_trainer and actor.id == record.trainer_id and not is_locked(record)


def can_unlock(record, actor: Actor) -> bool:
    return actor.is_admin and is_locked(record)


def can_review(record, actor: Actor) -> bool:
    return actor.is_admin and is_locked(record)


def status_of(record) -> str:
    return LOCKED if is_locked(record) else DRAFT


def status_message(record) -> str:
    if is_locked(record):
        if record.reviewed_by_admin:
            return 'Reviewed by admin'
        return 'Exported to admin (locked)'
    return 'Draft (editable)'


def restriction_message(record) -> str:
    """Explain why a trainer can no longer change ``record``; empty for drafts."""
    if is_locked(record) and record.exported_at is not None:
        return (f"This assessment was exported to admin on {record.exported_at:%Y-%m-%d %H:%M} "
                "and can no longer be edited. Contact your administrator if changes are needed.")
    return ''


def occasion_key(record) -> Tuple:
    """Key shared by all records of one assessment session in one group."""
    return (record.assessment_name, record.date, record.assessment_type, record.group_id)


@dataclass(frozen=True)
class OccasionStatus:
    """Lock summary of the records making up one assessment occasion.

    The tri-state :attr:`label` is derived for display only; it is never
    stored.
    """

    draft_count: int
    exported_count: int

    @property
    def all_exported(self) -> bool:
        return self.draft_count == 0

    @property
    def label(self) -> str:
        if self.draft_count == 0:
            return OCCASION_FULLY_LOCKED
        if self.exported_count == 0:
            return OCCASION_DRAFT
        return OCCASION_PARTIALLY_LOCKED


def occasion_status(records: Iterable) -> OccasionStatus:
    records = list(records)
    exported = sum(1 for record in records if is_locked(record))
    return OccasionStatus(draft_count=len(records) - exported, exported_count=exported)


def is_orphaned_draft(record, peers: Iterable) -> bool:
    """True when ``record`` is a draft and every other record of its
    occasion has already been exported."""
    if is_locked(record):
        return False
    key = occasion_key(record)
    return all(is_locked(peer) for peer in peers if peer.id != record.id and occasion_key(peer) == key)


def visible_records(records: Iterable, actor: Actor) -> List:
    """Records ``actor`` may see in reports.

    Admins only look at what trainers have handed over; trainers see their
    own records in either state.
    """
    if actor.is_admin:
        return [record for record in records if is_locked(record)]
    if actor.is_trainer:
        return [record for record in records if record.trainer_id == actor.id]
    return []
