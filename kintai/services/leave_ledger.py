"""Leave balance ledger with hold / finalize / release reservations.

``available_units`` is stored net of open holds, so the three balance
columns always sum to everything granted minus what has lapsed::

    hold      available -= u   held += u
    finalize  held -= u        consumed += u
    release   held -= u        available += u
    lapse     available -= u   (grant.lapsed_units += u)

Every write goes through a row lock on the ledger entry plus a guarded
``UPDATE ... WHERE`` so that a stale read can never overdraw the balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kintai.errors import (
    HoldAlreadyFinalized,
    HoldAlreadyReleased,
    HoldConflict,
    InsufficientBalance,
    InvalidInterval,
    InvalidUnits,
    NoActiveHold,
)
from kintai.models import LeaveGrant, LeaveHold, LeaveHoldStatus, LeaveLedgerEntry, LeaveRequest, LeaveRequestStatus
from kintai.settings import get_settings


@dataclass(frozen=True)
class LeaveBalance:
    user_id: str
    leave_type_id: str
    available_units: int
    held_units: int
    consumed_units: int

    @property
    def total_units(self) -> int:
        return self.available_units + self.held_units + self.consumed_units


def _validate_units(units: int) -> int:
    if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
        raise InvalidUnits(units=units)
    return units


def _lock_entry(db: Session, *, user_id: str, leave_type_id: str) -> LeaveLedgerEntry | None:
    return db.scalar(
        select(LeaveLedgerEntry)
        .where(
            LeaveLedgerEntry.user_id == user_id,
            LeaveLedgerEntry.leave_type_id == leave_type_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _lock_hold(db: Session, request_id: int) -> LeaveHold | None:
    return db.scalar(
        select(LeaveHold)
        .where(LeaveHold.request_id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def _to_balance(entry: LeaveLedgerEntry) -> LeaveBalance:
    return LeaveBalance(
        user_id=entry.user_id,
        leave_type_id=entry.leave_type_id,
        available_units=entry.available_units,
        held_units=entry.held_units,
        consumed_units=entry.consumed_units,
    )


def get_balance(db: Session, *, user_id: str, leave_type_id: str) -> LeaveBalance:
    entry = db.scalar(
        select(LeaveLedgerEntry)
        .where(
            LeaveLedgerEntry.user_id == user_id,
            LeaveLedgerEntry.leave_type_id == leave_type_id,
        )
        .execution_options(populate_existing=True)
    )
    if entry is None:
        return LeaveBalance(
            user_id=user_id,
            leave_type_id=leave_type_id,
            available_units=0,
            held_units=0,
            consumed_units=0,
        )
    return _to_balance(entry)


def list_balances(db: Session, *, user_id: str) -> list[LeaveBalance]:
    entries = db.scalars(
        select(LeaveLedgerEntry)
        .where(LeaveLedgerEntry.user_id == user_id)
        .order_by(LeaveLedgerEntry.leave_type_id.asc())
    ).all()
    return [_to_balance(entry) for entry in entries]


def _same_hold(existing: LeaveHold, *, user_id: str, leave_type_id: str, units: int) -> bool:
    return (
        existing.user_id == user_id
        and existing.leave_type_id == leave_type_id
        and existing.units_held == units
    )


def _replayed_hold(db: Session, existing: LeaveHold, *, user_id: str, leave_type_id: str, units: int) -> LeaveHold:
    same = existing.status == LeaveHoldStatus.HELD and _same_hold(
        existing,
        user_id=user_id,
        leave_type_id=leave_type_id,
        units=units,
    )
    conflict = HoldConflict(
        request_id=existing.request_id,
        status=existing.status.value,
        units_held=existing.units_held,
        requested=units,
    )
    # Nothing to write; drop the row lock before answering.
    db.rollback()
    if same:
        return existing
    raise conflict


def hold(
    db: Session,
    *,
    request_id: int,
    user_id: str,
    leave_type_id: str,
    units: int,
    actor_id: str | None = None,
) -> LeaveHold:
    units = _validate_units(units)

    existing = _lock_hold(db, request_id)
    if existing is not None:
        return _replayed_hold(db, existing, user_id=user_id, leave_type_id=leave_type_id, units=units)

    entry = _lock_entry(db, user_id=user_id, leave_type_id=leave_type_id)
    if entry is None:
        db.rollback()
        raise InsufficientBalance(requested=units, available=0, leave_type_id=leave_type_id)

    result = db.execute(
        update(LeaveLedgerEntry)
        .where(
            LeaveLedgerEntry.id == entry.id,
            LeaveLedgerEntry.available_units >= units,
        )
        .values(
            available_units=LeaveLedgerEntry.available_units - units,
            held_units=LeaveLedgerEntry.held_units + units,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        current = get_balance(db, user_id=user_id, leave_type_id=leave_type_id)
        raise InsufficientBalance(
            requested=units,
            available=current.available_units,
            leave_type_id=leave_type_id,
        )

    reservation = LeaveHold(
        request_id=request_id,
        user_id=user_id,
        leave_type_id=leave_type_id,
        units_held=units,
        status=LeaveHoldStatus.HELD,
        created_by=actor_id,
    )
    db.add(reservation)
    try:
        db.commit()
    except IntegrityError:
        # Same request raced us to the unique request_id.
        db.rollback()
        existing = _lock_hold(db, request_id)
        if existing is None:
            raise
        return _replayed_hold(db, existing, user_id=user_id, leave_type_id=leave_type_id, units=units)

    db.refresh(reservation)
    return reservation


def _resolve_hold(
    db: Session,
    *,
    request_id: int,
    target: LeaveHoldStatus,
    actor_id: str | None,
) -> LeaveHold:
    reservation = _lock_hold(db, request_id)
    if reservation is None:
        db.rollback()
        raise NoActiveHold(request_id=request_id)
    current = reservation.status
    if current != LeaveHoldStatus.HELD:
        db.rollback()
        if current == target:
            return reservation
        if current == LeaveHoldStatus.RELEASED:
            raise HoldAlreadyReleased(request_id=request_id)
        raise HoldAlreadyFinalized(request_id=request_id)

    claimed = db.execute(
        update(LeaveHold)
        .where(LeaveHold.id == reservation.id, LeaveHold.status == LeaveHoldStatus.HELD)
        .values(status=target, resolved_by=actor_id, resolved_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        # Resolved concurrently; re-evaluate against the committed state.
        db.rollback()
        return _resolve_hold(db, request_id=request_id, target=target, actor_id=actor_id)

    _lock_entry(db, user_id=reservation.user_id, leave_type_id=reservation.leave_type_id)
    units = reservation.units_held
    if target == LeaveHoldStatus.FINALIZED:
        values = {
            "held_units": LeaveLedgerEntry.held_units - units,
            "consumed_units": LeaveLedgerEntry.consumed_units + units,
        }
    else:
        values = {
            "held_units": LeaveLedgerEntry.held_units - units,
            "available_units": LeaveLedgerEntry.available_units + units,
        }
    db.execute(
        update(LeaveLedgerEntry)
        .where(
            LeaveLedgerEntry.user_id == reservation.user_id,
            LeaveLedgerEntry.leave_type_id == reservation.leave_type_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(reservation)
    return reservation


def finalize(db: Session, *, request_id: int, actor_id: str | None = None) -> LeaveHold:
    return _resolve_hold(db, request_id=request_id, target=LeaveHoldStatus.FINALIZED, actor_id=actor_id)


def release(db: Session, *, request_id: int, actor_id: str | None = None) -> LeaveHold:
    return _resolve_hold(db, request_id=request_id, target=LeaveHoldStatus.RELEASED, actor_id=actor_id)


def _get_or_create_entry(db: Session, *, user_id: str, leave_type_id: str) -> LeaveLedgerEntry:
    entry = _lock_entry(db, user_id=user_id, leave_type_id=leave_type_id)
    if entry is not None:
        return entry
    db.add(
        LeaveLedgerEntry(
            user_id=user_id,
            leave_type_id=leave_type_id,
            available_units=0,
            held_units=0,
            consumed_units=0,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        # Created concurrently by another grant.
        db.rollback()
    entry = _lock_entry(db, user_id=user_id, leave_type_id=leave_type_id)
    if entry is None:
        raise RuntimeError(f"Ledger entry for {user_id}/{leave_type_id} could not be created")
    return entry


def grant(
    db: Session,
    *,
    user_id: str,
    leave_type_id: str,
    units: int,
    actor_id: str,
    granted_on: date | None = None,
    expires_on: date | None = None,
    note: str | None = None,
) -> LeaveGrant:
    """Credit ``units`` to the free balance and record the grant."""
    units = _validate_units(units)
    effective_on = granted_on or datetime.now(timezone.utc).date()
    if expires_on is not None and expires_on < effective_on:
        raise InvalidInterval(
            "expires_on precedes granted_on.",
            granted_on=effective_on.isoformat(),
            expires_on=expires_on.isoformat(),
        )
    entry = _get_or_create_entry(db, user_id=user_id, leave_type_id=leave_type_id)
    db.execute(
        update(LeaveLedgerEntry)
        .where(LeaveLedgerEntry.id == entry.id)
        .values(available_units=LeaveLedgerEntry.available_units + units)
        .execution_options(synchronize_session=False)
    )
    credit = LeaveGrant(
        user_id=user_id,
        leave_type_id=leave_type_id,
        units=units,
        granted_on=effective_on,
        expires_on=expires_on,
        note=note,
        created_by=actor_id,
    )
    db.add(credit)
    db.commit()
    db.refresh(credit)
    return credit


@dataclass(frozen=True)
class GrantLapse:
    grant_id: int
    user_id: str
    leave_type_id: str
    expires_on: date
    lapsed_units: int


def _expired_remainders(entry: LeaveLedgerEntry, grants: Sequence[LeaveGrant], as_of: date) -> list[tuple[LeaveGrant, int]]:
    """Pair each expired grant with the units it still has free.

    Held and consumed units are attributed to grants oldest first, never to
    units that already lapsed. Whatever an expired grant has left after that
    is free capacity, and is covered by ``available_units``.
    """
    in_use = entry.held_units + entry.consumed_units
    remainders: list[tuple[LeaveGrant, int]] = []
    for credit in grants:
        usable = credit.units - credit.lapsed_units
        used = min(usable, in_use)
        in_use -= used
        if credit.expires_on is not None and credit.expires_on < as_of and usable > used:
            remainders.append((credit, usable - used))
    return remainders


def _lapse_entry(db: Session, *, user_id: str, leave_type_id: str, as_of: date) -> list[GrantLapse]:
    entry = _lock_entry(db, user_id=user_id, leave_type_id=leave_type_id)
    if entry is None:
        db.rollback()
        return []

    grants = db.scalars(
        select(LeaveGrant)
        .where(LeaveGrant.user_id == user_id, LeaveGrant.leave_type_id == leave_type_id)
        .order_by(LeaveGrant.granted_on.asc(), LeaveGrant.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    remainders = _expired_remainders(entry, grants, as_of)
    total = sum(units for _credit, units in remainders)
    if total == 0:
        db.rollback()
        return []

    debited = db.execute(
        update(LeaveLedgerEntry)
        .where(LeaveLedgerEntry.id == entry.id, LeaveLedgerEntry.available_units >= total)
        .values(available_units=LeaveLedgerEntry.available_units - total)
        .execution_options(synchronize_session=False)
    )
    if debited.rowcount != 1:
        db.rollback()
        current = get_balance(db, user_id=user_id, leave_type_id=leave_type_id)
        raise InsufficientBalance(
            "Free balance does not cover the expired grants.",
            requested=total,
            available=current.available_units,
            leave_type_id=leave_type_id,
        )

    lapsed_at = datetime.now(timezone.utc)
    lapses: list[GrantLapse] = []
    for credit, units in remainders:
        db.execute(
            update(LeaveGrant)
            .where(LeaveGrant.id == credit.id)
            .values(lapsed_units=LeaveGrant.lapsed_units + units, lapsed_at=lapsed_at)
            .execution_options(synchronize_session=False)
        )
        lapses.append(
            GrantLapse(
                grant_id=credit.id,
                user_id=user_id,
                leave_type_id=leave_type_id,
                expires_on=credit.expires_on,
                lapsed_units=units,
            )
        )
    db.commit()
    return lapses


def expire_grants(db: Session, *, as_of: date | None = None, user_id: str | None = None) -> list[GrantLapse]:
    """Remove the free units of grants whose ``expires_on`` is before ``as_of``.

    A grant is usable through its ``expires_on`` day. Units an expired grant
    lent to open holds stay held; if such a hold is released later, the next
    run lapses them too. Running twice for the same day changes nothing.
    """
    reference = as_of or datetime.now(timezone.utc).date()
    stmt = (
        select(LeaveGrant.user_id, LeaveGrant.leave_type_id)
        .where(
            LeaveGrant.expires_on.is_not(None),
            LeaveGrant.expires_on < reference,
            LeaveGrant.lapsed_units < LeaveGrant.units,
        )
        .distinct()
        .order_by(LeaveGrant.user_id.asc(), LeaveGrant.leave_type_id.asc())
    )
    if user_id is not None:
        stmt = stmt.where(LeaveGrant.user_id == user_id)
    pairs = db.execute(stmt).all()

    lapses: list[GrantLapse] = []
    for pair_user_id, leave_type_id in pairs:
        lapses.extend(_lapse_entry(db, user_id=pair_user_id, leave_type_id=leave_type_id, as_of=reference))
    return lapses


def list_stale_holds(
    db: Session,
    *,
    older_than: timedelta | None = None,
    now: datetime | None = None,
) -> list[LeaveHold]:
    """Holds still open although their request is gone or already decided.

    Only holds created before ``now - older_than`` are returned. Nothing is
    released here; cleanup is left to the operator.
    """
    reference = now or datetime.now(timezone.utc)
    age = older_than if older_than is not None else timedelta(minutes=get_settings().stale_hold_minutes)
    cutoff = reference - age

    stmt = (
        select(LeaveHold)
        .outerjoin(LeaveRequest, LeaveRequest.id == LeaveHold.request_id)
        .where(
            LeaveHold.status == LeaveHoldStatus.HELD,
            LeaveHold.created_at < cutoff,
            or_(
                LeaveRequest.id.is_(None),
                LeaveRequest.deleted_at.is_not(None),
                LeaveRequest.status != LeaveRequestStatus.PENDING,
            ),
        )
        .order_by(LeaveHold.created_at.asc(), LeaveHold.id.asc())
    )
    return list(db.scalars(stmt).all())
