"""Token ledger with per-attempt reservations."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from genrelay.orchestrator.errors import InsufficientBalanceError, StoreError
from genrelay.orchestrator.models import (
    LedgerEntryView,
    LedgerReason,
    ReservationState,
    ReservationView,
)
from genrelay.storage.common import optional_utc_aware, to_db_datetime, to_utc_aware, utc_now
from genrelay.storage.sqlmodel_models import LedgerEntry, LedgerReservation, TokenAccount

logger = logging.getLogger(__name__)


class TokenLedger:
    """Owner balances plus an append-only movement log.

    ``reserve`` takes tokens up front for one task attempt; the reservation is
    later either committed (spent) or refunded, never both.
    """

    def __init__(self, *, engine: Engine, initial_balance: int = 10) -> None:
        self.engine = engine
        self.initial_balance = initial_balance
        self._owner_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def ensure_account(self, owner_id: str) -> bool:
        """Create the owner's account with the signup bonus. Returns True when created."""

        with self._owner_lock(owner_id):
            now = to_db_datetime(utc_now())
            try:
                with Session(self.engine) as session:
                    existing = session.exec(
                        select(TokenAccount).where(TokenAccount.owner_id == owner_id),
                    ).one_or_none()
                    if existing is not None:
                        return False
                    session.add(
                        TokenAccount(
                            owner_id=owner_id,
                            balance=self.initial_balance,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                    # The bonus entry references the account row.
                    session.flush()
                    if self.initial_balance > 0:
                        session.add(
                            LedgerEntry(
                                owner_id=owner_id,
                                amount=self.initial_balance,
                                reason_code=LedgerReason.SIGNUP_BONUS.value,
                                balance_before=0,
                                balance_after=self.initial_balance,
                                created_at=now,
                            ),
                        )
                    session.commit()
            except IntegrityError as error:
                if self._account_exists(owner_id):
                    return False
                raise StoreError(f"Failed to create account for {owner_id}: {error}") from error
            except SQLAlchemyError as error:
                raise StoreError(f"Failed to create account for {owner_id}: {error}") from error
        logger.info("Created token account owner=%s balance=%d", owner_id, self.initial_balance)
        return True

    def _account_exists(self, owner_id: str) -> bool:
        with Session(self.engine) as session:
            return (
                session.exec(
                    select(TokenAccount.owner_id).where(TokenAccount.owner_id == owner_id),
                ).one_or_none()
                is not None
            )

    def balance(self, owner_id: str) -> int:
        """Current balance; 0 for unknown owners."""

        with Session(self.engine) as session:
            account = session.exec(
                select(TokenAccount).where(TokenAccount.owner_id == owner_id),
            ).one_or_none()
            return account.balance if account is not None else 0

    def reserve(
        self,
        *,
        owner_id: str,
        amount: int,
        task_id: str,
        attempt_no: int,
    ) -> ReservationView:
        """Atomically take ``amount`` tokens for one task attempt.

        Re-reserving the same ``(task_id, attempt_no)`` returns the existing
        reservation without charging twice.
        """

        if amount < 0:
            raise ValueError(f"Reservation amount must be >= 0, got {amount}")
        with self._owner_lock(owner_id):
            try:
                with Session(self.engine) as session:
                    existing = session.exec(
                        select(LedgerReservation).where(
                            LedgerReservation.task_id == task_id,
                            LedgerReservation.attempt_no == attempt_no,
                        ),
                    ).one_or_none()
                    if existing is not None:
                        return _to_reservation_view(existing)

                    account = session.exec(
                        select(TokenAccount).where(TokenAccount.owner_id == owner_id),
                    ).one_or_none()
                    available = account.balance if account is not None else 0
                    if account is None:
                        raise InsufficientBalanceError(owner_id, amount, available)

                    now = to_db_datetime(utc_now())
                    result = session.exec(
                        sa_update(TokenAccount)
                        .where(
                            col(TokenAccount.owner_id) == owner_id,
                            col(TokenAccount.balance) >= amount,
                        )
                        .values(balance=col(TokenAccount.balance) - amount, updated_at=now),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        raise InsufficientBalanceError(owner_id, amount, available)

                    session.add(
                        LedgerEntry(
                            owner_id=owner_id,
                            amount=-amount,
                            reason_code=LedgerReason.RESERVATION.value,
                            balance_before=available,
                            balance_after=available - amount,
                            task_id=task_id,
                            attempt_no=attempt_no,
                            created_at=now,
                        ),
                    )
                    reservation = LedgerReservation(
                        owner_id=owner_id,
                        task_id=task_id,
                        attempt_no=attempt_no,
                        amount=amount,
                        state=ReservationState.RESERVED.value,
                        created_at=now,
                    )
                    session.add(reservation)
                    session.commit()
                    session.refresh(reservation)
                    view = _to_reservation_view(reservation)
            except SQLAlchemyError as error:
                raise StoreError(f"Failed to reserve tokens for {task_id}: {error}") from error
        logger.info(
            "Reserved %d tokens owner=%s task=%s attempt=%d",
            amount,
            owner_id,
            task_id,
            attempt_no,
        )
        return view

    def commit(self, *, task_id: str, attempt_no: int) -> bool:
        """Mark the reservation spent. No-op when missing or already settled."""

        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(LedgerReservation)
                    .where(
                        col(LedgerReservation.task_id) == task_id,
                        col(LedgerReservation.attempt_no) == attempt_no,
                        col(LedgerReservation.state) == ReservationState.RESERVED.value,
                    )
                    .values(
                        state=ReservationState.COMMITTED.value,
                        settled_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.commit()
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to commit reservation for {task_id}: {error}") from error
        logger.info("Committed reservation task=%s attempt=%d", task_id, attempt_no)
        return True

    def refund(
        self,
        *,
        task_id: str,
        attempt_no: int,
        reason: str = "",
    ) -> LedgerEntryView | None:
        """Return exactly the reserved amount. No-op when missing or already settled."""

        try:
            with Session(self.engine) as session:
                reservation = session.exec(
                    select(LedgerReservation).where(
                        LedgerReservation.task_id == task_id,
                        LedgerReservation.attempt_no == attempt_no,
                    ),
                ).one_or_none()
                if reservation is None or reservation.state != ReservationState.RESERVED.value:
                    return None
                owner_id = reservation.owner_id
                amount = reservation.amount

                now = to_db_datetime(utc_now())
                transition = session.exec(
                    sa_update(LedgerReservation)
                    .where(
                        col(LedgerReservation.reservation_id) == reservation.reservation_id,
                        col(LedgerReservation.state) == ReservationState.RESERVED.value,
                    )
                    .values(state=ReservationState.REFUNDED.value, settled_at=now),
                )
                if transition.rowcount != 1:
                    session.rollback()
                    return None

                account = session.exec(
                    select(TokenAccount).where(TokenAccount.owner_id == owner_id),
                ).one()
                balance_before = account.balance
                session.exec(
                    sa_update(TokenAccount)
                    .where(col(TokenAccount.owner_id) == owner_id)
                    .values(balance=col(TokenAccount.balance) + amount, updated_at=now),
                )
                entry = LedgerEntry(
                    owner_id=owner_id,
                    amount=amount,
                    reason_code=LedgerReason.REFUND.value,
                    balance_before=balance_before,
                    balance_after=balance_before + amount,
                    task_id=task_id,
                    attempt_no=attempt_no,
                    details_json=json.dumps({"reason": reason}, ensure_ascii=False)
                    if reason
                    else None,
                    created_at=now,
                )
                session.add(entry)
                session.commit()
                session.refresh(entry)
                view = _to_entry_view(entry)
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to refund reservation for {task_id}: {error}") from error
        logger.info(
            "Refunded %d tokens owner=%s task=%s attempt=%d reason=%s",
            amount,
            owner_id,
            task_id,
            attempt_no,
            reason or "-",
        )
        return view

    def credit(
        self,
        *,
        owner_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.CREDIT,
    ) -> LedgerEntryView:
        """Add tokens, creating the account if needed."""

        if amount <= 0:
            raise ValueError(f"Credit amount must be > 0, got {amount}")
        self.ensure_account(owner_id)
        with self._owner_lock(owner_id):
            try:
                with Session(self.engine) as session:
                    account = session.exec(
                        select(TokenAccount).where(TokenAccount.owner_id == owner_id),
                    ).one()
                    balance_before = account.balance
                    now = to_db_datetime(utc_now())
                    session.exec(
                        sa_update(TokenAccount)
                        .where(col(TokenAccount.owner_id) == owner_id)
                        .values(balance=col(TokenAccount.balance) + amount, updated_at=now),
                    )
                    entry = LedgerEntry(
                        owner_id=owner_id,
                        amount=amount,
                        reason_code=reason.value,
                        balance_before=balance_before,
                        balance_after=balance_before + amount,
                        created_at=now,
                    )
                    session.add(entry)
                    session.commit()
                    session.refresh(entry)
                    return _to_entry_view(entry)
            except SQLAlchemyError as error:
                raise StoreError(f"Failed to credit {owner_id}: {error}") from error

    def history(self, owner_id: str, *, limit: int = 50) -> list[LedgerEntryView]:
        """Most recent ledger movements first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.owner_id == owner_id)
                .order_by(col(LedgerEntry.entry_id).desc())
                .limit(limit),
            ).all()
        return [_to_entry_view(row) for row in rows]

    def get_reservation(self, *, task_id: str, attempt_no: int) -> ReservationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerReservation).where(
                    LedgerReservation.task_id == task_id,
                    LedgerReservation.attempt_no == attempt_no,
                ),
            ).one_or_none()
            return _to_reservation_view(row) if row is not None else None

    def reservations_for_task(self, task_id: str) -> list[ReservationView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerReservation)
                .where(LedgerReservation.task_id == task_id)
                .order_by(col(LedgerReservation.attempt_no).asc()),
            ).all()
        return [_to_reservation_view(row) for row in rows]

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._owner_locks[owner_id]


def _to_entry_view(row: LedgerEntry) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.entry_id or 0,
        owner_id=row.owner_id,
        amount=row.amount,
        reason_code=LedgerReason(row.reason_code),
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        task_id=row.task_id,
        attempt_no=row.attempt_no,
        created_at=to_utc_aware(row.created_at),
    )


def _to_reservation_view(row: LedgerReservation) -> ReservationView:
    return ReservationView(
        reservation_id=row.reservation_id or 0,
        owner_id=row.owner_id,
        task_id=row.task_id,
        attempt_no=row.attempt_no,
        amount=row.amount,
        state=ReservationState(row.state),
        created_at=to_utc_aware(row.created_at),
        settled_at=optional_utc_aware(row.settled_at),
    )
