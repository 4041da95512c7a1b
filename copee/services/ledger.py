from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from copee.exceptions import AccountNotFound, InsufficientFunds, InvalidAmount
from copee.models import LedgerEntry, User

logger = logging.getLogger(__name__)

SPENDING_RANGES = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "quarter": timedelta(days=91),
    "year": timedelta(days=365),
}


@dataclass(frozen=True)
class Balance:
    user_id: uuid.UUID
    balance: int
    entry_id: uuid.UUID | None = None


class Ledger:
    """
    선불 잔액 원장.

    잔액 변경과 거래 내역 추가는 하나의 DB 트랜잭션에서 함께 커밋됩니다.
    잔액은 `balance = balance ± amount` 조건부 UPDATE로만 바꾸기 때문에
    동시에 실행되는 두 차감이 같은 (오래된) 잔액을 보고 둘 다 성공할 수 없습니다.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @staticmethod
    def _validate_amount(amount: Any) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount)
        return amount

    def open_account(self, user_id: uuid.UUID, initial_balance: int = 0) -> Balance:
        """
        초기 잔액을 INITIAL_BALANCE 내역으로 기록합니다. 잔액이 0이 아닌 계정에는 쓸 수 없습니다.
        """
        if initial_balance < 0:
            raise InvalidAmount(initial_balance)

        with self.session_factory() as session:
            with session.begin():
                user = session.get(User, user_id)
                if not user:
                    raise AccountNotFound(user_id)
                if initial_balance == 0:
                    return Balance(user_id=user_id, balance=user.balance)

                result = session.execute(
                    update(User)
                    .where(User.id == user_id, User.balance == 0)
                    .values(balance=initial_balance)
                )
                if result.rowcount != 1:
                    raise ValueError(f"이미 잔액이 있는 계정입니다: {user_id}")
                entry = self._append(session, user_id, initial_balance, "INITIAL_BALANCE", None, "Initial balance")
                return Balance(user_id=user_id, balance=initial_balance, entry_id=entry.id)

    def credit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reference: str | None = None,
        description: str | None = None,
    ) -> Balance:
        amount = self._validate_amount(amount)

        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(balance=User.balance + amount)
                )
                if result.rowcount != 1:
                    raise AccountNotFound(user_id)
                entry = self._append(session, user_id, amount, "CREDIT", reference, description)
                balance = self._read_balance(session, user_id)

        logger.info(f"[LEDGER] CREDIT user={user_id} amount={amount} balance={balance} ref={reference}")
        return Balance(user_id=user_id, balance=balance, entry_id=entry.id)

    def debit(
        self,
        user_id: uuid.UUID,
        amount: int,
        reference: str | None = None,
        description: str | None = None,
    ) -> Balance:
        amount = self._validate_amount(amount)

        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(User)
                    .where(User.id == user_id, User.balance >= amount)
                    .values(balance=User.balance - amount)
                )
                if result.rowcount != 1:
                    current = session.scalar(select(User.balance).where(User.id == user_id))
                    if current is None:
                        raise AccountNotFound(user_id)
                    raise InsufficientFunds(user_id, amount, current)
                entry = self._append(session, user_id, -amount, "DEBIT", reference, description)
                balance = self._read_balance(session, user_id)

        logger.info(f"[LEDGER] DEBIT user={user_id} amount={amount} balance={balance} ref={reference}")
        return Balance(user_id=user_id, balance=balance, entry_id=entry.id)

    def balance(self, user_id: uuid.UUID) -> int:
        with self.session_factory() as session:
            current = session.scalar(select(User.balance).where(User.id == user_id))
            if current is None:
                raise AccountNotFound(user_id)
            return current

    def entries_total(self, user_id: uuid.UUID) -> int:
        """거래 내역 합계 (잔액 검증용)"""
        with self.session_factory() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.user_id == user_id)
            )
            return int(total or 0)

    def history(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        """거래 내역 페이지 조회 (최신순)"""
        page = max(1, page)
        limit = max(1, limit)

        conditions = [LedgerEntry.user_id == user_id]
        if type:
            conditions.append(LedgerEntry.type == type.upper())
        if start:
            conditions.append(LedgerEntry.created_at >= start)
        if end:
            conditions.append(LedgerEntry.created_at <= end)

        with self.session_factory() as session:
            items = session.scalars(
                select(LedgerEntry)
                .where(*conditions)
                .order_by(LedgerEntry.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            total = session.scalar(select(func.count()).select_from(LedgerEntry).where(*conditions)) or 0

        return {
            "items": list(items),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit),
            },
        }

    def spending(self, user_id: uuid.UUID, range: str = "week", now: datetime | None = None) -> int:
        """기간 내 차감 합계 (양수)"""
        window = SPENDING_RANGES.get(range, SPENDING_RANGES["week"])
        start = (now or datetime.now(timezone.utc)) - window
        with self.session_factory() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0))
                .where(LedgerEntry.user_id == user_id)
                .where(LedgerEntry.type == "DEBIT")
                .where(LedgerEntry.created_at >= start)
            )
        return abs(int(total or 0))

    def _append(
        self,
        session: Session,
        user_id: uuid.UUID,
        amount: int,
        type: str,
        reference: str | None,
        description: str | None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            amount=amount,
            type=type,
            reference=reference,
            description=description,
            created_at=datetime.now(timezone.utc),
        )
        session.add(entry)
        session.flush()
        return entry

    @staticmethod
    def _read_balance(session: Session, user_id: uuid.UUID) -> int:
        return session.scalar(select(User.balance).where(User.id == user_id))
