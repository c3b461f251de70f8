from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from expense_scan.core.config import settings
from expense_scan.core.db import SessionLocal
from expense_scan.models.expense import Expense
from expense_scan.services.category_classifier import HistoryRecord
from expense_scan.services.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "status", "merchant", "amount", "currency", "category",
    "ocr_data", "ml_predictions", "error", "processed_at", "receipt_url",
}


class ExpenseRecordStore:
    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal):
        self.session_factory = session_factory

    def _get(self, expense_id: str) -> Expense | None:
        db = self.session_factory()
        try:
            expense = db.get(Expense, expense_id)
            if expense is not None:
                db.expunge(expense)
            return expense
        finally:
            db.close()

    def _update(self, expense_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown expense fields: {sorted(unknown)}")

        db = self.session_factory()
        try:
            expense = db.get(Expense, expense_id)
            if expense is None:
                raise NotFoundError(f"Expense {expense_id} not found")
            for name, value in fields.items():
                setattr(expense, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("expense=%s update failed: %s", expense_id, e)
            raise PersistenceError(f"Expense update failed: {e}") from e
        finally:
            db.close()

    def _create(self, values: dict[str, Any]) -> str:
        db = self.session_factory()
        try:
            expense = Expense(id=values.pop("id", None) or uuid4().hex, **values)
            db.add(expense)
            db.commit()
            logger.debug("created expense=%s couple=%s", expense.id, expense.couple_id)
            return expense.id
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Expense insert failed: {e}") from e
        finally:
            db.close()

    def _history(self, couple_id: str, limit: int) -> list[HistoryRecord]:
        db = self.session_factory()
        try:
            rows = (
                db.query(Expense.merchant, Expense.category, Expense.amount)
                .filter(Expense.couple_id == couple_id, Expense.category.is_not(None))
                .order_by(Expense.created_at.desc())
                .limit(limit)
                .all()
            )
            return [HistoryRecord(merchant=m, category=c, amount=a) for m, c, a in rows]
        finally:
            db.close()

    async def get(self, expense_id: str) -> Expense | None:
        return await asyncio.to_thread(self._get, expense_id)

    async def update(self, expense_id: str, fields: dict[str, Any]) -> None:
        await asyncio.to_thread(self._update, expense_id, fields)

    async def create(self, **values: Any) -> str:
        return await asyncio.to_thread(self._create, values)

    async def history(self, couple_id: str, limit: int | None = None) -> list[HistoryRecord]:
        return await asyncio.to_thread(self._history, couple_id, limit or settings.history_limit)
