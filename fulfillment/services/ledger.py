"""
Ledger store adapter: reads, guarded writes and post-commit notifications

All state changes go through conditional_update, which issues a single
UPDATE guarded by the expected prior values. The caller learns from the
affected row count whether its view of the record was still current.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import update
from sqlalchemy.orm import Session

from fulfillment.database import get_db
from fulfillment.services.notification_dispatcher import NotificationDispatcher, get_dispatcher
from fulfillment.utils.error_handler import NotFoundError

logger = logging.getLogger(__name__)


class Ledger:
    """Unit of work over one database session"""

    def __init__(self, db: Session, dispatcher: Optional[NotificationDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._outbox: List[Tuple[str, str, Dict[str, Any]]] = []

    def get(self, model, record_id):
        """Read the current row, bypassing any stale copy in the session"""
        if record_id is None:
            return None
        return self.db.get(model, record_id, populate_existing=True)

    def require(self, model, record_id, label: Optional[str] = None):
        record = self.get(model, record_id)
        if record is None:
            label = label or model.__name__
            raise NotFoundError(f"{label} not found", details={"id": record_id})
        return record

    def add(self, record) -> None:
        self.db.add(record)
        self.db.flush()

    def conditional_update(self, model, record_id, expected: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """Apply values only if the row still holds the expected column values.

        A None in expected means the column must be NULL. updated_at is
        always advanced. Returns True when exactly one row was written.
        """
        conditions = [model.id == record_id]
        for column_name, expected_value in expected.items():
            column = getattr(model, column_name)
            if expected_value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == expected_value)

        stmt = (
            update(model)
            .where(*conditions)
            .values(updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        written = result.rowcount == 1
        if not written:
            logger.debug(f"Conditional write on {model.__tablename__}/{record_id} rejected, expected {expected}")
        return written

    def notify_after_commit(self, user_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        self._outbox.append((user_id, kind, payload))

    def commit(self) -> None:
        """Commit, then hand queued notifications to the dispatcher"""
        self.db.commit()
        outbox, self._outbox = self._outbox, []
        for user_id, kind, payload in outbox:
            self.dispatcher.notify(user_id, kind, payload)

    def rollback(self) -> None:
        self._outbox = []
        self.db.rollback()


def get_ledger(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> Ledger:
    """FastAPI dependency building a ledger for the request's session"""
    return Ledger(db, dispatcher)
