from __future__ import annotations

import logging
from typing import List

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.models.inbox import InboxNotification
from app.models.person import Person
from app.services.common import apply_ordering, apply_pagination, coerce_uuid, utcnow
from app.services.errors import ApprovalNotFound
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _require_person(db: Session, person_id: str) -> None:
    if not db.get(Person, coerce_uuid(person_id)):
        raise ApprovalNotFound("Person not found")


class Inbox(ListResponseMixin):
    @staticmethod
    def get(db: Session, notification_id: str) -> InboxNotification:
        item = db.get(InboxNotification, coerce_uuid(notification_id))
        if not item or not item.is_active:
            raise ApprovalNotFound("Notification not found")
        return item

    @staticmethod
    def list(
        db: Session,
        person_id: str | None,
        instance_id: str | None,
        event_type: str | None,
        is_read: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> List[InboxNotification]:
        stmt = select(InboxNotification).where(InboxNotification.is_active.is_(True))
        if person_id is not None:
            stmt = stmt.where(InboxNotification.person_id == coerce_uuid(person_id))
        if instance_id is not None:
            stmt = stmt.where(
                InboxNotification.entity_type == "approval_instance",
                InboxNotification.entity_id == str(coerce_uuid(instance_id)),
            )
        if event_type is not None:
            stmt = stmt.where(InboxNotification.event_type == event_type)
        if is_read is not None:
            stmt = stmt.where(InboxNotification.is_read == is_read)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {"created_at": InboxNotification.created_at},
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def mark_read(db: Session, person_id: str, notification_ids: List[str]) -> int:
        """Mark the given items read; ids owned by someone else are ignored."""
        ids = [coerce_uuid(nid) for nid in notification_ids]
        if not ids:
            return 0
        result = db.execute(
            update(InboxNotification)
            .where(
                InboxNotification.id.in_(ids),
                InboxNotification.person_id == coerce_uuid(person_id),
                InboxNotification.is_read.is_(False),
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info("Marked %d inbox items read for %s", result.rowcount, person_id)
        return result.rowcount or 0

    @staticmethod
    def mark_all_read(db: Session, person_id: str) -> int:
        _require_person(db, person_id)
        result = db.execute(
            update(InboxNotification)
            .where(
                InboxNotification.person_id == coerce_uuid(person_id),
                InboxNotification.is_read.is_(False),
                InboxNotification.is_active.is_(True),
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info("Marked all %d inbox items read for %s", result.rowcount, person_id)
        return result.rowcount or 0

    @staticmethod
    def unread_count(db: Session, person_id: str) -> int:
        _require_person(db, person_id)
        return db.scalar(
            select(func.count(InboxNotification.id)).where(
                InboxNotification.person_id == coerce_uuid(person_id),
                InboxNotification.is_read.is_(False),
                InboxNotification.is_active.is_(True),
            )
        )

    @staticmethod
    def dismiss(db: Session, notification_id: str) -> None:
        item = db.get(InboxNotification, coerce_uuid(notification_id))
        if not item:
            raise ApprovalNotFound("Notification not found")
        item.is_active = False
        db.commit()
        logger.info("Dismissed inbox item %s", notification_id)


inbox = Inbox()
