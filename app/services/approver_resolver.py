import logging
import uuid
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.person import Person, PersonRole, Role
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class ApproverResolver(Protocol):
    def resolve_approvers(self, db: Session, selector: dict) -> list[uuid.UUID]: ...


class DirectoryApproverResolver:
    """Expands a level's approver selector into concrete person ids.

    Explicit ids come first in their configured order, followed by active
    members of each named role. Duplicates are dropped.
    """

    def resolve_approvers(self, db: Session, selector: dict) -> list[uuid.UUID]:
        resolved: list[uuid.UUID] = []
        for approver_id in selector.get("approver_ids") or []:
            person_id = coerce_uuid(approver_id)
            if person_id not in resolved:
                resolved.append(person_id)

        roles = selector.get("approver_roles") or []
        if roles:
            stmt = (
                select(PersonRole.person_id)
                .join(Role, Role.id == PersonRole.role_id)
                .join(Person, Person.id == PersonRole.person_id)
                .where(
                    Role.name.in_(roles),
                    Role.is_active.is_(True),
                    Person.is_active.is_(True),
                )
                .order_by(PersonRole.created_at)
            )
            for person_id in db.scalars(stmt).all():
                if person_id not in resolved:
                    resolved.append(person_id)
            if not resolved:
                logger.warning("No approvers found for roles %s", roles)
        return resolved


approver_resolver = DirectoryApproverResolver()
