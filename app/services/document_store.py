import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.orm import Session

from app.models.document import Document, DocumentStatus
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentSnapshot:
    id: uuid.UUID
    document_type_id: uuid.UUID
    status: str
    title: str = ""
    content: dict = field(default_factory=dict)


class DocumentStore(Protocol):
    def get_document(self, db: Session, document_id) -> DocumentSnapshot | None: ...

    def set_document_status(self, db: Session, document_id, status: str) -> None: ...


class SqlDocumentStore:
    """Document store backed by the ``documents`` table.

    Status writes join the caller's transaction; the caller commits.
    """

    def get_document(self, db: Session, document_id) -> DocumentSnapshot | None:
        doc = db.get(Document, coerce_uuid(document_id))
        if not doc or not doc.is_active:
            return None
        return DocumentSnapshot(
            id=doc.id,
            document_type_id=doc.document_type_id,
            status=doc.status.value,
            title=doc.title,
            content=dict(doc.content or {}),
        )

    def set_document_status(self, db: Session, document_id, status: str) -> None:
        doc = db.get(Document, coerce_uuid(document_id))
        if not doc:
            logger.warning("Cannot set status %s: document %s missing", status, document_id)
            return
        doc.status = DocumentStatus(status)
        db.flush()
        logger.info("Document %s status -> %s", document_id, status)


document_store = SqlDocumentStore()
