import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
import app.models  # noqa: F401
from app.models.document import Document
from app.models.person import Person, PersonRole, Role


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


def make_person(db_session, first_name="Test", last_name="User", phone=None):
    person = Person(
        first_name=first_name,
        last_name=last_name,
        email=f"{first_name.lower()}-{uuid.uuid4().hex[:8]}@example.com",
        phone=phone,
    )
    db_session.add(person)
    db_session.commit()
    db_session.refresh(person)
    return person


@pytest.fixture()
def person(db_session):
    return make_person(db_session, "Submitter", "User")


@pytest.fixture()
def approvers(db_session):
    return [make_person(db_session, f"Approver{i}", "User") for i in range(4)]


@pytest.fixture()
def document_type_id():
    return uuid.uuid4()


@pytest.fixture()
def document(db_session, person, document_type_id):
    doc = Document(
        title="Quotation Q-1001",
        document_type_id=document_type_id,
        content={"total": 1200, "customer": {"tier": "gold"}},
        created_by=person.id,
    )
    db_session.add(doc)
    db_session.commit()
    db_session.refresh(doc)
    return doc


@pytest.fixture()
def manager_role(db_session, approvers):
    role = Role(name="manager")
    db_session.add(role)
    db_session.commit()
    for approver in approvers[2:]:
        db_session.add(PersonRole(person_id=approver.id, role_id=role.id))
    db_session.commit()
    db_session.refresh(role)
    return role


@pytest.fixture()
def client(db_session):
    from app.api import approvals, inbox
    from app.main import app

    def _get_db():
        yield db_session

    app.dependency_overrides[approvals.get_db] = _get_db
    app.dependency_overrides[inbox.get_db] = _get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def workflow_factory(db_session, document_type_id):
    """Build and persist an approval workflow for the test document type."""
    from app.schemas.approval import ApprovalWorkflowCreate
    from app.services.approval_workflow import approval_workflows

    def _make(levels, **kwargs):
        payload = ApprovalWorkflowCreate(
            name=kwargs.pop("name", f"wf-{uuid.uuid4().hex[:8]}"),
            document_type_ids=kwargs.pop("document_type_ids", [document_type_id]),
            levels=levels,
            **kwargs,
        )
        return approval_workflows.create(db_session, payload)

    return _make
