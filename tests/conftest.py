"""Test configuration and fixtures."""

import os

# Keep the application engine off the working directory during tests
os.environ.setdefault("DOCFLOW_DATABASE_URL", "sqlite://")
os.environ.setdefault("DOCFLOW_LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docflow.database import Base, get_db
from docflow.enums import UserRole
from main import app
from tests.helpers import auth, make_route, make_template, make_user


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    """Create a test client with an overridden database dependency."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def users(db_session):
    """An initiator, three approvers, an admin and a bystander."""
    return {
        "initiator": make_user(db_session, "Ivy Initiator"),
        "a": make_user(db_session, "Ann Approver", UserRole.APPROVER),
        "b": make_user(db_session, "Ben Approver", UserRole.APPROVER),
        "c": make_user(db_session, "Cal Approver", UserRole.APPROVER),
        "admin": make_user(db_session, "Ada Admin", UserRole.ADMIN),
        "outsider": make_user(db_session, "Oscar Outsider"),
    }


@pytest.fixture
def template(db_session, users):
    return make_template(db_session, users["admin"])


@pytest.fixture
def two_step_route(db_session, users, template):
    """Step 1: A and B, both required. Step 2: C alone."""
    return make_route(
        db_session,
        template,
        [
            {
                "step_number": 1,
                "name": "Department review",
                "approver_ids": [users["a"].id, users["b"].id],
                "require_all": True,
            },
            {
                "step_number": 2,
                "name": "Finance sign-off",
                "approver_ids": [users["c"].id],
                "require_all": False,
            },
        ],
    )


@pytest.fixture
def any_one_route(db_session, users, template):
    """Step 1: A or B. Step 2: C alone."""
    return make_route(
        db_session,
        template,
        [
            {
                "step_number": 1,
                "name": "Department review",
                "approver_ids": [users["a"].id, users["b"].id],
                "require_all": False,
            },
            {
                "step_number": 2,
                "name": "Finance sign-off",
                "approver_ids": [users["c"].id],
            },
        ],
    )


@pytest.fixture
def draft(client, users, template):
    """A DRAFT document created by the initiator through the API."""
    response = client.post(
        "/api/v1/documents",
        json={"title": "New laptops", "template_id": template.id},
        headers=auth(users["initiator"]),
    )
    assert response.status_code == 201
    return response.json()
