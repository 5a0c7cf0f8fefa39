"""Concurrent decisions on one document.

Each worker thread uses its own session against a shared SQLite file, the
way request handlers in separate worker threads would.
"""

import threading

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from docflow import lifecycle
from docflow.database import Base, DocumentLocks, document_locks
from docflow.enums import AuditAction, DecisionAction, DocumentStatus, NotificationType, UserRole
from docflow.exceptions import PreconditionFailedError
from docflow.models import Approval, AuditLog, Document, Notification, User
from tests.helpers import make_route, make_template, make_user


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _setup(session_factory, approver_count, with_second_step):
    with session_factory() as session:
        initiator = make_user(session, "Ivy Initiator")
        admin = make_user(session, "Ada Admin", UserRole.ADMIN)
        approvers = [
            make_user(session, f"Approver {i}", UserRole.APPROVER) for i in range(approver_count)
        ]
        closer = make_user(session, "Cal Closer", UserRole.APPROVER)
        template = make_template(session, admin)
        steps = [
            {
                "step_number": 1,
                "name": "Board",
                "approver_ids": [a.id for a in approvers],
                "require_all": True,
            }
        ]
        if with_second_step:
            steps.append({"step_number": 2, "name": "Close", "approver_ids": [closer.id]})
        make_route(session, template, steps)

        document = Document(title="Budget", template_id=template.id, initiator_id=initiator.id)
        session.add(document)
        session.commit()
        lifecycle.submit_for_approval(session, document.id, initiator)
        return document.id, [a.id for a in approvers], closer.id


def _race(session_factory, document_id, approver_ids):
    """Run one decision per approver id at once; collect errors."""
    barrier = threading.Barrier(len(approver_ids))
    errors = []

    def worker(approver_id):
        with session_factory() as session:
            caller = session.get(User, approver_id)
            barrier.wait()
            try:
                lifecycle.decide(session, document_id, caller, DecisionAction.APPROVE)
            except PreconditionFailedError as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in approver_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return errors


class TestExactlyOnceAdvancement:
    """Scenario: All approvers of a require_all step approve at the same time."""

    def test_next_step_activates_once(self, session_factory):
        document_id, approver_ids, closer_id = _setup(session_factory, 5, True)

        errors = _race(session_factory, document_id, approver_ids)
        assert errors == []

        with session_factory() as session:
            document = session.get(Document, document_id)
            assert document.status == DocumentStatus.IN_APPROVAL
            assert document.current_step_number == 2
            step_two = session.execute(
                select(Approval).where(
                    Approval.document_id == document_id, Approval.step_number == 2
                )
            ).scalars().all()
            assert [a.approver_id for a in step_two] == [closer_id]
            advanced = session.execute(
                select(func.count(AuditLog.id)).where(
                    AuditLog.document_id == document_id,
                    AuditLog.action == AuditAction.APPROVED,
                )
            ).scalar_one()
            assert advanced == 1

    def test_final_step_completes_once(self, session_factory):
        document_id, approver_ids, _ = _setup(session_factory, 5, False)

        errors = _race(session_factory, document_id, approver_ids)
        assert errors == []

        with session_factory() as session:
            assert session.get(Document, document_id).status == DocumentStatus.APPROVED
            approved_notices = session.execute(
                select(func.count(Notification.id)).where(
                    Notification.document_id == document_id,
                    Notification.type == NotificationType.DOCUMENT_APPROVED,
                )
            ).scalar_one()
            assert approved_notices == 1

    def test_duplicate_decision_applies_once(self, session_factory):
        document_id, approver_ids, _ = _setup(session_factory, 2, True)
        first = approver_ids[0]

        errors = _race(session_factory, document_id, [first, first, first])
        assert len(errors) == 2

        with session_factory() as session:
            document = session.get(Document, document_id)
            assert document.current_step_number == 1
            statuses = session.execute(
                select(Approval.status).where(
                    Approval.document_id == document_id, Approval.approver_id == first
                )
            ).scalars().all()
            assert [s.value for s in statuses] == ["APPROVED"]


class TestDocumentLocks:
    """Scenario: Lock entries live only while a document is being worked on."""

    def test_entries_are_released(self):
        locks = DocumentLocks()
        with locks.hold(1):
            with locks.hold(2):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_released_after_error(self):
        locks = DocumentLocks()
        with pytest.raises(PreconditionFailedError):
            with locks.hold(7):
                raise PreconditionFailedError("boom")
        assert len(locks) == 0

    def test_second_holder_waits_for_first(self):
        locks = DocumentLocks()
        inside = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold(5):
                inside.set()
                release.wait(5)
                order.append("first")

        def second():
            inside.wait(5)
            with locks.hold(5):
                order.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()
        inside.wait(5)
        release.set()
        for thread in threads:
            thread.join()

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_races_leave_no_entries(self, session_factory):
        document_id, approver_ids, _ = _setup(session_factory, 3, True)
        _race(session_factory, document_id, approver_ids)
        assert len(document_locks) == 0
