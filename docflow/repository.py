"""Data-access adapters used by the lifecycle controller.

Loads routing inputs (routes, step records, approvers), writes decisions with
compare-and-set guards, and appends audit entries and notifications. Nothing
here commits; the caller owns the transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from docflow.enums import (
    APPROVER_ROLES,
    ApprovalStatus,
    AuditAction,
    DocumentStatus,
    NotificationType,
    UserRole,
)
from docflow.exceptions import ConfigurationError, NotFoundError, PreconditionFailedError
from docflow.models import (
    Approval,
    ApprovalRoute,
    AuditLog,
    Document,
    Notification,
    User,
)
from docflow.routing import RouteSpec, StepSpec

logger = logging.getLogger(__name__)


# --- Lookups ---


def get_document(db: Session, document_id: int, for_update: bool = False) -> Document:
    """Retrieve a document by ID or raise NotFoundError."""
    query = select(Document).where(Document.id == document_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    document = db.execute(query).scalar_one_or_none()
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    return document


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def get_approval(db: Session, approval_id: int) -> Approval:
    approval = db.get(Approval, approval_id)
    if approval is None:
        raise NotFoundError(f"Approval {approval_id} not found")
    return approval


def route_spec_for_template(db: Session, template_id: Optional[int]) -> Optional[RouteSpec]:
    """Snapshot the template's route as an engine RouteSpec (None if absent)."""
    if template_id is None:
        return None
    route = db.execute(
        select(ApprovalRoute)
        .where(ApprovalRoute.template_id == template_id)
        .options(selectinload(ApprovalRoute.steps))
    ).scalar_one_or_none()
    if route is None:
        return None
    return RouteSpec(
        name=route.name,
        steps=tuple(
            StepSpec(
                step_number=step.step_number,
                name=step.name,
                approver_ids=tuple(step.approver_ids or ()),
                approver_role=step.approver_role.value if step.approver_role else None,
                require_all=step.require_all,
            )
            for step in route.steps
        ),
    )


def _step_clause(step_number: Optional[int]):
    if step_number is None:
        return Approval.step_number.is_(None)
    return Approval.step_number == step_number


def step_records(db: Session, document: Document, step_number: Optional[int]) -> List[Approval]:
    """All approval records of one step in the current round, re-read from the store."""
    return list(
        db.execute(
            select(Approval)
            .where(
                Approval.document_id == document.id,
                Approval.submission_round == document.submission_round,
                _step_clause(step_number),
            )
            .order_by(Approval.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def find_step_approval(
    db: Session, document: Document, approver_id: int, step_number: Optional[int]
) -> Optional[Approval]:
    return db.execute(
        select(Approval)
        .where(
            Approval.document_id == document.id,
            Approval.submission_round == document.submission_round,
            Approval.approver_id == approver_id,
            _step_clause(step_number),
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def has_pending_approval(db: Session, document: Document, approver_id: int) -> bool:
    return (
        db.execute(
            select(Approval.id).where(
                Approval.document_id == document.id,
                Approval.submission_round == document.submission_round,
                Approval.approver_id == approver_id,
                Approval.status == ApprovalStatus.PENDING,
            )
        ).first()
        is not None
    )


# --- Approver resolution ---


def resolve_step_approvers(db: Session, step: StepSpec) -> List[User]:
    """Resolve a step's approver set to approver-capable users.

    Explicit ids keep their configured order; members of ``approver_role`` are
    appended by id. The set is resolved when the step becomes active.

    Raises:
        ConfigurationError: nobody valid is left to approve the step.
    """
    approvers: List[User] = []
    if step.approver_ids:
        found = {
            user.id: user
            for user in db.execute(
                select(User).where(
                    User.id.in_(step.approver_ids), User.role.in_(APPROVER_ROLES)
                )
            ).scalars()
        }
        approvers.extend(found[i] for i in dict.fromkeys(step.approver_ids) if i in found)
    if step.approver_role:
        seen = {user.id for user in approvers}
        role_members = db.execute(
            select(User)
            .where(
                User.role == UserRole(step.approver_role),
                User.role.in_(APPROVER_ROLES),
            )
            .order_by(User.id)
        ).scalars()
        approvers.extend(user for user in role_members if user.id not in seen)

    if not approvers:
        logger.warning(
            f"Step {step.step_number} ('{step.name}') resolved to no valid approvers"
        )
        raise ConfigurationError(
            f"No valid approvers found for step {step.step_number} ({step.name})",
            meta={"step_number": step.step_number},
        )
    return approvers


def first_available_approver(db: Session) -> Optional[User]:
    return db.execute(
        select(User).where(User.role == UserRole.APPROVER).order_by(User.id)
    ).scalars().first()


# --- Writes ---


def create_pending_approvals(
    db: Session, document: Document, approvers: List[User], step_number: Optional[int]
) -> List[Approval]:
    records = [
        Approval(
            document_id=document.id,
            approver_id=approver.id,
            submission_round=document.submission_round,
            step_number=step_number,
            status=ApprovalStatus.PENDING,
        )
        for approver in approvers
    ]
    db.add_all(records)
    db.flush()
    return records


def claim_decision(
    db: Session, approval_id: int, status: ApprovalStatus, comment: Optional[str]
) -> None:
    """Move a PENDING record to its decided status exactly once.

    Raises:
        PreconditionFailedError: the record was decided by someone else first.
    """
    result = db.execute(
        update(Approval)
        .where(Approval.id == approval_id, Approval.status == ApprovalStatus.PENDING)
        .values(status=status, comment=comment, decided_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise PreconditionFailedError("Only PENDING approvals can be decided")


def transition_document(
    db: Session, document: Document, expected_step: Optional[int], **values: Any
) -> None:
    """Update an in-approval document only if it is still at ``expected_step``.

    Raises:
        PreconditionFailedError: another decision already moved the document.
    """
    step_clause = (
        Document.current_step_number.is_(None)
        if expected_step is None
        else Document.current_step_number == expected_step
    )
    result = db.execute(
        update(Document)
        .where(
            Document.id == document.id,
            Document.status == DocumentStatus.IN_APPROVAL,
            step_clause,
        )
        .values(updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise PreconditionFailedError(
            "Document has already moved past this approval step",
            meta={"document_id": document.id, "step_number": expected_step},
        )


def record_audit(
    db: Session,
    action: AuditAction,
    document_id: int,
    user_id: int,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        document_id=document_id,
        user_id=user_id,
        details={k: v for k, v in (details or {}).items() if v is not None},
    )
    db.add(entry)
    return entry


def notify(
    db: Session,
    user_id: int,
    type: NotificationType,
    message: str,
    document_id: Optional[int] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id, type=type, message=message, document_id=document_id
    )
    db.add(notification)
    return notification
