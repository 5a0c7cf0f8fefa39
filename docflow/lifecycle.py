"""Document lifecycle controller.

Entry points that move a document through DRAFT -> IN_APPROVAL ->
APPROVED/REJECTED. Each call holds the document's advisory lock, validates
the caller, asks the routing engine what happens next and persists the
outcome (records, document, audit entry, notifications) in one transaction.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from docflow import repository, routing
from docflow.database import atomic, document_locks
from docflow.enums import (
    ApprovalStatus,
    AuditAction,
    DecisionAction,
    DocumentStatus,
    NotificationType,
)
from docflow.exceptions import (
    ConfigurationError,
    ForbiddenError,
    PreconditionFailedError,
)
from docflow.models import Approval, Document, User

logger = logging.getLogger(__name__)


def _label(document: Document) -> str:
    return f'"{document.title}" ({document.number})'


def _require_in_approval(document: Document) -> None:
    if document.status != DocumentStatus.IN_APPROVAL:
        raise PreconditionFailedError(
            f"Document is not in approval (current status is '{document.status.value}')"
        )


# --- Submit ---


def _legacy_approver(db: Session, manual_approver_id: Optional[int]) -> User:
    """Pick the single approver of a document whose template has no route."""
    if manual_approver_id is not None:
        approver = repository.get_user(db, manual_approver_id)
        if not approver.can_approve:
            raise ConfigurationError(
                f"Selected user {approver.id} is not an approver",
                meta={"approver_id": approver.id},
            )
        return approver

    approver = repository.first_available_approver(db)
    if approver is None:
        raise ConfigurationError("No approver available")
    return approver


def submit_for_approval(
    db: Session,
    document_id: int,
    caller: User,
    manual_approver_id: Optional[int] = None,
) -> Document:
    """Send a DRAFT document into approval.

    With a routed template the approvers of step 1 get one PENDING record
    each; otherwise a single legacy record (no step number) is created for the
    manually chosen approver, or the first APPROVER on file.
    """
    with document_locks.hold(document_id), atomic(db):
        document = repository.get_document(db, document_id, for_update=True)

        if document.initiator_id != caller.id:
            raise ForbiddenError("Only the initiator can submit this document")
        if document.status != DocumentStatus.DRAFT:
            raise PreconditionFailedError(
                f"Only DRAFT documents can be submitted (current status is '{document.status.value}')"
            )

        route = repository.route_spec_for_template(db, document.template_id)
        try:
            step = routing.initial_step(route)
        except routing.InvalidRouteError as exc:
            raise ConfigurationError(str(exc)) from exc

        if step is None:
            approvers = [_legacy_approver(db, manual_approver_id)]
            step_number = None
            details = {
                "approver_id": approvers[0].id,
                "approver_name": approvers[0].name,
            }
            message = f"New document {_label(document)} is waiting for your approval"
        else:
            approvers = repository.resolve_step_approvers(db, step)
            step_number = step.step_number
            details = {
                "step_number": step.step_number,
                "step_name": step.name,
                "approver_count": len(approvers),
            }
            message = (
                f"New document {_label(document)} is waiting for your approval "
                f"(Step {step.step_number}: {step.name})"
            )

        document.submission_round += 1
        repository.create_pending_approvals(db, document, approvers, step_number)
        document.status = DocumentStatus.IN_APPROVAL
        document.current_step_number = step_number
        document.current_approver_id = approvers[0].id

        repository.record_audit(db, AuditAction.SUBMITTED, document.id, caller.id, details)
        for approver in approvers:
            repository.notify(
                db, approver.id, NotificationType.APPROVAL_REQUEST, message, document.id
            )

    db.refresh(document)
    logger.info(
        f"Document {document.id} submitted by user {caller.id} "
        f"(step={document.current_step_number}, approvers={[a.id for a in approvers]})"
    )
    return document


# --- Decide ---


def decide(
    db: Session,
    document_id: int,
    caller: User,
    action: DecisionAction,
    comment: Optional[str] = None,
) -> Document:
    """Approve or reject on behalf of the caller's own pending record."""
    action = DecisionAction(action)
    with document_locks.hold(document_id), atomic(db):
        document = repository.get_document(db, document_id, for_update=True)
        _require_in_approval(document)

        approval = repository.find_step_approval(
            db, document, caller.id, document.current_step_number
        )
        if approval is None:
            if repository.has_pending_approval(db, document, caller.id):
                raise PreconditionFailedError(
                    "Document is no longer at the step of your approval"
                )
            raise ForbiddenError(
                "You are not an approver for this document at the current step"
            )
        if approval.status != ApprovalStatus.PENDING:
            raise PreconditionFailedError(
                f"You have already decided this step ({approval.status.value})"
            )

        _apply_decision(db, document, approval, caller, action, comment)

    db.refresh(document)
    return document


def decide_approval(
    db: Session,
    approval_id: int,
    caller: User,
    action: DecisionAction,
    comment: Optional[str] = None,
) -> Document:
    """Decide one specific approval record.

    The assigned approver may decide it, and so may an ADMIN acting for them.
    """
    action = DecisionAction(action)
    document_id = repository.get_approval(db, approval_id).document_id

    with document_locks.hold(document_id), atomic(db):
        document = repository.get_document(db, document_id, for_update=True)
        approval = repository.get_approval(db, approval_id)
        db.refresh(approval)

        if approval.approver_id != caller.id and not caller.is_admin:
            raise ForbiddenError("This approval is assigned to another user")
        if approval.status != ApprovalStatus.PENDING:
            raise PreconditionFailedError("Only PENDING approvals can be decided")
        _require_in_approval(document)
        if approval.submission_round != document.submission_round:
            raise PreconditionFailedError(
                "This approval belongs to an earlier submission of the document"
            )
        if approval.step_number != document.current_step_number:
            raise PreconditionFailedError(
                "Document is no longer at the step of this approval"
            )

        _apply_decision(db, document, approval, caller, action, comment)

    db.refresh(document)
    return document


def _apply_decision(
    db: Session,
    document: Document,
    approval: Approval,
    actor: User,
    action: DecisionAction,
    comment: Optional[str],
) -> None:
    """Write the decision, re-read the step and persist the routing outcome."""
    comment = comment or None
    step_number = document.current_step_number
    route = repository.route_spec_for_template(db, document.template_id)
    if not routing.is_legacy(route, step_number) and route.step(step_number) is None:
        raise ConfigurationError(
            f"Current step {step_number} not found in the approval route",
            meta={"step_number": step_number},
        )

    decided = (
        ApprovalStatus.APPROVED if action == DecisionAction.APPROVE else ApprovalStatus.REJECTED
    )
    repository.claim_decision(db, approval.id, decided, comment)

    records = [
        routing.DecisionRecord(record.approver_id, record.status)
        for record in repository.step_records(db, document, step_number)
    ]
    outcome = routing.decide(
        route, step_number, records, approval.approver_id, action, comment
    )

    audit_details = {"comment": comment, "step_number": step_number}
    if actor.id != approval.approver_id:
        audit_details["on_behalf_of"] = approval.approver_id

    if isinstance(outcome, routing.Rejected):
        repository.transition_document(
            db,
            document,
            step_number,
            status=DocumentStatus.REJECTED,
            current_step_number=None,
            current_approver_id=None,
        )
        repository.record_audit(db, AuditAction.REJECTED, document.id, actor.id, audit_details)
        repository.notify(
            db,
            document.initiator_id,
            NotificationType.DOCUMENT_REJECTED,
            f"Your document {_label(document)} has been rejected"
            + (f": {comment}" if comment else ""),
            document.id,
        )
        logger.info(f"Document {document.id} rejected at step {step_number} by user {actor.id}")

    elif isinstance(outcome, routing.StepPending):
        logger.info(
            f"Document {document.id} step {step_number} approved by user {actor.id}, "
            f"waiting on {list(outcome.pending_approver_ids)}"
        )

    elif isinstance(outcome, routing.AdvanceToStep):
        next_step = outcome.next_step
        approvers = repository.resolve_step_approvers(db, next_step)
        repository.transition_document(
            db,
            document,
            step_number,
            current_step_number=next_step.step_number,
            current_approver_id=approvers[0].id,
        )
        repository.create_pending_approvals(db, document, approvers, next_step.step_number)
        audit_details.update(
            next_step_number=next_step.step_number, next_step_name=next_step.name
        )
        repository.record_audit(db, AuditAction.APPROVED, document.id, actor.id, audit_details)
        message = (
            f"Document {_label(document)} is waiting for your approval "
            f"(Step {next_step.step_number}: {next_step.name})"
        )
        for approver in approvers:
            repository.notify(
                db, approver.id, NotificationType.APPROVAL_REQUEST, message, document.id
            )
        logger.info(
            f"Document {document.id} advanced from step {step_number} "
            f"to step {next_step.step_number} by user {actor.id}"
        )

    else:
        repository.transition_document(
            db,
            document,
            step_number,
            status=DocumentStatus.APPROVED,
            current_step_number=None,
            current_approver_id=None,
        )
        if outcome.legacy:
            repository.record_audit(
                db,
                AuditAction.FULLY_APPROVED,
                document.id,
                actor.id,
                {k: v for k, v in audit_details.items() if k != "step_number"},
            )
        else:
            audit_details["final_step"] = True
            repository.record_audit(db, AuditAction.APPROVED, document.id, actor.id, audit_details)
        repository.notify(
            db,
            document.initiator_id,
            NotificationType.DOCUMENT_APPROVED,
            f"Your document {_label(document)} has been approved",
            document.id,
        )
        logger.info(f"Document {document.id} fully approved by user {actor.id}")


# --- Admin override ---


def override_status(
    db: Session, document_id: int, caller: User, new_status: DocumentStatus
) -> Document:
    """Write a document's status directly, outside the routing engine.

    Approval records are left untouched. Leaving IN_APPROVAL clears the
    current step and approver pointers.
    """
    if not caller.is_admin:
        raise ForbiddenError("Only administrators can change a document's status")
    new_status = DocumentStatus(new_status)

    with document_locks.hold(document_id), atomic(db):
        document = repository.get_document(db, document_id, for_update=True)
        if document.status == new_status:
            raise PreconditionFailedError("Document is already in this status")

        previous = document.status
        document.status = new_status
        if new_status != DocumentStatus.IN_APPROVAL:
            document.current_step_number = None
            document.current_approver_id = None

        repository.record_audit(
            db,
            AuditAction.STATUS_CHANGED,
            document.id,
            caller.id,
            {"from": previous.value, "to": new_status.value, "manual": True},
        )

    db.refresh(document)
    logger.warning(
        f"Document {document.id} status manually changed {previous.value} -> "
        f"{new_status.value} by admin {caller.id}"
    )
    return document
