"""CRUD services around the approval lifecycle.

Users, templates, approval routes, documents, comments and notifications.
State transitions of documents (submit, decide, override) live in
``docflow.lifecycle``; everything here leaves ``status`` alone.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from docflow import repository
from docflow.config import settings
from docflow.database import atomic
from docflow.enums import (
    APPROVER_ROLES,
    ApprovalStatus,
    AuditAction,
    DocumentStatus,
    NotificationType,
    UserRole,
)
from docflow.exceptions import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    ValidationFailedError,
)
from docflow.models import (
    Approval,
    ApprovalRoute,
    AuditLog,
    Comment,
    Document,
    Notification,
    RouteStep,
    Template,
    User,
)
from docflow.routing import InvalidRouteError, validate_steps

logger = logging.getLogger(__name__)


def _require_admin(caller: User, action: str) -> None:
    if not caller.is_admin:
        raise ForbiddenError(f"Only administrators can {action}")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def authenticate(db: Session, user_id: Optional[int]) -> User:
    """Resolve the caller identity handed over by the gateway."""
    if user_id is None:
        raise AuthenticationError("Missing caller identity")
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError(f"Unknown user {user_id}")
    return user


def list_users(db: Session) -> list[User]:
    return list(db.execute(select(User).order_by(User.id)).scalars())


def list_approvers(db: Session) -> list[User]:
    return list(
        db.execute(
            select(User).where(User.role.in_(APPROVER_ROLES)).order_by(User.name)
        ).scalars()
    )


def create_user(db: Session, caller: User, name: str, email: str, role: UserRole) -> User:
    _require_admin(caller, "manage users")
    user = User(name=name, email=email.lower(), role=role)
    with atomic(db):
        db.add(user)
    db.refresh(user)
    logger.info(f"User {user.id} ({user.role.value}) created by admin {caller.id}")
    return user


def update_user(
    db: Session,
    caller: User,
    user_id: int,
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: Optional[UserRole] = None,
) -> User:
    _require_admin(caller, "manage users")
    with atomic(db):
        user = repository.get_user(db, user_id)
        if name is not None:
            user.name = name
        if email is not None:
            user.email = email.lower()
        if role is not None:
            user.role = role
    db.refresh(user)
    return user


def delete_user(db: Session, caller: User, user_id: int) -> None:
    _require_admin(caller, "manage users")
    if user_id == caller.id:
        raise PreconditionFailedError("You cannot delete your own account")
    with atomic(db):
        user = repository.get_user(db, user_id)
        in_use = db.execute(
            select(func.count(Document.id)).where(Document.initiator_id == user.id)
        ).scalar_one() + db.execute(
            select(func.count(Approval.id)).where(Approval.approver_id == user.id)
        ).scalar_one()
        if in_use:
            raise PreconditionFailedError(
                "User is referenced by documents or approvals and cannot be deleted"
            )
        db.delete(user)
    logger.info(f"User {user_id} deleted by admin {caller.id}")


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def list_templates(db: Session) -> list[Template]:
    return list(db.execute(select(Template).order_by(Template.name)).scalars())


def get_template(db: Session, template_id: int) -> Template:
    template = db.get(Template, template_id)
    if template is None:
        raise NotFoundError(f"Template {template_id} not found")
    return template


def create_template(
    db: Session,
    caller: User,
    name: str,
    description: Optional[str] = None,
    content: Optional[str] = None,
    fields: Optional[list[dict[str, Any]]] = None,
) -> Template:
    _require_admin(caller, "manage templates")
    template = Template(
        name=name,
        description=description,
        content=content,
        fields=fields or [],
        created_by_id=caller.id,
    )
    with atomic(db):
        db.add(template)
    db.refresh(template)
    return template


def update_template(db: Session, caller: User, template_id: int, **changes: Any) -> Template:
    _require_admin(caller, "manage templates")
    with atomic(db):
        template = get_template(db, template_id)
        for key, value in changes.items():
            if value is not None:
                setattr(template, key, value)
    db.refresh(template)
    return template


def delete_template(db: Session, caller: User, template_id: int) -> None:
    _require_admin(caller, "manage templates")
    with atomic(db):
        template = get_template(db, template_id)
        used_by = db.execute(
            select(func.count(Document.id)).where(Document.template_id == template.id)
        ).scalar_one()
        if used_by:
            raise PreconditionFailedError(
                f"Template is used by {used_by} document(s) and cannot be deleted"
            )
        db.delete(template)


# ---------------------------------------------------------------------------
# Approval routes
# ---------------------------------------------------------------------------


def _build_steps(steps: list[dict[str, Any]]) -> list[RouteStep]:
    try:
        validate_steps(step["step_number"] for step in steps)
    except InvalidRouteError as exc:
        raise ValidationFailedError(str(exc)) from exc

    built = []
    for step in sorted(steps, key=lambda s: s["step_number"]):
        if not step.get("approver_ids") and not step.get("approver_role"):
            raise ValidationFailedError(
                f"Step {step['step_number']} needs approver_ids or an approver_role"
            )
        role = step.get("approver_role")
        if role is not None and UserRole(role) not in APPROVER_ROLES:
            raise ValidationFailedError(
                f"Step {step['step_number']} approver_role must be one of "
                f"{[r.value for r in APPROVER_ROLES]}"
            )
        built.append(
            RouteStep(
                step_number=step["step_number"],
                name=step["name"],
                description=step.get("description"),
                approver_ids=list(step.get("approver_ids") or []),
                approver_role=step.get("approver_role"),
                require_all=bool(step.get("require_all", False)),
            )
        )
    return built


def list_routes(db: Session, caller: User) -> list[ApprovalRoute]:
    _require_admin(caller, "manage approval routes")
    return list(db.execute(select(ApprovalRoute).order_by(ApprovalRoute.id)).scalars())


def get_route(db: Session, caller: User, route_id: int) -> ApprovalRoute:
    _require_admin(caller, "manage approval routes")
    route = db.get(ApprovalRoute, route_id)
    if route is None:
        raise NotFoundError(f"Approval route {route_id} not found")
    return route


def create_route(
    db: Session,
    caller: User,
    name: str,
    template_id: int,
    steps: list[dict[str, Any]],
    description: Optional[str] = None,
) -> ApprovalRoute:
    _require_admin(caller, "manage approval routes")
    with atomic(db):
        template = get_template(db, template_id)
        if template.approval_route is not None:
            raise PreconditionFailedError(
                f"Template {template_id} already has an approval route"
            )
        route = ApprovalRoute(
            name=name,
            description=description,
            template_id=template.id,
            steps=_build_steps(steps),
        )
        db.add(route)
    db.refresh(route)
    logger.info(
        f"Approval route {route.id} with {len(route.steps)} step(s) "
        f"attached to template {template_id}"
    )
    return route


def update_route(
    db: Session,
    caller: User,
    route_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    steps: Optional[list[dict[str, Any]]] = None,
) -> ApprovalRoute:
    """Rename a route or replace its steps wholesale.

    Documents already in approval keep their step number; the new definition
    applies from their next decision on.
    """
    route = get_route(db, caller, route_id)
    with atomic(db):
        if name is not None:
            route.name = name
        if description is not None:
            route.description = description
        if steps is not None:
            new_steps = _build_steps(steps)
            route.steps.clear()
            # Old rows must be gone before the unique (route, step) rows land
            db.flush()
            route.steps.extend(new_steps)
    db.refresh(route)
    return route


def delete_route(db: Session, caller: User, route_id: int) -> None:
    route = get_route(db, caller, route_id)
    with atomic(db):
        db.delete(route)
    logger.info(f"Approval route {route_id} deleted by admin {caller.id}")


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def _document_number(document: Document) -> str:
    year = (document.created_at or datetime.now(timezone.utc)).year
    return f"{settings.DOCUMENT_NUMBER_PREFIX}-{year}-{document.id:05d}"


def _can_view(db: Session, caller: User, document: Document) -> bool:
    if caller.is_admin or document.initiator_id == caller.id:
        return True
    if caller.role == UserRole.APPROVER:
        return (
            db.execute(
                select(Approval.id).where(
                    Approval.document_id == document.id,
                    Approval.approver_id == caller.id,
                )
            ).first()
            is not None
        )
    return False


def create_document(
    db: Session,
    caller: User,
    title: str,
    template_id: int,
    field_values: Optional[dict[str, Any]] = None,
) -> Document:
    if caller.role == UserRole.APPROVER:
        raise ForbiddenError("Approvers cannot create documents")

    with atomic(db):
        template = get_template(db, template_id)
        document = Document(
            title=title,
            template_id=template.id,
            initiator_id=caller.id,
            status=DocumentStatus.DRAFT,
            field_values=field_values or {},
        )
        db.add(document)
        db.flush()
        document.number = _document_number(document)
        repository.record_audit(
            db,
            AuditAction.CREATED,
            document.id,
            caller.id,
            {"title": title, "template_id": template.id, "number": document.number},
        )
    db.refresh(document)
    logger.info(f"Document {document.id} ({document.number}) created by user {caller.id}")
    return document


def list_documents(
    db: Session,
    caller: User,
    search: Optional[str] = None,
    status: Optional[DocumentStatus] = None,
    template_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> list[Document]:
    """Documents visible to the caller, newest first.

    Admins see everything, approvers their own documents plus those they
    hold an approval record for, plain users only their own.
    """
    query = select(Document)
    if caller.role == UserRole.APPROVER:
        assigned = select(Approval.document_id).where(Approval.approver_id == caller.id)
        query = query.where(
            or_(Document.initiator_id == caller.id, Document.id.in_(assigned))
        )
    elif not caller.is_admin:
        query = query.where(Document.initiator_id == caller.id)

    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(
            or_(
                func.lower(Document.title).like(pattern),
                func.lower(Document.number).like(pattern),
            )
        )
    if status is not None:
        query = query.where(Document.status == status)
    if template_id is not None:
        query = query.where(Document.template_id == template_id)

    query = query.order_by(Document.created_at.desc(), Document.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return list(db.execute(query).scalars())


def get_document(db: Session, caller: User, document_id: int) -> Document:
    document = repository.get_document(db, document_id)
    if not _can_view(db, caller, document):
        raise ForbiddenError("You do not have access to this document")
    return document


def update_document(
    db: Session,
    caller: User,
    document_id: int,
    title: Optional[str] = None,
    field_values: Optional[dict[str, Any]] = None,
) -> Document:
    with atomic(db):
        document = repository.get_document(db, document_id, for_update=True)
        if document.initiator_id != caller.id and not caller.is_admin:
            raise ForbiddenError("Only the initiator can edit this document")
        if document.status != DocumentStatus.DRAFT:
            raise PreconditionFailedError(
                f"Only DRAFT documents can be edited (current status is '{document.status.value}')"
            )

        changed = []
        if title is not None and title != document.title:
            document.title = title
            changed.append("title")
        if field_values is not None:
            document.field_values = field_values
            changed.append("field_values")
        if changed:
            repository.record_audit(
                db, AuditAction.UPDATED, document.id, caller.id, {"fields": changed}
            )
    db.refresh(document)
    return document


def delete_document(db: Session, caller: User, document_id: int) -> None:
    """Delete a document; its audit trail is kept."""
    with atomic(db):
        document = repository.get_document(db, document_id, for_update=True)
        if not caller.is_admin:
            if document.initiator_id != caller.id:
                raise ForbiddenError("Only the initiator can delete this document")
            if document.status != DocumentStatus.DRAFT:
                raise PreconditionFailedError("Only DRAFT documents can be deleted")
        db.delete(document)
    logger.info(f"Document {document_id} deleted by user {caller.id}")


# ---------------------------------------------------------------------------
# Approvals and history
# ---------------------------------------------------------------------------


def list_document_approvals(db: Session, caller: User, document_id: int) -> list[Approval]:
    document = get_document(db, caller, document_id)
    return list(document.approvals)


def list_my_approvals(db: Session, caller: User) -> list[Approval]:
    """The caller's PENDING records at the step each document is currently on."""
    return list(
        db.execute(
            select(Approval)
            .join(Document, Approval.document_id == Document.id)
            .where(
                Approval.approver_id == caller.id,
                Approval.status == ApprovalStatus.PENDING,
                Document.status == DocumentStatus.IN_APPROVAL,
                Approval.submission_round == Document.submission_round,
                or_(
                    Approval.step_number == Document.current_step_number,
                    Approval.step_number.is_(None) & Document.current_step_number.is_(None),
                ),
            )
            .order_by(Document.created_at.desc(), Approval.id)
        ).scalars()
    )


def get_history(db: Session, caller: User, document_id: int) -> list[AuditLog]:
    get_document(db, caller, document_id)
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.document_id == document_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        ).scalars()
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

DASHBOARD_PENDING_LIMIT = 4
DASHBOARD_RECENT_LIMIT = 7
DASHBOARD_ACTIVITY_LIMIT = 10


def get_dashboard(db: Session, caller: User) -> dict[str, Any]:
    """Overview for the caller's landing page.

    Status counts cover the caller's own documents. Documents awaiting the
    caller are only collected for approver-capable roles.
    """
    counts = dict(
        db.execute(
            select(Document.status, func.count(Document.id))
            .where(Document.initiator_id == caller.id)
            .group_by(Document.status)
        ).all()
    )
    by_status = {status.value: counts.get(status, 0) for status in DocumentStatus}

    pending: list[Document] = []
    if caller.can_approve:
        pending = [
            approval.document
            for approval in list_my_approvals(db, caller)[:DASHBOARD_PENDING_LIMIT]
        ]

    own_documents = select(Document.id).where(Document.initiator_id == caller.id)
    activity = list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.document_id.in_(own_documents))
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(DASHBOARD_ACTIVITY_LIMIT)
        ).scalars()
    )

    return {
        "stats": {"total": sum(by_status.values()), "by_status": by_status},
        "pending_approvals": pending,
        "recent_documents": list_documents(db, caller, limit=DASHBOARD_RECENT_LIMIT),
        "recent_activity": activity,
    }


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


def list_comments(db: Session, caller: User, document_id: int) -> list[Comment]:
    document = get_document(db, caller, document_id)
    return list(document.comments)


def add_comment(db: Session, caller: User, document_id: int, text: str) -> Comment:
    text = text.strip()
    if not text:
        raise ValidationFailedError("Comment text must not be empty")

    with atomic(db):
        document = get_document(db, caller, document_id)
        comment = Comment(document_id=document.id, user_id=caller.id, text=text)
        db.add(comment)
        if document.initiator_id != caller.id:
            repository.notify(
                db,
                document.initiator_id,
                NotificationType.NEW_COMMENT,
                f'{caller.name} commented on your document "{document.title}" ({document.number})',
                document.id,
            )
    db.refresh(comment)
    return comment


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def list_notifications(db: Session, caller: User) -> tuple[list[Notification], int]:
    """Latest notifications of the caller and the total unread count."""
    items = list(
        db.execute(
            select(Notification)
            .where(Notification.user_id == caller.id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(settings.NOTIFICATION_PAGE_SIZE)
        ).scalars()
    )
    unread = db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == caller.id, Notification.is_read.is_(False)
        )
    ).scalar_one()
    return items, unread


def mark_all_notifications_read(db: Session, caller: User) -> int:
    with atomic(db):
        result = db.execute(
            update(Notification)
            .where(Notification.user_id == caller.id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
    return result.rowcount


def _own_notification(db: Session, caller: User, notification_id: int) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or notification.user_id != caller.id:
        raise NotFoundError(f"Notification {notification_id} not found")
    return notification


def mark_notification_read(db: Session, caller: User, notification_id: int) -> Notification:
    with atomic(db):
        notification = _own_notification(db, caller, notification_id)
        notification.is_read = True
    db.refresh(notification)
    return notification


def delete_notification(db: Session, caller: User, notification_id: int) -> None:
    with atomic(db):
        _own_notification(db, caller, notification_id)
        db.execute(delete(Notification).where(Notification.id == notification_id))
