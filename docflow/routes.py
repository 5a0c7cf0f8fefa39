from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from sqlalchemy.orm import Session

from docflow import lifecycle, services
from docflow.database import get_db
from docflow.enums import DecisionAction, DocumentStatus
from docflow.models import User
from docflow.schemas import (
    ApprovalDecision,
    ApprovalResponse,
    AuditLogResponse,
    CommentCreate,
    CommentResponse,
    DashboardResponse,
    DecisionRequest,
    DocumentCreate,
    DocumentDetailResponse,
    DocumentResponse,
    DocumentSubmit,
    DocumentUpdate,
    MyApprovalResponse,
    NotificationListResponse,
    NotificationResponse,
    NotificationsMarked,
    RouteCreate,
    RouteResponse,
    RouteUpdate,
    StatusOverride,
    TemplateCreate,
    TemplateResponse,
    TemplateUpdate,
    UserCreate,
    UserResponse,
    UserUpdate,
)

router = APIRouter()


def get_current_user(
    x_user_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Caller identity as forwarded by the authenticating gateway."""
    return services.authenticate(db, x_user_id)


# --- Documents ---


@router.post("/documents", response_model=DocumentResponse, status_code=201)
def create_document(
    payload: DocumentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.create_document(
        db,
        user,
        title=payload.title,
        template_id=payload.template_id,
        field_values=payload.field_values,
    )


@router.get("/documents", response_model=list[DocumentResponse])
def list_documents(
    search: Optional[str] = None,
    status: Optional[DocumentStatus] = None,
    template_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_documents(
        db, user, search=search, status=status, template_id=template_id
    )


@router.get("/documents/{document_id}", response_model=DocumentDetailResponse)
def get_document(
    document_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.get_document(db, user, document_id)


@router.put("/documents/{document_id}", response_model=DocumentResponse)
def update_document(
    document_id: int,
    payload: DocumentUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.update_document(
        db, user, document_id, title=payload.title, field_values=payload.field_values
    )


@router.delete("/documents/{document_id}", status_code=204)
def delete_document(
    document_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    services.delete_document(db, user, document_id)
    return Response(status_code=204)


# --- Lifecycle ---


@router.post("/documents/{document_id}/submit", response_model=DocumentResponse)
def submit_for_approval(
    document_id: int,
    payload: Optional[DocumentSubmit] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return lifecycle.submit_for_approval(
        db, document_id, user, manual_approver_id=payload.approver_id if payload else None
    )


@router.post("/documents/{document_id}/approve", response_model=DocumentResponse)
def approve_document(
    document_id: int,
    payload: Optional[DecisionRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return lifecycle.decide(
        db,
        document_id,
        user,
        DecisionAction.APPROVE,
        comment=payload.comment if payload else None,
    )


@router.post("/documents/{document_id}/reject", response_model=DocumentResponse)
def reject_document(
    document_id: int,
    payload: Optional[DecisionRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return lifecycle.decide(
        db,
        document_id,
        user,
        DecisionAction.REJECT,
        comment=payload.comment if payload else None,
    )


@router.patch("/documents/{document_id}/status", response_model=DocumentResponse)
def override_status(
    document_id: int,
    payload: StatusOverride,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return lifecycle.override_status(db, document_id, user, payload.status)


@router.get("/documents/{document_id}/approvals", response_model=list[ApprovalResponse])
def list_document_approvals(
    document_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_document_approvals(db, user, document_id)


@router.get("/documents/{document_id}/history", response_model=list[AuditLogResponse])
def get_history(
    document_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.get_history(db, user, document_id)


# --- Comments ---


@router.get("/documents/{document_id}/comments", response_model=list[CommentResponse])
def list_comments(
    document_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_comments(db, user, document_id)


@router.post(
    "/documents/{document_id}/comments",
    response_model=CommentResponse,
    status_code=201,
)
def add_comment(
    document_id: int,
    payload: CommentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.add_comment(db, user, document_id, payload.text)


# --- Approvals ---


@router.get("/approvals/my", response_model=list[MyApprovalResponse])
def my_approvals(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [
        MyApprovalResponse(
            id=approval.id,
            document_id=approval.document.id,
            document_number=approval.document.number,
            document_title=approval.document.title,
            document_status=approval.document.status,
            step_number=approval.step_number,
            initiator_id=approval.document.initiator_id,
        )
        for approval in services.list_my_approvals(db, user)
    ]


@router.post("/approvals/{approval_id}/decision", response_model=DocumentResponse)
def decide_approval(
    approval_id: int,
    payload: ApprovalDecision,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return lifecycle.decide_approval(
        db, approval_id, user, payload.action, comment=payload.comment
    )


@router.get("/approvers", response_model=list[UserResponse])
def list_approvers(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_approvers(db)


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.get_dashboard(db, user)


# --- Templates ---


@router.get("/templates", response_model=list[TemplateResponse])
def list_templates(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_templates(db)


@router.get("/templates/{template_id}", response_model=TemplateResponse)
def get_template(
    template_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.get_template(db, template_id)


@router.post("/templates", response_model=TemplateResponse, status_code=201)
def create_template(
    payload: TemplateCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.create_template(
        db,
        user,
        name=payload.name,
        description=payload.description,
        content=payload.content,
        fields=[field.model_dump() for field in payload.fields],
    )


@router.put("/templates/{template_id}", response_model=TemplateResponse)
def update_template(
    template_id: int,
    payload: TemplateUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    changes = payload.model_dump(exclude_unset=True)
    return services.update_template(db, user, template_id, **changes)


@router.delete("/templates/{template_id}", status_code=204)
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    services.delete_template(db, user, template_id)
    return Response(status_code=204)


# --- Approval routes ---


@router.get("/routes", response_model=list[RouteResponse])
def list_routes(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.list_routes(db, user)


@router.get("/routes/{route_id}", response_model=RouteResponse)
def get_route(
    route_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.get_route(db, user, route_id)


@router.post("/routes", response_model=RouteResponse, status_code=201)
def create_route(
    payload: RouteCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.create_route(
        db,
        user,
        name=payload.name,
        template_id=payload.template_id,
        steps=[step.model_dump() for step in payload.steps],
        description=payload.description,
    )


@router.put("/routes/{route_id}", response_model=RouteResponse)
def update_route(
    route_id: int,
    payload: RouteUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.update_route(
        db,
        user,
        route_id,
        name=payload.name,
        description=payload.description,
        steps=[step.model_dump() for step in payload.steps] if payload.steps else None,
    )


@router.delete("/routes/{route_id}", status_code=204)
def delete_route(
    route_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    services.delete_route(db, user, route_id)
    return Response(status_code=204)


# --- Users ---


@router.get("/users", response_model=list[UserResponse])
def list_users(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not user.is_admin:
        # Non-admins only ever see themselves
        return [user]
    return services.list_users(db)


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.create_user(
        db, user, name=payload.name, email=payload.email, role=payload.role
    )


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.update_user(
        db, user, user_id, name=payload.name, email=payload.email, role=payload.role
    )


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    services.delete_user(db, user, user_id)
    return Response(status_code=204)


# --- Notifications ---


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    items, unread = services.list_notifications(db, user)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(item) for item in items],
        unread_count=unread,
    )


@router.patch("/notifications", response_model=NotificationsMarked)
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return NotificationsMarked(updated=services.mark_all_notifications_read(db, user))


@router.patch("/notifications/{notification_id}", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return services.mark_notification_read(db, user, notification_id)


@router.delete("/notifications/{notification_id}", status_code=204)
def delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    services.delete_notification(db, user, notification_id)
    return Response(status_code=204)
