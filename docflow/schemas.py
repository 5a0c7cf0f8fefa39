from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field

from docflow.enums import (
    ApprovalStatus,
    AuditAction,
    DecisionAction,
    DocumentStatus,
    NotificationType,
    UserRole,
)


# --- User schemas ---


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    role: UserRole = UserRole.USER


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    role: UserRole
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Template schemas ---


class TemplateField(BaseModel):
    name: str
    label: Optional[str] = None
    type: str = "text"
    required: bool = False


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    content: Optional[str] = None
    fields: list[TemplateField] = []


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    content: Optional[str] = None
    fields: Optional[list[TemplateField]] = None


class TemplateResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    content: Optional[str]
    fields: Optional[list[dict[str, Any]]]
    created_by_id: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# --- Route schemas ---


class RouteStepIn(BaseModel):
    step_number: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    approver_ids: list[int] = []
    approver_role: Optional[UserRole] = None
    require_all: bool = False


class RouteCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    template_id: int
    steps: list[RouteStepIn] = Field(min_length=1)


class RouteUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    steps: Optional[list[RouteStepIn]] = Field(default=None, min_length=1)


class RouteStepResponse(BaseModel):
    step_number: int
    name: str
    description: Optional[str]
    approver_ids: list[int]
    approver_role: Optional[UserRole]
    require_all: bool

    model_config = {"from_attributes": True}


class RouteResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    template_id: int
    steps: list[RouteStepResponse]
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Document schemas ---


class DocumentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    template_id: int
    field_values: dict[str, Any] = {}


class DocumentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    field_values: Optional[dict[str, Any]] = None


class DocumentSubmit(BaseModel):
    # Only consulted when the template has no approval route
    approver_id: Optional[int] = None


class DecisionRequest(BaseModel):
    comment: Optional[str] = None


class ApprovalDecision(BaseModel):
    action: DecisionAction
    comment: Optional[str] = None


class StatusOverride(BaseModel):
    status: DocumentStatus


class ApprovalResponse(BaseModel):
    id: int
    document_id: int
    approver_id: int
    submission_round: int
    step_number: Optional[int]
    status: ApprovalStatus
    comment: Optional[str]
    decided_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentResponse(BaseModel):
    id: int
    number: Optional[str]
    title: str
    status: DocumentStatus
    template_id: Optional[int]
    initiator_id: int
    current_approver_id: Optional[int]
    current_step_number: Optional[int]
    field_values: Optional[dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DocumentDetailResponse(DocumentResponse):
    approvals: list[ApprovalResponse] = []


class MyApprovalResponse(BaseModel):
    id: int
    document_id: int
    document_number: Optional[str]
    document_title: str
    document_status: DocumentStatus
    step_number: Optional[int]
    initiator_id: int


# --- History, comments, notifications ---


class AuditLogResponse(BaseModel):
    id: int
    action: AuditAction
    document_id: int
    user_id: int
    metadata: dict[str, Any] = Field(validation_alias="details")
    created_at: datetime

    model_config = {"from_attributes": True}


class CommentCreate(BaseModel):
    text: str = Field(min_length=1, max_length=5000)


class CommentResponse(BaseModel):
    id: int
    document_id: int
    user_id: int
    text: str
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationResponse(BaseModel):
    id: int
    type: NotificationType
    message: str
    document_id: Optional[int]
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int


class NotificationsMarked(BaseModel):
    updated: int


# --- Dashboard ---


class DashboardStats(BaseModel):
    total: int
    by_status: dict[DocumentStatus, int]


class DashboardResponse(BaseModel):
    stats: DashboardStats
    pending_approvals: list[DocumentResponse]
    recent_documents: list[DocumentResponse]
    recent_activity: list[AuditLogResponse]
