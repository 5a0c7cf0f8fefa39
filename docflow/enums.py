"""Status and tag enumerations shared by the models and the routing engine."""

import enum


class UserRole(str, enum.Enum):
    USER = "USER"
    APPROVER = "APPROVER"
    ADMIN = "ADMIN"


APPROVER_ROLES = (UserRole.APPROVER, UserRole.ADMIN)


class DocumentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    IN_APPROVAL = "IN_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DecisionAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AuditAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    STATUS_CHANGED = "status_changed"
    FULLY_APPROVED = "fully_approved"


class NotificationType(str, enum.Enum):
    APPROVAL_REQUEST = "APPROVAL_REQUEST"
    DOCUMENT_APPROVED = "DOCUMENT_APPROVED"
    DOCUMENT_REJECTED = "DOCUMENT_REJECTED"
    NEW_COMMENT = "NEW_COMMENT"
