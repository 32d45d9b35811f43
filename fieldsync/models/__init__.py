"""Database models."""

from fieldsync.models.partner import Partner, District, School
from fieldsync.models.user import User, UserRole, ADMIN_ROLES
from fieldsync.models.device_token import DeviceToken, DeviceTokenState
from fieldsync.models.survey import SurveyResponse, ImmutableFieldError, IMMUTABLE_FIELDS
from fieldsync.models.audit import AuditLog, AuditSeverity

__all__ = [
    # Reference data
    "Partner",
    "District",
    "School",
    # Users
    "User",
    "UserRole",
    "ADMIN_ROLES",
    # Device credentials
    "DeviceToken",
    "DeviceTokenState",
    # Surveys
    "SurveyResponse",
    "ImmutableFieldError",
    "IMMUTABLE_FIELDS",
    # Audit
    "AuditLog",
    "AuditSeverity",
]
