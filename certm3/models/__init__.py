"""ORM model exports."""

from certm3.models.audit_event import AuditEvent
from certm3.models.certificate import Certificate, CertificateStatus
from certm3.models.group import PROTECTED_GROUP_NAME, Group, GroupStatus, UserGroup
from certm3.models.request import IdentityRequest, RequestStatus
from certm3.models.user import User, UserStatus

__all__ = [
    "PROTECTED_GROUP_NAME",
    "AuditEvent",
    "Certificate",
    "CertificateStatus",
    "Group",
    "GroupStatus",
    "IdentityRequest",
    "RequestStatus",
    "User",
    "UserGroup",
    "UserStatus",
]
