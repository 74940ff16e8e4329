"""Notification service package."""

from .backend import EmailBackend, InMemoryEmailBackend, OutboundEmail, SMTPEmailBackend
from .directory import HttpMemberDirectory, InMemoryMemberDirectory, MemberContact, MemberDirectory
from .service import NotificationEvent, NotificationService

__all__ = [
    "EmailBackend",
    "SMTPEmailBackend",
    "InMemoryEmailBackend",
    "OutboundEmail",
    "HttpMemberDirectory",
    "InMemoryMemberDirectory",
    "MemberContact",
    "MemberDirectory",
    "NotificationService",
    "NotificationEvent",
]
