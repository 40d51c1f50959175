"""
Request-pipeline services: session resolution, identity projection,
access gating, document parsing and payment webhooks
"""

from .access_gate import AccessDecision, AccessGate, AccessReason, Policy
from .base_service import BaseService
from .file_processor import FileProcessorService
from .identity_projector import IdentityProjector
from .session_resolver import SessionResolver
from .webhooks import PaymentWebhookService

__all__ = [
    "AccessDecision",
    "AccessGate",
    "AccessReason",
    "BaseService",
    "FileProcessorService",
    "IdentityProjector",
    "PaymentWebhookService",
    "Policy",
    "SessionResolver",
]
