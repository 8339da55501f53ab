"""
Domain layer for the Gateway Service.

Request/response models, the pure validation rules applied before anything
is sent upstream, and the catalogue of known NPHIES business error codes.
"""

from .models import (
    ClaimRequest,
    EligibilityRequest,
    GatewayResponse,
    PreAuthRequest,
)
from .validators import (
    ValidationResult,
    validate_claim_request,
    validate_eligibility_request,
    validate_preauth_request,
)

__all__ = [
    "ClaimRequest",
    "EligibilityRequest",
    "GatewayResponse",
    "PreAuthRequest",
    "ValidationResult",
    "validate_claim_request",
    "validate_eligibility_request",
    "validate_preauth_request",
]
