"""
Domain validation rules for NPHIES submissions.

All functions here are pure: they never raise and never touch I/O. Request
validators run every check regardless of earlier failures and report the
messages in a fixed order (patient, insurance/provider, dates, nested lines,
enumerations), so a caller can fix everything in one round trip.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, List

from .models import ClaimRequest, EligibilityRequest, PreAuthRequest

PATIENT_ID_RE = re.compile(r"^[0-9]{10}$")
PROVIDER_ID_RE = re.compile(r"^[0-9]{7}$")
INSURANCE_ID_RE = re.compile(r"^[A-Z0-9]{8,12}$")
SERVICE_CODE_RE = re.compile(r"^[A-Z0-9]{3,10}$")
DIAGNOSIS_CODE_RE = re.compile(r"^[A-Z][0-9]{2}(\.[0-9]{1,2})?$")
SERVICE_DATE_RE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")

CLAIM_TYPES = ("inpatient", "outpatient", "pharmacy", "dental")
URGENCY_LEVELS = ("routine", "urgent", "emergency")
GENDERS = ("M", "F")
DIAGNOSIS_TYPES = ("primary", "secondary")
MIN_JUSTIFICATION_LENGTH = 10
MAX_REQUEST_ID_LENGTH = 128


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str]) -> "ValidationResult":
        return cls(is_valid=not errors, errors=list(errors))


def _matches(pattern: "re.Pattern[str]", value: Any) -> bool:
    # fullmatch so a trailing newline never passes
    return isinstance(value, str) and pattern.fullmatch(value) is not None


def _is_positive_amount(value: Any) -> bool:
    # NaN and infinities compare oddly, so test finiteness first
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate_patient_id(value: Any) -> bool:
    """Saudi national ID: exactly 10 digits."""
    return _matches(PATIENT_ID_RE, value)


def validate_provider_id(value: Any) -> bool:
    """Provider code: exactly 7 digits."""
    return _matches(PROVIDER_ID_RE, value)


def validate_insurance_id(value: Any) -> bool:
    """Policy ID: 8 to 12 uppercase letters or digits."""
    return _matches(INSURANCE_ID_RE, value)


def validate_service_code(value: Any) -> bool:
    """Procedure/service code: 3 to 10 uppercase letters or digits."""
    return _matches(SERVICE_CODE_RE, value)


def validate_diagnosis_code(value: Any) -> bool:
    """ICD-10 style code, e.g. ``A01`` or ``C78.12``."""
    return _matches(DIAGNOSIS_CODE_RE, value)


def validate_service_date(value: Any) -> bool:
    """A real calendar date written as ``YYYY-MM-DD``."""
    if not _matches(SERVICE_DATE_RE, value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def validate_eligibility_request(request: EligibilityRequest) -> ValidationResult:
    errors: List[str] = []

    if not validate_patient_id(request.patient_id):
        errors.append("Invalid patient ID format. Must be 10-digit Saudi National ID.")

    if not validate_insurance_id(request.insurance_id):
        errors.append("Invalid insurance ID format.")

    if not validate_provider_id(request.provider_id):
        errors.append("Invalid provider ID format. Must be 7-digit provider code.")

    if not request.service_date or not validate_service_date(request.service_date):
        errors.append("Invalid or missing service date.")

    return ValidationResult.from_errors(errors)


def validate_claim_request(request: ClaimRequest) -> ValidationResult:
    errors: List[str] = []

    patient = request.patient_info
    if not validate_patient_id(patient.id):
        errors.append("Invalid patient ID in patient info.")
    if _is_blank(patient.name):
        errors.append("Patient name is required.")
    if patient.gender not in GENDERS:
        errors.append("Invalid patient gender. Must be one of: " + ", ".join(GENDERS))

    provider = request.provider_info
    if not validate_provider_id(provider.id):
        errors.append("Invalid provider ID in provider info.")
    if _is_blank(provider.name):
        errors.append("Provider name is required.")
    if _is_blank(provider.license):
        errors.append("Provider license is required.")

    for index, service in enumerate(request.services):
        if not validate_service_code(service.code):
            errors.append(f"Invalid service code at index {index}: {service.code}")
        if _is_blank(service.description):
            errors.append(f"Missing description at service index {index}")
        if not _is_positive_amount(service.quantity):
            errors.append(f"Invalid quantity at service index {index}")
        if not _is_positive_amount(service.unit_price):
            errors.append(f"Invalid unit price at service index {index}")

    for index, diagnosis in enumerate(request.diagnosis):
        if not validate_diagnosis_code(diagnosis.code):
            errors.append(f"Invalid diagnosis code at index {index}: {diagnosis.code}")
        if _is_blank(diagnosis.description):
            errors.append(f"Missing description at diagnosis index {index}")
        if diagnosis.type not in DIAGNOSIS_TYPES:
            errors.append(
                f"Invalid diagnosis type at index {index}. Must be one of: " + ", ".join(DIAGNOSIS_TYPES)
            )

    if not _is_positive_amount(request.total_amount):
        errors.append("Total amount must be greater than zero.")

    if request.claim_type not in CLAIM_TYPES:
        errors.append("Invalid claim type. Must be one of: " + ", ".join(CLAIM_TYPES))

    return ValidationResult.from_errors(errors)


def validate_preauth_request(request: PreAuthRequest) -> ValidationResult:
    errors: List[str] = []

    if not validate_patient_id(request.patient_id):
        errors.append("Invalid patient ID format. Must be 10-digit Saudi National ID.")

    if not validate_provider_id(request.provider_id):
        errors.append("Invalid provider ID format. Must be 7-digit provider code.")

    if not request.service_requested.strip():
        errors.append("Requested service is required.")

    if len(request.medical_justification) < MIN_JUSTIFICATION_LENGTH:
        errors.append(
            f"Medical justification must be at least {MIN_JUSTIFICATION_LENGTH} characters."
        )

    if not _is_positive_amount(request.estimated_cost):
        errors.append("Estimated cost must be greater than zero.")

    if request.urgency not in URGENCY_LEVELS:
        errors.append("Invalid urgency. Must be one of: " + ", ".join(URGENCY_LEVELS))

    for index, document in enumerate(request.supporting_documents or []):
        if not document.strip():
            errors.append(f"Empty supporting document reference at index {index}")

    if request.request_id is not None and not 0 < len(request.request_id) <= MAX_REQUEST_ID_LENGTH:
        errors.append(f"Request ID must be 1 to {MAX_REQUEST_ID_LENGTH} characters.")

    return ValidationResult.from_errors(errors)
