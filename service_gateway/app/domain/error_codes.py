"""
Well-known NPHIES business error codes and their remediation hints.

Upstream codes are open-ended strings; anything not listed here is passed
through to the caller untouched, just without a suggestion.
"""

from typing import Dict, NamedTuple, Optional


class ErrorCodeInfo(NamedTuple):
    code: str
    message: str
    suggestion: str


NPHIES_ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    info.code: info
    for info in (
        ErrorCodeInfo("E001", "Invalid patient ID format",
                      "Ensure patient ID is a 10-digit Saudi National ID"),
        ErrorCodeInfo("E002", "Insurance policy is not active",
                      "Verify policy status and coverage dates"),
        ErrorCodeInfo("E003", "Provider is not registered with insurance network",
                      "Contact insurance company to verify network participation"),
        ErrorCodeInfo("E004", "Service requires pre-authorization",
                      "Submit pre-authorization request before proceeding"),
        ErrorCodeInfo("E005", "Duplicate claim submission detected",
                      "Check existing claims with same reference number"),
        ErrorCodeInfo("E006", "Invalid or outdated diagnosis code",
                      "Use current ICD-10 diagnosis codes"),
        ErrorCodeInfo("E007", "Service date is outside coverage period",
                      "Verify service date falls within policy coverage period"),
        ErrorCodeInfo("E008", "Required documentation is missing",
                      "Attach all required supporting documents for this service type"),
    )
}


def suggestion_for(code: Optional[str]) -> Optional[str]:
    info = NPHIES_ERROR_CODES.get(code or "")
    return info.suggestion if info else None
