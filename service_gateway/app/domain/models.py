"""
Request and response models for the NPHIES gateway.

The request models describe only the *shape* of each submission: field
presence and JSON types. Every value rule (formats, enumerations, required
text, positive amounts) belongs to ``domain.validators`` so that every
violation of a well-shaped request can be reported at once.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model speaking camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class EligibilityRequest(CamelModel):
    patient_id: str
    insurance_id: str
    provider_id: str
    service_date: str
    service_type: Optional[str] = None


class PatientInfo(CamelModel):
    id: str
    name: str
    dob: str
    gender: str


class ProviderInfo(CamelModel):
    id: str
    name: str
    license: str


class ServiceLine(CamelModel):
    code: str
    description: str
    quantity: float
    unit_price: float
    date: str


class Diagnosis(CamelModel):
    code: str
    description: str
    type: str


class ClaimRequest(CamelModel):
    patient_info: PatientInfo
    provider_info: ProviderInfo
    services: List[ServiceLine]
    diagnosis: List[Diagnosis]
    total_amount: float
    claim_type: str


class PreAuthRequest(CamelModel):
    patient_id: str
    provider_id: str
    service_requested: str
    medical_justification: str
    estimated_cost: float
    urgency: str
    supporting_documents: Optional[List[str]] = None
    request_id: Optional[str] = None


class LoginRequest(BaseModel):
    username: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=6)


class UserInfo(CamelModel):
    username: str
    role: str
    provider_id: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user: UserInfo


# Upstream results. Fields the exchange may add are kept (extra="allow") and
# every documented field is optional: the gateway relays, it does not judge.

class CoverageDetails(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    policy_id: Optional[str] = None
    coverage_percentage: Optional[float] = None
    deductible: Optional[float] = None
    copayment: Optional[float] = None
    max_benefit: Optional[float] = None


class EligibilityResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    eligible: Optional[bool] = None
    coverage_details: Optional[CoverageDetails] = None
    limitations: Optional[List[str]] = None
    expiry_date: Optional[str] = None


class ClaimResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    claim_id: Optional[str] = None
    status: Optional[str] = None
    adjudicated_amount: Optional[float] = None
    rejection_reasons: Optional[List[str]] = None
    payment_date: Optional[str] = None
    reference: Optional[str] = None


class PreAuthResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    pre_auth_id: Optional[str] = None
    status: Optional[str] = None
    approved_amount: Optional[float] = None
    valid_until: Optional[str] = None
    reference: Optional[str] = None


class GatewayResponse(CamelModel):
    """The single envelope every exchange operation returns."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    code: Optional[str] = None
    suggestion: Optional[str] = None
    claim_id: Optional[str] = None
    pre_auth_id: Optional[str] = None
    timestamp: str

    # HTTP status the API surface should answer with; never serialized.
    _http_status: int = PrivateAttr(default=200)

    @property
    def http_status(self) -> int:
        return self._http_status

    def with_status(self, status: int) -> "GatewayResponse":
        self._http_status = status
        return self
