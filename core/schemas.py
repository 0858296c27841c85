"""
core/schemas.py — Identity Core Data Shapes
=============================================
Wire models (pydantic, camelCase on the wire) and internal result objects.

    DIDDocument / DIDDocumentUpdate     → W3C DID documents
    VerifiableCredential + claim sets   → one declared schema per credential type
    ZKProof / VerificationResult        → proof wire schema
    DIDResolutionResult                 → W3C DID resolution output
    StorageResult / DIDCreationResult   → service-boundary results (success + typed error)
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from core.errors import IdentityCoreError, ValidationError

DID_CONTEXT = ["https://www.w3.org/ns/did/v1", "https://w3id.org/security/suites/ed25519-2020/v1"]
CREDENTIAL_CONTEXT = ["https://www.w3.org/2018/credentials/v1", "https://personapass.org/contexts/v1"]
RESOLUTION_CONTEXT = "https://w3id.org/did-resolution/v1"


# ── Time ──────────────────────────────────────────────────────────────────────
# Naive UTC everywhere, so values round-trip through DateTime columns unchanged.
def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(value: str) -> datetime:
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as exc:
        raise ValidationError(f"Malformed timestamp: {value!r}") from exc
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def later_than(previous: Optional[str], moment: datetime) -> str:
    """`moment` as a timestamp strictly after `previous`."""
    if previous:
        floor = parse_timestamp(previous)
        if moment <= floor:
            moment = floor + timedelta(microseconds=1)
    return isoformat(moment)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── DID documents ─────────────────────────────────────────────────────────────
class VerificationMethod(CamelModel):
    id: str
    type: str
    controller: str
    public_key_base64: Optional[str] = None
    blockchain_account_id: Optional[str] = None


class ServiceEndpoint(CamelModel):
    id: str
    type: str
    service_endpoint: str


class DIDDocument(CamelModel):
    context: List[str] = Field(default_factory=lambda: list(DID_CONTEXT), alias="@context")
    id: str
    controller: Optional[str] = None
    verification_method: List[VerificationMethod] = Field(default_factory=list)
    authentication: List[str] = Field(default_factory=list)
    assertion_method: List[str] = Field(default_factory=list)
    service: List[ServiceEndpoint] = Field(default_factory=list)
    created: str
    updated: Optional[str] = None


class DIDDocumentUpdate(CamelModel):
    """Fields a controller may change. `id` and `created` are not among them."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    controller: Optional[str] = None
    verification_method: Optional[List[VerificationMethod]] = None
    authentication: Optional[List[str]] = None
    assertion_method: Optional[List[str]] = None
    service: Optional[List[ServiceEndpoint]] = None


class DIDCreationParams(CamelModel):
    wallet_address: str
    wallet_type: str
    public_key: Optional[str] = None


# ── Credential claim schemas ──────────────────────────────────────────────────
class ClaimSet(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    schema_id: ClassVar[str] = ""


class IdentityClaims(ClaimSet):
    schema_id: ClassVar[str] = "https://personapass.org/schemas/identity/v1"

    first_name: str
    last_name: str
    verified: bool = False
    date_of_birth: Optional[date] = None
    age: Optional[int] = None
    email: Optional[str] = None
    nationality: Optional[str] = None


class AgeClaims(ClaimSet):
    schema_id: ClassVar[str] = "https://personapass.org/schemas/age/v1"

    age: Optional[int] = None
    date_of_birth: Optional[date] = None
    verified: bool = False

    @model_validator(mode="after")
    def _needs_age_or_birthdate(self):
        if self.age is None and self.date_of_birth is None:
            raise ValueError("either age or dateOfBirth is required")
        return self


class GroupMembershipClaims(ClaimSet):
    schema_id: ClassVar[str] = "https://personapass.org/schemas/membership/v1"

    group_id: str
    group_name: Optional[str] = None
    role: Optional[str] = None
    member_since: Optional[date] = None


class EmploymentClaims(ClaimSet):
    schema_id: ClassVar[str] = "https://personapass.org/schemas/employment/v1"

    employer: str
    job_title: Optional[str] = None
    salary: Optional[int] = None
    start_date: Optional[date] = None
    verified: bool = False


CLAIM_SCHEMAS: Dict[str, type] = {
    "IdentityCredential": IdentityClaims,
    "AgeVerificationCredential": AgeClaims,
    "GroupMembershipCredential": GroupMembershipClaims,
    "EmploymentCredential": EmploymentClaims,
}


def validate_claims(credential_type: str, claims: dict) -> dict:
    """Validates `claims` against the declared schema; returns the normalized claim map."""
    schema = CLAIM_SCHEMAS.get(credential_type)
    if schema is None:
        raise ValidationError(f"Unknown credential type: {credential_type}")
    try:
        parsed = schema.model_validate(claims)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "claims" for err in exc.errors())
        raise ValidationError(f"Invalid claims for {credential_type}: {fields}") from exc
    return parsed.to_wire()


def schema_id_for(credential_type: str) -> str:
    schema = CLAIM_SCHEMAS.get(credential_type)
    return schema.schema_id if schema else ""


class VerifiableCredential(CamelModel):
    context: List[str] = Field(default_factory=lambda: list(CREDENTIAL_CONTEXT), alias="@context")
    id: str
    type: List[str]
    issuer_did: str
    subject_did: str
    issuance_date: str
    expiration_date: Optional[str] = None
    claims: Dict[str, Any]
    proof: Dict[str, Any] = Field(default_factory=dict)

    @property
    def credential_type(self) -> str:
        for kind in self.type:
            if kind != "VerifiableCredential":
                return kind
        return "VerifiableCredential"


# ── Proofs ────────────────────────────────────────────────────────────────────
class ProofData(CamelModel):
    proof: str
    public_signals: List[str]
    verification_key: str


class ProofMetadata(CamelModel):
    credential_type: str
    issuer_did: str
    subject_did: str
    schema_id: str
    proof_generated: str


class ZKProof(CamelModel):
    id: str
    proof_type: Literal["selective_disclosure", "membership", "range"]
    circuit_name: str
    proof_data: ProofData
    nullifier_hash: Optional[str] = None
    commitment_hash: str
    requested_attributes: List[str]
    revealed_attributes: Dict[str, Any]
    hidden_attributes: List[str]
    proof_purpose: str
    verifier_did: Optional[str] = None
    challenge: str
    expiration_time: str
    metadata: ProofMetadata


class VerificationMetadata(CamelModel):
    verification_time: str
    verifier_did: str
    nullifier_used: bool
    expiration_status: Literal["valid", "expired", "unknown"]


class VerificationResult(CamelModel):
    success: bool
    is_valid: bool
    verified_attributes: Dict[str, Any] = Field(default_factory=dict)
    proof_metadata: Optional[VerificationMetadata] = None
    error: Optional[str] = None
    error_message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def rejected(cls, error: IdentityCoreError, metadata: VerificationMetadata = None) -> "VerificationResult":
        return cls(
            success=False,
            is_valid=False,
            proof_metadata=metadata,
            error=error.code,
            error_message=error.message,
        )


class VerificationRequest(CamelModel):
    proof: ZKProof
    verifier_did: str
    expected_challenge: Optional[str] = None
    challenge_token: Optional[str] = None


class PresentationRequest(CamelModel):
    id: str
    verifier_did: str
    requested_attributes: List[str]
    purpose: str
    challenge: str
    challenge_token: str
    expires_at: str


# ── DID resolution ────────────────────────────────────────────────────────────
class DIDResolutionResult(CamelModel):
    context: str = Field(default=RESOLUTION_CONTEXT, alias="@context")
    did_document: Optional[Dict[str, Any]] = None
    did_document_metadata: Dict[str, Any] = Field(default_factory=dict)
    did_resolution_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        return self.did_resolution_metadata.get("error")

    def to_wire(self) -> dict:
        # an unresolved document is reported as an explicit null
        return self.model_dump(mode="json", by_alias=True)


# ── Service results ───────────────────────────────────────────────────────────
@dataclass
class StorageResult:
    success: bool
    data: Any = None
    error: Optional[IdentityCoreError] = None
    content_hash: Optional[str] = None
    version: Optional[int] = None
    metadata: dict = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None, **kwargs) -> "StorageResult":
        return cls(success=True, data=data, **kwargs)

    @classmethod
    def fail(cls, error: IdentityCoreError, **kwargs) -> "StorageResult":
        return cls(success=False, error=error, **kwargs)

    def unwrap(self) -> Any:
        if not self.success:
            raise self.error
        return self.data


@dataclass
class StoredCredential:
    credential: VerifiableCredential
    status: str
    content_hash: str
    status_reason: Optional[str] = None


@dataclass
class DIDCreationResult:
    success: bool
    did: Optional[str] = None
    document: Optional[DIDDocument] = None
    content_hash: Optional[str] = None
    version: Optional[int] = None
    anchor: Any = None
    error: Optional[IdentityCoreError] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def fail(cls, error: IdentityCoreError, did: str = None) -> "DIDCreationResult":
        return cls(success=False, did=did, error=error)


@dataclass
class CredentialResult:
    success: bool
    credential: Optional[VerifiableCredential] = None
    content_hash: Optional[str] = None
    status: Optional[str] = None
    anchor: Any = None
    error: Optional[IdentityCoreError] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProofResult:
    success: bool
    proof: Optional[ZKProof] = None
    anchor: Any = None
    error: Optional[IdentityCoreError] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def fail(cls, error: IdentityCoreError) -> "ProofResult":
        return cls(success=False, error=error)
