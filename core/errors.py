"""
core/errors.py — Identity Core Error Taxonomy
===============================================
Every failure the core knows how to describe is an IdentityCoreError.

Each error carries:
    code            → stable machine-readable identifier (returned in results)
    category        → coarse bucket the HTTP layer maps to a status code
    public_message  → generic text that is safe to show outside the service

The detailed message stays inside the service (logs, result objects).
Anything that is NOT an IdentityCoreError is a bug and propagates.
"""


class IdentityCoreError(Exception):
    code = "internalError"
    category = "internal"
    public_message = "The request could not be completed."

    def __init__(self, message: str = "", **details):
        self.message = message or self.public_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(IdentityCoreError):
    code = "validationError"
    category = "invalid_request"
    public_message = "The request is malformed."


class InvalidDIDError(ValidationError):
    code = "invalidDid"
    public_message = "The DID is not well formed."


class AttributeNotFoundError(ValidationError):
    code = "attributeNotFound"
    public_message = "A requested attribute is not part of the credential."


class RangeProofError(ValidationError):
    code = "outOfRange"
    public_message = "The attribute does not satisfy the requested range."


class NotFoundError(IdentityCoreError):
    code = "notFound"
    category = "not_found"
    public_message = "The requested resource was not found."


class DecryptionError(IdentityCoreError):
    code = "decryptionFailed"
    category = "access_denied"
    public_message = "The supplied wallet credentials cannot open this record."


class IntegrityError(IdentityCoreError):
    code = "integrityViolation"
    category = "integrity"
    public_message = "A stored record failed its integrity check."


class ChainUnavailableError(IdentityCoreError):
    code = "chainUnavailable"
    category = "unavailable"
    public_message = "The ledger is currently unavailable."


class ReplayError(IdentityCoreError):
    code = "replayDetected"
    category = "replay"
    public_message = "This proof has already been used."


class ExpiredError(IdentityCoreError):
    code = "expired"
    category = "expired"
    public_message = "The proof or challenge has expired."


class ConflictError(IdentityCoreError):
    code = "conflict"
    category = "conflict"
    public_message = "The resource already exists or was modified concurrently."
