# 📦 engine/errors.py
# ─────────────────────────────
# Error taxonomy shared by the geocoder, the pairing engine and the stores


class OpenFielderError(Exception):
    """Base class for all errors raised by the core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(OpenFielderError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity.capitalize()} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(OpenFielderError):
    """A pairing precondition or state invariant was violated."""

    def __init__(self, message: str, reason: str, therapist_id: str | None = None, client_id: str | None = None):
        super().__init__(message)
        self.reason = reason
        self.therapist_id = therapist_id
        self.client_id = client_id

    def to_info(self) -> dict:
        return {
            "reason": self.reason,
            "therapist_id": self.therapist_id,
            "client_id": self.client_id,
        }


class ValidationError(OpenFielderError):
    pass


class GeocodingError(OpenFielderError):
    """Address could not be resolved; retries are already exhausted."""

    NOT_FOUND = "not_found"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_ERROR = "upstream_error"
    NETWORK_ERROR = "network_error"
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"

    def __init__(self, reason: str, address, details: str, retryable: bool = False):
        super().__init__(f"Failed to geocode address: {details}")
        self.reason = reason
        self.address = address
        self.details = details
        self.retryable = retryable

    def to_info(self) -> dict:
        address = self.address.model_dump() if hasattr(self.address, "model_dump") else self.address
        return {"reason": self.reason, "details": self.details, "address": address}


class TransientInfrastructureError(OpenFielderError):
    """Store or network unavailable after internal retries."""
