"""
SealedGallery - Error Hierarchy

Every failure the access-control protocol can report to a caller. Each error
carries a stable machine-readable code and the HTTP status the API surfaces it
with, so clients can tell "you are not allowed" apart from "you already have
access" apart from "malformed request".
"""

from typing import Any

from retry import RetryableError


class GalleryError(Exception):
    """
    Base exception for all SealedGallery errors.

    Attributes:
        code: Stable error code used on the wire
        http_status: Status code used by the HTTP API
        details: Optional structured context (never key material)
    """

    code = "gallery_error"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON error payload used by the API."""
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Caller errors
# =============================================================================

class InvalidInputError(GalleryError):
    """Malformed arguments. The caller's fault; not retried."""

    code = "invalid_input"
    http_status = 400


class MalformedInputError(InvalidInputError):
    """A ciphertext package or wire payload that cannot be parsed."""

    code = "malformed_input"


class NotFoundError(GalleryError):
    """Unknown content item or blob handle."""

    code = "not_found"
    http_status = 404


class BlobNotFoundError(NotFoundError):
    """The blob store has no content for a handle."""

    code = "blob_not_found"


class NotAuthorizedError(GalleryError):
    """Permission check failed. Never silently downgraded."""

    code = "not_authorized"
    http_status = 403


# =============================================================================
# Business rule violations
# =============================================================================

class BusinessRuleError(GalleryError):
    """A user-actionable violation of the purchase rules."""

    code = "business_rule"
    http_status = 409


class AlreadyPurchasedError(BusinessRuleError):
    """The principal already holds a purchase record for the item."""

    code = "already_purchased"


class SelfPurchaseError(BusinessRuleError):
    """The creator tried to buy their own item."""

    code = "self_purchase"


class PriceMismatchError(BusinessRuleError):
    """Payment differs from the fixed access price (under or over)."""

    code = "price_mismatch"
    http_status = 402


class PaymentError(GalleryError):
    """Routing the payment to the creator failed."""

    code = "payment_failed"
    http_status = 402


class InsufficientFundsError(PaymentError):
    """The payer's balance cannot cover the transfer."""

    code = "insufficient_funds"


class TransferRejectedError(PaymentError):
    """The recipient refused the transfer."""

    code = "transfer_rejected"


# =============================================================================
# Authorization protocol failures
# =============================================================================

class AuthorizationFailedError(GalleryError):
    """The request must be rebuilt and re-signed, not retried verbatim."""

    code = "authorization_failed"
    http_status = 401


class SignatureInvalidError(AuthorizationFailedError):
    """Signer recovery failed or does not match the claimed principal."""

    code = "signature_invalid"


class ExpiredRequestError(AuthorizationFailedError):
    """The current time is outside the request's validity window."""

    code = "expired_request"


class IntegrityError(GalleryError):
    """Authenticated decryption failed. Retrying cannot change the outcome."""

    code = "integrity_error"
    http_status = 422


# =============================================================================
# Transient collaborator failures
# =============================================================================

class AuthorityUnavailableError(GalleryError, RetryableError):
    """The authorization service could not be reached."""

    code = "authority_unavailable"
    http_status = 503


class BlobStoreUnavailableError(GalleryError, RetryableError):
    """The blob store could not be reached."""

    code = "blob_store_unavailable"
    http_status = 503


_ERRORS_BY_CODE: dict[str, type[GalleryError]] = {}


def _register(cls: type[GalleryError]) -> None:
    _ERRORS_BY_CODE[cls.code] = cls
    for sub in cls.__subclasses__():
        _register(sub)


_register(GalleryError)


def error_from_dict(payload: dict[str, Any], default_status: int = 500) -> GalleryError:
    """
    Rebuild a typed error from an API error payload.

    Args:
        payload: Dict with "error" (code) and "message"
        default_status: Status used when the code is unknown

    Returns:
        The matching GalleryError subclass instance
    """
    code = payload.get("error", "")
    message = payload.get("message") or str(code) or "Unknown error"
    cls = _ERRORS_BY_CODE.get(code)
    if cls is None:
        error = GalleryError(message, payload.get("details"))
        error.http_status = default_status
        return error
    return cls(message, payload.get("details"))
