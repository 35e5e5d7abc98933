"""
errors.py - Exception taxonomy for the telemetry gateway.

Batcher "nothing to flush" cases are not errors: they return None.
Everything here is raised by the pipeline stages or their collaborators
and surfaced to the caller (HTTP layer, dispatcher, relayer).
"""
from typing import Optional


class GatewayError(Exception):
    """Base class for every error raised by the gateway core.

    `stage` is filled in by the pipeline with the stage that failed.
    """
    stage: Optional[str] = None


class ConfigError(GatewayError):
    pass


class EmptyInputError(GatewayError, ValueError):
    """A Merkle root was requested over an empty batch."""


class SigningUnavailableError(GatewayError):
    """No private-key-holding gateway identity is configured."""


class RegistryUnavailableError(GatewayError):
    """The registry could not be reached (nonce read, domain read or submit)."""


class SubmissionRejectedError(GatewayError):
    """The registry refused a signed submission.

    `reason` is one of the wire reasons: unauthorized-signer,
    nonce-mismatch, malformed-payload.
    """
    reason = "rejected"
    retryable = False

    def __init__(self, message: str = "", reason: Optional[str] = None):
        if reason:
            self.reason = reason
        super().__init__(message or self.reason)


class NonceMismatchError(SubmissionRejectedError):
    """Someone else already advanced the counter. Re-fetch, re-sign, resubmit."""
    reason = "nonce-mismatch"
    retryable = True


class UnauthorizedSignerError(SubmissionRejectedError):
    reason = "unauthorized-signer"


class MalformedPayloadError(SubmissionRejectedError):
    reason = "malformed-payload"


REJECTIONS: dict[str, type[SubmissionRejectedError]] = {
    NonceMismatchError.reason:      NonceMismatchError,
    UnauthorizedSignerError.reason: UnauthorizedSignerError,
    MalformedPayloadError.reason:   MalformedPayloadError,
}


def rejection_for(reason: Optional[str], message: str = "") -> SubmissionRejectedError:
    """Build the typed rejection for a registry reason string."""
    cls = REJECTIONS.get(reason or "", SubmissionRejectedError)
    return cls(message, reason=reason)


class ArchiveError(GatewayError):
    pass


class PayloadTooSmallError(ArchiveError):
    def __init__(self, size: int, min_size: int):
        self.size = size
        self.min_size = min_size
        super().__init__(f"payload too small: {size} bytes (archive minimum is {min_size})")


class ArchiveUnavailableError(ArchiveError):
    pass


class AttestorUnavailableError(GatewayError):
    pass
