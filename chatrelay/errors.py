"""
Error taxonomy for the relay.

ValidationError, NotFoundError, ConflictError and SignatureError are
surfaced to API callers. ProviderError and GeneratorError are absorbed by the message
router. PersistenceError is the only fatal class.
"""


class RelayError(Exception):
    """Base class for all relay errors."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(RelayError):
    """Required fields missing or malformed; nothing was persisted."""

    status_code = 400


class NotFoundError(RelayError):
    """Referenced channel, session, contact or message does not exist."""

    status_code = 404

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(RelayError):
    status_code = 409


class ProviderError(RelayError):
    """Delivery through the messaging provider failed."""

    status_code = 502


class GeneratorError(RelayError):
    """Automated reply generation failed or timed out."""

    status_code = 502


class PersistenceError(RelayError):
    """The conversation store is unavailable."""

    status_code = 500


class SignatureError(RelayError):
    """Webhook request signature did not match."""

    status_code = 403
