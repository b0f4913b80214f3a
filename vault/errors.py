from typing import Any, Dict, Optional

class VaultError(Exception):
    # message is returned to the caller, context is only logged
    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def payload(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message}

class ValidationError(VaultError):
    status_code = 400
    kind = "validation_error"

class AuthenticationError(VaultError):
    status_code = 401
    kind = "authentication_error"

    def __init__(self, *, context: Optional[Dict[str, Any]] = None):
        # same message for every failed check
        super().__init__("Unauthorized", context=context)

class PolicyError(VaultError):
    status_code = 403
    kind = "policy_error"

    def __init__(self, message: str, *, reason: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {**super().payload(), "reason": self.reason}

class NotFoundError(VaultError):
    status_code = 404
    kind = "not_found"

    def __init__(self, *, context: Optional[Dict[str, Any]] = None):
        super().__init__("File not found", context=context)

class UpstreamVerificationError(VaultError):
    status_code = 409
    kind = "upstream_verification_failed"

    def payload(self) -> Dict[str, Any]:
        return {**super().payload(), "retryable": True}

class RateLimitError(VaultError):
    status_code = 429
    kind = "rate_limited"

    def __init__(self):
        super().__init__("Too many requests")

class ConfigurationError(VaultError):
    status_code = 500
    kind = "configuration_error"

    def payload(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": "Server misconfigured"}
