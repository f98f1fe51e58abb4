"""Error types raised by the entitlements services.

Every error is a ``ValueError`` so routers can keep treating bad input the same
way; the subclasses let them pick a more specific status code.
"""


class EntitlementsError(ValueError):
    code = "entitlements_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderRegistrationError(EntitlementsError):
    code = "provider_registration"


class ProviderNotAvailableError(EntitlementsError):
    code = "provider_not_available"


class MissingIntegrationDataError(EntitlementsError):
    code = "missing_integration_data"


class DomainValidationError(EntitlementsError):
    code = "validation_error"

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        summary = "; ".join(f"{field} {', '.join(msgs)}" for field, msgs in errors.items())
        super().__init__(summary or "invalid")


class UsageError(EntitlementsError):
    code = "usage_error"


class AdminActionError(EntitlementsError):
    code = "admin_action_rejected"


class NotFoundError(EntitlementsError):
    code = "not_found"


class ProviderOperationNotSupported(EntitlementsError, NotImplementedError):
    code = "not_supported"
