# src/errors.py
from typing import Optional


class IntegrationError(Exception):
    """Base class for everything the integration broker raises."""

    code = "1"


class UnsupportedPlatform(IntegrationError):
    code = "unsupported_platform"


class ConfigurationMissing(IntegrationError):
    code = "configuration_missing"

    def __init__(self, platform: str):
        super().__init__(f"{platform} OAuth is not configured")
        self.platform = platform


class StateInvalid(IntegrationError):
    code = "state_invalid"


class StateExpired(IntegrationError):
    code = "state_expired"


class ProviderRequestError(IntegrationError):
    """Non-2xx answer, transport failure or timeout from a provider API."""

    def __init__(self, platform: str, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(f"{platform}: {message}")
        self.platform = platform
        self.status_code = status_code
        self.body = body


class TokenExchangeFailed(IntegrationError):
    code = "token_exchange"


class NoRefreshCapability(IntegrationError):
    code = "no_refresh"


class ReauthorizationRequired(IntegrationError):
    code = "reauthorization_required"

    def __init__(self, account_id, reason: str = ""):
        super().__init__(f"account {account_id} must be reconnected" + (f": {reason}" if reason else ""))
        self.account_id = account_id
        self.reason = reason


class IdentityNotFound(IntegrationError):
    code = "identity_not_found"


class IdentityUnresolved(IntegrationError):
    code = "identity_unresolved"


class NoUsableToken(IntegrationError):
    code = "no_token"


class AccountNotFound(IntegrationError):
    code = "account_not_found"
