from enum import Enum
from typing import Optional

GENERIC_AUTH_FAILURE = "Authentication failed. Please try again."


class ErrorCodes(int, Enum):
    CONFIG_ERROR = 9001
    DISCOVERY_ERROR = 9002
    USER_CANCELLED = 9003
    PROVIDER_ERROR = 9004
    REDIRECT_URI_MISMATCH = 9005
    TENANT_RESTRICTED = 9006
    CONSENT_REQUIRED = 9007
    PROVIDER_UNAVAILABLE = 9008
    STATE_MISMATCH = 9009
    MISSING_CODE = 9010
    EXCHANGE_FAILED = 9011
    NO_TOKEN_ISSUED = 9012
    NO_EMAIL = 9013
    SESSION_INVALID = 9014
    FEDERATION_FAILED = 9015


class AuthFlowError(Exception):
    """Base class for every way a sign-in attempt can fail.

    ``str(exc)`` carries operator detail for logs; ``user_message`` is the only
    text that may be shown to the person signing in.
    """

    user_message: str = GENERIC_AUTH_FAILURE
    retryable: bool = True

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None):
        super().__init__(detail or self.__class__.__name__)
        if user_message is not None:
            self.user_message = user_message


class ConfigError(AuthFlowError):
    user_message = "Sign-in is not configured correctly. Contact your administrator."
    retryable = False


class DiscoveryError(AuthFlowError):
    user_message = (
        "Could not reach the sign-in service. Check your connection and try again."
    )


class UserCancelled(AuthFlowError):
    user_message = "Sign-in was cancelled."


class ProviderError(AuthFlowError):
    """The identity provider rejected the request."""

    user_message = "The sign-in service rejected the request. Please try again."

    def __init__(
        self,
        detail: str = "",
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(detail or error or "", user_message=user_message)
        self.error = error
        self.error_description = error_description


class RedirectUriMismatch(ProviderError):
    user_message = (
        "This app's sign-in address is not registered with your organization. "
        "Contact your administrator."
    )
    retryable = False


class TenantRestricted(ProviderError):
    user_message = (
        "Your account belongs to an organization that is not allowed to use this app. "
        "Sign in with your school account."
    )


class ConsentRequired(ProviderError):
    user_message = (
        "Your organization needs to approve this app before you can sign in. "
        "Contact your administrator."
    )
    retryable = False


class FederationFailed(AuthFlowError):
    """The internal identity backend refused or failed the credential exchange."""

    user_message = "We could not verify your account right now. Please try again."


class ProviderUnavailable(ProviderError):
    user_message = (
        "The sign-in service is temporarily unavailable. Please try again in a moment."
    )


class StateMismatch(AuthFlowError):
    """Returned state does not match a pending attempt. Treated as an attack signal."""


class MissingCode(AuthFlowError):
    """Successful redirect without an authorization code."""


class ExchangeFailed(AuthFlowError):
    """Token endpoint rejected the code. A new attempt is required."""

    def __init__(
        self,
        detail: str = "",
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        user_message: Optional[str] = None,
        provider_error: Optional[AuthFlowError] = None,
    ):
        super().__init__(detail or error or "", user_message=user_message)
        self.error = error
        self.error_description = error_description
        self.provider_error = provider_error


class NoTokenIssued(AuthFlowError):
    pass


class NoEmail(AuthFlowError):
    user_message = (
        "Your account did not share an email address. "
        "Sign in with your school account or contact your administrator."
    )


class SessionInvalid(AuthFlowError):
    user_message = "Your session has expired. Please sign in again."


# (status_code, message override, error code). A None message falls back to user_message.
EXCEPTION_MAP = {
    ConfigError: (500, None, ErrorCodes.CONFIG_ERROR),
    DiscoveryError: (503, None, ErrorCodes.DISCOVERY_ERROR),
    UserCancelled: (400, None, ErrorCodes.USER_CANCELLED),
    RedirectUriMismatch: (400, None, ErrorCodes.REDIRECT_URI_MISMATCH),
    TenantRestricted: (403, None, ErrorCodes.TENANT_RESTRICTED),
    ConsentRequired: (403, None, ErrorCodes.CONSENT_REQUIRED),
    ProviderUnavailable: (503, None, ErrorCodes.PROVIDER_UNAVAILABLE),
    ProviderError: (400, None, ErrorCodes.PROVIDER_ERROR),
    StateMismatch: (400, GENERIC_AUTH_FAILURE, ErrorCodes.STATE_MISMATCH),
    MissingCode: (400, GENERIC_AUTH_FAILURE, ErrorCodes.MISSING_CODE),
    ExchangeFailed: (401, None, ErrorCodes.EXCHANGE_FAILED),
    NoTokenIssued: (401, None, ErrorCodes.NO_TOKEN_ISSUED),
    NoEmail: (401, None, ErrorCodes.NO_EMAIL),
    SessionInvalid: (401, None, ErrorCodes.SESSION_INVALID),
    FederationFailed: (502, None, ErrorCodes.FEDERATION_FAILED),
}
