"""Translate identity-provider error responses into actionable failures.

Providers return the OAuth ``error`` / ``error_description`` pair. Microsoft Entra
additionally embeds ``AADSTSnnnnn`` codes in the description (and in
``error_codes``), which are far more specific than the OAuth error.
"""

import re
from typing import Optional, Type

from rosterauth.main.exceptions import (
    ConsentRequired,
    ProviderError,
    ProviderUnavailable,
    RedirectUriMismatch,
    TenantRestricted,
    UserCancelled,
)

AADSTS_PATTERN = re.compile(r"AADSTS(\d+)")

# Entra sign-in error codes
PROVIDER_CODE_MAP: dict[str, Type[ProviderError]] = {
    "50011": RedirectUriMismatch,  # reply URL does not match
    "500113": RedirectUriMismatch,  # no reply address registered
    "50020": TenantRestricted,  # account not from an allowed tenant
    "50194": TenantRestricted,  # app is not configured as multi-tenant
    "90072": TenantRestricted,  # account must be added as an external user
    "500200": TenantRestricted,  # personal accounts not allowed
    "530003": TenantRestricted,  # conditional access: device not compliant
    "53003": TenantRestricted,  # blocked by conditional access
    "65001": ConsentRequired,
    "90094": ConsentRequired,  # admin consent required
    "900971": RedirectUriMismatch,  # no reply address provided
    "90033": ProviderUnavailable,
    "90055": ProviderUnavailable,  # throttled
}

USER_CANCEL_CODES = {"65004"}  # user declined consent

OAUTH_ERROR_MAP: dict[str, Type[ProviderError]] = {
    "consent_required": ConsentRequired,
    "temporarily_unavailable": ProviderUnavailable,
    "server_error": ProviderUnavailable,
    "unauthorized_client": TenantRestricted,
}

# Last resort for providers that only describe the problem in prose
DESCRIPTION_PATTERNS: list[tuple[re.Pattern, Type[ProviderError]]] = [
    (re.compile(r"redirect[_ ]uri.*(mismatch|does not match|not registered)", re.I), RedirectUriMismatch),
    (re.compile(r"(tenant|domain|organi[sz]ation).*(not allowed|restricted|does not exist)", re.I), TenantRestricted),
]


def extract_provider_codes(
    error_description: Optional[str], error_codes: Optional[str] = None
) -> list[str]:
    codes = AADSTS_PATTERN.findall(error_description or "")
    if error_codes:
        codes.extend(c.strip("[] ") for c in str(error_codes).replace(",", " ").split())
    return [c for c in codes if c]


def classify_provider_error(
    error: Optional[str],
    error_description: Optional[str] = None,
    error_codes: Optional[str] = None,
) -> UserCancelled | ProviderError:
    """Map a provider error response to the matching failure instance.

    ``access_denied`` is the user cancelling (or declining consent), unless a
    more specific provider code says the provider itself refused access.
    """
    detail = f"{error}: {error_description}" if error_description else (error or "")
    codes = extract_provider_codes(error_description, error_codes)

    for code in codes:
        if code in PROVIDER_CODE_MAP:
            return PROVIDER_CODE_MAP[code](
                f"AADSTS{code} {detail}",
                error=error,
                error_description=error_description,
            )

    if error == "access_denied" or any(code in USER_CANCEL_CODES for code in codes):
        return UserCancelled(detail)

    if error in OAUTH_ERROR_MAP:
        return OAUTH_ERROR_MAP[error](
            detail, error=error, error_description=error_description
        )

    for pattern, exc_class in DESCRIPTION_PATTERNS:
        if error_description and pattern.search(error_description):
            return exc_class(detail, error=error, error_description=error_description)

    return ProviderError(detail, error=error, error_description=error_description)
