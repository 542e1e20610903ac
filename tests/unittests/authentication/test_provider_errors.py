import pytest

from rosterauth.authentication.provider_errors import (
    classify_provider_error,
    extract_provider_codes,
)
from rosterauth.main.exceptions import (
    ConsentRequired,
    ProviderError,
    ProviderUnavailable,
    RedirectUriMismatch,
    TenantRestricted,
    UserCancelled,
)


def test_extracts_codes_from_description_and_error_codes():
    codes = extract_provider_codes(
        "AADSTS50020: User account from identity provider does not exist in tenant.",
        "[50020, 70000]",
    )
    assert codes == ["50020", "50020", "70000"]


def test_access_denied_is_user_cancelled():
    assert isinstance(classify_provider_error("access_denied", "The user cancelled"), UserCancelled)


def test_declined_consent_code_is_user_cancelled():
    result = classify_provider_error("invalid_request", "AADSTS65004: User declined to consent")
    assert isinstance(result, UserCancelled)


@pytest.mark.parametrize(
    "description, expected",
    [
        ("AADSTS50011: The redirect URI specified in the request does not match", RedirectUriMismatch),
        ("AADSTS50020: User account from identity provider does not exist in tenant", TenantRestricted),
        ("AADSTS500200: User account is a personal Microsoft account", TenantRestricted),
        ("AADSTS65001: The user or administrator has not consented", ConsentRequired),
        ("AADSTS90033: A transient error has occurred", ProviderUnavailable),
    ],
)
def test_known_provider_codes_map_to_specific_errors(description, expected):
    result = classify_provider_error("invalid_request", description)

    assert type(result) is expected
    assert result.error == "invalid_request"
    assert result.error_description == description


def test_tenant_restriction_message_is_actionable_and_hides_raw_code():
    result = classify_provider_error(
        "access_denied", "AADSTS50020: User account does not exist in tenant"
    )

    assert isinstance(result, TenantRestricted)
    assert "AADSTS" not in result.user_message
    assert "school account" in result.user_message


def test_error_codes_parameter_alone_is_enough():
    result = classify_provider_error("invalid_client", None, "50011")
    assert isinstance(result, RedirectUriMismatch)


@pytest.mark.parametrize(
    "error, expected",
    [
        ("consent_required", ConsentRequired),
        ("temporarily_unavailable", ProviderUnavailable),
        ("server_error", ProviderUnavailable),
        ("unauthorized_client", TenantRestricted),
    ],
)
def test_oauth_standard_errors(error, expected):
    assert type(classify_provider_error(error)) is expected


def test_description_patterns_for_providers_without_codes():
    result = classify_provider_error(
        "invalid_request", "redirect_uri does not match the registered value"
    )
    assert isinstance(result, RedirectUriMismatch)


def test_unknown_error_is_generic_provider_error():
    result = classify_provider_error("invalid_scope", "Scope foo is not valid")

    assert type(result) is ProviderError
    assert result.user_message == ProviderError.user_message
