import pytest

from rosterauth.authentication.auth_models import AuthAttempt, ProviderEndpoints, TokenBundle
from rosterauth.identity.backend import set_identity_backend
from rosterauth.identity.identity import BackendSession
from rosterauth.identity.identity_resolver import (
    FederatedIdentityResolver,
    IdTokenIdentityResolver,
    UserInfoIdentityResolver,
    build_identity_resolver,
    check_allowed_domain,
    display_name_from_claims,
    email_from_claims,
)
from rosterauth.main.config import set_settings
from rosterauth.main.exceptions import (
    ConfigError,
    DiscoveryError,
    ExchangeFailed,
    FederationFailed,
    NoEmail,
    NoTokenIssued,
    TenantRestricted,
)
from unittests.fakes import (
    DISCOVERY_DOCUMENT,
    OTHER_SIGNING_KEY,
    REDIRECT_URI,
    USERINFO_ENDPOINT,
    FakeIdentityBackend,
    FakeJWKClient,
    make_id_token,
    make_settings,
)

ENDPOINTS = ProviderEndpoints(**DISCOVERY_DOCUMENT)


@pytest.fixture
def attempt():
    return AuthAttempt(
        client_session_id="client-a",
        code_verifier="v" * 43,
        expected_state="state-1",
        nonce="nonce-1",
        redirect_uri=REDIRECT_URI,
    )


@pytest.fixture
def resolver(test_settings):
    return IdTokenIdentityResolver(test_settings, jwk_client_factory=FakeJWKClient)


@pytest.mark.parametrize(
    "claims, expected",
    [
        ({"email": " Jane@School.EDU "}, "jane@school.edu"),
        ({"mail": "jane@school.edu"}, "jane@school.edu"),
        ({"email": "", "userPrincipalName": "jane@school.edu"}, "jane@school.edu"),
        ({"preferred_username": "jane"}, ""),
        ({"upn": "jane@school.edu", "preferred_username": "jane"}, "jane@school.edu"),
        ({}, ""),
    ],
)
def test_email_from_claims(claims, expected):
    assert email_from_claims(claims) == expected


def test_display_name_falls_back_to_given_and_family_name():
    assert display_name_from_claims({"given_name": "Jane", "family_name": "Doe"}) == "Jane Doe"
    assert display_name_from_claims({"displayName": " Jane "}) == "Jane"
    assert display_name_from_claims({}) == ""


def test_allowed_domains_empty_allows_everything():
    check_allowed_domain("jane@anywhere.org", [])


def test_allowed_domains_is_case_insensitive():
    check_allowed_domain("jane@school.edu", ["School.EDU"])


def test_allowed_domains_rejects_other_domain():
    with pytest.raises(TenantRestricted):
        check_allowed_domain("jane@other.edu", ["school.edu"])


def test_allowed_domains_matches_unicode_domain_to_punycode():
    check_allowed_domain("jane@xn--bcher-kva.example", ["bücher.example"])


@pytest.mark.asyncio
async def test_valid_id_token_yields_identity(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, email="Jane@School.edu"))

    identity = await resolver.resolve(bundle, attempt, ENDPOINTS)

    assert identity.subject_id == "user-1"
    assert identity.email == "jane@school.edu"
    assert identity.display_name == "Jane Doe"
    assert FakeJWKClient.instances[-1].jwks_uri == DISCOVERY_DOCUMENT["jwks_uri"]


@pytest.mark.asyncio
async def test_oid_claim_wins_over_sub(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, oid="object-9"))

    identity = await resolver.resolve(bundle, attempt, ENDPOINTS)

    assert identity.subject_id == "object-9"


@pytest.mark.asyncio
async def test_nonce_mismatch_is_rejected(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token("someone-elses-nonce"))

    with pytest.raises(ExchangeFailed, match="nonce"):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_wrong_signing_key_is_rejected(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, key=OTHER_SIGNING_KEY))

    with pytest.raises(ExchangeFailed, match="InvalidSignatureError"):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_wrong_audience_is_rejected(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, aud="another-app"))

    with pytest.raises(ExchangeFailed, match="InvalidAudienceError"):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_wrong_issuer_is_rejected(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, iss="https://evil.example.com"))

    with pytest.raises(ExchangeFailed, match="InvalidIssuerError"):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_templated_issuer_is_not_compared(resolver, attempt):
    endpoints = ENDPOINTS.model_copy(
        update={"issuer": "https://login.example.com/{tenantid}/v2.0"}
    )
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce))

    identity = await resolver.resolve(bundle, attempt, endpoints)

    assert identity.email == "jane@school.edu"


@pytest.mark.asyncio
async def test_matching_at_hash_is_accepted(resolver, attempt):
    bundle = TokenBundle(
        id_token=make_id_token(attempt.nonce, access_token="access-1"),
        access_token="access-1",
    )

    identity = await resolver.resolve(bundle, attempt, ENDPOINTS)

    assert identity.subject_id == "user-1"


@pytest.mark.asyncio
async def test_mismatched_at_hash_is_rejected(resolver, attempt):
    bundle = TokenBundle(
        id_token=make_id_token(attempt.nonce, access_token="access-1"),
        access_token="access-2",
    )

    with pytest.raises(ExchangeFailed, match="at_hash"):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_id_token_without_email_raises_no_email(resolver, attempt):
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, email=None))

    with pytest.raises(NoEmail):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_disallowed_domain_raises_tenant_restricted(attempt):
    resolver = IdTokenIdentityResolver(
        make_settings(allowed_domains=["school.edu"]), jwk_client_factory=FakeJWKClient
    )
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce, email="jane@gmail.com"))

    with pytest.raises(TenantRestricted):
        await resolver.resolve(bundle, attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_missing_id_token_raises_no_token_issued(resolver, attempt):
    with pytest.raises(NoTokenIssued):
        await resolver.resolve(TokenBundle(access_token="access-1"), attempt, ENDPOINTS)


@pytest.mark.asyncio
async def test_missing_jwks_uri_is_a_discovery_error(resolver, attempt):
    endpoints = ENDPOINTS.model_copy(update={"jwks_uri": None})
    bundle = TokenBundle(id_token=make_id_token(attempt.nonce))

    with pytest.raises(DiscoveryError):
        await resolver.resolve(bundle, attempt, endpoints)


@pytest.mark.asyncio
async def test_userinfo_resolves_with_bearer_token(test_settings, fake_http, attempt):
    fake_http.route(
        "GET",
        USERINFO_ENDPOINT,
        {"id": "graph-7", "mail": "Jane@School.edu", "displayName": "Jane Doe"},
    )
    resolver = UserInfoIdentityResolver(test_settings)

    identity = await resolver.resolve(TokenBundle(access_token="access-1"), attempt, ENDPOINTS)

    assert identity.subject_id == "graph-7"
    assert identity.email == "jane@school.edu"
    [call] = fake_http.calls_to("GET", USERINFO_ENDPOINT)
    assert call["headers"]["Authorization"] == "Bearer access-1"


@pytest.mark.asyncio
async def test_userinfo_prefers_configured_url(fake_http, attempt):
    settings = make_settings(userinfo_url="https://graph.example.com/v1.0/me")
    set_settings(settings)
    fake_http.route(
        "GET", "https://graph.example.com/v1.0/me", {"sub": "u", "email": "jane@school.edu"}
    )

    identity = await UserInfoIdentityResolver(settings).resolve(
        TokenBundle(access_token="access-1"), attempt, ENDPOINTS
    )

    assert identity.subject_id == "u"
    assert fake_http.calls_to("GET", USERINFO_ENDPOINT) == []


@pytest.mark.asyncio
async def test_userinfo_http_error_is_exchange_failure(test_settings, fake_http, attempt):
    fake_http.route("GET", USERINFO_ENDPOINT, {"error": "invalid_token"}, status=401)

    with pytest.raises(ExchangeFailed):
        await UserInfoIdentityResolver(test_settings).resolve(
            TokenBundle(access_token="access-1"), attempt, ENDPOINTS
        )


@pytest.mark.asyncio
async def test_userinfo_unreachable_is_exchange_failure(test_settings, fake_http, attempt):
    with pytest.raises(ExchangeFailed):
        await UserInfoIdentityResolver(test_settings).resolve(
            TokenBundle(access_token="access-1"), attempt, ENDPOINTS
        )


@pytest.mark.asyncio
async def test_userinfo_without_endpoint_is_config_error(test_settings, fake_http, attempt):
    endpoints = ENDPOINTS.model_copy(update={"userinfo_endpoint": None})

    with pytest.raises(ConfigError):
        await UserInfoIdentityResolver(test_settings).resolve(
            TokenBundle(access_token="access-1"), attempt, endpoints
        )


@pytest.mark.asyncio
async def test_federated_resolves_from_backend_session(test_settings, attempt):
    backend = FakeIdentityBackend(
        BackendSession(uid="backend-1", email="Jane@School.edu", display_name="Jane")
    )

    identity = await FederatedIdentityResolver(test_settings, backend).resolve(
        TokenBundle(id_token="provider-id-token", access_token="access-1"), attempt, ENDPOINTS
    )

    assert identity.subject_id == "backend-1"
    assert identity.email == "jane@school.edu"
    assert backend.exchanged == [("provider-id-token", "id_token")]
    assert backend.revoked == []


@pytest.mark.asyncio
async def test_federated_falls_back_to_access_token(test_settings, attempt):
    backend = FakeIdentityBackend(BackendSession(uid="backend-1", email="jane@school.edu"))

    await FederatedIdentityResolver(test_settings, backend).resolve(
        TokenBundle(access_token="access-1"), attempt, ENDPOINTS
    )

    assert backend.exchanged == [("access-1", "access_token")]


@pytest.mark.asyncio
async def test_federated_without_email_revokes_backend_session(test_settings, attempt):
    backend = FakeIdentityBackend(BackendSession(uid="backend-1", email=None))

    with pytest.raises(NoEmail):
        await FederatedIdentityResolver(test_settings, backend).resolve(
            TokenBundle(id_token="provider-id-token"), attempt, ENDPOINTS
        )

    assert backend.revoked == ["backend-1"]


@pytest.mark.asyncio
async def test_federated_backend_failure_propagates(test_settings, attempt):
    backend = FakeIdentityBackend(exc=FederationFailed("HTTP 500"))

    with pytest.raises(FederationFailed):
        await FederatedIdentityResolver(test_settings, backend).resolve(
            TokenBundle(id_token="provider-id-token"), attempt, ENDPOINTS
        )

    assert backend.revoked == []


def test_build_identity_resolver_defaults_to_id_token(test_settings):
    assert isinstance(build_identity_resolver(test_settings), IdTokenIdentityResolver)


def test_build_identity_resolver_userinfo():
    settings = make_settings(identity_strategy="userinfo")
    assert isinstance(build_identity_resolver(settings), UserInfoIdentityResolver)


def test_build_identity_resolver_federated_uses_backend():
    settings = make_settings(
        identity_strategy="federated", identity_backend_url="https://identity.internal"
    )
    backend = FakeIdentityBackend()
    set_identity_backend(backend)

    resolver = build_identity_resolver(settings)

    assert isinstance(resolver, FederatedIdentityResolver)
    assert resolver.backend is backend
