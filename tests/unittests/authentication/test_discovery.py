import asyncio

import pytest

from rosterauth.authentication.discovery import (
    DiscoveryResolver,
    discovery_url_for,
    get_discovery_resolver,
)
from rosterauth.main.exceptions import DiscoveryError
from unittests.fakes import (
    AUTHORIZATION_ENDPOINT,
    DISCOVERY_DOCUMENT,
    DISCOVERY_URL,
    ISSUER,
    TOKEN_ENDPOINT,
)


def test_discovery_url_appends_well_known_path_once():
    assert discovery_url_for(ISSUER + "/") == DISCOVERY_URL
    assert discovery_url_for(DISCOVERY_URL) == DISCOVERY_URL


@pytest.mark.asyncio
async def test_resolve_returns_endpoints(test_settings, provider):
    resolver = DiscoveryResolver()

    endpoints = await resolver.resolve(ISSUER)

    assert endpoints.authorization_endpoint == AUTHORIZATION_ENDPOINT
    assert endpoints.token_endpoint == TOKEN_ENDPOINT
    assert endpoints.jwks_uri == DISCOVERY_DOCUMENT["jwks_uri"]


@pytest.mark.asyncio
async def test_resolve_caches_per_issuer(test_settings, provider):
    resolver = DiscoveryResolver()

    await resolver.resolve(ISSUER)
    await resolver.resolve(ISSUER + "/")

    assert len(provider.calls_to("GET", DISCOVERY_URL)) == 1


@pytest.mark.asyncio
async def test_expired_cache_refetches(test_settings, provider):
    resolver = DiscoveryResolver(ttl_seconds=60)
    await resolver.resolve(ISSUER)

    endpoints, fetched_at = resolver._cache[ISSUER]
    resolver._cache[ISSUER] = (endpoints, fetched_at - 61)
    await resolver.resolve(ISSUER)

    assert len(provider.calls_to("GET", DISCOVERY_URL)) == 2


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_fetch(test_settings, fake_http):
    fake_http.route("GET", DISCOVERY_URL, DISCOVERY_DOCUMENT, delay=0.05)
    resolver = DiscoveryResolver()

    results = await asyncio.gather(*(resolver.resolve(ISSUER) for _ in range(5)))

    assert len(fake_http.calls_to("GET", DISCOVERY_URL)) == 1
    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_non_200_is_discovery_error(test_settings, fake_http):
    fake_http.route("GET", DISCOVERY_URL, {"error": "nope"}, status=503)

    with pytest.raises(DiscoveryError):
        await DiscoveryResolver().resolve(ISSUER)


@pytest.mark.asyncio
async def test_timeout_is_discovery_error_without_retry(test_settings, fake_http):
    fake_http.route("GET", DISCOVERY_URL, exc=asyncio.TimeoutError())

    with pytest.raises(DiscoveryError):
        await DiscoveryResolver().resolve(ISSUER)

    assert len(fake_http.calls_to("GET", DISCOVERY_URL)) == 1


@pytest.mark.asyncio
async def test_unreachable_is_discovery_error(test_settings, fake_http):
    with pytest.raises(DiscoveryError):
        await DiscoveryResolver().resolve(ISSUER)


@pytest.mark.asyncio
async def test_missing_required_field_is_discovery_error(test_settings, fake_http):
    document = {k: v for k, v in DISCOVERY_DOCUMENT.items() if k != "token_endpoint"}
    fake_http.route("GET", DISCOVERY_URL, document)

    with pytest.raises(DiscoveryError, match="token_endpoint"):
        await DiscoveryResolver().resolve(ISSUER)


@pytest.mark.asyncio
async def test_non_object_body_is_discovery_error(test_settings, fake_http):
    fake_http.route("GET", DISCOVERY_URL, ["not", "an", "object"])

    with pytest.raises(DiscoveryError):
        await DiscoveryResolver().resolve(ISSUER)


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached(test_settings, fake_http):
    fake_http.route("GET", DISCOVERY_URL, {}, status=500)
    resolver = DiscoveryResolver()
    with pytest.raises(DiscoveryError):
        await resolver.resolve(ISSUER)

    fake_http.route("GET", DISCOVERY_URL, DISCOVERY_DOCUMENT)
    endpoints = await resolver.resolve(ISSUER)

    assert endpoints.token_endpoint == TOKEN_ENDPOINT


def test_process_wide_resolver_is_shared(test_settings):
    assert get_discovery_resolver() is get_discovery_resolver()
