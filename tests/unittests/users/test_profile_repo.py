from datetime import datetime, timezone

import pytest

from rosterauth.users.profile_repo import InMemoryProfileRepository, RedisProfileRepository


@pytest.fixture(params=["memory", "redis"])
def repo(request, fake_redis):
    if request.param == "memory":
        return InMemoryProfileRepository()
    return RedisProfileRepository(fake_redis)


@pytest.mark.asyncio
async def test_merge_creates_missing_profile(repo):
    profile = await repo.merge("user-1", {"email": "jane@school.edu", "role": "student"})

    assert profile.uid == "user-1"
    assert profile.role == "student"
    assert (await repo.get("user-1")).email == "jane@school.edu"


@pytest.mark.asyncio
async def test_merge_leaves_unwritten_fields_alone(repo):
    await repo.merge(
        "user-1",
        {"email": "jane@school.edu", "grade": "5", "group_id": "class-5a", "theme": "dark"},
    )

    profile = await repo.merge("user-1", {"email": "jane@school.edu", "role": "student"})

    assert profile.grade == "5"
    assert profile.group_id == "class-5a"
    assert profile.theme == "dark"


@pytest.mark.asyncio
async def test_merge_ignores_none_values_and_uid(repo):
    await repo.merge("user-1", {"email": "jane@school.edu", "grade": "5"})

    profile = await repo.merge("user-1", {"grade": None, "uid": "someone-else"})

    assert profile.uid == "user-1"
    assert profile.grade == "5"


@pytest.mark.asyncio
async def test_last_login_at_round_trips(repo):
    now = datetime.now(timezone.utc)

    await repo.merge("user-1", {"email": "jane@school.edu", "last_login_at": now})

    assert (await repo.get("user-1")).last_login_at == now


@pytest.mark.asyncio
async def test_get_and_delete_missing(repo):
    assert await repo.get("nobody") is None
    assert await repo.delete("nobody") is False


@pytest.mark.asyncio
async def test_delete_existing(repo):
    await repo.merge("user-1", {"email": "jane@school.edu"})

    assert await repo.delete("user-1") is True
    assert await repo.get("user-1") is None
