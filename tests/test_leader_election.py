"""
Tests for Redis-based leader election.
"""
import pytest

from mongo_operator.config.redis import RedisConnection
from mongo_operator.workers.leader_election import LeaderElection


class FakeRedis:
    """The handful of Redis commands leader election uses."""

    def __init__(self):
        self.data = {}
        self.ttl = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttl[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def expire(self, key, seconds):
        self.ttl[key] = seconds
        return key in self.data

    async def delete(self, key):
        self.ttl.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0


@pytest.fixture
def redis() -> RedisConnection:
    connection = RedisConnection("redis://localhost:6379/0")
    connection.client = FakeRedis()
    return connection


@pytest.mark.asyncio
async def test_single_leader(redis):
    first = LeaderElection(redis, "pod-a", lease_duration=15)
    second = LeaderElection(redis, "pod-b", lease_duration=15)

    assert await first.acquire_leadership() is True
    assert await second.acquire_leadership() is False
    assert await first.acquire_leadership() is True
    assert redis.client.ttl[first.leader_key] == 15


@pytest.mark.asyncio
async def test_renew_and_release(redis):
    leader = LeaderElection(redis, "pod-a")
    follower = LeaderElection(redis, "pod-b")

    assert await leader.renew_lease() is False
    await leader.acquire_leadership()
    assert await leader.renew_lease() is True

    await leader.release_leadership()
    assert leader.is_leader is False
    assert await follower.acquire_leadership() is True


@pytest.mark.asyncio
async def test_lost_lease_is_noticed(redis):
    leader = LeaderElection(redis, "pod-a")
    await leader.acquire_leadership()
    redis.client.data[leader.leader_key] = "pod-b"

    assert await leader.renew_lease() is False
    assert leader.is_leader is False


def test_client_required():
    with pytest.raises(RuntimeError):
        RedisConnection("redis://localhost:6379/0").get_client()
