import pytest

from tests.fakes import FakeChannel, FakeRedis, FakeSessionCache, FakeSink


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def cache():
    return FakeSessionCache()


@pytest.fixture
def fake_redis():
    return FakeRedis()
