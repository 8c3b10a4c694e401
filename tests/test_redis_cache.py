from creatorauth.storage import redis_cache
from creatorauth.storage.redis_cache import RedisCache


class RecordingRedis:
    calls = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.pinged = False
        self.closed = False

    @classmethod
    def from_url(cls, url, **kwargs):
        client = cls(**kwargs)
        cls.calls.append((url, client))
        return client

    def ping(self):
        self.pinged = True
        return True

    def close(self):
        self.closed = True


def test_startup_ping_is_bounded(monkeypatch):
    RecordingRedis.calls = []
    monkeypatch.setattr(redis_cache, "Redis", RecordingRedis)
    cache = RedisCache("redis://cache:6379/0", socket_timeout=0.5)

    cache.verify_connection()

    url, client = RecordingRedis.calls[0]
    assert url == "redis://cache:6379/0"
    assert client.kwargs["socket_timeout"] == 0.5
    assert client.kwargs["socket_connect_timeout"] == 0.5
    assert client.pinged and client.closed
