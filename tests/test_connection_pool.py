import asyncio

from hostprobe.core.connection_pool import ConnectionPool


class Writer:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    async def wait_closed(self):
        pass


def test_get_returns_stored_connection(fake_clock):
    pool = ConnectionPool(idle_timeout=30.0, clock=fake_clock)
    writer = Writer()
    pool.put(80, "reader", writer)

    conn = pool.get(80)
    assert conn.writer is writer
    assert conn.is_alive
    assert pool.get(81) is None
    assert len(pool) == 1


def test_idle_connections_evicted_lazily(fake_clock):
    pool = ConnectionPool(idle_timeout=30.0, clock=fake_clock)
    stale, fresh = Writer(), Writer()
    pool.put(80, None, stale)
    fake_clock.advance(20)
    pool.put(443, None, fresh)
    fake_clock.advance(15)

    # Nothing happens until the pool is used
    assert stale.closed is False
    assert pool.get(443).writer is fresh
    assert stale.closed is True
    assert pool.get(80) is None
    assert len(pool) == 1


def test_get_refreshes_last_used(fake_clock):
    pool = ConnectionPool(idle_timeout=30.0, clock=fake_clock)
    pool.put(80, None, Writer())
    for _ in range(5):
        fake_clock.advance(20)
        assert pool.get(80) is not None


def test_dead_connections_evicted(fake_clock):
    pool = ConnectionPool(clock=fake_clock)
    writer = Writer()
    pool.put(80, None, writer)
    writer.closed = True
    assert pool.get(80) is None
    assert len(pool) == 0


def test_put_replaces_and_closes_previous(fake_clock):
    pool = ConnectionPool(clock=fake_clock)
    old, new = Writer(), Writer()
    pool.put(80, None, old)
    pool.put(80, None, new)
    assert old.closed is True
    assert pool.get(80).writer is new


def test_close_all(fake_clock):
    pool = ConnectionPool(clock=fake_clock)
    writers = [Writer() for _ in range(3)]
    for port, writer in enumerate(writers, start=1):
        pool.put(port, None, writer)

    asyncio.run(pool.close_all())
    assert all(w.closed for w in writers)
    assert len(pool) == 0
