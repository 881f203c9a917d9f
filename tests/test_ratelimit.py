from rsastore.infra.ratelimit import RateLimiter


def make(limit=3, window=3600):
    return RateLimiter("recover", limit, window, "slow down")


def test_allows_up_to_limit_per_client():
    rl = make()
    assert [rl.hit("10.0.0.1", now=100.0 + i) for i in range(3)] == \
        [None, None, None]
    assert rl.hit("10.0.0.1", now=110.0) == 3600 - 10
    # another client has its own budget
    assert rl.hit("10.0.0.2", now=110.0) is None


def test_window_slides():
    rl = make(limit=2, window=60)
    assert rl.hit("c", now=0.0) is None
    assert rl.hit("c", now=30.0) is None
    assert rl.hit("c", now=59.0) is not None
    # the first request has aged out
    assert rl.hit("c", now=61.0) is None
    assert rl.hit("c", now=62.0) is not None


def test_rejected_requests_do_not_extend_the_block():
    rl = make(limit=1, window=60)
    assert rl.hit("c", now=0.0) is None
    for t in (10.0, 20.0, 50.0):
        assert rl.hit("c", now=t) is not None
    assert rl.hit("c", now=60.5) is None


def test_reset():
    rl = make(limit=1)
    rl.hit("c", now=0.0)
    rl.reset()
    assert rl.hit("c", now=1.0) is None
