from oscwatch.utils.backoff import RetryPolicy, jitter, next_backoff

def test_next_backoff_caps():
    assert next_backoff(1, 4) == 2
    assert next_backoff(2, 4) == 4
    assert next_backoff(4, 4) == 4

def test_jitter_stays_in_band():
    for _ in range(200):
        v = jitter(1.0, ratio=0.2)
        assert 0.8 <= v <= 1.2

def test_retry_policy_yields_one_pause_between_each_attempt():
    assert list(RetryPolicy(attempts=1).delays()) == []
    assert list(RetryPolicy(attempts=5, initial_s=1.0, max_s=4.0, jitter_ratio=0.0).delays()) == [1.0, 2.0, 4.0, 4.0]

def test_retry_policy_jitter_band():
    for _ in range(50):
        a, b = RetryPolicy(attempts=3, initial_s=0.5).delays()
        assert 0.4 <= a <= 0.6 and 0.8 <= b <= 1.2
