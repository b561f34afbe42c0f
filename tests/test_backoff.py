from agent_scheduler.backoff import ERROR_BACKOFF_MS, error_backoff_ms


def test_ladder_values():
    assert [error_backoff_ms(n) for n in range(1, 6)] == [30_000, 60_000, 300_000, 900_000, 3_600_000]


def test_ladder_is_monotonic_and_capped():
    delays = [error_backoff_ms(n) for n in range(1, 50)]
    assert delays == sorted(delays)
    assert max(delays) == ERROR_BACKOFF_MS[-1]
    assert error_backoff_ms(1_000) == 3_600_000


def test_non_positive_counts_use_first_step():
    assert error_backoff_ms(0) == 30_000
    assert error_backoff_ms(-3) == 30_000
