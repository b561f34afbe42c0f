from __future__ import annotations

# Delay added after the Nth consecutive failure; the last entry repeats.
ERROR_BACKOFF_MS: tuple[int, ...] = (
    30_000,
    60_000,
    5 * 60_000,
    15 * 60_000,
    60 * 60_000,
)


def error_backoff_ms(consecutive_errors: int) -> int:
    index = min(consecutive_errors - 1, len(ERROR_BACKOFF_MS) - 1)
    return ERROR_BACKOFF_MS[max(0, index)]
