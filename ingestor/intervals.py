"""Adaptive loop delays."""


def next_delay(base: float, floor: float, handled: int, step: float = 0.001) -> float:
    """Shorten *base* by *step* seconds per record handled, never below *floor*.

    Busy ticks poll again sooner so a backlog drains faster; idle ticks fall
    back to the base interval.
    """
    return max(base - handled * step, floor)
