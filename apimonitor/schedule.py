"""Fixed-interval tick scheduling shared by the checker and the detector loops."""


def advance_tick(next_tick: float, now: float, interval: float) -> tuple[float, int]:
    """Move a tick deadline past `now`, skipping ticks that were missed.

    Args:
        next_tick: Deadline of the upcoming tick (monotonic seconds).
        now: Current monotonic time, read after the previous tick finished.
        interval: Seconds between ticks.

    Returns:
        Tuple of (deadline of the next tick to run, number of ticks skipped).
        A tick that overran its interval is never followed by catch-up ticks;
        the schedule stays aligned to the original start.
    """
    if now <= next_tick:
        return next_tick, 0

    skipped = int((now - next_tick) // interval) + 1
    return next_tick + skipped * interval, skipped
