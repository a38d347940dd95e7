"""Jittered delays used before and after every network-facing action.

Fixed-interval request patterns are what anti-bot defenses look for, so
every pause is drawn uniformly between two bounds.
"""

import asyncio
import random


def random_between(min_value: float, max_value: float) -> float:
    """Uniform value in [min_value, max_value); min_value when the range is empty."""
    if max_value <= min_value:
        return min_value
    return random.random() * (max_value - min_value) + min_value


async def wait_ms(milliseconds: float) -> None:
    if milliseconds <= 0:
        return
    await asyncio.sleep(milliseconds / 1000.0)


async def pacing_delay(min_ms: float, max_ms: float) -> float:
    """Sleep a random duration between the configured bounds.

    Returns:
        Milliseconds actually waited
    """
    delay = random_between(min_ms, max_ms)
    await wait_ms(delay)
    return delay
