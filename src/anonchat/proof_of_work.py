"""Client-side proof-of-work solver for the upstream sentinel challenge."""

import base64
import hashlib
import json
import logging
import random
import time
from email.utils import formatdate
from typing import List, Any

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "gAAAAAB"
FALLBACK_PREFIX = "gAAAAABwQ8Lk5FbGpA2NcR9dShT6gYjU7VxZ4D"
MAX_ATTEMPTS = 100000

CORE_COUNTS = [8, 12, 16, 24]
SCREEN_SIZES = [3000, 4000, 6000]
CONFIG_MAGIC = 4294705152
TIME_OFFSET_SECONDS = 8 * 3600
TIMEZONE_LABEL = "GMT-0500 (Eastern Standard Time)"


def browser_time_string(now: float = None) -> str:
    """HTTP date for now minus a fixed offset, with a browser-style timezone label."""
    if now is None:
        now = time.time()
    return formatdate(now - TIME_OFFSET_SECONDS, usegmt=True).replace("GMT", TIMEZONE_LABEL)


def build_config(user_agent: str) -> List[Any]:
    """
    Fake hardware fingerprint hashed by the solver.

    Core count and screen size are drawn per call, so two calls with the same
    challenge do not produce the same token.
    """
    core = random.choice(CORE_COUNTS)
    screen = random.choice(SCREEN_SIZES)
    return [core + screen, browser_time_string(), CONFIG_MAGIC, 0, user_agent]


def fallback_token(seed: str) -> str:
    return FALLBACK_PREFIX + base64.b64encode(f'"{seed}"'.encode()).decode()


def check_answer(seed: str, difficulty: str, encoded_config: str) -> bool:
    """True if ``encoded_config`` satisfies the challenge ``(seed, difficulty)``."""
    digest = hashlib.sha3_512((seed + encoded_config).encode()).hexdigest()
    return digest[: len(difficulty) // 2] <= difficulty


def solve(seed: str, difficulty: str, user_agent: str, max_attempts: int = MAX_ATTEMPTS) -> str:
    """
    Find a proof token for the given challenge.

    Args:
        seed: Challenge seed issued with the session token
        difficulty: Hex string the digest prefix has to compare below
        user_agent: User agent reported in the fingerprint
        max_attempts: Upper bound on the counter

    Returns:
        ``gAAAAAB`` followed by the base64 config that solved the challenge, or
        a seed-derived fallback token when no counter within the bound works.
        The fallback is well formed but upstream may reject it.
    """
    config = build_config(user_agent)
    for counter in range(max_attempts):
        config[3] = counter
        encoded = base64.b64encode(json.dumps(config).encode()).decode()
        if check_answer(seed, difficulty, encoded):
            logger.info(f"Solved proof of work (difficulty {difficulty}) after {counter + 1} attempts")
            return TOKEN_PREFIX + encoded

    logger.warning(
        f"Proof of work not solved within {max_attempts} attempts (difficulty {difficulty}), using fallback token"
    )
    return fallback_token(seed)


async def solve_async(seed: str, difficulty: str, user_agent: str, max_attempts: int = MAX_ATTEMPTS) -> str:
    """Run :func:`solve` in the threadpool so the event loop keeps serving requests."""
    return await run_in_threadpool(solve, seed, difficulty, user_agent, max_attempts)
