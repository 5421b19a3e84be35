"""
Readiness
=========
Two ways to decide a freshly started server is ready for the probe.

poll (default):
    Bounded poll-with-backoff against an HTTP endpoint on the published port.
    Any HTTP response below 500 means the server is accepting requests.
    Backoff starts at 0.5s and doubles up to 5s; the whole wait is bounded by
    ``timeout_seconds``. An ``alive`` callback lets the caller stop early when
    the container has already exited.

settle:
    Fixed delay, mirroring the CI workflow. Coarse but predictable.
"""
import time
import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF = 0.5
_MAX_BACKOFF = 5.0
_REQUEST_TIMEOUT = 2.0


def settle(delay_seconds: float, sleep: Callable[[float], None] = time.sleep) -> None:
    logger.info("Waiting %.1fs for the server to settle", delay_seconds)
    sleep(delay_seconds)


def wait_until_ready(
    url: str,
    timeout_seconds: float,
    alive: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[bool, str]:
    """
    Poll ``url`` until it answers or the timeout elapses.

    Returns
    -------
    tuple[bool, str]
        (ready, detail), where detail names the last response or error seen.
    """
    deadline = clock() + timeout_seconds
    backoff = _INITIAL_BACKOFF
    attempt = 0
    detail = "no attempt made"

    while True:
        attempt += 1
        if alive is not None and not alive():
            return False, "container exited before becoming ready"
        try:
            response = httpx.get(url, timeout=_REQUEST_TIMEOUT)
            if response.status_code < 500:
                logger.info("Server ready after %d attempt(s): %s -> %d", attempt, url, response.status_code)
                return True, f"HTTP {response.status_code}"
            detail = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            detail = f"{type(e).__name__}: {e}"

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning("Server not ready after %.0fs (%d attempts): %s", timeout_seconds, attempt, detail)
            return False, f"not ready after {timeout_seconds:.0f}s: {detail}"

        logger.debug("Not ready yet (%s), retrying in %.1fs", detail, backoff)
        sleep(min(backoff, remaining))
        backoff = min(backoff * 2, _MAX_BACKOFF)
