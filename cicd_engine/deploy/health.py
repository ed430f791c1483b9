"""
Post-deploy health probe.

When the target declares ``health_check_url`` the probe is an HTTP GET that
must answer 2xx; otherwise the strategy's native ``health_check`` is used.
Either way the probe is retried ``health_check_attempts`` times,
``health_check_interval_seconds`` apart (defaults: 10 x 5s).
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from cicd_engine.models.deployment import DeploymentTarget
from cicd_engine.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


async def probe_url(url: str, timeout: float = 5.0) -> bool:
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        logger.debug("[DEPLOY] health GET %s failed: %s", url, e)
        return False
    return 200 <= response.status_code < 300


async def wait_until_healthy(
    target: DeploymentTarget,
    native_probe: Callable[[DeploymentTarget], Awaitable[bool]],
    token: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    url_probe: Callable[[str], Awaitable[bool]] = probe_url,
) -> bool:
    for attempt in range(1, target.health_check_attempts + 1):
        if token is not None:
            token.raise_if_cancelled()
        if target.health_check_url:
            healthy = await url_probe(target.health_check_url)
        else:
            healthy = await native_probe(target)
        if healthy:
            logger.info("[DEPLOY] %s healthy after %d attempt(s)", target.environment_name, attempt)
            return True
        logger.info("[DEPLOY] %s not healthy yet (%d/%d)",
                    target.environment_name, attempt, target.health_check_attempts)
        if attempt < target.health_check_attempts:
            await sleep(target.health_check_interval_seconds)
    logger.warning("[DEPLOY] %s failed health check after %d attempts",
                   target.environment_name, target.health_check_attempts)
    return False
