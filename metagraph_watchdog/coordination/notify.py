"""Webhook notifications (Discord message format)."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 10.0


async def notify(config, message: str) -> bool:
    """Log ``message`` and post it to the configured webhook, if any.

    Returns True only when the webhook accepted the message.
    """
    logger.warning(f"[Notify] {message}")

    if not config.webhook_url:
        return False

    payload = {"content": f"**Metagraph Watchdog**: {message}"}
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=NOTIFY_TIMEOUT)) as session:
            async with session.post(config.webhook_url, json=payload) as resp:
                if resp.status >= 300:
                    logger.warning(f"[Notify] Webhook returned HTTP {resp.status}")
                    return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"[Notify] Failed to send webhook: {e}")
        return False
    return True
