"""Group-addressed live notifications published over Redis pub/sub.

The websocket gateway subscribed to ``<prefix>:<group>`` forwards each
payload to the clients in that group (``admin``, ``station-<id>``,
``user-<id>``).
"""
import json
import logging
from typing import Any, Dict

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)


class LiveNotificationChannel:
    """Pushes notifications to connected client groups."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "notifications"):
        self.redis = redis_client
        self.prefix = prefix

    async def send_to_group(self, group: str, method: str, payload: Dict[str, Any]) -> int:
        """Publish to a group; returns the number of gateway subscribers that received it."""
        message = json.dumps({"method": method, "payload": payload}, default=str)
        receivers = await self.redis.publish(f"{self.prefix}:{group}", message)
        logger.info(f"Live notification {method} sent to group {group} ({receivers} subscribers)")
        return receivers
