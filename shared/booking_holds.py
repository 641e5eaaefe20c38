"""Booking holds and vehicle slot locks kept in Redis.

A hold is placed by the booking flow when an invoice is issued and expires on
its own; the payment pipeline only reads it, consumes it once the contract
exists, and releases the slot lock the hold token owns.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel
from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

_RELEASE_IF_OWNER = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class BookingHold(BaseModel):
    """Provisional booking waiting for its invoice to be paid."""
    booking_token: str
    renter_id: int
    model_id: Optional[int] = None
    station_id: int
    vehicle_id: int
    start_time: datetime
    end_time: datetime
    total_cost: Decimal
    invoice_id: int
    created_at: datetime
    expires_at: datetime


class BookingHoldStore:
    """Redis-backed booking hold lookups."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = "booking"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, booking_token: str) -> str:
        return f"{self.prefix}:{booking_token}"

    async def get(self, booking_token: Optional[str]) -> Optional[BookingHold]:
        """Return the hold, or None when it expired or was already consumed."""
        if not booking_token:
            return None

        data = await self.redis.get(self._key(booking_token))
        if data is None:
            return None
        return BookingHold.model_validate_json(data)

    async def save(self, hold: BookingHold):
        ttl = int((hold.expires_at - datetime.utcnow()).total_seconds())
        if ttl <= 0:
            raise ValueError(f"Booking hold {hold.booking_token} is already expired")
        await self.redis.set(self._key(hold.booking_token), hold.model_dump_json(), ex=ttl)

    async def remove(self, booking_token: str):
        await self.redis.delete(self._key(booking_token))
        logger.info(f"Booking hold {booking_token} consumed")


class VehicleAvailability:
    """Vehicle slot locks taken by the booking flow for the lifetime of a hold."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis = redis_client

    @staticmethod
    def slot_key(vehicle_id: int, start_time: datetime, end_time: datetime) -> str:
        return (
            f"vehicle_booking:{vehicle_id}:"
            f"{start_time:%Y%m%d%H%M}_{end_time:%Y%m%d%H%M}"
        )

    async def release_slot(self, hold: BookingHold) -> bool:
        """Release the slot lock if this hold still owns it."""
        key = self.slot_key(hold.vehicle_id, hold.start_time, hold.end_time)
        released = await self.redis.eval(_RELEASE_IF_OWNER, 1, key, hold.booking_token)
        if released:
            logger.info(f"Released vehicle slot {key}")
        return bool(released)
