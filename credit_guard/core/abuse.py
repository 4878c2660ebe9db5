"""
Per-IP device cardinality guard.

Bounds how many distinct device ids one IP may present per day, which
keeps a single network address from farming free quota with fresh ids.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from ..storage.models import IpDeviceRecord
from ..storage.store import Store

logger = logging.getLogger(__name__)

IP_DEVICE_WINDOW_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class AbuseCheck:
    """Outcome of one abuse-guard check."""
    allowed: bool
    device_count: int


class AbuseGuard:
    """Tracks distinct device ids per (IP, day) against a ceiling."""

    def __init__(
        self,
        store: Store,
        ip_device_limit: int = 10,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.ip_device_limit = ip_device_limit
        self._clock = clock

    def _key(self, ip: str) -> str:
        return f"ip_devices:{ip}:{self._clock().strftime('%Y-%m-%d')}"

    def check(self, ip: str, device_id: str) -> AbuseCheck:
        """Record ``device_id`` for ``ip`` and compare the count to the ceiling.

        The device is recorded even when the check fails, so rejected
        callers still pay for every id they try.
        """
        device_count = self.store.add_to_set(self._key(ip), device_id, IP_DEVICE_WINDOW_SECONDS)
        if device_count > self.ip_device_limit:
            logger.warning(
                "IP %s exceeded device limit: %d/%d", ip, device_count, self.ip_device_limit
            )
            return AbuseCheck(allowed=False, device_count=device_count)
        return AbuseCheck(allowed=True, device_count=device_count)

    def get_record(self, ip: str) -> IpDeviceRecord:
        stored = self.store.get(self._key(ip))
        return IpDeviceRecord(
            ip=ip,
            date=self._clock().strftime("%Y-%m-%d"),
            device_ids=list(stored["members"]) if stored else [],
        )
