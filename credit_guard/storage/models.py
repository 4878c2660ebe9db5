"""
Data models for storage layer.

Defines the ledger entities persisted in the key-value store.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStatus(Enum):
    """Lifecycle states of a payment order."""
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class FreeQuotaRecord:
    """Daily free allowance for one composite user id.

    One record exists per (user, calendar day). ``used`` never exceeds
    ``limit``; the limit may be re-synced from the VIP allow-list.
    """
    user_id: str
    date: str
    used: int
    limit: int
    reset_at: str

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FreeQuotaRecord":
        return cls(
            user_id=data["user_id"],
            date=data["date"],
            used=int(data["used"]),
            limit=int(data["limit"]),
            reset_at=data["reset_at"],
        )


@dataclass
class PaymentOrder:
    """Prepaid order granting a fixed number of grid credits.

    ``total_grids`` is ``requested_count / 4`` and ``remaining_grids``
    stays within ``[0, total_grids]``.
    """
    order_id: str
    user_id: str
    requested_count: int
    amount: float
    status: OrderStatus
    payment_token: str
    created_at: str
    expires_at: str
    total_grids: int
    remaining_grids: int
    paid_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentOrder":
        return cls(
            order_id=data["order_id"],
            user_id=data["user_id"],
            requested_count=int(data["requested_count"]),
            amount=float(data["amount"]),
            status=OrderStatus(data["status"]),
            payment_token=data["payment_token"],
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            total_grids=int(data["total_grids"]),
            remaining_grids=int(data["remaining_grids"]),
            paid_at=data.get("paid_at"),
        )


@dataclass
class IpDeviceRecord:
    """Distinct device ids seen from one IP on one day."""
    ip: str
    date: str
    device_ids: List[str] = field(default_factory=list)

    @property
    def device_count(self) -> int:
        return len(self.device_ids)
