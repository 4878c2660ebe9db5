"""
Credit ledger.

Owns the two spendable allowances: the daily free quota and the grid
credits of a prepaid order. Every consume and refund is one atomic
``Store.update`` call, so concurrent requests against the same counter
are linearizable and ``used``/``remaining_grids`` never leave their
bounds.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import InvalidRequest, OrderExpired, PaymentInvalid, PaymentRequired, QuotaExceeded
from .pricing import PRICING_TABLE, price_for_count, total_grids_for_count
from ..storage.models import FreeQuotaRecord, OrderStatus, PaymentOrder
from ..storage.store import Store

logger = logging.getLogger(__name__)

QUOTA_TTL_SECONDS = 24 * 60 * 60
ORDER_TTL_SECONDS = 60 * 60
ORDER_EXPIRES_MINUTES = 15


class _Abort(Exception):
    """Ends a store mutation without writing; carries the outcome."""

    def __init__(self, outcome: str, value=None):
        super().__init__(outcome)
        self.outcome = outcome
        self.value = value


@dataclass(frozen=True)
class VipMatch:
    """Result of resolving a user against the VIP allow-list."""
    is_vip: bool
    by: Optional[str] = None
    quota: Optional[int] = None


def split_user_id(user_id: str):
    """Split a composite ``{ip}_{deviceId}`` id into (ip, device_id)."""
    ip, _, device_id = user_id.partition("_")
    return ip, device_id


class VipAllowList:
    """Per-identifier overrides of the daily free-quota limit.

    Match priority: device id, then IP, then the full composite user id.
    """

    def __init__(self, entries: Optional[Dict[str, int]] = None):
        self.entries: Dict[str, int] = dict(entries or {})

    def match(self, user_id: str) -> VipMatch:
        ip, device_id = split_user_id(user_id)
        if device_id and device_id in self.entries:
            return VipMatch(True, "device_id", self.entries[device_id])
        if ip in self.entries:
            return VipMatch(True, "ip", self.entries[ip])
        if user_id in self.entries:
            return VipMatch(True, "user_id", self.entries[user_id])
        return VipMatch(False)

    def limit_for(self, user_id: str, default: int) -> int:
        match = self.match(user_id)
        return match.quota if match.is_vip else default


class CreditLedger:
    """Free-quota and paid-order bookkeeping over a key-value store."""

    def __init__(
        self,
        store: Store,
        free_per_day: int = 3,
        allowlist: Optional[VipAllowList] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.free_per_day = free_per_day
        self.allowlist = allowlist or VipAllowList()
        self._clock = clock

    # Free quota

    def _today(self) -> str:
        return self._clock().strftime("%Y-%m-%d")

    def _next_midnight(self) -> str:
        now = self._clock()
        midnight = datetime(now.year, now.month, now.day) + timedelta(days=1)
        return midnight.isoformat()

    def _quota_key(self, user_id: str) -> str:
        return f"free_quota:{user_id}:{self._today()}"

    def _resolve_limit(self, user_id: str) -> int:
        return self.allowlist.limit_for(user_id, self.free_per_day)

    def _current_quota(self, user_id: str, stored: Optional[dict]) -> FreeQuotaRecord:
        """Materialise today's record, re-syncing the limit in place."""
        limit = self._resolve_limit(user_id)
        if stored is None:
            return FreeQuotaRecord(
                user_id=user_id,
                date=self._today(),
                used=0,
                limit=limit,
                reset_at=self._next_midnight(),
            )
        record = FreeQuotaRecord.from_dict(stored)
        if record.limit != limit:
            logger.info("Updated quota limit for user %s: %d -> %d", user_id, record.limit, limit)
            record.limit = limit
        return record

    def get_free_quota(self, user_id: str) -> FreeQuotaRecord:
        """Return today's quota record, creating it on first access."""
        key = self._quota_key(user_id)
        stored = self.store.get(key)
        if stored is not None and stored["limit"] == self._resolve_limit(user_id):
            return FreeQuotaRecord.from_dict(stored)

        def _sync(current):
            return self._current_quota(user_id, current).to_dict()

        record = FreeQuotaRecord.from_dict(self.store.update(key, _sync, QUOTA_TTL_SECONDS))
        if stored is None:
            logger.info("Initialized quota for user %s: %d/%d", user_id, record.used, record.limit)
        return record

    def check_free_quota(self, user_id: str) -> bool:
        """True if the user can still consume a free credit today."""
        record = self.get_free_quota(user_id)
        return record.used < record.limit

    def remaining_free_quota(self, user_id: str) -> int:
        return self.get_free_quota(user_id).remaining

    def consume_free_quota(self, user_id: str) -> bool:
        """Atomically take one free credit.

        Returns:
            True if consumed, False if the daily limit was already reached
        """
        def _consume(current):
            record = self._current_quota(user_id, current)
            if record.used >= record.limit:
                raise _Abort("exceeded", record)
            record.used += 1
            return record.to_dict()

        try:
            record = FreeQuotaRecord.from_dict(
                self.store.update(self._quota_key(user_id), _consume, QUOTA_TTL_SECONDS)
            )
        except _Abort as abort:
            logger.warning(
                "User %s exceeded daily limit: %d/%d", user_id, abort.value.used, abort.value.limit
            )
            return False

        logger.info("User %s consumed quota: %d/%d", user_id, record.used, record.limit)
        return True

    def refund_free_quota(self, user_id: str) -> bool:
        """Atomically return one free credit.

        Returns:
            True if refunded, False if nothing had been used
        """
        def _refund(current):
            record = self._current_quota(user_id, current)
            if record.used <= 0:
                raise _Abort("empty", record)
            record.used -= 1
            return record.to_dict()

        try:
            record = FreeQuotaRecord.from_dict(
                self.store.update(self._quota_key(user_id), _refund, QUOTA_TTL_SECONDS)
            )
        except _Abort:
            logger.warning("Cannot refund quota for user %s: used=0", user_id)
            return False

        logger.info("Refunded quota for user %s: %d/%d", user_id, record.used, record.limit)
        return True

    def vip_match(self, user_id: str) -> VipMatch:
        return self.allowlist.match(user_id)

    # Payment orders

    @staticmethod
    def _order_key(order_id: str) -> str:
        return f"payment:{order_id}"

    @staticmethod
    def _token_key(token: str) -> str:
        return f"paymentToken:{token}"

    def _save_token(self, token: str, order_id: str) -> None:
        self.store.set(self._token_key(token), {"order_id": order_id}, ORDER_TTL_SECONDS)

    def _sync_token(self, token: str, order_id: str) -> bool:
        """Keep or drop the token index to match the committed order.

        The order is re-read inside the token update, so an order update
        (consume or refund) cannot land between the read and the write.
        A token stays usable while its order is pending, or paid with
        grids left.

        Returns:
            True if the token index is kept
        """
        def _sync(current):
            stored = self.store.get(self._order_key(order_id))
            if stored is None:
                return None
            order = PaymentOrder.from_dict(stored)
            if order.status is OrderStatus.PENDING:
                return {"order_id": order_id}
            if order.status is OrderStatus.PAID and order.remaining_grids > 0:
                return {"order_id": order_id}
            return None

        return self.store.update(self._token_key(token), _sync, ORDER_TTL_SECONDS) is not None

    def create_order(self, user_id: str, count: int) -> PaymentOrder:
        """Persist a new pending order and its token index.

        Raises:
            InvalidRequest: If count is not a purchasable order size
        """
        if count not in PRICING_TABLE.prices:
            raise InvalidRequest(
                f"Order count must be one of {PRICING_TABLE.sizes}", {"count": count}
            )

        now = self._clock()
        total_grids = total_grids_for_count(count)
        order = PaymentOrder(
            order_id=f"order_{uuid.uuid4()}",
            user_id=user_id,
            requested_count=count,
            amount=price_for_count(count),
            status=OrderStatus.PENDING,
            payment_token=f"token_{uuid.uuid4()}",
            created_at=now.isoformat(),
            expires_at=(now + timedelta(minutes=ORDER_EXPIRES_MINUTES)).isoformat(),
            total_grids=total_grids,
            remaining_grids=total_grids,
        )

        self.store.set(self._order_key(order.order_id), order.to_dict(), ORDER_TTL_SECONDS)
        self._save_token(order.payment_token, order.order_id)

        logger.info(
            "Order created: %s | User: %s | Count: %d | Amount: %.2f",
            order.order_id, user_id, count, order.amount,
        )
        return order

    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        stored = self.store.get(self._order_key(order_id))
        return PaymentOrder.from_dict(stored) if stored is not None else None

    def _is_expired(self, order: PaymentOrder) -> bool:
        return self._clock() > datetime.fromisoformat(order.expires_at)

    def mark_paid(self, order_id: str) -> Optional[PaymentOrder]:
        """Transition a pending order to paid.

        Returns:
            The updated order, or None if the order does not exist

        Raises:
            OrderExpired: If the order's payment window has passed
            PaymentInvalid: If the order was cancelled or already expired
        """
        def _pay(current):
            if current is None:
                raise _Abort("missing")
            order = PaymentOrder.from_dict(current)
            if order.status is OrderStatus.PAID:
                raise _Abort("already_paid", order)
            if order.status is not OrderStatus.PENDING:
                raise _Abort("not_pending", order)
            if self._is_expired(order):
                order.status = OrderStatus.EXPIRED
                return order.to_dict()
            order.status = OrderStatus.PAID
            order.paid_at = self._clock().isoformat()
            return order.to_dict()

        try:
            order = PaymentOrder.from_dict(
                self.store.update(self._order_key(order_id), _pay, ORDER_TTL_SECONDS)
            )
        except _Abort as abort:
            if abort.outcome == "missing":
                return None
            if abort.outcome == "already_paid":
                return abort.value
            raise PaymentInvalid(
                f"Order is {abort.value.status.value}", {"order_id": order_id}
            )

        if order.status is OrderStatus.EXPIRED:
            self._sync_token(order.payment_token, order_id)
            raise OrderExpired("Order has expired", {"order_id": order_id})

        logger.info(
            "Order paid: %s | User: %s | Amount: %.2f | Grids: %d",
            order_id, order.user_id, order.amount, order.total_grids,
        )
        return order

    def cancel_order(self, order_id: str) -> Optional[PaymentOrder]:
        """Cancel a pending order and invalidate its token."""
        def _cancel(current):
            if current is None:
                raise _Abort("missing")
            order = PaymentOrder.from_dict(current)
            if order.status is not OrderStatus.PENDING:
                raise _Abort("not_pending", order)
            order.status = OrderStatus.CANCELLED
            return order.to_dict()

        try:
            order = PaymentOrder.from_dict(
                self.store.update(self._order_key(order_id), _cancel, ORDER_TTL_SECONDS)
            )
        except _Abort as abort:
            if abort.outcome == "missing":
                return None
            raise PaymentInvalid(
                f"Only pending orders can be cancelled (order is {abort.value.status.value})",
                {"order_id": order_id},
            )

        self._sync_token(order.payment_token, order_id)
        logger.info("Order cancelled: %s", order_id)
        return order

    def assert_token_valid(self, token: str, user_id: str, consume_one: bool = False) -> PaymentOrder:
        """Validate a payment token for ``user_id``, optionally spending one grid.

        The validation and the decrement happen in one atomic store update.

        Returns:
            The order after validation (and consumption)

        Raises:
            PaymentRequired: Unknown token, missing order, wrong owner,
                unpaid order or exhausted grids
            OrderExpired: Unpaid order past its payment window
        """
        token_entry = self.store.get(self._token_key(token)) if token else None
        if token_entry is None:
            raise PaymentRequired("Payment required")
        order_id = token_entry["order_id"]

        def _validate(current):
            if current is None:
                raise _Abort("missing")
            order = PaymentOrder.from_dict(current)
            if order.user_id != user_id:
                raise _Abort("owner_mismatch")
            if order.status is OrderStatus.PENDING and self._is_expired(order):
                order.status = OrderStatus.EXPIRED
                return order.to_dict()
            if order.status is not OrderStatus.PAID:
                raise _Abort("unpaid")
            if order.remaining_grids <= 0:
                raise _Abort("exhausted")
            if not consume_one:
                raise _Abort("valid", order)
            order.remaining_grids -= 1
            return order.to_dict()

        try:
            order = PaymentOrder.from_dict(
                self.store.update(self._order_key(order_id), _validate, ORDER_TTL_SECONDS)
            )
        except _Abort as abort:
            if abort.outcome == "valid":
                return abort.value
            if abort.outcome == "missing":
                raise PaymentRequired("Order not found or expired")
            if abort.outcome == "owner_mismatch":
                raise PaymentRequired("Payment token does not belong to this user")
            if abort.outcome == "exhausted":
                self._sync_token(token, order_id)
                raise PaymentRequired("All grids used, please purchase again")
            raise PaymentRequired("Payment required")

        if order.status is OrderStatus.EXPIRED:
            self._sync_token(token, order_id)
            raise OrderExpired("Order has expired", {"order_id": order_id})

        logger.info(
            "Grid consumed: %s | Remaining: %d/%d",
            order.order_id, order.remaining_grids, order.total_grids,
        )
        if not self._sync_token(token, order_id):
            logger.info("Token deleted (grids exhausted): %s", order.order_id)
        return order

    def refund_grid(self, order_id: str) -> bool:
        """Atomically return one grid to a paid order.

        Restores the token index if consumption had deleted it; the index
        is re-derived from the committed order, so a consume racing this
        refund cannot leave a paid grid without a token.

        Returns:
            True if refunded, False if the order is missing or already full
        """
        def _refund(current):
            if current is None:
                raise _Abort("missing")
            order = PaymentOrder.from_dict(current)
            if order.status is not OrderStatus.PAID or order.remaining_grids >= order.total_grids:
                raise _Abort("full")
            order.remaining_grids += 1
            return order.to_dict()

        try:
            order = PaymentOrder.from_dict(
                self.store.update(self._order_key(order_id), _refund, ORDER_TTL_SECONDS)
            )
        except _Abort:
            logger.warning("Cannot refund grid for order %s", order_id)
            return False

        self._sync_token(order.payment_token, order_id)
        logger.info(
            "Grid refunded: %s | Remaining: %d/%d",
            order_id, order.remaining_grids, order.total_grids,
        )
        return True


class Credit(ABC):
    """One unit of allowance the orchestrator spends per dispatched group."""

    @abstractmethod
    def consume(self) -> None:
        """Spend one unit, raising a CreditGuardError if none is left."""

    @abstractmethod
    def refund(self) -> bool:
        """Return one unit; False if there was nothing to return."""


class FreeQuotaCredit(Credit):
    """Spends the caller's daily free quota."""

    def __init__(self, ledger: CreditLedger, user_id: str):
        self.ledger = ledger
        self.user_id = user_id

    def consume(self) -> None:
        if not self.ledger.consume_free_quota(self.user_id):
            raise QuotaExceeded(
                "Daily free quota used up, please come back tomorrow", {"mode": "free"}
            )

    def refund(self) -> bool:
        return self.ledger.refund_free_quota(self.user_id)


class OrderGridCredit(Credit):
    """Spends grids of a paid order identified by its payment token."""

    def __init__(self, ledger: CreditLedger, token: str, user_id: str):
        self.ledger = ledger
        self.token = token
        self.user_id = user_id
        self.order_id: Optional[str] = None

    def consume(self) -> None:
        order = self.ledger.assert_token_valid(self.token, self.user_id, consume_one=True)
        self.order_id = order.order_id

    def refund(self) -> bool:
        if self.order_id is None:
            return False
        return self.ledger.refund_grid(self.order_id)
