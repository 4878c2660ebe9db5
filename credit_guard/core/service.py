"""
Request-level facade.

Composes identity, rate limiting, the abuse guard, the credit ledger and
the batch orchestrator into the operations exposed to a transport (HTTP
handler, CLI). Structural validation always happens before any ledger or
abuse-guard mutation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .abuse import AbuseGuard
from .credentials import CredentialPool
from .errors import InvalidRequest, IpDeviceLimit, PaymentRequired, QuotaExceeded
from .ledger import CreditLedger, FreeQuotaCredit, OrderGridCredit, VipAllowList
from .orchestrator import BatchOrchestrator, BatchResult, CancellationToken, ItemStatus, Splitter, WorkItem
from .rate_limit import RateLimiter
from ..config.loader import PaymentMode, ServiceConfig, parse_vip_allowlist
from ..sdk.gateway import SynthesisGateway, decode_artifact
from ..storage.store import Store, create_store

logger = logging.getLogger(__name__)

ROUTE_GENERATE_GRID = "generate-grid"
ROUTE_GENERATE_IMAGE = "generate-image"
ROUTE_CREATE_ORDER = "create-order"
ROUTE_QUOTA = "quota"


@dataclass(frozen=True)
class RequestIdentity:
    """Caller identity derived from network address and device id."""
    ip: str
    device_id: str

    @property
    def user_id(self) -> str:
        return f"{self.ip}_{self.device_id}"


class GenerationService:
    """Entry point for order, quota and generation requests."""

    def __init__(
        self,
        config: ServiceConfig,
        ledger: CreditLedger,
        abuse_guard: AbuseGuard,
        rate_limiter: RateLimiter,
        gateway: SynthesisGateway,
        orchestrator: BatchOrchestrator,
    ):
        self.config = config
        self.ledger = ledger
        self.abuse_guard = abuse_guard
        self.rate_limiter = rate_limiter
        self.gateway = gateway
        self.orchestrator = orchestrator

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        credentials: Sequence[str],
        store: Optional[Store] = None,
        splitter: Optional[Splitter] = None,
    ) -> "GenerationService":
        """Wire every component from configuration.

        The store is created once here (unless injected) and shared by
        the ledger and the abuse guard.
        """
        if store is None:
            store = create_store(config.store.backend.value, config.store.path)
        synthesis = config.synthesis
        pool = CredentialPool(
            credentials, retries=synthesis.retries, base_delay=synthesis.base_delay_seconds
        )
        if not len(pool):
            logger.warning("No provider credentials configured; generation will fail")
        gateway = SynthesisGateway(pool, model=synthesis.model, image_size=synthesis.image_size)
        return cls(
            config=config,
            ledger=CreditLedger(
                store,
                free_per_day=config.quota.free_per_day,
                allowlist=VipAllowList(parse_vip_allowlist(config.quota.vip_allowlist)),
            ),
            abuse_guard=AbuseGuard(store, ip_device_limit=config.quota.ip_device_limit),
            rate_limiter=RateLimiter(),
            gateway=gateway,
            orchestrator=BatchOrchestrator(
                gateway, group_delay=synthesis.group_delay_seconds, splitter=splitter
            ),
        )

    @property
    def mode(self) -> PaymentMode:
        return self.config.payment.mode

    def identify(self, ip: Optional[str], device_id: Optional[str]) -> RequestIdentity:
        """Build the caller identity.

        Raises:
            InvalidRequest: If the device id is missing
        """
        if not device_id or not device_id.strip():
            raise InvalidRequest("Missing device identifier")
        return RequestIdentity(ip=(ip or "unknown").strip() or "unknown", device_id=device_id.strip())

    def _throttle(self, identity: RequestIdentity, route: str) -> None:
        rule = self.config.rate_limits.rule_for(route)
        self.rate_limiter.check(identity.ip, route, rule.max_requests, rule.window_seconds)

    # Orders and quota

    def create_order(self, identity: RequestIdentity, count: int) -> Dict[str, Any]:
        self._throttle(identity, ROUTE_CREATE_ORDER)
        order = self.ledger.create_order(identity.user_id, count)
        return {
            "order_id": order.order_id,
            "amount": order.amount,
            "payment_token": order.payment_token,
            "expires_at": order.expires_at,
            "total_grids": order.total_grids,
            "remaining_grids": order.remaining_grids,
        }

    def confirm_payment(self, order_id: str) -> Dict[str, Any]:
        """Mark an order paid without a payment provider (development only).

        Raises:
            InvalidRequest: If mock payment is disabled or the order is unknown
        """
        if not self.config.payment.allow_mock_pay:
            raise InvalidRequest("Mock payment is disabled")
        if not order_id:
            raise InvalidRequest("Missing order_id")
        order = self.ledger.mark_paid(order_id)
        if order is None:
            raise InvalidRequest("Order not found", {"order_id": order_id})
        return {"status": order.status.value, "order_id": order.order_id, "paid_at": order.paid_at}

    def verify_order(self, order_id: str) -> Dict[str, Any]:
        if not order_id:
            raise InvalidRequest("Missing order_id")
        order = self.ledger.get_order(order_id)
        if order is None:
            raise InvalidRequest("Order not found", {"order_id": order_id})
        return {
            "status": order.status.value,
            "order_id": order.order_id,
            "payment_token": order.payment_token,
            "count": order.requested_count,
            "paid_at": order.paid_at,
            "remaining_grids": order.remaining_grids,
            "total_grids": order.total_grids,
        }

    def get_quota(self, identity: RequestIdentity) -> Dict[str, Any]:
        self._throttle(identity, ROUTE_QUOTA)
        record = self.ledger.get_free_quota(identity.user_id)
        return {
            "mode": self.mode.value,
            "remaining": record.remaining,
            "used": record.used,
            "limit": record.limit,
            "reset_at": record.reset_at,
            "is_free_mode": self.mode is PaymentMode.FREE,
            "is_vip": self.ledger.vip_match(identity.user_id).is_vip,
        }

    # Generation

    def _guard_free(self, identity: RequestIdentity) -> None:
        check = self.abuse_guard.check(identity.ip, identity.device_id)
        if not check.allowed:
            raise IpDeviceLimit("Too many devices from this IP today", check.device_count)
        if not self.ledger.check_free_quota(identity.user_id):
            raise QuotaExceeded(
                "Daily free quota used up, please come back tomorrow", {"mode": "free"}
            )

    def _require_token(self, token: Optional[str]) -> str:
        if not token:
            raise PaymentRequired("Payment required", {"payment_url": "/payment?count=4"})
        return token

    def generate_batch(
        self,
        identity: RequestIdentity,
        items: Iterable[Any],
        reference: str,
        description: str,
        token: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """Run a credit-reconciled batch for the caller.

        Args:
            identity: Caller identity
            items: WorkItem objects or ``{"id", "prompt"}`` mappings
            reference: Base64 reference image
            description: Character description
            token: Payment token (paid mode only)
            cancel: Optional cancellation token

        Raises:
            InvalidRequest: Malformed payload (nothing consumed or recorded)
            PaymentRequired / OrderExpired: Paid-mode token problems
            QuotaExceeded / IpDeviceLimit: Free-mode allowance problems
            RateLimited: Request limiter tripped
        """
        work_items = _parse_items(items)
        if not description or not description.strip():
            raise InvalidRequest("description is required")
        decode_artifact(reference)
        if self.mode is PaymentMode.PAID:
            token = self._require_token(token)

        self._throttle(identity, ROUTE_GENERATE_GRID)

        if self.mode is PaymentMode.FREE:
            self._guard_free(identity)
            credit = FreeQuotaCredit(self.ledger, identity.user_id)
        else:
            self.ledger.assert_token_valid(token, identity.user_id)
            credit = OrderGridCredit(self.ledger, token, identity.user_id)

        result = self.orchestrator.run(work_items, reference, description, credit, cancel)
        logger.info(
            "Batch for %s finished: %d succeeded, %d failed",
            identity.user_id, len(result.succeeded), len(result.failed),
        )
        return result

    def generate_single(
        self,
        identity: RequestIdentity,
        prompt: str,
        reference: str,
        description: str,
        token: Optional[str] = None,
    ) -> str:
        """Generate one image.

        Free mode spends one credit and refunds it if synthesis fails.
        Paid mode only requires a valid token; no grid is spent.
        """
        if not prompt or not prompt.strip():
            raise InvalidRequest("prompt is required")
        if not description or not description.strip():
            raise InvalidRequest("description is required")
        decode_artifact(reference)
        if self.mode is PaymentMode.PAID:
            token = self._require_token(token)

        self._throttle(identity, ROUTE_GENERATE_IMAGE)

        if self.mode is PaymentMode.PAID:
            self.ledger.assert_token_valid(token, identity.user_id)
            return self.gateway.generate_single(reference, description, prompt)

        self._guard_free(identity)
        credit = FreeQuotaCredit(self.ledger, identity.user_id)
        credit.consume()
        try:
            return self.gateway.generate_single(reference, description, prompt)
        except Exception:
            credit.refund()
            logger.info("Refunded free quota for user %s", identity.user_id)
            raise


def _parse_items(items: Iterable[Any]) -> List[WorkItem]:
    if items is None:
        raise InvalidRequest("items are required")
    parsed = []
    for raw in items:
        if isinstance(raw, WorkItem):
            item = raw
        elif isinstance(raw, dict):
            item = WorkItem(id=str(raw.get("id") or ""), prompt=str(raw.get("prompt") or ""))
        else:
            raise InvalidRequest("Each item must have an id and a prompt")
        if not item.id or not item.prompt.strip():
            raise InvalidRequest("Each item must have an id and a prompt")
        parsed.append(item)
    if not parsed:
        raise InvalidRequest("At least one item is required")
    return parsed


def render_batch(result: BatchResult) -> Dict[str, Any]:
    """Serialise a BatchResult into the response envelope."""
    data = {
        "items": [
            {
                "id": r.item_id,
                "group_index": r.group_index,
                "status": r.status.value,
                "tile_index": r.tile_index,
                "error": r.error,
            }
            for r in result.items
        ],
        "anchor": result.anchor,
        "rate_limited": result.rate_limited,
        "cancelled": result.cancelled,
    }
    if result.error is not None:
        data["error"] = result.error.code
        data["message"] = result.error.message
    success = any(r.status is ItemStatus.SUCCESS for r in result.items)
    return {"success": success, "data": data}
