"""
Batch generation orchestration.

Drives the fixed-arity synthesis call across an arbitrary-length list of
work items:

1. Chunk items into consecutive groups of at most four
2. Pad short groups with their first item (dispatch only)
3. Dispatch groups one at a time, spending one credit per group
4. Chain the first group's composite as the anchor for later groups
5. Refund the credit of every failed group
6. Stop on provider rate limiting, credit exhaustion or cancellation
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from .errors import CreditGuardError, RateLimited, SynthesisFailed
from .ledger import Credit
from ..sdk.gateway import GRID_ARITY, GridArtifact, GridRequest, SynthesisGateway, SynthesisMode

logger = logging.getLogger(__name__)

Splitter = Callable[[str], Sequence[Any]]


@dataclass(frozen=True)
class WorkItem:
    """Caller-supplied unit of work; ``prompt`` is opaque to the orchestrator."""
    id: str
    prompt: str


@dataclass(frozen=True)
class BatchGroup:
    """Ordered slice of at most ``GRID_ARITY`` work items."""
    group_index: int
    items: Sequence[WorkItem]


class ItemStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ItemResult:
    """Outcome for one real (non-padding) work item."""
    item_id: str
    group_index: int
    status: ItemStatus
    tile_index: Optional[int] = None
    tile: Any = None
    error: Optional[str] = None


@dataclass
class GroupOutcome:
    """Outcome of dispatching one group."""
    group_index: int
    mode: SynthesisMode
    succeeded: bool
    artifact: Optional[GridArtifact] = None
    error: Optional[CreditGuardError] = None
    refunded: bool = False


@dataclass
class BatchResult:
    """Everything a caller needs to render or retry a batch."""
    items: List[ItemResult] = field(default_factory=list)
    groups: List[GroupOutcome] = field(default_factory=list)
    anchor: Optional[str] = None
    rate_limited: bool = False
    cancelled: bool = False
    error: Optional[CreditGuardError] = None

    @property
    def succeeded(self) -> List[ItemResult]:
        return [r for r in self.items if r.status is ItemStatus.SUCCESS]

    @property
    def failed(self) -> List[ItemResult]:
        return [r for r in self.items if r.status is ItemStatus.FAILED]


class CancellationToken:
    """Cooperative stop flag, polled only between groups."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def chunk_items(items: Sequence[WorkItem], arity: int = GRID_ARITY) -> List[BatchGroup]:
    """Split items into consecutive groups of at most ``arity``."""
    return [
        BatchGroup(group_index=index, items=list(items[start:start + arity]))
        for index, start in enumerate(range(0, len(items), arity))
    ]


def pad_group(group: BatchGroup, arity: int = GRID_ARITY) -> List[WorkItem]:
    """Repeat the group's first item until it has ``arity`` entries."""
    padded = list(group.items)
    while padded and len(padded) < arity:
        padded.append(group.items[0])
    return padded


class BatchOrchestrator:
    """Sequential, credit-reconciled dispatcher of batch groups."""

    def __init__(
        self,
        gateway: SynthesisGateway,
        group_delay: float = 4.0,
        splitter: Optional[Splitter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.group_delay = group_delay
        self.splitter = splitter
        self._sleep = sleep

    def run(
        self,
        items: Sequence[WorkItem],
        reference: str,
        description: str,
        credit: Credit,
        cancel: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """Generate every item, one group per provider call.

        Args:
            items: Work items in display order
            reference: Raw reference artifact (base64 image)
            description: Character description shared by all groups
            credit: Allowance spent once per dispatched group
            cancel: Optional cooperative cancellation token

        Returns:
            BatchResult with per-item outcomes; items of groups never
            dispatched are reported as SKIPPED
        """
        cancel = cancel or CancellationToken()
        groups = chunk_items(items)
        result = BatchResult()
        anchor: Optional[str] = None
        dispatched = 0

        for group in groups:
            if cancel.cancelled:
                result.cancelled = True
                logger.info("Batch cancelled before group %d", group.group_index)
                break

            try:
                credit.consume()
            except CreditGuardError as e:
                logger.warning("Credit unavailable for group %d: %s", group.group_index, e.code)
                result.error = e
                break

            dispatched += 1
            outcome = self._dispatch(group, reference, anchor, description, credit, result)
            result.groups.append(outcome)

            if outcome.succeeded and group.group_index == 0:
                anchor = outcome.artifact.image_base64
                result.anchor = anchor

            if isinstance(outcome.error, RateLimited):
                logger.warning("Provider rate limited at group %d; stopping batch", group.group_index)
                result.rate_limited = True
                result.error = outcome.error
                break

            is_last = group.group_index == len(groups) - 1
            if not is_last and not cancel.cancelled and self.group_delay > 0:
                self._sleep(self.group_delay)

        for group in groups[dispatched:]:
            for item in group.items:
                result.items.append(ItemResult(item.id, group.group_index, ItemStatus.SKIPPED))
        return result

    def _dispatch(
        self,
        group: BatchGroup,
        reference: str,
        anchor: Optional[str],
        description: str,
        credit: Credit,
        result: BatchResult,
    ) -> GroupOutcome:
        mode = SynthesisMode.CLONE if anchor else SynthesisMode.INDEPENDENT
        request = GridRequest(
            reference=anchor or reference,
            prompts=[item.prompt for item in pad_group(group)],
            description=description,
            mode=mode,
        )

        logger.info(
            "Dispatching group %d (%d items, %s mode)", group.group_index, len(group.items), mode.value
        )
        try:
            artifact = self.gateway.generate_grid(request)
            tiles = self._split(artifact)
        except CreditGuardError as e:
            refunded = credit.refund()
            if not refunded:
                logger.error("Refund failed for group %d", group.group_index)
            logger.warning("Group %d failed (%s): %s", group.group_index, e.code, e.message)
            for item in group.items:
                result.items.append(
                    ItemResult(item.id, group.group_index, ItemStatus.FAILED, error=e.code)
                )
            return GroupOutcome(group.group_index, mode, False, error=e, refunded=refunded)
        except Exception:
            credit.refund()
            raise

        # Padding duplicates sit after the real items and are dropped here.
        real_count = min(GRID_ARITY, len(group.items))
        for tile_index, item in enumerate(group.items[:real_count]):
            result.items.append(ItemResult(
                item.id,
                group.group_index,
                ItemStatus.SUCCESS,
                tile_index=tile_index,
                tile=tiles[tile_index] if tiles is not None else None,
            ))
        logger.info("Group %d succeeded", group.group_index)
        return GroupOutcome(group.group_index, mode, True, artifact=artifact)

    def _split(self, artifact: GridArtifact) -> Optional[Sequence[Any]]:
        if self.splitter is None:
            return None
        try:
            tiles = list(self.splitter(artifact.image_base64))
        except Exception as e:
            raise SynthesisFailed(f"Post-processing failed: {e}") from e
        if len(tiles) < GRID_ARITY:
            raise SynthesisFailed(f"Post-processing returned {len(tiles)} tiles, expected {GRID_ARITY}")
        return tiles
