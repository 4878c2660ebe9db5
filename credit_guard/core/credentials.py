"""
Provider credential rotation.

Round-robins a set of interchangeable provider credentials, disables
credentials the provider rejects outright, and retries classified
failures on the next credential.

Retry policy by error kind:
- PERMANENT_INVALID - credential disabled for the process lifetime, no delay
- PERMISSION_DENIED - feature not enabled for this credential, no delay
- RATE_LIMITED      - retry after twice the base delay
- TRANSIENT         - retry after the base delay
- NOT_RETRYABLE     - propagated immediately
"""

import logging
import threading
import time
from enum import Enum, auto
from typing import Callable, List, Optional, Sequence, Set, TypeVar

from .errors import CredentialPoolExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransientErrorKind(Enum):
    """Closed classification of provider failures."""
    PERMANENT_INVALID = auto()
    PERMISSION_DENIED = auto()
    RATE_LIMITED = auto()
    TRANSIENT = auto()
    NOT_RETRYABLE = auto()


Classifier = Callable[[BaseException], TransientErrorKind]


class CredentialPool:
    """Thread-safe round-robin pool of opaque credentials.

    The rotation index and the disabled set are shared by every caller
    and only touched while holding the pool lock.
    """

    def __init__(
        self,
        credentials: Sequence[str],
        retries: int = 2,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._credentials: List[str] = list(credentials)
        self._disabled: Set[int] = set()
        self._index = 0
        self._lock = threading.Lock()
        self.retries = retries
        self.base_delay = base_delay
        self._sleep = sleep

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def enabled_count(self) -> int:
        with self._lock:
            return len(self._credentials) - len(self._disabled)

    def is_disabled(self, credential: str) -> bool:
        with self._lock:
            return any(
                self._credentials[i] == credential for i in self._disabled
            )

    def next(self) -> str:
        """Return the next enabled credential in round-robin order.

        Raises:
            CredentialPoolExhausted: If no credential is enabled
        """
        return self._credentials[self._next_slot()]

    def _next_slot(self) -> int:
        with self._lock:
            total = len(self._credentials)
            for _ in range(total):
                slot = self._index
                self._index = (self._index + 1) % total
                if slot not in self._disabled:
                    return slot
        raise CredentialPoolExhausted("No enabled provider credentials available")

    def disable(self, credential: str) -> None:
        """Disable every slot holding ``credential`` for the process lifetime."""
        with self._lock:
            for slot, value in enumerate(self._credentials):
                if value == credential:
                    self._disabled.add(slot)

    def attempt_budget(self) -> int:
        """Attempts allowed for one ``execute`` call.

        One attempt plus ``retries``, capped at two passes over the
        enabled credentials. With fewer retries than credentials, some
        credentials are not tried in that call.
        """
        return min(self.retries + 1, 2 * self.enabled_count)

    def execute(self, op: Callable[[str], T], classify: Classifier) -> T:
        """Run ``op`` with a pooled credential, retrying classified failures.

        Args:
            op: Callable receiving a credential and performing one provider call
            classify: Maps a raised exception to a TransientErrorKind

        Returns:
            Whatever ``op`` returns on the first successful attempt

        Raises:
            CredentialPoolExhausted: If no credential is enabled
            Exception: The last provider error once the budget is spent,
                or the first NOT_RETRYABLE error
        """
        budget = self.attempt_budget()
        if budget <= 0:
            raise CredentialPoolExhausted("No enabled provider credentials available")

        last_error: Optional[BaseException] = None
        for attempt in range(1, budget + 1):
            try:
                slot = self._next_slot()
            except CredentialPoolExhausted as exhausted:
                if last_error is not None:
                    raise exhausted from last_error
                raise
            credential = self._credentials[slot]

            logger.info("Using credential #%d (attempt %d/%d)", slot + 1, attempt, budget)
            try:
                return op(credential)
            except Exception as e:
                last_error = e
                kind = classify(e)
                if kind is TransientErrorKind.NOT_RETRYABLE:
                    raise

                logger.warning("Credential #%d failed (%s): %s", slot + 1, kind.name, e)
                if kind is TransientErrorKind.PERMANENT_INVALID:
                    self.disable(credential)
                    logger.warning("Credential #%d disabled", slot + 1)

                if attempt == budget:
                    raise

                delay = self._retry_delay(kind)
                if delay > 0:
                    logger.info("Retrying with next credential in %.2fs", delay)
                    self._sleep(delay)

        raise CredentialPoolExhausted("Provider credentials exhausted")

    def _retry_delay(self, kind: TransientErrorKind) -> float:
        if kind is TransientErrorKind.RATE_LIMITED:
            return self.base_delay * 2
        if kind is TransientErrorKind.TRANSIENT:
            return self.base_delay
        return 0.0
