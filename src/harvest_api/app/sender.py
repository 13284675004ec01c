from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Protocol

from .models import Reply, SendResult
from .storage import RecordStore

logger = logging.getLogger(__name__)


class ReplySender(Protocol):
    """Posts one reply to the platform the comment came from."""

    def send(self, reply: Reply) -> SendResult: ...


class SimulatedReplySender:
    """Stand-in for platform posting APIs.

    Resolves the reply's comment, waits `latency_s` and reports success, or a
    rate-limit failure with probability `failure_rate`.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        latency_s: float = 0.0,
        failure_rate: float = 0.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        self.store = store
        self.latency_s = latency_s
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()
        self._sleep = sleep

    def send(self, reply: Reply) -> SendResult:
        comment = self.store.get_comment(reply.comment_id)
        if comment is None:
            return SendResult(success=False, error="Associated comment not found")
        if self.latency_s > 0:
            self._sleep(self.latency_s)
        if self._rng.random() < self.failure_rate:
            return SendResult(success=False, error="API rate limit exceeded")
        logger.info(
            "reply_send event=posted reply_id=%s comment_id=%s source=%s",
            reply.id,
            comment.id,
            comment.source,
        )
        return SendResult(success=True)
