"""Batched API-call counter per instance.

``record()`` is synchronous and only bumps an in-memory counter, so it never
blocks or fails the request it accompanies. A background loop flushes the
accumulated deltas to ``instances.total_api_calls`` with an atomic
``UPDATE ... SET total_api_calls = total_api_calls + delta``.

A failed flush is logged and the delta stays pending for the next attempt.
The counter is advisory telemetry: increments still pending when the
process dies are lost.
"""

import asyncio
import logging
import uuid
from collections import Counter
from typing import Dict, Optional

from sqlalchemy import update

from ..observability.metrics import record_ledger_write_failure

logger = logging.getLogger(__name__)


class ApiCallCounter:
    """In-memory per-instance API call counter with periodic DB flush."""

    def __init__(self):
        self._pending: Counter[str] = Counter()

    def record(self, instance_id: Optional[str]) -> None:
        """Count one API call for *instance_id* (no-op without an instance)."""
        if instance_id:
            self._pending[instance_id] += 1

    def pending(self, instance_id: Optional[str] = None) -> int:
        """Unflushed calls for one instance, or for all of them."""
        if instance_id is None:
            return sum(self._pending.values())
        return self._pending.get(instance_id, 0)

    async def flush(self) -> Dict[str, int]:
        """Persist pending deltas. Returns ``{instance_id: delta}`` actually written."""
        from ..database.connection import get_db_context
        from ..models.instance import Instance

        if not self._pending:
            return {}

        # Swap out the batch first so calls recorded during the flush are kept.
        batch = dict(self._pending)
        self._pending.clear()

        flushed: Dict[str, int] = {}
        for instance_id, delta in batch.items():
            try:
                async with get_db_context() as session:
                    result = await session.execute(
                        update(Instance)
                        .where(Instance.id == uuid.UUID(instance_id))
                        .values(total_api_calls=Instance.total_api_calls + delta)
                    )
                    await session.commit()
            except ValueError:
                logger.warning("Dropping %d API calls for malformed instance id %r", delta, instance_id)
                continue
            except Exception as e:
                logger.warning(
                    "Failed to flush %d API calls for instance %s: %s", delta, instance_id, e
                )
                record_ledger_write_failure("api_calls")
                self._pending[instance_id] += delta
                continue

            if (result.rowcount or 0) == 0:
                logger.warning("Dropping %d API calls for unknown instance %s", delta, instance_id)
                continue
            flushed[instance_id] = delta

        if flushed:
            logger.debug("Flushed API calls for %d instance(s)", len(flushed))
        return flushed

    async def run_flush_loop(
        self, stop_event: asyncio.Event, interval_seconds: float = 30.0
    ) -> None:
        """Background loop to periodically persist the in-memory counters."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                await self.flush()


usage_counter = ApiCallCounter()
