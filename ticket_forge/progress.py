"""
Progress publisher.

The engine publishes an immutable snapshot after every persisted change; any
number of observers subscribe per instance. Delivery is fire-and-forget with
last-write-wins semantics: a slow subscriber loses its oldest pending
snapshots, never the newest.
"""

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

import structlog

from .db.document_store import DocumentStore
from .errors import NotFoundError, ProgressTimeoutError
from .workflow.models import (
    INSTANCE_COLLECTION,
    InstanceSnapshot,
    OwnerScope,
    WorkflowInstance,
)

logger = structlog.get_logger()

DEFAULT_GRACE_PERIOD_SECONDS = 30.0
SUBSCRIBER_QUEUE_SIZE = 16


class ProgressPublisher:
    """Per-instance pub/sub of workflow snapshots."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        grace_period: Optional[float] = None,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ):
        if grace_period is None:
            from ticket_forge.config import settings

            grace_period = settings.progress_grace_period_seconds
        self.store = store
        self.grace_period = grace_period
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, instance_id: str) -> int:
        return len(self._subscribers.get(instance_id, ()))

    def publish(self, instance_id: str, snapshot: InstanceSnapshot) -> None:
        """Hand a snapshot to every live subscriber without waiting."""
        for queue in list(self._subscribers.get(instance_id, ())):
            if queue.full():
                # Last write wins: drop the oldest undelivered snapshot
                queue.get_nowait()
            queue.put_nowait(snapshot)

    async def subscribe(
        self,
        instance_id: str,
        owner: Optional[OwnerScope] = None,
        grace_period: Optional[float] = None,
    ) -> AsyncIterator[InstanceSnapshot]:
        """Stream snapshots of an instance until it reaches a terminal state.

        An instance that does not exist yet is reported as ``initializing``.
        If no snapshot arrives within the grace period, ProgressTimeoutError
        is raised.
        """
        grace = self.grace_period if grace_period is None else grace_period
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        # Register before reading the store so no publish is missed
        self._subscribers[instance_id].add(queue)
        log = logger.bind(instance_id=instance_id)
        log.debug("progress_subscribed")
        try:
            snapshot = self._load(instance_id, owner)
            if snapshot is None:
                yield InstanceSnapshot.initializing(instance_id)
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=grace)
                except asyncio.TimeoutError:
                    log.warning("progress_timeout", grace_period=grace)
                    raise ProgressTimeoutError(
                        f"Workflow {instance_id} did not start within {grace} seconds"
                    )
            last_version = 0
            while True:
                # Queued snapshots may predate the one read from the store
                if snapshot.version > last_version:
                    last_version = snapshot.version
                    yield snapshot
                    if snapshot.is_terminal:
                        return
                snapshot = await queue.get()
        finally:
            subscribers = self._subscribers.get(instance_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[instance_id]
            log.debug("progress_unsubscribed")

    def _load(
        self, instance_id: str, owner: Optional[OwnerScope]
    ) -> Optional[InstanceSnapshot]:
        if self.store is None:
            return None
        doc = self.store.get(INSTANCE_COLLECTION, instance_id)
        if doc is None:
            return None
        instance = WorkflowInstance.model_validate(doc.data)
        if owner is not None and instance.owner != owner:
            raise NotFoundError(f"Workflow {instance_id} not found")
        instance.version = doc.version
        return instance.snapshot()
