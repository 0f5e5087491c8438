"""Two-phase optimistic mutations: apply locally, then confirm or compensate."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any

from savor_save.errors import RemoteUnavailableError
from savor_save.utils.logging import LedgerLogger
from savor_save.utils.notify import Notifier


class OptimisticOperation(ABC):
    """
    One local-first mutation.

    ``apply_local`` runs synchronously before the first await so the change is
    visible to the next read. ``commit`` issues the store call. Exactly one of
    ``confirm`` or ``compensate`` follows, unless the owner was closed in the
    meantime.
    """

    name: str = "mutation"
    success_message: str | None = None
    rejected_message: str = "Request was rejected"
    failure_message: str = "Failed to sync changes"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id

    @abstractmethod
    def apply_local(self) -> None:
        """Mutate local state."""
        pass

    @abstractmethod
    async def commit(self) -> Any:
        """Issue the store call. May raise RemoteUnavailableError."""
        pass

    def confirm(self, result: Any) -> bool:
        """Reconcile local state with the store's answer.

        Returns False when the store declined the change.
        """
        return True

    async def compensate(self, error: RemoteUnavailableError) -> None:
        """Restore a consistent local state after a failed commit."""
        pass


class OptimisticRunner:
    """Drives operations through their phases and owns background commits."""

    def __init__(self, notifier: Notifier, logger: LedgerLogger):
        self.notifier = notifier
        self.logger = logger
        self.closed = False
        self._in_flight: Counter[str] = Counter()
        self._tasks: set[asyncio.Task[bool]] = set()

    def is_in_flight(self, entity_id: str) -> bool:
        """Check if a mutation for an entity is awaiting the store."""
        return self._in_flight[entity_id] > 0

    def begin(self, operation: OptimisticOperation) -> None:
        """Apply the local phase."""
        operation.apply_local()
        self._in_flight[operation.entity_id] += 1
        self.logger.log_mutation(operation.name, operation.entity_id, phase="apply")

    async def finish(self, operation: OptimisticOperation) -> bool:
        """Commit, then confirm or compensate. Returns whether the store accepted."""
        entity_id = operation.entity_id
        start_time = time.time()

        try:
            result = await operation.commit()
        except RemoteUnavailableError as e:
            self._release(entity_id)
            if self.closed:
                self.logger.log_compensation(
                    operation.name, entity_id, action="discarded", error=str(e)
                )
                return False

            self.logger.log_compensation(
                operation.name, entity_id, action="compensate", error=str(e)
            )
            await operation.compensate(e)
            self.notifier.error(operation.failure_message)
            return False

        self._release(entity_id)
        duration_ms = (time.time() - start_time) * 1000

        if self.closed:
            self.logger.log_mutation(
                operation.name, entity_id, phase="discarded", duration_ms=duration_ms
            )
            return False

        accepted = operation.confirm(result)
        self.logger.log_mutation(
            operation.name,
            operation.entity_id,
            phase="confirm" if accepted else "rejected",
            duration_ms=duration_ms,
        )

        if accepted:
            if operation.success_message:
                self.notifier.success(operation.success_message)
        else:
            self.notifier.error(operation.rejected_message)
        return accepted

    async def run(self, operation: OptimisticOperation) -> bool:
        """Apply locally and wait for the store."""
        self.begin(operation)
        return await self.finish(operation)

    def spawn(self, operation: OptimisticOperation) -> asyncio.Task[bool]:
        """Apply locally and commit in a tracked background task."""
        self.begin(operation)
        task = asyncio.create_task(self.finish(operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Discard pending results and cancel background commits."""
        self.closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _release(self, entity_id: str) -> None:
        self._in_flight[entity_id] -= 1
        if self._in_flight[entity_id] <= 0:
            del self._in_flight[entity_id]
