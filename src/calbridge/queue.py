"""Deletion check queue with a Redis primary and a durable database fallback."""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, List, Optional
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from .bridges.base import QueueBackendError
from .config import Settings
from .database import DatabaseManager
from .models import DeletionCheck, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class ClaimedTask:
    """A deletion check owned by the current consumer."""

    task_id: str
    check: DeletionCheck
    backend: str
    receipt: Optional[str] = None  # raw Redis entry, used to release the claim


class DeletionQueue(ABC):
    """Queue of deletion checks; consumers only rely on these four calls."""

    backend_name = "generic"

    @abstractmethod
    async def enqueue(self, check: DeletionCheck) -> str:
        """Add a check and return its task id."""
        pass

    @abstractmethod
    async def claim(self, limit: int = 50) -> List[ClaimedTask]:
        """Take ownership of up to ``limit`` due tasks."""
        pass

    @abstractmethod
    async def complete(self, task: ClaimedTask, note: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def fail(self, task: ClaimedTask, error: str) -> str:
        """Record a failed attempt.

        Returns:
            The task's resulting status (``pending`` when it will be retried)
        """
        pass

    async def depth(self) -> Dict[str, int]:
        return {}

    async def close(self) -> None:
        pass


class DatabaseDeletionQueue(DeletionQueue):
    """Durable queue stored in the ``deletion_check_tasks`` table."""

    backend_name = "database"

    def __init__(self, db_manager: DatabaseManager, max_attempts: int = 3, lease_seconds: int = 300):
        self.db_manager = db_manager
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.logger = logger.getChild('database')

    async def enqueue(self, check: DeletionCheck) -> str:
        with self.db_manager.get_session() as session:
            task = self.db_manager.enqueue_deletion_check(session, check, max_attempts=self.max_attempts)
            self.logger.debug(f"Queued deletion check {task.id} for {check.calendar_id}/{check.event_id}")
            return str(task.id)

    async def claim(self, limit: int = 50) -> List[ClaimedTask]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.claim_deletion_checks(session, limit=limit, lease_seconds=self.lease_seconds)
            return [
                ClaimedTask(task_id=str(row.id), check=row.to_check(), backend=self.backend_name)
                for row in rows
            ]

    async def complete(self, task: ClaimedTask, note: Optional[str] = None) -> None:
        with self.db_manager.get_session() as session:
            self.db_manager.complete_deletion_check(session, int(task.task_id), note)

    async def fail(self, task: ClaimedTask, error: str) -> str:
        with self.db_manager.get_session() as session:
            status = self.db_manager.fail_deletion_check(session, int(task.task_id), error)
        return status or TaskStatus.FAILED.value

    async def depth(self) -> Dict[str, int]:
        with self.db_manager.get_session() as session:
            return {
                'database_pending': self.db_manager.count_tasks(session, TaskStatus.PENDING.value),
                'database_processing': self.db_manager.count_tasks(session, TaskStatus.PROCESSING.value),
                'database_failed': self.db_manager.count_tasks(session, TaskStatus.FAILED.value),
            }


class RedisDeletionQueue(DeletionQueue):
    """Fast queue on Redis lists.

    Producers LPUSH onto ``key``. Consumers LMOVE entries onto
    ``key:processing`` and stamp a lease in ``key:leases``; an entry is only
    removed once its check completes or fails. Entries whose lease expired
    are pushed back for the next consumer, so a killed consumer loses
    nothing. Redis keeps no retry accounting, so failed tasks are handed to
    the durable queue with their attempt count bumped.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: redis.Redis,
        key: str = "calbridge:deletion_checks",
        durable: Optional[DeletionQueue] = None,
        max_attempts: int = 3,
        lease_seconds: int = 300
    ):
        self.client = client
        self.key = key
        self.processing_key = f"{key}:processing"
        self.lease_key = f"{key}:leases"
        self.durable = durable
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.logger = logger.getChild('redis')

    async def enqueue(self, check: DeletionCheck) -> str:
        task_id = uuid4().hex
        payload = check.to_payload()
        payload['task_id'] = task_id
        try:
            await self.client.lpush(self.key, json.dumps(payload))
        except RedisError as e:
            raise QueueBackendError(f"Redis enqueue failed: {e}") from e
        return task_id

    async def requeue_expired(self) -> int:
        """Push entries with an expired lease back onto the queue.

        Returns:
            Number of entries requeued
        """
        now = time.time()
        requeued = 0
        for raw in await self.client.lrange(self.processing_key, 0, -1):
            claimed_at = await self.client.hget(self.lease_key, raw)
            if claimed_at is None:
                # Consumer died between LMOVE and the lease stamp
                await self.client.hsetnx(self.lease_key, raw, now)
                continue
            if float(claimed_at) > now - self.lease_seconds:
                continue
            if await self.client.lrem(self.processing_key, 1, raw):
                await self.client.rpush(self.key, raw)
                requeued += 1
            await self.client.hdel(self.lease_key, raw)
        if requeued:
            self.logger.warning(f"Requeued {requeued} deletion checks with expired leases")
        return requeued

    async def claim(self, limit: int = 50) -> List[ClaimedTask]:
        try:
            await self.requeue_expired()
        except RedisError as e:
            raise QueueBackendError(f"Redis claim failed: {e}") from e

        tasks = []
        for _ in range(limit):
            try:
                raw = await self.client.lmove(self.key, self.processing_key, "RIGHT", "LEFT")
                if raw is not None:
                    await self.client.hset(self.lease_key, raw, time.time())
            except RedisError as e:
                if tasks:
                    self.logger.warning(f"Redis claim interrupted after {len(tasks)} tasks: {e}")
                    break
                raise QueueBackendError(f"Redis claim failed: {e}") from e
            if raw is None:
                break
            try:
                data = json.loads(raw)
                check = DeletionCheck.from_payload(data)
            except (ValueError, KeyError, TypeError) as e:
                self.logger.error(f"Dropping malformed deletion check payload: {e}")
                await self._release(raw)
                continue
            tasks.append(ClaimedTask(
                task_id=data.get('task_id') or uuid4().hex,
                check=check,
                backend=self.backend_name,
                receipt=raw,
            ))
        return tasks

    async def _release(self, raw: Optional[str]) -> None:
        if raw is None:
            return
        try:
            await self.client.lrem(self.processing_key, 1, raw)
            await self.client.hdel(self.lease_key, raw)
        except RedisError as e:
            # The lease expires and the check is retried
            self.logger.warning(f"Could not release claimed deletion check: {e}")

    async def complete(self, task: ClaimedTask, note: Optional[str] = None) -> None:
        await self._release(task.receipt)

    async def fail(self, task: ClaimedTask, error: str) -> str:
        attempts = task.check.attempts + 1
        if attempts >= self.max_attempts:
            self.logger.error(
                f"Deletion check for {task.check.event_id} failed after {attempts} attempts: {error}"
            )
            await self._release(task.receipt)
            return TaskStatus.FAILED.value
        retry_check = replace(task.check, attempts=attempts)
        if self.durable is not None:
            await self.durable.enqueue(retry_check)
        else:
            await self.enqueue(retry_check)
        await self._release(task.receipt)
        return TaskStatus.PENDING.value

    async def depth(self) -> Dict[str, int]:
        try:
            return {
                'redis_pending': int(await self.client.llen(self.key)),
                'redis_processing': int(await self.client.llen(self.processing_key)),
            }
        except RedisError as e:
            self.logger.warning(f"Redis unavailable for queue depth: {e}")
            return {'redis_pending': -1, 'redis_processing': -1}

    async def close(self) -> None:
        await self.client.aclose()


class FallbackDeletionQueue(DeletionQueue):
    """Primary queue with a durable fallback when the primary is unavailable."""

    backend_name = "fallback"

    def __init__(self, primary: DeletionQueue, durable: DeletionQueue):
        self.primary = primary
        self.durable = durable
        self.logger = logger.getChild('fallback')

    def _backend_for(self, task: ClaimedTask) -> DeletionQueue:
        return self.primary if task.backend == self.primary.backend_name else self.durable

    async def enqueue(self, check: DeletionCheck) -> str:
        try:
            return await self.primary.enqueue(check)
        except QueueBackendError as e:
            self.logger.warning(f"Primary queue unavailable, using durable queue: {e}")
            return await self.durable.enqueue(check)

    async def claim(self, limit: int = 50) -> List[ClaimedTask]:
        tasks: List[ClaimedTask] = []
        try:
            tasks.extend(await self.primary.claim(limit))
        except QueueBackendError as e:
            self.logger.warning(f"Primary queue unavailable, draining durable queue only: {e}")
        remaining = limit - len(tasks)
        if remaining > 0:
            tasks.extend(await self.durable.claim(remaining))
        return tasks

    async def complete(self, task: ClaimedTask, note: Optional[str] = None) -> None:
        await self._backend_for(task).complete(task, note)

    async def fail(self, task: ClaimedTask, error: str) -> str:
        return await self._backend_for(task).fail(task, error)

    async def depth(self) -> Dict[str, int]:
        depth = await self.primary.depth()
        depth.update(await self.durable.depth())
        return depth

    async def close(self) -> None:
        await self.primary.close()
        await self.durable.close()


def create_deletion_queue(
    settings: Settings,
    db_manager: DatabaseManager,
    redis_client: Optional[redis.Redis] = None
) -> DeletionQueue:
    """Build the configured queue: Redis with database fallback, or database only."""
    max_attempts = settings.sync_config.queue_max_attempts
    lease_seconds = settings.sync_config.queue_lease_seconds
    durable = DatabaseDeletionQueue(db_manager, max_attempts=max_attempts, lease_seconds=lease_seconds)
    if redis_client is None and settings.redis_url:
        redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.request_timeout_seconds,
            socket_connect_timeout=settings.request_timeout_seconds,
        )
    if redis_client is None:
        return durable
    primary = RedisDeletionQueue(
        redis_client, key=settings.redis_queue_key, durable=durable,
        max_attempts=max_attempts, lease_seconds=lease_seconds
    )
    return FallbackDeletionQueue(primary, durable)
