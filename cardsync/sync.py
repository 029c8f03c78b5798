import asyncio
import logging
import random
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from cardsync.delta import DeltaError
from cardsync.documents import DuplicateDocument
from cardsync.postgres import RetryPolicy
from cardsync.tracing import NoopTracer

logger = logging.getLogger(__name__)

# Receives the write token; returns the number of documents matched.
Operation = Callable[[str], Awaitable[int]]

NON_RETRYABLE: tuple[type[Exception], ...] = (DeltaError, DuplicateDocument)


class PersistStatus(str, Enum):
    COMPLETED = "completed"
    DIVERGED = "diverged"
    FAILED = "failed"


@dataclass
class PersistResult:
    operation: str
    key: str
    token: str
    status: PersistStatus
    attempts: int
    matched: int = 0
    error: BaseException | None = None


class PersistenceFailed(Exception):
    def __init__(self, result: PersistResult) -> None:
        super().__init__(
            f"{result.operation} for {result.key} failed after "
            f"{result.attempts} attempt(s): {result.error!r}"
        )
        self.result = result


class PersistenceQueue:
    """Runs persistence writes in the background, with retry.

    Writes for the same key (card id) run strictly in submission order, one
    at a time; writes for different keys run concurrently. A write that
    matches no document completes as ``DIVERGED``. A write that keeps
    failing is logged, reported to ``on_persist_failed`` and its task raises
    ``PersistenceFailed``. Every attempt of one write reuses the same token,
    so stores never apply a retried increment twice.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        serialize_per_key: bool = True,
        on_persist_failed: (
            Callable[[PersistResult], Awaitable[None]] | None
        ) = None,
        metrics: Any = None,
        tracer: Any = None,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._serialize_per_key = serialize_per_key
        self._on_persist_failed = on_persist_failed
        self._metrics = metrics
        self._tracer = tracer or NoopTracer()
        self._tails: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._inflight)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def submit(
        self, key: str, operation_name: str, operation: Operation
    ) -> "asyncio.Task[PersistResult]":
        """Schedule ``operation`` and return its task without awaiting it."""
        token = uuid4().hex
        previous = self._tails.get(key) if self._serialize_per_key else None
        task = asyncio.create_task(
            self._run(key, operation_name, operation, token, previous),
            name=f"persist-{operation_name}-{key}",
        )
        self._inflight.add(task)
        if self._serialize_per_key:
            self._tails[key] = task
        self._set_pending()

        def _on_task_done(t: asyncio.Task) -> None:
            self._inflight.discard(t)
            if self._tails.get(key) is t:
                del self._tails[key]
            self._set_pending()
            # Retrieve the outcome so failures are never reported as unretrieved.
            if not t.cancelled():
                t.exception()

        task.add_done_callback(_on_task_done)
        return task

    async def drain(self) -> None:
        """Wait until every submitted write has finished (successfully or not)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.drain()
        return False

    async def _run(
        self,
        key: str,
        operation_name: str,
        operation: Operation,
        token: str,
        previous: asyncio.Task | None,
    ) -> PersistResult:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        with self._tracer.span(
            "persist", {"cardsync.key": key, "cardsync.operation": operation_name}
        ):
            return await self._run_with_retry(key, operation_name, operation, token)

    async def _run_with_retry(
        self, key: str, operation_name: str, operation: Operation, token: str
    ) -> PersistResult:
        policy = self._retry_policy
        started = time.monotonic()
        retry_count = 0
        last_exception: Exception | None = None

        while retry_count <= policy.max_retries:
            try:
                matched = await operation(token)
            except asyncio.CancelledError:
                raise
            except NON_RETRYABLE as e:
                last_exception = e
                logger.exception(f"{operation_name} for {key} cannot be applied: {e}")
                retry_count += 1
                break
            except Exception as e:
                last_exception = e
                logger.exception(
                    f"{operation_name} failed for {key} "
                    f"(attempt {retry_count + 1}/{policy.max_retries + 1}): {e}"
                )
            else:
                result = PersistResult(
                    operation=operation_name,
                    key=key,
                    token=token,
                    status=PersistStatus.COMPLETED if matched else PersistStatus.DIVERGED,
                    attempts=retry_count + 1,
                    matched=matched,
                )
                if matched:
                    logger.debug(f"{operation_name} persisted for {key}")
                    if self._metrics:
                        self._metrics.record_persisted(
                            operation_name, time.monotonic() - started
                        )
                else:
                    logger.warning(
                        f"{operation_name} for {key} matched no stored document; "
                        "in-memory state and store have diverged"
                    )
                    if self._metrics:
                        self._metrics.record_divergence(operation_name)
                return result

            retry_count += 1
            if retry_count <= policy.max_retries:
                delay = backoff_delay(policy, retry_count)
                logger.info(
                    f"Retrying {operation_name} for {key} after {delay:.2f}s "
                    f"(attempt {retry_count + 1}/{policy.max_retries + 1})"
                )
                if self._metrics:
                    self._metrics.record_retry(operation_name)
                await asyncio.sleep(delay)

        result = PersistResult(
            operation=operation_name,
            key=key,
            token=token,
            status=PersistStatus.FAILED,
            attempts=retry_count,
            error=last_exception,
        )
        logger.error(
            f"{operation_name} failed permanently for {key} after {retry_count} attempt(s)"
        )
        if self._metrics:
            self._metrics.record_failed(operation_name, type(last_exception).__name__)
        if self._on_persist_failed:
            try:
                await self._on_persist_failed(result)
            except Exception as e:
                logger.exception(
                    f"on_persist_failed callback failed for {operation_name} {key}: {e}"
                )
        raise PersistenceFailed(result) from last_exception

    def _set_pending(self) -> None:
        if self._metrics:
            self._metrics.set_pending(len(self._inflight))


def backoff_delay(policy: RetryPolicy, retry_count: int) -> float:
    if policy.backoff_strategy == "exponential":
        delay = max(
            policy.backoff_min.total_seconds(),
            min(policy.backoff_factor**retry_count, policy.backoff_max.total_seconds()),
        )
    else:
        delay = max(
            policy.backoff_min.total_seconds(),
            min(policy.backoff_factor * retry_count, policy.backoff_max.total_seconds()),
        )
    if policy.backoff_jitter:
        delay += random.uniform(0, delay * policy.backoff_jitter)
    return delay
