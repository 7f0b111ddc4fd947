"""Asyncio control loop delivering reconciles.

Every tick the controller re-reads the resource store and starts a
reconcile for each object that is due. Reconciles are blocking (git
subprocesses, HTTP) and run in the default executor, bounded by a
semaphore. An object never has more than one attempt in flight.

Scheduling per object:
- new objects and objects whose generation changed are due at once
- a result's requeue_after decides the next run after success or waiting
- failures back off exponentially with jitter, capped
- objects that disappear from the store are forgotten
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import MAX_RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_BASE_SECONDS, Config
from .engine import PromotionEngine
from .environment import EnvironmentReconciler
from .models import Environment, Promotion, Resource
from .store import FileResourceStore, ResourceLoadError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.0

ObjectKey = tuple[str, str, str]


def compute_backoff(failures: int, *, jitter: bool = True) -> float:
    """Delay before retrying an object after `failures` consecutive failures."""
    if failures < 1:
        return 0.0
    backoff = min(RETRY_BACKOFF_BASE_SECONDS * (2 ** (failures - 1)), MAX_RETRY_BACKOFF_SECONDS)
    if jitter:
        backoff += random.uniform(0, backoff * 0.2)
    return float(min(backoff, MAX_RETRY_BACKOFF_SECONDS))


def object_key(resource: Resource) -> ObjectKey:
    return (resource.kind, resource.namespace, resource.name)


@dataclass
class _Schedule:
    due_at: float
    generation: int
    failures: int = 0


class Controller:
    """Schedules Environment and Promotion reconciles until shutdown."""

    def __init__(
        self,
        config: Config,
        store: FileResourceStore,
        engine: PromotionEngine,
        environments: EnvironmentReconciler,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._engine = engine
        self._environments = environments
        self._poll_interval = poll_interval_seconds
        self._clock = clock

        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._shutdown_event = asyncio.Event()
        self._schedules: dict[ObjectKey, _Schedule] = {}
        self._in_flight: dict[ObjectKey, asyncio.Task[None]] = {}

    @property
    def in_flight(self) -> set[ObjectKey]:
        return set(self._in_flight)

    def schedule_for(self, key: ObjectKey) -> _Schedule | None:
        return self._schedules.get(key)

    async def run(self) -> None:
        """Run the control loop until shutdown() is called."""
        logger.info(
            "Starting controller",
            extra={
                "namespace": self._config.namespace or "*",
                "manifests_dir": str(self._config.manifests_dir),
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass

        await self.drain()
        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop after in-flight reconciles finish."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def drain(self) -> None:
        """Wait for every in-flight reconcile to finish."""
        tasks = list(self._in_flight.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def tick(self) -> list[ObjectKey]:
        """Discover objects and start every due reconcile.

        Returns:
            Keys of the reconciles started in this tick.
        """
        loop = asyncio.get_running_loop()
        try:
            resources = await loop.run_in_executor(None, self._store.load_all)
        except ResourceLoadError as e:
            logger.error("Failed to load resources", extra={"error": str(e)})
            return []

        namespace = self._config.namespace
        current: dict[ObjectKey, Resource] = {
            object_key(r): r for r in resources if namespace is None or r.namespace == namespace
        }

        for key in list(self._schedules):
            if key not in current and key not in self._in_flight:
                del self._schedules[key]

        now = self._clock()
        started: list[ObjectKey] = []
        for key, resource in current.items():
            if key in self._in_flight:
                continue
            schedule = self._schedules.get(key)
            generation = resource.metadata.generation
            if schedule is None:
                schedule = self._schedules[key] = _Schedule(due_at=now, generation=generation)
            elif schedule.generation != generation:
                schedule.generation = generation
                schedule.due_at = now
                schedule.failures = 0
            if schedule.due_at > now:
                continue

            self._in_flight[key] = asyncio.create_task(self._run_one(key, resource))
            started.append(key)

        return started

    def _reconcile_func(self, resource: Resource) -> Callable[[str, str], Any]:
        if isinstance(resource, Environment):
            return self._environments.reconcile
        if isinstance(resource, Promotion):
            return self._engine.reconcile
        raise TypeError(f"Unsupported resource kind: {resource.kind}")

    async def _run_one(self, key: ObjectKey, resource: Resource) -> None:
        kind, namespace, name = key
        loop = asyncio.get_running_loop()
        func = self._reconcile_func(resource)

        try:
            async with self._semaphore:
                result = await loop.run_in_executor(None, func, namespace, name)
        except Exception as e:
            logger.exception(
                "Reconcile raised unexpectedly",
                extra={"kind": kind, "namespace": namespace, "resource": name, "error": str(e)},
            )
            self._record_failure(key)
            return
        finally:
            self._in_flight.pop(key, None)

        if not result.found:
            self._schedules.pop(key, None)
        elif result.error is not None:
            self._record_failure(key)
        else:
            self._record_success(key, result.requeue_after)

    def _record_failure(self, key: ObjectKey) -> None:
        schedule = self._schedules.get(key)
        if schedule is None:
            return
        schedule.failures += 1
        delay = compute_backoff(schedule.failures)
        schedule.due_at = self._clock() + delay
        logger.warning(
            "Reconcile failed, backing off",
            extra={
                "kind": key[0],
                "namespace": key[1],
                "resource": key[2],
                "consecutive_failures": schedule.failures,
                "retry_in_seconds": delay,
            },
        )

    def _record_success(self, key: ObjectKey, requeue_after: float | None) -> None:
        schedule = self._schedules.get(key)
        if schedule is None:
            return
        schedule.failures = 0
        if requeue_after is None:
            requeue_after = self._config.reconcile_interval_seconds
        schedule.due_at = self._clock() + requeue_after
