# ================================================================================
# Concurrency Helpers
# ================================================================================
#
# Deadlines, off-loop execution and per-baseline training exclusivity for the
# visual validation pipeline.
#
# Key Features:
#   - Deadline tracking on the monotonic clock
#   - Blocking work executed in worker threads under asyncio.wait_for
#   - Per-baseline training guard (in-process lock + optional file lock)
#   - "reject" or "queue" policy for concurrent training requests
#   - Exponential backoff with jitter while queued
#
# Usage:
#   deadline = Deadline(30.0, "train homepage")
#   async with guard.hold("homepage", deadline):
#       artifact = await run_with_deadline(trainer.train, corpus, deadline=deadline)
#
# ================================================================================

from __future__ import annotations

import asyncio
import random
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple, TypeVar, Union

from filelock import FileLock, Timeout
from loguru import logger

from .errors import TrainingInProgressError, ValidationTimeoutError


T = TypeVar("T")

REJECT = "reject"
QUEUE = "queue"
TRAINING_POLICIES = (REJECT, QUEUE)


@dataclass
class WaitConfig:
    """
    Backoff configuration used while waiting for a busy baseline.

    Attributes:
        initial_interval: Initial wait interval in seconds
        multiplier: Multiplier for exponential backoff
        max_interval: Maximum interval between attempts
        jitter: Add random jitter to prevent thundering herd
    """
    initial_interval: float = 0.05
    multiplier: float = 1.5
    max_interval: float = 1.0
    jitter: bool = True


def calculate_next_interval(current_interval: float, config: WaitConfig) -> float:
    """Next wait interval with exponential backoff and +/- 25% jitter."""
    next_interval = min(current_interval * config.multiplier, config.max_interval)
    if config.jitter:
        next_interval = next_interval * (0.75 + random.random() * 0.5)
    return next_interval


class Deadline:
    """Absolute deadline for one operation; ``timeout=None`` never expires."""

    def __init__(self, timeout: Optional[float], operation: str) -> None:
        timeout = None if timeout is None else float(timeout)
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.timeout = timeout
        self.operation = operation
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        """Raise ValidationTimeoutError if the deadline has passed."""
        if self.expired:
            raise ValidationTimeoutError(self.operation, self.timeout)


async def run_with_deadline(
    fn: Callable[..., T],
    *args: Any,
    deadline: Deadline,
    **kwargs: Any,
) -> T:
    """
    Run blocking ``fn`` in a worker thread, bounded by ``deadline``.

    On expiry the awaiting caller gets ValidationTimeoutError; the worker
    thread's result is discarded, so ``fn`` must not publish shared state.
    """
    deadline.check()
    remaining = deadline.remaining()
    call = asyncio.to_thread(fn, *args, **kwargs)
    if remaining is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=remaining)
    except asyncio.TimeoutError:
        logger.warning(f"{deadline.operation} timed out after {deadline.timeout:.2f}s")
        raise ValidationTimeoutError(deadline.operation, deadline.timeout) from None


class TrainingGuard:
    """
    At most one training run per baseline at a time.

    In-process exclusivity uses one threading.Lock per (namespace, baseline),
    shared by every guard in the process. When ``lock_dir`` is set, a
    filelock.FileLock extends the exclusivity to other worker processes.

    Policies:
        reject: a busy baseline raises TrainingInProgressError immediately
        queue:  wait (with backoff) until the baseline is free or the
                deadline expires (ValidationTimeoutError)
    """

    _process_locks: Dict[Tuple[str, str], threading.Lock] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        namespace: str = "default",
        lock_dir: Optional[Union[str, Path]] = None,
        policy: str = REJECT,
        wait_config: Optional[WaitConfig] = None,
    ) -> None:
        if policy not in TRAINING_POLICIES:
            raise ValueError(f"Unknown training policy {policy!r}, expected one of {TRAINING_POLICIES}")
        self.namespace = namespace
        self.lock_dir = Path(lock_dir) if lock_dir else None
        self.policy = policy
        self.wait_config = wait_config or WaitConfig()
        if self.lock_dir:
            self.lock_dir.mkdir(parents=True, exist_ok=True)

    def _thread_lock(self, baseline: str) -> threading.Lock:
        with self._registry_lock:
            return self._process_locks.setdefault((self.namespace, baseline), threading.Lock())

    def _file_lock(self, baseline: str) -> Optional[FileLock]:
        if self.lock_dir is None:
            return None
        return FileLock(str(self.lock_dir / f"train-{baseline}.lock"), timeout=0)

    def is_training(self, baseline: str) -> bool:
        """True while a training run for ``baseline`` holds the guard in this process."""
        return self._thread_lock(baseline).locked()

    def _try_acquire(self, baseline: str, file_lock: Optional[FileLock]) -> bool:
        thread_lock = self._thread_lock(baseline)
        if not thread_lock.acquire(blocking=False):
            return False
        if file_lock is None:
            return True
        try:
            file_lock.acquire(timeout=0)
        except Timeout:
            thread_lock.release()
            return False
        return True

    def _release(self, baseline: str, file_lock: Optional[FileLock]) -> None:
        if file_lock is not None:
            file_lock.release()
        self._thread_lock(baseline).release()

    @asynccontextmanager
    async def hold(self, baseline: str, deadline: Optional[Deadline] = None) -> AsyncIterator[None]:
        """Hold the training slot of ``baseline`` for the duration of the block."""
        deadline = deadline or Deadline(None, f"train '{baseline}'")
        file_lock = self._file_lock(baseline)

        interval = self.wait_config.initial_interval
        while not self._try_acquire(baseline, file_lock):
            if self.policy == REJECT:
                logger.warning(f"Rejected training of '{baseline}': already in progress")
                raise TrainingInProgressError(baseline)
            remaining = deadline.remaining()
            if remaining is not None and remaining <= 0:
                raise ValidationTimeoutError(deadline.operation, deadline.timeout)
            logger.debug(f"Training of '{baseline}' queued, retrying in {interval:.2f}s")
            await asyncio.sleep(interval if remaining is None else min(interval, remaining))
            interval = calculate_next_interval(interval, self.wait_config)

        try:
            yield
        finally:
            self._release(baseline, file_lock)


__all__ = [
    "WaitConfig",
    "calculate_next_interval",
    "Deadline",
    "run_with_deadline",
    "TrainingGuard",
    "REJECT",
    "QUEUE",
]
