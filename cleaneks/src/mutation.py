from __future__ import annotations

import copy
import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from cleaneks.src.metrics import METRICS
from cleaneks.src.resources import (
    ClusterApis,
    ManagedResourceRef,
    ReconcileError,
    is_conflict,
    is_not_found,
)

LOGGER = logging.getLogger(__name__)

PatchFn = Callable[[Any], bool]


@dataclass(frozen=True)
class RetryBackoff:
    """Bounded backoff for optimistic-concurrency retries.

    ``steps`` is the total number of read-modify-write attempts; the delay
    before attempt ``n + 1`` is ``duration * factor ** (n - 1)`` plus up to
    ``jitter`` of that value.
    """

    steps: int = 5
    duration: float = 0.01
    factor: float = 1.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError("steps must be >= 1")
        if self.duration < 0:
            raise ValueError("duration must be >= 0")

    def delays(self) -> Iterator[float]:
        duration = self.duration
        for _ in range(self.steps - 1):
            jittered = duration
            if self.jitter > 0:
                jittered += duration * self.jitter * random.random()  # noqa: S311
            yield jittered
            duration *= self.factor


# Same shape as the Kubernetes client's default conflict retry.
DEFAULT_RETRY = RetryBackoff()


def delete_if_exists(
    apis: ClusterApis, ref: ManagedResourceRef, timeout: float | None = None
) -> bool:
    """Delete *ref*. Returns False when it was already gone."""
    try:
        apis.operations(ref, timeout=timeout).delete()
    except ApiException as exc:
        if is_not_found(exc):
            LOGGER.info("%s already absent; nothing to delete", ref)
            return False
        METRICS.api_errors_total.labels(kind=ref.kind.value, operation="delete").inc()
        raise ReconcileError.from_api_exception(ref, "delete", exc) from exc
    except HTTPError as exc:
        METRICS.api_errors_total.labels(kind=ref.kind.value, operation="delete").inc()
        raise ReconcileError.from_transport_error(ref, "delete", exc) from exc

    METRICS.deletions_total.labels(kind=ref.kind.value).inc()
    LOGGER.info("Deleted %s", ref)
    return True


def read_modify_write_with_retry(
    apis: ClusterApis,
    ref: ManagedResourceRef,
    patch_fn: PatchFn,
    timeout: float | None = None,
    backoff: RetryBackoff = DEFAULT_RETRY,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> bool:
    """Fetch *ref*, let *patch_fn* edit a private copy, and replace it if changed.

    ``patch_fn`` mutates the copy in place and returns whether it changed
    anything; when it returns False no write is issued. A ``409 Conflict`` on
    replace restarts the whole cycle from the read, up to ``backoff.steps``
    attempts. Returns True when a write was accepted.
    """
    ops = apis.operations(ref, timeout=timeout)
    delays = backoff.delays()

    for attempt in range(1, backoff.steps + 1):
        try:
            current = ops.read()
        except ApiException as exc:
            if is_not_found(exc):
                LOGGER.info("%s not found; skipping update", ref)
                return False
            METRICS.api_errors_total.labels(kind=ref.kind.value, operation="read").inc()
            raise ReconcileError.from_api_exception(ref, "read", exc) from exc
        except HTTPError as exc:
            METRICS.api_errors_total.labels(kind=ref.kind.value, operation="read").inc()
            raise ReconcileError.from_transport_error(ref, "read", exc) from exc

        candidate = copy.deepcopy(current)
        if not patch_fn(candidate):
            LOGGER.debug("%s already up to date", ref)
            return False

        try:
            ops.replace(candidate)
        except ApiException as exc:
            if not is_conflict(exc):
                METRICS.api_errors_total.labels(kind=ref.kind.value, operation="update").inc()
                raise ReconcileError.from_api_exception(ref, "update", exc) from exc

            METRICS.conflicts_total.labels(kind=ref.kind.value).inc()
            delay = next(delays, None)
            if delay is None:
                break
            LOGGER.warning(
                "Conflict updating %s on attempt %d/%d; retrying in %.3fs",
                ref,
                attempt,
                backoff.steps,
                delay,
            )
            sleep_fn(delay)
            continue
        except HTTPError as exc:
            METRICS.api_errors_total.labels(kind=ref.kind.value, operation="update").inc()
            raise ReconcileError.from_transport_error(ref, "update", exc) from exc

        METRICS.writes_total.labels(kind=ref.kind.value).inc()
        LOGGER.info("Updated %s", ref)
        return True

    METRICS.api_errors_total.labels(kind=ref.kind.value, operation="update").inc()
    raise ReconcileError(
        ref=ref,
        operation="update",
        status=409,
        reason=f"conflict persisted after {backoff.steps} attempts",
    )
