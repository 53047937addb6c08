from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from cleaneks.src.mutation import DEFAULT_RETRY, RetryBackoff, read_modify_write_with_retry
from cleaneks.src.ownership import (
    HELM_RELEASE_NAME,
    HELM_RELEASE_NAME_ANNOTATION,
    HELM_RELEASE_NAMESPACE,
    HELM_RELEASE_NAMESPACE_ANNOTATION,
    MANAGED_BY_HELM,
    MANAGED_BY_LABEL,
    PROVIDER_COMPONENT_KEY,
)
from cleaneks.src.resources import ClusterApis, ManagedResourceRef

LOGGER = logging.getLogger(__name__)

_REQUIRED_ANNOTATIONS = {
    HELM_RELEASE_NAME_ANNOTATION: HELM_RELEASE_NAME,
    HELM_RELEASE_NAMESPACE_ANNOTATION: HELM_RELEASE_NAMESPACE,
}
_REQUIRED_LABELS = {MANAGED_BY_LABEL: MANAGED_BY_HELM}


def apply_helm_ownership(obj: Any) -> bool:
    """Rewrite *obj*'s metadata so Helm's ``coredns`` release will adopt it.

    Sets the release name and namespace annotations and the managed-by
    label, and drops the EKS component marker from both labels and
    annotations. Returns True only if something was modified, so a second
    pass over an adopted object is a no-op.
    """
    metadata = obj.metadata
    if metadata.annotations is None:
        metadata.annotations = {}
    if metadata.labels is None:
        metadata.labels = {}

    changed = False
    for key, value in _REQUIRED_ANNOTATIONS.items():
        if metadata.annotations.get(key) != value:
            metadata.annotations[key] = value
            changed = True

    for key, value in _REQUIRED_LABELS.items():
        if metadata.labels.get(key) != value:
            metadata.labels[key] = value
            changed = True

    if PROVIDER_COMPONENT_KEY in metadata.labels:
        del metadata.labels[PROVIDER_COMPONENT_KEY]
        changed = True
    if PROVIDER_COMPONENT_KEY in metadata.annotations:
        del metadata.annotations[PROVIDER_COMPONENT_KEY]
        changed = True

    return changed


def adopt(
    apis: ClusterApis,
    ref: ManagedResourceRef,
    timeout: float | None = None,
    backoff: RetryBackoff = DEFAULT_RETRY,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> bool:
    """Hand *ref* over to Helm with at most one accepted write."""
    written = read_modify_write_with_retry(
        apis,
        ref,
        apply_helm_ownership,
        timeout=timeout,
        backoff=backoff,
        sleep_fn=sleep_fn,
    )
    if written:
        LOGGER.info("Imported %s into Helm release %s", ref, HELM_RELEASE_NAME)
    return written
