from __future__ import annotations

import logging
from dataclasses import dataclass, field

from prometheus_client import REGISTRY, Counter, Info, write_to_textfile

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanerMetrics:
    """Prometheus metrics recorded during a migration run.

    Counters are labeled by resource ``kind`` so a textfile scrape after the
    run shows which add-on objects were deleted, rewritten or contended.
    """

    deletions_total: Counter = field(
        default_factory=lambda: Counter(
            "cleaneks_deletions_total",
            "Total managed resources deleted",
            ["kind"],
        )
    )
    writes_total: Counter = field(
        default_factory=lambda: Counter(
            "cleaneks_writes_total",
            "Total ownership updates written back to the API server",
            ["kind"],
        )
    )
    conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "cleaneks_update_conflicts_total",
            "Total optimistic-concurrency conflicts retried during updates",
            ["kind"],
        )
    )
    api_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cleaneks_api_errors_total",
            "Total fatal Kubernetes API errors",
            ["kind", "operation"],
        )
    )
    runs_total: Counter = field(
        default_factory=lambda: Counter(
            "cleaneks_runs_total",
            "Total invocations by command and outcome",
            ["command", "outcome"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cleaneks",
            "Build information for the add-on migration tool",
        )
    )


METRICS = CleanerMetrics()


def export_textfile(path: str | None) -> None:
    """Write the default registry to *path* for the node-exporter textfile collector."""
    if not path:
        return
    write_to_textfile(path, REGISTRY)
    LOGGER.info("Wrote metrics to %s", path)
