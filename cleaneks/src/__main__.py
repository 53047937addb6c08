from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from collections.abc import Sequence
from typing import Any

from cleaneks.src.config import ConfigError, Settings, load_settings, load_settings_file
from cleaneks.src.kube import build_api_client, build_cluster_apis, normalize_host
from cleaneks.src.metrics import METRICS, export_textfile
from cleaneks.src.reconciler import ObservedResultRecord, Reconciler
from cleaneks.src.resources import ReconcileError
from cleaneks.src.state import StateError, StateStore

RUNTIME_VERSION = "0.1.0"
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

# Credentials this tool handles: kube bearer/basic headers, the KUBE_* secret
# variables, kubeconfig secret keys and inline PEM private keys.
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----.*?-----END [A-Z0-9 ]*PRIVATE KEY-----", re.S
        ),
        "[REDACTED PRIVATE KEY]",
    ),
    (
        re.compile(r"\b(KUBE_(?:TOKEN|PASSWORD|CLIENT_KEY_DATA|EXEC_ENV)=)(\S+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(\b(?:client-key-data|token|password)\b\"?\s*[:=]\s*\"?)([^\s\",;}]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(\b(?:bearer|basic)\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler(sys.stderr)
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def _add_desired_flags(parser: argparse.ArgumentParser) -> None:
    for flag, help_text in (
        ("remove-aws-cni", "Delete the aws-node DaemonSet"),
        ("remove-kube-proxy", "Delete the kube-proxy DaemonSet and ConfigMap"),
        ("remove-core-dns", "Delete the EKS-managed CoreDNS objects"),
        ("import-coredns-to-helm", "Relabel CoreDNS so the 'coredns' Helm release adopts it"),
    ):
        parser.add_argument(
            f"--{flag}",
            action=argparse.BooleanOptionalAction,
            default=None,
            help=f"{help_text} (default: from environment)",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cleaneks",
        description=(
            "Remove the EKS default CNI and kube-proxy add-ons and remove CoreDNS or "
            "hand it over to Helm."
        ),
    )
    parser.add_argument("--config", help="YAML file overriding environment settings")
    parser.add_argument("--state-file", help="Path of the JSON state file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser("apply", help="Reconcile the cluster and save the result")
    _add_desired_flags(apply_parser)
    apply_parser.add_argument(
        "--force",
        action="store_true",
        help="Run the mutation sequence even when nothing is pending",
    )

    refresh_parser = subparsers.add_parser(
        "refresh", help="Observe the cluster without changing it and save the result"
    )
    _add_desired_flags(refresh_parser)

    forget_parser = subparsers.add_parser(
        "forget", help="Drop the saved record; the cluster is left untouched"
    )
    forget_parser.add_argument("--id", help="Record id (defaults to the cluster endpoint)")

    show_parser = subparsers.add_parser("show", help="Print the saved record")
    show_parser.add_argument("--id", help="Record id (defaults to the cluster endpoint)")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.config:
        overrides.update(load_settings_file(args.config))
    for key in ("remove_aws_cni", "remove_kube_proxy", "remove_core_dns", "import_coredns_to_helm"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    if args.state_file:
        overrides["state_file"] = args.state_file
    return load_settings(overrides=overrides)


def _emit(record: ObservedResultRecord) -> None:
    print(json.dumps(record.to_dict(), indent=2, sort_keys=True))


def run_apply(
    reconciler: Reconciler, store: StateStore, settings: Settings, force: bool = False
) -> ObservedResultRecord:
    previous = store.load(reconciler.endpoint)
    refreshed = reconciler.observe(settings.desired, previous=previous)
    if refreshed.pending or force:
        record = reconciler.apply(settings.desired, previous=refreshed)
    else:
        LOGGER.info("Cluster %s already matches the desired state; nothing to do", reconciler.endpoint)
        record = refreshed
    store.save(record)
    return record


def run_refresh(
    reconciler: Reconciler, store: StateStore, settings: Settings, explicit_desired: bool
) -> ObservedResultRecord:
    previous = store.load(reconciler.endpoint)
    desired = settings.desired
    if previous is not None and not explicit_desired:
        desired = previous.desired
    record = reconciler.observe(desired, previous=previous)
    store.save(record)
    return record


def _explicit_desired(args: argparse.Namespace) -> bool:
    return any(
        getattr(args, key, None) is not None
        for key in ("remove_aws_cni", "remove_kube_proxy", "remove_core_dns", "import_coredns_to_helm")
    )


def _record_id(args: argparse.Namespace, settings: Settings) -> str:
    if getattr(args, "id", None):
        return str(args.id)
    if settings.cluster.host:
        return normalize_host(settings.cluster.host)
    return str(build_api_client(settings.cluster).configuration.host)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint: configure logging, load settings, and run one command."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    args = build_parser().parse_args(argv)
    metrics_textfile = os.getenv("METRICS_TEXTFILE", "")
    outcome = "error"
    try:
        settings = settings_from_args(args)
        metrics_textfile = settings.metrics_textfile or metrics_textfile
        store = StateStore(settings.state_file)

        if args.command in {"forget", "show"}:
            record_id = _record_id(args, settings)
            if args.command == "forget":
                removed = store.delete(record_id)
                if not removed:
                    LOGGER.info("No saved record for %s", record_id)
            else:
                saved = store.load(record_id)
                if saved is None:
                    LOGGER.error("No saved record for %s", record_id)
                    outcome = "missing"
                    return EXIT_FAILED
                _emit(saved)
            outcome = "ok"
            return EXIT_OK

        api_client = build_api_client(settings.cluster)
        reconciler = Reconciler(
            apis=build_cluster_apis(api_client),
            endpoint=str(api_client.configuration.host),
            request_timeout=settings.cluster.request_timeout_seconds,
        )
        if args.command == "apply":
            record = run_apply(reconciler, store, settings, force=args.force)
        else:
            record = run_refresh(reconciler, store, settings, _explicit_desired(args))
        _emit(record)
        outcome = "ok"
        return EXIT_OK
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        outcome = "config_error"
        return EXIT_CONFIG
    except ReconcileError as exc:
        LOGGER.error(
            "Reconciliation stopped at %s (%s): %s; re-run after fixing the cause",
            exc.ref,
            exc.operation,
            exc,
        )
        return EXIT_FAILED
    except StateError as exc:
        LOGGER.error("State file error: %s", exc)
        return EXIT_FAILED
    finally:
        METRICS.runs_total.labels(command=args.command, outcome=outcome).inc()
        export_textfile(metrics_textfile)


if __name__ == "__main__":
    sys.exit(main())
