from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, PolicyV1Api
from kubernetes.config.config_exception import ConfigException

from cleaneks.src.config import ClusterSettings, ConfigError
from cleaneks.src.resources import ClusterApis

LOGGER = logging.getLogger(__name__)

KUBECONFIG_ENTRY_NAME = "cleaneks"

# kubeconfig keys that name files and are resolved against the kubeconfig's directory.
_CLUSTER_FILE_KEYS = ("certificate-authority",)
_USER_FILE_KEYS = ("client-certificate", "client-key", "tokenFile")


def load_kube_configuration(client_configuration: client.Configuration) -> None:
    """Load ambient Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config(client_configuration=client_configuration)
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config(client_configuration=client_configuration)
        LOGGER.info("Loaded local kubeconfig")


def normalize_host(host: str) -> str:
    host = host.strip().rstrip("/")
    if "://" not in host:
        host = f"https://{host}"
    return host


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def static_kubeconfig(settings: ClusterSettings) -> dict[str, Any]:
    """Describe an explicit host and its inline credentials as a one-context kubeconfig.

    PEM material goes in the ``*-data`` fields so the kubernetes client owns
    the temporary files it needs and removes them at interpreter exit.
    """
    cluster: dict[str, Any] = {"server": normalize_host(settings.host)}
    if settings.cluster_ca_certificate:
        cluster["certificate-authority-data"] = _b64(settings.cluster_ca_certificate)
    if settings.insecure:
        cluster["insecure-skip-tls-verify"] = True
    if settings.tls_server_name:
        cluster["tls-server-name"] = settings.tls_server_name

    user: dict[str, Any] = {}
    if settings.token:
        user["token"] = settings.token
    elif settings.username:
        user["username"] = settings.username
        user["password"] = settings.password
    elif settings.exec_command:
        plugin: dict[str, Any] = {
            "apiVersion": settings.exec_api_version,
            "command": settings.exec_command,
        }
        if settings.exec_args:
            plugin["args"] = list(settings.exec_args)
        if settings.exec_env:
            plugin["env"] = [{"name": name, "value": value} for name, value in settings.exec_env]
        user["exec"] = plugin
    if settings.client_certificate:
        user["client-certificate-data"] = _b64(settings.client_certificate)
        user["client-key-data"] = _b64(settings.client_key)

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": KUBECONFIG_ENTRY_NAME, "cluster": cluster}],
        "users": [{"name": KUBECONFIG_ENTRY_NAME, "user": user}],
        "contexts": [
            {
                "name": KUBECONFIG_ENTRY_NAME,
                "context": {"cluster": KUBECONFIG_ENTRY_NAME, "user": KUBECONFIG_ENTRY_NAME},
            }
        ],
        "current-context": KUBECONFIG_ENTRY_NAME,
    }


def _absolutize(entry: dict[str, Any], keys: tuple[str, ...], base: Path) -> dict[str, Any]:
    resolved = dict(entry)
    for key in keys:
        value = resolved.get(key)
        if isinstance(value, str) and value and not os.path.isabs(value):
            resolved[key] = str(base / value)
    return resolved


def merged_kubeconfig(
    paths: tuple[str, ...],
    context: str = "",
    context_cluster: str = "",
    context_auth_info: str = "",
) -> dict[str, Any]:
    """Merge kubeconfig files (first definition of a name wins) and override the context.

    ``context_cluster`` and ``context_auth_info`` replace the cluster and
    user of the selected context, like ``kubectl --cluster/--user``.
    """
    merged: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [],
        "users": [],
        "contexts": [],
        "current-context": "",
    }
    for path in paths:
        source = Path(path).expanduser()
        try:
            document = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Unable to load kubeconfig {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Kubeconfig {path} must contain a mapping")

        base = source.resolve().parent
        for section, inner, file_keys in (
            ("clusters", "cluster", _CLUSTER_FILE_KEYS),
            ("users", "user", _USER_FILE_KEYS),
            ("contexts", "context", ()),
        ):
            known = {entry.get("name") for entry in merged[section]}
            for entry in document.get(section) or []:
                if not isinstance(entry, dict) or not entry.get("name") or entry["name"] in known:
                    continue
                body = entry.get(inner) or {}
                merged[section].append(
                    {"name": entry["name"], inner: _absolutize(body, file_keys, base)}
                )
                known.add(entry.get("name"))
        if not merged["current-context"] and document.get("current-context"):
            merged["current-context"] = document["current-context"]

    selected = context or merged["current-context"]
    for entry in merged["contexts"]:
        if entry["name"] == selected:
            if context_cluster:
                entry["context"]["cluster"] = context_cluster
            if context_auth_info:
                entry["context"]["user"] = context_auth_info
            break
    else:
        raise ConfigError(f"Context {selected!r} not found in {', '.join(paths)}")
    merged["current-context"] = selected
    return merged


def _load_from_dict(config_dict: dict[str, Any], cfg: client.Configuration) -> None:
    try:
        config.load_kube_config_from_dict(
            config_dict=config_dict,
            client_configuration=cfg,
            persist_config=False,
        )
    except ConfigException as exc:
        raise ConfigError(f"Invalid cluster configuration: {exc}") from exc


def build_api_client(settings: ClusterSettings) -> client.ApiClient:
    """Return an ``ApiClient`` for the cluster described by *settings*."""
    cfg = client.Configuration()

    if settings.config_paths:
        if settings.config_context_cluster or settings.config_context_auth_info:
            _load_from_dict(
                merged_kubeconfig(
                    settings.config_paths,
                    context=settings.config_context,
                    context_cluster=settings.config_context_cluster,
                    context_auth_info=settings.config_context_auth_info,
                ),
                cfg,
            )
        else:
            try:
                config.load_kube_config(
                    config_file=os.pathsep.join(settings.config_paths),
                    context=settings.config_context or None,
                    client_configuration=cfg,
                )
            except ConfigException as exc:
                raise ConfigError(f"Unable to load kubeconfig: {exc}") from exc
        LOGGER.info("Loaded kubeconfig from %s", ", ".join(settings.config_paths))
        if settings.host:
            cfg.host = normalize_host(settings.host)
    elif settings.host:
        _load_from_dict(static_kubeconfig(settings), cfg)
        LOGGER.info("Using static cluster configuration for %s", cfg.host)
    else:
        try:
            load_kube_configuration(cfg)
        except ConfigException as exc:
            raise ConfigError(
                f"No cluster configuration found; set KUBE_HOST or KUBE_CONFIG_PATH: {exc}"
            ) from exc

    if settings.insecure:
        cfg.verify_ssl = False
    if settings.tls_server_name:
        cfg.tls_server_name = settings.tls_server_name
    if settings.proxy_url:
        cfg.proxy = settings.proxy_url

    return client.ApiClient(configuration=cfg)


def build_cluster_apis(api_client: client.ApiClient) -> ClusterApis:
    """Return the typed API handles the reconciler needs."""
    return ClusterApis(
        core=CoreV1Api(api_client=api_client),
        apps=AppsV1Api(api_client=api_client),
        policy=PolicyV1Api(api_client=api_client),
    )
