"""Rewrite scrape jobs to use a different API server and service account.

Kubernetes service-discovery entries are mappings in the shape of the
``kubernetes_sd_configs`` items of a scrape job, recognised by their ``role``
key; ``api_server``, ``proxy_url``, ``tls_config.ca_file`` and
``bearer_token_file`` are the fields that may be changed.
"""

from __future__ import annotations

import posixpath
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass

from kvass.model import ScrapeConfig

DEFAULT_CA_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
DEFAULT_TOKEN_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/token"


@dataclass
class InjectOption:
    """Values to inject into every job; empty strings are left alone."""

    kubernetes_url: str = ""
    kubernetes_proxy: str = ""
    service_account_path: str = ""


def _is_kubernetes_sd(sd: object) -> bool:
    return isinstance(sd, MutableMapping) and "role" in sd


def _inject_kubernetes_sd(sd: MutableMapping, option: InjectOption) -> None:
    if sd.get("api_server"):
        return
    if option.kubernetes_url:
        sd["api_server"] = option.kubernetes_url
    if option.kubernetes_proxy:
        sd["proxy_url"] = option.kubernetes_proxy
    if option.service_account_path:
        tls = sd.setdefault("tls_config", {})
        if tls.get("ca_file", "") in (DEFAULT_CA_FILE, ""):
            tls["ca_file"] = posixpath.join(option.service_account_path, "ca.crt")
        if sd.get("bearer_token_file", "") in (DEFAULT_TOKEN_FILE, ""):
            sd["bearer_token_file"] = posixpath.join(option.service_account_path, "token")


def _inject_service_account(job: ScrapeConfig, option: InjectOption) -> None:
    if not option.service_account_path:
        return
    if job.ca_file == DEFAULT_CA_FILE:
        job.ca_file = posixpath.join(option.service_account_path, "ca.crt")
    if job.bearer_token_file in ("", DEFAULT_TOKEN_FILE):
        job.bearer_token_file = posixpath.join(option.service_account_path, "token")


def inject_coordinator_config(
    config: Iterable[ScrapeConfig], option: InjectOption | None
) -> None:
    """Inject API server, proxy and service account into jobs and their SD configs."""
    if option is None:
        return
    for job in config:
        for sd in job.service_discovery_configs:
            if _is_kubernetes_sd(sd):
                _inject_kubernetes_sd(sd, option)
        _inject_service_account(job, option)


def inject_sidecar_config(
    config: Iterable[ScrapeConfig], option: InjectOption | None
) -> None:
    """Point every job's service-account files at the configured path."""
    if option is None:
        return
    for job in config:
        _inject_service_account(job, option)