"""Turn service-discovery target groups into shard and scrape targets."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field

from kvass.labels import RelabelConfig, is_valid_label_name, labels_hash, process
from kvass.model import (
    ADDRESS_LABEL,
    METRICS_PATH_LABEL,
    PARAM_LABEL_PREFIX,
    PREFIX_FOR_INVALID_LABEL_NAME,
    SCHEME_LABEL,
    ScrapeConfig,
    Target,
)

JOB_LABEL = "job"
INSTANCE_LABEL = "instance"
META_LABEL_PREFIX = "__meta_"
RESERVED_LABEL_PREFIX = "__"

_FNV_OFFSET = 14695981039346656037
_FNV_PRIME = 1099511628211
_MASK = (1 << 64) - 1


@dataclass
class TargetGroup:
    """A set of targets sharing common labels, as produced by discovery."""

    targets: list[dict[str, str]] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    source: str = ""


@dataclass
class PromTarget:
    """A scrape target with its final and discovered label sets."""

    labels: dict[str, str] = field(default_factory=dict)
    discovered_labels: dict[str, str] = field(default_factory=dict)
    params: dict[str, list[str]] = field(default_factory=dict)

    def public_labels(self) -> dict[str, str]:
        """Labels without the reserved double-underscore prefix."""
        return {k: v for k, v in self.labels.items() if not k.startswith(RESERVED_LABEL_PREFIX)}

    def url(self) -> str:
        """The scrape URL of this target."""
        return Target(labels=self.labels).url(ScrapeConfig(job_name="", params=self.params))


@dataclass
class SDTargets:
    """One discovered target, for the shards and for the targets API."""

    job: str = ""
    shard_target: Target | None = None
    prom_target: PromTarget | None = None


def _split_host_port(hostport: str) -> tuple[str, str]:
    colon = hostport.rfind(":")
    if colon < 0:
        raise ValueError(f"missing port in address {hostport}")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport}")
        if end + 1 == len(hostport):
            raise ValueError(f"missing port in address {hostport}")
        if end + 1 != colon:
            if hostport[end + 1] == ":":
                raise ValueError(f"too many colons in address {hostport}")
            raise ValueError(f"missing port in address {hostport}")
        host, host_start, port_start = hostport[1:end], 1, end + 1
    else:
        host = hostport[:colon]
        if ":" in host:
            raise ValueError(f"too many colons in address {hostport}")
        host_start = port_start = 0
    if "[" in hostport[host_start:]:
        raise ValueError(f"unexpected '[' in address {hostport}")
    if "]" in hostport[port_start:]:
        raise ValueError(f"unexpected ']' in address {hostport}")
    return host, hostport[colon + 1:]


def _needs_port(address: str) -> bool:
    try:
        _split_host_port(address)
        return False
    except ValueError:
        pass
    try:
        _split_host_port(address + ":1234")
        return True
    except ValueError:
        return False


def complete_port(addr: str, scheme: str) -> str:
    """Append the scheme's default port to an address that has none."""
    if _needs_port(addr):
        if scheme in ("http", ""):
            return addr + ":80"
        if scheme == "https":
            return addr + ":443"
        raise ValueError(f'invalid scheme: "{scheme}"')
    return addr


def _set(labels: dict[str, str], name: str, value: str) -> None:
    if value:
        labels[name] = value
    else:
        labels.pop(name, None)


def populate_labels(
    labels: Mapping[str, str], config: ScrapeConfig
) -> tuple[dict[str, str] | None, dict[str, str]]:
    """Return (final labels or None if dropped, labels before relabelling)."""
    builder = dict(labels)
    for name, value in (
        (JOB_LABEL, config.job_name),
        (METRICS_PATH_LABEL, config.metrics_path),
        (SCHEME_LABEL, config.scheme),
    ):
        if not labels.get(name):
            _set(builder, name, value)
    for key, values in config.params.items():
        if values:
            _set(builder, PARAM_LABEL_PREFIX + key, values[0])

    pre_relabel = dict(sorted(builder.items()))
    relabelled = process(pre_relabel, config.relabel_configs)
    if relabelled is None:
        return None, pre_relabel
    if not relabelled.get(ADDRESS_LABEL):
        raise ValueError("no address")

    result = dict(relabelled)
    addr = complete_port(relabelled[ADDRESS_LABEL], relabelled.get(SCHEME_LABEL, ""))
    result[ADDRESS_LABEL] = addr
    if "/" in addr:
        raise ValueError(f'"{addr}" is not a valid hostname')

    for name in relabelled:
        if name.startswith(META_LABEL_PREFIX):
            del result[name]
    if not relabelled.get(INSTANCE_LABEL):
        result[INSTANCE_LABEL] = addr

    for name, value in result.items():
        try:
            value.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValueError(f'invalid label value for "{name}": "{value}"') from exc
    return dict(sorted(result.items())), pre_relabel


def target_hash(labels: Mapping[str, str] | None, url: str) -> int:
    """FNV-1a 64 over the zero-padded label hash followed by the URL."""
    payload = f"{labels_hash(labels or {}):016d}".encode() + url.encode()
    h = _FNV_OFFSET
    for byte in payload:
        h = ((h ^ byte) * _FNV_PRIME) & _MASK
    return h


def _labels_without_config_param(
    labels: Mapping[str, str] | None, params: Mapping[str, list[str]]
) -> dict[str, str]:
    param_names = {PARAM_LABEL_PREFIX + key for key in params}
    return {k: v for k, v in (labels or {}).items() if k not in param_names}


def _support_invalid_label_name(labels: Mapping[str, str]) -> dict[str, str]:
    return {
        (name if is_valid_label_name(name) else PREFIX_FOR_INVALID_LABEL_NAME + name): value
        for name, value in labels.items()
    }


def targets_from_group(group: TargetGroup, config: ScrapeConfig) -> list[SDTargets]:
    """Build the deduplicated targets of one group under ``config``."""
    targets: list[SDTargets] = []
    seen: set[int] = set()
    for index, target_labels in enumerate(group.targets):
        merged = dict(target_labels)
        for name, value in group.labels.items():
            merged.setdefault(name, value)
        try:
            final, original = populate_labels(merged, config)
        except ValueError as exc:
            raise ValueError(f"instance {index} in group {group.source}: {exc}") from exc

        prom_target = PromTarget(final or {}, original or {}, config.params)
        hash_value = target_hash(final, prom_target.url())
        if hash_value in seen:
            continue
        seen.add(hash_value)
        targets.append(
            SDTargets(
                job=config.job_name,
                prom_target=prom_target,
                shard_target=Target(
                    hash=hash_value,
                    labels=_support_invalid_label_name(
                        _labels_without_config_param(final, config.params)
                    ),
                ),
            )
        )
    return targets


class TargetsDiscovery:
    """Keeps the active and dropped targets of every configured job."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.active_targets_updates: queue.Queue[dict[str, list[SDTargets]]] = queue.Queue(1000)
        self._configs: dict[str, ScrapeConfig] = {}
        self._active: dict[str, list[SDTargets]] = {}
        self._dropped: dict[str, list[SDTargets]] = {}
        self._cond = threading.Condition(threading.Lock())

    def wait_init(self, timeout: float | None = None) -> bool:
        """Block until every job had its first discovery; False on timeout."""
        with self._cond:
            done = self._cond.wait_for(
                lambda: all(job in self._active for job in self._configs), timeout
            )
            if done:
                for job in self._configs:
                    self.logger.info(
                        "job %s first service discovery done, active(%d) ,drop(%d)",
                        job,
                        len(self._active[job]),
                        len(self._dropped.get(job, [])),
                    )
                self.logger.info("all job first service discovery done")
        return done

    def active_targets(self) -> dict[str, list[SDTargets]]:
        with self._cond:
            return dict(self._active)

    def active_targets_by_hash(self) -> dict[int, SDTargets]:
        with self._cond:
            return {
                target.shard_target.hash: target
                for targets in self._active.values()
                for target in targets
            }

    def drop_targets(self) -> dict[str, list[SDTargets]]:
        with self._cond:
            return dict(self._dropped)

    def apply_config(self, scrape_configs: list[ScrapeConfig]) -> None:
        """Use the new jobs, keeping the targets of jobs that still exist."""
        with self._cond:
            configs = {cfg.job_name: cfg for cfg in scrape_configs}
            self._active = {j: t for j, t in self._active.items() if j in configs}
            self._dropped = {j: self._dropped.get(j, []) for j in self._active}
            self._configs = configs
            self._cond.notify_all()

    def translate_targets(
        self, groups: Mapping[str, list[TargetGroup]]
    ) -> dict[str, list[SDTargets]]:
        """Apply a discovery update and return the active targets it produced."""
        with self._cond:
            configs = dict(self._configs)

        actives: dict[str, list[SDTargets]] = {}
        drops: dict[str, list[SDTargets]] = {}
        for job, job_groups in groups.items():
            cfg = configs.get(job)
            if cfg is None:
                self.logger.warning("can not found job %s", job)
                continue
            job_active: list[SDTargets] = []
            job_dropped: list[SDTargets] = []
            for group in job_groups:
                try:
                    targets = targets_from_group(group, cfg)
                except ValueError as exc:
                    self.logger.error("create target for job %s: %s", cfg.job_name, exc)
                    continue
                for target in targets:
                    if target.prom_target.public_labels():
                        job_active.append(target)
                    elif target.prom_target.discovered_labels:
                        job_dropped.append(target)
            actives[job] = job_active
            drops[job] = job_dropped

        with self._cond:
            self._active.update(actives)
            self._dropped.update(drops)
            self._cond.notify_all()
        return actives

    def run(self, sd_queue: queue.Queue, stop: threading.Event) -> None:
        """Translate updates from ``sd_queue`` until ``stop`` is set."""
        while not stop.is_set():
            try:
                groups = sd_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self.active_targets_updates.put(self.translate_targets(groups))