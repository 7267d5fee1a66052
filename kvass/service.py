"""HTTP API of the coordinator: targets, runtime info, config and reload."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import flask

from kvass.api import Helper, Result, bad_data_err, data
from kvass.coordinator import ConfigInfo
from kvass.discovery import PromTarget, SDTargets
from kvass.metrics import Registry
from kvass.model import Health, RuntimeInfo, ScrapeStatus

_ZERO_TIME = "0001-01-01T00:00:00Z"


@dataclass
class ExtendTarget:
    """An active target with its series count and the shards scraping it."""

    discovered_labels: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    scrape_pool: str = ""
    scrape_url: str = ""
    global_url: str = ""
    last_error: str = ""
    last_scrape: str = _ZERO_TIME
    last_scrape_duration: float = 0.0
    health: Health = Health.UNKNOWN
    series: int = 0
    shards: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "discoveredLabels": dict(self.discovered_labels),
            "labels": dict(self.labels),
            "scrapePool": self.scrape_pool,
            "scrapeUrl": self.scrape_url,
            "globalUrl": self.global_url,
            "lastError": self.last_error,
            "lastScrape": self.last_scrape,
            "lastScrapeDuration": self.last_scrape_duration,
            "health": self.health.value,
            "series": self.series,
            "shards": list(self.shards),
        }


@dataclass
class TargetStatistics:
    """Number of a job's active targets, in total and per health."""

    job_name: str
    total: int = 0
    health: dict[Health, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "JobName": self.job_name,
            "Total": self.total,
            "Health": {h.value: n for h, n in self.health.items()},
        }


@dataclass
class TargetDiscovery:
    """The answer of the targets API."""

    active_targets: list[ExtendTarget] = field(default_factory=list)
    active_statistics: list[TargetStatistics] = field(default_factory=list)
    dropped_targets: list[dict[str, dict[str, str]]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "activeTargets": [t.to_dict() for t in self.active_targets]
        }
        if self.active_statistics:
            payload["activeStatistics"] = [s.to_dict() for s in self.active_statistics]
        payload["droppedTargets"] = [dict(t) for t in self.dropped_targets]
        return payload


def filter_job_name(job_name: str, patterns: list[re.Pattern]) -> bool:
    """True when patterns are given and none of them matches ``job_name``."""
    return bool(patterns) and not any(p.search(job_name) for p in patterns)


def sort_keys(targets: Mapping[str, list[SDTargets]]) -> tuple[list[str], int]:
    """Sorted job names and the total number of targets."""
    return sorted(targets), sum(len(items) for items in targets.values())


def flatten(targets: Mapping[str, list[SDTargets]]) -> list[PromTarget]:
    """The scrape targets of all jobs, ordered by job name."""
    keys, _ = sort_keys(targets)
    return [t.prom_target for key in keys for t in targets[key]]


def make_target(job_name: str, prom_target: PromTarget, status: ScrapeStatus) -> ExtendTarget:
    """Combine a discovered target with its scrape status."""
    url = prom_target.url()
    return ExtendTarget(
        discovered_labels=dict(prom_target.discovered_labels),
        labels=prom_target.public_labels(),
        scrape_pool=job_name,
        scrape_url=url,
        global_url=url,
        last_error=status.last_error,
        last_scrape=status.last_scrape.isoformat() if status.last_scrape else _ZERO_TIME,
        last_scrape_duration=status.last_scrape_duration,
        health=status.health,
        series=status.series,
        shards=list(status.shards),
    )


class Service:
    """The coordinator's web API, served by ``self.app``."""

    def __init__(
        self,
        config_file: str,
        reload_config: Callable[[str], Any],
        get_config: Callable[[], ConfigInfo],
        get_scrape_status: Callable[[], Mapping[int, ScrapeStatus]],
        get_active_targets: Callable[[], Mapping[str, list[SDTargets]]],
        get_drop_targets: Callable[[], Mapping[str, list[SDTargets]]],
        registry: Registry,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config_file = config_file
        self.reload_config = reload_config
        self.get_config = get_config
        self.get_scrape_status = get_scrape_status
        self.get_active_targets = get_active_targets
        self.get_drop_targets = get_drop_targets
        self.logger = logger or logging.getLogger(__name__)

        self.app = flask.Flask(__name__)
        helper = Helper(self.logger, registry, "kvass_coordinator")
        routes = [
            ("/metrics", "metrics", helper.metrics_handler, ["GET"]),
            ("/api/v1/targets", "targets", helper.wrap(self._targets_view), ["GET"]),
            (
                "/api/v1/shard/runtimeinfo",
                "runtime_info",
                helper.wrap(lambda: data(self.runtime_info())),
                ["GET"],
            ),
            ("/-/reload", "reload", helper.wrap(self._reload_view), ["POST"]),
            ("/api/v1/status/config", "config", helper.wrap(self._config_view), ["GET"]),
        ]
        for rule, endpoint, view, methods in routes:
            self.app.add_url_rule(rule, endpoint, view, methods=methods)

    def _reload_view(self) -> Result:
        try:
            self.reload_config(self.config_file)
        except Exception as exc:  # noqa: BLE001
            return bad_data_err(exc, "reload failed")
        return data(None)

    def _config_view(self) -> Result:
        raw = self.get_config().raw_content
        return data({"yaml": raw.decode() if isinstance(raw, bytes) else str(raw)})

    def _targets_view(self) -> Result:
        args = flask.request.args
        state = args.get("state", "")
        statistics = args.get("statistics", "")
        if statistics not in ("", "only", "with"):
            return bad_data_err(ValueError("wrong param values statistics"), "")
        try:
            patterns = [re.compile(job) for job in args.getlist("job")]
        except re.error:
            return bad_data_err(ValueError("wrong format of job"), "")
        return data(self.get_targets(state, statistics, args.getlist("health"), patterns))

    def runtime_info(self) -> RuntimeInfo:
        """Summed head series of all targets and the current config hash."""
        series = sum(st.series for st in self.get_scrape_status().values())
        return RuntimeInfo(head_series=series, config_hash=self.get_config().config_hash)

    def get_targets(
        self,
        state: str,
        statistics: str,
        health: list[str],
        job_patterns: list[re.Pattern],
    ) -> TargetDiscovery:
        """Targets filtered by state, job and health, with optional statistics."""
        show_active = state in ("", "any", "active")
        show_dropped = state in ("", "any", "dropped")
        result = TargetDiscovery()

        if show_active or statistics:
            result.active_targets, result.active_statistics = self._statistic_active_targets(
                job_patterns, health
            )
            if not statistics:
                result.active_statistics = []
        if not show_active or statistics == "only":
            result.active_targets = []

        if show_dropped and statistics != "only":
            result.dropped_targets = [
                {"discoveredLabels": dict(t.discovered_labels)}
                for t in flatten(self.get_drop_targets())
            ]
        return result

    def _statistic_active_targets(
        self, patterns: list[re.Pattern], health: list[str]
    ) -> tuple[list[ExtendTarget], list[TargetStatistics]]:
        status = self.get_scrape_status()
        active = self.get_active_targets()
        keys, _ = sort_keys(active)
        targets: list[ExtendTarget] = []
        stats: list[TargetStatistics] = []
        for job in keys:
            if filter_job_name(job, patterns):
                continue
            job_stats = TargetStatistics(job_name=job)
            for sd in active[job]:
                st = status.get(sd.shard_target.hash) or ScrapeStatus()
                job_stats.total += 1
                job_stats.health[st.health] = job_stats.health.get(st.health, 0) + 1
                if health and st.health.value not in health:
                    continue
                targets.append(make_target(job, sd.prom_target, st))
            stats.append(job_stats)
        return targets, stats