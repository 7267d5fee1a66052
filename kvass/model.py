"""Targets, scrape status and shard runtime data shared by all components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import urlencode

SCHEME_LABEL = "__scheme__"
ADDRESS_LABEL = "__address__"
METRICS_PATH_LABEL = "__metrics_path__"
PARAM_LABEL_PREFIX = "__param_"
PREFIX_FOR_INVALID_LABEL_NAME = "__invalid_label_"


class TargetState(str, Enum):
    """Where a target is in its life on a shard."""

    NORMAL = ""
    IN_TRANSFER = "in_transfer"


class Health(str, Enum):
    """Health of the last scrape of a target."""

    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"


@dataclass
class ScrapeConfig:
    """The parts of a scrape job configuration the components rely on."""

    job_name: str
    scheme: str = "http"
    metrics_path: str = "/metrics"
    params: dict[str, list[str]] = field(default_factory=dict)
    scrape_interval: float = 60.0
    scrape_timeout: float = 10.0
    relabel_configs: list[Any] = field(default_factory=list)
    metric_relabel_configs: list[Any] = field(default_factory=list)
    service_discovery_configs: list[Any] = field(default_factory=list)
    ca_file: str = ""
    bearer_token_file: str = ""
    proxy_url: str = ""


def _build_url(scheme: str, host: str, path: str, query: str = "") -> str:
    text = f"{scheme}:" if scheme else ""
    if host:
        text += f"//{host}"
        if path and not path.startswith("/"):
            path = "/" + path
    text += path
    if query:
        text += f"?{query}"
    return text


@dataclass
class Target:
    """A target handed to a shard, identified by its hash."""

    hash: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    series: int = 0
    target_state: TargetState = TargetState.NORMAL

    def _parts(self) -> tuple[str, str, str]:
        return (
            self.labels.get(SCHEME_LABEL, ""),
            self.labels.get(ADDRESS_LABEL, ""),
            self.labels.get(METRICS_PATH_LABEL, ""),
        )

    def url(self, config: ScrapeConfig) -> str:
        """Scrape URL, with job params overridden by ``__param_`` labels."""
        params = {key: list(values) for key, values in config.params.items()}
        for name, value in self.labels.items():
            if not name.startswith(PARAM_LABEL_PREFIX):
                continue
            key = name[len(PARAM_LABEL_PREFIX):]
            if params.get(key):
                params[key][0] = value
            else:
                params[key] = [value]
        query = urlencode(sorted(params.items()), doseq=True)
        return _build_url(*self._parts(), query)

    def no_param_url(self) -> str:
        """Scrape URL without any query parameters."""
        return _build_url(*self._parts())


@dataclass
class ScrapeStatus:
    """What is known about the scraping of one target."""

    last_error: str = ""
    last_scrape: datetime | None = None
    last_scrape_duration: float = 0.0
    health: Health = Health.UNKNOWN
    series: int = 0
    target_state: TargetState = TargetState.NORMAL
    scrape_times: int = 0
    shards: list[str] = field(default_factory=list)

    def set_scrape_err(self, when: datetime, err: BaseException | str | None) -> None:
        """Record a scrape that started at ``when`` and ended with ``err``."""
        self.last_scrape = when
        self.last_scrape_duration = (datetime.now(when.tzinfo) - when).total_seconds()
        if err is None:
            self.last_error = ""
            self.health = Health.UP
        else:
            self.last_error = str(err)
            self.health = Health.DOWN


@dataclass
class RuntimeInfo:
    """Runtime statistics reported by a shard."""

    head_series: int = 0
    config_hash: str = ""
    idle_start_at: datetime | None = None