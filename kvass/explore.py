"""Measure the series count of targets before they are assigned to a shard."""

from __future__ import annotations

import logging
import queue
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import requests

from kvass.discovery import SDTargets
from kvass.labels import process
from kvass.metrics import Counter, Gauge, Registry
from kvass.model import ScrapeConfig, ScrapeStatus, Target

ExploreFunc = Callable[[logging.Logger, ScrapeConfig, str], int]

_SAMPLE = re.compile(
    r"^([a-zA-Z_:][a-zA-Z0-9_:]*)\s*(?:\{(.*)\})?\s+(\S+)(?:\s+\S+)?\s*$"
)
_LABEL_PAIR = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*,?')
_ESCAPES = {"\\\\": "\\", '\\"': '"', "\\n": "\n"}


def _unescape(value: str) -> str:
    return re.sub(r"\\[\\\"n]", lambda m: _ESCAPES[m.group(0)], value)


def _parse_labels(block: str) -> dict[str, str] | None:
    labels: dict[str, str] = {}
    position = 0
    while position < len(block):
        if not block[position:].strip():
            break
        match = _LABEL_PAIR.match(block, position)
        if match is None:
            return None
        labels[match.group(1)] = _unescape(match.group(2))
        position = match.end()
    return labels


def _count_series(text: str, config: ScrapeConfig, logger: logging.Logger) -> int:
    total = 0
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _SAMPLE.match(line)
        labels = _parse_labels(match.group(2) or "") if match else None
        if match is None or labels is None:
            logger.warning("skip invalid sample line: %s", line)
            continue
        try:
            float(match.group(3))
        except ValueError:
            logger.warning("skip sample with invalid value: %s", line)
            continue
        labels["__name__"] = match.group(1)
        if process(labels, config.metric_relabel_configs) is not None:
            total += 1
    return total


def _scrape_series(logger: logging.Logger, config: ScrapeConfig, url: str) -> int:
    """Scrape ``url`` once and count the series left after metric relabelling."""
    try:
        response = requests.get(
            url,
            timeout=config.scrape_timeout or None,
            headers={"Accept": "text/plain;version=0.0.4;q=1,*/*;q=0.1"},
        )
    except requests.RequestException as exc:
        raise RuntimeError(f"request to : {exc}") from exc
    if response.status_code != 200:
        raise RuntimeError(f"request to : status code is {response.status_code}")
    return _count_series(response.text, config, logger)


@dataclass
class _ExploringTarget:
    job: str
    target: Target
    status: ScrapeStatus
    exploring: bool = False


class Explore:
    """Scrapes new targets once to learn their series before assignment."""

    def __init__(
        self,
        get_job: Callable[[str], ScrapeConfig | None],
        registry: Registry,
        logger: logging.Logger | None = None,
        explore_func: ExploreFunc | None = None,
    ) -> None:
        self.get_job = get_job
        self.logger = logger or logging.getLogger(__name__)
        self.explore_func: ExploreFunc = explore_func or _scrape_series
        self.retry_interval = 5.0
        self.pending: queue.Queue[_ExploringTarget] = queue.Queue(10000)
        self.explored_total = Counter("kvass_explore_explored_total", "", ["job", "success"])
        self.exploring_total = Gauge("kvass_explore_exploring_total", "", ["job"])
        for metric in (self.explored_total, self.exploring_total):
            try:
                registry.register(metric)
            except ValueError:
                pass
        self._targets: dict[int, _ExploringTarget] = {}
        self._lock = threading.Lock()

    def get(self, hash: int) -> ScrapeStatus | None:
        """Return the status of a target, queueing it for exploring once."""
        with self._lock:
            item = self._targets.get(hash)
            if item is None:
                return None
            if not item.exploring:
                item.exploring = True
                self.pending.put(item)
            return item.status

    def apply_config(self, job_names: Iterable[str]) -> None:
        """Forget targets whose job is no longer configured."""
        jobs = set(job_names)
        with self._lock:
            kept: dict[int, _ExploringTarget] = {}
            deleted: set[str] = set()
            for hash_value, item in self._targets.items():
                if item.job in jobs:
                    kept[hash_value] = item
                else:
                    deleted.add(item.job)
            for job in deleted:
                self.explored_total.remove([job, "true"])
                self.explored_total.remove([job, "false"])
                self.exploring_total.remove([job])
            self._targets = kept

    def update_targets(self, targets: Mapping[str, list[SDTargets]]) -> None:
        """Replace the known targets, keeping state of those already known."""
        with self._lock:
            updated: dict[int, _ExploringTarget] = {}
            for job, job_targets in targets.items():
                for sd_target in job_targets:
                    hash_value = sd_target.shard_target.hash
                    existing = self._targets.get(hash_value)
                    updated[hash_value] = existing or _ExploringTarget(
                        job=job,
                        target=sd_target.shard_target,
                        status=ScrapeStatus(),
                    )
            self._targets = updated

    def _retry(self, item: _ExploringTarget) -> None:
        with self._lock:
            if item.target.hash in self._targets:
                self.pending.put(item)

    def _worker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                item = self.pending.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.explore_once(item)
            except Exception as exc:  # noqa: BLE001 - every failure is retried
                self.logger.debug("explore failed: %s", exc)
                timer = threading.Timer(self.retry_interval, self._retry, args=(item,))
                timer.daemon = True
                timer.start()

    def run(self, concurrency: int, stop: threading.Event) -> None:
        """Explore queued targets with ``concurrency`` workers until ``stop``."""
        workers = [
            threading.Thread(target=self._worker, args=(stop,), daemon=True)
            for _ in range(concurrency)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

    def explore_once(self, item: _ExploringTarget) -> None:
        """Scrape one target and record the result in its status."""
        started = datetime.now(timezone.utc)
        error: Exception | None = None
        self.exploring_total.inc([item.job])
        try:
            config = self.get_job(item.job)
            if config is None:
                raise LookupError(f"can not found {item.job}  scrape info")
            url = item.target.url(config)
            try:
                series = self.explore_func(self.logger, config, url)
            except Exception as exc:
                raise RuntimeError(f"explore failed : {item.job}/{url}: {exc}") from exc
            item.status.series = series
            item.target.series = series
        except Exception as exc:
            error = exc
            raise
        finally:
            self.exploring_total.dec([item.job])
            self.explored_total.inc([item.job, "true" if error is None else "false"])
            item.status.set_scrape_err(started, error)