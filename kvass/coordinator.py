"""Periodic re-balancing of targets across the shards of every replica."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from kvass.discovery import SDTargets
from kvass.metrics import Counter, Registry
from kvass.model import RuntimeInfo, ScrapeConfig, ScrapeStatus, Target
from kvass.rebalance import (
    ALLEVIATE_SHARDS_TOTAL,
    ASSIGN_NO_SCRAPING_TARGETS_TOTAL,
    Option,
    ShardInfo,
    alleviate_shards,
    assign_no_scraping_targets,
    change_able_shards,
    gc_targets,
    global_scrape_status,
    merge_scrape_status,
    try_scale_down,
    try_scale_up,
    update_scrape_status_shards,
    update_scraping_targets,
)

COORDINATOR_FAILED = Counter("kvass_coordinator_failed_total", "")


class _Shard(Protocol):
    id: str
    ready: bool

    def target_status(self) -> dict[int, ScrapeStatus]: ...

    def runtime_info(self) -> RuntimeInfo: ...

    def update_config(self, raw_content: str) -> None: ...

    def update_target(self, targets: dict[str, list[Target]]) -> None: ...


class _ShardsManager(Protocol):
    def shards(self) -> list[_Shard]: ...

    def change_scale(self, expected: int) -> None: ...


class _ReplicasManager(Protocol):
    def replicas(self) -> list[_ShardsManager]: ...


@dataclass
class ConfigInfo:
    """A loaded configuration: its raw text, its hash and its scrape jobs."""

    raw_content: bytes = b""
    config_hash: str = ""
    scrape_configs: list[ScrapeConfig] = field(default_factory=list)


class Coordinator:
    """Periodically re-balances targets across all shards."""

    def __init__(
        self,
        option: Option,
        replicas_manager: _ReplicasManager,
        get_config: Callable[[], ConfigInfo],
        get_explore_result: Callable[[int], ScrapeStatus | None] | None,
        get_active: Callable[[], Mapping[int, SDTargets]],
        registry: Registry,
        logger: logging.Logger | None = None,
    ) -> None:
        for metric in (
            COORDINATOR_FAILED,
            ASSIGN_NO_SCRAPING_TARGETS_TOTAL,
            ALLEVIATE_SHARDS_TOTAL,
        ):
            try:
                registry.register(metric)
            except ValueError:
                pass
        self.option = option
        self.replicas_manager = replicas_manager
        self.get_config = get_config
        self.get_explore_result = get_explore_result
        self.get_active = get_active
        self.logger = logger or logging.getLogger(__name__)
        self._last_global_scrape_status: dict[int, ScrapeStatus] = {}

    def run(self, stop: threading.Event) -> None:
        """Coordinate every ``option.period`` seconds until ``stop`` is set."""
        while not stop.is_set():
            try:
                self.run_once()
            except Exception as exc:  # noqa: BLE001 - the loop keeps going
                self.logger.error("%s", exc)
            stop.wait(self.option.period)

    def last_global_scrape_status(self) -> dict[int, ScrapeStatus]:
        """The scrape status of all targets from the last round."""
        return self._last_global_scrape_status

    def run_once(self) -> None:
        """Fetch shard states, re-balance targets and set the expected scale."""
        try:
            replicas = self.replicas_manager.replicas()
        except Exception as exc:
            COORDINATOR_FAILED.inc()
            raise RuntimeError(f"get replicas: {exc}") from exc

        new_status: dict[int, ScrapeStatus] = {}
        option = self.option
        for replica in replicas:
            try:
                shards = replica.shards()
            except Exception as exc:  # noqa: BLE001
                self.logger.error("%s", exc)
                continue

            active = self.get_active()
            infos = self._get_shard_infos(shards)
            changeable = change_able_shards(infos)

            if len(changeable) < option.min_shard:
                try:
                    replica.change_scale(option.min_shard)
                except Exception as exc:  # noqa: BLE001
                    self.logger.error("%s", exc)
                    continue

            status = global_scrape_status(active, infos, self.get_explore_result)
            gc_targets(changeable, active)
            need_space = alleviate_shards(option, changeable)
            need_space += assign_no_scraping_targets(option, infos, active, status)

            scale = len(infos)
            if need_space != 0:
                self.logger.info("need space %d", need_space)
                scale = try_scale_up(option, infos, need_space)
            elif option.max_idle_time != 0:
                scale = try_scale_down(option, infos)

            scale = max(min(scale, option.max_shard), option.min_shard)

            update_scraping_targets(infos, active)
            self.apply_shards_info(infos)
            try:
                replica.change_scale(scale)
            except Exception as exc:  # noqa: BLE001
                self.logger.error("%s", exc)
                continue

            status = update_scrape_status_shards(infos, status)
            new_status = merge_scrape_status(new_status, status)

        self._last_global_scrape_status = new_status

    def _get_shard_infos(self, shards: list[_Shard]) -> list[ShardInfo]:
        with ThreadPoolExecutor(max_workers=max(1, len(shards))) as pool:
            return list(pool.map(self.fetch_shard_info, shards))

    def fetch_shard_info(self, shard: _Shard) -> ShardInfo:
        """Collect one shard's state, pushing the config to it if outdated."""
        info = ShardInfo(shard=shard)
        if not shard.ready:
            self.logger.info("%s is not ready", info.id)
            return info

        try:
            info.scraping = shard.target_status()
            info.runtime = shard.runtime_info()
            config = self.get_config()
            if info.runtime.config_hash != config.config_hash:
                self.logger.info("shard %s config need update", info.id)
                raw = config.raw_content
                shard.update_config(raw.decode() if isinstance(raw, bytes) else str(raw))
                info.runtime = shard.runtime_info()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("%s", exc)
            return info

        if info.runtime.config_hash != config.config_hash:
            self.logger.warning(
                "config of %s is not up to date, expect md5 = %s, shard md5 = %s",
                info.id,
                config.config_hash,
                info.runtime.config_hash,
            )
            return info

        info.change_able = True
        return info

    def _apply_one(self, info: ShardInfo) -> None:
        try:
            info.shard.update_target(info.new_targets)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("%s", exc)

    def apply_shards_info(self, shards: list[ShardInfo]) -> None:
        """Send every changeable shard its new target list."""
        targets: list[ShardInfo] = []
        for info in shards:
            if not info.change_able:
                self.logger.warning("shard %s is unHealth, skip apply change", info.id)
                continue
            targets.append(info)
        if not targets:
            return
        with ThreadPoolExecutor(max_workers=len(targets)) as pool:
            list(pool.map(self._apply_one, targets))