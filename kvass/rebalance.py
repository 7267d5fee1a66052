"""Shard balancing: assign, transfer and collect targets between shards."""

from __future__ import annotations

import dataclasses
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from kvass.discovery import SDTargets
from kvass.metrics import Counter
from kvass.model import Health, RuntimeInfo, ScrapeStatus, Target, TargetState

MIN_WAIT_SCRAPE_TIMES = 3

# (head series rate that triggers alleviation, rate of series to keep)
ALLEVIATE_THRESHOLDS = ((1.8, 0.0), (1.6, 0.2), (1.4, 0.5), (1.1, 1.0))

ASSIGN_NO_SCRAPING_TARGETS_TOTAL = Counter("kvass_coordinator_assign_targets_total", "")
ALLEVIATE_SHARDS_TOTAL = Counter("kvass_coordinator_alleviate_shards_total", "")

logger = logging.getLogger(__name__)


@dataclass
class Option:
    """Arguments that drive coordinating.

    ``max_idle_time`` and ``period`` are in seconds; a zero ``max_idle_time``
    disables scaling down.
    """

    max_series: int = 1_000_000
    max_shard: int = 999_999
    min_shard: int = 0
    max_idle_time: float = 0.0
    period: float = 10.0
    disable_alleviate: bool = False


@dataclass
class ShardInfo:
    """One shard together with what it scrapes and what it should scrape."""

    shard: Any
    change_able: bool = False
    runtime: RuntimeInfo = field(default_factory=RuntimeInfo)
    scraping: dict[int, ScrapeStatus] = field(default_factory=dict)
    new_targets: dict[str, list[Target]] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return str(getattr(self.shard, "id", self.shard))

    def total_targets_series(self) -> int:
        """Series of healthy, normal targets scraped often enough to count."""
        return sum(status.series for status in self.scraping.values() if _settled(status))


def _settled(status: ScrapeStatus) -> bool:
    return (
        status.target_state is TargetState.NORMAL
        and status.health is Health.UP
        and status.scrape_times >= MIN_WAIT_SCRAPE_TIMES
    )


def change_able_shards(shards: list[ShardInfo]) -> list[ShardInfo]:
    """The shards whose targets may be changed, in order."""
    return [s for s in shards if s.change_able]


def update_scraping_targets(
    shards: list[ShardInfo], active: Mapping[int, SDTargets]
) -> None:
    """Rebuild every shard's target list from what it should be scraping."""
    for s in shards:
        s.new_targets = {}
        for hash_value, status in s.scraping.items():
            sd = active.get(hash_value)
            if sd is None:
                continue
            copied = dataclasses.replace(
                sd.shard_target, target_state=status.target_state, series=status.series
            )
            s.new_targets.setdefault(sd.job, []).append(copied)


def update_scrape_status_shards(
    shards: list[ShardInfo], status: dict[int, ScrapeStatus]
) -> dict[int, ScrapeStatus]:
    """Record in each status the IDs of the changeable shards scraping it."""
    for st in status.values():
        st.shards = []
    for s in shards:
        if not s.change_able:
            continue
        for hash_value in s.scraping:
            status[hash_value].shards.append(s.id)
    return status


def gc_targets(shards: list[ShardInfo], active: Mapping[int, SDTargets]) -> None:
    """Delete targets that are gone, transferred, or duplicated on a lighter shard."""
    for s in shards:
        for hash_value, tar in list(s.scraping.items()):
            if hash_value not in active:
                del s.scraping[hash_value]
                continue
            if tar.scrape_times < MIN_WAIT_SCRAPE_TIMES:
                continue
            for other in shards:
                if other is s:
                    continue
                st = other.scraping.get(hash_value)
                if st is None or st.scrape_times < MIN_WAIT_SCRAPE_TIMES:
                    continue
                transferred = (
                    tar.target_state is TargetState.IN_TRANSFER
                    and st.target_state is TargetState.NORMAL
                )
                duplicated = (
                    tar.target_state is TargetState.NORMAL
                    and st.target_state is TargetState.NORMAL
                    and other.runtime.head_series < s.runtime.head_series
                )
                if transferred or duplicated:
                    del s.scraping[hash_value]
                    break


def series_with_rate(series: int, rate: float) -> int:
    return int(series * rate)


def alleviate_shards(option: Option, shards: list[ShardInfo]) -> int:
    """Move targets off overloaded shards; return the space still needed."""
    if option.disable_alleviate:
        return 0
    need_space = 0
    for s in shards:
        for max_rate, expect_rate in ALLEVIATE_THRESHOLDS:
            if s.runtime.head_series >= series_with_rate(option.max_series, max_rate):
                logger.info(
                    "%s series is %d, over rate %f", s.id, s.runtime.head_series, max_rate
                )
                need_space += alleviate_shard(
                    option, s, shards, series_with_rate(option.max_series, expect_rate)
                )
                break
    return need_space


def alleviate_shard(
    option: Option, shard: ShardInfo, shards: list[ShardInfo], expected: int
) -> int:
    """Transfer targets until ``shard`` holds at most ``expected`` series."""
    total = shard.total_targets_series()
    if total <= expected:
        return 0

    logger.info("%s need alleviate", shard.id)
    ALLEVIATE_SHARDS_TOTAL.inc()

    for hash_value, tar in list(shard.scraping.items()):
        if total <= expected:
            break
        if not _settled(tar):
            continue
        if tar.series > option.max_series:
            logger.warning(
                "too big series [%d] series is [%d], skip alleviate", hash_value, tar.series
            )
            return 0
        for other in shards:
            if other is shard:
                continue
            if other.runtime.head_series + tar.series < option.max_series:
                logger.info(
                    "transfer target from %s to %s series = (%d) ",
                    shard.id,
                    other.id,
                    tar.series,
                )
                transfer_target(shard, other, hash_value)
                total -= tar.series

    return total - expected if total > expected else 0


def transfer_target(src: ShardInfo, dst: ShardInfo, hash: int) -> None:
    """Give ``dst`` a copy of the target and mark it in transfer on ``src``."""
    tar = src.scraping[hash]
    dst.runtime.head_series += tar.series
    copied = dataclasses.replace(tar, shards=list(tar.shards))
    tar.target_state = TargetState.IN_TRANSFER
    dst.scraping[hash] = copied


def get_free_shard(option: Option, shards: list[ShardInfo], series: int) -> ShardInfo | None:
    """Pick a changeable shard with room for ``series`` more series.

    With scaling down enabled the first such shard is taken, so targets pack
    onto the front shards; otherwise one is chosen at random, weighted by
    free space.
    """
    candidates: list[ShardInfo] = []
    weights: list[int] = []
    for s in shards:
        if s.change_able and s.runtime.head_series + series < option.max_series:
            if option.max_idle_time != 0:
                return s
            candidates.append(s)
            weights.append(option.max_series - s.runtime.head_series)
    if not candidates:
        return None
    return random.choices(candidates, weights=weights)[0]


def assign_no_scraping_targets(
    option: Option,
    shards: list[ShardInfo],
    active: Mapping[int, SDTargets],
    global_status: Mapping[int, ScrapeStatus],
) -> int:
    """Assign healthy targets no shard scrapes; return the space still needed."""
    health_shards = change_able_shards(shards)
    scraping = {h for s in shards for h in s.scraping}
    need_space = 0
    for hash_value, sd in active.items():
        if hash_value in scraping:
            continue
        status = global_status.get(hash_value)
        if status is None or status.health is not Health.UP:
            continue
        if status.series > option.max_series:
            url = sd.shard_target.no_param_url() if sd.shard_target else ""
            logger.warning("target too big: %s", url)
            continue
        chosen = get_free_shard(option, health_shards, status.series)
        if chosen is not None:
            chosen.runtime.head_series += status.series
            chosen.scraping[hash_value] = status
            ASSIGN_NO_SCRAPING_TARGETS_TOTAL.inc()
        else:
            need_space += status.series
    return need_space


def global_scrape_status(
    active: Mapping[int, SDTargets],
    shards: list[ShardInfo],
    get_explore_result: Callable[[int], ScrapeStatus | None] | None,
) -> dict[int, ScrapeStatus]:
    """Status of every active target, from a shard or else from exploring."""
    result: dict[int, ScrapeStatus] = {}
    for hash_value in active:
        for s in shards:
            st = s.scraping.get(hash_value)
            if st is not None and st.health is not Health.UNKNOWN:
                result[hash_value] = st
                break
        else:
            explored = get_explore_result(hash_value) if get_explore_result else None
            result[hash_value] = explored if explored is not None else ScrapeStatus()
    return result


def _idle_too_long(option: Option, s: ShardInfo) -> bool:
    started = s.runtime.idle_start_at
    if started is None:
        return False
    return datetime.now(started.tzinfo) - started > timedelta(seconds=option.max_idle_time)


def try_scale_down(option: Option, shards: list[ShardInfo]) -> int:
    """Drop idle tail shards and start emptying the last busy one."""
    scale = len(shards)
    i = len(shards) - 1
    while i >= 0:
        s = shards[i]
        if not (s.change_able and _idle_too_long(option, s)):
            break
        logger.info("%s is remove able", s.id)
        scale -= 1
        i -= 1

    while i > 0:
        src = shards[i]
        if src.runtime.idle_start_at is None:
            front = shards[:i]
            if not shard_can_be_idle(option, src, front):
                return scale
            logger.info("try mark transfer all targets from %s", src.id)
            if not shard_become_idle(option, src, front):
                return scale
        i -= 1
    return scale


def shard_can_be_idle(option: Option, src: ShardInfo, shards: list[ShardInfo]) -> bool:
    """Whether every target of ``src`` fits into the free space of ``shards``."""
    if not src.change_able:
        return False
    spaces = [
        option.max_series - s.runtime.head_series
        for s in shards
        if s is not src and s.change_able
    ]
    for tar in src.scraping.values():
        if tar.target_state is not TargetState.NORMAL or tar.scrape_times < MIN_WAIT_SCRAPE_TIMES:
            return False
        for index, space in enumerate(spaces):
            if space > tar.series:
                spaces[index] -= tar.series
                break
        else:
            return False
    return True


def shard_become_idle(option: Option, src: ShardInfo, shards: list[ShardInfo]) -> bool:
    """Transfer every settled target of ``src`` to ``shards``."""
    for hash_value, tar in list(src.scraping.items()):
        if tar.target_state is not TargetState.NORMAL or tar.scrape_times < MIN_WAIT_SCRAPE_TIMES:
            continue
        dst = get_free_shard(option, shards, tar.series)
        if dst is None or dst is src:
            return False
        logger.info(
            "transfer target from %s to %s series = (%d) ", src.id, dst.id, tar.series
        )
        transfer_target(src, dst, hash_value)
    return True


def try_scale_up(option: Option, shards: list[ShardInfo], need_space: int) -> int:
    """The shard count needed to hold ``need_space`` more series."""
    expected = len(change_able_shards(shards)) + need_space // option.max_series + 1
    return max(expected, len(shards))


def merge_scrape_status(
    a: dict[int, ScrapeStatus], b: Mapping[int, ScrapeStatus]
) -> dict[int, ScrapeStatus]:
    """Merge ``b`` into ``a``, preferring healthy and larger results."""
    for key, new in b.items():
        old = a.get(key)
        if old is None:
            a[key] = new
            continue
        if (old.health is not Health.UP and new.health is Health.UP) or (
            new.health is Health.UP and new.series > old.series
        ):
            kept_shards = old.shards
            for f in dataclasses.fields(new):
                setattr(old, f.name, getattr(new, f.name))
            old.shards = kept_shards
        old.shards = old.shards + list(new.shards)
    return a