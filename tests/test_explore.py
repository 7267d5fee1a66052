import logging
import threading
import time

import pytest
import responses

from kvass.discovery import SDTargets
from kvass.explore import Explore
from kvass.labels import RelabelAction, RelabelConfig
from kvass.metrics import Registry
from kvass.model import Health, ScrapeConfig, Target

URL = "http://127.0.0.1:9999/metrics"


def _targets(hash_value=1):
    return {
        "job1": [
            SDTargets(
                job="job1",
                shard_target=Target(
                    hash=hash_value,
                    series=100,
                    labels={
                        "__scheme__": "http",
                        "__address__": "127.0.0.1:9999",
                        "__metrics_path__": "/metrics",
                    },
                ),
            )
        ]
    }


def _jobs(config=None):
    config = config or ScrapeConfig(job_name="job1", scrape_timeout=3)
    return lambda name: config if name == "job1" else None


def _wait_for(predicate, limit=3.0):
    deadline = time.monotonic() + limit
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_update_targets_queues_once():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"))
    assert e.get(1) is None
    e.update_targets(_targets())
    status = e.get(1)
    assert status is not None
    assert status.health is Health.UNKNOWN
    e.get(1)
    assert e.pending.qsize() == 1


def test_update_targets_keeps_existing_state():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"))
    e.update_targets(_targets())
    first = e.get(1)
    e.update_targets(_targets())
    assert e.get(1) is first
    assert e.pending.qsize() == 1


def test_apply_config_removes_unknown_jobs():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"))
    e.update_targets(_targets())
    e.apply_config([])
    assert e.get(1) is None


def test_apply_config_keeps_configured_jobs():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"))
    e.update_targets(_targets())
    first = e.get(1)
    e.apply_config(["job1"])
    kept = e.get(1)
    assert kept is first
    assert kept.health is Health.UNKNOWN


def test_run_retries_until_success():
    calls = []

    def fake_explore(logger, config, url):
        calls.append(url)
        if len(calls) == 1:
            raise RuntimeError("bad gateway")
        return 1

    e = Explore(_jobs(), Registry(), logging.getLogger("test"), fake_explore)
    e.retry_interval = 0.01
    e.update_targets(_targets())
    res = e.get(1)
    assert res.health is Health.UNKNOWN

    stop = threading.Event()
    worker = threading.Thread(target=e.run, args=(1, stop))
    worker.start()
    try:
        assert _wait_for(lambda: e.get(1).health is Health.UP)
    finally:
        stop.set()
        worker.join()

    res = e.get(1)
    assert res.series == 1
    assert res.last_error == ""
    assert calls[0] == URL
    assert e.explored_total.value(["job1", "false"]) == 1
    assert e.explored_total.value(["job1", "true"]) == 1
    assert e.exploring_total.value(["job1"]) == 0


def test_run_with_http_scrape():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"))
    e.retry_interval = 0.01
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, URL, status=502)
        mock.add(responses.GET, URL, body="metrics{} 1", status=200)
        e.update_targets(_targets())
        assert e.get(1).health is Health.UNKNOWN
        stop = threading.Event()
        worker = threading.Thread(target=e.run, args=(1, stop))
        worker.start()
        try:
            assert _wait_for(lambda: e.get(1).health is Health.UP)
        finally:
            stop.set()
            worker.join()
    res = e.get(1)
    assert res.series == 1
    assert res.last_error == ""


def test_explore_once_counts_series_after_relabel():
    body = '# HELP metrics x\nmetrics{} 1\nother{a="b"} 2\nmetrics{a="c, d"} 3\n'
    config = ScrapeConfig(
        job_name="job1",
        metric_relabel_configs=[
            RelabelConfig(
                action=RelabelAction.DROP, source_labels=["__name__"], regex="other"
            )
        ],
    )
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, URL, body=body, status=200)
        e = Explore(_jobs(config), Registry(), logging.getLogger("test"))
        e.update_targets(_targets())
        e.get(1)
        item = e.pending.get_nowait()
        e.explore_once(item)
    assert item.status.series == 2
    assert item.target.series == 2
    assert item.status.health is Health.UP


def test_explore_once_unknown_job_marks_down():
    e = Explore(lambda name: None, Registry(), logging.getLogger("test"), lambda *a: 5)
    e.update_targets(_targets())
    e.get(1)
    item = e.pending.get_nowait()
    with pytest.raises(LookupError):
        e.explore_once(item)
    assert item.status.health is Health.DOWN
    assert "job1" in item.status.last_error
    assert item.status.series == 0


def test_apply_config_drops_metrics_of_deleted_jobs():
    e = Explore(_jobs(), Registry(), logging.getLogger("test"), lambda *a: 7)
    e.update_targets(_targets())
    e.get(1)
    e.explore_once(e.pending.get_nowait())
    assert e.explored_total.value(["job1", "true"]) == 1
    e.apply_config([])
    assert e.explored_total.value(["job1", "true"]) == 0


def test_metrics_exposed_in_registry():
    registry = Registry()
    e = Explore(_jobs(), registry, logging.getLogger("test"), lambda *a: 7)
    e.update_targets(_targets())
    e.get(1)
    e.explore_once(e.pending.get_nowait())
    text = registry.expose()
    assert 'kvass_explore_explored_total{job="job1",success="true"} 1' in text