import re
from urllib.parse import urlencode

import pytest

from kvass.api import Status, call_app
from kvass.coordinator import ConfigInfo
from kvass.discovery import PromTarget, SDTargets
from kvass.metrics import Registry
from kvass.model import Health, ScrapeStatus, Target
from kvass.service import (
    Service,
    filter_job_name,
    flatten,
    make_target,
    sort_keys,
)

LABELS = {"__address__": "127.0.0.1:80", "__scheme__": "http"}


def _drop():
    return {"job1": [SDTargets(prom_target=PromTarget(dict(LABELS), dict(LABELS)))]}


def _status():
    return {1: ScrapeStatus(health=Health.DOWN, last_error="test")}


def _active():
    return {
        "job1": [
            SDTargets(
                shard_target=Target(hash=1, labels=dict(LABELS)),
                prom_target=PromTarget(dict(LABELS), dict(LABELS)),
            )
        ]
    }


def _service(reload_config=lambda path: None, config=None, status=_status):
    return Service(
        "prometheus.yml",
        reload_config,
        lambda: config or ConfigInfo(),
        status,
        _active,
        _drop,
        Registry(),
    )


STATS = [{"JobName": "job1", "Total": 1, "Health": {"down": 1}}]


@pytest.mark.parametrize(
    "params,want_active,want_dropped,want_stats",
    [
        ({}, 1, 1, []),
        ({"state": ["any"]}, 1, 1, []),
        ({"state": ["active"]}, 1, 0, []),
        ({"state": ["dropped"]}, 0, 1, []),
        ({"statistics": ["only"]}, 0, 0, STATS),
        ({"statistics": ["with"]}, 1, 1, STATS),
        ({"statistics": ["with"], "state": ["active"]}, 1, 0, STATS),
        ({"job": ["job.*"], "state": ["active"]}, 1, 0, []),
        ({"job": ["xx"], "state": ["active"]}, 0, 0, []),
        ({"health": ["down"], "state": ["active"]}, 1, 0, []),
        ({"health": ["down", "up"], "state": ["active"]}, 1, 0, []),
        ({"health": ["up"], "state": ["active"]}, 0, 0, []),
    ],
)
def test_targets_api(params, want_active, want_dropped, want_stats):
    uri = "/api/v1/targets"
    if params:
        uri += "?" + urlencode(params, doseq=True)
    code, result = call_app(_service().app, uri)
    assert code == 200
    assert result.status is Status.SUCCESS
    assert len(result.data["activeTargets"]) == want_active
    assert len(result.data["droppedTargets"]) == want_dropped
    assert result.data.get("activeStatistics", []) == want_stats


def test_targets_api_rejects_bad_statistics():
    code, result = call_app(_service().app, "/api/v1/targets?statistics=bad")
    assert code == 400
    assert "wrong param values statistics" in result.err


def test_targets_api_rejects_bad_job_pattern():
    code, result = call_app(_service().app, "/api/v1/targets?job=(")
    assert code == 400
    assert "wrong format of job" in result.err


def test_active_target_content():
    discovery = _service().get_targets("active", "", [], [])
    [target] = discovery.active_targets
    assert target.health is Health.DOWN
    assert target.last_error == "test"
    assert target.scrape_pool == "job1"
    assert target.labels == {}
    assert target.discovered_labels == LABELS


def test_runtime_info():
    def status():
        return {1: ScrapeStatus(series=100), 2: ScrapeStatus(series=100)}

    service = _service(config=ConfigInfo(config_hash="abc"), status=status)
    assert service.runtime_info().head_series == 200
    code, result = call_app(service.app, "/api/v1/shard/runtimeinfo")
    assert code == 200
    assert result.data["head_series"] == 200
    assert result.data["config_hash"] == "abc"


def test_reload_success_and_failure():
    calls = []
    code, result = call_app(_service(reload_config=calls.append).app, "/-/reload", "POST")
    assert code == 200
    assert result.status is Status.SUCCESS
    assert calls == ["prometheus.yml"]

    def failing(path):
        raise ValueError("bad yaml")

    code, result = call_app(_service(reload_config=failing).app, "/-/reload", "POST")
    assert code == 400
    assert "reload failed" in result.err


def test_config_view():
    service = _service(config=ConfigInfo(raw_content=b"global: {}"))
    code, result = call_app(service.app, "/api/v1/status/config")
    assert code == 200
    assert result.data == {"yaml": "global: {}"}


def test_metrics_endpoint_records_requests():
    service = _service()
    call_app(service.app, "/api/v1/targets")
    code, _ = call_app(service.app, "/metrics")
    assert code == 200
    with service.app.test_client() as client:
        body = client.get("/metrics").get_data(as_text=True)
    assert "kvass_coordinator_http_request_duration_seconds_count" in body


def test_filter_job_name():
    assert filter_job_name("job1", []) is False
    assert filter_job_name("job1", [re.compile("job.*")]) is False
    assert filter_job_name("job1", [re.compile("xx")]) is True
    assert filter_job_name("job1", [re.compile("xx"), re.compile("ob")]) is False


def test_sort_keys_and_flatten():
    a = PromTarget({"__address__": "a:1"})
    b = PromTarget({"__address__": "b:1"})
    c = PromTarget({"__address__": "c:1"})
    targets = {
        "z": [SDTargets(prom_target=c)],
        "a": [SDTargets(prom_target=a), SDTargets(prom_target=b)],
    }
    assert sort_keys(targets) == (["a", "z"], 3)
    assert flatten(targets) == [a, b, c]


def test_make_target():
    prom = PromTarget(
        {"__address__": "127.0.0.1:80", "__scheme__": "http",
         "__metrics_path__": "/metrics", "job": "job1"},
        {"__address__": "127.0.0.1:80"},
    )
    status = ScrapeStatus(health=Health.UP, series=7, shards=["0-r0"])
    target = make_target("job1", prom, status)
    assert target.scrape_url == "http://127.0.0.1:80/metrics"
    assert target.labels == {"job": "job1"}
    assert target.series == 7
    assert target.shards == ["0-r0"]
    payload = target.to_dict()
    assert payload["health"] == "up"
    assert payload["lastScrape"] == "0001-01-01T00:00:00Z"
    assert payload["scrapePool"] == "job1"