# kvass

`kvass` spreads the scrape targets of one Prometheus configuration over a
group of Prometheus shards. It discovers targets from service-discovery
target groups, learns roughly how many series each target exposes, and
decides which shard scrapes which target so that no shard goes over a
series limit. Overloaded shards give targets away; tail shards that stay
idle long enough are scaled away.

## Modules

- `kvass.discovery`: turns `TargetGroup`s into targets. `populate_labels`
  adds job, metrics path, scheme and `__param_` labels, applies relabelling,
  completes the port with `complete_port`, drops `__meta_` labels and sets
  `instance`. `targets_from_group` builds `SDTargets` (a shard `Target` plus
  a `PromTarget`), deduplicated by `target_hash`. `TargetsDiscovery` keeps
  the active and dropped targets of every job (`apply_config`,
  `translate_targets`, `run`, `wait_init`, `active_targets`,
  `active_targets_by_hash`, `drop_targets`).
- `kvass.labels`: the relabelling engine (`RelabelConfig`, `RelabelAction`
  with replace, keep, drop, hashmod, labelmap, labeldrop and labelkeep,
  `process`), `is_valid_label_name` and `labels_hash`.
- `kvass.model`: shared data: `Target`, `ScrapeConfig`, `ScrapeStatus`,
  `RuntimeInfo`, `TargetState`, `Health`.
- `kvass.explore`: `Explore` scrapes targets not yet on a shard, with a
  pool of worker threads, and records their series count in a
  `ScrapeStatus`. Failed explores are retried after `retry_interval`
  seconds. The default explore function fetches the target over HTTP and
  counts the sample lines left after metric relabelling; another function
  can be passed as `explore_func`.
- `kvass.rebalance`: the placement rules, usable on their own with an
  `Option` and a list of `ShardInfo`.
- `kvass.coordinator`: `Coordinator` applies those rules to every replica
  once per `run_once`, or every `option.period` seconds with `run(stop)`.
- `kvass.service`: `Service`, a Flask app (`service.app`) serving the
  coordinator's HTTP API.
- `kvass.api`: the JSON result envelope (`Result`, `data`, `bad_data_err`,
  `internal_err`), the HTTP client helpers `get` and `post`, the Flask view
  wrapper `Helper`, and `call_app` for in-process requests.
- `kvass.metrics`: `Registry`, `Counter`, `Gauge` and `Histogram`, exposed
  in the Prometheus text format by `Registry.expose()`.
- `kvass.config_inject`: `inject_coordinator_config` and
  `inject_sidecar_config` rewrite scrape jobs (and Kubernetes SD entries,
  given as mappings with a `role` key) to use the API server, proxy and
  service-account directory of an `InjectOption`.

## The result envelope

```python
from kvass import api

api.data({"yaml": "scrape_configs: []"}).to_dict()
# {'data': {'yaml': 'scrape_configs: []'}, 'status': 'success'}

api.bad_data_err(ValueError("wrong format of job"), "").to_dict()["errorType"]
# 'bad_data'
```

`api.get(url)` and `api.post(url, req)` require a `200` answer with a
`"success"` envelope and return its `data`; anything else raises
`api.APIError`. Views wrapped by `Helper.wrap` answer `400` for bad-data
results, `503` for internal errors and `200` otherwise, and record their
duration in a `<prefix>_http_request_duration_seconds` histogram.

## Placement rules

- A target that discovery no longer reports is removed from its shard.
- Once both copies have been scraped at least three times, a target that is
  in transfer is removed when another shard scrapes it normally, and a
  normal target is removed when another shard with fewer head series also
  scrapes it normally.
- A shard whose head series reach 1.8, 1.6, 1.4 or 1.1 times `max_series`
  transfers targets until its settled targets add up to at most 0, 0.2, 0.5
  or 1 times `max_series` (unless `disable_alleviate` is set).
- Healthy targets that no shard scrapes go to a shard with room for them:
  the first one when `max_idle_time` is set, otherwise one chosen at random,
  weighted by free space.
- When space is still needed the wanted shard count becomes the number of
  changeable shards plus `need_space // max_series + 1` (never fewer than
  the current shards). Otherwise, with `max_idle_time` set, tail shards idle
  for longer than that are dropped and the last busy shard starts handing
  its targets to the front shards. The result is kept between `min_shard`
  and `max_shard`.

## Coordinator API

`Service` serves:

- `GET /api/v1/targets`: the Prometheus targets structure, each active
  target extended with `series` and `shards`. Query parameters: `state`
  (`active`, `dropped`, `any`; all by default), `statistics` (`only` or
  `with`, adding per-job counts by health), `job` (regular expressions
  matched against job names, may repeat) and `health` (`up`, `down`,
  `unknown`, may repeat).
- `GET /api/v1/shard/runtimeinfo`: the config hash and the summed series of
  all targets.
- `GET /api/v1/status/config`: the raw configuration as `{"yaml": ...}`.
- `POST /-/reload`: calls the `reload_config` callable with the config file.
- `GET /metrics`: the registry's metrics.

## What this package does not do

There is no command-line program and no server start-up: you build a
`Coordinator`, `Service`, `TargetsDiscovery` and `Explore`, wire them
together, and run `service.app` with a WSGI server of your choice. The
package does not read configuration files, does not run service discovery
itself (target groups must be fed to `TargetsDiscovery.run` through a
queue), and has no shard managers: the coordinator takes any replicas
manager whose `replicas()` return objects with `shards()` and
`change_scale(n)`, where each shard has `id`, `ready`, `target_status()`,
`runtime_info()`, `update_config(raw)` and `update_target(targets)`. There
is no per-shard sidecar.