"""Common JSON result envelope, HTTP client helpers and Flask wrappers."""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

import flask
import requests

from kvass.metrics import Histogram, Registry


class Status(str, Enum):
    """Whether a request succeeded."""

    SUCCESS = "success"
    ERROR = "error"


class ErrorType(str, Enum):
    """Why a request failed."""

    BAD_DATA = "bad_data"
    INTERNAL = "internal"


class APIError(Exception):
    """Raised when a remote call fails or returns an error result."""


def _to_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)) and not isinstance(value, Enum):
        return value
    if isinstance(value, Enum):
        return _to_jsonable(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if isinstance(key, Enum):
                key = key.value
            elif not isinstance(key, (str, int, float, bool)):
                key = str(key)
            result[key] = _to_jsonable(item)
        return result
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_jsonable(item) for item in value]
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


@dataclasses.dataclass
class Result:
    """The common envelope of every API response."""

    status: Status = Status.SUCCESS
    data: Any = None
    error_type: ErrorType | None = None
    err: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.error_type:
            payload["errorType"] = self.error_type.value
        if self.err:
            payload["error"] = self.err
        if self.data is not None:
            payload["data"] = _to_jsonable(self.data)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "Result":
        if not isinstance(payload, Mapping):
            raise APIError("Unmarshal: result is not an object")
        try:
            status = Status(payload.get("status", ""))
        except ValueError:
            status = Status.ERROR
        try:
            error_type = ErrorType(payload["errorType"]) if payload.get("errorType") else None
        except ValueError:
            error_type = None
        return cls(
            status=status,
            data=payload.get("data"),
            error_type=error_type,
            err=str(payload.get("error") or ""),
        )


def _wrap_message(err: BaseException | str | None, message: str) -> str:
    return message if err is None else f"{message}: {err}"


def internal_err(err: BaseException | str | None, message: str) -> Result:
    """Build an error result caused by a server-side failure."""
    return Result(
        status=Status.ERROR, error_type=ErrorType.INTERNAL, err=_wrap_message(err, message)
    )


def bad_data_err(err: BaseException | str | None, message: str) -> Result:
    """Build an error result caused by a bad request."""
    return Result(
        status=Status.ERROR, error_type=ErrorType.BAD_DATA, err=_wrap_message(err, message)
    )


def data(value: Any = None) -> Result:
    """Build a successful result carrying ``value``."""
    return Result(status=Status.SUCCESS, data=value)


def _deal_response(response: requests.Response) -> Any:
    if response.status_code != 200:
        raise APIError(f"status code is {response.status_code}")
    body = response.content
    if not body.strip():
        return None
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise APIError(f"Unmarshal: {exc}") from exc
    result = Result.from_dict(payload)
    if result.status is not Status.SUCCESS:
        raise APIError(result.err)
    return result.data


def post(url: str, req: Any = None) -> Any:
    """POST ``req`` as JSON and return the ``data`` of the result envelope."""
    body = b"" if req is None else json.dumps(_to_jsonable(req)).encode()
    try:
        response = requests.post(
            url, data=body, headers={"Content-Type": "application/json"}
        )
    except requests.RequestException as exc:
        raise APIError(f"http post: {exc}") from exc
    return _deal_response(response)


def get(url: str) -> Any:
    """GET ``url`` and return the ``data`` of the result envelope."""
    try:
        response = requests.get(url)
    except requests.RequestException as exc:
        raise APIError(f"http get: {exc}") from exc
    return _deal_response(response)


class Helper:
    """Wraps Flask views with result handling and request metrics."""

    def __init__(
        self, logger: logging.Logger, registry: Registry, metrics_prefix: str
    ) -> None:
        self.logger = logger
        self.registry = registry
        self.http_duration_seconds = Histogram(
            f"{metrics_prefix}_http_request_duration_seconds",
            "http request duration seconds",
            ["path", "code"],
            [0.01, 0.1, 0.3, 0.5, 1, 3, 5, 10],
        )
        registry.register(self.http_duration_seconds)

    def metrics_handler(self) -> flask.Response:
        """Serve the registry in the text exposition format."""
        return flask.Response(
            self.registry.expose(), mimetype="text/plain; version=0.0.4"
        )

    def wrap(self, handler: Callable[..., Result | None]) -> Callable[..., flask.Response]:
        """Turn a view returning a Result into a Flask view."""

        @functools.wraps(handler)
        def view(*args: Any, **kwargs: Any) -> flask.Response:
            path = flask.request.path
            code = 200
            start = time.perf_counter()
            try:
                result = handler(*args, **kwargs)
                if result is None:
                    return flask.Response(status=code)
                if result.error_type:
                    self.logger.error(result.err)
                    code = 400 if result.error_type is ErrorType.BAD_DATA else 503
                return flask.Response(
                    json.dumps(result.to_dict()),
                    status=code,
                    mimetype="application/json",
                )
            finally:
                self.http_duration_seconds.observe(
                    [path, str(code)], time.perf_counter() - start
                )

        return view


def call_app(
    app: flask.Flask, uri: str, method: str = "GET", data: str = ""
) -> tuple[int, Result | None]:
    """Send a request to ``app`` in-process and decode the result envelope."""
    with app.test_client() as client:
        response = client.open(uri, method=method, data=data)
    body = response.get_data()
    result: Result | None = None
    if body:
        try:
            result = Result.from_dict(json.loads(body))
        except (ValueError, APIError):
            result = None
    return response.status_code, result