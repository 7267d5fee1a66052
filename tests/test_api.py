import logging

import flask
import pytest
import responses

from kvass.api import (
    APIError,
    ErrorType,
    Helper,
    Result,
    Status,
    bad_data_err,
    call_app,
    data,
    get,
    internal_err,
    post,
)
from kvass.metrics import Registry

URL = "http://kvass.example.com/api"

REQUEST_CASES = [
    pytest.param(503, "", None, True, id="return no 200 status code"),
    pytest.param(
        200, '{"status":"error","error":"test"}', None, True, id="return error response"
    ),
    pytest.param(200, "---", None, True, id="unknown resp format"),
    pytest.param(
        200, '{"status":"success","data":"test"}', 1, False, id="normal response"
    ),
]


@pytest.mark.parametrize("method", ["GET", "POST"])
@pytest.mark.parametrize("status_code, body, req, want_err", REQUEST_CASES)
def test_requests(method, status_code, body, req, want_err):
    with responses.RequestsMock() as mock:
        verb = responses.GET if method == "GET" else responses.POST
        mock.add(verb, URL, body=body, status=status_code)

        def call():
            return post(URL, req) if method == "POST" else get(URL)

        if want_err:
            with pytest.raises(APIError):
                call()
        else:
            assert call() == "test"
            if method == "POST":
                assert mock.calls[0].request.body == b"1"


def test_error_response_message():
    with responses.RequestsMock() as mock:
        mock.add(responses.GET, URL, body='{"status":"error","error":"test"}')
        with pytest.raises(APIError, match="test"):
            get(URL)


def test_data():
    result = data({})
    assert result.data == {}
    assert result.error_type is None
    assert result.err == ""
    assert result.status is Status.SUCCESS


def test_internal_err():
    result = internal_err(RuntimeError("1"), "test")
    assert result.data is None
    assert result.error_type is ErrorType.INTERNAL
    assert result.err == "test: 1"
    assert result.status is Status.ERROR


def test_bad_data_err():
    result = bad_data_err(RuntimeError("1"), "test")
    assert result.data is None
    assert result.error_type is ErrorType.BAD_DATA
    assert result.err == "test: 1"
    assert result.status is Status.ERROR


def test_result_round_trip():
    original = bad_data_err(RuntimeError("1"), "test")
    payload = original.to_dict()
    assert payload["errorType"] == "bad_data"
    assert "data" not in payload
    assert Result.from_dict(payload) == original


def test_from_dict_rejects_non_object():
    with pytest.raises(APIError):
        Result.from_dict(["x"])


@pytest.mark.parametrize(
    "code, result",
    [
        pytest.param(503, internal_err(RuntimeError(""), "test"), id="internal error"),
        pytest.param(400, bad_data_err(RuntimeError(""), "test"), id="bad request"),
        pytest.param(200, data({}), id="success"),
        pytest.param(200, None, id="empty"),
    ],
)
def test_wrapper(code, result):
    helper = Helper(logging.getLogger("test"), Registry(), "test")
    app = flask.Flask(__name__)

    def handler():
        return result

    app.add_url_rule("/test", view_func=helper.wrap(handler))
    app.add_url_rule("/metrics", view_func=helper.metrics_handler)
    client = app.test_client()
    response = client.get("/test")
    assert response.status_code == code
    if result is None:
        assert response.get_data() == b""
    else:
        assert response.get_json() == result.to_dict()

    metrics = client.get("/metrics").get_data(as_text=True)
    assert (
        f'test_http_request_duration_seconds_count{{path="/test",code="{code}"}} 1'
        in metrics.splitlines()
    )


def test_call_app():
    app = flask.Flask(__name__)
    seen = {}

    @app.route("/api", methods=["GET"])
    def api_view():
        seen["path"] = flask.request.path
        seen["body"] = flask.request.get_data(as_text=True)
        return flask.jsonify({"status": "success", "data": "test"})

    code, result = call_app(app, "/api", "GET", "xxx")
    assert code == 200
    assert seen == {"path": "/api", "body": "xxx"}
    assert result.status is Status.SUCCESS
    assert result.data == "test"


def test_call_app_empty_body():
    app = flask.Flask(__name__)

    @app.route("/none")
    def none_view():
        return ""

    code, result = call_app(app, "/none", "GET", "")
    assert code == 200
    assert result is None