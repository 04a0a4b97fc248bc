import io
import threading
from wsgiref.simple_server import WSGIRequestHandler, make_server
from wsgiref.util import setup_testing_defaults

import pytest

from obsapi.rules_client import (
    Client,
    ClientWithResponses,
    InvalidParamFormatError,
    ListRulesResponse,
    RequiredParamError,
    SetRulesResponse,
    TooManyValuesForParamError,
    handler,
    new_list_all_rules_request,
    new_list_rules_request,
    new_set_rules_request_with_body,
    parse_list_rules_response,
    parse_set_rules_response,
)
from obsapi.rules_models import RecordingRule, RuleGroup, Rules, dump_rules, load_rules

SERVER = "http://example.com/prefix/"

RULES_YAML = """
groups:
- name: foo
  interval: 5s
  rules:
  - record: bar
    expr: vector(1)
"""


class FakeResponse:
    def __init__(self, status=200, body=b"", content_type="application/yaml", reason="OK"):
        self.status = status
        self.reason = reason
        self.headers = {"Content-Type": content_type}
        self._body = body
        self.closed = False

    def read(self):
        return self._body

    def close(self):
        self.closed = True


class RecordingDoer:
    def __init__(self, response=None):
        self.requests = []
        self.response = response or FakeResponse()

    def __call__(self, request):
        self.requests.append(request)
        return self.response


def call(app, method, path, body=b""):
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
    }
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    data = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], data


def test_client_adds_trailing_slash_and_lists_all_rules():
    doer = RecordingDoer()
    client = Client("http://example.com/prefix", http_client=doer)
    assert client.server == SERVER
    client.list_all_rules()
    (request,) = doer.requests
    assert request.method == "GET"
    assert request.url == SERVER + "api/v1/rules"
    assert request.body is None


def test_request_without_trailing_slash_resolves_relative_to_parent():
    request = new_list_all_rules_request("http://example.com/prefix")
    assert request.url == "http://example.com/api/v1/rules"


def test_tenant_is_path_escaped():
    request = new_list_rules_request(SERVER, "a/b c")
    assert request.url == SERVER + "api/v1/rules/a%2Fb%20c"


def test_tenant_keeps_segment_safe_characters():
    tenant = "t$&+:=@-_.~"
    request = new_list_rules_request(SERVER, tenant)
    assert request.url == SERVER + "api/v1/rules/" + tenant


@pytest.mark.parametrize("body", [RULES_YAML, RULES_YAML.encode(), io.BytesIO(RULES_YAML.encode())])
def test_set_rules_request_carries_body_and_content_type(body):
    request = new_set_rules_request_with_body(SERVER, "acme", "application/yaml", body)
    assert request.method == "PUT"
    assert request.url == SERVER + "api/v1/rules/acme"
    assert request.headers["Content-Type"] == "application/yaml"
    assert request.body == RULES_YAML.encode()


def test_editors_run_client_first_then_per_call():
    order = []
    doer = RecordingDoer()

    def client_editor(request):
        order.append("client")
        request.headers["Authorization"] = "Bearer token"

    def call_editor(request):
        order.append("call")

    client = Client(SERVER, http_client=doer, request_editors=[client_editor])
    client.list_rules("acme", call_editor)
    assert order == ["client", "call"]
    assert doer.requests[0].headers["Authorization"] == "Bearer token"


def test_failing_editor_stops_request():
    doer = RecordingDoer()

    def failing(request):
        raise RuntimeError("refused")

    client = Client(SERVER, http_client=doer)
    with pytest.raises(RuntimeError, match="refused"):
        client.set_rules_with_body("acme", "application/yaml", b"", failing)
    assert doer.requests == []


def test_parse_list_rules_yaml_200():
    response = FakeResponse(200, RULES_YAML.encode())
    parsed = parse_list_rules_response(response)
    assert parsed.yaml200 == load_rules(RULES_YAML)
    assert parsed.body == RULES_YAML.encode()
    assert parsed.status_code == 200
    assert parsed.status == "200 OK"
    assert response.closed


@pytest.mark.parametrize(
    "status, content_type",
    [(200, "application/json"), (404, "application/yaml")],
)
def test_parse_list_rules_without_yaml_200_keeps_body_only(status, content_type):
    parsed = parse_list_rules_response(FakeResponse(status, b"whatever", content_type))
    assert parsed.yaml200 is None
    assert parsed.body == b"whatever"
    assert parsed.status_code == status


def test_parse_list_rules_invalid_yaml_raises():
    with pytest.raises(ValueError):
        parse_list_rules_response(FakeResponse(200, b"groups: [unclosed"))


def test_responses_without_http_response():
    assert ListRulesResponse().status == ""
    assert ListRulesResponse().status_code == 0
    assert SetRulesResponse().status_code == 0


def test_parse_set_rules_response():
    response = FakeResponse(201, b"done", reason="Created")
    parsed = parse_set_rules_response(response)
    assert parsed.body == b"done"
    assert parsed.status_code == 201
    assert response.closed


def test_client_with_responses_parses():
    doer = RecordingDoer(FakeResponse(200, RULES_YAML.encode()))
    client = ClientWithResponses(SERVER, http_client=doer)
    parsed = client.list_rules_with_response("acme")
    assert parsed.yaml200 == load_rules(RULES_YAML)
    assert doer.requests[0].url == SERVER + "api/v1/rules/acme"


def test_param_error_messages():
    err = InvalidParamFormatError("tenant", ValueError("bad"))
    assert str(err) == "Invalid format for parameter tenant: bad"
    assert err.__cause__ is err.err
    assert str(RequiredParamError("q")) == "Query argument q is required, but not found"
    assert str(TooManyValuesForParamError("q", 2)) == "Expected one value for q, got 2"


class RecordingService:
    def __init__(self):
        self.calls = []

    def _ok(self, start_response):
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"ok"]

    def list_all_rules(self, environ, start_response):
        self.calls.append(("list_all",))
        return self._ok(start_response)

    def list_rules(self, environ, start_response, tenant):
        self.calls.append(("list", tenant))
        return self._ok(start_response)

    def set_rules(self, environ, start_response, tenant):
        self.calls.append(("set", tenant, environ["wsgi.input"].read()))
        return self._ok(start_response)


def test_handler_routes_operations():
    service = RecordingService()
    app = handler(service)
    assert call(app, "GET", "/api/v1/rules")[0].startswith("200")
    assert call(app, "GET", "/api/v1/rules/acme")[0].startswith("200")
    assert call(app, "PUT", "/api/v1/rules/acme", b"body")[0].startswith("200")
    assert service.calls == [("list_all",), ("list", "acme"), ("set", "acme", b"body")]


def test_handler_unknown_path_and_method():
    service = RecordingService()
    app = handler(service)
    status, _, body = call(app, "GET", "/other")
    assert status.startswith("404")
    assert body == b"404 page not found\n"
    assert call(app, "DELETE", "/api/v1/rules/acme")[0].startswith("405")
    assert call(app, "PUT", "/api/v1/rules")[0].startswith("405")
    assert service.calls == []


def test_handler_base_url():
    service = RecordingService()
    app = handler(service, base_url="/base")
    assert call(app, "GET", "/api/v1/rules")[0].startswith("404")
    assert call(app, "GET", "/base/api/v1/rules/acme")[0].startswith("200")
    assert service.calls == [("list", "acme")]


def test_handler_invalid_tenant_uses_default_error_handler():
    service = RecordingService()
    status, _, body = call(handler(service), "GET", "/api/v1/rules/\xff")
    assert status.startswith("400")
    assert body.decode().startswith("Invalid format for parameter tenant:")
    assert service.calls == []


def test_handler_custom_error_handler():
    seen = []

    def on_error(environ, start_response, err):
        seen.append(err)
        start_response("422 Unprocessable Entity", [])
        return [b""]

    status, _, _ = call(handler(RecordingService(), error_handler=on_error), "GET", "/api/v1/rules/\xff")
    assert status.startswith("422")
    assert isinstance(seen[0], InvalidParamFormatError)
    assert seen[0].param_name == "tenant"


def test_handler_middlewares_last_is_outermost():
    order = []

    def named(name):
        def middleware(inner):
            def wrapped(environ, start_response):
                order.append(name)
                return inner(environ, start_response)

            return wrapped

        return middleware

    service = RecordingService()
    app = handler(service, middlewares=[named("first"), named("second")])
    status, _, body = call(app, "GET", "/api/v1/rules")
    assert status.startswith("200")
    assert body == b"ok"
    assert order == ["second", "first"]
    assert service.calls == [("list_all",)]


class MemoryService:
    def __init__(self):
        self.rules = {}

    def list_all_rules(self, environ, start_response):
        merged = Rules(groups=[g for rules in self.rules.values() for g in rules.groups])
        start_response("200 OK", [("Content-Type", "application/yaml")])
        return [dump_rules(merged).encode()]

    def list_rules(self, environ, start_response, tenant):
        if tenant not in self.rules:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"missing"]
        start_response("200 OK", [("Content-Type", "application/yaml")])
        return [dump_rules(self.rules[tenant]).encode()]

    def set_rules(self, environ, start_response, tenant):
        length = int(environ.get("CONTENT_LENGTH") or 0)
        self.rules[tenant] = load_rules(environ["wsgi.input"].read(length))
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b""]


class QuietHandler(WSGIRequestHandler):
    def log_message(self, *args):
        pass


def test_round_trip_over_http():
    service = MemoryService()
    server = make_server("127.0.0.1", 0, handler(service), handler_class=QuietHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        client = ClientWithResponses(f"http://127.0.0.1:{server.server_port}")
        missing = client.list_rules_with_response("acme")
        assert missing.status_code == 404
        assert missing.yaml200 is None

        stored = client.set_rules_with_body_with_response("acme", "application/yaml", RULES_YAML)
        assert stored.status_code == 200

        listed = client.list_rules_with_response("acme")
        expected = Rules(
            groups=[RuleGroup(interval="5s", name="foo", rules=[RecordingRule(record="bar", expr="vector(1)")])]
        )
        assert listed.yaml200 == expected
        assert client.list_all_rules_with_response().yaml200 == expected
    finally:
        server.shutdown()
        server.server_close()