"""HTTP client and WSGI routing for the rules API."""

from __future__ import annotations

import urllib.error
import urllib.request
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import IO, Any, Callable, Iterable, Optional, Protocol, Union
from urllib.parse import quote, urljoin

from obsapi.rules_models import Rules, load_rules

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]
HandlerMiddleware = Callable[[WSGIApp], WSGIApp]
ErrorHandler = Callable[[dict, Callable, Exception], Iterable[bytes]]
Body = Union[bytes, str, IO[bytes], IO[str], None]

_RULES_PATH = "/api/v1/rules"
# Characters a path segment keeps unescaped besides letters, digits and "-_.~".
_PATH_SEGMENT_SAFE = "$&+:=@"


@dataclass
class Request:
    """An HTTP request about to be sent."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


RequestEditor = Callable[[Request], None]
HttpRequestDoer = Callable[[Request], Any]


class _ParamError(Exception):
    def __init__(self, param_name: str, err: BaseException | None = None) -> None:
        self.param_name = param_name
        self.err = err
        super().__init__(self._message())
        self.__cause__ = err

    def _message(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self._message()


class UnescapedCookieParamError(_ParamError):
    """A cookie parameter could not be unescaped."""

    def _message(self) -> str:
        return f"error unescaping cookie parameter '{self.param_name}'"


class UnmarshalingParamError(_ParamError):
    """A parameter could not be decoded as JSON."""

    def _message(self) -> str:
        return f"Error unmarshaling parameter {self.param_name} as JSON: {self.err}"


class RequiredParamError(_ParamError):
    """A required query argument is missing."""

    def _message(self) -> str:
        return f"Query argument {self.param_name} is required, but not found"


class RequiredHeaderError(_ParamError):
    """A required header is missing."""

    def _message(self) -> str:
        return f"Header parameter {self.param_name} is required, but not found"


class InvalidParamFormatError(_ParamError):
    """A parameter has a value of the wrong form."""

    def _message(self) -> str:
        return f"Invalid format for parameter {self.param_name}: {self.err}"


class TooManyValuesForParamError(Exception):
    """A parameter that takes one value was given several."""

    def __init__(self, param_name: str, count: int) -> None:
        self.param_name = param_name
        self.count = count
        super().__init__(f"Expected one value for {param_name}, got {count}")


def _path_param(value: str) -> str:
    return quote(value, safe=_PATH_SEGMENT_SAFE)


def _operation_url(server: str, path: str) -> str:
    return urljoin(server, "." + path)


def _body_bytes(body: Body) -> Optional[bytes]:
    if body is None or isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode()
    data = body.read()
    return data.encode() if isinstance(data, str) else data


def new_list_all_rules_request(server: str) -> Request:
    """Build the request that lists the rules of all tenants."""
    return Request("GET", _operation_url(server, _RULES_PATH))


def new_list_rules_request(server: str, tenant: str) -> Request:
    """Build the request that lists the rules of one tenant."""
    return Request("GET", _operation_url(server, f"{_RULES_PATH}/{_path_param(tenant)}"))


def new_set_rules_request_with_body(
    server: str, tenant: str, content_type: str, body: Body
) -> Request:
    """Build the request that replaces the rules of one tenant."""
    return Request(
        "PUT",
        _operation_url(server, f"{_RULES_PATH}/{_path_param(tenant)}"),
        headers={"Content-Type": content_type},
        body=_body_bytes(body),
    )


def _urlopen(request: Request) -> Any:
    native = urllib.request.Request(
        request.url, data=request.body, headers=request.headers, method=request.method
    )
    try:
        return urllib.request.urlopen(native)
    except urllib.error.HTTPError as err:
        return err


class Client:
    """Sends requests to a server that offers the rules API."""

    def __init__(
        self,
        server: str,
        http_client: HttpRequestDoer | None = None,
        request_editors: Iterable[RequestEditor] = (),
    ) -> None:
        self.server = server if server.endswith("/") else server + "/"
        self.http_client = http_client or _urlopen
        self.request_editors = list(request_editors)

    def _do(self, request: Request, editors: Iterable[RequestEditor]) -> Any:
        for editor in (*self.request_editors, *editors):
            editor(request)
        return self.http_client(request)

    def list_all_rules(self, *args: RequestEditor) -> Any:
        """List all rules of all tenants; args are extra request editors."""
        return self._do(new_list_all_rules_request(self.server), args)

    def list_rules(self, tenant: str, *args: RequestEditor) -> Any:
        """List the rules of a tenant; args are extra request editors."""
        return self._do(new_list_rules_request(self.server, tenant), args)

    def set_rules_with_body(
        self, tenant: str, content_type: str, body: Body, *args: RequestEditor
    ) -> Any:
        """Replace the rules of a tenant; args are extra request editors."""
        request = new_set_rules_request_with_body(self.server, tenant, content_type, body)
        return self._do(request, args)


@dataclass
class _ParsedResponse:
    body: bytes = b""
    http_response: Any = None

    @property
    def status(self) -> str:
        """The status line of the response, or "" when there is none."""
        if self.http_response is None:
            return ""
        reason = getattr(self.http_response, "reason", "") or ""
        return f"{self.http_response.status} {reason}".strip()

    @property
    def status_code(self) -> int:
        """The status code of the response, or 0 when there is none."""
        if self.http_response is None:
            return 0
        return int(self.http_response.status)


@dataclass
class ListRulesResponse(_ParsedResponse):
    """A response listing rules; yaml200 holds them when they came as YAML with 200."""

    yaml200: Optional[Rules] = None


@dataclass
class SetRulesResponse(_ParsedResponse):
    """A response to replacing a tenant's rules."""


def _read_body(response: Any) -> bytes:
    try:
        return response.read()
    finally:
        close = getattr(response, "close", None)
        if close is not None:
            close()


def parse_list_rules_response(response: Any) -> ListRulesResponse:
    """Read a response listing rules, decoding a YAML body of a 200 response."""
    body = _read_body(response)
    parsed = ListRulesResponse(body=body, http_response=response)
    content_type = response.headers.get("Content-Type") or ""
    if "yaml" in content_type and int(response.status) == 200:
        parsed.yaml200 = load_rules(body)
    return parsed


def parse_set_rules_response(response: Any) -> SetRulesResponse:
    """Read a response to replacing rules."""
    return SetRulesResponse(body=_read_body(response), http_response=response)


class ClientWithResponses(Client):
    """A client whose calls return parsed responses."""

    def list_all_rules_with_response(self, *args: RequestEditor) -> ListRulesResponse:
        """List all rules and parse the response."""
        return parse_list_rules_response(self.list_all_rules(*args))

    def list_rules_with_response(self, tenant: str, *args: RequestEditor) -> ListRulesResponse:
        """List a tenant's rules and parse the response."""
        return parse_list_rules_response(self.list_rules(tenant, *args))

    def set_rules_with_body_with_response(
        self, tenant: str, content_type: str, body: Body, *args: RequestEditor
    ) -> SetRulesResponse:
        """Replace a tenant's rules and parse the response."""
        return parse_set_rules_response(self.set_rules_with_body(tenant, content_type, body, *args))


class RulesService(Protocol):
    """The operations a rules API server implements, as WSGI handlers."""

    def list_all_rules(self, environ: dict, start_response: Callable) -> Iterable[bytes]: ...

    def list_rules(self, environ: dict, start_response: Callable, tenant: str) -> Iterable[bytes]: ...

    def set_rules(self, environ: dict, start_response: Callable, tenant: str) -> Iterable[bytes]: ...


def _http_error(start_response: Callable, status: HTTPStatus, message: str) -> list[bytes]:
    body = (message + "\n").encode()
    start_response(
        f"{status.value} {status.phrase}",
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _default_error_handler(environ: dict, start_response: Callable, err: Exception) -> list[bytes]:
    return _http_error(start_response, HTTPStatus.BAD_REQUEST, str(err))


def _method_not_allowed(start_response: Callable) -> list[bytes]:
    status = HTTPStatus.METHOD_NOT_ALLOWED
    start_response(f"{status.value} {status.phrase}", [("Content-Length", "0")])
    return [b""]


def _bind_tenant(segment: str) -> str:
    try:
        raw = segment.encode("latin-1")
    except UnicodeEncodeError:
        return segment
    return raw.decode("utf-8")


def handler(
    service: RulesService,
    base_url: str = "",
    middlewares: Iterable[HandlerMiddleware] = (),
    error_handler: ErrorHandler | None = None,
) -> WSGIApp:
    """Return a WSGI app routing the rules API paths to service."""
    middlewares = list(middlewares)
    error_handler = error_handler or _default_error_handler
    collection = base_url + _RULES_PATH
    prefix = collection + "/"

    def wrapped(inner: WSGIApp) -> WSGIApp:
        for middleware in middlewares:
            inner = middleware(inner)
        return inner

    def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "") or "/"
        method = environ.get("REQUEST_METHOD", "GET").upper()

        if path == collection:
            if method != "GET":
                return _method_not_allowed(start_response)
            return wrapped(service.list_all_rules)(environ, start_response)

        segment = path[len(prefix):] if path.startswith(prefix) else ""
        if segment and "/" not in segment:
            if method not in ("GET", "PUT"):
                return _method_not_allowed(start_response)
            try:
                tenant = _bind_tenant(segment)
            except ValueError as err:
                return error_handler(environ, start_response, InvalidParamFormatError("tenant", err))
            operation = service.list_rules if method == "GET" else service.set_rules

            def call(env: dict, start: Callable) -> Iterable[bytes]:
                return operation(env, start, tenant)

            return wrapped(call)(environ, start_response)

        return _http_error(start_response, HTTPStatus.NOT_FOUND, "404 page not found")

    return app