# obsapi

Building blocks for a multi-tenant observability API gateway that sits in
front of metrics, logs and rules backends. Everything that handles HTTP is
written as plain WSGI applications and middleware.

Modules:

- **`obsapi.rbac`**: role-based access control. Roles grant `read` and
  `write` permissions on resources for tenants, and role bindings attach
  roles to users and groups. `new_authorizer` builds an `Authorizer` from
  roles and bindings. `parse` reads them from a YAML document and raises
  `RBACError` when it cannot.
- **`obsapi.ratelimit`**: per-tenant, per-endpoint rate limiting as WSGI
  middleware. The counters are kept either in memory
  (`with_local_rate_limiter`) or in a shared limiter service you provide
  (`with_shared_rate_limiter`).
- **`obsapi.tlsconfig`**: builds a server `ssl.SSLContext` from certificate
  and key paths, a minimum TLS version name and cipher suite names.
- **`obsapi.rules_models`**: Prometheus-style rule files, with recording
  rules, alerting rules and rule groups, loaded from YAML or JSON and
  dumped to YAML.
- **`obsapi.rules_client`**: an HTTP client for the rules API
  (`/api/v1/rules` and `/api/v1/rules/{tenant}`), plus a WSGI router for
  serving it.
- **`obsapi.server`**: in-memory HTTP request metrics labelled by code,
  method and tenant, a request-logging middleware, and a handler that lists
  the available paths as JSON.

## Installation

```
pip install obsapi
```

To run the test suite:

```
pip install "obsapi[test]"
pytest
```

## Access control

```python
import io
import logging

from obsapi.rbac import Permission, parse

document = """
roles:
- name: team-a-read
  resources: [metrics]
  tenants: [team-a]
  permissions: [read]
roleBindings:
- name: erika-team-a
  roles: [team-a-read]
  subjects:
  - name: erika
    kind: user
"""

authorizer = parse(io.StringIO(document), logging.getLogger("obsapi"))

status, allowed, _ = authorizer.authorize(
    "erika", [], Permission.READ, "metrics", "team-a", "", ""
)
# status == 200, allowed is True

status, allowed, _ = authorizer.authorize(
    "erika", [], Permission.WRITE, "metrics", "team-a", "", ""
)
# status == 403, allowed is False
```

`authorize` returns a tuple of HTTP status, allowed flag and extra data.
The extra data is always an empty string. The subject is checked as a user
first and then through each of its groups. Unknown resources, tenants or
subjects are refused with status 403. Bindings that name an unknown role,
and permissions other than `read` and `write`, are logged as warnings and
skipped.

## Rule files

```python
from obsapi.rules_models import dump_rules, load_rules

rules = load_rules("""
groups:
- name: example
  interval: 30s
  rules:
  - record: job:up:avg
    expr: avg without(instance)(up{job="node"})
  - alert: ManyInstancesDown
    expr: job:up:avg{job="node"} < 0.5
    for: 10m
""")

print(dump_rules(rules))
```

A rule that has an `alert` key is read as an `AlertingRule`. Any other rule
is read as a `RecordingRule`. In a `RuleGroup`, `rules` is `None` when the
group has no rules. Malformed input raises `ValueError`.

## Rules API client and router

```python
from obsapi.rules_client import ClientWithResponses

client = ClientWithResponses("http://localhost:8080")
response = client.list_rules_with_response("team-a")
if response.status_code == 200 and response.yaml200 is not None:
    for group in response.yaml200.groups:
        print(group.name)
```

By default requests are sent with `urllib`. Pass `http_client=` to supply
your own callable: it takes a `Request` and returns a response object with
`status`, `headers` and `read()`. Request editors are callables that change
a `Request` before it is sent. Give them to the constructor as
`request_editors=` or as extra arguments to each call.

`handler(service, base_url, middlewares, error_handler)` returns a WSGI
application. It routes `GET /api/v1/rules` to `service.list_all_rules`,
`GET /api/v1/rules/{tenant}` to `service.list_rules`, and
`PUT /api/v1/rules/{tenant}` to `service.set_rules`. Other methods on these
paths get 405, and other paths get 404.

## Rate limiting

```python
import re
from datetime import timedelta

from obsapi.ratelimit import Config, with_local_rate_limiter


def tenant_of(environ):
    return environ.get("HTTP_X_TENANT")


limit = with_local_rate_limiter(
    Config(tenant="team-a", matcher=re.compile("/api/metrics"), limit=10,
           window=timedelta(seconds=1)),
    tenant_getter=tenant_of,
)
app = limit(app)
```

How requests are handled:

- **No tenant:** when `tenant_getter` returns `None`, the request is answered
  with `401` and `error finding tenant`.
- **Which limit applies:** the first configuration for the tenant whose
  matcher finds the request path. Requests for tenants or paths without a
  configuration pass through unchanged.
- **Over the limit:** the request is answered with `429 Too Many Requests`.
- **Headers:** both limiters set `X-RateLimit-Limit`,
  `X-RateLimit-Remaining` and `X-RateLimit-Reset`.

For `with_shared_rate_limiter(logger, client, *configs, tenant_getter=...)`,
the client implements the `SharedRateLimiter` protocol:

- `get_rate_limits(request)` receives a `RateLimitRequest` and returns
  `(remaining, reset_time)`.
- It raises `OverLimitError` when the limit is reached.
- Any other exception is logged as a warning and answered with `500`.

## HTTP metrics, logging and paths

```python
from obsapi.server import InstrumentedHandlerFactory, paths_handler, request_logger

factory = InstrumentedHandlerFactory(["handler"], tenant_getter=tenant_of)
instrumented = request_logger()(factory.new_handler({"handler": "query"}, app))

labels = {"handler": "query", "code": "200", "method": "GET", "tenant": "team-a"}
factory.metrics_collector.request_counter.value(labels)

paths = paths_handler(None, ["/api/v1/rules", "/api/v1/rules/{tenant}"])
```

Metrics and log lines are recorded when the WSGI server closes the
response body. `request_logger` logs at warning level for 5xx responses and
at debug level otherwise.

## What this package does not do

- **No server or command-line program:** it provides middleware, handlers
  and models to assemble into a WSGI application of your own.
- **No authentication:** the tenant of a request always comes from the
  `tenant_getter` you pass in.
- **No bundled client for a shared limiter service:** you supply the
  `SharedRateLimiter` implementation.
- **No metrics export:** metrics are kept in memory and read through
  `Counter.value`, `Histogram.sample_count`, `Histogram.sample_sum`,
  `Histogram.bucket_counts`, `Summary.sample_count` and
  `Summary.sample_sum`. Nothing serves them in an exposition format.
- **No tracing.**