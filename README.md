# sagax

Small building blocks for backend services. The package uses only the standard library.

| Module | What it does |
| --- | --- |
| `sagax.ctxdata` | Immutable `Context`, RPC-style `Metadata`, and helpers that carry request data through both. The data covers correlation id, trace parent, trace id, span id, sampling flag, user agent, host, client IP, forwarded-for and pid. |
| `sagax.ctxval` | The same helpers, plus `set_idempotency`/`get_idempotency` and `set_user_device`/`get_user_device`. |
| `sagax.clue` | JSON response envelopes in a standard layout (`status`, `message`, `info`, `data`) or a SNAP BI layout (`responseCode`, `responseMessage`). |
| `sagax.logger` | Structured JSON logging. Every entry carries the context's request data. |
| `sagax.audit` | Audit entries written through the default logger. |
| `sagax.roundtrip` | HTTP round-tripper wrappers for context injection, request/response logging and retries. |
| `sagax.cache` | A `Cache` interface and a `RedisCache` that wraps a Redis client. |
| `sagax.account_lock` | Per-account Redis locks. A held lock extends itself until it is released. |
| `sagax.mail` | Composes e-mails and sends them over SMTP. |
| `sagax.graceful` | Runs starters in background threads, then calls stoppers once a signal arrives. |
| `sagax.dtask` | Task-queue data types, handler responses and abstract publisher/task interfaces. |

## Installation

```
pip install .
```

To also install the test dependencies:

```
pip install ".[test]"
```

## Request context

```python
from sagax import ctxdata

ctx = ctxdata.sets(
    ctxdata.background(),
    ctxdata.set_correlation_id("abc-123"),
    ctxdata.set_pid("42"),
)
assert ctxdata.get_correlation_id(ctx) == "abc-123"

trace_id, span_id, sampled = ctxdata.deconstruct_x_cloud_trace_context(
    "105445aa7843bc8bf206b120001000/1;o=1"
)
# ("105445aa7843bc8bf206b120001000", "1", True)
```

You can build a context and metadata from an incoming HTTP request:

```python
req = ctxdata.Request(
    headers={"X-Correlation-Id": ["abc-123"], "X-Real-IP": ["10.0.0.7"]},
    host="example.com",
    remote_addr="127.0.0.1",
)
ctx, md = ctxdata.set_context_and_metadata_from_http(
    ctxdata.background(), req, "my-project", ctxdata.with_xri_client_ip()
)
ctxdata.get_trace_id(ctx)   # "projects/my-project/traces/"
ctxdata.get_ip(ctx)         # "10.0.0.7"
```

- If the request has no `X-Correlation-Id`, a fresh UUID4 is used instead.
- The client-IP resolvers are tried in the order given. The first non-empty result wins.
- The request's remote address is always tried last.
- The resolvers available are:
  - `with_remote_addr_client_ip()`
  - `with_xri_client_ip()`
  - `with_xff_trusted_proxy_count(count)`
  - `with_xff_trusted_proxy_checker(trusted)`

On the receiving side, `new_incoming_context(ctx, md)` attaches metadata to a context. `set_context_from_grpc(ctx, project_id)` then copies that metadata into the context's values.

## Response envelopes

`Builder.send(ctx)` applies the layout's defaults and returns `(http_status, json_text)`:

```python
from sagax import clue

status, body = clue.build(200, "00", {"id": 1}, "").send(ctx)
# 200, '{"data":{"id":1},"message":"Successful","status":"00"}'

ctx = clue.define_ctx_service_code(ctx, "XX")
status, body = clue.build(200, "00", None, "").snap_bi().send(ctx)
# 200, '{"responseCode":"200XX00","responseMessage":"Successful"}'
```

`Builder` is an exception, so it can be raised and caught. `clue.cover_builder(err, data)` attaches `data` to a `Builder`. Any other exception becomes a 500 envelope with code `"00"` and the exception text as message.

## Logging

```python
from sagax import audit, logger

logger.init("orders", logger.with_log_env_option("prod"), logger.debug_log_level())
logger.info(ctx, "order created", logger.Field("order_id", 7))
logger.infof(ctx, "processed %d items", 3)
audit.info(ctx, audit.Message(client_app_name="web", user_id="u1", activity_data={"op": "x"}))
logger.sync()
```

**Destination.** `with_log_to_option` takes `file`, `stdout`, `filestdout` or `stdoutfile`. File logs go to `storages/logs/` and rotate by size.

**Environment.** In the `local` and `dev` environments:

- `dpanic` raises `RuntimeError`.
- Entries at error level and above carry a stack trace.

**Levels.**

- `panic` always raises `RuntimeError`.
- `fatal` raises `SystemExit(1)`.

**Before `init`.** Until `init` has been called, the module-level logging functions do nothing.

## HTTP round trippers

A round tripper is any object with `round_trip(req: HTTPRequest) -> HTTPResponse`.

```python
from sagax import roundtrip

class Transport:
    def round_trip(self, req):
        ...  # send req.method / req.url / req.headers / req.body, return an HTTPResponse

tripper = roundtrip.new_retry_round_tripper(
    roundtrip.new_log_round_tripper(
        roundtrip.new_context(Transport(), roundtrip.with_context_round_tripper_option("tenant", "t1")),
        roundtrip.with_log_round_tripper_service_option("billing"),
        roundtrip.with_log_round_tripper_operation_option("charge"),
    )
)
tripper.with_max_retries(3).with_backoff(lambda: 0.5)
res = tripper.round_trip(roundtrip.HTTPRequest(method="POST", url="https://api.example.com/pay"))
```

- The retry wrapper repeats a request while `is_internal_error` (status 500) holds. By default it makes at most 5 attempts, 2 seconds apart.
- The logging wrapper leaves `Authorization` and `X-Secret-Key` out of the logged headers.

## Cache and account locks

Both modules take a Redis client object that you supply, for example one from redis-py:

- `RedisCache` calls `get`, `set(key, value, px=..., nx=...)`, `delete` and `close` on it.
- `account_lock` calls `set` and `eval` on it.

```python
from sagax import account_lock, cache

store, stop = cache.new_redis_cache(client)
store.set("k", "v", 60)
store.get("k")             # "v"; raises cache.CacheMiss for absent keys

producer = account_lock.new_producer(client, account_lock.with_max_tries(10))
lock = producer.new("acct-1", 5)     # TTL in seconds; 0 or less means 8
lock.acquire()                        # raises account_lock.LockError on failure
try:
    ...
finally:
    lock.release()
```

## E-mail

```python
from sagax import mail

password = "password"
conn = mail.new("smtp.example.com", "587", "sender@example.com", password)
email = conn.prepare()
email.set_subject("Report")
email.set_to(["someone@example.com"])
email.set_content("<p>See attached.</p>")
email.add_attachment("report.csv", "text/csv", b"a,b\n1,2\n")
conn.send(email)
```

`send` behaves as follows:

- It uses STARTTLS when the server offers it.
- It logs in with the given credentials.
- It delivers to the To and Cc recipients.

## Graceful shutdown

```python
from sagax import graceful

graceful.start_process_at_background(server.serve_forever)
graceful.stop_process_at_background(10, lambda timeout: server.shutdown())
```

`stop_process_at_background` must run in the main thread. It does the following:

1. It blocks until SIGUSR1, SIGINT or SIGTERM arrives.
2. It calls each stopper with the timeout in seconds.
3. It returns the signal that arrived.

## Task models

`sagax.dtask` defines the data that publishers and subscribers exchange:

- `TaskInfo`
- `Level`
- `Response`, built with `done`, `expect_error` or `report_error`
- `SubscriberConfig` and `RedisConfig`
- `with_subscriber`

It also defines the abstract `Publisher` and `Task` interfaces.

## What the package does not do

- It does not load configuration from files, the environment or remote stores.
- It has no task broker, publisher or subscriber implementation. `dtask` holds only the types and interfaces.
- It ships no network HTTP transport. The round trippers wrap one that you provide.
- It bundles no Redis client.

## Running the tests

```
pytest
```