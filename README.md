# wrpagent

Building blocks for a device agent that speaks WRP (the Web Routing Protocol):

- `wrpagent.wrp` – the `Message` dataclass, `Locator` and `parse_locator`,
  `parse_device_id`, msgpack encoding (`encode_msgpack`, `decode_msgpack`)
  and message normalisation: a `Normifier` applies normalizers such as
  `validate_destination()`, `validate_source()`,
  `replace_any_self_locator(me)`, `clamp_quality_of_service()`,
  `validate_message_type()`, `ensure_transaction_uuid()` and
  `validate_only_utf8_strings()`. Errors derive from `WrpError`.
- `wrpagent.pubsub` – a publish/subscribe router, `PubSub`, that delivers
  messages to service, event or egress handlers.
- `wrpagent.websocket` – a `Websocket` client that keeps a connection open,
  redials with a retry policy, alternates between IPv4 and IPv6 and reports
  connect, disconnect, heartbeat and message events.
- `wrpagent.events` – the event types handed to listeners: `Connect`,
  `Disconnect` and `Heartbeat`.
- `wrpagent.retry` – `RetryConfig` and the back-off `RetryPolicy` it makes.
- `wrpagent.wsproto` – websocket constants (`Opcode`, `MessageType`,
  `StatusCode`, `CompressionMode`), `CloseError` and `close_status`.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Routing messages

A `PubSub` is created for this device's id. A handler is either an object
with a `handle_wrp(msg)` method or a plain callable taking the message.
Messages addressed to this device go to the handlers of their service and
of `*`; event messages go to the handlers of their event, of `*` and to
egress; everything else goes to egress. Each handler runs in its own thread
on a copy of the message.

```python
from wrpagent.pubsub import PubSub
from wrpagent.wrp import ensure_transaction_uuid

ps = PubSub(
    "mac:112233445566",
    normify=[ensure_transaction_uuid()],
    publish_timeout=0.2,
)

cancel = ps.subscribe_service("config", config_handler)
ps.subscribe_event("*", event_logger)
ps.subscribe_egress(uplink)

ps.handle_wrp(message)   # returns once one handler accepted the message
cancel()                 # remove the config handler again
```

Before routing, every message must have a valid source and destination,
`self:` locators are replaced with the device id and the quality of service
is clamped. The `normify` normalizers are applied only to messages whose
source is this device.

A handler declines a message by raising `NotHandledError`; any other return
counts as accepted. `handle_wrp` raises `NotHandledError` (from
`wrpagent.wrp`) when the message is invalid or no handler accepted it, and
`PublishTimeoutError` when no handler accepted it within `publish_timeout`
seconds. Service and event names may not be empty or contain `/`; such
names, an empty device id, a `None` handler and a negative timeout raise
`InvalidInputError`. `routes()` returns the names of the routes subscribed
to, such as `"service:config"`, `"event:*"` or `"egress:*"`.

## Keeping a websocket connection

```python
from wrpagent.retry import RetryConfig
from wrpagent.websocket import Websocket

ws = Websocket(
    device_id="mac:112233445566",
    url="https://fabric.example.com/api/v2/device",
    retry_policy=RetryConfig(interval=1.0, multiplier=2.0, max_interval=300.0),
)
ws.add_connect_listener(print)
ws.add_disconnect_listener(print)
ws.add_message_listener(ps.handle_wrp)

ws.start()
...
ws.send(reply)
...
ws.stop()
```

Instead of `url` a `fetch_url` callable may be given; it is called with
`fetch_url_timeout` before every attempt and returns the URL. `http` and
`https` URLs are dialled as `ws` and `wss`. Every request carries the
`X-Webpa-Device-Name` header plus any `additional_headers`; the
`credentials_decorator` and `convey_decorator` may change the headers before
each attempt. A listener is a callable or an object with `on_connect`,
`on_disconnect`, `on_heartbeat` or `on_message`; each `add_*_listener`
returns a function that removes it.

Only binary frames holding msgpack WRP messages are accepted. A text frame,
an undecodable message, a message over `max_message_bytes`, a close frame or
`inactivity_timeout` seconds without data or a ping ends the connection with
a `Disconnect` event, after which the client redials (or stops, with
`once=True`). Failed attempts are reported as `Connect` events carrying the
error and the time of the next attempt.

A misconfigured client (no device id, no URL or fetcher, no IP mode allowed,
no retry policy, negative timeouts and the like) raises `MisconfiguredError`
when constructed. `send` raises `ClosedError` while no connection is up.

## Example command

The package installs a command that connects and prints every connect and
disconnect event:

```
wrpagent-example --id mac:112233445566 --url https://fabric.example.com/api/v2/device
```

Use `-4` or `-6` to restrict the connection to one IP version, `--once` to
make a single connection attempt and `--duration` to set how many seconds to
run (60 by default).

## What it does not do

- There is no websocket server side; `Websocket` only dials out.
- `CompressionMode` names the permessage-deflate modes, but messages are
  neither compressed nor decompressed.
- Connections are dialled directly; proxy settings from the environment are
  not used.