# rocketlink

Building blocks for talking to a RocketMQ-compatible broker and name server.
The package has no dependencies outside the standard library.

## Modules

- `rocketlink.codec`: `RemotingCommand` and its two header codecs,
  `JsonCodec` and the compact binary `RocketMQCodec` (selected with
  `CodecType.JSON` or `CodecType.ROCKETMQ`). `new_remoting_command` builds a
  request with a fresh opaque id. `encode` produces a whole frame with its
  4-byte length prefix, and `decode` takes a frame without that prefix.
  `RPCHook` is an abstract base for hooks around remote calls.
- `rocketlink.future`: `ResponseFuture`, a pending response whose
  `wait_response` raises `RequestTimeoutError` when its deadline passes.
- `rocketlink.connection`: `RemotingClientConfig` (all durations in seconds,
  optional TLS without certificate checks), `TcpConnection` and
  `parse_address`.
- `rocketlink.remoting`: `RemotingClient`, a threaded TCP client that keeps
  one connection per address and matches responses to requests by opaque id.
  It offers `invoke_sync`, `invoke_async` and `invoke_one_way`. With
  `register_request_func` you handle commands that the server sends, and with
  `register_interceptor` you wrap outgoing requests. The module also has
  `iter_frames`, which splits a byte stream into frames, and
  `chain_interceptors`.
- `rocketlink.request`: `RequestCode` and the request header dataclasses.
  Each header has an `encode()` that gives its ext fields. The headers that a
  server sends to the client also have a `decode(properties)` class method.
- `rocketlink.constants`: `ResponseCode`, the retry and reply topic names
  (`get_retry_topic`, `get_reply_topic`) and the queue permission helpers
  (`queue_is_readable`, `queue_is_writeable`, `queue_is_inherited`,
  `perm_to_string`).
- `rocketlink.model`: `MessageQueue`, `HeartbeatData`, and the encoders for
  `ConsumerRunningInfo`, `ConsumerStatus` and `ConsumeMessageDirectlyResult`.
  `ResetOffsetBody.decode` accepts an offset table in either layout: a list of
  pairs (`parse_gson_format`) or an object keyed by objects
  (`parse_fastjson_format`).
- `rocketlink.route`: `TopicRouteData`, `QueueData` and `BrokerData`;
  `route_data_to_publish_info`, `route_data_to_subscribe_info` and
  `topic_route_data_is_changed`.
- `rocketlink.namesrv`: `NameServers`, which picks name servers in
  round-robin order, caches topic routes and looks up brokers. The module also
  has the resolvers `PassthroughResolver` and `EnvResolver` (which reads
  `NAMESRV_ADDR`), `check_namesrv_addrs`, and the errors `RemotingError`,
  `MQClientError` and `TopicNotExistError`.

## Install

```
pip install rocketlink
```

## Encoding a command

```python
from rocketlink.codec import CodecType, new_remoting_command, encode, decode
from rocketlink.request import GetRouteInfoRequestHeader, RequestCode

cmd = new_remoting_command(RequestCode.GET_ROUTE_INFO_BY_TOPIC,
                           GetRouteInfoRequestHeader(topic="orders"), None)
frame = encode(cmd, CodecType.ROCKETMQ)
same = decode(frame[4:])   # decode takes the frame without its length prefix
assert same.ext_fields == {"topic": "orders"}
```

## Calling a server

```python
from rocketlink.remoting import RemotingClient

client = RemotingClient()                      # JSON headers by default
response = client.invoke_sync("127.0.0.1:9876", cmd, timeout=3.0)
client.shutdown()
```

## Looking up a topic route

This needs a name server that is running.

```python
from rocketlink.namesrv import NameServers, PassthroughResolver

ns = NameServers(PassthroughResolver(["127.0.0.1:9876"]))
route, changed = ns.update_topic_route_info("orders")
queues = ns.fetch_publish_message_queues("orders")
```

## What it does not do

The package covers the wire protocol, the transport and routing. It has no
producer or consumer client, and it does not schedule heartbeats, rebalancing
or offset persistence. It does not correlate reply messages with the requests
that caused them, and it does not sign requests for access control. It has no
command-line tool.

## Testing

```
pip install -e ".[test]"
pytest
```