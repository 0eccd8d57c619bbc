"""Data exchanged with servers: heartbeats, consumer status and offset tables."""

from __future__ import annotations

import enum
import functools
import json
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Union


def _go_json(value: Any) -> str:
    """Compact JSON with HTML-safe escaping of ``<``, ``>`` and ``&``."""
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def _go_float(value: float) -> Union[int, float]:
    """Integral floats are written without a fractional part."""
    if math.isfinite(value) and value == int(value) and abs(value) < 1e21:
        return int(value)
    return value


def _as_text(body: Union[bytes, bytearray, str]) -> str:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8")
    return body


@dataclass(frozen=True)
class MessageQueue:
    """One queue of a topic on a named broker."""

    topic: str = ""
    broker_name: str = ""
    queue_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"topic": self.topic, "brokerName": self.broker_name, "queueId": self.queue_id}

    def to_json(self) -> str:
        return _go_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "MessageQueue":
        if not isinstance(data, dict):
            raise ValueError(f"message queue is not an object: {data!r}")
        queue_id = data.get("queueId", 0)
        if not isinstance(queue_id, int) or isinstance(queue_id, bool):
            raise ValueError(f"invalid queueId: {queue_id!r}")
        return cls(
            topic=str(data.get("topic", "")),
            broker_name=str(data.get("brokerName", "")),
            queue_id=queue_id,
        )


def _sort_queues(queues) -> list[MessageQueue]:
    return sorted(queues, key=lambda q: (q.topic, q.broker_name, q.queue_id))


@dataclass
class FindBrokerResult:
    broker_addr: str = ""
    slave: bool = False
    broker_version: int = 0


class ServiceState(enum.IntEnum):
    CREATE_JUST = 0
    START_FAILED = 1
    RUNNING = 2
    SHUTDOWN = 3


@dataclass(eq=False)
class SubscriptionData:
    """A consumer's subscription to one topic; hashed by identity."""

    class_filter_mode: bool = False
    topic: str = ""
    sub_string: str = ""
    tags: set[str] = field(default_factory=set)
    codes: set[str] = field(default_factory=set)
    sub_version: int = 0
    exp_type: str = ""
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __enter__(self) -> "SubscriptionData":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()

    def clone(self) -> "SubscriptionData":
        """An independent copy, tags and codes included."""
        with self._lock:
            return SubscriptionData(
                class_filter_mode=self.class_filter_mode,
                topic=self.topic,
                sub_string=self.sub_string,
                tags=set(self.tags),
                codes=set(self.codes),
                sub_version=self.sub_version,
                exp_type=self.exp_type,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "classFilterMode": self.class_filter_mode,
            "topic": self.topic,
            "subString": self.sub_string,
            "tagsSet": sorted(self.tags),
            "codeSet": sorted(self.codes),
            "subVersion": self.sub_version,
            "expressionType": self.exp_type,
        }


@dataclass
class ProducerData:
    group_name: str = ""

    @property
    def unique_id(self) -> str:
        return self.group_name

    def to_dict(self) -> dict[str, Any]:
        return {"groupName": self.group_name}


@dataclass
class ConsumerData:
    group_name: str = ""
    consume_type: str = ""
    message_model: str = ""
    where: str = ""
    subscription_datas: list[SubscriptionData] = field(default_factory=list)
    unit_mode: bool = False

    @property
    def unique_id(self) -> str:
        return self.group_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "groupName": self.group_name,
            "consumeType": self.consume_type,
            "messageModel": self.message_model,
            "consumeFromWhere": self.where,
            "subscriptionDataSet": [s.to_dict() for s in self.subscription_datas],
            "unitMode": self.unit_mode,
        }


@dataclass
class HeartbeatData:
    """Producers and consumers of one client, keyed by group name."""

    client_id: str = ""
    producer_datas: dict[str, ProducerData] = field(default_factory=dict)
    consumer_datas: dict[str, ConsumerData] = field(default_factory=dict)

    def add_producer(self, data: ProducerData) -> None:
        self.producer_datas[data.unique_id] = data

    def add_consumer(self, data: ConsumerData) -> None:
        self.consumer_datas[data.unique_id] = data

    def encode(self) -> bytes:
        doc = {
            "clientID": self.client_id,
            "producerDataSet": [p.to_dict() for p in self.producer_datas.values()],
            "consumerDataSet": [c.to_dict() for c in self.consumer_datas.values()],
        }
        return _go_json(doc).encode("utf-8")


PROP_NAME_SERVER_ADDR = "PROP_NAMESERVER_ADDR"
PROP_THREAD_POOL_CORE_SIZE = "PROP_THREADPOOL_CORE_SIZE"
PROP_CONSUME_ORDERLY = "PROP_CONSUMEORDERLY"
PROP_CONSUME_TYPE = "PROP_CONSUME_TYPE"
PROP_CLIENT_VERSION = "PROP_CLIENT_VERSION"
PROP_CONSUMER_START_TIMESTAMP = "PROP_CONSUMER_START_TIMESTAMP"


@dataclass
class ProcessQueueInfo:
    commit_offset: int = 0
    cached_msg_min_offset: int = 0
    cached_msg_max_offset: int = 0
    cached_msg_count: int = 0
    cached_msg_size_in_mib: int = 0
    transaction_msg_min_offset: int = 0
    transaction_msg_max_offset: int = 0
    transaction_msg_count: int = 0
    locked: bool = False
    try_unlock_times: int = 0
    last_lock_timestamp: int = 0
    dropped: bool = False
    last_pull_timestamp: int = 0
    last_consume_timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "commitOffset": self.commit_offset,
            "cachedMsgMinOffset": self.cached_msg_min_offset,
            "cachedMsgMaxOffset": self.cached_msg_max_offset,
            "cachedMsgCount": self.cached_msg_count,
            "cachedMsgSizeInMiB": self.cached_msg_size_in_mib,
            "transactionMsgMinOffset": self.transaction_msg_min_offset,
            "transactionMsgMaxOffset": self.transaction_msg_max_offset,
            "transactionMsgCount": self.transaction_msg_count,
            "locked": self.locked,
            "tryUnlockTimes": self.try_unlock_times,
            "lastLockTimestamp": self.last_lock_timestamp,
            "dropped": self.dropped,
            "lastPullTimestamp": self.last_pull_timestamp,
            "lastConsumeTimestamp": self.last_consume_timestamp,
        }


@dataclass
class ConsumeStatus:
    pull_rt: float = 0.0
    pull_tps: float = 0.0
    consume_rt: float = 0.0
    consume_ok_tps: float = 0.0
    consume_failed_tps: float = 0.0
    consume_failed_msgs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pullRT": _go_float(self.pull_rt),
            "pullTPS": _go_float(self.pull_tps),
            "consumeRT": _go_float(self.consume_rt),
            "consumeOKTPS": _go_float(self.consume_ok_tps),
            "consumeFailedTPS": _go_float(self.consume_failed_tps),
            "consumeFailedMsgs": self.consume_failed_msgs,
        }


def _compare_subscriptions(a: SubscriptionData, b: SubscriptionData) -> int:
    if a.class_filter_mode != b.class_filter_mode:
        return -1 if not a.class_filter_mode else 1
    if a.sub_version != b.sub_version:
        return -1 if a.sub_version > b.sub_version else 1
    for left, right in (
        (_go_json(sorted(a.tags)), _go_json(sorted(b.tags))),
        (_go_json(sorted(a.codes)), _go_json(sorted(b.codes))),
    ):
        if left != right:
            return -1 if left > right else 1
    return 0


def _encode_queue_table(table: dict[MessageQueue, Any], render) -> str:
    """Object whose keys are queue objects, in queue order."""
    entries = (f"{mq.to_json()}:{render(table[mq])}" for mq in _sort_queues(table))
    return "{" + ",".join(entries) + "}"


@dataclass
class ConsumerRunningInfo:
    """Runtime state of one consumer, reported to the server on request."""

    properties: dict[str, str] = field(default_factory=dict)
    subscription_data: list[SubscriptionData] = field(default_factory=list)
    mq_table: dict[MessageQueue, ProcessQueueInfo] = field(default_factory=dict)
    status_table: dict[str, ConsumeStatus] = field(default_factory=dict)
    jstack: str = ""

    def encode(self) -> bytes:
        """Server-compatible text; the queue table uses objects as keys."""
        properties = _go_json({k: self.properties[k] for k in sorted(self.properties)})
        status = _go_json({k: self.status_table[k].to_dict() for k in sorted(self.status_table)})
        subs = sorted(self.subscription_data, key=functools.cmp_to_key(_compare_subscriptions))
        subscriptions = _go_json([s.to_dict() for s in subs])
        mq_table = _encode_queue_table(self.mq_table, lambda info: _go_json(info.to_dict()))
        text = (
            f'{{"properties":{properties},"statusTable":{status},'
            f'"subscriptionSet":{subscriptions},"mqTable":{mq_table}, '
            f'"jstack":"{self.jstack}" }}'
        )
        return text.encode("utf-8")


@dataclass
class ConsumerStatus:
    mq_offset_map: dict[MessageQueue, int] = field(default_factory=dict)

    def encode(self) -> bytes:
        table = _encode_queue_table(self.mq_offset_map, _go_json)
        return f'{{"messageQueueTable":{table}}}'.encode("utf-8")


class ConsumeResult(enum.IntEnum):
    CONSUME_SUCCESS = 0
    CONSUME_RETRY_LATER = 1
    ROLLBACK = 2
    COMMIT = 3
    THROW_EXCEPTION = 4
    RETURN_NULL = 5


@dataclass
class ConsumeMessageDirectlyResult:
    order: bool = False
    auto_commit: bool = False
    consume_result: ConsumeResult = ConsumeResult.CONSUME_SUCCESS
    remark: str = ""
    spent_time_mills: int = 0

    def encode(self) -> bytes:
        doc = {
            "order": self.order,
            "autoCommit": self.auto_commit,
            "consumeResult": int(self.consume_result),
            "remark": self.remark,
            "spentTimeMills": self.spent_time_mills,
        }
        return _go_json(doc).encode("utf-8")


def _offset_value(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"invalid offset: {value!r}")
    return value


def parse_gson_format(body: Union[bytes, str]) -> dict[MessageQueue, int]:
    """Parse ``{"offsetTable": [[queue, offset], ...]}``."""
    doc = json.loads(_as_text(body))
    if not isinstance(doc, dict):
        raise ValueError("reset offset body is not an object")
    table = doc.get("offsetTable")
    if not table:
        return {}
    if not isinstance(table, list):
        raise ValueError("offsetTable is not a list of pairs")
    result: dict[MessageQueue, int] = {}
    for entry in table:
        if not isinstance(entry, list) or len(entry) != 2:
            raise ValueError(f"invalid offset table entry: {entry!r}")
        result[MessageQueue.from_dict(entry[0])] = _offset_value(entry[1])
    return result


def _skip_ws(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos


def _expect(text: str, pos: int, char: str) -> int:
    pos = _skip_ws(text, pos)
    if pos >= len(text) or text[pos] != char:
        raise ValueError(f"expected {char!r} at position {pos}")
    return pos + 1


def parse_fastjson_format(body: Union[bytes, str]) -> dict[MessageQueue, int]:
    """Parse ``{"offsetTable": {{queue}: offset, ...}}`` whose keys are objects."""
    text = _as_text(body)
    marker = text.find('"offsetTable"')
    if marker < 0:
        return {}
    pos = _expect(text, marker + len('"offsetTable"'), ":")
    pos = _expect(text, pos, "{")
    decoder = json.JSONDecoder()
    result: dict[MessageQueue, int] = {}
    pos = _skip_ws(text, pos)
    if pos < len(text) and text[pos] == "}":
        return result
    while True:
        key, pos = decoder.raw_decode(text, _skip_ws(text, pos))
        pos = _expect(text, pos, ":")
        value, pos = decoder.raw_decode(text, _skip_ws(text, pos))
        result[MessageQueue.from_dict(key)] = _offset_value(value)
        pos = _skip_ws(text, pos)
        if pos < len(text) and text[pos] == ",":
            pos += 1
            continue
        _expect(text, pos, "}")
        return result


def _is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


@dataclass
class ResetOffsetBody:
    offset_table: dict[MessageQueue, int] = field(default_factory=dict)

    @classmethod
    def decode(cls, body: Union[bytes, str]) -> "ResetOffsetBody":
        """Accept both the pair-list and the object-keyed offset table layouts."""
        text = _as_text(body)
        if _is_valid_json(text):
            return cls(parse_gson_format(text))
        return cls(parse_fastjson_format(text))


def new_consumer_running_info() -> ConsumerRunningInfo:
    return ConsumerRunningInfo()


def new_consumer_status(offsets: Optional[dict[MessageQueue, int]] = None) -> ConsumerStatus:
    return ConsumerStatus(dict(offsets or {}))