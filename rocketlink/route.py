"""Topic route data from the name server and the queues derived from it."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from rocketlink.constants import queue_is_readable, queue_is_writeable
from rocketlink.model import MessageQueue

MASTER_ID = 0
DEFAULT_TOPIC = "TBW102"
DEFAULT_QUEUE_NUMS = 4

# Strings are matched so they pass through untouched; bare integer object keys
# (as some servers emit for broker ids) are quoted to make the text valid JSON.
_BARE_KEY = re.compile(r'"(?:\\.|[^"\\])*"|(?<=[{,])(\s*)(-?\d+)(\s*)(?=:)')


def _quote_bare_keys(text: str) -> str:
    def repl(match: re.Match) -> str:
        if match.group(2) is None:
            return match.group(0)
        return f'{match.group(1)}"{match.group(2)}"{match.group(3)}'

    return _BARE_KEY.sub(repl, text)


def _parse_broker_id(key: Any) -> int:
    try:
        return int(str(key).replace('"', ""))
    except ValueError:
        return 0


def _int_field(doc: dict, name: str) -> int:
    value = doc.get(name, 0)
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"invalid {name}: {value!r}")
    return value


@dataclass
class QueueData:
    """Queue counts and permissions of a topic on one broker."""

    broker_name: str = ""
    read_queue_nums: int = 0
    write_queue_nums: int = 0
    perm: int = 0
    topic_syn_flag: int = 0

    def equals(self, other: "QueueData") -> bool:
        return (
            self.broker_name == other.broker_name
            and self.read_queue_nums == other.read_queue_nums
            and self.write_queue_nums == other.write_queue_nums
            and self.perm == other.perm
            and self.topic_syn_flag == other.topic_syn_flag
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "brokerName": self.broker_name,
            "readQueueNums": self.read_queue_nums,
            "writeQueueNums": self.write_queue_nums,
            "perm": self.perm,
            "topicSynFlag": self.topic_syn_flag,
        }

    @classmethod
    def from_dict(cls, doc: Any) -> "QueueData":
        if not isinstance(doc, dict):
            raise ValueError(f"queue data is not an object: {doc!r}")
        return cls(
            broker_name=str(doc.get("brokerName") or ""),
            read_queue_nums=_int_field(doc, "readQueueNums"),
            write_queue_nums=_int_field(doc, "writeQueueNums"),
            perm=_int_field(doc, "perm"),
            topic_syn_flag=_int_field(doc, "topicSynFlag"),
        )


@dataclass
class BrokerData:
    """Addresses of the brokers sharing a name, keyed by broker id."""

    cluster: str = ""
    broker_name: str = ""
    broker_addresses: dict[int, str] = field(default_factory=dict)

    def equals(self, other: "BrokerData") -> bool:
        if self.cluster != other.cluster or self.broker_name != other.broker_name:
            return False
        if len(self.broker_addresses) != len(other.broker_addresses):
            return False
        return all(
            other.broker_addresses.get(key, "") == value
            for key, value in self.broker_addresses.items()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster,
            "brokerName": self.broker_name,
            "brokerAddrs": {str(k): self.broker_addresses[k] for k in sorted(self.broker_addresses)},
        }


@dataclass
class TopicRouteData:
    """Where a topic's queues live."""

    order_topic_conf: str = ""
    queue_data_list: list[QueueData] = field(default_factory=list)
    broker_data_list: list[BrokerData] = field(default_factory=list)

    @classmethod
    def decode(cls, data: Union[str, bytes]) -> "TopicRouteData":
        """Parse a route document; broker id keys may be bare integers."""
        text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        doc = json.loads(_quote_bare_keys(text))
        if not isinstance(doc, dict):
            raise ValueError("route data is not an object")
        queue_docs = doc.get("queueDatas")
        if not isinstance(queue_docs, list):
            raise ValueError("route data has no queueDatas list")
        queues = [QueueData.from_dict(q) for q in queue_docs]
        brokers = []
        for entry in doc.get("brokerDatas") or []:
            if not isinstance(entry, dict):
                raise ValueError(f"broker data is not an object: {entry!r}")
            addrs = entry.get("brokerAddrs") or {}
            if not isinstance(addrs, dict):
                raise ValueError(f"brokerAddrs is not an object: {addrs!r}")
            brokers.append(
                BrokerData(
                    cluster=str(entry.get("cluster") or ""),
                    broker_name=str(entry.get("brokerName") or ""),
                    broker_addresses={
                        _parse_broker_id(k): str(v).replace('"', "") for k, v in addrs.items()
                    },
                )
            )
        return cls(queue_data_list=queues, broker_data_list=brokers)

    def clone(self) -> "TopicRouteData":
        """A copy with new lists holding the same elements."""
        return TopicRouteData(
            order_topic_conf=self.order_topic_conf,
            queue_data_list=list(self.queue_data_list),
            broker_data_list=list(self.broker_data_list),
        )

    def equals(self, other: "TopicRouteData") -> bool:
        if len(self.broker_data_list) != len(other.broker_data_list):
            return False
        if len(self.queue_data_list) != len(other.queue_data_list):
            return False
        if not all(a.equals(b) for a, b in zip(self.broker_data_list, other.broker_data_list)):
            return False
        return all(a.equals(b) for a, b in zip(self.queue_data_list, other.queue_data_list))

    def to_json(self) -> str:
        doc = {
            "OrderTopicConf": self.order_topic_conf,
            "queueDatas": [q.to_dict() for q in self.queue_data_list],
            "brokerDatas": [b.to_dict() for b in self.broker_data_list],
        }
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False)

    def __str__(self) -> str:
        return self.to_json()


@dataclass
class TopicPublishInfo:
    """Writable queues of a topic, with a round-robin cursor."""

    order_topic: bool = False
    have_topic_router_info: bool = False
    mq_list: list[MessageQueue] = field(default_factory=list)
    route_data: Optional[TopicRouteData] = None
    topic_queue_index: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def is_ok(self) -> bool:
        return len(self.mq_list) > 0

    def fetch_queue_index(self) -> int:
        """Advance the cursor and return the next queue index, or -1 with no queues."""
        length = len(self.mq_list)
        if length <= 0:
            return -1
        with self._lock:
            self.topic_queue_index += 1
            index = self.topic_queue_index
        return index % length


def route_data_to_subscribe_info(topic: str, data: TopicRouteData) -> list[MessageQueue]:
    """All readable queues of a topic."""
    return [
        MessageQueue(topic=topic, broker_name=qd.broker_name, queue_id=i)
        for qd in data.queue_data_list
        if queue_is_readable(qd.perm)
        for i in range(qd.read_queue_nums)
    ]


def route_data_to_publish_info(topic: str, data: TopicRouteData) -> TopicPublishInfo:
    """Writable queues on brokers that have a master, or the ordered layout if configured."""
    info = TopicPublishInfo(route_data=data, order_topic=False)

    if data.order_topic_conf:
        for broker in data.order_topic_conf.split(";"):
            name, sep, count = broker.partition(":")
            if not sep:
                raise ValueError(f"invalid order topic entry: {broker!r}")
            try:
                nums = int(count)
            except ValueError:
                nums = 0
            info.mq_list.extend(
                MessageQueue(topic=topic, broker_name=name, queue_id=i) for i in range(nums)
            )
        info.order_topic = True
        return info

    data.queue_data_list.sort(key=lambda qd: qd.broker_name)
    for qd in data.queue_data_list:
        if not queue_is_writeable(qd.perm):
            continue
        broker = next(
            (bd for bd in data.broker_data_list if bd.broker_name == qd.broker_name), None
        )
        if broker is None or not broker.broker_addresses.get(MASTER_ID, ""):
            continue
        info.mq_list.extend(
            MessageQueue(topic=topic, broker_name=qd.broker_name, queue_id=i)
            for i in range(qd.write_queue_nums)
        )
    return info


def topic_route_data_is_changed(
    old_data: Optional[TopicRouteData], new_data: Optional[TopicRouteData]
) -> bool:
    """Compare two routes regardless of the order of their entries."""
    if old_data is None or new_data is None:
        return True
    old_sorted = old_data.clone()
    new_sorted = new_data.clone()
    for route in (old_sorted, new_sorted):
        route.queue_data_list.sort(key=lambda qd: qd.broker_name, reverse=True)
        route.broker_data_list.sort(key=lambda bd: bd.broker_name, reverse=True)
    return not old_sorted.equals(new_sorted)