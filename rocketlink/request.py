"""Request codes and the custom headers carried in request ext fields."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Mapping

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


class RequestCode(enum.IntEnum):
    """Codes identifying the kind of request sent to a server."""

    SEND_MESSAGE = 10
    PULL_MESSAGE = 11
    QUERY_MESSAGE = 12
    QUERY_CONSUMER_OFFSET = 14
    UPDATE_CONSUMER_OFFSET = 15
    CREATE_TOPIC = 17
    SEARCH_OFFSET_BY_TIMESTAMP = 29
    GET_MAX_OFFSET = 30
    GET_MIN_OFFSET = 31
    VIEW_MESSAGE_BY_ID = 33
    HEART_BEAT = 34
    CONSUMER_SEND_MSG_BACK = 36
    END_TRANSACTION = 37
    GET_CONSUMER_LIST_BY_GROUP = 38
    CHECK_TRANSACTION_STATE = 39
    NOTIFY_CONSUMER_IDS_CHANGED = 40
    LOCK_BATCH_MQ = 41
    UNLOCK_BATCH_MQ = 42
    GET_ROUTE_INFO_BY_TOPIC = 105
    GET_BROKER_CLUSTER_INFO = 106
    GET_ALL_SUBSCRIPTION_GROUP_CONFIG = 201
    GET_ALL_TOPIC_LIST_FROM_NAME_SERVER = 206
    DELETE_TOPIC_IN_BROKER = 215
    DELETE_TOPIC_IN_NAME_SRV = 216
    RESET_CONSUMER_OFFSET = 220
    GET_CONSUMER_STATS_FROM_CLIENT = 221
    GET_CONSUMER_RUNNING_INFO = 307
    CONSUME_MESSAGE_DIRECTLY = 309
    SEND_BATCH_MESSAGE = 320
    SEND_REPLY_MESSAGE = 324
    SEND_REPLY_MESSAGE_V2 = 325
    PUSH_REPLY_MESSAGE_TO_CLIENT = 326


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


def _parse_bool(value: str) -> bool:
    """Accept the usual spellings of true; anything else reads as false."""
    return value in _TRUE_WORDS


def _parse_int(value: str, bits: int = 64) -> int:
    """Parse a decimal integer; invalid text gives 0, overflow clamps to the range."""
    if not _INT_PATTERN.fullmatch(value):
        return 0
    number = int(value)
    upper = (1 << (bits - 1)) - 1
    lower = -(1 << (bits - 1))
    return max(lower, min(upper, number))


@dataclass
class SendMessageRequestHeader:
    producer_group: str = ""
    topic: str = ""
    queue_id: int = 0
    sys_flag: int = 0
    born_timestamp: int = 0
    flag: int = 0
    properties: str = ""
    reconsume_times: int = 0
    unit_mode: bool = False
    max_reconsume_times: int = 0
    batch: bool = False
    default_topic: str = ""
    default_topic_queue_nums: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "producerGroup": self.producer_group,
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "sysFlag": str(self.sys_flag),
            "bornTimestamp": str(self.born_timestamp),
            "flag": str(self.flag),
            "reconsumeTimes": str(self.reconsume_times),
            "unitMode": _format_bool(self.unit_mode),
            "maxReconsumeTimes": str(self.max_reconsume_times),
            "defaultTopic": "TBW102",
            "defaultTopicQueueNums": "4",
            "batch": _format_bool(self.batch),
            "properties": self.properties,
            "bname": self.broker_name,
        }


@dataclass
class SendMessageRequestV2Header(SendMessageRequestHeader):
    """The same send header with single-letter keys."""

    def encode(self) -> dict[str, str]:
        return {
            "a": self.producer_group,
            "b": self.topic,
            "c": self.default_topic,
            "d": str(self.default_topic_queue_nums),
            "e": str(self.queue_id),
            "f": str(self.sys_flag),
            "g": str(self.born_timestamp),
            "h": str(self.flag),
            "i": self.properties,
            "j": str(self.reconsume_times),
            "k": _format_bool(self.unit_mode),
            "l": str(self.max_reconsume_times),
            "m": _format_bool(self.batch),
            "n": self.broker_name,
        }


@dataclass
class EndTransactionRequestHeader:
    producer_group: str = ""
    tran_state_table_offset: int = 0
    commit_log_offset: int = 0
    commit_or_rollback: int = 0
    from_transaction_check: bool = False
    msg_id: str = ""
    transaction_id: str = ""
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "producerGroup": self.producer_group,
            "tranStateTableOffset": str(self.tran_state_table_offset),
            "commitLogOffset": str(self.commit_log_offset),
            "commitOrRollback": str(self.commit_or_rollback),
            "fromTransactionCheck": _format_bool(self.from_transaction_check),
            "msgId": self.msg_id,
            "transactionId": self.transaction_id,
            "bname": self.broker_name,
        }


@dataclass
class CheckTransactionStateRequestHeader:
    tran_state_table_offset: int = 0
    commit_log_offset: int = 0
    msg_id: str = ""
    transaction_id: str = ""
    offset_msg_id: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "tranStateTableOffset": str(self.tran_state_table_offset),
            "commitLogOffset": str(self.commit_log_offset),
            "msgId": self.msg_id,
            "transactionId": self.transaction_id,
            "offsetMsgId": self.offset_msg_id,
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "CheckTransactionStateRequestHeader":
        """Read the header; the id fields all land in ``msg_id``, the last present winning."""
        header = cls()
        if "tranStateTableOffset" in properties:
            header.tran_state_table_offset = _parse_int(properties["tranStateTableOffset"])
        if "commitLogOffset" in properties:
            header.commit_log_offset = _parse_int(properties["commitLogOffset"])
        for key in ("msgId", "transactionId", "offsetMsgId"):
            if key in properties:
                header.msg_id = properties[key]
        return header


@dataclass
class ConsumerSendMsgBackRequestHeader:
    group: str = ""
    offset: int = 0
    delay_level: int = 0
    origin_msg_id: str = ""
    origin_topic: str = ""
    unit_mode: bool = False
    max_reconsume_times: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "group": self.group,
            "offset": str(self.offset),
            "delayLevel": str(self.delay_level),
            "originMsgId": self.origin_msg_id,
            "originTopic": self.origin_topic,
            "unitMode": _format_bool(self.unit_mode),
            "maxReconsumeTimes": str(self.max_reconsume_times),
            "bname": self.broker_name,
        }


@dataclass
class PullMessageRequestHeader:
    consumer_group: str = ""
    topic: str = ""
    queue_id: int = 0
    queue_offset: int = 0
    max_msg_nums: int = 0
    sys_flag: int = 0
    commit_offset: int = 0
    suspend_timeout_millis: int = 0
    sub_expression: str = ""
    sub_version: int = 0
    expression_type: str = ""
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "consumerGroup": self.consumer_group,
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "queueOffset": str(self.queue_offset),
            "maxMsgNums": str(self.max_msg_nums),
            "sysFlag": str(self.sys_flag),
            "commitOffset": str(self.commit_offset),
            "suspendTimeoutMillis": str(self.suspend_timeout_millis),
            "subscription": self.sub_expression,
            "subVersion": str(self.sub_version),
            "expressionType": self.expression_type,
            "bname": self.broker_name,
        }


@dataclass
class GetConsumerListRequestHeader:
    consumer_group: str = ""

    def encode(self) -> dict[str, str]:
        return {"consumerGroup": self.consumer_group}


@dataclass
class GetMaxOffsetRequestHeader:
    topic: str = ""
    queue_id: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "bname": self.broker_name,
        }


@dataclass
class QueryConsumerOffsetRequestHeader:
    consumer_group: str = ""
    topic: str = ""
    queue_id: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "consumerGroup": self.consumer_group,
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "bname": self.broker_name,
        }


@dataclass
class SearchOffsetRequestHeader:
    topic: str = ""
    queue_id: int = 0
    timestamp: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "timestamp": str(self.timestamp),
            "bname": self.broker_name,
        }


@dataclass
class UpdateConsumerOffsetRequestHeader:
    consumer_group: str = ""
    topic: str = ""
    queue_id: int = 0
    commit_offset: int = 0
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "consumerGroup": self.consumer_group,
            "topic": self.topic,
            "queueId": str(self.queue_id),
            "commitOffset": str(self.commit_offset),
            "bname": self.broker_name,
        }


@dataclass
class GetRouteInfoRequestHeader:
    topic: str = ""

    def encode(self) -> dict[str, str]:
        return {"topic": self.topic}


@dataclass
class GetConsumerRunningInfoHeader:
    consumer_group: str = ""
    client_id: str = ""
    jstack_enable: bool = False

    def encode(self) -> dict[str, str]:
        return {
            "consumerGroup": self.consumer_group,
            "clientId": self.client_id,
            "jstackEnable": _format_bool(self.jstack_enable),
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "GetConsumerRunningInfoHeader":
        header = cls()
        if "consumerGroup" in properties:
            header.consumer_group = properties["consumerGroup"]
        if "clientId" in properties:
            header.client_id = properties["clientId"]
        if "jstackEnable" in properties:
            header.jstack_enable = _parse_bool(properties["jstackEnable"])
        return header


@dataclass
class QueryMessageRequestHeader:
    topic: str = ""
    key: str = ""
    max_num: int = 0
    begin_timestamp: int = 0
    end_timestamp: int = 0

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "key": self.key,
            "maxNum": str(self.max_num),
            "beginTimestamp": str(self.begin_timestamp),
            "endTimestamp": str(self.end_timestamp),
        }


@dataclass
class ViewMessageRequestHeader:
    offset: int = 0

    def encode(self) -> dict[str, str]:
        return {"offset": str(self.offset)}


@dataclass
class CreateTopicRequestHeader:
    topic: str = ""
    default_topic: str = ""
    read_queue_nums: int = 0
    write_queue_nums: int = 0
    perm: int = 0
    topic_filter_type: str = ""
    topic_sys_flag: int = 0
    order: bool = False

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "defaultTopic": self.default_topic,
            "readQueueNums": str(self.read_queue_nums),
            "writeQueueNums": str(self.write_queue_nums),
            "perm": str(self.perm),
            "topicFilterType": self.topic_filter_type,
            "topicSysFlag": str(self.topic_sys_flag),
            "order": _format_bool(self.order),
        }


@dataclass
class TopicListRequestHeader:
    topic: str = ""

    def encode(self) -> dict[str, str]:
        return {"topic": self.topic}


@dataclass
class DeleteTopicRequestHeader:
    topic: str = ""

    def encode(self) -> dict[str, str]:
        return {"topic": self.topic}


@dataclass
class ResetOffsetHeader:
    topic: str = ""
    group: str = ""
    timestamp: int = 0
    is_force: bool = False

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "group": self.group,
            "timestamp": str(self.timestamp),
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "ResetOffsetHeader":
        header = cls()
        if "topic" in properties:
            header.topic = properties["topic"]
        if "group" in properties:
            header.group = properties["group"]
        if "timestamp" in properties:
            header.timestamp = _parse_int(properties["timestamp"])
        return header


@dataclass
class ConsumeMessageDirectlyHeader:
    consumer_group: str = ""
    client_id: str = ""
    msg_id: str = ""
    broker_name: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "consumerGroup": self.consumer_group,
            "clientId": self.client_id,
            "msgId": self.msg_id,
            "brokerName": self.broker_name,
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "ConsumeMessageDirectlyHeader":
        return cls(
            consumer_group=properties.get("consumerGroup", ""),
            client_id=properties.get("clientId", ""),
            msg_id=properties.get("msgId", ""),
            broker_name=properties.get("brokerName", ""),
        )


@dataclass
class GetConsumerStatusRequestHeader:
    topic: str = ""
    group: str = ""
    client_addr: str = ""

    def encode(self) -> dict[str, str]:
        return {
            "topic": self.topic,
            "group": self.group,
            "clientAddr": self.client_addr,
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "GetConsumerStatusRequestHeader":
        return cls(
            topic=properties.get("topic", ""),
            group=properties.get("group", ""),
            client_addr=properties.get("clientAddr", ""),
        )


@dataclass
class ReplyMessageRequestHeader:
    producer_group: str = ""
    topic: str = ""
    default_topic: str = ""
    default_topic_queue_nums: int = 0
    queue_id: int = 0
    sys_flag: int = 0
    born_timestamp: int = 0
    flag: int = 0
    properties: str = ""
    reconsume_times: int = 0
    unit_mode: bool = False
    born_host: str = ""
    store_host: str = ""
    store_timestamp: int = 0

    def encode(self) -> dict[str, str]:
        return {
            "producerGroup": self.producer_group,
            "topic": self.topic,
            "defaultTopic": self.default_topic,
            "defaultTopicQueueNums": str(self.default_topic_queue_nums),
            "queueId": str(self.queue_id),
            "sysFlag": str(self.sys_flag),
            "bornTimestamp": str(self.born_timestamp),
            "flag": str(self.flag),
            "properties": self.properties,
            "reconsumeTimes": str(self.reconsume_times),
            "bornHost": self.born_host,
            "storeHost": self.store_host,
            "storeTimestamp": str(self.store_timestamp),
        }

    @classmethod
    def decode(cls, properties: Mapping[str, str]) -> "ReplyMessageRequestHeader":
        header = cls()
        for key, attr in (
            ("producerGroup", "producer_group"),
            ("topic", "topic"),
            ("defaultTopic", "default_topic"),
            ("properties", "properties"),
            ("bornHost", "born_host"),
            ("storeHost", "store_host"),
        ):
            if key in properties:
                setattr(header, attr, properties[key])
        for key, attr, bits in (
            ("defaultTopicQueueNums", "default_topic_queue_nums", 64),
            ("queueId", "queue_id", 64),
            ("sysFlag", "sys_flag", 64),
            ("bornTimestamp", "born_timestamp", 64),
            ("flag", "flag", 32),
            ("reconsumeTimes", "reconsume_times", 32),
            ("storeTimestamp", "store_timestamp", 64),
        ):
            if key in properties:
                setattr(header, attr, _parse_int(properties[key], bits))
        return header