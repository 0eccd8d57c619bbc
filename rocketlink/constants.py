"""Protocol constants, response codes and queue permission helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass

RETRY_GROUP_TOPIC_PREFIX = "%RETRY%"
DEFAULT_CONSUMER_GROUP = "DEFAULT_CONSUMER"
CLIENT_INNER_PRODUCER_GROUP = "CLIENT_INNER_PRODUCER"
SYSTEM_TOPIC_PREFIX = "rmq_sys_"
REPLY_MESSAGE_FLAG = "reply"
REPLY_TOPIC_POSTFIX = "REPLY_TOPIC"

V4_1_0 = 0

PERM_PRIORITY = 0x1 << 3
PERM_READ = 0x1 << 2
PERM_WRITE = 0x1 << 1
PERM_INHERIT = 0x1 << 0


class ResponseCode(enum.IntEnum):
    """Codes a server puts in a response command."""

    SUCCESS = 0
    ERROR = 1
    FLUSH_DISK_TIMEOUT = 10
    SLAVE_NOT_AVAILABLE = 11
    FLUSH_SLAVE_TIMEOUT = 12
    SERVICE_NOT_AVAILABLE = 14
    NO_PERMISSION = 16
    TOPIC_NOT_EXIST = 17
    PULL_NOT_FOUND = 19
    PULL_RETRY_IMMEDIATELY = 20
    PULL_OFFSET_MOVED = 21
    QUERY_NOT_FOUND = 22


@dataclass
class SendMessageResponse:
    """Fields returned by a server for a sent message."""

    msg_id: str = ""
    queue_id: int = 0
    queue_offset: int = 0
    transaction_id: str = ""
    msg_region: str = ""


@dataclass
class PullMessageResponse:
    """Offsets returned by a server for a pull request."""

    suggest_which_broker_id: int = 0
    next_begin_offset: int = 0
    min_offset: int = 0
    max_offset: int = 0


def get_reply_topic(cluster_name: str) -> str:
    """Name of the reply topic for a cluster."""
    return f"{cluster_name}_{REPLY_TOPIC_POSTFIX}"


def get_retry_topic(group: str) -> str:
    """Name of the retry topic for a consumer group; already-prefixed names pass through."""
    if group.startswith(RETRY_GROUP_TOPIC_PREFIX):
        return group
    return RETRY_GROUP_TOPIC_PREFIX + group


def queue_is_readable(perm: int) -> bool:
    return perm & PERM_READ == PERM_READ


def queue_is_writeable(perm: int) -> bool:
    return perm & PERM_WRITE == PERM_WRITE


def queue_is_inherited(perm: int) -> bool:
    return perm & PERM_INHERIT == PERM_INHERIT


def perm_to_string(perm: int) -> str:
    """Render permissions as three characters, e.g. ``RW-``."""
    return "".join(
        (
            "R" if queue_is_readable(perm) else "-",
            "W" if queue_is_writeable(perm) else "-",
            "X" if queue_is_inherited(perm) else "-",
        )
    )