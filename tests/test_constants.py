import pytest

from rocketlink.constants import (
    PERM_INHERIT,
    PERM_PRIORITY,
    PERM_READ,
    PERM_WRITE,
    REPLY_TOPIC_POSTFIX,
    RETRY_GROUP_TOPIC_PREFIX,
    PullMessageResponse,
    ResponseCode,
    SendMessageResponse,
    get_reply_topic,
    get_retry_topic,
    perm_to_string,
    queue_is_inherited,
    queue_is_readable,
    queue_is_writeable,
)


def test_reply_topic_joins_cluster_and_postfix():
    assert get_reply_topic("DefaultCluster") == "DefaultCluster_" + REPLY_TOPIC_POSTFIX
    assert REPLY_TOPIC_POSTFIX == "REPLY_TOPIC"


def test_retry_topic_adds_prefix():
    topic = get_retry_topic("group")
    assert topic == RETRY_GROUP_TOPIC_PREFIX + "group"
    assert topic.startswith("%RETRY%")


def test_retry_topic_is_idempotent():
    topic = get_retry_topic("consumers")
    assert get_retry_topic(topic) == topic
    assert get_retry_topic("%RETRY%already") == "%RETRY%already"


@pytest.mark.parametrize("perm", range(16))
def test_perm_string_matches_flags(perm):
    text = perm_to_string(perm)
    assert len(text) == 3
    assert (text[0] == "R") == queue_is_readable(perm)
    assert (text[1] == "W") == queue_is_writeable(perm)
    assert (text[2] == "X") == queue_is_inherited(perm)


def test_perm_string_pinned_values():
    assert perm_to_string(PERM_READ | PERM_WRITE | PERM_INHERIT) == "RWX"
    assert perm_to_string(PERM_PRIORITY) == "---"


def test_priority_does_not_affect_read_write():
    perm = PERM_PRIORITY | PERM_WRITE
    assert queue_is_writeable(perm)
    assert not queue_is_readable(perm)
    assert not queue_is_inherited(perm)


def test_response_codes_from_wire_values():
    assert ResponseCode(17) is ResponseCode.TOPIC_NOT_EXIST
    assert ResponseCode(0) is ResponseCode.SUCCESS
    with pytest.raises(ValueError):
        ResponseCode(13)


def test_response_dataclasses_keep_fields():
    send = SendMessageResponse(msg_id="abc", queue_id=3)
    assert send.msg_id == "abc"
    assert send.queue_id == 3
    assert send == SendMessageResponse(msg_id="abc", queue_id=3)
    pull = PullMessageResponse(next_begin_offset=5, max_offset=9)
    assert pull.next_begin_offset == 5
    assert pull.min_offset == 0