import json
from dataclasses import dataclass
from typing import Optional

import pytest

from rocketlink.constants import ResponseCode
from rocketlink.model import MessageQueue
from rocketlink.namesrv import (
    EnvResolver,
    MQClientError,
    NameServers,
    PassthroughResolver,
    RemotingError,
    TopicNotExistError,
    check_namesrv_addrs,
)
from rocketlink.route import BrokerData, TopicRouteData


@dataclass
class _Response:
    code: int
    body: Optional[bytes] = None
    remark: str = ""


class _ScriptedClient:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.addrs = []

    def invoke_sync(self, addr, request, timeout):
        self.addrs.append(addr)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


ROUTE = {
    "queueDatas": [
        {"brokerName": "b1", "readQueueNums": 2, "writeQueueNums": 2, "perm": 6, "topicSynFlag": 0}
    ],
    "brokerDatas": [
        {"cluster": "c", "brokerName": "b1", "brokerAddrs": {"0": "10.0.0.1:10911"}}
    ],
}


def _route_body():
    return json.dumps(ROUTE).encode()


def _bare_namesrv(client=None):
    return NameServers(PassthroughResolver(["127.0.0.1:9876"]), client=client)


def test_selector_round_robin():
    srvs = ["127.0.0.1:9876", "127.0.0.1:9879", "12.24.123.243:10911", "12.24.123.243:10915"]
    ns = NameServers(PassthroughResolver(srvs))
    got = [ns.next_address() for _ in range(9)]
    assert got == srvs + srvs + [srvs[0]]


def test_index_advances_with_address():
    srvs = ["192.168.100.1:1", "192.168.100.2:1", "192.168.100.3:1"]
    ns = NameServers(PassthroughResolver(srvs))
    index1 = ns.index
    ip1 = ns.next_address()
    index2 = ns.index
    ip2 = ns.next_address()
    assert index1 + 1 == index2
    assert ip1 == srvs[index1]
    assert ip2 == srvs[index2]


def test_scheme_is_stripped():
    ns = NameServers(PassthroughResolver(["http://host.example.com:80", "https://other.example.com:443"]))
    assert ns.next_address() == "host.example.com:80"
    assert ns.next_address() == "other.example.com:443"


def test_update_name_server_address_from_env(monkeypatch):
    monkeypatch.setenv("NAMESRV_ADDR", "10.0.0.9:9876")
    ns = NameServers(EnvResolver())
    srvs = ["192.168.100.1", "192.168.100.2", "192.168.100.3", "192.168.100.4", "192.168.100.5"]
    monkeypatch.setenv("NAMESRV_ADDR", ";".join(srvs))
    ns.update_name_server_address()
    assert ns.addr_list() == srvs
    index1 = ns.index
    ip1 = ns.next_address()
    index2 = ns.index
    ip2 = ns.next_address()
    assert index1 + 1 == index2
    assert ip1 == srvs[index1]
    assert ip2 == srvs[index2]


def test_update_keeps_list_when_resolver_empty(monkeypatch):
    monkeypatch.setenv("NAMESRV_ADDR", "10.0.0.9:9876")
    ns = NameServers(EnvResolver())
    monkeypatch.setenv("NAMESRV_ADDR", "")
    ns.update_name_server_address()
    assert ns.addr_list() == ["10.0.0.9:9876"]


def test_empty_resolver_rejected():
    with pytest.raises(ValueError, match="no name server addr found"):
        NameServers(PassthroughResolver([]))


@pytest.mark.parametrize(
    "addrs, message",
    [([], "can't be empty"), (["999.1.1.1:80"], "IP addr error"), (["1.1.1.1:80;2.2.2.2:80"], "multiple")],
)
def test_check_namesrv_addrs_errors(addrs, message):
    with pytest.raises(ValueError, match=message):
        check_namesrv_addrs(addrs)


def test_query_topic_route_retries_then_topic_not_exist():
    client = _ScriptedClient(
        [ConnectionError("down"), ConnectionError("down"), _Response(ResponseCode.TOPIC_NOT_EXIST)]
    )
    ns = NameServers(
        PassthroughResolver(["1.1.1.1:8880", "1.1.1.2:8880", "1.1.1.3:8880"]), client=client
    )
    with pytest.raises(TopicNotExistError):
        ns.query_topic_route_info_from_server("notexisted")
    assert client.addrs == ["1.1.1.1:8880", "1.1.1.2:8880", "1.1.1.3:8880"]


def test_query_all_servers_fail():
    client = _ScriptedClient([ConnectionError("down")])
    ns = _bare_namesrv(client)
    with pytest.raises(RemotingError, match="down"):
        ns.query_topic_route_info_from_server("t")


def test_query_success_without_body():
    ns = _bare_namesrv(_ScriptedClient([_Response(ResponseCode.SUCCESS, None, "empty")]))
    with pytest.raises(MQClientError) as info:
        ns.query_topic_route_info_from_server("t")
    assert info.value.code == ResponseCode.SUCCESS


def test_query_other_error_code():
    ns = _bare_namesrv(_ScriptedClient([_Response(ResponseCode.NO_PERMISSION, None, "denied")]))
    with pytest.raises(MQClientError) as info:
        ns.query_topic_route_info_from_server("t")
    assert info.value.code == ResponseCode.NO_PERMISSION
    assert info.value.remark == "denied"


def test_update_topic_route_info_change_detection():
    client = _ScriptedClient(
        [_Response(ResponseCode.SUCCESS, _route_body()), _Response(ResponseCode.SUCCESS, _route_body())]
    )
    ns = _bare_namesrv(client)
    route, changed = ns.update_topic_route_info("t")
    assert changed is True
    assert route.queue_data_list[0].broker_name == "b1"
    assert ns.find_broker_addr_by_name("b1") == "10.0.0.1:10911"
    assert ns.find_broker_addr_by_topic("t") == "10.0.0.1:10911"
    _, changed_again = ns.update_topic_route_info("t")
    assert changed_again is False


def test_update_with_default_topic_caps_queues():
    client = _ScriptedClient([_Response(ResponseCode.SUCCESS, _route_body())])
    ns = _bare_namesrv(client)
    route, changed = ns.update_topic_route_info_with_default("t", "TBW102", 1)
    assert changed is True
    assert route.queue_data_list[0].read_queue_nums == 1
    assert route.queue_data_list[0].write_queue_nums == 1


def test_fetch_subscribe_message_queues():
    ns = _bare_namesrv(_ScriptedClient([_Response(ResponseCode.SUCCESS, _route_body())]))
    assert ns.fetch_subscribe_message_queues("t") == [
        MessageQueue("t", "b1", 0),
        MessageQueue("t", "b1", 1),
    ]


def test_fetch_publish_message_queues_caches_route():
    client = _ScriptedClient([_Response(ResponseCode.SUCCESS, _route_body())])
    ns = _bare_namesrv(client)
    first = ns.fetch_publish_message_queues("t")
    second = ns.fetch_publish_message_queues("t")
    assert first == [MessageQueue("t", "b1", 0), MessageQueue("t", "b1", 1)]
    assert second == first
    assert len(client.addrs) == 1


def test_check_topic_route_has_topic():
    ns = _bare_namesrv(_ScriptedClient([_Response(ResponseCode.TOPIC_NOT_EXIST)]))
    assert ns.check_topic_route_has_topic("t") is False


def test_add_broker_version():
    ns = _bare_namesrv()
    assert ns.find_broker_version("b1", "addr1") == 0
    ns.add_broker_version("b1", "addr1", 1)
    assert ns.find_broker_version("b1", "addr1") == 1
    assert ns.find_broker_version("b1", "addr2") == 0


@pytest.fixture
def subscribe_ns():
    ns = _bare_namesrv()
    ns.add_broker(
        TopicRouteData(
            broker_data_list=[
                BrokerData(
                    "cluster",
                    "raft01",
                    {0: "127.0.0.1:10911", 1: "127.0.0.1:10912", 2: "127.0.0.1:10913"},
                ),
                BrokerData(
                    "cluster",
                    "raft02",
                    {0: "127.0.0.1:10911", 2: "127.0.0.1:10912", 3: "127.0.0.1:10913"},
                ),
            ]
        )
    )
    return ns


def test_find_master_broker(subscribe_ns):
    result = subscribe_ns.find_broker_address_in_subscribe("raft01", 0, False)
    assert result.broker_addr == "127.0.0.1:10911"
    assert result.slave is False


def test_find_slave_broker(subscribe_ns):
    result = subscribe_ns.find_broker_address_in_subscribe("raft01", 1, False)
    assert result.broker_addr == "127.0.0.1:10912"
    assert result.slave is True


def test_find_slave_broker_next_id(subscribe_ns):
    result = subscribe_ns.find_broker_address_in_subscribe("raft02", 1, False)
    assert result.broker_addr == "127.0.0.1:10912"
    assert result.slave is True


def test_find_not_exist_broker_falls_back(subscribe_ns):
    result = subscribe_ns.find_broker_address_in_subscribe("raft01", 4, False)
    assert result is not None
    assert result.broker_addr == "127.0.0.1:10911"


def test_find_not_exist_only_this_broker(subscribe_ns):
    assert subscribe_ns.find_broker_address_in_subscribe("raft01", 4, True) is None
    assert subscribe_ns.find_broker_address_in_subscribe("missing", 0, False) is None


def test_clean_offline_broker():
    client = _ScriptedClient([_Response(ResponseCode.SUCCESS, _route_body())])
    ns = _bare_namesrv(client)
    ns.update_topic_route_info("t")
    ns.add_broker(TopicRouteData(broker_data_list=[BrokerData("c", "gone", {0: "10.9.9.9:1"})]))
    ns.clean_offline_broker()
    assert ns.find_broker_addr_by_name("gone") == ""
    assert ns.find_broker_addr_by_name("b1") == "10.0.0.1:10911"