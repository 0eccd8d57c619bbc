"""Name server access: address rotation, topic routes and broker lookup."""

from __future__ import annotations

import logging
import os
import random
import re
import threading
from typing import Any, Optional, Protocol, Sequence

from rocketlink.codec import new_remoting_command
from rocketlink.connection import RemotingClientConfig
from rocketlink.constants import ResponseCode, queue_is_readable
from rocketlink.model import FindBrokerResult, MessageQueue
from rocketlink.request import GetRouteInfoRequestHeader, RequestCode
from rocketlink.route import (
    MASTER_ID,
    TopicRouteData,
    route_data_to_publish_info,
    topic_route_data_is_changed,
)

logger = logging.getLogger(__name__)

ENV_NAME_SERVER_ADDR = "NAMESRV_ADDR"
REQUEST_TIMEOUT = 6.0

_IP_PATTERN = re.compile(
    r"^((25[0-5]|2[0-4]\d|((1\d{2})|([1-9]?\d)))\.){3}(25[0-5]|2[0-4]\d|((1\d{2})|([1-9]?\d)))"
)


class RemotingError(Exception):
    """A name server could not be reached or gave no usable answer."""


class MQClientError(Exception):
    """A server answered with an error code."""

    def __init__(self, code: int, remark: str = "") -> None:
        super().__init__(f"CODE: {code}  DESC: {remark}")
        self.code = code
        self.remark = remark


class TopicNotExistError(Exception):
    """The requested topic is unknown to the name server."""

    def __init__(self, message: str = "topic not exist") -> None:
        super().__init__(message)


class _Resolver(Protocol):
    def resolve(self) -> list[str]: ...

    def description(self) -> str: ...


class _NameServerClient(Protocol):
    def invoke_sync(self, addr: str, request: Any, timeout: float) -> Any: ...


class PassthroughResolver:
    """Returns a fixed list of addresses."""

    def __init__(self, addrs: Sequence[str]) -> None:
        self._addrs = list(addrs)

    def resolve(self) -> list[str]:
        return list(self._addrs)

    def description(self) -> str:
        return f"passthrough resolver of {self._addrs}"


class EnvResolver:
    """Reads ``;``-separated addresses from the NAMESRV_ADDR variable."""

    def __init__(self, variable: str = ENV_NAME_SERVER_ADDR) -> None:
        self.variable = variable

    def resolve(self) -> list[str]:
        value = os.environ.get(self.variable, "")
        return [item for item in value.split(";") if item]

    def description(self) -> str:
        return f"env resolver of {self.variable}"


def check_namesrv_addrs(addrs: Sequence[str]) -> None:
    """Raise ValueError unless every address is a URL or an IPv4 ``host:port``."""
    if not addrs:
        raise ValueError("nameServerAddrs can't be empty.")
    for addr in addrs:
        if addr.startswith(("http://", "https://")):
            continue
        if ";" in addr:
            raise ValueError("multiple IP addr does not support")
        host = addr.split(":")[0]
        if not _IP_PATTERN.match(host):
            raise ValueError("IP addr error")


class NameServers:
    """A set of name servers queried in round-robin order, with cached routes."""

    def __init__(
        self,
        resolver: _Resolver,
        config: Optional[RemotingClientConfig] = None,
        client: Optional[_NameServerClient] = None,
    ) -> None:
        addrs = resolver.resolve()
        if not addrs:
            raise ValueError("no name server addr found with resolver: " + resolver.description())
        check_namesrv_addrs(addrs)
        self.resolver = resolver
        self._config = config
        self._client = client
        self._srvs = list(addrs)
        self._index = 0
        self._srv_lock = threading.Lock()
        self._route_lock = threading.RLock()
        self._broker_lock = threading.Lock()
        self.broker_addresses: dict[str, Any] = {}
        self.route_data_map: dict[str, TopicRouteData] = {}
        self._broker_versions: dict[str, dict[str, int]] = {}

    @property
    def client(self) -> _NameServerClient:
        if self._client is None:
            from rocketlink.remoting import RemotingClient

            self._client = RemotingClient(self._config)
        return self._client

    @property
    def index(self) -> int:
        return self._index

    def __len__(self) -> int:
        return len(self._srvs)

    def __str__(self) -> str:
        return ";".join(self._srvs)

    def next_address(self) -> str:
        """Next server address in round-robin order, without URL scheme."""
        with self._srv_lock:
            if not self._srvs:
                raise RemotingError("namesrv list empty")
            addr = self._srvs[self._index % len(self._srvs)]
            self._index = abs(self._index + 1) % len(self._srvs)
        if addr.startswith("https"):
            return addr.removeprefix("https://")
        return addr.removeprefix("http://")

    def addr_list(self) -> list[str]:
        with self._srv_lock:
            return list(self._srvs)

    def update_name_server_address(self) -> None:
        """Re-resolve the addresses; keep the old list if nothing is found."""
        with self._srv_lock:
            srvs = self.resolver.resolve()
            if not srvs:
                return
            if sorted(srvs) == sorted(self._srvs):
                return
            self._srvs = list(srvs)

    def add_broker(self, route_data: TopicRouteData) -> None:
        with self._route_lock:
            for broker in route_data.broker_data_list:
                self.broker_addresses[broker.broker_name] = broker

    def clean_offline_broker(self) -> None:
        """Forget broker addresses no cached route mentions any more."""
        with self._route_lock:
            known = {
                addr
                for route in self.route_data_map.values()
                for broker in route.broker_data_list
                for addr in broker.broker_addresses.values()
            }
            for name, broker in list(self.broker_addresses.items()):
                for broker_id, addr in list(broker.broker_addresses.items()):
                    if addr not in known:
                        del broker.broker_addresses[broker_id]
                        logger.info(
                            "broker offline, removed: name=%s id=%s addr=%s", name, broker_id, addr
                        )
                if not broker.broker_addresses:
                    del self.broker_addresses[name]
                    logger.info("broker name offline, removed: %s", name)

    def update_topic_route_info(self, topic: str) -> tuple[Optional[TopicRouteData], bool]:
        return self.update_topic_route_info_with_default(topic, "", 0)

    def update_topic_route_info_with_default(
        self, topic: str, default_topic: str, default_queue_num: int
    ) -> tuple[Optional[TopicRouteData], bool]:
        """Fetch a route, cache it and report whether it changed."""
        with self._route_lock:
            try:
                route = self.query_topic_route_info_from_server(default_topic or topic)
            except Exception:
                logger.warning("query topic route from server error, topic=%s", topic)
                raise
            if default_topic:
                for qd in route.queue_data_list:
                    if qd.read_queue_nums > default_queue_num:
                        qd.read_queue_nums = default_queue_num
                        qd.write_queue_nums = default_queue_num
            old = self.route_data_map.get(topic)
            changed = True if old is None else topic_route_data_is_changed(old, route)
            if changed:
                self.route_data_map[topic] = route
                logger.info("the topic route info changed: %s -> %s", topic, route)
                for broker in route.broker_data_list:
                    self.broker_addresses[broker.broker_name] = broker
            return route.clone(), changed

    def check_topic_route_has_topic(self, topic: str) -> bool:
        try:
            self.query_topic_route_info_from_server(topic)
        except Exception:
            return False
        return True

    def find_broker_addr_by_topic(self, topic: str) -> str:
        """Address of a random broker serving the topic, master preferred."""
        route = self.route_data_map.get(topic)
        if route is None or not route.broker_data_list:
            return ""
        i = random.randrange(1 << 62)
        broker = route.broker_data_list[i % len(route.broker_data_list)]
        addr = broker.broker_addresses.get(MASTER_ID, "")
        if not addr and broker.broker_addresses:
            values = list(broker.broker_addresses.values())
            addr = values[i % len(values)]
        return addr

    def find_broker_addr_by_name(self, broker_name: str) -> str:
        broker = self.broker_addresses.get(broker_name)
        if broker is None:
            return ""
        return broker.broker_addresses.get(MASTER_ID, "")

    def find_broker_address_in_subscribe(
        self, broker_name: str, broker_id: int, only_this_broker: bool
    ) -> Optional[FindBrokerResult]:
        broker = self.broker_addresses.get(broker_name)
        if broker is None or not broker.broker_addresses:
            return None
        addresses = broker.broker_addresses
        addr = addresses.get(broker_id, "")
        slave = broker_id != MASTER_ID
        found = bool(addr)
        if not found and slave:
            addr = addresses.get(broker_id + 1, "")
            found = bool(addr)
        if not found and not only_this_broker:
            for key, value in addresses.items():
                if value:
                    addr, found, slave = value, True, key != MASTER_ID
                    break
        if not found:
            return None
        return FindBrokerResult(
            broker_addr=addr,
            slave=slave,
            broker_version=self.find_broker_version(broker_name, addr),
        )

    def fetch_subscribe_message_queues(self, topic: str) -> list[MessageQueue]:
        route = self.query_topic_route_info_from_server(topic)
        return [
            MessageQueue(topic=topic, broker_name=qd.broker_name, queue_id=i)
            for qd in route.queue_data_list
            if queue_is_readable(qd.perm)
            for i in range(qd.read_queue_nums)
        ]

    def fetch_publish_message_queues(self, topic: str) -> list[MessageQueue]:
        route = self.route_data_map.get(topic)
        if route is None:
            try:
                route = self.query_topic_route_info_from_server(topic)
            except Exception:
                logger.error("queryTopicRouteInfoFromServer failed, topic=%s", topic)
                raise
            with self._route_lock:
                self.route_data_map[topic] = route
            self.add_broker(route)
        return route_data_to_publish_info(topic, route).mq_list

    def add_broker_version(self, broker_name: str, broker_addr: str, version: int) -> None:
        with self._broker_lock:
            self._broker_versions.setdefault(broker_name, {})[broker_addr] = version

    def find_broker_version(self, broker_name: str, broker_addr: str) -> int:
        with self._broker_lock:
            return self._broker_versions.get(broker_name, {}).get(broker_addr, 0)

    def query_topic_route_info_from_server(self, topic: str) -> TopicRouteData:
        """Ask each name server in turn until one answers."""
        if len(self._srvs) == 0:
            logger.error("namesrv list empty; topic=%s", topic)
            raise RemotingError("namesrv list empty")
        header = GetRouteInfoRequestHeader(topic=topic)
        response = None
        error: Optional[Exception] = None
        for _ in range(len(self._srvs)):
            request = new_remoting_command(RequestCode.GET_ROUTE_INFO_BY_TOPIC, header, None)
            try:
                response = self.client.invoke_sync(self.next_address(), request, REQUEST_TIMEOUT)
            except Exception as exc:
                error = exc
                continue
            error = None
            break
        if error is not None or response is None:
            logger.error("connect to namesrv failed: %s, topic=%s", self, topic)
            raise RemotingError(str(error))

        if response.code == ResponseCode.SUCCESS:
            if not response.body:
                raise MQClientError(response.code, response.remark)
            try:
                return TopicRouteData.decode(response.body)
            except ValueError:
                logger.warning("decode TopicRouteData error, topic=%s", topic)
                raise
        if response.code == ResponseCode.TOPIC_NOT_EXIST:
            raise TopicNotExistError()
        raise MQClientError(response.code, response.remark)