"""Records exchanged with the panel, and the interfaces services and panels implement."""

from __future__ import annotations

import abc
import dataclasses
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence


class Service(abc.ABC):
    """A long-running unit of work that can be started and closed."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start the service."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the service and release what it holds."""


@dataclass(frozen=True)
class NodeInfo:
    """Description of a node as reported by the panel."""

    node_type: str
    node_id: int
    port: int = 0
    speed_limit: int = 0
    alter_id: int = 0
    transport_protocol: str = "tcp"
    host: str = ""
    path: str = ""
    enable_tls: bool = False
    tls_type: str = "tls"
    enable_vless: bool = False
    cypher_method: str = ""
    service_name: str = ""
    header: Any = None

    def replace(self, **kwargs: Any) -> NodeInfo:
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **kwargs)


@dataclass(frozen=True)
class UserInfo:
    """A user of a node; hashable so it can key dictionaries and sets."""

    uid: int
    email: str = ""
    passwd: str = ""
    port: int = 0
    method: str = ""
    speed_limit: int = 0
    device_limit: int = 0
    uuid: str = ""
    alter_id: int = 0

    def replace(self, **kwargs: Any) -> UserInfo:
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **kwargs)


@dataclass(frozen=True)
class UserTraffic:
    """Traffic a user moved since the last report, in bytes."""

    uid: int
    email: str
    upload: int
    download: int


@dataclass(frozen=True)
class NodeStatus:
    """Load figures of the machine running the node."""

    cpu: float
    mem: float
    disk: float
    uptime: int


@dataclass(frozen=True)
class OnlineUser:
    """A user seen online from one address."""

    uid: int
    ip: str


@dataclass(frozen=True)
class DetectRule:
    """An audit rule: traffic whose destination matches the pattern is flagged."""

    id: int
    pattern: re.Pattern


@dataclass(frozen=True)
class DetectResult:
    """A user that triggered an audit rule."""

    uid: int
    rule_id: int


class PanelAPI(abc.ABC):
    """The operations a panel backend offers to a node."""

    @abc.abstractmethod
    def describe(self) -> Mapping[str, Any]:
        """Return a description of the client connection."""

    @abc.abstractmethod
    def get_node_info(self) -> NodeInfo:
        """Fetch the current node description."""

    @abc.abstractmethod
    def get_user_list(self) -> list[UserInfo]:
        """Fetch the users allowed on the node."""

    @abc.abstractmethod
    def report_node_status(self, status: NodeStatus) -> None:
        """Send the node's load figures."""

    @abc.abstractmethod
    def report_node_online_users(self, users: Sequence[OnlineUser]) -> None:
        """Send the users currently online."""

    @abc.abstractmethod
    def report_user_traffic(self, traffic: Sequence[UserTraffic]) -> None:
        """Send per-user traffic figures."""

    @abc.abstractmethod
    def get_node_rule(self) -> list[DetectRule]:
        """Fetch the audit rules for the node."""

    @abc.abstractmethod
    def report_illegal(self, results: Sequence[DetectResult]) -> None:
        """Send the users that triggered audit rules."""