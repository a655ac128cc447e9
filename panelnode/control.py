"""Operations on the proxy core's inbounds, outbounds, users, counters and limiters."""

from __future__ import annotations

import abc
import threading
from typing import Any, Iterable, Mapping, Sequence

from panelnode.model import DetectResult, DetectRule, OnlineUser, UserInfo
from panelnode.userbuilder import User


class ControlError(Exception):
    """The proxy core refused an operation."""


class Counter:
    """A thread-safe traffic counter."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> int:
        """Set the counter and return its previous value."""
        with self._lock:
            previous, self._value = self._value, value
            return previous

    def add(self, delta: int) -> int:
        """Add to the counter and return its new value."""
        with self._lock:
            self._value += delta
            return self._value


class UserManager(abc.ABC):
    """An inbound whose users can be changed while it runs."""

    @abc.abstractmethod
    def add_user(self, user: User) -> None:
        """Admit a user."""

    @abc.abstractmethod
    def remove_user(self, email: str) -> None:
        """Remove the user with the given tagged email."""


class InboundManager(abc.ABC):
    """Holds the running inbound handlers."""

    @abc.abstractmethod
    def add_handler(self, config: Mapping[str, Any]) -> None:
        """Create and start an inbound handler from its configuration."""

    @abc.abstractmethod
    def remove_handler(self, tag: str) -> None:
        """Stop and remove the handler with the tag."""

    @abc.abstractmethod
    def get_handler(self, tag: str) -> Any:
        """Return the handler with the tag; raise LookupError if there is none."""


class OutboundManager(abc.ABC):
    """Holds the running outbound handlers."""

    @abc.abstractmethod
    def add_handler(self, config: Mapping[str, Any]) -> None:
        """Create and start an outbound handler from its configuration."""

    @abc.abstractmethod
    def remove_handler(self, tag: str) -> None:
        """Stop and remove the handler with the tag."""


class StatsManager:
    """A registry of named counters."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._lock = threading.Lock()

    def register_counter(self, name: str) -> Counter:
        """Create a counter under a new name."""
        with self._lock:
            if name in self._counters:
                raise ValueError(f"Counter {name} already registered")
            counter = self._counters[name] = Counter()
            return counter

    def unregister_counter(self, name: str) -> None:
        """Forget a counter, if there is one under the name."""
        with self._lock:
            self._counters.pop(name, None)

    def get_counter(self, name: str) -> Counter | None:
        """Return the counter under the name, or None."""
        with self._lock:
            return self._counters.get(name)


class Limiter(abc.ABC):
    """Enforces speed and device limits per inbound."""

    @abc.abstractmethod
    def add_inbound_limiter(
        self, tag: str, node_speed_limit: int, users: Sequence[UserInfo]
    ) -> None:
        """Start limiting an inbound's users."""

    @abc.abstractmethod
    def update_inbound_limiter(self, tag: str, users: Sequence[UserInfo]) -> None:
        """Change the limits of some users of an inbound."""

    @abc.abstractmethod
    def delete_inbound_limiter(self, tag: str) -> None:
        """Stop limiting an inbound."""

    @abc.abstractmethod
    def get_online_devices(self, tag: str) -> list[OnlineUser]:
        """Return the users seen online on an inbound since the last call."""


class RuleManager(abc.ABC):
    """Audits destinations against rules per inbound."""

    @abc.abstractmethod
    def update_rule(self, tag: str, rules: Sequence[DetectRule]) -> None:
        """Replace an inbound's rules."""

    @abc.abstractmethod
    def get_detect_result(self, tag: str) -> list[DetectResult]:
        """Return the rule hits on an inbound since the last call."""


def _traffic_names(email: str) -> tuple[str, str]:
    prefix = f"user>>>{email}>>>traffic>>>"
    return prefix + "uplink", prefix + "downlink"


class CoreControl:
    """Drives the proxy core on behalf of a node controller."""

    def __init__(
        self,
        inbound_manager: InboundManager,
        outbound_manager: OutboundManager,
        stats_manager: StatsManager,
        limiter: Limiter,
        rule_manager: RuleManager,
    ) -> None:
        self.inbound_manager = inbound_manager
        self.outbound_manager = outbound_manager
        self.stats_manager = stats_manager
        self.limiter = limiter
        self.rule_manager = rule_manager

    def remove_inbound(self, tag: str) -> None:
        self.inbound_manager.remove_handler(tag)

    def remove_outbound(self, tag: str) -> None:
        self.outbound_manager.remove_handler(tag)

    def add_inbound(self, config: Mapping[str, Any]) -> None:
        self.inbound_manager.add_handler(config)

    def add_outbound(self, config: Mapping[str, Any]) -> None:
        self.outbound_manager.add_handler(config)

    def _user_manager(self, tag: str) -> UserManager:
        try:
            handler = self.inbound_manager.get_handler(tag)
        except LookupError as err:
            raise ControlError(f"No such inbound tag: {err}") from err
        if not isinstance(handler, UserManager):
            raise ControlError(f"handler {tag} has not implemented UserManager")
        return handler

    def add_users(self, users: Iterable[User], tag: str) -> None:
        """Admit users to the inbound with the tag."""
        manager = self._user_manager(tag)
        for user in users:
            manager.add_user(user)

    def remove_users(self, emails: Iterable[str], tag: str) -> None:
        """Remove users, by tagged email, from the inbound with the tag."""
        manager = self._user_manager(tag)
        for email in emails:
            manager.remove_user(email)

    def get_traffic(
        self, email: str
    ) -> tuple[int, int, Counter | None, Counter | None]:
        """Return (up, down, up counter, down counter); a counter is None when empty."""
        up_name, down_name = _traffic_names(email)
        up_counter = self.stats_manager.get_counter(up_name)
        down_counter = self.stats_manager.get_counter(down_name)
        up = up_counter.value if up_counter is not None else 0
        down = down_counter.value if down_counter is not None else 0
        return (
            up,
            down,
            up_counter if up else None,
            down_counter if down else None,
        )

    def reset_traffic(
        self, up_counters: Iterable[Counter], down_counters: Iterable[Counter]
    ) -> None:
        """Zero the given counters."""
        for counter in up_counters:
            counter.set(0)
        for counter in down_counters:
            counter.set(0)

    def add_inbound_limiter(
        self, tag: str, node_speed_limit: int, users: Sequence[UserInfo]
    ) -> None:
        self.limiter.add_inbound_limiter(tag, node_speed_limit, users)

    def update_inbound_limiter(self, tag: str, users: Sequence[UserInfo]) -> None:
        self.limiter.update_inbound_limiter(tag, users)

    def delete_inbound_limiter(self, tag: str) -> None:
        self.limiter.delete_inbound_limiter(tag)

    def get_online_devices(self, tag: str) -> list[OnlineUser]:
        return self.limiter.get_online_devices(tag)

    def update_rule(self, tag: str, rules: Sequence[DetectRule]) -> None:
        self.rule_manager.update_rule(tag, rules)

    def get_detect_result(self, tag: str) -> list[DetectResult]:
        return self.rule_manager.get_detect_result(tag)