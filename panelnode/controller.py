"""The node controller: keeps the proxy core in step with the panel."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from panelnode.config import AutoSpeedLimitConfig, Config
from panelnode.control import CoreControl, Counter
from panelnode.inboundbuilder import CertIssuer, build_inbound
from panelnode.model import NodeInfo, NodeStatus, PanelAPI, Service, UserInfo, UserTraffic
from panelnode.outboundbuilder import build_outbound
from panelnode.userbuilder import (
    build_ss_plugin_users,
    build_ss_users,
    build_trojan_users,
    build_user_tag,
    build_vless_users,
    build_vmess_users,
)

logger = logging.getLogger(__name__)

SS_PLUGIN = "Shadowsocks-Plugin"
_LIVE_ALTER_ID_PANELS = ("V2board", "V2RaySocks")

SystemInfo = Callable[[], "tuple[float, float, float, int]"]


@dataclass(frozen=True)
class LimitInfo:
    """When a throttled user is released, and the speed limit to give back."""

    end: int
    origin_speed_limit: int


def compare_user_list(
    old: Sequence[UserInfo], new: Sequence[UserInfo]
) -> tuple[list[UserInfo], list[UserInfo]]:
    """Return (deleted, added): users only in the old list and users only in the new one."""
    old_set = set(old)
    new_set = set(new)
    deleted = list(dict.fromkeys(user for user in old if user not in new_set))
    added = list(dict.fromkeys(user for user in new if user not in old_set))
    return deleted, added


def _format_time(timestamp: float) -> str:
    return time.strftime("%m-%d %H:%M:%S", time.localtime(timestamp))


class _Periodic:
    """Runs a task every interval seconds on a daemon thread, the first run one interval in."""

    def __init__(self, interval: float, execute: Callable[[], None], name: str) -> None:
        self.interval = interval
        self.execute = execute
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.execute()
            except Exception:
                logger.exception("periodic task %s failed", self._thread.name)

    def close(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)


class Controller(Service):
    """Fetches node and user data from the panel, applies it and reports back."""

    def __init__(
        self,
        control: CoreControl,
        api_client: PanelAPI,
        config: Config,
        panel_type: str,
        *,
        cert_issuer: CertIssuer | None = None,
        system_info: SystemInfo | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.control = control
        self.api_client = api_client
        self.config = config
        self.panel_type = panel_type
        self.cert_issuer = cert_issuer
        self.system_info = system_info
        self.clock = clock
        self.client_info = None
        self.node_info: NodeInfo | None = None
        self.tag = ""
        self.user_list: list[UserInfo] = []
        self.limited_users: dict[UserInfo, LimitInfo] = {}
        self.warned_users: dict[UserInfo, int] = {}
        self._node_info_periodic: _Periodic | None = None
        self._user_report_periodic: _Periodic | None = None

    # Service

    def start(self) -> None:
        """Apply the node and its users, then start the periodic monitors."""
        self.client_info = self.api_client.describe()
        node_info = self.api_client.get_node_info()
        self.node_info = node_info
        self.tag = self.build_node_tag()
        self._add_new_tag(node_info)

        users = list(self.api_client.get_user_list())
        self._add_new_users(users, node_info)
        self.user_list = users

        try:
            self.control.add_inbound_limiter(self.tag, node_info.speed_limit, users)
        except Exception as err:
            logger.error("%s", err)
        self._check_rules()

        if self.config.auto_speed_limit_config is None:
            self.config.auto_speed_limit_config = AutoSpeedLimitConfig()
        self.limited_users = {}
        self.warned_users = {}

        interval = self.config.update_periodic
        self._node_info_periodic = _Periodic(
            interval, self.node_info_monitor, f"node-info-{self.tag}"
        )
        self._user_report_periodic = _Periodic(
            interval, self.user_info_monitor, f"user-report-{self.tag}"
        )
        logger.info("[%s: %d] Start monitor node status", node_info.node_type, node_info.node_id)
        self._node_info_periodic.start()
        logger.info("[%s: %d] Start report node status", node_info.node_type, node_info.node_id)
        self._user_report_periodic.start()

    def close(self) -> None:
        """Stop the periodic monitors."""
        for periodic in (self._node_info_periodic, self._user_report_periodic):
            if periodic is not None:
                periodic.close()

    # Monitors

    def node_info_monitor(self) -> None:
        """Pull node, users, rules and certificates from the panel and apply changes."""
        try:
            new_node_info = self.api_client.get_node_info()
            new_users = list(self.api_client.get_user_list())
        except Exception as err:
            logger.error("%s", err)
            return

        node_info_changed = False
        if self.node_info != new_node_info:
            old_tag = self.tag
            try:
                self._remove_old_tag(old_tag)
                if self.node_info is not None and self.node_info.node_type == SS_PLUGIN:
                    self._remove_old_tag(f"dokodemo-door_{old_tag}+1")
            except Exception as err:
                logger.error("%s", err)
                return
            self.node_info = new_node_info
            self.tag = self.build_node_tag()
            try:
                self._add_new_tag(new_node_info)
            except Exception as err:
                logger.error("%s", err)
                return
            node_info_changed = True
            try:
                self.control.delete_inbound_limiter(old_tag)
            except Exception as err:
                logger.error("%s", err)
                return

        self._check_rules()
        self._check_cert()

        node_info = self.node_info
        if node_info_changed:
            try:
                self._add_new_users(new_users, new_node_info)
                self.control.add_inbound_limiter(
                    self.tag, new_node_info.speed_limit, new_users
                )
            except Exception as err:
                logger.error("%s", err)
                return
        else:
            deleted, added = compare_user_list(self.user_list, new_users)
            if deleted:
                emails = [build_user_tag(self.tag, user) for user in deleted]
                try:
                    self.control.remove_users(emails, self.tag)
                except Exception as err:
                    logger.error("%s", err)
            if added:
                try:
                    self._add_new_users(added, node_info)
                except Exception as err:
                    logger.error("%s", err)
                try:
                    self.control.update_inbound_limiter(self.tag, added)
                except Exception as err:
                    logger.error("%s", err)
            logger.info(
                "[%s: %d] %d user deleted, %d user added",
                node_info.node_type,
                node_info.node_id,
                len(deleted),
                len(added),
            )
        self.user_list = new_users

    def user_info_monitor(self) -> None:
        """Report load, traffic, online users and rule hits; throttle users over the limit."""
        self._report_status()
        speed_config = self.config.auto_speed_limit_config or AutoSpeedLimitConfig()
        self._release_limited_users(speed_config)

        auto_limit = speed_config.limit
        threshold = auto_limit * 1024 * 1024 * self.config.update_periodic // 8
        traffic: list[UserTraffic] = []
        up_counters: list[Counter] = []
        down_counters: list[Counter] = []
        newly_limited: list[UserInfo] = []

        for user in self.user_list:
            up, down, up_counter, down_counter = self.control.get_traffic(
                build_user_tag(self.tag, user)
            )
            if up <= 0 and down <= 0:
                self.warned_users.pop(user, None)
                continue
            if auto_limit > 0:
                if down > threshold:
                    if user not in self.limited_users:
                        if speed_config.warn_times == 0:
                            self._limit_user(user, speed_config, newly_limited)
                        else:
                            self.warned_users[user] = self.warned_users.get(user, 0) + 1
                            if self.warned_users[user] > speed_config.warn_times:
                                self._limit_user(user, speed_config, newly_limited)
                                del self.warned_users[user]
                else:
                    self.warned_users.pop(user, None)
            traffic.append(
                UserTraffic(uid=user.uid, email=user.email, upload=up, download=down)
            )
            if up_counter is not None:
                up_counters.append(up_counter)
            if down_counter is not None:
                down_counters.append(down_counter)

        if newly_limited:
            try:
                self.control.update_inbound_limiter(self.tag, newly_limited)
            except Exception as err:
                logger.error("%s", err)

        if traffic:
            try:
                if not self.config.disable_upload_traffic:
                    self.api_client.report_user_traffic(traffic)
            except Exception as err:
                # Keep the counters so the traffic is reported next time.
                logger.error("%s", err)
            else:
                self.control.reset_traffic(up_counters, down_counters)

        self._report_online_users()
        self._report_illegal()

    def build_node_tag(self) -> str:
        """Return the tag of the node's inbound and outbound."""
        node = self.node_info
        return f"{node.node_type}_{self.config.listen_ip}_{node.port}"

    # Helpers

    def _report_status(self) -> None:
        cpu = mem = disk = 0.0
        uptime = 0
        if self.system_info is not None:
            try:
                cpu, mem, disk, uptime = self.system_info()
            except Exception as err:
                logger.error("%s", err)
        try:
            self.api_client.report_node_status(
                NodeStatus(cpu=cpu, mem=mem, disk=disk, uptime=uptime)
            )
        except Exception as err:
            logger.error("%s", err)

    def _release_limited_users(self, speed_config: AutoSpeedLimitConfig) -> None:
        if speed_config.limit <= 0 or not self.limited_users:
            return
        logger.info("Limited users:")
        now = self.clock()
        released: list[UserInfo] = []
        for user, info in list(self.limited_users.items()):
            if now > info.end:
                restored = user.replace(speed_limit=info.origin_speed_limit)
                released.append(restored)
                logger.info(
                    "    User: %s Speed: %d End: nil (Unlimit)",
                    restored.email,
                    restored.speed_limit,
                )
                del self.limited_users[user]
            else:
                logger.info(
                    "    User: %s Speed: %d End: %s",
                    user.email,
                    user.speed_limit,
                    _format_time(info.end),
                )
        if released:
            try:
                self.control.update_inbound_limiter(self.tag, released)
            except Exception as err:
                logger.error("%s", err)

    def _limit_user(
        self,
        user: UserInfo,
        speed_config: AutoSpeedLimitConfig,
        limited: list[UserInfo],
    ) -> None:
        info = LimitInfo(
            end=int(self.clock()) + speed_config.limit_duration * 60,
            origin_speed_limit=user.speed_limit,
        )
        self.limited_users[user] = info
        logger.info(
            "    User: %s Speed: %d End: %s",
            user.email,
            user.speed_limit,
            _format_time(info.end),
        )
        limited.append(
            user.replace(speed_limit=speed_config.limit_speed * 1024 * 1024 // 8)
        )

    def _report_online_users(self) -> None:
        node = self.node_info
        try:
            online = self.control.get_online_devices(self.tag)
        except Exception as err:
            logger.error("%s", err)
            return
        if not online:
            return
        try:
            self.api_client.report_node_online_users(online)
        except Exception as err:
            logger.error("%s", err)
        else:
            logger.info(
                "[%s: %d] Report %d online users", node.node_type, node.node_id, len(online)
            )

    def _report_illegal(self) -> None:
        node = self.node_info
        try:
            results = self.control.get_detect_result(self.tag)
        except Exception as err:
            logger.error("%s", err)
            return
        if not results:
            return
        try:
            self.api_client.report_illegal(results)
        except Exception as err:
            logger.error("%s", err)
        else:
            logger.info(
                "[%s: %d] Report %d illegal behaviors",
                node.node_type,
                node.node_id,
                len(results),
            )

    def _check_rules(self) -> None:
        if self.config.disable_get_rule:
            return
        try:
            rules = self.api_client.get_node_rule()
        except Exception as err:
            logger.error("Get rule list filed: %s", err)
            return
        if rules:
            try:
                self.control.update_rule(self.tag, rules)
            except Exception as err:
                logger.error("%s", err)

    def _check_cert(self) -> None:
        cert = self.config.cert_config
        if not self.node_info.enable_tls or cert is None:
            return
        if cert.cert_mode not in ("dns", "http"):
            return
        if self.cert_issuer is None:
            logger.error("no certificate issuer for cert mode: %s", cert.cert_mode)
            return
        try:
            self.cert_issuer.renew_cert(
                cert.cert_domain, cert.email, cert.cert_mode, cert.provider, cert.dns_env
            )
        except Exception as err:
            logger.error("%s", err)

    def _remove_old_tag(self, tag: str) -> None:
        self.control.remove_inbound(tag)
        self.control.remove_outbound(tag)

    def _add_handlers(self, node_info: NodeInfo, tag: str) -> None:
        self.control.add_inbound(build_inbound(self.config, node_info, tag, self.cert_issuer))
        self.control.add_outbound(build_outbound(self.config, node_info, tag))

    def _add_new_tag(self, node_info: NodeInfo) -> None:
        if node_info.node_type != SS_PLUGIN:
            self._add_handlers(node_info, self.tag)
            return
        # The plugin needs a plain Shadowsocks inbound plus a forwarding one
        # for the upper transport such as ws or grpc.
        self._add_handlers(
            node_info.replace(transport_protocol="tcp", enable_tls=False), self.tag
        )
        self._add_handlers(
            node_info.replace(port=node_info.port + 1, node_type="dokodemo-door"),
            f"dokodemo-door_{self.tag}+1",
        )

    def _add_new_users(self, users: Iterable[UserInfo], node_info: NodeInfo) -> None:
        users = list(users)
        node_type = node_info.node_type
        if node_type == "V2ray":
            if node_info.enable_vless:
                built = build_vless_users(self.tag, users)
            else:
                if self.panel_type in _LIVE_ALTER_ID_PANELS and users:
                    alter_id = users[0].alter_id
                else:
                    alter_id = node_info.alter_id
                built = build_vmess_users(self.tag, users, alter_id)
        elif node_type == "Trojan":
            built = build_trojan_users(self.tag, users)
        elif node_type == "Shadowsocks":
            built = build_ss_users(self.tag, users, node_info.cypher_method)
        elif node_type == SS_PLUGIN:
            built = build_ss_plugin_users(self.tag, users)
        else:
            raise ValueError(f"unsupported node type: {node_type}")
        self.control.add_users(built, self.tag)
        logger.info(
            "[%s: %d] Added %d new users",
            self.node_info.node_type,
            self.node_info.node_id,
            len(users),
        )