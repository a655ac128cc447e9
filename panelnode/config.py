"""Controller configuration, decoded from loosely typed mappings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def _fields(data: Any) -> dict[str, Any]:
    """Return the mapping with keys folded to lower case for case-insensitive lookup."""
    if not isinstance(data, Mapping):
        raise TypeError(f"expected a map, got {type(data).__name__}")
    return {str(key).lower(): value for key, value in data.items()}


def _as_int(value: Any, name: str, *, unsigned: bool = False) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int):
        result = value
    elif isinstance(value, float):
        result = int(value)
    elif isinstance(value, str):
        if value == "":
            result = 0
        else:
            try:
                result = int(value, 0)
            except ValueError:
                raise ValueError(f"cannot parse '{name}' as int: {value!r}") from None
    else:
        raise ValueError(f"'{name}' expected an int, got {type(value).__name__}")
    if unsigned and result < 0:
        raise ValueError(f"cannot parse '{name}', {result} overflows uint")
    return result


def _as_bool(value: Any, name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "":
            return False
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
        raise ValueError(f"cannot parse '{name}' as bool: {value!r}")
    raise ValueError(f"'{name}' expected a bool, got {type(value).__name__}")


def _as_str(value: Any, name: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"'{name}' expected a string, got {type(value).__name__}")


def _as_str_map(value: Any, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{name}' expected a map, got {type(value).__name__}")
    return {str(key): _as_str(item, f"{name}[{key}]") for key, item in value.items()}


@dataclass
class AutoSpeedLimitConfig:
    """Automatic throttling of users that exceed a rate; speeds in Mbps, duration in minutes."""

    limit: int = 0
    warn_times: int = 0
    limit_speed: int = 0
    limit_duration: int = 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AutoSpeedLimitConfig:
        """Decode from a mapping with the configuration file's key names."""
        values = _fields(data)
        return cls(
            limit=_as_int(values.get("limit"), "Limit"),
            warn_times=_as_int(values.get("warntimes"), "WarnTimes"),
            limit_speed=_as_int(values.get("limitspeed"), "LimitSpeed"),
            limit_duration=_as_int(values.get("limitduration"), "LimitDuration"),
        )


@dataclass
class CertConfig:
    """Where TLS certificates come from: none, file, http or dns."""

    cert_mode: str = ""
    reject_unknown_sni: bool = False
    cert_domain: str = ""
    cert_file: str = ""
    key_file: str = ""
    provider: str = ""
    email: str = ""
    dns_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CertConfig:
        """Decode from a mapping with the configuration file's key names."""
        values = _fields(data)
        return cls(
            cert_mode=_as_str(values.get("certmode"), "CertMode"),
            reject_unknown_sni=_as_bool(values.get("rejectunknownsni"), "RejectUnknownSni"),
            cert_domain=_as_str(values.get("certdomain"), "CertDomain"),
            cert_file=_as_str(values.get("certfile"), "CertFile"),
            key_file=_as_str(values.get("keyfile"), "KeyFile"),
            provider=_as_str(values.get("provider"), "Provider"),
            email=_as_str(values.get("email"), "Email"),
            dns_env=_as_str_map(values.get("dnsenv"), "DNSEnv"),
        )


@dataclass
class FallBackConfig:
    """One fallback destination for VLESS or Trojan inbounds."""

    sni: str = ""
    alpn: str = ""
    path: str = ""
    dest: str = ""
    proxy_protocol_ver: int = 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FallBackConfig:
        """Decode from a mapping with the configuration file's key names."""
        values = _fields(data)
        return cls(
            sni=_as_str(values.get("sni"), "SNI"),
            alpn=_as_str(values.get("alpn"), "Alpn"),
            path=_as_str(values.get("path"), "Path"),
            dest=_as_str(values.get("dest"), "Dest"),
            proxy_protocol_ver=_as_int(
                values.get("proxyprotocolver"), "ProxyProtocolVer", unsigned=True
            ),
        )


def _fallbacks(value: Any) -> list[FallBackConfig] | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"'FallBackConfigs' expected a list, got {type(value).__name__}")
    return [FallBackConfig.from_mapping(item) for item in value]


@dataclass
class Config:
    """Settings of one node controller."""

    listen_ip: str = ""
    send_ip: str = ""
    update_periodic: int = 0
    cert_config: CertConfig | None = None
    enable_dns: bool = False
    dns_type: str = ""
    disable_upload_traffic: bool = False
    disable_get_rule: bool = False
    enable_proxy_protocol: bool = False
    enable_fallback: bool = False
    disable_iv_check: bool = False
    disable_sniffing: bool = False
    auto_speed_limit_config: AutoSpeedLimitConfig | None = None
    fallback_configs: list[FallBackConfig] | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Config:
        """Decode from a mapping with the configuration file's key names."""
        values = _fields(data)
        cert = values.get("certconfig")
        speed = values.get("autospeedlimitconfig")
        return cls(
            listen_ip=_as_str(values.get("listenip"), "ListenIP"),
            send_ip=_as_str(values.get("sendip"), "SendIP"),
            update_periodic=_as_int(values.get("updateperiodic"), "UpdatePeriodic"),
            cert_config=None if cert is None else CertConfig.from_mapping(cert),
            enable_dns=_as_bool(values.get("enabledns"), "EnableDNS"),
            dns_type=_as_str(values.get("dnstype"), "DNSType"),
            disable_upload_traffic=_as_bool(
                values.get("disableuploadtraffic"), "DisableUploadTraffic"
            ),
            disable_get_rule=_as_bool(values.get("disablegetrule"), "DisableGetRule"),
            enable_proxy_protocol=_as_bool(
                values.get("enableproxyprotocol"), "EnableProxyProtocol"
            ),
            enable_fallback=_as_bool(values.get("enablefallback"), "EnableFallback"),
            disable_iv_check=_as_bool(values.get("disableivcheck"), "DisableIVCheck"),
            disable_sniffing=_as_bool(values.get("disablesniffing"), "DisableSniffing"),
            auto_speed_limit_config=(
                None if speed is None else AutoSpeedLimitConfig.from_mapping(speed)
            ),
            fallback_configs=_fallbacks(values.get("fallbackconfigs")),
        )