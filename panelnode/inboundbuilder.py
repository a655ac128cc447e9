"""Build the inbound handler configuration for a node."""

from __future__ import annotations

import abc
import ipaddress
import uuid
from typing import Any, Mapping, Sequence

from panelnode.config import CertConfig, Config, FallBackConfig
from panelnode.model import NodeInfo

OCSP_STAPLING = 3600

_NETWORKS = {
    "tcp": "tcp",
    "kcp": "mkcp",
    "mkcp": "mkcp",
    "ws": "websocket",
    "websocket": "websocket",
    "h2": "http",
    "http": "http",
    "ds": "domainsocket",
    "domainsocket": "domainsocket",
    "quic": "quic",
    "grpc": "grpc",
    "gun": "grpc",
}


class BuildError(ValueError):
    """A handler configuration could not be built."""


class CertIssuer(abc.ABC):
    """Obtains TLS certificates through the ACME protocol."""

    @abc.abstractmethod
    def dns_cert(
        self, domain: str, email: str, provider: str, env: Mapping[str, str]
    ) -> tuple[str, str]:
        """Obtain a certificate by DNS challenge; return (cert path, key path)."""

    @abc.abstractmethod
    def http_cert(self, domain: str, email: str) -> tuple[str, str]:
        """Obtain a certificate by HTTP challenge; return (cert path, key path)."""

    @abc.abstractmethod
    def renew_cert(
        self, domain: str, email: str, mode: str, provider: str, env: Mapping[str, str]
    ) -> tuple[str, str]:
        """Renew a certificate if it is due; return (cert path, key path)."""


def transport_network(name: str) -> str:
    """Return the network a transport protocol name stands for."""
    try:
        return _NETWORKS[name.lower()]
    except KeyError:
        raise BuildError(f"unknown transport protocol: {name}") from None


def get_cert_file(
    cert_config: CertConfig, cert_issuer: CertIssuer | None = None
) -> tuple[str, str]:
    """Return the certificate and key paths the configuration calls for."""
    mode = cert_config.cert_mode
    if mode == "file":
        if not cert_config.cert_file or not cert_config.key_file:
            raise BuildError("Cert file path or key file path not exist")
        return cert_config.cert_file, cert_config.key_file
    if mode in ("dns", "http"):
        if cert_issuer is None:
            raise BuildError(f"no certificate issuer for cert mode: {mode}")
        if mode == "dns":
            return cert_issuer.dns_cert(
                cert_config.cert_domain,
                cert_config.email,
                cert_config.provider,
                cert_config.dns_env,
            )
        return cert_issuer.http_cert(cert_config.cert_domain, cert_config.email)
    raise BuildError(f"Unsupported certmode: {mode}")


def _fallbacks(fallback_configs: Sequence[FallBackConfig] | None) -> list[dict[str, Any]]:
    if fallback_configs is None:
        raise BuildError("You must provide FallBackConfigs")
    result = []
    for fallback in fallback_configs:
        if not fallback.dest:
            raise BuildError("Dest is required for fallback")
        result.append(
            {
                "name": fallback.sni,
                "alpn": fallback.alpn,
                "path": fallback.path,
                "dest": fallback.dest,
                "xver": fallback.proxy_protocol_ver,
            }
        )
    return result


def build_vless_fallbacks(
    fallback_configs: Sequence[FallBackConfig] | None,
) -> list[dict[str, Any]]:
    """Build the fallback list of a VLESS inbound."""
    return _fallbacks(fallback_configs)


def build_trojan_fallbacks(
    fallback_configs: Sequence[FallBackConfig] | None,
) -> list[dict[str, Any]]:
    """Build the fallback list of a Trojan inbound."""
    return _fallbacks(fallback_configs)


def _listen_address(text: str) -> str:
    address = text
    if len(address) > 1 and address.startswith("[") and address.endswith("]"):
        address = address[1:-1]
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        pass
    if text.startswith(("/", "@")):
        return text
    raise BuildError(f"unable to listen on domain address: {text}")


def _proxy_settings(config: Config, node_info: NodeInfo) -> tuple[str, dict[str, Any]]:
    node_type = node_info.node_type
    if node_type == "V2ray":
        if node_info.enable_vless:
            settings: dict[str, Any] = {"decryption": "none"}
            if config.enable_fallback:
                settings["fallbacks"] = build_vless_fallbacks(config.fallback_configs)
            return "vless", settings
        return "vmess", {}
    if node_type == "Trojan":
        settings = {}
        if config.enable_fallback:
            settings["fallbacks"] = build_trojan_fallbacks(config.fallback_configs)
        return "trojan", settings
    if node_type in ("Shadowsocks", "Shadowsocks-Plugin"):
        return "shadowsocks", {
            "clients": [{"method": "aes-128-gcm", "password": str(uuid.uuid4())}],
            "network": ["tcp", "udp"],
            "ivCheck": not config.disable_iv_check,
        }
    if node_type == "dokodemo-door":
        return "dokodemo-door", {"address": "v1.mux.cool", "network": ["tcp", "udp"]}
    raise BuildError(
        f"Unsupported node type: {node_type}, Only support: V2ray, Trojan, "
        "Shadowsocks, and Shadowsocks-Plugin"
    )


def _stream_settings(
    config: Config, node_info: NodeInfo, cert_issuer: CertIssuer | None
) -> dict[str, Any]:
    try:
        network = transport_network(node_info.transport_protocol)
    except BuildError as err:
        raise BuildError(f"convert TransportProtocol failed: {err}") from err

    stream: dict[str, Any] = {}
    if network == "tcp":
        stream["tcpSettings"] = {
            "acceptProxyProtocol": config.enable_proxy_protocol,
            "header": node_info.header,
        }
    elif network == "websocket":
        stream["wsSettings"] = {
            "acceptProxyProtocol": config.enable_proxy_protocol,
            "path": node_info.path,
            "headers": {"Host": node_info.host},
        }
    elif network == "http":
        stream["httpSettings"] = {"host": [node_info.host], "path": node_info.path}
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": node_info.service_name}
    stream["network"] = node_info.transport_protocol

    if node_info.enable_tls:
        cert_config = config.cert_config
        if cert_config is None:
            raise BuildError("CertConfig is required when TLS is enabled")
        if cert_config.cert_mode != "none":
            stream["security"] = node_info.tls_type
            cert_file, key_file = get_cert_file(cert_config, cert_issuer)
            tls = {
                "rejectUnknownSni": cert_config.reject_unknown_sni,
                "certificates": [
                    {
                        "certificateFile": cert_file,
                        "keyFile": key_file,
                        "ocspStapling": OCSP_STAPLING,
                    }
                ],
            }
            if node_info.tls_type == "tls":
                stream["tlsSettings"] = tls
            elif node_info.tls_type == "xtls":
                stream["xtlsSettings"] = tls

    if network not in ("tcp", "ws") and config.enable_proxy_protocol:
        stream["sockopt"] = {"acceptProxyProtocol": True}
    return stream


def build_inbound(
    config: Config,
    node_info: NodeInfo,
    tag: str,
    cert_issuer: CertIssuer | None = None,
) -> dict[str, Any]:
    """Return the inbound handler configuration for a node."""
    inbound: dict[str, Any] = {"tag": tag, "port": node_info.port}
    if node_info.node_type == "Shadowsocks-Plugin":
        inbound["listen"] = "127.0.0.1"
    elif config.listen_ip:
        inbound["listen"] = _listen_address(config.listen_ip)
    inbound["sniffing"] = {
        "enabled": not config.disable_sniffing,
        "destOverride": ["http", "tls"],
    }
    protocol, settings = _proxy_settings(config, node_info)
    inbound["protocol"] = protocol
    inbound["settings"] = settings
    inbound["streamSettings"] = _stream_settings(config, node_info, cert_issuer)
    return inbound