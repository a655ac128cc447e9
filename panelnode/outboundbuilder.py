"""Build the freedom outbound that carries a node's traffic out."""

from __future__ import annotations

import ipaddress
from typing import Any

from panelnode.config import Config
from panelnode.model import NodeInfo


def _ip_text(address: str) -> str | None:
    """Return the address as an IP literal, or None if it is a domain name."""
    if len(address) > 1 and address.startswith("[") and address.endswith("]"):
        address = address[1:-1]
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        return None


def build_outbound(config: Config, node_info: NodeInfo, tag: str) -> dict[str, Any]:
    """Return the outbound handler configuration for a node."""
    outbound: dict[str, Any] = {"protocol": "freedom", "tag": tag}

    if config.send_ip:
        address = _ip_text(config.send_ip)
        if address is None:
            raise ValueError(f"unable to send through: {config.send_ip}")
        outbound["sendThrough"] = address

    domain_strategy = "Asis"
    if config.enable_dns:
        domain_strategy = config.dns_type or "UseIP"

    settings: dict[str, Any] = {"domainStrategy": domain_strategy}
    if node_info.node_type == "dokodemo-door":
        settings["redirect"] = f"127.0.0.1:{node_info.port - 1}"
    outbound["settings"] = settings
    return outbound