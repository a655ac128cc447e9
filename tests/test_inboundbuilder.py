import pytest

from panelnode.config import CertConfig, Config, FallBackConfig
from panelnode.inboundbuilder import (
    BuildError,
    CertIssuer,
    build_inbound,
    build_trojan_fallbacks,
    build_vless_fallbacks,
    get_cert_file,
    transport_network,
)
from panelnode.model import NodeInfo


class FakeIssuer(CertIssuer):
    def __init__(self):
        self.calls = []

    def dns_cert(self, domain, email, provider, env):
        self.calls.append(("dns", domain, email, provider, dict(env)))
        return f"/certs/{domain}.crt", f"/certs/{domain}.key"

    def http_cert(self, domain, email):
        self.calls.append(("http", domain, email))
        return f"/certs/{domain}.crt", f"/certs/{domain}.key"

    def renew_cert(self, domain, email, mode, provider, env):
        self.calls.append(("renew", domain))
        return f"/certs/{domain}.crt", f"/certs/{domain}.key"


def _node(**kwargs):
    base = dict(
        node_type="V2ray",
        node_id=1,
        port=1145,
        speed_limit=0,
        alter_id=2,
        transport_protocol="tcp",
        host="test.test.tk",
        path="v2ray",
        enable_tls=False,
        tls_type="tls",
    )
    base.update(kwargs)
    return NodeInfo(**base)


def test_build_v2ray():
    node = _node(transport_protocol="ws")
    cert = CertConfig(
        cert_mode="http", cert_domain="test.test.tk", provider="alidns",
        email="admin@example.com",
    )
    inbound = build_inbound(Config(cert_config=cert), node, "test_tag")
    assert inbound["protocol"] == "vmess"
    assert inbound["tag"] == "test_tag"
    assert inbound["port"] == 1145
    stream = inbound["streamSettings"]
    assert stream["network"] == "ws"
    assert stream["wsSettings"]["headers"] == {"Host": "test.test.tk"}
    assert stream["wsSettings"]["path"] == "v2ray"
    assert "security" not in stream


def test_build_trojan():
    node = _node(node_type="Trojan", host="trojan.test.tk")
    cert = CertConfig(
        cert_mode="dns", cert_domain="trojan.test.tk", provider="alidns",
        email="admin@example.com",
        dns_env={"ALICLOUD_ACCESS_KEY": "placeholder", "ALICLOUD_SECRET_KEY": "secret"},
    )
    inbound = build_inbound(Config(cert_config=cert), node, "test_tag")
    assert inbound["protocol"] == "trojan"
    assert inbound["settings"] == {}
    assert inbound["streamSettings"]["tcpSettings"]["acceptProxyProtocol"] is False


def test_build_ss():
    node = _node(node_type="Shadowsocks")
    cert = CertConfig(
        cert_mode="dns", cert_domain="trojan.test.tk", provider="alidns",
        email="admin@example.com",
        dns_env={"ALICLOUD_ACCESS_KEY": "placeholder", "ALICLOUD_SECRET_KEY": "secret"},
    )
    inbound = build_inbound(Config(cert_config=cert), node, "test_tag")
    assert inbound["protocol"] == "shadowsocks"
    settings = inbound["settings"]
    assert settings["network"] == ["tcp", "udp"]
    assert settings["ivCheck"] is True
    assert settings["clients"][0]["method"] == "aes-128-gcm"
    assert len(settings["clients"][0]["password"]) == 36


def test_ss_plugin_listens_on_loopback():
    node = _node(node_type="Shadowsocks-Plugin")
    inbound = build_inbound(Config(listen_ip="0.0.0.0", disable_iv_check=True), node, "t")
    assert inbound["listen"] == "127.0.0.1"
    assert inbound["settings"]["ivCheck"] is False


def test_listen_ip_and_domain():
    inbound = build_inbound(Config(listen_ip="0.0.0.0"), _node(), "t")
    assert inbound["listen"] == "0.0.0.0"
    with pytest.raises(BuildError):
        build_inbound(Config(listen_ip="example.com"), _node(), "t")


def test_sniffing_flag():
    on = build_inbound(Config(), _node(), "t")
    off = build_inbound(Config(disable_sniffing=True), _node(), "t")
    assert on["sniffing"]["enabled"] is True
    assert off["sniffing"]["enabled"] is False
    assert on["sniffing"]["destOverride"] == ["http", "tls"]


def test_vless_with_fallbacks():
    config = Config(
        enable_fallback=True,
        fallback_configs=[FallBackConfig(sni="a", alpn="h2", path="/p", dest="80", proxy_protocol_ver=1)],
    )
    inbound = build_inbound(config, _node(enable_vless=True), "t")
    assert inbound["protocol"] == "vless"
    assert inbound["settings"]["decryption"] == "none"
    assert inbound["settings"]["fallbacks"] == [
        {"name": "a", "alpn": "h2", "path": "/p", "dest": "80", "xver": 1}
    ]


def test_fallbacks_required():
    with pytest.raises(BuildError, match="FallBackConfigs"):
        build_inbound(Config(enable_fallback=True), _node(node_type="Trojan"), "t")
    with pytest.raises(BuildError, match="Dest"):
        build_trojan_fallbacks([FallBackConfig(sni="x")])
    with pytest.raises(BuildError):
        build_vless_fallbacks(None)


def test_dokodemo_door():
    inbound = build_inbound(Config(), _node(node_type="dokodemo-door"), "d")
    assert inbound["protocol"] == "dokodemo-door"
    assert inbound["settings"] == {"address": "v1.mux.cool", "network": ["tcp", "udp"]}


def test_unsupported_node_type():
    with pytest.raises(BuildError, match="Unsupported node type: Foo"):
        build_inbound(Config(), _node(node_type="Foo"), "t")


def test_unknown_transport():
    with pytest.raises(BuildError, match="convert TransportProtocol failed"):
        build_inbound(Config(), _node(transport_protocol="carrier-pigeon"), "t")


@pytest.mark.parametrize(
    "name, network",
    [("tcp", "tcp"), ("WS", "websocket"), ("h2", "http"), ("gun", "grpc"), ("kcp", "mkcp")],
)
def test_transport_network(name, network):
    assert transport_network(name) == network


def test_tls_from_file():
    cert = CertConfig(cert_mode="file", cert_file="/a.crt", key_file="/a.key", reject_unknown_sni=True)
    inbound = build_inbound(Config(cert_config=cert), _node(enable_tls=True), "t")
    stream = inbound["streamSettings"]
    assert stream["security"] == "tls"
    assert stream["tlsSettings"]["rejectUnknownSni"] is True
    assert stream["tlsSettings"]["certificates"] == [
        {"certificateFile": "/a.crt", "keyFile": "/a.key", "ocspStapling": 3600}
    ]


def test_xtls_through_issuer():
    issuer = FakeIssuer()
    cert = CertConfig(cert_mode="dns", cert_domain="node.example.com", provider="alidns",
                      email="admin@example.com", dns_env={"K": "v"})
    inbound = build_inbound(Config(cert_config=cert), _node(enable_tls=True, tls_type="xtls"), "t", issuer)
    stream = inbound["streamSettings"]
    assert stream["security"] == "xtls"
    assert stream["xtlsSettings"]["certificates"][0]["certificateFile"] == "/certs/node.example.com.crt"
    assert issuer.calls == [("dns", "node.example.com", "admin@example.com", "alidns", {"K": "v"})]


def test_tls_with_cert_mode_none():
    cert = CertConfig(cert_mode="none")
    inbound = build_inbound(Config(cert_config=cert), _node(enable_tls=True), "t")
    assert "security" not in inbound["streamSettings"]


def test_get_cert_file_errors():
    with pytest.raises(BuildError, match="Cert file path"):
        get_cert_file(CertConfig(cert_mode="file", cert_file="/a.crt"))
    with pytest.raises(BuildError, match="Unsupported certmode: odd"):
        get_cert_file(CertConfig(cert_mode="odd"))
    with pytest.raises(BuildError):
        get_cert_file(CertConfig(cert_mode="http"))


def test_get_cert_file_http():
    issuer = FakeIssuer()
    paths = get_cert_file(CertConfig(cert_mode="http", cert_domain="h.example.com"), issuer)
    assert paths == ("/certs/h.example.com.crt", "/certs/h.example.com.key")
    assert issuer.calls[0][0] == "http"


def test_proxy_protocol_sockopt():
    ws = build_inbound(Config(enable_proxy_protocol=True), _node(transport_protocol="ws"), "t")
    tcp = build_inbound(Config(enable_proxy_protocol=True), _node(), "t")
    grpc = build_inbound(Config(), _node(transport_protocol="grpc", service_name="svc"), "t")
    assert ws["streamSettings"]["sockopt"] == {"acceptProxyProtocol": True}
    assert "sockopt" not in tcp["streamSettings"]
    assert tcp["streamSettings"]["tcpSettings"]["acceptProxyProtocol"] is True
    assert grpc["streamSettings"]["grpcSettings"] == {"serviceName": "svc"}
    assert "sockopt" not in grpc["streamSettings"]