import pytest

from panelnode.config import AutoSpeedLimitConfig, CertConfig, Config, FallBackConfig

SAMPLE = {
    "ListenIP": "0.0.0.0",
    "SendIP": "0.0.0.0",
    "UpdatePeriodic": 60,
    "EnableDNS": True,
    "DNSType": "UseIPv4",
    "DisableUploadTraffic": False,
    "DisableGetRule": True,
    "EnableProxyProtocol": False,
    "EnableFallback": True,
    "DisableIVCheck": True,
    "DisableSniffing": False,
    "CertConfig": {
        "CertMode": "dns",
        "RejectUnknownSni": True,
        "CertDomain": "node1.example.com",
        "Provider": "alidns",
        "Email": "test@example.com",
        "DNSEnv": {"ALICLOUD_ACCESS_KEY": "placeholder", "ALICLOUD_SECRET_KEY": "placeholder"},
    },
    "AutoSpeedLimitConfig": {
        "Limit": 100,
        "WarnTimes": 3,
        "LimitSpeed": 10,
        "LimitDuration": 60,
    },
    "FallBackConfigs": [
        {"SNI": "a.example.com", "Alpn": "h2", "Path": "/x", "Dest": "127.0.0.1:80", "ProxyProtocolVer": 1},
    ],
}


def test_full_mapping_is_decoded():
    config = Config.from_mapping(SAMPLE)
    assert config.listen_ip == SAMPLE["ListenIP"]
    assert config.send_ip == SAMPLE["SendIP"]
    assert config.update_periodic == SAMPLE["UpdatePeriodic"]
    assert config.enable_dns is True
    assert config.dns_type == SAMPLE["DNSType"]
    assert config.disable_get_rule is True
    assert config.enable_fallback is True
    assert config.disable_iv_check is True
    assert config.disable_upload_traffic is False


def test_nested_cert_config():
    cert = Config.from_mapping(SAMPLE).cert_config
    source = SAMPLE["CertConfig"]
    assert cert == CertConfig(
        cert_mode=source["CertMode"],
        reject_unknown_sni=True,
        cert_domain=source["CertDomain"],
        provider=source["Provider"],
        email=source["Email"],
        dns_env=source["DNSEnv"],
    )


def test_nested_speed_limit_and_fallbacks():
    config = Config.from_mapping(SAMPLE)
    assert config.auto_speed_limit_config == AutoSpeedLimitConfig(100, 3, 10, 60)
    fallback = SAMPLE["FallBackConfigs"][0]
    assert config.fallback_configs == [
        FallBackConfig(
            sni=fallback["SNI"],
            alpn=fallback["Alpn"],
            path=fallback["Path"],
            dest=fallback["Dest"],
            proxy_protocol_ver=1,
        )
    ]


def test_empty_mapping_gives_defaults():
    config = Config.from_mapping({})
    assert config == Config()
    assert config.cert_config is None
    assert config.auto_speed_limit_config is None
    assert config.fallback_configs is None
    assert config.update_periodic == 0


def test_empty_fallback_list_differs_from_missing():
    assert Config.from_mapping({"FallBackConfigs": []}).fallback_configs == []


def test_single_fallback_mapping_becomes_list():
    config = Config.from_mapping({"FallBackConfigs": {"Dest": 80}})
    assert config.fallback_configs == [FallBackConfig(dest="80")]


def test_keys_are_case_insensitive():
    config = Config.from_mapping({"listenip": "127.0.0.1", "UPDATEPERIODIC": 5})
    assert config.listen_ip == "127.0.0.1"
    assert config.update_periodic == 5


def test_weakly_typed_values_are_converted():
    config = Config.from_mapping({"UpdatePeriodic": "5", "EnableDNS": "true", "DisableSniffing": 1})
    assert config.update_periodic == 5
    assert config.enable_dns is True
    assert config.disable_sniffing is True


def test_invalid_bool_raises():
    with pytest.raises(ValueError):
        Config.from_mapping({"EnableDNS": "maybe"})


def test_invalid_int_raises():
    with pytest.raises(ValueError):
        Config.from_mapping({"UpdatePeriodic": "soon"})


def test_negative_proxy_protocol_version_raises():
    with pytest.raises(ValueError):
        FallBackConfig.from_mapping({"Dest": "80", "ProxyProtocolVer": -1})


def test_non_mapping_raises():
    with pytest.raises(TypeError):
        Config.from_mapping(["ListenIP"])