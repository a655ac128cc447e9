# panelnode

`panelnode` keeps a proxy node in step with a management panel. It fetches
the node description and user list from the panel, builds inbound and
outbound handler configurations (as plain dictionaries) for the proxy core,
adds and removes users as the panel changes, throttles users that go over a
configured rate, and reports traffic, online devices, audit rule hits and
system status back to the panel at a fixed interval.

Supported node types are `V2ray` (VMess or VLESS), `Trojan`, `Shadowsocks`
and `Shadowsocks-Plugin`. The package has no runtime dependencies beyond the
standard library.

## Installation

```
pip install panelnode
```

## Modules

- `panelnode.model` – the records exchanged with the panel (`NodeInfo`,
  `UserInfo`, `UserTraffic`, `NodeStatus`, `OnlineUser`, `DetectRule`,
  `DetectResult`) and the abstract `Service` and `PanelAPI` interfaces.
- `panelnode.config` – `Config`, `CertConfig`, `AutoSpeedLimitConfig` and
  `FallBackConfig`, each with a `from_mapping` class method.
- `panelnode.userbuilder` – `CipherType`, `User`, `cipher_from_string`,
  `build_user_tag` and one builder per protocol.
- `panelnode.inboundbuilder` – `build_inbound`, `transport_network`,
  `get_cert_file`, `build_vless_fallbacks`, `build_trojan_fallbacks`, the
  abstract `CertIssuer` and `BuildError`.
- `panelnode.outboundbuilder` – `build_outbound`.
- `panelnode.control` – `CoreControl`, which drives the proxy core through
  the abstract `InboundManager`, `OutboundManager`, `UserManager`, `Limiter`
  and `RuleManager`, plus the concrete `Counter` and `StatsManager`, and
  `ControlError`.
- `panelnode.controller` – `Controller`, `LimitInfo` and
  `compare_user_list`.

## Configuration

Controller settings are read from a plain mapping, for example one loaded
from a YAML or JSON file. Keys are matched without regard to case, and
numbers and booleans given as strings are converted:

```python
from panelnode.config import Config

config = Config.from_mapping({
    "ListenIP": "0.0.0.0",
    "SendIP": "0.0.0.0",
    "UpdatePeriodic": 60,
    "EnableDNS": False,
    "CertConfig": {
        "CertMode": "file",
        "CertDomain": "node.example.com",
        "CertFile": "/etc/node/cert.pem",
        "KeyFile": "/etc/node/key.pem",
        "Email": "admin@example.com",
    },
    "AutoSpeedLimitConfig": {
        "Limit": 100,
        "WarnTimes": 3,
        "LimitSpeed": 10,
        "LimitDuration": 30,
    },
})
```

`AutoSpeedLimitConfig` speeds are in Mbps and the duration in minutes.
Values that cannot be converted raise `ValueError`.

## Building handler configurations

```python
from panelnode.model import NodeInfo
from panelnode.inboundbuilder import build_inbound
from panelnode.outboundbuilder import build_outbound

node = NodeInfo(node_type="Trojan", node_id=1, port=443, transport_protocol="tcp")
inbound = build_inbound(config, node, "Trojan_0.0.0.0_443", cert_issuer=None)
outbound = build_outbound(config, node, "Trojan_0.0.0.0_443")
```

Unsupported node types, unknown transport protocols, missing fallback
configurations or destinations and unusable certificate settings raise
`BuildError`. With TLS enabled, the `file` certificate mode reads the paths
from `CertConfig`; the `dns` and `http` modes call the `CertIssuer` passed
in, and fail without one.

## Users

`panelnode.userbuilder` turns panel users into core users whose e-mail
field is `<tag>|<email>|<uid>`:

```python
from panelnode.model import UserInfo
from panelnode.userbuilder import build_trojan_users, cipher_from_string

users = [UserInfo(uid=1, email="alice@example.com", uuid="placeholder")]
core_users = build_trojan_users("Trojan_0.0.0.0_443", users)
cipher_from_string("aes-128-gcm")  # CipherType.AES_128_GCM
```

`build_ss_plugin_users` keeps only users whose own cipher is an AEAD one.

## Running a node

`Controller` ties everything together. It is given a `CoreControl`, a panel
client implementing `PanelAPI`, the `Config` and the panel type, and
optionally a `cert_issuer`, a `system_info` callable returning
`(cpu, mem, disk, uptime)`, and a `clock`. `start()` adds the node's
handlers, its users and its limiter, loads audit rules, and starts two
background threads that run `node_info_monitor()` and `user_info_monitor()`
every `update_periodic` seconds, the first run one interval after start.
`close()` stops them. Both monitors can also be called by hand.

`compare_user_list(old, new)` returns `(deleted, added)`: the users only in
the old list and those only in the new one.

## What this package does not do

`panelnode` contains no panel client, no proxy core and no certificate
issuer: `PanelAPI`, `InboundManager`, `OutboundManager`, `UserManager`,
`Limiter`, `RuleManager` and `CertIssuer` are interfaces the caller must
implement. It does not read system load by itself (pass `system_info`),
and it has no command-line program.