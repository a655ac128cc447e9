"""Turn panel users into proxy users for each protocol."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from panelnode.model import UserInfo

FLOW = "xtls-rprx-direct"


class CipherType(enum.IntEnum):
    """Shadowsocks ciphers known to the proxy core."""

    UNKNOWN = 0
    AES_128_GCM = 5
    AES_256_GCM = 6
    CHACHA20_POLY1305 = 7
    XCHACHA20_POLY1305 = 8
    NONE = 9


AEAD_METHODS = (
    CipherType.AES_128_GCM,
    CipherType.AES_256_GCM,
    CipherType.CHACHA20_POLY1305,
    CipherType.XCHACHA20_POLY1305,
)

_CIPHER_NAMES = {
    "aes-128-gcm": CipherType.AES_128_GCM,
    "aead_aes_128_gcm": CipherType.AES_128_GCM,
    "aes-256-gcm": CipherType.AES_256_GCM,
    "aead_aes_256_gcm": CipherType.AES_256_GCM,
    "chacha20-poly1305": CipherType.CHACHA20_POLY1305,
    "aead_chacha20_poly1305": CipherType.CHACHA20_POLY1305,
    "chacha20-ietf-poly1305": CipherType.CHACHA20_POLY1305,
    "none": CipherType.NONE,
    "plain": CipherType.NONE,
}


@dataclass(frozen=True)
class User:
    """A proxy user: its tagged email, protocol and account settings."""

    email: str
    protocol: str
    account: Mapping[str, Any]
    level: int = 0


def cipher_from_string(name: str) -> CipherType:
    """Map a cipher name, in any case, to its cipher type."""
    return _CIPHER_NAMES.get(name.lower(), CipherType.UNKNOWN)


def build_user_tag(tag: str, user: UserInfo) -> str:
    """Return the email used for a user inside an inbound: tag|email|uid."""
    return f"{tag}|{user.email}|{user.uid}"


def build_vmess_users(tag: str, users: Iterable[UserInfo], alter_id: int) -> list[User]:
    """Build VMess users sharing the server's alter id."""
    return [
        User(
            email=build_user_tag(tag, user),
            protocol="vmess",
            account={"id": user.uuid, "alterId": alter_id, "security": "auto"},
        )
        for user in users
    ]


def build_vless_users(tag: str, users: Iterable[UserInfo]) -> list[User]:
    """Build VLESS users keyed by their UUID."""
    return [
        User(
            email=build_user_tag(tag, user),
            protocol="vless",
            account={"id": user.uuid, "flow": FLOW},
        )
        for user in users
    ]


def build_trojan_users(tag: str, users: Iterable[UserInfo]) -> list[User]:
    """Build Trojan users whose password is their UUID."""
    return [
        User(
            email=build_user_tag(tag, user),
            protocol="trojan",
            account={"password": user.uuid, "flow": FLOW},
        )
        for user in users
    ]


def _ss_user(tag: str, user: UserInfo, cipher: CipherType) -> User:
    return User(
        email=build_user_tag(tag, user),
        protocol="shadowsocks",
        account={"password": user.passwd, "cipherType": cipher},
    )


def build_ss_users(tag: str, users: Iterable[UserInfo], method: str) -> list[User]:
    """Build Shadowsocks users that all use the node's cipher."""
    cipher = cipher_from_string(method)
    return [_ss_user(tag, user, cipher) for user in users]


def build_ss_plugin_users(tag: str, users: Iterable[UserInfo]) -> list[User]:
    """Build Shadowsocks users from their own ciphers, keeping only AEAD ones."""
    result = []
    for user in users:
        cipher = cipher_from_string(user.method)
        if cipher in AEAD_METHODS:
            result.append(_ss_user(tag, user, cipher))
    return result