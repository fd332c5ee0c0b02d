"""
Разбор Shadowsocks access URL.

Форматы:
- SIP002: ss://base64(method:password)@host:port#tag
- legacy: ss://base64(method:password@host:port)#tag

Если строку не удалось разобрать, она отдаётся клиенту как есть.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import unquote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedAccessUrl:
    """Разобранный ss:// URL"""
    method: str
    password: str
    host: str
    port: int
    tag: Optional[str] = None

    def to_payload(self, prefix: Optional[str] = None) -> dict:
        """JSON для клиента (совместим с SIP008 полями)"""
        payload = {
            "server": self.host,
            "server_port": self.port,
            "password": self.password,
            "method": self.method,
        }
        if prefix:
            payload["prefix"] = prefix
        return payload


@dataclass(frozen=True)
class OpaqueAccessUrl:
    """URL, который не удалось разобрать — отдаётся сырым текстом"""
    raw: str


AccessUrl = Union[ParsedAccessUrl, OpaqueAccessUrl]


def _b64decode(data: str) -> str:
    # Восстанавливаем padding, поддерживаем urlsafe алфавит
    data = data.strip()
    padding = -len(data) % 4
    data += "=" * padding
    standard = data.replace("-", "+").replace("_", "/")
    return base64.b64decode(standard, validate=True).decode("utf-8")


def _split_host_port(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ValueError(f"no port in {value!r}")
    host = host.strip("[]")  # IPv6
    return host, int(port.split("/")[0].split("?")[0])


def _split_credentials(value: str) -> tuple[str, str]:
    method, sep, password = value.partition(":")
    if not sep or not method:
        raise ValueError("no method:password pair")
    return method, password


def parse_access_url(raw: Optional[str]) -> AccessUrl:
    """
    Разобрать access URL.

    Returns:
        ParsedAccessUrl при успехе, OpaqueAccessUrl(raw) иначе
    """
    raw = raw or ""
    if not raw.startswith("ss://"):
        return OpaqueAccessUrl(raw)

    body = raw[len("ss://"):]
    body, _, tag = body.partition("#")
    tag = unquote(tag) if tag else None

    try:
        if "@" in body:
            credentials, _, server_part = body.rpartition("@")
            # Credentials бывают и в base64, и в открытом виде (percent-encoded)
            try:
                method, password = _split_credentials(_b64decode(credentials))
            except (ValueError, binascii.Error, UnicodeDecodeError):
                method, password = _split_credentials(unquote(credentials))
            host, port = _split_host_port(server_part)
        else:
            decoded = _b64decode(body)
            credentials, _, server_part = decoded.rpartition("@")
            method, password = _split_credentials(credentials)
            host, port = _split_host_port(server_part)
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        logger.warning(f"VPN: не удалось разобрать access URL: {e}")
        return OpaqueAccessUrl(raw)

    if not host or not (0 < port < 65536):
        return OpaqueAccessUrl(raw)

    return ParsedAccessUrl(method=method, password=password, host=host, port=port, tag=tag)


def build_access_url(method: str, password: str, host: str, port: int, tag: Optional[str] = None) -> str:
    """Собрать SIP002 URL из полей ключа"""
    credentials = base64.urlsafe_b64encode(f"{method}:{password}".encode()).decode().rstrip("=")
    url = f"ss://{credentials}@{host}:{port}/"
    if tag:
        url += f"#{tag}"
    return url
