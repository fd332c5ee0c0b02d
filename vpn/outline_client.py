"""
Клиент для Outline Management API.

Один экземпляр на сервер (api_url + отпечаток сертификата).
Сервер использует самоподписанный сертификат, поэтому проверка SSL
отключена — сервер идентифицируется по api_url с секретным путём.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import aiohttp

from .config import VPNConfig, get_config

logger = logging.getLogger(__name__)


class OutlineApiError(Exception):
    """Ошибка Outline API (status=0 — сеть или таймаут)"""

    def __init__(self, message: str, status: int = 0, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class RemoteAccessKey:
    """Ключ, созданный на сервере Outline"""
    id: str
    access_url: str
    password: Optional[str] = None
    port: Optional[int] = None
    method: Optional[str] = None
    name: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "RemoteAccessKey":
        return cls(
            id=str(data["id"]),
            access_url=data.get("accessUrl", ""),
            password=data.get("password"),
            port=data.get("port"),
            method=data.get("method"),
            name=data.get("name") or "",
        )


class OutlineClient:
    """Клиент одного сервера Outline"""

    def __init__(self, api_url: str, cert_sha256: str, config: Optional[VPNConfig] = None):
        self.api_url = api_url.rstrip("/")
        self.cert_sha256 = cert_sha256
        self.config = config or get_config()

    def _get_session(self) -> aiohttp.ClientSession:
        """Создать HTTP сессию с отключенной проверкой SSL"""
        timeout = aiohttp.ClientTimeout(
            total=self.config.request_timeout,
            connect=self.config.connect_timeout,
        )
        connector = aiohttp.TCPConnector(ssl=False)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        url = f"{self.api_url}{path}"
        try:
            async with self._get_session() as session:
                async with session.request(method, url, json=payload) as response:
                    if response.status == 204:
                        return None

                    text = await response.text()
                    if response.status < 200 or response.status >= 300:
                        logger.error(f"Outline: {method} {path} -> {response.status}")
                        raise OutlineApiError(
                            f"Outline API error: HTTP {response.status}",
                            status=response.status,
                            body=text,
                        )

                    if not text:
                        return None
                    try:
                        return await response.json(content_type=None)
                    except ValueError:
                        raise OutlineApiError("Failed to parse response", status=0, body=text)

        except asyncio.TimeoutError:
            raise OutlineApiError("Connection timeout", status=0)
        except aiohttp.ClientError as e:
            raise OutlineApiError(f"Failed to connect to Outline server: {e}", status=0)

    # === СЕРВЕР ===

    async def get_server_info(self) -> dict:
        return await self._request("GET", "/server")

    async def get_transfer_metrics(self) -> dict[str, int]:
        """Трафик по ключам: {outline_key_id: bytes}"""
        data = await self._request("GET", "/metrics/transfer") or {}
        return {
            str(key_id): int(value)
            for key_id, value in (data.get("bytesTransferredByUserId") or {}).items()
        }

    # === КЛЮЧИ ===

    async def create_access_key(self, name: str, method: Optional[str] = None) -> RemoteAccessKey:
        """
        Создать ключ на сервере.

        Args:
            name: Имя ключа (видно в Outline Manager)
            method: Шифр (chacha20-ietf-poly1305, aes-*-gcm)

        Returns:
            RemoteAccessKey с параметрами подключения
        """
        payload = {"name": name, "method": method or self.config.default_method}
        data = await self._request("POST", "/access-keys", payload)
        if not data or "id" not in data:
            raise OutlineApiError("Empty create response", status=0)

        key = RemoteAccessKey.from_api(data)
        logger.info(f"Outline: создан ключ {key.id} ({name}) на {self.api_url}")
        return key

    async def delete_access_key(self, key_id: str) -> None:
        await self._request("DELETE", f"/access-keys/{key_id}")
        logger.info(f"Outline: удалён ключ {key_id} на {self.api_url}")

    async def set_access_key_data_limit(self, key_id: str, limit_bytes: int) -> None:
        await self._request(
            "PUT",
            f"/access-keys/{key_id}/data-limit",
            {"limit": {"bytes": int(limit_bytes)}},
        )

    async def remove_access_key_data_limit(self, key_id: str) -> None:
        await self._request("DELETE", f"/access-keys/{key_id}/data-limit")


# Фабрика клиентов по записи сервера (подменяется в тестах)
OutlineClientFactory = Callable[[Any], OutlineClient]


def create_outline_client(server) -> OutlineClient:
    """Клиент для записи Server"""
    return OutlineClient(server.api_url, server.api_cert_sha256)
