"""
Работа с флотом Outline серверов.

Компоненты:
- OutlineClient: Management API сервера
- access_url: разбор и сборка ss:// строк подключения
- load_balancer: выбор ключа пула
- subscription: endpoint для клиентов (импортируется отдельно)
"""

from .config import VPNConfig, get_config, get_vpn_config
from .outline_client import OutlineApiError, OutlineClient, RemoteAccessKey, create_outline_client
from .access_url import OpaqueAccessUrl, ParsedAccessUrl, build_access_url, parse_access_url

__all__ = [
    "VPNConfig",
    "get_config",
    "get_vpn_config",
    "OutlineApiError",
    "OutlineClient",
    "RemoteAccessKey",
    "create_outline_client",
    "OpaqueAccessUrl",
    "ParsedAccessUrl",
    "build_access_url",
    "parse_access_url",
]
