"""
Настройки работы с VPN флотом.

Таймауты удалённых вызовов, шифр по умолчанию, параметры блокировки
массовых операций. Все значения берутся из переменных окружения.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


SUPPORTED_METHODS = (
    "chacha20-ietf-poly1305",
    "aes-128-gcm",
    "aes-192-gcm",
    "aes-256-gcm",
)


@dataclass
class VPNConfig:
    """Глобальная конфигурация VPN сервиса"""

    # Шифр для новых ключей, если не задан у ключа/пула
    default_method: str = "chacha20-ietf-poly1305"

    # Таймауты Outline API (в секундах)
    connect_timeout: float = 10.0
    request_timeout: float = 30.0

    # Блокировка массовых операций (синхронизация, миграция)
    lock_timeout: float = 5 * 60.0

    # Суффикс имени автоматически созданных ключей пула
    self_managed_suffix: str = "auto"

    # Длина токена подписки
    token_length: int = 32

    def __post_init__(self):
        """Валидация после создания"""
        if self.default_method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported method: {self.default_method}")
        if self.request_timeout <= 0 or self.connect_timeout <= 0:
            raise ValueError("Timeouts must be positive")


def get_vpn_config() -> VPNConfig:
    """
    Загрузить конфигурацию VPN из переменных окружения.

    Переменные:
    - VPN_DEFAULT_METHOD: шифр для новых ключей
    - VPN_CONNECT_TIMEOUT / VPN_REQUEST_TIMEOUT: таймауты Outline API
    - VPN_LOCK_TIMEOUT: через сколько секунд зависшая блокировка считается мёртвой
    """
    config = VPNConfig(
        default_method=os.getenv("VPN_DEFAULT_METHOD", "chacha20-ietf-poly1305"),
        connect_timeout=float(os.getenv("VPN_CONNECT_TIMEOUT", "10") or "10"),
        request_timeout=float(os.getenv("VPN_REQUEST_TIMEOUT", "30") or "30"),
        lock_timeout=float(os.getenv("VPN_LOCK_TIMEOUT", "300") or "300"),
        self_managed_suffix=os.getenv("VPN_SELF_MANAGED_SUFFIX", "auto"),
    )
    logger.debug(
        f"VPN: таймауты connect={config.connect_timeout}s request={config.request_timeout}s, "
        f"шифр по умолчанию {config.default_method}"
    )
    return config


# Глобальный экземпляр конфигурации (ленивая инициализация)
_config: Optional[VPNConfig] = None


def get_config() -> VPNConfig:
    """Получить глобальную конфигурацию (singleton)"""
    global _config
    if _config is None:
        _config = get_vpn_config()
    return _config
