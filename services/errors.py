"""
Типизированные ошибки выдачи подписки.

Каждая ошибка знает свой HTTP статус и короткое сообщение для клиента.
"""


class SubscriptionError(Exception):
    """Базовая ошибка разрешения токена подписки"""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class NotFound(SubscriptionError):
    """Токен неизвестен"""
    status_code = 404
    default_message = "Subscription not found"


class Gone(SubscriptionError):
    """Ключ известен, но отключён, истёк или исчерпал квоту"""
    status_code = 410
    default_message = "Subscription is no longer available"


class ServiceUnavailable(SubscriptionError):
    """Временная ошибка: нет подходящего ключа, сервер не ответил"""
    status_code = 503
    default_message = "No eligible credential"


class InternalError(SubscriptionError):
    """Непредвиденная ошибка хранилища или разбора"""
    status_code = 500
    default_message = "Internal error"
