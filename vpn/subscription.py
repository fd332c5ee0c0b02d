"""
Subscription API для VPN клиентов.

FastAPI приложение, которое отдаёт параметры подключения по токену
подписки. Токен может принадлежать обычному ключу или динамическому
(тогда ключ выбирается балансировщиком или создаётся автоматически).
"""

import base64
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_session
from database.models import Server, utcnow
from services.errors import InternalError, SubscriptionError
from services.resolver_service import ResolvedSubscription, SubscriptionResolver

from .outline_client import OutlineClientFactory, create_outline_client

logger = logging.getLogger(__name__)

# FastAPI приложение для subscription
app = FastAPI(
    title="Outline Fleet Subscription",
    docs_url=None,      # Отключаем документацию
    redoc_url=None,
    openapi_url=None,
)

FORMATS = ("json", "plain", "base64")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
}

DEFAULT_CLIENT_IP = "127.0.0.1"


def get_client_factory() -> OutlineClientFactory:
    """Фабрика клиентов Outline (подменяется в тестах)"""
    return create_outline_client


def get_client_ip(request: Request) -> str:
    """
    IP клиента для IP_HASH.

    Порядок: x-forwarded-for (первый адрес), x-real-ip, x-client-ip.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for header in ("x-real-ip", "x-client-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()

    return DEFAULT_CLIENT_IP


def error_response(error: SubscriptionError) -> JSONResponse:
    return JSONResponse({"error": error.message}, status_code=error.status_code, headers=NO_CACHE_HEADERS)


def render_response(resolved: ResolvedSubscription, fmt: str):
    """Ответ в нужном формате; неразбираемый access URL всегда отдаётся текстом"""
    if not resolved.is_parsed:
        return PlainTextResponse(content=resolved.raw_url, media_type="text/plain", headers=NO_CACHE_HEADERS)

    if fmt == "plain":
        return PlainTextResponse(content=resolved.raw_url, media_type="text/plain", headers=NO_CACHE_HEADERS)

    if fmt == "base64":
        encoded = base64.b64encode(resolved.raw_url.encode()).decode()
        return PlainTextResponse(content=encoded, media_type="text/plain", headers=NO_CACHE_HEADERS)

    return JSONResponse(resolved.to_payload(), headers=NO_CACHE_HEADERS)


@app.get("/sub/{token}")
async def get_subscription(
    token: str,
    request: Request,
    format: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    client_factory: OutlineClientFactory = Depends(get_client_factory),
):
    """
    Получить параметры подключения по токену.

    Args:
        token: Токен подписки (ключа или динамического ключа)
        format: json (по умолчанию), plain или base64

    Returns:
        JSON {server, server_port, password, method[, prefix]}
        или ошибка {error} с кодом 404 / 410 / 503 / 500
    """
    fmt = (format or "json").lower()
    if fmt not in FORMATS:
        fmt = "json"

    client_ip = get_client_ip(request)

    try:
        resolver = SubscriptionResolver(session, client_factory)
        resolved = await resolver.resolve(token, client_ip)
    except SubscriptionError as e:
        if e.status_code >= 500:
            logger.warning(f"VPN sub: {e.status_code} {e.message} (ip {client_ip})")
        else:
            logger.info(f"VPN sub: {e.status_code} {e.message}")
        return error_response(e)
    except Exception:
        logger.exception("VPN sub: ошибка разрешения токена")
        return error_response(InternalError())

    logger.debug(f"VPN sub: выдан ключ id={resolved.key.id} (ip {client_ip})")
    return render_response(resolved, fmt)


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Health check endpoint"""
    result = await session.execute(
        select(Server.id, Server.is_active).order_by(Server.id)
    )
    servers_status = {
        row.id: "active" if row.is_active else "inactive"
        for row in result
    }
    return JSONResponse({
        "status": "ok",
        "servers": servers_status,
        "timestamp": utcnow().isoformat(),
    })


# === ИНТЕГРАЦИЯ ===

def get_subscription_app() -> FastAPI:
    """
    Получить FastAPI приложение для монтирования.

    Использование:
    ```python
    from vpn.subscription import get_subscription_app
    from fastapi import FastAPI

    main_app = FastAPI()
    main_app.mount("/vpn", get_subscription_app())
    ```
    """
    return app
