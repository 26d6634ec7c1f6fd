# backend/src/leadboard/observability/middleware_correlation.py
from __future__ import annotations

import uuid

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .logging_context import correlation_id_var

HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware:
    """
    Middleware ASGI de correlation id.

    - Lee o genera un X-Correlation-Id por request
    - Lo fija en el ContextVar de logging mientras dura el request
    - Lo expone en ``scope["state"]["correlation_id"]``
    - Lo agrega a los headers de la respuesta
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        cid = None
        for name, value in scope.get("headers", []):
            if name.decode("latin-1").lower() == HEADER.lower():
                cid = value.decode("latin-1").strip()
                break
        cid = cid or str(uuid.uuid4())
        scope.setdefault("state", {})["correlation_id"] = cid

        async def send_with_cid(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[HEADER] = cid
            await send(message)

        token = correlation_id_var.set(cid)
        try:
            await self.app(scope, receive, send_with_cid)
        finally:
            correlation_id_var.reset(token)
