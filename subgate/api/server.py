"""
HTTP collaborator

Thin JSON layer over the core: status, pairing challenge, the e-commerce
webhook and token-protected subscriber administration. No business logic
here; core errors are mapped to status codes by their ``status_code``.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..entitlements.models import SubscriptionStatus, utcnow
from ..entitlements.store import call_with_retry
from ..errors import ForbiddenError, NotFoundError, SubgateError, ValidationError
from ..service import SubgateService
from ..templates import OrderContext, OrderItem

logger = logging.getLogger("subgate.api")


# ============================================================================
# PAYLOADS
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OrderItemPayload(_CamelModel):
    name: str = ""
    qty: float = 1
    price: float = 0


class EasyOrderPayload(_CamelModel):
    user_phone: str = Field(alias="userPhone")
    customer_phone: Optional[str] = Field(default=None, alias="customerPhone")
    order_id: Optional[str] = Field(default=None, alias="orderId")
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    items: list[OrderItemPayload] = Field(default_factory=list)
    total: Optional[float] = None

    def to_order(self) -> OrderContext:
        return OrderContext(
            order_id=self.order_id,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone or None,
            items=[OrderItem(name=i.name, qty=i.qty, price=i.price) for i in self.items],
            total=self.total,
        )


class UserPayload(_CamelModel):
    phone: str
    name: Optional[str] = None
    status: Optional[str] = None
    end_date: Optional[str] = Field(default=None, alias="endDate")
    duration_days: Optional[int] = Field(default=None, alias="durationDays", ge=1)
    message_template: Optional[str] = Field(default=None, alias="messageTemplate")
    api_key: Optional[str] = Field(default=None, alias="apiKey")

    def to_fields(self) -> dict[str, Any]:
        """Only the fields the caller actually sent (merge semantics)."""
        fields: dict[str, Any] = {}
        if self.name is not None:
            fields["display_name"] = self.name
        if self.message_template is not None:
            fields["message_template"] = self.message_template
        if self.api_key is not None:
            fields["api_key"] = self.api_key or None

        if self.duration_days is not None:
            fields["ends_at"] = utcnow() + timedelta(days=self.duration_days)
        elif self.end_date is not None:
            fields["ends_at"] = self.end_date

        if self.status is not None:
            fields["status"] = self.status
        elif "ends_at" in fields:
            # Granting a period without an explicit status activates it
            fields["status"] = SubscriptionStatus.ACTIVE
        return fields


class TemplatePayload(_CamelModel):
    phone: str
    template: str


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> SubgateService:
    return request.app.state.service


def require_admin(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Bearer token check for admin endpoints."""
    expected = request.app.state.service.settings.admin_token
    if not expected:
        raise ForbiddenError("Admin API disabled (no admin token configured)")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise ForbiddenError("Missing bearer token")
    if not secrets.compare_digest(expected.encode("utf-8"), token.strip().encode("utf-8")):
        raise ForbiddenError("Invalid admin token")


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(service: SubgateService) -> FastAPI:
    app = FastAPI(title="subgate", version=__version__)
    app.state.service = service

    @app.exception_handler(SubgateError)
    async def _subgate_error(request: Request, exc: SubgateError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} → {exc.status_code}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'invalid request')}" if where else "Invalid request"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "error": message})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "Internal server error"},
        )

    # ── Public ────────────────────────────────────────────────

    @app.get("/api/status")
    async def api_status(svc: SubgateService = Depends(get_service)) -> dict[str, Any]:
        snap = svc.session.get_snapshot()
        subscribers = None
        if svc.store is not None:
            try:
                subscribers = await svc.store.count()
            except SubgateError as e:
                logger.warning(f"Subscriber count unavailable: {e}")
        return {
            "connected": snap.connected,
            "connectivity": snap.connectivity.value,
            "qrAvailable": snap.pairing_challenge is not None,
            "uptimeSeconds": snap.uptime_seconds,
            "globalMessagesSent": snap.messages_sent,
            "subscribers": subscribers,
        }

    @app.get("/api/qr")
    async def api_qr(svc: SubgateService = Depends(get_service)):
        challenge = svc.session.get_snapshot().pairing_challenge
        if not challenge:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return {"qr": challenge}

    @app.post("/api/webhook/easyorder")
    async def webhook_easyorder(
        payload: EasyOrderPayload,
        x_api_key: Optional[str] = Header(default=None),
        api_key: Optional[str] = Query(default=None, alias="apiKey"),
        svc: SubgateService = Depends(get_service),
    ) -> dict[str, Any]:
        result = await svc.notifier.notify(
            payload.user_phone, payload.to_order(), auth_token=x_api_key or api_key,
        )
        return {"ok": True, "correlationId": result.correlation_id, "text": result.rendered_text}

    # ── Admin ─────────────────────────────────────────────────

    @app.get("/api/users", dependencies=[Depends(require_admin)])
    async def list_users(
        limit: int = Query(default=100, ge=0, le=1000),
        offset: int = Query(default=0, ge=0),
        svc: SubgateService = Depends(get_service),
    ) -> dict[str, Any]:
        records = await call_with_retry(svc.store.list_all, limit=limit, offset=offset)
        total = await call_with_retry(svc.store.count)
        return {"users": [r.to_dict() for r in records], "total": total}

    @app.post("/api/users", dependencies=[Depends(require_admin)])
    async def upsert_user(
        payload: UserPayload,
        svc: SubgateService = Depends(get_service),
    ) -> dict[str, Any]:
        if payload.duration_days is not None and payload.end_date is not None:
            raise ValidationError("Give either endDate or durationDays, not both")
        record = await call_with_retry(svc.store.upsert, payload.phone, **payload.to_fields())
        logger.info(f"Subscriber {record.identity} saved (status={record.status.value})")
        return {"ok": True, "user": record.to_dict()}

    @app.delete("/api/users", dependencies=[Depends(require_admin)])
    async def delete_user(
        phone: str = Query(...),
        svc: SubgateService = Depends(get_service),
    ) -> dict[str, Any]:
        removed = await call_with_retry(svc.store.delete, phone)
        if not removed:
            raise NotFoundError(f"Subscriber {phone} not found")
        logger.info(f"Subscriber {phone} deleted")
        return {"ok": True}

    @app.post("/api/template", dependencies=[Depends(require_admin)])
    async def set_template(
        payload: TemplatePayload,
        svc: SubgateService = Depends(get_service),
    ) -> dict[str, Any]:
        if await call_with_retry(svc.store.get, payload.phone) is None:
            raise NotFoundError(f"Subscriber {payload.phone} not found")
        record = await call_with_retry(svc.store.upsert, payload.phone, message_template=payload.template)
        return {"ok": True, "user": record.to_dict()}

    @app.post("/api/session/logout", dependencies=[Depends(require_admin)])
    async def session_logout(svc: SubgateService = Depends(get_service)) -> dict[str, Any]:
        await svc.session.logout()
        return {"ok": True, "connectivity": svc.session.connectivity.value}

    @app.post("/api/session/connect", dependencies=[Depends(require_admin)])
    async def session_connect(svc: SubgateService = Depends(get_service)) -> dict[str, Any]:
        await svc.session.connect()
        return {"ok": True, "connectivity": svc.session.connectivity.value}

    return app
