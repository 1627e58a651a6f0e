from __future__ import annotations
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger

from .config import Settings
from .delivery import Mailer, NullMailer, SMTPMailer
from .errors import (
    InvalidInput, IssuanceFailed, WebhookPayloadError, IN_PROGRESS,
)
from .helpers import ct_equal
from .infra.logs import configure_logging
from .infra.sql import make_async_engine
from .issuance import IssuanceEngine
from .model.ticketstore import TicketStore, new_store, create_schema
from .redemption import RedemptionEngine
from .render import NullRenderer, QRRenderer, Renderer
from .tokens import TokenCodec
from .webhook import describe, normalize, parse_body, safe_json


def create_app(settings: Optional[Settings] = None, *,
               renderer: Optional[Renderer] = None,
               mailer: Optional[Mailer] = None) -> FastAPI:
    """Build the app; `settings=None` reads the environment at startup."""
    app = FastAPI(title="gatepass", default_response_class=ORJSONResponse)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _config_load():
        s = settings or Settings.from_env()
        s.check()
        configure_logging(s.log_level)
        app.state.settings = s
        app.state.codec = TokenCodec(s.ticket_secret)
        logger.info(
            "gatepass starting: store={} event={} qr={} mail={}",
            s.store_backend, s.event_id, s.qr_enabled, s.mail_enabled,
        )

    @app.on_event("startup")
    async def _store_start():
        s: Settings = app.state.settings
        app.state.engine = None
        app.state.redis = None
        if s.store_backend == "sql":
            engine, SessionAsync, gated = make_async_engine(
                s.database_url,
                pool_size=s.db_pool_size,
                max_overflow=s.db_max_overflow,
                pool_timeout=s.db_pool_timeout,
                gate_limit=s.db_gate_limit,
            )
            async with engine.begin() as conn:
                await create_schema(conn)
            app.state.engine = engine
            app.state.SessionAsync = SessionAsync
            app.state.gated = gated
        else:
            app.state.redis = redis.from_url(
                s.redis_url,
                decode_responses=True,
                max_connections=s.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _collaborators_start():
        s: Settings = app.state.settings
        if renderer is not None:
            app.state.renderer = renderer
        else:
            app.state.renderer = QRRenderer() if s.qr_enabled \
                else NullRenderer()
        if mailer is not None:
            app.state.mailer = mailer
        elif s.mail_enabled:
            app.state.mailer = SMTPMailer(
                host=s.smtp_host,
                port=s.smtp_port,
                sender=s.smtp_from,
                user=s.smtp_user,
                password=s.smtp_pass,
                timeout=s.smtp_timeout,
            )
        else:
            app.state.mailer = NullMailer()

    @app.on_event("shutdown")
    async def _store_stop():
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()
            app.state.engine = None
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    # ----------------------------
    # Error mapping
    # ----------------------------
    @app.exception_handler(WebhookPayloadError)
    async def _payload_error(request: Request, exc: WebhookPayloadError):
        return ORJSONResponse(
            {"ok": False, "error": exc.kind, "hint": exc.hint},
            status_code=400,
        )

    @app.exception_handler(InvalidInput)
    async def _invalid_input(request: Request, exc: InvalidInput):
        return ORJSONResponse(
            {"ok": False, "error": exc.kind, "message": exc.message},
            status_code=400,
        )

    @app.exception_handler(IssuanceFailed)
    async def _issuance_failed(request: Request, exc: IssuanceFailed):
        # IN_PROGRESS: the claim holder has not stored a ticket yet
        status = 409 if exc.kind == IN_PROGRESS else 500
        return ORJSONResponse(
            {
                "ok": False,
                "error": exc.kind,
                "step": exc.step,
                "message": exc.message,
                "order_id": exc.order_id,
                "issued": len(exc.issued),
            },
            status_code=status,
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.opt(exception=exc).error(
            "unhandled error on {} {}", request.method, request.url.path
        )
        return ORJSONResponse({"ok": False, "error": "SERVER_ERROR"},
                              status_code=500)

    _routes(app)
    return app


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def ticketstore(request: Request) -> AsyncIterator[TicketStore]:
    state = request.app.state
    if state.settings.store_backend == "sql":
        async with state.SessionAsync() as session:
            yield new_store("sql", db=session, gated=state.gated)
    else:
        yield new_store("redis", r=state.redis)


def issuance_engine(request: Request,
                    store: TicketStore = Depends(ticketstore)
                    ) -> IssuanceEngine:
    state = request.app.state
    s: Settings = state.settings
    return IssuanceEngine(
        store=store,
        codec=state.codec,
        renderer=state.renderer,
        mailer=state.mailer,
        event_name=s.event_name,
        qr_size=s.qr_size,
        step_timeout=s.step_timeout,
        order_claim_ttl=s.order_claim_ttl,
    )


def redemption_engine(request: Request,
                      store: TicketStore = Depends(ticketstore)
                      ) -> RedemptionEngine:
    return RedemptionEngine(store=store, codec=request.app.state.codec)


def require_admin(
    settings: Settings = Depends(get_settings),
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    if not settings.admin_token:
        raise HTTPException(404, detail="admin endpoints disabled")
    if not x_admin_token or not ct_equal(x_admin_token,
                                         settings.admin_token):
        raise HTTPException(401, detail="invalid admin token")


def _routes(app: FastAPI) -> None:

    # ----------------------------
    # Webhook: paid order -> tickets
    # ----------------------------
    @app.api_route("/api/webhook/paid", methods=["GET", "HEAD"])
    async def webhook_ping():
        return {"ok": True, "ping": True}

    @app.post("/api/webhook/paid")
    async def webhook_paid(
        request: Request,
        bind: Optional[str] = None,
        settings: Settings = Depends(get_settings),
        engine: IssuanceEngine = Depends(issuance_engine),
    ):
        # registration handshake: the provider checks for a 200, nothing else
        if bind == "1":
            return {"ok": True, "bind": True}

        raw = await request.body()
        body = parse_body(raw, request.headers.get("content-type", ""))
        order = normalize(body, event_id=settings.event_id)
        result = await engine.issue(order)
        return result.as_response()

    @app.post("/api/debug/webhook-echo")
    async def webhook_echo(request: Request,
                           settings: Settings = Depends(get_settings)):
        if not settings.debug_endpoints:
            raise HTTPException(404, detail="debug endpoints disabled")
        raw = await request.body()
        ct = request.headers.get("content-type", "").lower()
        parsed = parse_body(raw, ct)
        info = describe(parsed)
        logger.info("webhook echo: ct={} keys={} paymentKeys={}",
                    ct, info["keys"], info["paymentKeys"])
        return {"ok": True, "contentType": ct, **info, "sample": parsed}

    # ----------------------------
    # Gate: validate + consume
    # ----------------------------
    @app.post("/api/validate")
    async def validate_ticket(
        request: Request,
        engine: RedemptionEngine = Depends(redemption_engine),
    ):
        raw = await request.body()
        data = safe_json(raw)
        if isinstance(data, dict):
            token = str(data.get("token") or "")
        elif isinstance(data, str):
            token = data
        else:
            # plain-text body: the token itself
            token = raw.decode("utf-8", "replace")
        token = token.strip()
        if not token:
            return ORJSONResponse({"ok": False, "error": "NO_TOKEN"},
                                  status_code=400)

        outcome = await engine.redeem(token)
        status = 200 if outcome.valid or outcome.ticket is not None else 400
        return ORJSONResponse(outcome.as_response(), status_code=status)

    # ----------------------------
    # Admin: tickets of an order, redelivery
    # ----------------------------
    @app.get("/api/orders/{order_id}/tickets",
             dependencies=[Depends(require_admin)])
    async def order_tickets(
        order_id: str,
        event_id: Optional[str] = None,
        settings: Settings = Depends(get_settings),
        store: TicketStore = Depends(ticketstore),
    ):
        eid = event_id or settings.event_id
        tickets = await store.tickets_for_order(order_id, eid)
        if not tickets:
            raise HTTPException(404, detail="order not found")
        return {
            "order_id": order_id,
            "event_id": eid,
            "items": [t.public() for t in tickets],
        }

    @app.post("/api/orders/{order_id}/redeliver",
              dependencies=[Depends(require_admin)])
    async def order_redeliver(
        order_id: str,
        event_id: Optional[str] = None,
        settings: Settings = Depends(get_settings),
        engine: IssuanceEngine = Depends(issuance_engine),
    ):
        eid = event_id or settings.event_id
        result = await engine.redeliver(order_id, eid)
        if not result.total:
            raise HTTPException(404, detail="order not found")
        return {
            "ok": True,
            "order_id": order_id,
            "tickets": result.total,
            "redelivered": len(result.delivered),
        }


app = create_app()
