"""
CoursePay payment confirmation service.

Run with:
  uvicorn coursepay.server:app

Importing this module builds the module-level ``app``: it reads the
environment through ``Settings.from_env()`` and installs the root log
handler. The order store itself is only built in the lifespan. Tests that
need other settings call ``create_app(settings, store=...)`` directly.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, ORJSONResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from .engine import TransitionEngine
from .errors import OrderNotFound, TransientStoreError
from .helpers import clean_order_id, now_ts
from .infra.sql import make_async_engine
from .infra.timings import timeit, timing_summary
from .logs import configure_logging, log_event
from .model.order import (
    OrderSnapshot, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING,
)
from .model.orderstore import OrderStore, create_schema, new_store
from .orchestrator import ConfirmationOrchestrator
from .registry import ViewRegistry
from .retry import RetryPolicy
from .settings import Settings

logger = logging.getLogger("coursepay.server")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

DISCONNECT_POLL_SECONDS = 0.25


def demo_orders() -> list[OrderSnapshot]:
    ts = now_ts()
    return [
        OrderSnapshot(
            id=f"ord-00{i}", status=STATUS_PENDING, payment_status="pending",
            version_token=0, updated_at=ts, created_at=ts,
            order_number=f"CP-2025-00{i}",
            program_title=title, program_slug=slug,
            email=f"student{i}@example.com", total_amount=amount,
        )
        for i, (title, slug, amount) in enumerate([
            ("Young Coders Bootcamp", "young-coders", 149900),
            ("Robotics for Teens", "robotics-teens", 219900),
            ("Creative Writing Club", "creative-writing", 89900),
        ], start=1)
    ]


async def _build_store(settings: Settings) -> OrderStore:
    backend = settings.orderstore_backend
    if backend == "pg":
        engine, gated = make_async_engine(settings.database_url)
        async with engine.begin() as conn:
            await create_schema(conn)
        return new_store(backend="pg", engine=engine, gated=gated)
    if backend == "redis":
        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            # timeouts must reach with_retry, not be retried underneath it
            retry_on_timeout=False,
        )
        return new_store(backend="redis", r=r)
    return new_store(backend="memory")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[OrderStore] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    policy = RetryPolicy.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print('\n' * 2)
        print('=' * 50)
        print(f'{settings.site_name} confirmation service is starting up...')
        print(f'   - Order store backend: {settings.orderstore_backend}')
        print(f'   - Retry budget: {policy.max_attempts} attempts, '
              f'{policy.base_delay:.2f}s..{policy.max_delay:.2f}s backoff')
        print('=' * 50)
        print('\n' * 2)

        app.state.store = (
            store if store is not None else await _build_store(settings)
        )
        if settings.seed_demo_orders:
            for snap in demo_orders():
                await app.state.store.seed_order(snap)
        app.state.transitions = TransitionEngine(
            app.state.store, policy,
            max_conflict_rounds=settings.confirm_max_conflict_rounds,
        )
        app.state.views = ViewRegistry(
            ttl_seconds=settings.view_ttl_seconds,
            max_views=settings.view_max,
        )
        try:
            yield
        finally:
            app.state.views.dispose_all()
            if store is None:
                await app.state.store.close()

    app = FastAPI(
        title=settings.site_name,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.state.policy = policy

    # ----------------------------
    # Helpers
    # ----------------------------
    def wants_json(request: Request, fmt: Optional[str]) -> bool:
        if fmt == "json":
            return True
        return "application/json" in request.headers.get("accept", "")

    def render(request: Request, view_id: str,
               orch: ConfirmationOrchestrator, fmt: Optional[str]):
        view = orch.view
        if wants_json(request, fmt):
            return ORJSONResponse({"view_id": view_id, **view.to_dict()})
        return templates.TemplateResponse(
            request,
            "confirmation.html",
            {
                "view_id": view_id,
                "view": view,
                "site_name": settings.site_name,
                "home_url": settings.home_url,
            },
        )

    async def run_bound_to_client(request: Request, view_id: str,
                                  orch: ConfirmationOrchestrator, action):
        # a client that goes away takes its view with it
        async def watch():
            while True:
                if await request.is_disconnected():
                    log_event(logger, level="info",
                              event="client_disconnected",
                              message="client left, disposing view",
                              order_id=orch.order_id)
                    app.state.views.discard(view_id)
                    return
                await asyncio.sleep(DISCONNECT_POLL_SECONDS)

        watcher = asyncio.create_task(watch())
        try:
            return await action()
        finally:
            watcher.cancel()

    def lookup(view_id: str) -> ConfirmationOrchestrator:
        try:
            return app.state.views.get(view_id)
        except KeyError:
            raise HTTPException(404, detail="confirmation view not found")

    async def confirmation_page(request: Request, order_id: Optional[str],
                                desired: str, fmt: Optional[str]):
        order_id = clean_order_id(order_id)
        views: ViewRegistry = app.state.views
        session_key = f"view:{desired}:{order_id or '-'}"

        # a reload while the first run is still going joins that run
        prev_id = request.session.get(session_key)
        if prev_id:
            try:
                prev = views.get(prev_id)
            except KeyError:
                prev = None
            if prev is not None and prev.in_flight and not prev.disposed:
                return render(request, prev_id, prev, fmt)
            if prev is not None:
                views.discard(prev_id)

        orch = ConfirmationOrchestrator(
            app.state.transitions, order_id, desired, policy=policy
        )
        view_id = views.add(orch)
        request.session[session_key] = view_id
        async with timeit(f"confirm.{desired}"):
            await run_bound_to_client(request, view_id, orch, orch.start)
        return render(request, view_id, orch, fmt)

    # ----------------------------
    # Redirect targets from the payment gateway
    # ----------------------------
    @app.get("/payment/success", response_class=HTMLResponse)
    @app.get("/odeme-basarili", response_class=HTMLResponse,
             include_in_schema=False)
    async def payment_success(
        request: Request,
        orderId: Optional[str] = Query(None),
        order_id: Optional[str] = Query(None),
        format: Optional[str] = Query(None),
    ):
        return await confirmation_page(
            request, orderId or order_id, STATUS_COMPLETED, format
        )

    @app.get("/payment/failure", response_class=HTMLResponse)
    @app.get("/odeme-basarisiz", response_class=HTMLResponse,
             include_in_schema=False)
    async def payment_failure(
        request: Request,
        orderId: Optional[str] = Query(None),
        order_id: Optional[str] = Query(None),
        format: Optional[str] = Query(None),
    ):
        return await confirmation_page(
            request, orderId or order_id, STATUS_FAILED, format
        )

    # ----------------------------
    # Live views: manual retry / dispose / poll
    # ----------------------------
    @app.post("/payment/views/{view_id}/retry", response_class=HTMLResponse)
    async def view_retry(request: Request, view_id: str,
                         format: Optional[str] = Query(None)):
        orch = lookup(view_id)
        await run_bound_to_client(request, view_id, orch, orch.retry)
        return render(request, view_id, orch, format)

    @app.delete("/payment/views/{view_id}")
    async def view_dispose(view_id: str):
        return {"ok": True, "disposed": app.state.views.discard(view_id)}

    # navigator.sendBeacon() can only POST
    @app.post("/payment/views/{view_id}/dispose")
    async def view_dispose_beacon(view_id: str):
        return {"ok": True, "disposed": app.state.views.discard(view_id)}

    @app.get("/api/payment/views/{view_id}")
    async def view_state(view_id: str):
        orch = lookup(view_id)
        return {"view_id": view_id, **orch.view.to_dict()}

    # ----------------------------
    # API: order status (read only)
    # ----------------------------
    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str):
        try:
            async with timeit("orderstore.read"):
                snap = await app.state.store.read_order(order_id)
        except OrderNotFound:
            raise HTTPException(404, detail="order not found")
        except TransientStoreError:
            raise HTTPException(503, detail="order store unavailable")
        return snap.to_dict()

    @app.get("/api/timings")
    async def get_timings():
        return timing_summary()

    return app


app = create_app()
