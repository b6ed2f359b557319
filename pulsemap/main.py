"""HTTP surface: public read API under /api, session-authenticated admin under /admin.

Serve with `uvicorn pulsemap.main:create_app --factory`.
"""

import logging
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from .auth import SESSION_KEY, AdminAccounts, require_admin
from .config import Settings, configure_logging
from .db import init_db, make_engine, make_sessionmaker
from .errors import AuthError, NotFoundError, StoreError, ValidationError
from .events import Event, EventType, Severity, now_ms
from .ingest import Ingestor, default_adapters
from .query import EventQueryService
from .retention import RetentionPolicy, sweep
from .scheduler import Scheduler
from .schemas import ChangePassword, ChangeUsername, EventCreate, EventUpdate
from .store import SqlEventStore

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"

api = APIRouter(prefix='/api')
admin = APIRouter(prefix='/admin')


def get_queries(request: Request) -> EventQueryService:
    return request.app.state.queries


def get_store(request: Request):
    return request.app.state.store


def get_accounts(request: Request) -> AdminAccounts:
    return request.app.state.accounts


@api.get('/events')
def list_events(event_type: Optional[str] = Query(None, alias='type'), limit: Optional[int] = None,
                queries: EventQueryService = Depends(get_queries)):
    return queries.list_events(event_type, limit)


@api.get('/events/recent')
def recent_events(limit: int = 20, queries: EventQueryService = Depends(get_queries)):
    return queries.recent(limit)


@api.get('/events/{event_id}')
def get_event(event_id: int, queries: EventQueryService = Depends(get_queries)):
    return queries.get_event(event_id)


@api.get('/stats')
def stats(queries: EventQueryService = Depends(get_queries)):
    return queries.stats()


async def _credentials(request: Request):
    if request.headers.get('content-type', '').startswith('application/json'):
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body")
    else:
        data = await request.form()
    if not hasattr(data, 'get'):
        raise ValidationError("Expected an object with username and password")
    username, password = data.get('username') or '', data.get('password') or ''
    if not isinstance(username, str) or not isinstance(password, str):
        raise ValidationError("username and password must be strings")
    return username, password


@admin.post('/login')
async def login(request: Request, accounts: AdminAccounts = Depends(get_accounts)):
    username, password = await _credentials(request)
    user = await run_in_threadpool(accounts.authenticate, username, password)
    request.session[SESSION_KEY] = user
    logger.info("admin %r logged in", user['username'])
    return {"success": True, "message": "Login successful"}


@admin.post('/logout')
def logout(request: Request):
    request.session.clear()
    return {"success": True, "message": "Logout successful"}


@admin.get('/user-info')
def user_info(user: dict = Depends(require_admin)):
    return {"id": user['id'], "username": user['username']}


@admin.get('/events', dependencies=[Depends(require_admin)])
def admin_list_events(event_type: Optional[str] = Query(None, alias='type'),
                      queries: EventQueryService = Depends(get_queries)):
    return queries.list_events(event_type)


@admin.post('/events', dependencies=[Depends(require_admin)])
def admin_create_event(data: EventCreate, store=Depends(get_store)):
    event_type = EventType.parse(data.type)
    missing = [name for name in ('title', 'latitude', 'longitude') if getattr(data, name) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if data.timestamp is not None:
        ts = data.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        time_ms = int(ts.timestamp() * 1000)
    else:
        time_ms = now_ms()
    event = store.create(Event(
        type=event_type,
        title=data.title,
        description=data.description,
        location=data.location,
        severity=Severity.for_type(event_type, data.magnitude),
        depth=data.depth,
        latitude=data.latitude,
        longitude=data.longitude,
        time=time_ms,
        url=data.url,
    ))
    return {"success": True, "message": "Event created successfully", "id": event.id,
            "event": event.to_dict()}


@admin.put('/events/{event_id}', dependencies=[Depends(require_admin)])
def admin_update_event(event_id: int, data: EventUpdate, store=Depends(get_store)):
    event = store.update(event_id, data.model_dump(exclude_unset=True))
    return {"success": True, "message": "Event updated successfully", "event": event.to_dict()}


@admin.delete('/events/{event_id}', dependencies=[Depends(require_admin)])
def admin_delete_event(event_id: int, store=Depends(get_store)):
    store.delete_by_id(event_id)
    return {"success": True, "message": "Event deleted successfully"}


@admin.post('/refresh')
def admin_refresh(request: Request, user: dict = Depends(require_admin)):
    logger.info("manual data refresh triggered by %r", user['username'])
    report = request.app.state.ingestor.trigger()
    if report is None:
        return JSONResponse({"error": "Refresh already in progress"}, status_code=HTTP_409_CONFLICT)
    message = ("All disaster data refreshed successfully" if report.ok
               else f"Refresh finished with failures: {', '.join(report.failed)}")
    return {"success": report.ok, "message": message, "report": report.to_dict()}


@admin.post('/cleanup', dependencies=[Depends(require_admin)])
def admin_cleanup(request: Request, hours: Optional[float] = None):
    if hours is None:
        policy = request.app.state.retention
    elif hours > 0:
        policy = RetentionPolicy.uniform(hours)
    else:
        raise ValidationError("hours must be greater than 0")
    report = sweep(request.app.state.store, policy)
    return {"success": True, "message": f"Cleaned up {report.total} events", **report.to_dict()}


@admin.post('/change-username')
def change_username(data: ChangeUsername, request: Request, user: dict = Depends(require_admin),
                    accounts: AdminAccounts = Depends(get_accounts)):
    updated = accounts.change_username(user['id'], data.new_username, data.current_password)
    request.session[SESSION_KEY] = updated
    return {"success": True, "message": "Username updated successfully"}


@admin.post('/change-password')
def change_password(data: ChangePassword, user: dict = Depends(require_admin),
                    accounts: AdminAccounts = Depends(get_accounts)):
    accounts.change_password(user['id'], data.current_password, data.new_password)
    return {"success": True, "message": "Password updated successfully"}


def _error(status, message):
    return JSONResponse({"error": message}, status_code=status)


def install_error_handlers(app):
    @app.exception_handler(ValidationError)
    async def on_validation_error(request, exc):
        return _error(HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def on_bad_params(request, exc):
        first = exc.errors()[0]
        field = first["loc"][-1] if first.get("loc") else "request"
        return _error(HTTP_400_BAD_REQUEST, f"{field}: {first['msg']}")

    @app.exception_handler(NotFoundError)
    async def on_not_found(request, exc):
        return _error(HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(AuthError)
    async def on_auth_error(request, exc):
        return _error(HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(StoreError)
    async def on_store_error(request, exc):
        # admin screens show the message, the public API never leaks it
        if request.url.path.startswith(admin.prefix):
            return _error(HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
        return _error(HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR)

    @app.exception_handler(Exception)
    async def on_unhandled(request, exc):
        logger.exception("unhandled error on %s", request.url.path)
        return _error(HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_ERROR)


def create_app(settings=None, store=None, adapters=None):
    settings = settings or Settings.from_env()
    configure_logging()

    engine = make_engine(settings.database_url)
    init_db(engine)
    if store is None:
        store = SqlEventStore(engine, caps=settings.caps)
    accounts = AdminAccounts(make_sessionmaker(engine), rounds=settings.bcrypt_rounds)
    accounts.ensure_bootstrap(settings.admin_username, settings.admin_password)

    if adapters is None:
        adapters = default_adapters(settings)
    ingestor = Ingestor(store, adapters)
    retention = RetentionPolicy.from_settings(settings)
    scheduler = Scheduler(ingestor, store, retention,
                          poll_interval=settings.poll_interval, sweep_interval=settings.sweep_interval)

    app = FastAPI(title="PulseMap")
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret,
                       max_age=settings.session_max_age, same_site='lax')
    app.state.settings = settings
    app.state.store = store
    app.state.queries = EventQueryService(store)
    app.state.accounts = accounts
    app.state.ingestor = ingestor
    app.state.retention = retention
    app.state.scheduler = scheduler
    app.include_router(api)
    app.include_router(admin)
    install_error_handlers(app)

    @app.on_event("startup")
    def on_startup():
        scheduler.start()
        if settings.refresh_on_startup:
            logger.info("fetching initial disaster data")
            scheduler.request_refresh()

    @app.on_event("shutdown")
    def on_shutdown():
        scheduler.stop()

    return app
