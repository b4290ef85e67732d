"""
Management API

Read-only views of the last observed status plus triggers that inject
reconcile requests into the work queue, and a switch for the operator.
No route touches PostgreSQL.
"""

import threading
import time
import uuid
from typing import Callable, Literal, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .log import correlated, get_logger
from .metrics import Metrics
from .models import make_key
from .scheduler import WorkQueue
from .store import StatusStore

logger = get_logger("api")

CORRELATION_ID_HEADER = "X-Request-ID"


class Health:
    """Liveness and readiness state shared by the runtime and the API"""

    def __init__(self, readiness_window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.readiness_window = readiness_window
        self.bootstrapped = False
        self.scheduler_running: Callable[[], bool] = lambda: False
        self._clock = clock
        self._lock = threading.Lock()
        self._last_probe: Optional[float] = None
        self.last_probe_error: Optional[str] = None

    def probe_succeeded(self):
        with self._lock:
            self._last_probe = self._clock()
            self.last_probe_error = None

    def probe_failed(self, error: str):
        with self._lock:
            self.last_probe_error = error

    def healthy(self) -> Tuple[bool, str]:
        if not self.bootstrapped:
            return False, "bootstrap has not completed"
        if not self.scheduler_running():
            return False, "scheduler is not running"
        return True, "ok"

    def ready(self) -> Tuple[bool, str]:
        ok, message = self.healthy()
        if not ok:
            return ok, message
        with self._lock:
            if self._last_probe is None:
                return False, self.last_probe_error or "no successful database probe yet"
            age = self._clock() - self._last_probe
            if age > self.readiness_window:
                return False, (f"last successful database probe {age:.0f}s ago"
                               + (f": {self.last_probe_error}" if self.last_probe_error else ""))
        return True, "ok"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Bind a correlation id to every request

    The id comes from X-Request-ID when the caller sent one and is generated
    otherwise. It is echoed back in the response and appears in every log
    line written while the request is handled.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = request_id
        with correlated(request_id):
            response = await call_next(request)
            logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        response.headers[CORRELATION_ID_HEADER] = request_id
        return response


class OperatorStateChange(BaseModel):
    desired: Literal["enabled", "disabled"]


def _error(code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=code, content={"code": code, "message": message})


def create_app(store: StatusStore, queue: WorkQueue, health: Health, metrics: Optional[Metrics] = None,
               operator=None) -> FastAPI:
    """
    Build the Management API

    Args:
        store: Status snapshots served by the read routes
        queue: Work queue the trigger routes feed
        health: Liveness/readiness state
        metrics: Metrics exported at /metrics
        operator: Object with enable(), disable() and operator_running, served
            at /operator/state; the route is absent without one
    """
    app = FastAPI(title="postgres-controller", version=__version__)
    app.add_middleware(CorrelationIdMiddleware)
    metrics = metrics or Metrics(databases_managed=lambda: len(store), queue_depth=queue.depth)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        return _error(422, problems)

    def known(namespace: str, name: str) -> str:
        key = make_key(namespace, name)
        if key not in store:
            raise HTTPException(status_code=404, detail=f"ManagedDatabase {key} not found")
        return key

    @app.get("/healthz")
    def healthz():
        ok, message = health.healthy()
        if not ok:
            return _error(503, message)
        return {"status": "healthy"}

    @app.get("/readyz")
    def readyz():
        ok, message = health.ready()
        if not ok:
            return _error(503, message)
        return {"status": "ready"}

    @app.get("/databases")
    def list_databases():
        return store.list()

    @app.get("/databases/{namespace}/{name}")
    def get_database(namespace: str, name: str):
        snapshot = store.get(known(namespace, name))
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"ManagedDatabase {namespace}/{name} not found")
        return snapshot

    @app.post("/databases/{namespace}/{name}/reconcile", status_code=202)
    def reconcile(namespace: str, name: str):
        key = known(namespace, name)
        if not queue.add(key, front=True, forced=True):
            raise HTTPException(status_code=503, detail="controller is shutting down")
        logger.info(f"Reconcile of {key} requested")
        return {"id": key, "queued": True}

    @app.post("/databases/{namespace}/{name}/rotate-credential", status_code=202)
    def rotate_credential(namespace: str, name: str):
        key = known(namespace, name)
        if queue.is_shut_down:
            raise HTTPException(status_code=503, detail="controller is shutting down")
        if not queue.request_rotation(key):
            raise HTTPException(status_code=409, detail=f"a reconcile pass for {key} is in progress")
        logger.info(f"Credential rotation for {key} requested")
        return {"id": key, "queued": True}

    if operator is not None:
        @app.get("/operator/state")
        def operator_state():
            return {"running": operator.operator_running}

        @app.post("/operator/state")
        def change_operator_state(change: OperatorStateChange):
            logger.info(f"Operator state change to {change.desired} requested")
            success = operator.enable() if change.desired == "enabled" else operator.disable()
            return {"success": success}

    @app.get("/metrics")
    def export_metrics():
        return PlainTextResponse(metrics.export_prometheus(), media_type="text/plain; version=0.0.4")

    return app
