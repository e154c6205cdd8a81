"""HTTP front serving bucket objects through the caching storage layer."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import ValidationError
import structlog
from opentelemetry import trace

from ..common.http_security import require_channel_token, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import ChangeNotification
from ..common.settings import ProxySettings, StorageSettings
from ..storage.cache_store import CacheStoreError
from ..storage.objects import FetchError
from ..storage.resolver import Storage
from .serving import STS_VALUE, render_object, serve_error, valid_method


REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketfront_requests_total", "Object requests served"))
REQUEST_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_request_errors_total", "Object requests answered with a 5xx status")
)
NOTIFICATION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_change_notifications_total", "Change notifications received")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "bucketfront_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Object request latency",
    )
)
LOGGER = structlog.get_logger("bucketfront.proxy")
TRACER = trace.get_tracer("bucketfront.proxy")


class ProxyState:
    def __init__(self, settings: ProxySettings, storage: Storage) -> None:
        self.settings = settings
        self.storage = storage
        self.tls_only = frozenset(settings.tls_only)

    def bucket_for(self, host: Optional[str]) -> Optional[str]:
        return self.settings.bucket_for(host or "")


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def _with_query(url: str, request: Request) -> str:
    query = request.url.query
    return f"{url}?{query}" if query else url


def create_app(
    settings: Optional[ProxySettings] = None,
    storage: Optional[Storage] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("bucketfront.proxy", settings.log_level)
    configure_tracing(
        service_name="bucketfront.proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    if not settings.buckets:
        raise RuntimeError("at least a default bucket must be configured")
    storage = storage or Storage.from_settings(StorageSettings())
    state = ProxyState(settings, storage)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await state.storage.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.proxy_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "host": request.url.hostname,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.post(settings.hook_path)
    async def change_hook(request: Request, state: ProxyState = Depends(get_state)) -> Response:
        """Purge cached copies of an object named in a change notification.

        Answers 500 only when the cache could not be purged, so the
        notifier retries delivery.
        """
        token = state.settings.hook_token.get_secret_value() if state.settings.hook_token else None
        require_channel_token(request, token)
        NOTIFICATION_COUNTER.inc()
        if request.headers.get("x-goog-resource-state") == "sync":
            return Response(status_code=status.HTTP_200_OK)
        try:
            notification = ChangeNotification.model_validate_json(await request.body())
        except ValidationError as exc:
            # redelivery would not fix a malformed payload
            LOGGER.error("change_notification_invalid", error=str(exc))
            return Response(status_code=status.HTTP_200_OK)
        try:
            await state.storage.purge(notification.bucket, notification.name)
        except CacheStoreError as exc:
            LOGGER.error("cache_purge_failed", bucket=notification.bucket, name=notification.name, error=str(exc))
            return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/-/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health: dict = {"status": "healthy", "checks": {}}
        try:
            cache_status = state.storage.cache.status()
            health["checks"]["cache"] = cache_status
            if cache_status.get("circuit_open"):
                health["status"] = "degraded"
        except Exception as exc:  # noqa: BLE001
            health["checks"]["cache"] = f"error: {exc}"
            health["status"] = "unhealthy"
        if health["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/-/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{object_path:path}", methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"])
    async def serve(object_path: str, request: Request, state: ProxyState = Depends(get_state)) -> Response:
        """Serve an object from the bucket mapped to the request host."""
        host = request.url.hostname
        if host and host in state.settings.redirects:
            return RedirectResponse(
                _with_query(state.settings.redirects[host] + request.url.path, request),
                status_code=status.HTTP_301_MOVED_PERMANENTLY,
            )

        force_tls = host in state.tls_only
        proto = request.headers.get("x-forwarded-proto")
        sts = {"strict-transport-security": STS_VALUE} if force_tls and proto == "https" else {}
        if not valid_method(request.method):
            response = serve_error(status.HTTP_405_METHOD_NOT_ALLOWED)
            response.headers.update(sts)
            return response
        if force_tls and proto == "http":
            return RedirectResponse(
                _with_query(f"https://{request.headers.get('host', host)}{request.url.path}", request),
                status_code=status.HTTP_301_MOVED_PERMANENTLY,
            )

        REQUEST_COUNTER.inc()
        bucket = state.bucket_for(host)
        with TRACER.start_as_current_span("proxy.serve", attributes={"bucketfront.bucket": bucket or ""}):
            try:
                obj = await asyncio.wait_for(
                    state.storage.open_file(bucket, object_path, request.headers),
                    state.settings.request_timeout_seconds,
                )
            except FetchError as exc:
                if exc.code != status.HTTP_404_NOT_FOUND:
                    LOGGER.error("object_fetch_failed", bucket=bucket, name=object_path, code=exc.code, error=str(exc))
                if exc.code >= 500:
                    REQUEST_ERROR_COUNTER.inc()
                response = serve_error(exc.code)
            except asyncio.TimeoutError:
                LOGGER.error("object_request_timeout", bucket=bucket, name=object_path)
                REQUEST_ERROR_COUNTER.inc()
                response = serve_error(status.HTTP_500_INTERNAL_SERVER_ERROR)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("object_request_failed", bucket=bucket, name=object_path, error=str(exc))
                REQUEST_ERROR_COUNTER.inc()
                response = serve_error(status.HTTP_500_INTERNAL_SERVER_ERROR)
            else:
                response = render_object(
                    request,
                    obj,
                    state.settings.cors_origins,
                    state.settings.cors_max_age,
                )
        response.headers.update(sts)
        return response

    return app
