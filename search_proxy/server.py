import logging
from typing import Sequence

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from search_proxy.vars import (
    SERVICE_NAME,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW_MS,
)
from search_proxy.proxy.errors import InternalError, ProxyError, error_response
from search_proxy.utils.exception_logging import log_exception_with_details
from search_proxy.rate_limit import RateLimitMiddleware, SlidingWindowRateLimiter
from .routes import router

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="search-proxy")

# Process-scoped, starts empty and is discarded on exit
rate_limiter = SlidingWindowRateLimiter(
    max_requests=RATE_LIMIT_MAX, window_ms=RATE_LIMIT_WINDOW_MS
)
app.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter)

# Added after the rate limiter so rejected requests are counted as well
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app)


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    A relayed download otherwise produces one span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )

FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,metrics")

app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        f"[Proxy] {request.method} {request.url.path} -> {exc.status_code} {exc.message}",
    )
    return error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(
        str(exc.detail), status_code=exc.status_code, headers=exc.headers
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Also invoked when the response already started; the server then drops the connection
    log_exception_with_details(logger, "[Routes]", exc)
    return error_response(InternalError())


app.include_router(router)
