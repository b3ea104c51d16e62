"""
HTTP middleware pipeline of the users service.

A request crosses the stages in list order (outermost first) before it
reaches the matched route, and the response travels back through them in
reverse. The default order is error catching, then authentication, then
traffic logging, so that a failure anywhere downstream, the other stages
included, still ends up as a JSON error response.
"""
import hmac
import time
import uuid
from typing import Awaitable, Callable, Iterable, List, Protocol

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import Counter, Histogram
from starlette.routing import Match

SERVICE_NAME = "users-service"

CallNext = Callable[[Request], Awaitable[Response]]
Stage = Callable[[Request, CallNext], Awaitable[Response]]

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["service", "method", "endpoint"]
)
ERROR_COUNT = Counter(
    "http_errors_total",
    "Total HTTP errors",
    ["service", "endpoint", "error_type"]
)


def endpoint_label(request: Request) -> str:
    """Route template for metric labels, so /users/1 and /users/2 share a series."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match != Match.NONE:
            return route.path
    return "unmatched"


class CredentialVerifier(Protocol):
    def validate(self, header: str) -> bool:
        ...


class BearerTokenVerifier:
    """Accepts exactly ``Bearer <secret>`` in the Authorization header."""

    def __init__(self, secret: str):
        self._expected = f"Bearer {secret}".encode("utf-8")

    def validate(self, header: str) -> bool:
        return hmac.compare_digest(header.encode("utf-8"), self._expected)


class Pipeline:
    """Ordered chain of stages, installed on the app as one HTTP middleware."""

    def __init__(self, stages: Iterable[Stage]):
        self.stages: List[Stage] = list(stages)

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        async def dispatch(index: int, req: Request) -> Response:
            if index == len(self.stages):
                return await call_next(req)
            stage = self.stages[index]
            return await stage(req, lambda r: dispatch(index + 1, r))

        return await dispatch(0, request)

    def install(self, app: FastAPI) -> None:
        app.middleware("http")(self)


async def catch_errors(request: Request, call_next: CallNext) -> Response:
    """Turn any failure raised further down the chain into a 500 JSON body."""
    try:
        return await call_next(request)
    except Exception as exc:
        logger.bind(method=request.method, path=request.url.path).opt(exception=exc).error(
            f"Unhandled exception: {exc}"
        )
        ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint_label(request), error_type="unhandled").inc()
        # La réponse partielle éventuelle est abandonnée
        return JSONResponse(
            status_code=500,
            content={"error": f"Internal server error: {exc}."},
        )


def authentication_stage(verifier: CredentialVerifier) -> Stage:
    async def authenticate(request: Request, call_next: CallNext) -> Response:
        token = request.headers.get("Authorization")
        if token is None:
            logger.warning(f"Missing token: {request.method} {request.url.path}")
            ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint_label(request), error_type="auth_missing").inc()
            return JSONResponse(status_code=401, content={"error": "Authorization token is missing."})

        if not verifier.validate(token):
            logger.warning(f"Rejected token: {request.method} {request.url.path}")
            ERROR_COUNT.labels(service=SERVICE_NAME, endpoint=endpoint_label(request), error_type="auth_invalid").inc()
            return JSONResponse(status_code=403, content={"error": "Invalid or expired token."})

        return await call_next(request)

    return authenticate


async def log_traffic(request: Request, call_next: CallNext) -> Response:
    """
    Log the request line and body, then the final status and response body.

    The request body is read once here and replayed to the route. The
    response body is drained into a buffer so it can be logged, and a new
    response carrying that buffer is what goes back up the chain.
    """
    # Generate or propagate correlation ID (trace-id)
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    start_time = time.time()
    status = 500

    with logger.contextualize(trace_id=trace_id, service=SERVICE_NAME):
        logger.bind(method=request.method, url=str(request.url)).info(
            f"Incoming request: {request.method} {request.url.path}"
        )
        body = await request.body()
        if body:
            logger.info(f"Request body: {body.decode('utf-8', errors='replace')}")

        try:
            response = await call_next(request)

            buffer = bytearray()
            async for chunk in response.body_iterator:
                buffer.extend(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
            content = bytes(buffer)
            status = response.status_code

            logger.bind(status=status).info(
                f"Response: {status} {content.decode('utf-8', errors='replace')}"
            )

            captured = Response(content=content, status_code=status)
            # Liste brute: les en-têtes répétés (Set-Cookie) sont conservés
            captured.raw_headers = list(response.raw_headers)
            captured.headers["X-Trace-ID"] = trace_id
            return captured
        finally:
            latency = time.time() - start_time
            endpoint = endpoint_label(request)
            REQUEST_COUNT.labels(
                service=SERVICE_NAME,
                method=request.method,
                endpoint=endpoint,
                status=status
            ).inc()
            REQUEST_LATENCY.labels(
                service=SERVICE_NAME,
                method=request.method,
                endpoint=endpoint
            ).observe(latency)


def default_pipeline(verifier: CredentialVerifier) -> Pipeline:
    return Pipeline([catch_errors, authentication_stage(verifier), log_traffic])
