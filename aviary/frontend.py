from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from opentelemetry.trace import SpanKind, Status, StatusCode
from pydantic import ValidationError

from .api_models import BackendEnvelope, BirdResponse, ShuffleMetadata, ShuffleResponse
from .settings import FrontendSettings
from .tracing import Tracing, init_tracing

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(PACKAGE_DIR / "templates"))

_NS_PER_US = 1_000
_NS_PER_MS = 1_000_000
_NS_PER_S = 1_000_000_000


def round_duration(seconds: float) -> int:
    """Round to milliseconds when over 1ms, else to microseconds. Returns ns."""
    ns = max(0, int(round(seconds * _NS_PER_S)))
    unit = _NS_PER_MS if ns > _NS_PER_MS else _NS_PER_US
    return (ns + unit // 2) // unit * unit


def _with_fraction(value: int, unit: int) -> str:
    whole, frac = divmod(value, unit)
    if not frac:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{frac:0{digits}d}".rstrip("0")


def format_duration(ns: int) -> str:
    """Render a duration the way Go's time.Duration prints it ("1.5s", "12ms")."""
    if ns == 0:
        return "0s"
    if ns < _NS_PER_US:
        return f"{ns}ns"
    if ns < _NS_PER_MS:
        return _with_fraction(ns, _NS_PER_US) + "µs"
    if ns < _NS_PER_S:
        return _with_fraction(ns, _NS_PER_MS) + "ms"
    hours, rem = divmod(ns, 3600 * _NS_PER_S)
    minutes, rem = divmod(rem, 60 * _NS_PER_S)
    seconds = _with_fraction(rem, _NS_PER_S) + "s"
    if hours:
        return f"{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{minutes}m{seconds}"
    return seconds


def _cause(e: Exception) -> str:
    return str(e) or type(e).__name__


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class BackendProxy:
    """Calls the backend's /bird and reshapes the result for the UI.

    Every outcome except a malformed backend URL is reported with status 200
    so the UI always gets parseable JSON; failures only show up in "error".
    """

    def __init__(
        self,
        backend_url: str,
        tracing: Tracing | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.backend_url = backend_url.rstrip("/")
        self.tracing = tracing or Tracing.disabled()
        self.transport = transport
        self.timeout = timeout
        self.clock = clock

    def _failed(self, duration_ns: int, message: str) -> ShuffleResponse:
        logger.warning("Error calling backend: %s", message)
        return ShuffleResponse(
            metadata=ShuffleMetadata(backendDuration=format_duration(duration_ns)),
            error=message,
        )

    async def shuffle(self, params: Mapping[str, str]) -> tuple[int, ShuffleResponse]:
        # A new client per call and "Connection: close", so no connection is
        # ever reused, by this process or by a sidecar proxy.
        async with httpx.AsyncClient(
            transport=self.transport, timeout=self.timeout, headers={"Connection": "close"}
        ) as client:
            try:
                req = client.build_request("GET", f"{self.backend_url}/bird", params=dict(params))
            except (httpx.InvalidURL, ValueError) as e:
                return 503, ShuffleResponse(error=f"Unable to construct request: {_cause(e)}")

            with self.tracing.tracer.start_as_current_span("call_backend", kind=SpanKind.CLIENT) as span:
                span.set_attribute("http.method", req.method)
                span.set_attribute("http.url", str(req.url))
                self.tracing.inject(req.headers)

                start = self.clock()
                try:
                    resp = await client.send(req, stream=True)
                except httpx.HTTPError as e:
                    duration_ns = round_duration(self.clock() - start)
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, _cause(e)))
                    return 200, self._failed(duration_ns, f"unable to call backend: {_cause(e)}")
                duration_ns = round_duration(self.clock() - start)

                span.set_attribute("http.status_code", resp.status_code)
                if not 200 <= resp.status_code <= 299:
                    span.set_status(Status(StatusCode.ERROR))

            try:
                body = await resp.aread()
            except httpx.HTTPError as e:
                return 200, self._failed(duration_ns, f"unable to read backend response body: {_cause(e)}")
            finally:
                await resp.aclose()

        return 200, self._reshape(resp.status_code, resp.headers.get("content-type", ""), body, duration_ns)

    def _reshape(self, status_code: int, content_type: str, body: bytes, duration_ns: int) -> ShuffleResponse:
        if "application/json" not in content_type:
            text = body.decode("utf-8", errors="replace")
            return self._failed(duration_ns, f"received status code {status_code} from backend: {_quote(text)}")

        try:
            envelope = BackendEnvelope.model_validate_json(body)
        except ValidationError as e:
            causes = "; ".join(err["msg"] for err in e.errors())
            return self._failed(duration_ns, f"json unmarshalling response body: {causes}")

        metadata = ShuffleMetadata(
            backendDuration=format_duration(duration_ns),
            backendStatusCode=status_code,
            backendHostname=envelope.metadata.hostname or None,
            backendVersion=envelope.metadata.version or None,
        )
        if status_code != 200:
            return ShuffleResponse(
                metadata=metadata,
                error=f"received status code {status_code} from backend: {_quote(envelope.error or '')}",
            )
        return ShuffleResponse(metadata=metadata, response=envelope.response or BirdResponse())


router = APIRouter()


@router.get("/", response_class=HTMLResponse)
def index(request: Request):
    return templates.TemplateResponse(request, "index.html")


@router.get("/admin", response_class=HTMLResponse)
def admin(request: Request):
    return templates.TemplateResponse(request, "admin.html")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/shuffle")
async def shuffle(request: Request) -> JSONResponse:
    # Only the first value of a repeated param is forwarded.
    params: dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, value)
    proxy: BackendProxy = request.app.state.proxy
    status_code, body = await proxy.shuffle(params)
    return JSONResponse(body.model_dump(exclude_none=True), status_code=status_code)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    app.state.tracing.shutdown()


def create_app(
    settings: FrontendSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    tracing: Tracing | None = None,
) -> FastAPI:
    """Build the frontend app. Raises ValueError for a bad configuration."""
    settings = settings or FrontendSettings()
    settings.validate()

    if tracing is None:
        if settings.tracing_url:
            tracing = init_tracing(settings.tracing_url, settings.bind_addr, "frontend")
        else:
            tracing = Tracing.disabled()

    app = FastAPI(title="Aviary frontend", lifespan=_lifespan)
    app.state.proxy = BackendProxy(
        settings.backend_url,
        tracing=tracing,
        transport=transport,
        timeout=settings.backend_timeout,
    )
    app.state.tracing = tracing
    app.mount("/static", StaticFiles(directory=str(PACKAGE_DIR / "static")), name="static")
    app.include_router(router)
    tracing.instrument(app, excluded_urls="/static")

    logger.info("Frontend ready backend_url=%s", settings.backend_url)
    return app
