from __future__ import annotations

import asyncio
import logging
import math
import random
import socket
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .api_models import BackendEnvelope, BackendMetadata, BirdRecord
from .dataset import load_dataset
from .runtime import SelectionCounter
from .settings import BackendSettings
from .tracing import Tracing, init_tracing

logger = logging.getLogger(__name__)

RANDOM_ERROR = "randomly generated error"


class QueryParamError(ValueError):
    def __init__(self, param: str, cause: object) -> None:
        super().__init__(f'error parsing query param "{param}": {cause}')
        self.param = param


def resolve_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError as e:
        return str(e)


def _check_number_syntax(param: str, raw: str) -> None:
    # float() and int() also take padding, "_" separators and non-ASCII digits.
    if not raw.isascii() or raw != raw.strip() or "_" in raw:
        raise QueryParamError(param, f"parsing {raw!r}: invalid syntax")


def parse_delay(raw: str | None) -> float | None:
    """Seconds to sleep, or None when the param is absent or "0"."""
    if not raw or raw == "0":
        return None
    _check_number_syntax("delay", raw)
    try:
        delay = float(raw)
    except ValueError as e:
        raise QueryParamError("delay", e) from e
    if not math.isfinite(delay):
        raise QueryParamError("delay", f"delay must be a finite number, got {raw!r}")
    return delay


def parse_error_rate(raw: str | None) -> int | None:
    """Error percentage, or None when the param is absent or "0"."""
    if not raw or raw == "0":
        return None
    _check_number_syntax("error-rate", raw)
    try:
        return int(raw)
    except ValueError as e:
        raise QueryParamError("error-rate", e) from e


class BirdPicker:
    """Serves the active dataset one bird at a time, with fault injection."""

    def __init__(
        self,
        birds: Sequence[BirdRecord],
        version: str,
        hostname: str | None = None,
        counter: SelectionCounter | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        tracing: Tracing | None = None,
    ) -> None:
        if not birds:
            raise ValueError("BirdPicker needs at least one bird.")
        self.birds = tuple(birds)
        self.version = version
        self.hostname = hostname if hostname is not None else resolve_hostname()
        self.counter = counter or SelectionCounter()
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.tracing = tracing or Tracing.disabled()

    @property
    def metadata(self) -> BackendMetadata:
        return BackendMetadata(hostname=self.hostname, version=self.version)

    async def synthetic_delay(self, seconds: float) -> None:
        with self.tracing.tracer.start_as_current_span("synthetic_delay") as span:
            span.set_attribute("delay_seconds", seconds)
            await self.sleep(max(0.0, seconds))

    def should_fail(self, error_rate: int) -> bool:
        # randint is inclusive, so the draw is in [0, 100].
        return error_rate >= self.rng.randint(0, 100)

    def next_bird(self) -> BirdRecord:
        return self.birds[self.counter.next_index(len(self.birds))]

    async def handle(self, params: Mapping[str, str]) -> tuple[int, BackendEnvelope]:
        """Run one /bird request and return (status_code, body)."""
        try:
            delay = parse_delay(params.get("delay"))
        except QueryParamError as e:
            return 400, BackendEnvelope(metadata=self.metadata, error=str(e))
        if delay is not None:
            await self.synthetic_delay(delay)

        try:
            error_rate = parse_error_rate(params.get("error-rate"))
        except QueryParamError as e:
            return 400, BackendEnvelope(metadata=self.metadata, error=str(e))
        if error_rate is not None and self.should_fail(error_rate):
            return 503, BackendEnvelope(metadata=self.metadata, error=RANDOM_ERROR)

        bird = self.next_bird()
        return 200, BackendEnvelope(metadata=self.metadata, response=bird.to_response())


router = APIRouter()


@router.get("/bird")
async def get_bird(request: Request) -> JSONResponse:
    for name, value in request.headers.items():
        logger.info("%s=%s", name, value)
    params: dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, value)
    picker: BirdPicker = request.app.state.picker
    status_code, body = await picker.handle(params)
    return JSONResponse(body.model_dump(exclude_none=True), status_code=status_code)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    app.state.tracing.shutdown()


def create_app(
    settings: BackendSettings | None = None,
    *,
    birds: Sequence[BirdRecord] | None = None,
    hostname: str | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[object]] | None = None,
    tracing: Tracing | None = None,
) -> FastAPI:
    """Build the backend app.

    Raises ValueError for a bad configuration and DatasetError for a broken
    bundled dataset; callers decide whether that aborts the process.
    """
    settings = settings or BackendSettings()
    settings.validate()

    if birds is None:
        birds = load_dataset(settings.version)
    if tracing is None:
        if settings.tracing_url:
            tracing = init_tracing(settings.tracing_url, settings.bind_addr, "backend")
        else:
            tracing = Tracing.disabled()

    picker = BirdPicker(
        birds,
        version=settings.version,
        hostname=hostname,
        rng=rng,
        sleep=sleep or asyncio.sleep,
        tracing=tracing,
    )

    app = FastAPI(title="Aviary backend", lifespan=_lifespan)
    app.state.picker = picker
    app.state.tracing = tracing
    app.include_router(router)
    tracing.instrument(app)

    logger.info("Backend ready version=%s birds=%d hostname=%s", settings.version, len(picker.birds), picker.hostname)
    return app
