import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from aviary import backend
from aviary.frontend import create_app, format_duration, round_duration
from aviary.settings import BackendSettings, FrontendSettings
from aviary.tracing import Tracing

BIRD_BODY = {
    "metadata": {"hostname": "backend-1", "version": "v2"},
    "response": {"name": "Yellow canary", "imageURL": "http://img/y.jpg", "extract": "<p>y</p>"},
}


def _settings():
    return FrontendSettings(bind_addr="127.0.0.1:6060", backend_url="http://backend:7000", tracing_url=None)


def _client(handler, **kwargs):
    app = create_app(_settings(), transport=httpx.MockTransport(handler), **kwargs)
    return TestClient(app)


def test_shuffle_returns_bird_from_backend():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=BIRD_BODY)

    r = _client(handler).get("/shuffle")

    assert r.status_code == 200
    body = r.json()
    assert "error" not in body
    assert body["response"] == BIRD_BODY["response"]
    assert body["metadata"]["backendStatusCode"] == 200
    assert body["metadata"]["backendHostname"] == "backend-1"
    assert body["metadata"]["backendVersion"] == "v2"
    assert body["metadata"]["backendDuration"]
    assert str(seen[0].url) == "http://backend:7000/bird"


def test_shuffle_forwards_query_params():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=BIRD_BODY)

    _client(handler).get("/shuffle?delay=0.5&error-rate=10&error-rate=90")

    params = seen[0].url.params
    assert params["delay"] == "0.5"
    assert params.get_list("error-rate") == ["10"]


def test_shuffle_unreachable_backend_is_reported_in_body():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    r = _client(handler).get("/shuffle")

    assert r.status_code == 200
    body = r.json()
    assert body["error"] == "unable to call backend: connection refused"
    assert "response" not in body
    assert set(body["metadata"]) == {"backendDuration"}


def test_shuffle_body_read_failure():
    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            raise httpx.ReadError("connection reset")
            yield b""

    def handler(request):
        return httpx.Response(200, headers={"content-type": "application/json"}, stream=BrokenStream())

    body = _client(handler).get("/shuffle").json()

    assert body["error"] == "unable to read backend response body: connection reset"
    assert "response" not in body


def test_shuffle_non_json_backend_response():
    def handler(request):
        return httpx.Response(502, text="upstream connect error", headers={"content-type": "text/plain"})

    r = _client(handler).get("/shuffle")

    assert r.status_code == 200
    assert r.json()["error"] == 'received status code 502 from backend: "upstream connect error"'


def test_shuffle_invalid_json():
    def handler(request):
        return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

    body = _client(handler).get("/shuffle").json()

    assert body["error"].startswith("json unmarshalling response body: ")
    assert "response" not in body


def test_shuffle_backend_error_status_is_propagated():
    def handler(request):
        return httpx.Response(
            503,
            json={"metadata": {"hostname": "backend-1", "version": "v1"}, "error": "randomly generated error"},
        )

    r = _client(handler).get("/shuffle?error-rate=100")

    assert r.status_code == 200
    body = r.json()
    assert body["error"] == 'received status code 503 from backend: "randomly generated error"'
    assert body["metadata"]["backendStatusCode"] == 503
    assert body["metadata"]["backendHostname"] == "backend-1"
    assert body["metadata"]["backendVersion"] == "v1"
    assert "response" not in body


def test_shuffle_end_to_end_with_backend(birds, sleeps):
    backend_app = backend.create_app(
        BackendSettings(bind_addr="127.0.0.1:7000", tracing_url=None, version="v1"),
        birds=birds,
        hostname="bird-box",
        sleep=sleeps,
    )
    app = create_app(_settings(), transport=httpx.ASGITransport(app=backend_app))
    client = TestClient(app)

    first = client.get("/shuffle").json()
    second = client.get("/shuffle", params={"delay": "2"}).json()
    failed = client.get("/shuffle", params={"delay": "x"}).json()

    assert first["response"]["name"] == "Robin"
    assert first["metadata"]["backendHostname"] == "bird-box"
    assert second["response"]["name"] == "Wren"
    assert sleeps.calls == [2.0]
    assert failed["metadata"]["backendStatusCode"] == 400
    assert 'error parsing query param \\"delay\\"' in failed["error"]


def test_shuffle_call_is_traced():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracing = Tracing(provider.get_tracer("test"), provider)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(503, json={"error": "randomly generated error"})

    _client(handler, tracing=tracing).get("/shuffle")

    spans = {s.name: s for s in exporter.get_finished_spans()}
    call = spans["call_backend"]
    assert call.kind == SpanKind.CLIENT
    assert call.attributes["http.status_code"] == 503
    assert call.status.status_code == StatusCode.ERROR
    assert "traceparent" in seen[0].headers


def test_healthz_and_pages():
    client = _client(lambda request: httpx.Response(200, json=BIRD_BODY))

    assert client.get("/healthz").json() == {"status": "healthy"}
    index = client.get("/")
    assert index.status_code == 200
    assert "shuffle-btn" in index.text
    admin = client.get("/admin")
    assert admin.status_code == 200
    assert "error-rate" in admin.text
    assert client.get("/static/app.js").status_code == 200


def test_bad_backend_url_refuses_to_start():
    with pytest.raises(ValueError):
        create_app(FrontendSettings(bind_addr="127.0.0.1:6060", backend_url="backend:7000", tracing_url=None))


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (0, "0s"),
        (0.0000004, "0s"),
        (0.000345678, "346µs"),
        (0.001, "1ms"),
        (0.0123456, "12ms"),
        (0.9996, "1s"),
        (1.5, "1.5s"),
        (62.25, "1m2.25s"),
        (3600, "1h0m0s"),
    ],
)
def test_format_duration(seconds, expected):
    assert format_duration(round_duration(seconds)) == expected


def test_shuffle_propagates_b3_and_trace_context():
    provider = TracerProvider()
    tracing = Tracing(provider.get_tracer("test"), provider)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=BIRD_BODY)

    _client(handler, tracing=tracing).get("/shuffle")

    headers = seen[0].headers
    assert "traceparent" in headers
    assert "x-b3-traceid" in headers
    assert "x-b3-spanid" in headers
    assert headers["x-b3-traceid"] in headers["traceparent"]


def test_shuffle_without_tracing_sends_no_trace_headers():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=BIRD_BODY)

    _client(handler).get("/shuffle")

    assert "traceparent" not in seen[0].headers
    assert "x-b3-traceid" not in seen[0].headers


def test_shuffle_asks_backend_to_close_connection():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=BIRD_BODY)

    _client(handler).get("/shuffle")

    assert seen[0].headers["connection"] == "close"


def test_shuffle_invalid_json_error_is_one_line():
    def handler(request):
        return httpx.Response(200, content=b'{"metadata": 7}', headers={"content-type": "application/json"})

    error = _client(handler).get("/shuffle").json()["error"]

    assert error.startswith("json unmarshalling response body: ")
    assert "\n" not in error
