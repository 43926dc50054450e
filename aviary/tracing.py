from __future__ import annotations

import ipaddress
import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.zipkin.json import ZipkinExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.propagators.textmap import TextMapPropagator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from .settings import split_bind_addr

logger = logging.getLogger(__name__)


def mesh_propagator() -> TextMapPropagator:
    """W3C trace context plus the B3 headers Envoy/Zipkin meshes join spans on."""
    return CompositePropagator([TraceContextTextMapPropagator(), B3MultiFormat()])


class Tracing:
    """Tracing handle injected into an app at construction time.

    Spans are started from ``self.tracer`` and the FastAPI instrumentation is
    given the provider explicitly; no global tracer provider is installed.
    """

    def __init__(
        self,
        tracer: trace.Tracer,
        provider: TracerProvider | None = None,
        propagator: TextMapPropagator | None = None,
    ) -> None:
        self.tracer = tracer
        self.provider = provider
        self.propagator = propagator or mesh_propagator()

    @classmethod
    def disabled(cls) -> Tracing:
        return cls(trace.NoOpTracer())

    def inject(self, headers) -> None:
        """Write the current span's context into outbound request headers."""
        self.propagator.inject(headers)

    def instrument(self, app: FastAPI, excluded_urls: str | None = None) -> None:
        """Add a server span around every request handled by ``app``."""
        if self.provider is None:
            return
        FastAPIInstrumentor.instrument_app(app, tracer_provider=self.provider, excluded_urls=excluded_urls)

    def shutdown(self) -> None:
        if self.provider is not None:
            self.provider.shutdown()


def local_endpoint(bind_addr: str) -> dict[str, object]:
    """Zipkin local endpoint fields for a bind address; hostnames only keep the port."""
    host, port = split_bind_addr(bind_addr)
    fields: dict[str, object] = {"local_node_port": port}
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return fields
    fields["local_node_ipv4" if ip.version == 4 else "local_node_ipv6"] = str(ip)
    return fields


def init_tracing(collector_url: str, bind_addr: str, service_name: str) -> Tracing:
    """Report spans to a Zipkin-compatible collector at ``collector_url``."""
    exporter = ZipkinExporter(
        endpoint=f"{collector_url.rstrip('/')}/api/v2/spans",
        **local_endpoint(bind_addr),
    )
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter))

    # The ASGI instrumentation extracts incoming context with the process-wide
    # propagator only.
    propagator = mesh_propagator()
    set_global_textmap(propagator)

    logger.info("Tracing enabled url=%r service=%s", collector_url, service_name)
    return Tracing(provider.get_tracer(f"aviary.{service_name}"), provider, propagator)
