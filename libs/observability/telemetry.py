"""
OpenTelemetry configuration for SelfMonitor services
Tracing setup shared by the HTTP surface and the event consumers
"""

import logging
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

logger = logging.getLogger(__name__)


class TelemetryConfig:
    """OpenTelemetry configuration for SelfMonitor services"""

    def __init__(self,
                 service_name: str,
                 service_version: str = "1.0.0",
                 *,
                 enabled: bool = False,
                 endpoint: str = "http://otel-collector:4318/v1/traces",
                 environment: str = "development",
                 sample_rate: float = 0.1):
        self.service_name = service_name
        self.service_version = service_version
        self.enable_tracing = enabled
        self.otlp_endpoint = endpoint
        self.environment = environment
        self.trace_sample_rate = sample_rate

    def setup_tracing(self) -> None:
        """Initialize OpenTelemetry tracing for the service"""
        if not self.enable_tracing:
            logger.info("Tracing disabled via ENABLE_TRACING=false")
            return

        try:
            resource = Resource.create({
                SERVICE_NAME: self.service_name,
                SERVICE_VERSION: self.service_version,
                "service.environment": self.environment,
                "service.namespace": "selfmonitor",
            })
            tracer_provider = TracerProvider(
                resource=resource,
                sampler=ParentBased(TraceIdRatioBased(self.trace_sample_rate)),
            )
            tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=self.otlp_endpoint))
            )
            trace.set_tracer_provider(tracer_provider)
            logger.info(f"OpenTelemetry tracing initialized for {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to initialize tracing: {e}")

    def instrument_fastapi(self, app: Any) -> None:
        """Instrument FastAPI application with auto-tracing"""
        if self.enable_tracing:
            FastAPIInstrumentor.instrument_app(
                app,
                tracer_provider=trace.get_tracer_provider(),
                excluded_urls="/health,/metrics",
            )
            logger.info("FastAPI instrumentation enabled")

    def instrument_libraries(self, engine: Optional[Any] = None) -> None:
        """Instrument Redis and the SQLAlchemy engine backing the aggregation store"""
        if not self.enable_tracing:
            return

        try:
            RedisInstrumentor().instrument()
            if engine is not None:
                SQLAlchemyInstrumentor().instrument(engine=getattr(engine, "sync_engine", engine))
            logger.info("Library instrumentation completed")
        except Exception as e:
            logger.error(f"Failed to instrument libraries: {e}")


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for manual span creation"""
    return trace.get_tracer(name)
