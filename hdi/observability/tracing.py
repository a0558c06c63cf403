from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional


try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.trace import Span, SpanKind
except Exception as e:  # pragma: no cover
    raise RuntimeError("opentelemetry-sdk is required (pip install hdi)") from e


_initialized = False
_enabled = False


@dataclass(frozen=True)
class TraceIds:
    trace_id_hex: str
    span_id_hex: str


def init_tracing(*, enabled: bool, service_name: str) -> None:
    global _initialized, _enabled
    if _initialized and (_enabled or not enabled):
        return

    _initialized = True
    if not enabled:
        _enabled = False
        return

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    _enabled = True


def current_trace_ids() -> Optional[TraceIds]:
    span = trace.get_current_span()
    if span is None:
        return None
    ctx = span.get_span_context()
    if ctx is None or not ctx.is_valid:
        return None
    return TraceIds(trace_id_hex=f"{int(ctx.trace_id):032x}", span_id_hex=f"{int(ctx.span_id):016x}")


@contextmanager
def start_span(
    name: str,
    *,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Optional[Mapping[str, Any]] = None,
) -> Iterator[Span]:
    tracer = trace.get_tracer("hdi")
    with tracer.start_as_current_span(name, kind=kind) as span:
        if attributes:
            for k, v in attributes.items():
                try:
                    span.set_attribute(str(k), v)
                except Exception:
                    continue
        yield span
