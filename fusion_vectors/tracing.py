import os

from ddtrace.trace import tracer


def tracing_requested(environ: dict[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get("DD_TRACE_ENABLED", "false").lower() in ("true", "1")


def configure_tracing(enabled: bool | None = None) -> None:
    """
    Spans are only sent when DD_TRACE_ENABLED is set to true (or 1), or
    when `enabled` says so explicitly.
    """
    tracer.enabled = tracing_requested() if enabled is None else enabled
