"""Run context carried by log records and spans.

An import run binds a ``RunContext`` once, then moves it through its stages
(``open_store``, ``load``, ``index``). Log formatters and spans read the
current value, so every line emitted while a stage runs is attributable to
that run and stage without threading ids through call signatures.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, replace
from uuid import uuid4


@dataclass(frozen=True, slots=True)
class RunContext:
    trace_id: str
    span_id: str
    run_id: str = ""
    stage: str = ""

    def log_fields(self) -> dict[str, str]:
        """Non-empty fields, keyed the way they appear in structured logs."""
        fields = {"trace_id": self.trace_id, "span_id": self.span_id, "run_id": self.run_id, "stage": self.stage}
        return {key: value for key, value in fields.items() if value}


_run_context: ContextVar[RunContext | None] = ContextVar("geo_address_run_context", default=None)


def new_trace_id() -> str:
    return uuid4().hex


def new_span_id() -> str:
    return uuid4().hex[:16]


def current_run_context() -> RunContext:
    """Return the bound context, creating an anonymous one outside any run."""
    ctx = _run_context.get()
    if ctx is None:
        ctx = RunContext(trace_id=new_trace_id(), span_id=new_span_id())
        _run_context.set(ctx)
    return ctx


def bind_run(run_id: str, *, stage: str = "") -> RunContext:
    """Start a fresh trace for ``run_id``; replaces whatever was bound before."""
    ctx = RunContext(trace_id=new_trace_id(), span_id=new_span_id(), run_id=run_id, stage=stage)
    _run_context.set(ctx)
    return ctx


def enter_stage(stage: str) -> RunContext:
    ctx = replace(current_run_context(), stage=stage)
    _run_context.set(ctx)
    return ctx


def bind_span(span_id: str) -> RunContext:
    """Point log correlation at the active span, keeping trace, run and stage."""
    ctx = replace(current_run_context(), span_id=span_id)
    _run_context.set(ctx)
    return ctx


def clear_run_context() -> None:
    _run_context.set(None)
