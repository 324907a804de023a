# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Human and JSON rendering of placement decisions and simulator traces.

The text format is stable and byte-for-byte reproducible:

  <location>: <name> escapes to heap: <reason>
  <location>: <name> does not escape          (verbose only)
"""

from __future__ import annotations

from typing import List, Optional

from heapcheck.core.diagnostics import Diagnostic
from heapcheck.core.errors import HeapcheckError
from heapcheck.escape.placement import PlacementDecision, PlacementResult
from heapcheck.simulate.iteration import LoopTrace, ObservationTrace


def format_decision(decision: PlacementDecision) -> str:
	where = decision.variable.loc.format()
	if decision.is_heap:
		return f"{where}: {decision.name} escapes to heap: {decision.reason.describe()}"
	return f"{where}: {decision.name} does not escape"


def format_decisions(result: PlacementResult, verbose: bool = False) -> List[str]:
	"""One line per heap-placed variable in declaration order; stack ones too when `verbose`."""
	return [format_decision(d) for d in result if verbose or d.is_heap]


def format_diagnostic(diag: Diagnostic) -> str:
	code = f" [{diag.code}]" if diag.code else ""
	return f"{diag.span.format()}: {diag.severity}{code}: {diag.message}"


def _format_value(value: object) -> str:
	if value is None:
		return "?"
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, str):
		return f'"{value}"'
	return str(value)


def format_loop(trace: LoopTrace) -> List[str]:
	mode = "per-iteration" if trace.per_iteration_copy else "shared"
	if trace.skipped:
		return [f"{trace.label} ({mode}): skipped: {trace.skipped}"]
	lines = [f"{trace.label} ({mode}): {trace.iterations} iterations, final {_format_value(trace.final_value)}"]
	for obs in trace.observations:
		when = "deferred" if obs.deferred else "sync"
		lines.append(f"  iter {obs.iteration}: {obs.observer} reads {obs.variable} = {_format_value(obs.value)} ({when})")
	return lines


def format_trace(trace: ObservationTrace) -> List[str]:
	lines: List[str] = []
	for loop in trace:
		lines.extend(format_loop(loop))
	lines.extend(format_diagnostic(d) for d in trace.diagnostics)
	return lines


def decision_to_json(decision: PlacementDecision) -> dict:
	"""Render a placement decision to a JSON-friendly dict."""
	span = decision.variable.loc
	return {
		"function": decision.function,
		"name": decision.name,
		"placement": decision.placement.name.lower(),
		"reason": decision.reason.name if decision.reason is not None else None,
		"reason_text": decision.reason.describe() if decision.reason is not None else None,
		"facts": [f.name for f in decision.facts],
		"file": span.file,
		"line": span.line,
		"column": span.column,
	}


def diag_to_json(diag: Diagnostic, phase: Optional[str] = None, source: Optional[str] = None) -> dict:
	"""Render a Diagnostic to a structured JSON-friendly dict."""
	return {
		"phase": diag.phase or phase,
		"code": diag.code,
		"message": diag.message,
		"severity": diag.severity,
		"file": diag.span.file or source,
		"line": diag.span.line,
		"column": diag.span.column,
		"notes": list(diag.notes),
	}


def error_to_diagnostic(err: HeapcheckError, phase: str) -> Diagnostic:
	return Diagnostic(message=err.message, code=err.reason_code, phase=phase, severity="error", span=err.span)


def trace_to_json(trace: ObservationTrace) -> List[dict]:
	loops = []
	for loop in trace:
		loops.append(
			{
				"loop": loop.label,
				"per_iteration_copy": loop.per_iteration_copy,
				"iterations": loop.iterations,
				"final_value": loop.final_value,
				"skipped": loop.skipped,
				"observations": [
					{
						"observer": o.observer,
						"iteration": o.iteration,
						"variable": o.variable,
						"value": o.value,
						"deferred": o.deferred,
						"shared": o.shared,
					}
					for o in loop.observations
				],
			}
		)
	return loops


__all__ = [
	"format_decision",
	"format_decisions",
	"format_diagnostic",
	"format_trace",
	"decision_to_json",
	"diag_to_json",
	"error_to_diagnostic",
	"trace_to_json",
]
