# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Command line driver: parse model sources, decide placements, print them.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List

from heapcheck.core.diagnostics import Diagnostic
from heapcheck.core.errors import HeapcheckError
from heapcheck.escape.placement import analyze
from heapcheck.parser import ParseError, parse_file
from heapcheck.report import (
	decision_to_json,
	diag_to_json,
	error_to_diagnostic,
	format_decisions,
	format_diagnostic,
	format_trace,
	trace_to_json,
)
from heapcheck.simulate.iteration import simulate_iterations

logger = logging.getLogger(__name__)


def _phase_of(err: HeapcheckError) -> str:
	return "parser" if isinstance(err, ParseError) else "analysis"


def _check_file(path: Path, args: argparse.Namespace) -> dict:
	"""Analyze one source file; returns a JSON-friendly record."""
	record: dict = {"file": str(path), "decisions": [], "diagnostics": [], "loops": [], "lines": [], "errors": []}
	try:
		program = parse_file(path)
		result = analyze(program)
	except HeapcheckError as err:
		diag = error_to_diagnostic(err, _phase_of(err))
		record["diagnostics"].append(diag_to_json(diag, source=str(path)))
		record["failed"] = True
		record["errors"] = [format_diagnostic(diag)]
		return record
	except OSError as err:
		diag = Diagnostic(message=f"cannot read source: {err.strerror}", phase="driver")
		record["diagnostics"].append(diag_to_json(diag, source=str(path)))
		record["failed"] = True
		record["errors"] = [f"{path}: error: {diag.message}"]
		return record
	logger.debug("%s: %d decisions", path, len(result))
	record["decisions"] = [decision_to_json(d) for d in result if args.verbose or d.is_heap]
	lines = format_decisions(result, verbose=args.verbose)
	failed = False
	if args.simulate:
		trace = simulate_iterations(program, result)
		record["loops"] = trace_to_json(trace)
		record["diagnostics"].extend(diag_to_json(d, source=str(path)) for d in trace.diagnostics)
		lines.extend(format_trace(trace))
		failed = bool(trace.violations)
	record["failed"] = failed
	record["lines"] = lines
	return record


def main(argv: List[str] | None = None) -> int:
	"""
	Decide stack/heap placement for every variable of the given model sources.

	Exit code 0 when every file analyzes cleanly, 1 on parse errors, analysis
	errors (`UnresolvedReference`, `MalformedModel`) or simulator violations.
	With --json, prints one structured payload with the exit_code.
	"""
	parser = argparse.ArgumentParser(prog="heapcheck", description="escape analysis and stack/heap placement")
	parser.add_argument("source", type=Path, nargs="+", help="Path(s) to model source file(s)")
	parser.add_argument(
		"--json",
		action="store_true",
		help="Emit decisions and diagnostics as JSON",
	)
	parser.add_argument(
		"-v",
		"--verbose",
		action="store_true",
		help="Also report variables that stay on the stack",
	)
	parser.add_argument(
		"--simulate",
		action="store_true",
		help="Replay loop iterations and report what closures and tasks observe",
	)
	parser.add_argument("--debug", action="store_true", help="Log analysis steps to stderr")
	args = parser.parse_args(argv)

	logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING, format="%(name)s: %(message)s")

	records = [_check_file(path, args) for path in args.source]
	exit_code = 1 if any(r["failed"] for r in records) else 0
	if args.json:
		payload = {
			"exit_code": exit_code,
			"files": [{k: v for k, v in r.items() if k not in ("lines", "errors", "failed")} for r in records],
		}
		print(json.dumps(payload))
		return exit_code
	for record in records:
		for line in record["lines"]:
			print(line)
		for line in record["errors"]:
			print(line, file=sys.stderr)
	return exit_code


__all__ = ["main"]
