# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import json

from heapcheck import analyze, simulate_iterations
from heapcheck.core.diagnostics import Diagnostic
from heapcheck.core.span import Span
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.report import (
	decision_to_json,
	diag_to_json,
	format_decisions,
	format_diagnostic,
	format_trace,
	trace_to_json,
)
from heapcheck.test_support import closure, counting_loop, do, extern, fn, go, let, lit, program, ret, var


def _golden_program(file: str | None = "golden.go") -> M.Program:
	return program(
		fn("newInt", [let("v", lit(42), line=2), ret(M.AddrOf("v"))], results=[TypeTag.POINTER]),
		fn(
			"sum",
			[let("a", lit(1), line=6), let("b", lit(2), line=7), ret(M.BinOp(M.BinaryOp.ADD, var("a"), var("b")))],
			results=[TypeTag.PRIMITIVE],
		),
		fn(
			"show",
			[let("n", lit(3), line=11), let("x", var("n"), tag=TypeTag.DYNAMIC, line=12)],
		),
		file=file,
	)


def test_heap_lines_in_declaration_order() -> None:
	lines = format_decisions(analyze(_golden_program()))
	assert lines == [
		"golden.go:2:1: v escapes to heap: address returned from function",
		"golden.go:11:1: n escapes to heap: boxed into dynamic-type container",
	]


def test_verbose_lists_stack_variables_too() -> None:
	lines = format_decisions(analyze(_golden_program()), verbose=True)
	assert lines == [
		"golden.go:2:1: v escapes to heap: address returned from function",
		"golden.go:6:1: a does not escape",
		"golden.go:7:1: b does not escape",
		"golden.go:11:1: n escapes to heap: boxed into dynamic-type container",
		"golden.go:12:1: x does not escape",
	]


def test_output_is_byte_for_byte_stable() -> None:
	prog = _golden_program()
	first = "\n".join(format_decisions(analyze(prog), verbose=True))
	second = "\n".join(format_decisions(analyze(prog), verbose=True))
	assert first == second


def test_unknown_locations_print_model_placeholder() -> None:
	prog = program(fn("newInt", [let("v", lit(42)), ret(M.AddrOf("v"))], results=[TypeTag.POINTER]))
	assert format_decisions(analyze(prog)) == ["<model>: v escapes to heap: address returned from function"]


def test_model_without_file_keeps_line_numbers() -> None:
	lines = format_decisions(analyze(_golden_program(file=None)))
	assert lines[0] == "<model>:2:1: v escapes to heap: address returned from function"


def test_decision_json_payload() -> None:
	result = analyze(_golden_program())
	payload = decision_to_json(result.lookup("newInt", "v"))
	assert payload == {
		"function": "newInt",
		"name": "v",
		"placement": "heap",
		"reason": "RETURNED_BY_ADDRESS",
		"reason_text": "address returned from function",
		"facts": ["RETURNED_BY_ADDRESS"],
		"file": "golden.go",
		"line": 2,
		"column": 1,
	}
	stack = decision_to_json(result.lookup("sum", "a"))
	assert stack["placement"] == "stack"
	assert stack["reason"] is None


def test_diagnostic_rendering() -> None:
	diag = Diagnostic(message="m", code="placement-mismatch", phase="simulate", span=Span(file="f.go", line=4, column=2))
	assert format_diagnostic(diag) == "f.go:4:2: error [placement-mismatch]: m"
	assert diag_to_json(diag)["file"] == "f.go"
	bare = Diagnostic(message="n", severity="note")
	assert format_diagnostic(bare) == "<model>: note: n"
	assert diag_to_json(bare, phase="driver", source="x.go") == {
		"phase": "driver",
		"code": None,
		"message": "n",
		"severity": "note",
		"file": "x.go",
		"line": None,
		"column": None,
		"notes": [],
	}


def test_trace_rendering() -> None:
	prog = program(
		fn("main", [counting_loop("i", 2, [go(closure([do("use", var("i"))]))])]),
		externs=[extern("use", ("v", TypeTag.PRIMITIVE))],
	)
	trace = simulate_iterations(prog, analyze(prog))
	assert format_trace(trace) == [
		"main#loop1 (shared): 2 iterations, final 2",
		"  iter 0: main.func1 reads i = 2 (deferred)",
		"  iter 1: main.func1 reads i = 2 (deferred)",
	]
	payload = trace_to_json(trace)
	json.dumps(payload)
	assert payload[0]["loop"] == "main#loop1"
	assert [o["value"] for o in payload[0]["observations"]] == [2, 2]
