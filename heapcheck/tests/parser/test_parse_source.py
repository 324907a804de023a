# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from pathlib import Path

import pytest

from heapcheck import analyze
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.model.scopes import EscapeFact, Placement
from heapcheck.parser import ParseError, parse_file, parse_source


def test_function_with_named_and_multiple_results() -> None:
	prog = parse_source(
		"""
func divmod(a int, b int) (q int, r int) {
	q = a / b
	r = a % b
	return
}

func pair() (int, *int) {
	x := 1
	return x, &x
}
"""
	)
	divmod, pair = prog.functions
	assert [p.name for p in divmod.params] == ["a", "b"]
	assert [(r.name, r.tag) for r in divmod.results] == [("q", TypeTag.PRIMITIVE), ("r", TypeTag.PRIMITIVE)]
	assert isinstance(divmod.body[0], M.Assign)
	assert divmod.body[0].value.op is M.BinaryOp.DIV
	assert divmod.body[1].value.op is M.BinaryOp.MOD
	assert divmod.body[2] == M.Return(values=[], loc=divmod.body[2].loc)
	assert [r.tag for r in pair.results] == [TypeTag.PRIMITIVE, TypeTag.POINTER]
	assert isinstance(pair.body[1].values[1], M.AddrOf)


def test_locations_point_at_statements() -> None:
	prog = parse_source("func f() {\n\tx := 1\n}\n", file="loc.go")
	stmt = prog.functions[0].body[0]
	assert (stmt.loc.file, stmt.loc.line, stmt.loc.column) == ("loc.go", 2, 2)
	assert prog.file == "loc.go"


def test_loops_fresh_and_range_forms() -> None:
	prog = parse_source(
		"""
func main() {
	for i := 0; i < 3; i++ {
	}
	for fresh i := 2; i < 10; i += 4 {
	}
	for k := range 5 {
	}
	for fresh k := range 2 {
	}
}
"""
	)
	shared, fresh, rng, fresh_rng = prog.functions[0].body
	assert (shared.var, shared.step, shared.per_iteration_copy, shared.range_form) == ("i", 1, False, False)
	assert shared.stop == M.Lit(3, loc=shared.stop.loc)
	assert (fresh.step, fresh.per_iteration_copy) == (4, True)
	assert fresh.start.value == 2
	assert (rng.range_form, rng.per_iteration_copy, rng.stop.value, rng.start.value) == (True, False, 5, 0)
	assert fresh_rng.per_iteration_copy and fresh_rng.range_form


def test_closures_spawn_and_calls() -> None:
	prog = parse_source(
		"""
extern func use(v int)

func main() {
	for i := 0; i < 3; i++ {
		go func() {
			use(i)
		}()
		go func(v int) { use(v) }(i)
	}
	show := func() { use(1) }; show()
}
"""
	)
	(ext,) = prog.externs
	assert ext.name == "use" and ext.params[0].tag is TypeTag.PRIMITIVE
	loop, show, call = prog.functions[0].body
	first, second = loop.body
	assert isinstance(first, M.Spawn)
	assert isinstance(first.call.callee, M.ClosureLit)
	assert first.call.args == []
	assert [p.name for p in second.call.callee.params] == ["v"]
	assert isinstance(show, M.Let) and isinstance(show.value, M.ClosureLit)
	assert isinstance(call, M.ExprStmt) and call.expr.callee.name == "show"


def test_builtins_and_conversions() -> None:
	prog = parse_source(
		"""
var sink *int
var names []string = []string{"a", "b\\n"}

func main() {
	p := new(int)
	*p = 3
	s := []int{}
	s = append(s, *p, 4)
	x := any(s)
	b := []byte("hi")
	t := string(b)
	ok := x == any(1) && !false || -1 < 0
}
"""
	)
	sink, names = prog.globals
	assert sink.tag is TypeTag.POINTER and sink.value is None
	assert names.tag is TypeTag.SEQUENCE
	assert [e.value for e in names.value.elements] == ["a", "b\n"]
	body = prog.functions[0].body
	assert isinstance(body[0].value, M.HeapAlloc)
	assert isinstance(body[1], M.Store) and isinstance(body[1].pointer, M.Var)
	assert isinstance(body[2].value, M.SeqLit) and body[2].value.elements == []
	append = body[3].value
	assert isinstance(append, M.Append) and isinstance(append.values[0], M.Deref)
	assert isinstance(body[4].value, M.Box)
	assert body[5].value.target is TypeTag.SEQUENCE
	assert body[6].value.target is TypeTag.STRING
	cond = body[7].value
	assert cond.op is M.BinaryOp.OR
	assert cond.left.op is M.BinaryOp.AND
	assert cond.right.op is M.BinaryOp.LT
	assert cond.right.left.op is M.UnaryKind.NEG


def test_if_else_chain_and_increment() -> None:
	prog = parse_source(
		"""
func f(n int) int {
	c := 0
	if n < 0 {
		c = -1
	} else if n == 0 {
		c++
	} else {
		return n
	}
	return c
}
"""
	)
	stmt = prog.functions[0].body[1]
	assert isinstance(stmt, M.If)
	(nested,) = stmt.else_body
	assert isinstance(nested, M.If)
	inc = nested.then_body[0]
	assert isinstance(inc, M.Assign) and inc.value.op is M.BinaryOp.ADD
	assert isinstance(nested.else_body[0], M.Return)


def test_semicolons_and_comments() -> None:
	prog = parse_source("func f() { a := 1; b := a; ; return } // trailing\n// only a comment\n")
	assert len(prog.functions[0].body) == 3


def test_multi_let_and_function_types() -> None:
	prog = parse_source(
		"""
func apply(f func(int) int, x int) func() int {
	a, b := split(x)
	return func() int { return f(a) + b }
}

func split(x int) (int, int) {
	return x, x
}
"""
	)
	apply = prog.functions[0]
	assert [p.tag for p in apply.params] == [TypeTag.FUNCTION, TypeTag.PRIMITIVE]
	assert apply.results[0].tag is TypeTag.FUNCTION
	multi = apply.body[0]
	assert [b.name for b in multi.bindings] == ["a", "b"]


def test_parsed_model_analyzes_end_to_end() -> None:
	prog = parse_source(
		"""
func newInt() *int {
	v := 42
	return &v
}

func counter() func() int {
	n := 0
	return func() int {
		n++
		return n
	}
}
""",
		file="e2e.go",
	)
	result = analyze(prog)
	assert result.reason_of("newInt", "v") is EscapeFact.RETURNED_BY_ADDRESS
	assert result.reason_of("counter", "n") is EscapeFact.CAPTURED_BY_ESCAPING_CLOSURE
	assert result.lookup("newInt", "v").variable.loc.format() == "e2e.go:3:2"
	assert all(d.placement is not Placement.UNRESOLVED for d in result)


def test_parse_file_records_path(tmp_path: Path) -> None:
	path = tmp_path / "m.go"
	path.write_text("func main() {}\n")
	prog = parse_file(path)
	assert prog.file == str(path)
	assert prog.functions[0].name == "main"


@pytest.mark.parametrize(
	"source, fragment",
	[
		("func f() {\n\tx :=\n}\n", "syntax error"),
		("func f( {\n}\n", "syntax error"),
		("var x widget\n", "unknown type widget"),
		("func f() {\n\tgo 1\n}\n", "expression in go must be function call"),
		("func f() {\n\tfor i := 0; i > 3; i++ {\n\t}\n}\n", "loop condition must have the form i < bound"),
		("func f() {\n\tfor i := 0; i < 3; j++ {\n\t}\n}\n", "loop post statement must increment i"),
		("func f() {\n\tx := 1 $\n}\n", "unexpected character"),
	],
)
def test_malformed_sources_raise_parse_error(source: str, fragment: str) -> None:
	with pytest.raises(ParseError) as excinfo:
		parse_source(source, file="bad.go")
	assert fragment in excinfo.value.message
	assert excinfo.value.reason_code == "parse-error"
	assert excinfo.value.span.file == "bad.go"
