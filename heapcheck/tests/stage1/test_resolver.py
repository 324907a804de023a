# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import pytest

from heapcheck.core.errors import MalformedModel, UnresolvedReference
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.model.scopes import Placement, ScopeKind, VarKind
from heapcheck.stage1.closures import CaptureKind
from heapcheck.stage1.resolver import resolve
from heapcheck.test_support import (
	assign,
	call,
	closure,
	counting_loop,
	do,
	extern,
	fn,
	go,
	let,
	lit,
	program,
	ret,
	var,
)


def test_variables_are_created_in_declaration_order() -> None:
	prog = program(
		fn(
			"f",
			[let("x", lit(1)), let("y", lit("s")), ret(var("x"))],
			params=[("a", TypeTag.PRIMITIVE)],
			results=[TypeTag.PRIMITIVE],
		),
		globals=[let("g", lit(0))],
	)
	res = resolve(prog)
	assert [v.qualified_name for v in res.variables] == ["g", "f.a", "f.x", "f.y"]
	assert [v.kind for v in res.variables] == [VarKind.GLOBAL, VarKind.PARAM, VarKind.LOCAL, VarKind.LOCAL]
	assert res.variables[3].tag is TypeTag.STRING
	assert all(v.placement is Placement.UNRESOLVED for v in res.variables)
	assert all(not v.facts for v in res.variables)
	assert res.root.kind is ScopeKind.ROOT


def test_closure_capture_set_is_sorted_and_transitive() -> None:
	inner = closure([assign("b", var("a"))])
	outer = closure([let("h", inner), do("h")])
	prog = program(fn("f", [let("b", lit(0)), let("a", lit(1)), let("g", outer), do("g")]))
	res = resolve(prog)
	outer_info = res.closures[outer]
	inner_info = res.closures[inner]
	assert outer_info.label == "f.func1"
	assert inner_info.label == "f.func2"
	assert [c.variable.name for c in outer_info.captures] == ["b", "a"]
	assert [c.variable.name for c in inner_info.captures] == ["b", "a"]
	by_name = {c.variable.name: c for c in inner_info.captures}
	assert by_name["b"].kinds == frozenset({CaptureKind.WRITE})
	assert by_name["a"].kinds == frozenset({CaptureKind.READ})
	assert by_name["b"].writes


def test_closure_params_and_own_locals_are_not_captures() -> None:
	lit_ = closure([let("y", var("p")), ret(var("y"))], params=[("p", TypeTag.PRIMITIVE)], results=[TypeTag.PRIMITIVE])
	prog = program(fn("f", [let("k", lit_), do("k", lit(3))]))
	res = resolve(prog)
	assert res.closures[lit_].captures == ()


def test_globals_are_never_captures() -> None:
	body = closure([assign("g", lit(2))])
	prog = program(fn("f", [let("c", body), do("c")]), globals=[let("g", lit(1))])
	res = resolve(prog)
	assert res.closures[body].captures == ()


def test_address_of_is_recorded_as_address_capture() -> None:
	body = closure([let("p", M.AddrOf("x"))])
	prog = program(fn("f", [let("x", lit(1)), let("c", body), do("c")]))
	res = resolve(prog)
	(cap,) = res.closures[body].captures
	assert cap.kinds == frozenset({CaptureKind.ADDRESS})


def test_let_initializer_refers_to_outer_declaration() -> None:
	loop = counting_loop("i", 3, [let("i", var("i"))])
	prog = program(fn("f", [loop]))
	res = resolve(prog)
	ctx = res.loop_by_node[loop]
	inner = res.decl(loop.body[0])
	assert ctx.control is res.ref(loop.body[0].value)
	assert inner is not ctx.control
	assert inner.scope is ctx.body_scope
	assert ctx.control.kind is VarKind.LOOP_CONTROL
	assert ctx.label == "f#loop1"
	assert not ctx.per_iteration_copy


def test_undefined_name_in_closure_raises_unresolved_reference() -> None:
	prog = program(fn("main", [go(closure([do("use", var("ghost"))]))]), externs=[extern("use", ("v", TypeTag.PRIMITIVE))])
	with pytest.raises(UnresolvedReference) as excinfo:
		resolve(prog)
	assert excinfo.value.name == "ghost"
	assert excinfo.value.message == "undefined: ghost in main.func1"


def test_undefined_callee_raises_unresolved_reference() -> None:
	prog = program(fn("main", [do("missing")]))
	with pytest.raises(UnresolvedReference) as excinfo:
		resolve(prog)
	assert excinfo.value.name == "missing"


def test_variable_used_before_declaration_is_unresolved() -> None:
	prog = program(fn("f", [assign("x", lit(1)), let("x", lit(2))]))
	with pytest.raises(UnresolvedReference):
		resolve(prog)


@pytest.mark.parametrize(
	"body, message",
	[
		([let("x", lit(1)), let("x", lit(2))], "x redeclared in this block"),
		([ret(lit(1))], "wrong number of return values"),
		([M.Spawn(M.Var("f"))], "expression in go must be function call"),
		([counting_loop("i", 3, step=0)], "loop step must be positive"),
		([let("x")], "declaration needs a type or an initializer"),
	],
)
def test_structural_problems_raise_malformed_model(body, message) -> None:
	prog = program(fn("f", body))
	with pytest.raises(MalformedModel) as excinfo:
		resolve(prog)
	assert message in excinfo.value.message


def test_duplicate_functions_are_malformed() -> None:
	with pytest.raises(MalformedModel):
		resolve(program(fn("f"), fn("f")))


def test_shared_closure_literal_is_malformed() -> None:
	shared = closure()
	prog = program(fn("f", [let("a", shared), let("b", shared)]))
	with pytest.raises(MalformedModel):
		resolve(prog)


def test_argument_count_is_checked_for_known_callees() -> None:
	prog = program(
		fn("g", params=[("a", TypeTag.PRIMITIVE)]),
		fn("f", [do("g")]),
	)
	with pytest.raises(MalformedModel) as excinfo:
		resolve(prog)
	assert "wrong number of arguments in call to g" in excinfo.value.message


def test_multi_let_takes_tags_from_callee_results() -> None:
	prog = program(
		fn("pair", [ret(M.AddrOf("a"), lit(1))], results=[TypeTag.POINTER, TypeTag.PRIMITIVE]),
		fn("f", [M.MultiLet([M.Binding("p"), M.Binding("n")], call("pair"))]),
	)
	# `pair` returns the address of an undeclared name.
	with pytest.raises(UnresolvedReference):
		resolve(prog)
	prog.functions[0].body.insert(0, let("a", lit(0)))
	res = resolve(prog)
	f_vars = [v for v in res.variables if v.function == "f"]
	assert [(v.name, v.tag) for v in f_vars] == [("p", TypeTag.POINTER), ("n", TypeTag.PRIMITIVE)]
