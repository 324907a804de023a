# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Shared helpers for tests that build program models by hand.

These builders avoid re-spelling node constructors for the common shapes
(functions, closures, counting loops, calls) so test data reads close to the
Go-flavoured source the front end accepts. Spans are left unknown unless a
test passes `line=`.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple, Union

from heapcheck.core.span import Span
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag

ParamSpec = Union[M.Param, Tuple[str, TypeTag]]


def at(line: int, column: int = 1, file: Optional[str] = None) -> Span:
	return Span(file=file, line=line, column=column)


def _params(params: Iterable[ParamSpec]) -> List[M.Param]:
	return [p if isinstance(p, M.Param) else M.Param(p[0], p[1]) for p in params]


def _results(results: Iterable[Union[TypeTag, M.Result]]) -> List[M.Result]:
	return [r if isinstance(r, M.Result) else M.Result(r) for r in results]


def fn(
	name: str,
	body: Sequence[M.Stmt] = (),
	params: Iterable[ParamSpec] = (),
	results: Iterable[Union[TypeTag, M.Result]] = (),
) -> M.FunctionDecl:
	return M.FunctionDecl(name=name, params=_params(params), results=_results(results), body=list(body))


def closure(
	body: Sequence[M.Stmt] = (),
	params: Iterable[ParamSpec] = (),
	results: Iterable[Union[TypeTag, M.Result]] = (),
) -> M.ClosureLit:
	return M.ClosureLit(params=_params(params), results=_results(results), body=list(body))


def extern(name: str, *params: ParamSpec, results: Iterable[TypeTag] = ()) -> M.ExternDecl:
	return M.ExternDecl(name=name, params=_params(params), results=_results(results))


def program(*functions: M.FunctionDecl, globals: Sequence[M.Let] = (), externs: Sequence[M.ExternDecl] = (), file: Optional[str] = None) -> M.Program:
	return M.Program(functions=list(functions), globals=list(globals), externs=list(externs), file=file)


def var(name: str) -> M.Var:
	return M.Var(name)


def lit(value: object) -> M.Lit:
	return M.Lit(value)


def let(name: str, value: Optional[M.Expr] = None, tag: Optional[TypeTag] = None, line: Optional[int] = None) -> M.Let:
	return M.Let(name=name, value=value, tag=tag, loc=at(line) if line is not None else Span())


def assign(name: str, value: M.Expr) -> M.Assign:
	return M.Assign(target=name, value=value)


def call(callee: Union[str, M.Expr], *args: M.Expr) -> M.Call:
	target = M.Var(callee) if isinstance(callee, str) else callee
	return M.Call(callee=target, args=list(args))


def do(callee: Union[str, M.Expr], *args: M.Expr) -> M.ExprStmt:
	return M.ExprStmt(call(callee, *args))


def go(callee: Union[str, M.Expr], *args: M.Expr) -> M.Spawn:
	return M.Spawn(call(callee, *args))


def ret(*values: M.Expr) -> M.Return:
	return M.Return(values=list(values))


def counting_loop(
	name: str,
	stop: Union[int, M.Expr],
	body: Sequence[M.Stmt] = (),
	*,
	start: Union[int, M.Expr] = 0,
	step: int = 1,
	fresh: bool = False,
) -> M.Loop:
	"""`for name := start; name < stop; name += step { body }`"""
	return M.Loop(
		var=name,
		start=M.Lit(start) if isinstance(start, int) else start,
		stop=M.Lit(stop) if isinstance(stop, int) else stop,
		body=list(body),
		step=step,
		per_iteration_copy=fresh,
	)


def range_loop(name: str, count: Union[int, M.Expr], body: Sequence[M.Stmt] = (), *, fresh: bool = False) -> M.Loop:
	"""`for name := range count { body }`"""
	return M.Loop(
		var=name,
		start=M.Lit(0),
		stop=M.Lit(count) if isinstance(count, int) else count,
		body=list(body),
		per_iteration_copy=fresh,
		range_form=True,
	)


__all__ = [
	"at",
	"fn",
	"closure",
	"extern",
	"program",
	"var",
	"lit",
	"let",
	"assign",
	"call",
	"do",
	"go",
	"ret",
	"counting_loop",
	"range_loop",
]
