# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Scope & capture resolution.

One walk over the program model that:
- creates every Scope and Variable (globals, params, named results, locals,
  loop control variables) in declaration order,
- binds each name reference to the Variable (or function/extern) it denotes,
- infers omitted declaration type tags,
- computes each closure's capture set, transitively through nested closures,
- records an IterationContext for every loop.

The walk never writes escape facts or placements; that is the escape
analyzer's job. Any name that resolves to no enclosing declaration raises
`UnresolvedReference`; structural problems raise `MalformedModel`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from heapcheck.core.errors import MalformedModel, UnresolvedReference
from heapcheck.core.span import Span
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.model.scopes import Scope, ScopeKind, Variable, VarKind
from heapcheck.stage1.closures import Capture, CaptureKind, sort_captures

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class FunctionInfo:
	"""A resolved function or closure: its frame scope, bindings and captures."""

	label: str
	node: M.FunctionLike
	scope: Scope
	params: List[Variable] = field(default_factory=list)
	# Named return bindings; None for positional result slots.
	results: List[Optional[Variable]] = field(default_factory=list)
	result_tags: List[TypeTag] = field(default_factory=list)
	parent: Optional["FunctionInfo"] = None
	captures: tuple[Capture, ...] = ()

	@property
	def is_closure(self) -> bool:
		return isinstance(self.node, M.ClosureLit)

	@property
	def named_results(self) -> bool:
		return bool(self.results) and all(r is not None for r in self.results)

	def captured_variables(self) -> List[Variable]:
		return [c.variable for c in self.captures]


@dataclass(eq=False)
class IterationContext:
	"""
	A loop site. `per_iteration_copy` comes from the source construct: when
	false a single control variable cell is shared by all iterations.
	"""

	label: str
	function: FunctionInfo
	node: M.Loop
	control: Variable
	scope: Scope
	body_scope: Scope

	@property
	def per_iteration_copy(self) -> bool:
		return self.node.per_iteration_copy


Callee = Union[FunctionInfo, M.ExternDecl]


@dataclass
class Resolution:
	"""Resolver output consumed (read-only) by the later stages."""

	program: M.Program
	root: Scope
	variables: List[Variable] = field(default_factory=list)
	functions: Dict[str, FunctionInfo] = field(default_factory=dict)
	all_functions: List[FunctionInfo] = field(default_factory=list)
	closures: Dict[M.ClosureLit, FunctionInfo] = field(default_factory=dict)
	externs: Dict[str, M.ExternDecl] = field(default_factory=dict)
	# id(node) -> Variable for Var/AddrOf references and Assign targets.
	refs: Dict[int, Variable] = field(default_factory=dict)
	# id(node) -> Variable for Let/Binding/Param/Result/Loop declarations.
	decls: Dict[int, Variable] = field(default_factory=dict)
	# id(Var node) -> function/extern for references to callable names.
	callables: Dict[int, Callee] = field(default_factory=dict)
	loops: List[IterationContext] = field(default_factory=list)
	loop_by_node: Dict[M.Loop, IterationContext] = field(default_factory=dict)

	def ref(self, node: M.Node) -> Optional[Variable]:
		return self.refs.get(id(node))

	def decl(self, node: object) -> Optional[Variable]:
		return self.decls.get(id(node))

	def callable_for(self, node: M.Node) -> Optional[Callee]:
		return self.callables.get(id(node))

	def info_for(self, node: M.FunctionLike) -> FunctionInfo:
		if isinstance(node, M.ClosureLit):
			return self.closures[node]
		return self.functions[node.name]


def resolve(program: M.Program) -> Resolution:
	"""Resolve scopes, references and capture sets for `program`."""
	return _Resolver(program).run()


class _Resolver:
	def __init__(self, program: M.Program) -> None:
		self.program = program
		self.file = program.file
		self.res = Resolution(program=program, root=Scope(ScopeKind.ROOT, loc=Span(file=program.file)))
		self._order = 0
		self._closure_counters: Dict[str, int] = {}
		self._active: set[int] = set()
		# Capture usage being accumulated per closure: variable -> (kinds, span).
		self._usage: Dict[FunctionInfo, Dict[Variable, tuple[set[CaptureKind], Span]]] = {}
		# Closure literal a function-typed variable was initialised with (inference only).
		self._closure_init: Dict[Variable, FunctionInfo] = {}

	def _span(self, loc: Span) -> Span:
		return Span.from_loc(loc, file=self.file)

	# ----------------------------------------------------------------- entry

	def run(self) -> Resolution:
		res = self.res
		for ext in self.program.externs:
			if ext.name in res.externs:
				raise MalformedModel(f"extern {ext.name} redeclared", self._span(ext.loc))
			res.externs[ext.name] = ext
		for fn in self.program.functions:
			if fn.name in res.functions or fn.name in res.externs:
				raise MalformedModel(f"{fn.name} redeclared in this package", self._span(fn.loc))
			scope = Scope(ScopeKind.FUNCTION, parent=res.root, function=fn.name, loc=self._span(fn.loc))
			res.functions[fn.name] = FunctionInfo(
				label=fn.name, node=fn, scope=scope, result_tags=[r.tag for r in fn.results]
			)
		for glob in self.program.globals:
			if glob.name in res.functions or glob.name in res.externs:
				raise MalformedModel(f"{glob.name} redeclared in this package", self._span(glob.loc))
			self._let(glob, res.root, None, kind=VarKind.GLOBAL)
		for fn in self.program.functions:
			self._function(res.functions[fn.name])
		logger.debug(
			"resolved %d variables, %d functions, %d closures, %d loops",
			len(res.variables),
			len(res.functions),
			len(res.closures),
			len(res.loops),
		)
		return res

	# ---------------------------------------------------------- declarations

	def _declare(
		self,
		scope: Scope,
		name: str,
		tag: TypeTag,
		kind: VarKind,
		loc: Span,
		owner: Optional[FunctionInfo],
		node: object,
	) -> Variable:
		var = Variable(
			name=name,
			tag=tag,
			kind=kind,
			scope=scope,
			order=self._order,
			loc=self._span(loc),
			function=owner.label if owner is not None else None,
		)
		self._order += 1
		scope.declare(var)
		self.res.variables.append(var)
		self.res.decls[id(node)] = var
		return var

	def _function(self, info: FunctionInfo) -> None:
		node = info.node
		if id(node) in self._active:
			raise MalformedModel(f"{info.label} contains itself", self._span(node.loc))
		self._active.add(id(node))
		self.res.all_functions.append(info)
		if info.is_closure:
			self._usage[info] = {}
		for param in node.params:
			info.params.append(self._declare(info.scope, param.name, param.tag, VarKind.PARAM, param.loc, info, param))
		named = [r for r in node.results if r.name]
		if named and len(named) != len(node.results):
			raise MalformedModel(f"{info.label}: mixed named and unnamed results", self._span(node.loc))
		info.result_tags = [r.tag for r in node.results]
		for result in node.results:
			if result.name:
				info.results.append(self._declare(info.scope, result.name, result.tag, VarKind.RESULT, result.loc, info, result))
			else:
				info.results.append(None)
		self._block(node.body, info.scope, info)
		if info.is_closure:
			usage = self._usage.pop(info)
			info.captures = sort_captures(
				Capture(variable=var, kinds=frozenset(kinds), span=span) for var, (kinds, span) in usage.items()
			)
			logger.debug("%s captures %s", info.label, [c.variable.name for c in info.captures])
		self._active.discard(id(node))

	def _closure(self, node: M.ClosureLit, scope: Scope, owner: FunctionInfo) -> FunctionInfo:
		if node in self.res.closures:
			raise MalformedModel("closure literal appears more than once in the model", self._span(node.loc))
		top = owner
		while top.parent is not None:
			top = top.parent
		if node.label:
			label = node.label
		else:
			count = self._closure_counters.get(top.label, 0) + 1
			self._closure_counters[top.label] = count
			label = f"{top.label}.func{count}"
		info = FunctionInfo(
			label=label,
			node=node,
			scope=Scope(ScopeKind.FUNCTION, parent=scope, function=label, loc=self._span(node.loc)),
			parent=owner,
		)
		self.res.closures[node] = info
		self._function(info)
		return info

	# ------------------------------------------------------------ statements

	def _block(self, stmts: List[M.Stmt], scope: Scope, owner: FunctionInfo) -> None:
		if id(stmts) in self._active:
			raise MalformedModel("statement list contains itself", scope.loc)
		self._active.add(id(stmts))
		for stmt in stmts:
			self._stmt(stmt, scope, owner)
		self._active.discard(id(stmts))

	def _stmt(self, stmt: M.Stmt, scope: Scope, owner: FunctionInfo) -> None:
		if isinstance(stmt, M.Let):
			self._let(stmt, scope, owner, kind=VarKind.LOCAL)
		elif isinstance(stmt, M.MultiLet):
			self._multi_let(stmt, scope, owner)
		elif isinstance(stmt, M.Assign):
			self._expr(stmt.value, scope, owner)
			var = self._lookup_var(stmt.target, scope, stmt.loc, owner)
			self.res.refs[id(stmt)] = var
			self._use(var, owner, CaptureKind.WRITE, stmt.loc)
		elif isinstance(stmt, M.Store):
			self._expr(stmt.pointer, scope, owner)
			self._expr(stmt.value, scope, owner)
		elif isinstance(stmt, M.ExprStmt):
			self._expr(stmt.expr, scope, owner)
		elif isinstance(stmt, M.Return):
			self._return(stmt, scope, owner)
		elif isinstance(stmt, M.If):
			self._expr(stmt.cond, scope, owner)
			self._block(stmt.then_body, Scope(ScopeKind.BLOCK, parent=scope, function=owner.label, loc=self._span(stmt.loc)), owner)
			self._block(stmt.else_body, Scope(ScopeKind.BLOCK, parent=scope, function=owner.label, loc=self._span(stmt.loc)), owner)
		elif isinstance(stmt, M.Loop):
			self._loop(stmt, scope, owner)
		elif isinstance(stmt, M.Spawn):
			if not isinstance(stmt.call, M.Call):
				raise MalformedModel("expression in go must be function call", self._span(stmt.loc))
			self._expr(stmt.call, scope, owner)
		else:
			raise MalformedModel(f"unsupported statement {type(stmt).__name__}", self._span(getattr(stmt, "loc", Span())))

	def _let(self, stmt: M.Let, scope: Scope, owner: Optional[FunctionInfo], *, kind: VarKind) -> Variable:
		# The initializer is resolved before the name is declared, so `x := x`
		# refers to the outer `x`.
		if stmt.value is not None:
			self._expr(stmt.value, scope, owner)
		if stmt.tag is None and stmt.value is None:
			raise MalformedModel(f"{stmt.name}: declaration needs a type or an initializer", self._span(stmt.loc))
		tag = stmt.tag if stmt.tag is not None else self._infer(stmt.value, scope)
		var = self._declare(scope, stmt.name, tag, kind, stmt.loc, owner, stmt)
		if isinstance(stmt.value, M.ClosureLit):
			self._closure_init[var] = self.res.closures[stmt.value]
		return var

	def _multi_let(self, stmt: M.MultiLet, scope: Scope, owner: FunctionInfo) -> None:
		self._expr(stmt.value, scope, owner)
		tags = self._result_tags(stmt.value, scope)
		if tags is not None and len(tags) != len(stmt.bindings):
			raise MalformedModel(
				f"assignment mismatch: {len(stmt.bindings)} variables but {len(tags)} values",
				self._span(stmt.loc),
			)
		for idx, binding in enumerate(stmt.bindings):
			if binding.name == "_":
				continue
			tag = binding.tag or (tags[idx] if tags is not None else TypeTag.PRIMITIVE)
			self._declare(scope, binding.name, tag, VarKind.LOCAL, binding.loc, owner, binding)

	def _return(self, stmt: M.Return, scope: Scope, owner: FunctionInfo) -> None:
		for value in stmt.values:
			self._expr(value, scope, owner)
		want = len(owner.result_tags)
		got = len(stmt.values)
		if got == 0:
			if want and not owner.named_results:
				raise MalformedModel(f"{owner.label}: not enough return values", self._span(stmt.loc))
			return
		if got == want:
			return
		if got == 1 and want > 1:
			tags = self._result_tags(stmt.values[0], scope)
			if tags is not None and len(tags) == want:
				return
		raise MalformedModel(f"{owner.label}: wrong number of return values (want {want}, got {got})", self._span(stmt.loc))

	def _loop(self, stmt: M.Loop, scope: Scope, owner: FunctionInfo) -> None:
		if stmt in self.res.loop_by_node:
			raise MalformedModel("loop appears more than once in the model", self._span(stmt.loc))
		if stmt.step <= 0:
			raise MalformedModel("loop step must be positive", self._span(stmt.loc))
		self._expr(stmt.start, scope, owner)
		self._expr(stmt.stop, scope, owner)
		header = Scope(ScopeKind.LOOP, parent=scope, function=owner.label, loc=self._span(stmt.loc))
		control = self._declare(header, stmt.var, TypeTag.PRIMITIVE, VarKind.LOOP_CONTROL, stmt.loc, owner, stmt)
		body = Scope(ScopeKind.LOOP_BODY, parent=header, function=owner.label, loc=self._span(stmt.loc))
		index = sum(1 for lp in self.res.loops if lp.function is owner) + 1
		ctx = IterationContext(
			label=f"{owner.label}#loop{index}",
			function=owner,
			node=stmt,
			control=control,
			scope=header,
			body_scope=body,
		)
		self.res.loops.append(ctx)
		self.res.loop_by_node[stmt] = ctx
		self._block(stmt.body, body, owner)

	# ----------------------------------------------------------- expressions

	def _expr(self, expr: M.Expr, scope: Scope, owner: Optional[FunctionInfo]) -> None:
		if isinstance(expr, M.Var):
			self._name_ref(expr, scope, owner)
		elif isinstance(expr, M.AddrOf):
			var = self._lookup_var(expr.name, scope, expr.loc, owner)
			self._bind_ref(expr, var)
			self._use(var, owner, CaptureKind.ADDRESS, expr.loc)
		elif isinstance(expr, M.Lit) or isinstance(expr, M.HeapAlloc):
			return
		elif isinstance(expr, M.BinOp):
			self._expr(expr.left, scope, owner)
			self._expr(expr.right, scope, owner)
		elif isinstance(expr, M.UnaryOp):
			self._expr(expr.operand, scope, owner)
		elif isinstance(expr, M.Deref):
			self._expr(expr.pointer, scope, owner)
		elif isinstance(expr, M.Call):
			self._expr(expr.callee, scope, owner)
			for arg in expr.args:
				self._expr(arg, scope, owner)
			callee = self.res.callables.get(id(expr.callee))
			if callee is not None and len(callee.node.params if isinstance(callee, FunctionInfo) else callee.params) != len(expr.args):
				name = callee.label if isinstance(callee, FunctionInfo) else callee.name
				raise MalformedModel(f"wrong number of arguments in call to {name}", self._span(expr.loc))
		elif isinstance(expr, (M.Box, M.Convert)):
			self._expr(expr.value, scope, owner)
		elif isinstance(expr, M.SeqLit):
			for elem in expr.elements:
				self._expr(elem, scope, owner)
		elif isinstance(expr, M.Append):
			self._expr(expr.seq, scope, owner)
			for value in expr.values:
				self._expr(value, scope, owner)
		elif isinstance(expr, M.ClosureLit):
			if owner is None:
				raise MalformedModel("function literal outside of a function", self._span(expr.loc))
			self._closure(expr, scope, owner)
		else:
			raise MalformedModel(f"unsupported expression {type(expr).__name__}", self._span(getattr(expr, "loc", Span())))

	def _name_ref(self, expr: M.Var, scope: Scope, owner: Optional[FunctionInfo]) -> None:
		var = scope.lookup(expr.name)
		if var is not None:
			self._bind_ref(expr, var)
			self._use(var, owner, CaptureKind.READ, expr.loc)
			return
		callee: Optional[Callee] = self.res.functions.get(expr.name) or self.res.externs.get(expr.name)
		if callee is None:
			raise UnresolvedReference(expr.name, self._span(expr.loc), context=owner.label if owner else None)
		self.res.callables[id(expr)] = callee

	def _lookup_var(self, name: str, scope: Scope, loc: Span, owner: Optional[FunctionInfo]) -> Variable:
		var = scope.lookup(name)
		if var is None:
			if name in self.res.functions or name in self.res.externs:
				raise MalformedModel(f"cannot assign to or take the address of function {name}", self._span(loc))
			raise UnresolvedReference(name, self._span(loc), context=owner.label if owner else None)
		return var

	def _bind_ref(self, node: M.Node, var: Variable) -> None:
		prev = self.res.refs.get(id(node))
		if prev is not None and prev is not var:
			raise MalformedModel(f"reference node for {var.name} is shared between scopes", self._span(getattr(node, "loc", Span())))
		self.res.refs[id(node)] = var

	def _use(self, var: Variable, owner: Optional[FunctionInfo], kind: CaptureKind, loc: Span) -> None:
		"""Record a capture on every closure between `owner` and `var`'s frame."""
		if var.kind is VarKind.GLOBAL:
			return
		info = owner
		while info is not None and info.is_closure:
			if var.scope.is_within(info.scope):
				return
			kinds, span = self._usage[info].setdefault(var, (set(), self._span(loc)))
			kinds.add(kind)
			info = info.parent

	# -------------------------------------------------------------- typing

	def _infer(self, expr: M.Expr, scope: Scope) -> TypeTag:
		if isinstance(expr, M.Lit):
			return TypeTag.STRING if isinstance(expr.value, str) else TypeTag.PRIMITIVE
		if isinstance(expr, M.Var):
			var = self.res.refs.get(id(expr))
			return var.tag if var is not None else TypeTag.FUNCTION
		if isinstance(expr, (M.AddrOf, M.HeapAlloc)):
			return TypeTag.POINTER
		if isinstance(expr, M.Box):
			return TypeTag.DYNAMIC
		if isinstance(expr, M.Convert):
			return expr.target
		if isinstance(expr, (M.SeqLit, M.Append)):
			return TypeTag.SEQUENCE
		if isinstance(expr, M.ClosureLit):
			return TypeTag.FUNCTION
		if isinstance(expr, M.BinOp) and expr.op is M.BinaryOp.ADD:
			left = self._infer(expr.left, scope)
			return TypeTag.STRING if left is TypeTag.STRING else TypeTag.PRIMITIVE
		if isinstance(expr, M.Call):
			tags = self._result_tags(expr, scope)
			if tags is None:
				return TypeTag.PRIMITIVE
			if not tags:
				raise MalformedModel("call with no result used as value", self._span(expr.loc))
			return tags[0]
		return TypeTag.PRIMITIVE

	def _result_tags(self, expr: M.Expr, scope: Scope) -> Optional[List[TypeTag]]:
		"""Result tags of a call whose callee is statically known, else None."""
		if not isinstance(expr, M.Call):
			return None
		callee = expr.callee
		if isinstance(callee, M.ClosureLit):
			return [r.tag for r in callee.results]
		known = self.res.callables.get(id(callee))
		if isinstance(known, FunctionInfo):
			return list(known.result_tags)
		if isinstance(known, M.ExternDecl):
			return [r.tag for r in known.results]
		var = self.res.refs.get(id(callee))
		if var is not None and var in self._closure_init:
			return list(self._closure_init[var].result_tags)
		return None


__all__ = ["FunctionInfo", "IterationContext", "Resolution", "Callee", "resolve"]
