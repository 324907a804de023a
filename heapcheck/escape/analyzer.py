# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Escape analysis: attach EscapeFacts to variables that must outlive their frame.

Scope:
- Operates on a `Resolution` (scopes, variables, captures already known).
- Flow-insensitive: a points-to map (pointer variable -> variables whose
  address it may hold) and a closure-binding map (function variable ->
  closures it may hold) are grown over every assignment in the model.
- Sinks attach facts: returns, heap-owned collections, dynamic-type boxing,
  concurrent tasks, package-level variables and explicit heap requests.
  Facts are a union (never first-match); once a variable holds a fact its
  pointees receive the same fact and its bound closures escape.
- Interprocedural: every pointer/function parameter gets a synthetic target
  standing for "whatever the caller passed". Facts on that target, and whether
  it reaches a return, form the parameter summary applied at call sites.
  Calls through unknown function values apply nothing.

The analysis iterates whole-model passes until no fact, points-to edge,
binding, escaping closure or summary changes. Every one of those only grows
and all are bounded by the model size, so the iteration terminates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from heapcheck.core.span import Span
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag
from heapcheck.model.scopes import EscapeFact, Variable, VarKind
from heapcheck.stage1.resolver import FunctionInfo, Resolution

logger = logging.getLogger(__name__)

_COMPARISONS = (M.BinaryOp.EQ, M.BinaryOp.NE)


@dataclass
class _Targets:
	"""What an expression's value refers to: variables (by address) and closures."""

	vars: Set[Variable] = field(default_factory=set)
	closures: Set[FunctionInfo] = field(default_factory=set)

	def update(self, other: "_Targets") -> None:
		self.vars |= other.vars
		self.closures |= other.closures


@dataclass
class EscapeAnalysis:
	"""Analyzer output: facts live on the Variables; this records the rest."""

	resolution: Resolution
	escaping_closures: Dict[FunctionInfo, Span] = field(default_factory=dict)
	task_closures: Dict[FunctionInfo, Span] = field(default_factory=dict)
	passes: int = 0


def collect_escape_facts(resolution: Resolution) -> EscapeAnalysis:
	"""Attach escape facts to every variable of `resolution` and return the summary."""
	return _EscapeAnalyzer(resolution).run()


class _EscapeAnalyzer:
	def __init__(self, res: Resolution) -> None:
		self.res = res
		self.out = EscapeAnalysis(resolution=res)
		self.points_to: Dict[Variable, Set[Variable]] = {}
		self.bound: Dict[Variable, Set[FunctionInfo]] = {}
		# Parameter -> synthetic target standing for the caller's argument.
		self.param_targets: Dict[Variable, Variable] = {}
		self.synthetic: Set[Variable] = set()
		# Per function: variables/closures that flow into its results.
		self.returned: Dict[FunctionInfo, Set[Variable]] = {}
		self.returned_closures: Dict[FunctionInfo, Set[FunctionInfo]] = {}
		self._fn_order: Dict[FunctionInfo, int] = {fn: i for i, fn in enumerate(res.all_functions)}
		self.changed = False

	# ----------------------------------------------------------------- entry

	def run(self) -> EscapeAnalysis:
		self._seed()
		while True:
			self.changed = False
			self.out.passes += 1
			for glob in self.res.program.globals:
				self._let(glob, None)
			for fn in self.res.all_functions:
				self._block(fn.node.body, fn)
			self._propagate()
			if not self.changed:
				break
		logger.debug("escape analysis converged after %d passes", self.out.passes)
		return self.out

	def _seed(self) -> None:
		for var in self.res.root.variables:
			self._mark(var, EscapeFact.PACKAGE_LEVEL, var.loc)
		for fn in self.res.all_functions:
			self.returned[fn] = set()
			self.returned_closures[fn] = set()
			for param in fn.params:
				if param.tag not in (TypeTag.POINTER, TypeTag.FUNCTION):
					continue
				target = Variable(
					name=f"*{param.name}",
					tag=TypeTag.PRIMITIVE if param.tag is TypeTag.POINTER else TypeTag.FUNCTION,
					kind=VarKind.PARAM,
					scope=param.scope,
					order=-(len(self.synthetic) + 1),
					loc=param.loc,
					function=param.function,
				)
				self.synthetic.add(target)
				self.param_targets[param] = target
				self.points_to[param] = {target}

	# --------------------------------------------------------------- helpers

	@staticmethod
	def _ordered(vars: Iterable[Variable]) -> List[Variable]:
		return sorted(vars, key=lambda v: (v.order, v.name))

	def _ordered_fns(self, fns: Iterable[FunctionInfo]) -> List[FunctionInfo]:
		return sorted(fns, key=lambda f: self._fn_order.get(f, 0))

	def _mark(self, var: Variable, fact: EscapeFact, span: Span) -> None:
		if not var.add_fact(fact, span):
			return
		self.changed = True
		logger.debug("%s: %s", var.qualified_name, fact.name)
		for pointee in self._ordered(self.points_to.get(var, ())):
			self._mark(pointee, fact, span)
		for closure in self._ordered_fns(self.bound.get(var, ())):
			self._escape_closure(closure, span)

	def _escape_closure(self, closure: FunctionInfo, span: Span) -> None:
		if closure in self.out.escaping_closures:
			return
		self.out.escaping_closures[closure] = span
		self.changed = True
		logger.debug("closure %s escapes", closure.label)
		for cap in closure.captures:
			self._mark(cap.variable, EscapeFact.CAPTURED_BY_ESCAPING_CLOSURE, span)

	def _sink_targets(self, targets: _Targets, fact: EscapeFact, span: Span) -> None:
		for var in self._ordered(targets.vars):
			self._mark(var, fact, span)
		for closure in self._ordered_fns(targets.closures):
			self._escape_closure(closure, span)

	def _sink_value(self, expr: M.Expr, fact: EscapeFact, span: Span) -> None:
		"""The value of `expr` is copied into heap storage: the variable itself and its targets escape."""
		var = self.res.ref(expr) if isinstance(expr, M.Var) else None
		if var is not None:
			self._mark(var, fact, span)
		self._sink_targets(self._targets(expr), fact, span)

	def _box(self, expr: M.Expr, span: Span) -> None:
		"""Convert `expr` into a dynamic-type container; dynamic values are not re-boxed."""
		if self._tag_of(expr) is TypeTag.DYNAMIC:
			return
		self._sink_value(expr, EscapeFact.BOXED_INTO_DYNAMIC_CONTAINER, span)

	def _flow(self, dest: Variable, expr: M.Expr, span: Span) -> None:
		"""`dest = expr`: grow dest's points-to/binding sets and apply destination sinks."""
		if dest.tag is TypeTag.DYNAMIC:
			self._box(expr, span)
		targets = self._targets(expr)
		pts = self.points_to.setdefault(dest, set())
		if not targets.vars <= pts:
			pts |= targets.vars
			self.changed = True
		bound = self.bound.setdefault(dest, set())
		if not targets.closures <= bound:
			bound |= targets.closures
			self.changed = True
		if dest.kind is VarKind.GLOBAL:
			self._sink_targets(targets, EscapeFact.STORED_IN_PACKAGE_VARIABLE, span)

	def _propagate(self) -> None:
		"""Re-apply every held fact along points-to edges added after it was marked."""
		for var in self._ordered(list(self.points_to) + list(self.bound)):
			for fact in var.sorted_facts():
				span = var.facts[fact]
				for pointee in self._ordered(self.points_to.get(var, ())):
					self._mark(pointee, fact, span)
				for closure in self._ordered_fns(self.bound.get(var, ())):
					self._escape_closure(closure, span)

	# --------------------------------------------------------------- typing

	def _tag_of(self, expr: M.Expr) -> Optional[TypeTag]:
		if isinstance(expr, M.Var):
			var = self.res.ref(expr)
			return var.tag if var is not None else TypeTag.FUNCTION
		if isinstance(expr, M.Lit):
			return TypeTag.STRING if isinstance(expr.value, str) else TypeTag.PRIMITIVE
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
		if isinstance(expr, (M.BinOp, M.UnaryOp)):
			return TypeTag.PRIMITIVE
		if isinstance(expr, M.Call):
			known = self.res.callable_for(expr.callee)
			results = None
			if isinstance(known, FunctionInfo):
				results = known.result_tags
			elif isinstance(known, M.ExternDecl):
				results = [r.tag for r in known.results]
			else:
				closures = self._ordered_fns(self._targets(expr.callee).closures)
				if closures:
					results = closures[0].result_tags
			return results[0] if results else None
		return None

	# -------------------------------------------------------------- targets

	def _targets(self, expr: M.Expr) -> _Targets:
		out = _Targets()
		if isinstance(expr, M.Var):
			var = self.res.ref(expr)
			if var is not None:
				out.vars |= self.points_to.get(var, set())
				out.closures |= self.bound.get(var, set())
		elif isinstance(expr, M.AddrOf):
			var = self.res.ref(expr)
			if var is not None:
				out.vars.add(var)
		elif isinstance(expr, M.ClosureLit):
			out.closures.add(self.res.closures[expr])
		elif isinstance(expr, M.Deref):
			for pointee in self._targets(expr.pointer).vars:
				out.vars |= self.points_to.get(pointee, set())
				out.closures |= self.bound.get(pointee, set())
		elif isinstance(expr, M.Box):
			out.update(self._targets(expr.value))
		elif isinstance(expr, M.SeqLit):
			for elem in expr.elements:
				out.update(self._targets(elem))
		elif isinstance(expr, M.Append):
			out.update(self._targets(expr.seq))
			for value in expr.values:
				out.update(self._targets(value))
		elif isinstance(expr, M.Call):
			out.update(self._call_result(expr))
		return out

	def _callees(self, call: M.Call) -> List[FunctionInfo]:
		known = self.res.callable_for(call.callee)
		if isinstance(known, FunctionInfo):
			return [known]
		if isinstance(known, M.ExternDecl):
			return []
		return self._ordered_fns(self._targets(call.callee).closures)

	def _call_result(self, call: M.Call) -> _Targets:
		out = _Targets()
		for callee in self._callees(call):
			returned = self.returned.get(callee, set())
			out.vars |= {v for v in returned if v not in self.synthetic}
			out.closures |= self.returned_closures.get(callee, set())
			for param, arg in zip(callee.params, call.args):
				target = self.param_targets.get(param)
				if target is not None and target in returned:
					out.update(self._targets(arg))
		return out

	# ---------------------------------------------------------- statements

	def _block(self, stmts: List[M.Stmt], fn: FunctionInfo) -> None:
		for stmt in stmts:
			self._stmt(stmt, fn)

	def _stmt(self, stmt: M.Stmt, fn: FunctionInfo) -> None:
		if isinstance(stmt, M.Let):
			self._let(stmt, fn)
		elif isinstance(stmt, M.MultiLet):
			self._expr(stmt.value, fn)
			for binding in stmt.bindings:
				var = self.res.decl(binding)
				if var is not None:
					self._flow(var, stmt.value, binding.loc)
		elif isinstance(stmt, M.Assign):
			self._expr(stmt.value, fn)
			self._flow(self.res.refs[id(stmt)], stmt.value, stmt.loc)
		elif isinstance(stmt, M.Store):
			self._store(stmt, fn)
		elif isinstance(stmt, M.ExprStmt):
			self._expr(stmt.expr, fn)
		elif isinstance(stmt, M.Return):
			self._return(stmt, fn)
		elif isinstance(stmt, M.If):
			self._expr(stmt.cond, fn)
			self._block(stmt.then_body, fn)
			self._block(stmt.else_body, fn)
		elif isinstance(stmt, M.Loop):
			self._expr(stmt.start, fn)
			self._expr(stmt.stop, fn)
			self._block(stmt.body, fn)
		elif isinstance(stmt, M.Spawn):
			self._spawn(stmt, fn)

	def _let(self, stmt: M.Let, fn: Optional[FunctionInfo]) -> None:
		var = self.res.decl(stmt)
		if var is None or stmt.value is None:
			return
		self._expr(stmt.value, fn)
		self._flow(var, stmt.value, stmt.loc)
		if isinstance(stmt.value, M.HeapAlloc):
			self._mark(var, EscapeFact.EXPLICIT_HEAP_REQUEST, stmt.loc)

	def _store(self, stmt: M.Store, fn: FunctionInfo) -> None:
		self._expr(stmt.pointer, fn)
		self._expr(stmt.value, fn)
		for pointee in self._ordered(self._targets(stmt.pointer).vars):
			if pointee in self.synthetic:
				# Written into the caller's memory through an out-parameter.
				self._sink_targets(self._targets(stmt.value), EscapeFact.RETURNED_BY_ADDRESS, stmt.loc)
			else:
				self._flow(pointee, stmt.value, stmt.loc)

	def _return(self, stmt: M.Return, fn: FunctionInfo) -> None:
		for value in stmt.values:
			self._expr(value, fn)
		if not stmt.values:
			for result in fn.results:
				if result is None:
					continue
				targets = _Targets(
					vars=set(self.points_to.get(result, set())),
					closures=set(self.bound.get(result, set())),
				)
				self._returned(targets, fn, stmt.loc)
			return
		for idx, value in enumerate(stmt.values):
			if len(stmt.values) == len(fn.result_tags) and fn.result_tags[idx] is TypeTag.DYNAMIC:
				self._box(value, stmt.loc)
			self._returned(self._targets(value), fn, stmt.loc)

	def _returned(self, targets: _Targets, fn: FunctionInfo, span: Span) -> None:
		returned = self.returned[fn]
		for var in self._ordered(targets.vars):
			if var not in returned:
				returned.add(var)
				self.changed = True
			if var not in self.synthetic:
				self._mark(var, EscapeFact.RETURNED_BY_ADDRESS, span)
		for closure in self._ordered_fns(targets.closures):
			if closure not in self.returned_closures[fn]:
				self.returned_closures[fn].add(closure)
				self.changed = True
			self._escape_closure(closure, span)

	def _spawn(self, stmt: M.Spawn, fn: FunctionInfo) -> None:
		call = stmt.call
		self._expr(call, fn)
		for arg in call.args:
			self._sink_targets(self._targets(arg), EscapeFact.CAPTURED_BY_CONCURRENT_TASK, stmt.loc)
		for closure in self._ordered_fns(self._targets(call.callee).closures):
			if closure not in self.out.task_closures:
				self.out.task_closures[closure] = stmt.loc
				self.changed = True
			self._escape_closure(closure, stmt.loc)
			for cap in closure.captures:
				self._mark(cap.variable, EscapeFact.CAPTURED_BY_CONCURRENT_TASK, stmt.loc)

	# --------------------------------------------------------- expressions

	def _expr(self, expr: M.Expr, fn: Optional[FunctionInfo]) -> None:
		if isinstance(expr, M.Call):
			self._expr(expr.callee, fn)
			for arg in expr.args:
				self._expr(arg, fn)
			self._call(expr)
		elif isinstance(expr, M.Box):
			self._expr(expr.value, fn)
			self._box(expr.value, expr.loc)
		elif isinstance(expr, M.Convert):
			self._expr(expr.value, fn)
		elif isinstance(expr, M.SeqLit):
			for elem in expr.elements:
				self._expr(elem, fn)
				if expr.heap_owned:
					self._sink_value(elem, EscapeFact.STORED_IN_HEAP_OWNED_COLLECTION, expr.loc)
		elif isinstance(expr, M.Append):
			self._expr(expr.seq, fn)
			for value in expr.values:
				self._expr(value, fn)
				self._sink_value(value, EscapeFact.STORED_IN_HEAP_OWNED_COLLECTION, expr.loc)
		elif isinstance(expr, M.BinOp):
			self._expr(expr.left, fn)
			self._expr(expr.right, fn)
			if expr.op in _COMPARISONS:
				left, right = self._tag_of(expr.left), self._tag_of(expr.right)
				# Comparing against a dynamic-type value converts the other side.
				if left is TypeTag.DYNAMIC and right is not TypeTag.DYNAMIC:
					self._box(expr.right, expr.loc)
				elif right is TypeTag.DYNAMIC and left is not TypeTag.DYNAMIC:
					self._box(expr.left, expr.loc)
		elif isinstance(expr, M.UnaryOp):
			self._expr(expr.operand, fn)
		elif isinstance(expr, M.Deref):
			self._expr(expr.pointer, fn)
		# Var/AddrOf/Lit/HeapAlloc/ClosureLit: nothing to do; closure bodies are
		# analyzed as functions of their own.

	def _call(self, call: M.Call) -> None:
		known = self.res.callable_for(call.callee)
		if isinstance(known, M.ExternDecl):
			for param, arg in zip(known.params, call.args):
				if param.tag is TypeTag.DYNAMIC:
					self._box(arg, call.loc)
			return
		for callee in self._callees(call):
			for param, arg in zip(callee.params, call.args):
				if param.tag is TypeTag.DYNAMIC:
					self._box(arg, call.loc)
				target = self.param_targets.get(param)
				if target is None:
					continue
				for fact in target.sorted_facts():
					self._sink_targets(self._targets(arg), fact, call.loc)


__all__ = ["EscapeAnalysis", "collect_escape_facts"]
