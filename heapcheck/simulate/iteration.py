# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Iteration semantics replay.

For every loop site the body is replayed deterministically with storage
cells:
- a shared control variable (no per-iteration copy) is one cell reused by
  every iteration; with `per_iteration_copy` each iteration gets a new cell,
- declarations inside the body get a new cell per iteration (`i := i`),
- task and call arguments are bound by value when the call is made.

Closures invoked synchronously observe their captured cells immediately.
Spawned tasks, and escaping closures created but not invoked within their
iteration, observe after the final iteration: with a shared heap-placed
control variable they all read the value left by the last iteration.

This is a replay, not a scheduler; interleavings are not modelled. Loops
nested inside a replayed body are replayed as their own sites.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from heapcheck.core.diagnostics import Diagnostic
from heapcheck.core.errors import MalformedModel
from heapcheck.core.span import Span
from heapcheck.escape.placement import PlacementResult
from heapcheck.model import nodes as M
from heapcheck.model.scopes import Placement, Variable, VarKind
from heapcheck.stage1.resolver import FunctionInfo, IterationContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10_000


@dataclass(frozen=True)
class Observation:
	"""One read of a loop-owned variable by a closure or task."""

	loop: str
	observer: str
	iteration: int
	variable: str
	value: object
	deferred: bool
	shared: bool
	span: Span = Span()


@dataclass
class LoopTrace:
	context: IterationContext
	iterations: int = 0
	final_value: object = None
	observations: List[Observation] = field(default_factory=list)
	skipped: Optional[str] = None

	@property
	def label(self) -> str:
		return self.context.label

	@property
	def per_iteration_copy(self) -> bool:
		return self.context.per_iteration_copy

	def values(self, variable: Optional[str] = None) -> List[object]:
		"""Observed values in trace order, optionally only reads of `variable`."""
		return [o.value for o in self.observations if variable is None or o.variable == variable]


@dataclass
class ObservationTrace:
	loops: List[LoopTrace] = field(default_factory=list)
	diagnostics: List[Diagnostic] = field(default_factory=list)

	def __iter__(self):
		return iter(self.loops)

	def loop(self, label: str) -> LoopTrace:
		for trace in self.loops:
			if trace.label == label:
				return trace
		raise KeyError(f"no loop site {label!r}")

	def loops_in(self, function: str) -> List[LoopTrace]:
		return [t for t in self.loops if t.context.function.label == function]

	@property
	def violations(self) -> List[Diagnostic]:
		return [d for d in self.diagnostics if d.severity == "error"]


def simulate_iterations(
	program: M.Program,
	result: PlacementResult,
	*,
	max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> ObservationTrace:
	"""Replay every loop of `program` against the placements in `result`."""
	if result.resolution.program is not program:
		raise MalformedModel("placement result was computed for a different model")
	trace = ObservationTrace()
	constants = _global_constants(result)
	for ctx in result.resolution.loops:
		replay = _LoopReplay(ctx, result, constants, max_iterations)
		loop_trace = replay.run()
		trace.loops.append(loop_trace)
		trace.diagnostics.extend(replay.diagnostics)
	return trace


def _global_constants(result: PlacementResult) -> Dict[Variable, object]:
	values: Dict[Variable, object] = {}
	for glob in result.resolution.program.globals:
		var = result.resolution.decl(glob)
		if var is not None and isinstance(glob.value, M.Lit):
			values[var] = glob.value.value
	return values


class _Cell:
	__slots__ = ("value", "shared")

	def __init__(self, value: object, *, shared: bool = False) -> None:
		self.value = value
		self.shared = shared


class _ClosureValue:
	"""A closure created during replay, with the cells it captured."""

	def __init__(self, label: str, info: Optional[FunctionInfo], iteration: int, span: Span) -> None:
		self.label = label
		self.info = info
		self.iteration = iteration
		self.span = span
		self.cells: Dict[Variable, _Cell] = {}
		self.called = False


class _StopReplay(Exception):
	"""A `return` inside the loop body ends the loop."""


class _LoopReplay:
	def __init__(
		self,
		ctx: IterationContext,
		result: PlacementResult,
		constants: Dict[Variable, object],
		max_iterations: int,
	) -> None:
		self.ctx = ctx
		self.result = result
		self.res = result.resolution
		self.constants = constants
		self.max_iterations = max_iterations
		self.trace = LoopTrace(context=ctx)
		self.diagnostics: List[Diagnostic] = []
		self.created: List[_ClosureValue] = []
		self.deferred: List[_ClosureValue] = []

	def run(self) -> LoopTrace:
		node = self.ctx.node
		start = self._eval(node.start, {})
		stop = self._eval(node.stop, {})
		if not _is_int(start) or not _is_int(stop):
			return self._skip("loop bounds are not constant")
		if node.step < 1:
			return self._skip(f"loop step {node.step} is not positive")
		planned = len(range(start, stop, node.step))
		if planned > self.max_iterations:
			return self._skip(f"loop runs {planned} iterations (limit {self.max_iterations})")
		cell = _Cell(start, shared=not self.ctx.per_iteration_copy)
		k = 0
		try:
			while self._continues(cell, start, stop, k):
				if k >= self.max_iterations:
					self.trace = LoopTrace(context=self.ctx)
					self.deferred = []
					return self._skip(f"loop runs more than {self.max_iterations} iterations")
				if node.range_form:
					cell = self._next_cell(cell, start + k * node.step, k)
				self.trace.iterations = k + 1
				self._block(node.body, {self.ctx.control: cell}, k)
				self._end_iteration()
				k += 1
				if not node.range_form:
					# The post statement advances the variable the body left behind.
					cell = self._next_cell(cell, _binop(M.BinaryOp.ADD, cell.value, node.step), k)
		except _StopReplay:
			self._end_iteration()
		self.trace.final_value = cell.value
		logger.debug("%s: replayed %d iterations", self.ctx.label, self.trace.iterations)
		for closure in self.deferred:
			self._observe(closure, deferred=True)
		return self.trace

	def _continues(self, cell: _Cell, start: int, stop: int, k: int) -> bool:
		node = self.ctx.node
		if node.range_form:
			return start + k * node.step < stop
		return _is_int(cell.value) and cell.value < stop

	def _next_cell(self, cell: _Cell, value: object, k: int) -> _Cell:
		"""A fresh cell per iteration with `per_iteration_copy`, else the shared one updated."""
		if self.ctx.per_iteration_copy and k > 0:
			return _Cell(value)
		cell.value = value
		return cell

	def _skip(self, why: str) -> LoopTrace:
		self.trace.skipped = why
		self.diagnostics.append(
			Diagnostic(
				message=f"{self.ctx.label} not replayed: {why}",
				phase="simulate",
				severity="note",
				span=self.ctx.control.loc,
			)
		)
		return self.trace

	def _end_iteration(self) -> None:
		"""Closures created this iteration and never called are observed later if they escape."""
		escaping = self.result.escape.escaping_closures
		for closure in self.created:
			if not closure.called and closure.info is not None and closure.info in escaping:
				self.deferred.append(closure)
		self.created = []

	# ------------------------------------------------------------ observers

	def _closure(self, info: FunctionInfo, env: Dict[Variable, _Cell], k: int, span: Span) -> _ClosureValue:
		closure = _ClosureValue(info.label, info, k, span)
		for cap in info.captures:
			if cap.variable in env:
				closure.cells[cap.variable] = env[cap.variable]
		self.created.append(closure)
		return closure

	def _bind_args(self, closure: _ClosureValue, params: List[Variable], args: List[M.Expr], env: Dict[Variable, _Cell]) -> None:
		for param, arg in zip(params, args):
			closure.cells[param] = _Cell(self._eval(arg, env))

	def _observe(self, closure: _ClosureValue, *, deferred: bool) -> None:
		ordered = sorted(closure.cells.items(), key=lambda kv: (kv[0].kind is not VarKind.PARAM, kv[0].order))
		for var, cell in ordered:
			self.trace.observations.append(
				Observation(
					loop=self.ctx.label,
					observer=closure.label,
					iteration=closure.iteration,
					variable=var.name,
					value=_observable(cell.value),
					deferred=deferred,
					shared=cell.shared,
					span=closure.span,
				)
			)
			if deferred and var.kind is not VarKind.PARAM:
				self._check_placement(var, closure)

	def _check_placement(self, var: Variable, closure: _ClosureValue) -> None:
		if var.placement is Placement.HEAP:
			return
		self.diagnostics.append(
			Diagnostic(
				message=f"{closure.label} reads {var.name} after its iteration ended, but {var.name} is placed on the stack",
				code="placement-mismatch",
				phase="simulate",
				severity="error",
				span=closure.span,
			)
		)

	# ----------------------------------------------------------- statements

	def _block(self, stmts: List[M.Stmt], env: Dict[Variable, _Cell], k: int) -> None:
		for stmt in stmts:
			self._stmt(stmt, env, k)

	def _maybe_block(self, stmts: List[M.Stmt], env: Dict[Variable, _Cell], k: int) -> None:
		try:
			self._block(stmts, env, k)
		except _StopReplay:
			pass

	def _stmt(self, stmt: M.Stmt, env: Dict[Variable, _Cell], k: int) -> None:
		if isinstance(stmt, M.Let):
			var = self.res.decl(stmt)
			value = self._eval(stmt.value, env, k) if stmt.value is not None else None
			if var is not None:
				env[var] = _Cell(value)
		elif isinstance(stmt, M.MultiLet):
			self._eval(stmt.value, env, k)
			for binding in stmt.bindings:
				var = self.res.decl(binding)
				if var is not None:
					env[var] = _Cell(None)
		elif isinstance(stmt, M.Assign):
			value = self._eval(stmt.value, env, k)
			var = self.res.refs.get(id(stmt))
			if var is not None and var in env:
				env[var].value = value
		elif isinstance(stmt, M.Store):
			self._eval(stmt.pointer, env, k)
			self._eval(stmt.value, env, k)
		elif isinstance(stmt, M.ExprStmt):
			self._eval(stmt.expr, env, k)
		elif isinstance(stmt, M.If):
			cond = self._eval(stmt.cond, env, k)
			if cond is None:
				# Unknown conditions replay both branches; a return in either may not happen.
				self._maybe_block(stmt.then_body, env, k)
				self._maybe_block(stmt.else_body, env, k)
			elif cond:
				self._block(stmt.then_body, env, k)
			else:
				self._block(stmt.else_body, env, k)
		elif isinstance(stmt, M.Spawn):
			self._spawn(stmt, env, k)
		elif isinstance(stmt, M.Return):
			for value in stmt.values:
				self._eval(value, env, k)
			raise _StopReplay()
		# Nested loops are their own sites.

	def _spawn(self, stmt: M.Spawn, env: Dict[Variable, _Cell], k: int) -> None:
		call = stmt.call
		callee = self._eval(call.callee, env, k)
		if isinstance(callee, _ClosureValue):
			task = _ClosureValue(callee.label, callee.info, k, stmt.loc)
			task.cells = dict(callee.cells)
			callee.called = True
		else:
			known = self.res.callable_for(call.callee)
			if not isinstance(known, FunctionInfo):
				for arg in call.args:
					self._eval(arg, env, k)
				return
			task = _ClosureValue(known.label, known, k, stmt.loc)
		if task.info is not None:
			self._bind_args(task, task.info.params, call.args, env)
		self.deferred.append(task)

	# ---------------------------------------------------------- expressions

	def _eval(self, expr: Optional[M.Expr], env: Dict[Variable, _Cell], k: int = -1) -> object:
		if expr is None:
			return None
		if isinstance(expr, M.Lit):
			return expr.value
		if isinstance(expr, M.Var):
			var = self.res.ref(expr)
			if var is None:
				return None
			if var in env:
				return env[var].value
			return self.constants.get(var)
		if isinstance(expr, M.ClosureLit):
			return self._closure(self.res.closures[expr], env, k, expr.loc)
		if isinstance(expr, M.Call):
			return self._call(expr, env, k)
		if isinstance(expr, M.BinOp):
			return _binop(expr.op, self._eval(expr.left, env, k), self._eval(expr.right, env, k))
		if isinstance(expr, M.UnaryOp):
			operand = self._eval(expr.operand, env, k)
			if operand is None:
				return None
			if expr.op is M.UnaryKind.NEG:
				return -operand if isinstance(operand, (int, float)) else None
			return not operand
		if isinstance(expr, (M.Box, M.Convert)):
			return self._eval(expr.value, env, k)
		if isinstance(expr, M.SeqLit):
			return [self._eval(e, env, k) for e in expr.elements]
		if isinstance(expr, M.Append):
			self._eval(expr.seq, env, k)
			for value in expr.values:
				self._eval(value, env, k)
			return None
		if isinstance(expr, M.Deref):
			self._eval(expr.pointer, env, k)
		return None

	def _call(self, call: M.Call, env: Dict[Variable, _Cell], k: int) -> object:
		callee = self._eval(call.callee, env, k)
		if isinstance(callee, _ClosureValue) and callee.info is not None:
			callee.called = True
			invocation = _ClosureValue(callee.label, callee.info, k, call.loc)
			invocation.cells = dict(callee.cells)
			self._bind_args(invocation, callee.info.params, call.args, env)
			self._observe(invocation, deferred=False)
			return None
		for arg in call.args:
			self._eval(arg, env, k)
		return None


def _is_int(value: object) -> bool:
	return isinstance(value, int) and not isinstance(value, bool)


def _observable(value: object) -> object:
	if isinstance(value, _ClosureValue):
		return value.label
	if isinstance(value, list):
		return tuple(_observable(v) for v in value)
	return value


def _binop(op: M.BinaryOp, left: object, right: object) -> object:
	if left is None or right is None:
		return None
	try:
		if op is M.BinaryOp.ADD:
			return left + right
		if op is M.BinaryOp.SUB:
			return left - right
		if op is M.BinaryOp.MUL:
			return left * right
		if op is M.BinaryOp.DIV:
			if isinstance(left, int) and isinstance(right, int):
				quot = abs(left) // abs(right)
				return quot if (left >= 0) == (right >= 0) else -quot
			return left / right
		if op is M.BinaryOp.MOD:
			if isinstance(left, int) and isinstance(right, int):
				rem = abs(left) % abs(right)
				return rem if left >= 0 else -rem
			return None
		if op is M.BinaryOp.EQ:
			return left == right
		if op is M.BinaryOp.NE:
			return left != right
		if op is M.BinaryOp.LT:
			return left < right
		if op is M.BinaryOp.LE:
			return left <= right
		if op is M.BinaryOp.GT:
			return left > right
		if op is M.BinaryOp.GE:
			return left >= right
		if op is M.BinaryOp.AND:
			return bool(left) and bool(right)
		if op is M.BinaryOp.OR:
			return bool(left) or bool(right)
	except (TypeError, ZeroDivisionError):
		return None
	return None


__all__ = [
	"DEFAULT_MAX_ITERATIONS",
	"Observation",
	"LoopTrace",
	"ObservationTrace",
	"simulate_iterations",
]
