# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Program model: the syntax the escape analyzer consumes.

Pipeline placement:
  source text (parser, optional) -> model (this file) -> resolver -> escape
  analyzer -> placement engine -> simulator/reporter

Guiding rules:
- Nodes are purely syntactic; no scope or variable resolution is embedded here.
  The resolver builds `Scope`/`Variable` objects from these nodes.
- Every loop states explicitly whether its control variable is fresh per
  iteration (`per_iteration_copy`); it is never inferred.
- `loc` is a best-effort span for diagnostics; `Span()` is the explicit
  "unknown location" sentinel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional, Union

from heapcheck.core.span import Span


class TypeTag(Enum):
	"""Declared type of a variable, coarse enough for placement decisions."""

	PRIMITIVE = auto()  # ints, floats, bools
	POINTER = auto()    # pointer-to-T
	SEQUENCE = auto()   # growable sequence (incl. byte sequences)
	STRING = auto()
	DYNAMIC = auto()    # dynamic-type container (concrete type erased)
	FUNCTION = auto()   # function value / closure


# Base node kinds

class Node:
	"""Base class for all model nodes."""
	pass


class Expr(Node):
	"""Base class for all model expressions."""
	pass


class Stmt(Node):
	"""Base class for all model statements."""
	pass


class BinaryOp(Enum):
	ADD = auto()
	SUB = auto()
	MUL = auto()
	DIV = auto()
	MOD = auto()

	EQ = auto()
	NE = auto()
	LT = auto()
	LE = auto()
	GT = auto()
	GE = auto()

	AND = auto()
	OR = auto()


class UnaryKind(Enum):
	NEG = auto()
	NOT = auto()


# Expressions

@dataclass
class Lit(Expr):
	"""Literal int/float/bool/string value."""
	value: object
	loc: Span = field(default_factory=Span)


@dataclass
class Var(Expr):
	"""Reference to a variable, function or extern by name."""
	name: str
	loc: Span = field(default_factory=Span)


@dataclass
class BinOp(Expr):
	op: BinaryOp
	left: Expr
	right: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class UnaryOp(Expr):
	op: UnaryKind
	operand: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class AddrOf(Expr):
	"""`&name`: the address of a variable."""
	name: str
	loc: Span = field(default_factory=Span)


@dataclass
class Deref(Expr):
	"""`*expr`: read through a pointer (the result is a copy)."""
	pointer: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class Call(Expr):
	callee: Expr
	args: List[Expr] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass
class Box(Expr):
	"""Dynamic-type conversion: wrap a value so its concrete type is erased."""
	value: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class Convert(Expr):
	"""String/byte-sequence conversion; always produces a fresh copy."""
	value: Expr
	target: TypeTag
	loc: Span = field(default_factory=Span)


@dataclass
class SeqLit(Expr):
	"""
	Collection literal.

	`heap_owned` marks literals whose backing storage lives on the heap
	(growable sequences); elements that are variables or addresses are
	stored into that backing storage.
	"""
	elements: List[Expr] = field(default_factory=list)
	heap_owned: bool = True
	loc: Span = field(default_factory=Span)


@dataclass
class Append(Expr):
	"""`append(seq, values...)`: grows a heap-owned backing storage."""
	seq: Expr
	values: List[Expr] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass
class HeapAlloc(Expr):
	"""Explicit heap-allocation request (`new(T)`); yields a pointer."""
	elem: TypeTag = TypeTag.PRIMITIVE
	loc: Span = field(default_factory=Span)


@dataclass
class Param:
	name: str
	tag: TypeTag
	loc: Span = field(default_factory=Span)


@dataclass
class Result:
	"""A return slot; a named result is a named return binding."""
	tag: TypeTag
	name: Optional[str] = None
	loc: Span = field(default_factory=Span)


@dataclass(eq=False)
class ClosureLit(Expr):
	"""
	Function literal. `label` is assigned by the resolver when left empty
	(`<enclosing>.func<N>`).
	"""
	params: List[Param] = field(default_factory=list)
	results: List[Result] = field(default_factory=list)
	body: List[Stmt] = field(default_factory=list)
	label: Optional[str] = None
	loc: Span = field(default_factory=Span)


# Statements

@dataclass
class Let(Stmt):
	"""Declaration `name := value` / `var name tag = value`. `tag=None` infers."""
	name: str
	value: Optional[Expr] = None
	tag: Optional[TypeTag] = None
	loc: Span = field(default_factory=Span)


@dataclass
class Binding:
	name: str
	tag: Optional[TypeTag] = None
	loc: Span = field(default_factory=Span)


@dataclass
class MultiLet(Stmt):
	"""Destructuring declaration from a multi-result call: `a, b := f()`."""
	bindings: List[Binding]
	value: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class Assign(Stmt):
	"""`name = value` on an already declared variable."""
	target: str
	value: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class Store(Stmt):
	"""`*pointer = value`: write through a pointer."""
	pointer: Expr
	value: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class ExprStmt(Stmt):
	expr: Expr
	loc: Span = field(default_factory=Span)


@dataclass
class Return(Stmt):
	"""`return values...`; an empty list with named results returns the bindings."""
	values: List[Expr] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass
class If(Stmt):
	cond: Expr
	then_body: List[Stmt] = field(default_factory=list)
	else_body: List[Stmt] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass(eq=False)
class Loop(Stmt):
	"""
	Counting loop `for var := start; var < stop; var += step`.

	`per_iteration_copy` is the iteration context: when true the control
	variable is re-declared fresh for every iteration, otherwise a single
	cell is reused. `range_form` marks `for var := range stop` loops, whose
	control variable is left at the last produced value rather than `stop`.
	"""
	var: str
	start: Expr
	stop: Expr
	body: List[Stmt] = field(default_factory=list)
	step: int = 1
	per_iteration_copy: bool = False
	range_form: bool = False
	loc: Span = field(default_factory=Span)


@dataclass
class Spawn(Stmt):
	"""Schedule `call` as a concurrent task; its start is decoupled from completion."""
	call: Call
	loc: Span = field(default_factory=Span)


# Declarations

@dataclass(eq=False)
class FunctionDecl(Node):
	name: str
	params: List[Param] = field(default_factory=list)
	results: List[Result] = field(default_factory=list)
	body: List[Stmt] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass
class ExternDecl(Node):
	"""A body-less callee; `DYNAMIC` params box their arguments."""
	name: str
	params: List[Param] = field(default_factory=list)
	results: List[Result] = field(default_factory=list)
	loc: Span = field(default_factory=Span)


@dataclass
class Program(Node):
	functions: List[FunctionDecl] = field(default_factory=list)
	globals: List[Let] = field(default_factory=list)
	externs: List[ExternDecl] = field(default_factory=list)
	file: Optional[str] = None


FunctionLike = Union[FunctionDecl, ClosureLit]


__all__ = [
	"TypeTag",
	"Node",
	"Expr",
	"Stmt",
	"BinaryOp",
	"UnaryKind",
	"Lit",
	"Var",
	"BinOp",
	"UnaryOp",
	"AddrOf",
	"Deref",
	"Call",
	"Box",
	"Convert",
	"SeqLit",
	"Append",
	"HeapAlloc",
	"Param",
	"Result",
	"ClosureLit",
	"Let",
	"Binding",
	"MultiLet",
	"Assign",
	"Store",
	"ExprStmt",
	"Return",
	"If",
	"Loop",
	"Spawn",
	"FunctionDecl",
	"ExternDecl",
	"Program",
	"FunctionLike",
]
