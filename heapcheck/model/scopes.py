# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Resolved entities: scopes, variables, escape facts and placements.

Scopes and variables are created once by the resolver and are structurally
immutable afterwards. The escape analyzer only adds `EscapeFact`s and the
placement engine writes each variable's `Placement` exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterator, List, Optional

from heapcheck.core.errors import MalformedModel
from heapcheck.core.span import Span
from heapcheck.model.nodes import TypeTag


class Placement(Enum):
	"""Final storage decision. `UNRESOLVED` is a construction-time default only."""

	UNRESOLVED = auto()
	STACK = auto()
	HEAP = auto()


class EscapeFact(Enum):
	"""
	Why a variable must outlive its declaring frame.

	Declaration order is the primary-reason order used by the placement
	engine; keep new members at the end.
	"""

	RETURNED_BY_ADDRESS = auto()
	CAPTURED_BY_ESCAPING_CLOSURE = auto()
	CAPTURED_BY_CONCURRENT_TASK = auto()
	BOXED_INTO_DYNAMIC_CONTAINER = auto()
	STORED_IN_HEAP_OWNED_COLLECTION = auto()
	EXPLICIT_HEAP_REQUEST = auto()
	STORED_IN_PACKAGE_VARIABLE = auto()
	PACKAGE_LEVEL = auto()

	@property
	def order(self) -> int:
		return self.value

	def describe(self) -> str:
		return _FACT_TEXT[self]


_FACT_TEXT: Dict[EscapeFact, str] = {
	EscapeFact.RETURNED_BY_ADDRESS: "address returned from function",
	EscapeFact.CAPTURED_BY_ESCAPING_CLOSURE: "captured by escaping closure",
	EscapeFact.CAPTURED_BY_CONCURRENT_TASK: "referenced by concurrent task",
	EscapeFact.BOXED_INTO_DYNAMIC_CONTAINER: "boxed into dynamic-type container",
	EscapeFact.STORED_IN_HEAP_OWNED_COLLECTION: "stored in heap-owned collection",
	EscapeFact.EXPLICIT_HEAP_REQUEST: "explicit heap allocation",
	EscapeFact.STORED_IN_PACKAGE_VARIABLE: "stored in package-level variable",
	EscapeFact.PACKAGE_LEVEL: "declared at package level",
}


class ScopeKind(Enum):
	ROOT = auto()        # process-wide globals; no declaring call frame
	FUNCTION = auto()    # function or closure body (params + results live here)
	BLOCK = auto()       # if/else branches
	LOOP = auto()        # loop header: holds the control variable
	LOOP_BODY = auto()   # one iteration's body


class VarKind(Enum):
	GLOBAL = auto()
	PARAM = auto()
	RESULT = auto()       # named return binding
	LOCAL = auto()
	LOOP_CONTROL = auto()


@dataclass(eq=False)
class Variable:
	"""
	A declared storage slot.

	`facts` maps each accumulated EscapeFact to the span where it was first
	discovered. Identity-hashed: two variables with the same name in different
	scopes are distinct.
	"""

	name: str
	tag: TypeTag
	kind: VarKind
	scope: "Scope"
	order: int
	loc: Span = field(default_factory=Span)
	function: Optional[str] = None
	facts: Dict[EscapeFact, Span] = field(default_factory=dict)
	placement: Placement = Placement.UNRESOLVED

	def add_fact(self, fact: EscapeFact, span: Span | None = None) -> bool:
		"""Record `fact`; returns True when it is new for this variable."""
		if fact in self.facts:
			return False
		if self.placement is not Placement.UNRESOLVED:
			raise MalformedModel(f"escape fact added to '{self.name}' after placement was finalized", self.loc)
		self.facts[fact] = span if span is not None else Span()
		return True

	def sorted_facts(self) -> List[EscapeFact]:
		return sorted(self.facts, key=lambda f: f.order)

	def place(self, placement: Placement) -> None:
		"""Write the final placement. Written once; HEAP never reverts to STACK."""
		if placement is Placement.UNRESOLVED:
			raise MalformedModel(f"cannot reset placement of '{self.name}'", self.loc)
		if self.placement is Placement.UNRESOLVED:
			self.placement = placement
			return
		if self.placement is placement:
			return
		raise MalformedModel(
			f"placement of '{self.name}' already finalized as {self.placement.name.lower()}",
			self.loc,
		)

	@property
	def qualified_name(self) -> str:
		return f"{self.function}.{self.name}" if self.function else self.name

	def __repr__(self) -> str:
		return f"Variable({self.qualified_name!r}, {self.tag.name}, {self.placement.name})"


@dataclass(eq=False)
class Scope:
	"""Ordered variables plus a back-reference to the enclosing scope."""

	kind: ScopeKind
	parent: Optional["Scope"] = None
	function: Optional[str] = None
	variables: List[Variable] = field(default_factory=list)
	loc: Span = field(default_factory=Span)

	def chain(self) -> Iterator["Scope"]:
		"""Yield this scope and its ancestors, innermost first."""
		seen: set[int] = set()
		scope: Optional[Scope] = self
		while scope is not None:
			if id(scope) in seen:
				raise MalformedModel("scope has a cyclic parent chain", scope.loc)
			seen.add(id(scope))
			yield scope
			scope = scope.parent

	def local(self, name: str) -> Optional[Variable]:
		for var in self.variables:
			if var.name == name:
				return var
		return None

	def lookup(self, name: str) -> Optional[Variable]:
		for scope in self.chain():
			found = scope.local(name)
			if found is not None:
				return found
		return None

	def declare(self, var: Variable) -> Variable:
		if self.local(var.name) is not None:
			raise MalformedModel(f"{var.name} redeclared in this block", var.loc)
		self.variables.append(var)
		return var

	def frame(self) -> "Scope":
		"""Nearest enclosing FUNCTION (or ROOT) scope: the frame owning this scope."""
		for scope in self.chain():
			if scope.kind in (ScopeKind.FUNCTION, ScopeKind.ROOT):
				return scope
		raise MalformedModel("scope is not attached to a function or root scope", self.loc)

	def is_within(self, other: "Scope") -> bool:
		return any(s is other for s in self.chain())


__all__ = [
	"Placement",
	"EscapeFact",
	"ScopeKind",
	"VarKind",
	"Variable",
	"Scope",
]
