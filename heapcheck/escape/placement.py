# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Placement decisions.

`decide` is a pure function of a variable's escape facts: any fact means
`HEAP`, no fact means `STACK`. The primary reason is the first fact in
`EscapeFact` declaration order, so diagnostics are reproducible run to run.
`analyze` drives the whole pipeline and writes each placement exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from heapcheck.core.errors import MalformedModel
from heapcheck.model import nodes as M
from heapcheck.model.scopes import EscapeFact, Placement, Variable
from heapcheck.escape.analyzer import EscapeAnalysis, collect_escape_facts
from heapcheck.stage1.resolver import Resolution, resolve

logger = logging.getLogger(__name__)


def decide(variable: Variable) -> Tuple[Placement, Optional[EscapeFact]]:
	"""Placement and primary reason for `variable`; reads its facts only."""
	facts = variable.sorted_facts()
	if not facts:
		return Placement.STACK, None
	return Placement.HEAP, facts[0]


@dataclass(frozen=True)
class PlacementDecision:
	variable: Variable
	placement: Placement
	reason: Optional[EscapeFact]
	facts: Tuple[EscapeFact, ...] = ()

	@property
	def name(self) -> str:
		return self.variable.name

	@property
	def function(self) -> Optional[str]:
		return self.variable.function

	@property
	def is_heap(self) -> bool:
		return self.placement is Placement.HEAP


@dataclass
class PlacementResult:
	"""Decisions for every variable of a model, in declaration order."""

	resolution: Resolution
	escape: EscapeAnalysis
	decisions: List[PlacementDecision] = field(default_factory=list)
	_by_var: Dict[Variable, PlacementDecision] = field(default_factory=dict, repr=False)

	def __iter__(self) -> Iterator[PlacementDecision]:
		return iter(self.decisions)

	def __len__(self) -> int:
		return len(self.decisions)

	def decision_for(self, variable: Variable) -> PlacementDecision:
		return self._by_var[variable]

	def lookup(self, function: Optional[str], name: str, *, nth: int = 0) -> PlacementDecision:
		"""
		Find the decision for `name` declared in `function` (None for globals).

		`nth` selects among shadowing declarations of the same name, in
		declaration order.
		"""
		matches = [d for d in self.decisions if d.variable.function == function and d.variable.name == name]
		if len(matches) <= nth:
			where = function or "package scope"
			raise KeyError(f"no declaration #{nth} of {name!r} in {where}")
		return matches[nth]

	def placement_of(self, function: Optional[str], name: str, *, nth: int = 0) -> Placement:
		return self.lookup(function, name, nth=nth).placement

	def reason_of(self, function: Optional[str], name: str, *, nth: int = 0) -> Optional[EscapeFact]:
		return self.lookup(function, name, nth=nth).reason

	def heap(self) -> List[PlacementDecision]:
		return [d for d in self.decisions if d.is_heap]

	def stack(self) -> List[PlacementDecision]:
		return [d for d in self.decisions if d.placement is Placement.STACK]


def finalize(resolution: Resolution, escape: EscapeAnalysis) -> PlacementResult:
	"""Write every variable's placement and collect the decisions."""
	result = PlacementResult(resolution=resolution, escape=escape)
	for var in resolution.variables:
		placement, reason = decide(var)
		var.place(placement)
		decision = PlacementDecision(variable=var, placement=placement, reason=reason, facts=tuple(var.sorted_facts()))
		result.decisions.append(decision)
		result._by_var[var] = decision
	unresolved = [v for v in resolution.variables if v.placement is Placement.UNRESOLVED]
	if unresolved:
		raise MalformedModel(f"placement left unresolved for {unresolved[0].qualified_name}", unresolved[0].loc)
	return result


def analyze(program: M.Program) -> PlacementResult:
	"""
	Resolve, collect escape facts and decide placements for `program`.

	Raises `UnresolvedReference` or `MalformedModel`; every other model gets
	a placement for every variable. The model itself is not modified, so
	repeated calls produce identical decisions.
	"""
	resolution = resolve(program)
	escape = collect_escape_facts(resolution)
	result = finalize(resolution, escape)
	logger.debug("%d variables placed, %d on the heap", len(result), len(result.heap()))
	return result


__all__ = ["decide", "PlacementDecision", "PlacementResult", "finalize", "analyze"]
