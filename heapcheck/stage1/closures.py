# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable

from heapcheck.core.span import Span
from heapcheck.model.scopes import Variable


class CaptureKind(Enum):
	"""How a closure uses a captured variable."""

	READ = auto()
	WRITE = auto()
	ADDRESS = auto()


@dataclass(frozen=True)
class Capture:
	"""
	A closure's reference to a variable declared in an enclosing scope.

	`kinds` is the union of uses seen in the closure body (including uses by
	nested closures, which capture transitively through their parents).
	"""

	variable: Variable
	kinds: frozenset[CaptureKind]
	span: Span = Span()

	def sort_tuple(self) -> tuple:
		"""Deterministic tuple used for sorting captures (declaration order)."""
		return (self.variable.order, self.variable.name)

	@property
	def writes(self) -> bool:
		return CaptureKind.WRITE in self.kinds


def sort_captures(captures: Iterable[Capture]) -> tuple[Capture, ...]:
	"""Return captures sorted by declaration order of the captured variable."""
	return tuple(sorted(captures, key=lambda c: c.sort_tuple()))


__all__ = ["CaptureKind", "Capture", "sort_captures"]
