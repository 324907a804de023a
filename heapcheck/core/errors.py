# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Fatal analysis errors.

Only two kinds exist: a reference that resolves to no enclosing declaration,
and a model whose structure violates an invariant. Both abort the analysis
and are surfaced to the caller verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .span import Span


@dataclass(frozen=True)
class HeapcheckError(Exception):
	"""
	A structured, serializable error raised by the analysis stages.

	`reason_code` is stable across releases so tooling can match on it.
	"""

	reason_code: str
	message: str
	span: Span = field(default_factory=Span)

	def __str__(self) -> str:
		return self.format_human()

	def to_dict(self) -> dict[str, Any]:
		return {
			"reason_code": self.reason_code,
			"message": self.message,
			"file": self.span.file,
			"line": self.span.line,
			"column": self.span.column,
		}

	def format_human(self) -> str:
		return f"{self.span.format()}: [{self.reason_code}] {self.message}"


class UnresolvedReference(HeapcheckError):
	"""A name (variable, callee, capture) with no enclosing declaration."""

	def __init__(self, name: str, span: Span | None = None, *, context: str | None = None) -> None:
		where = f" in {context}" if context else ""
		super().__init__("unresolved-reference", f"undefined: {name}{where}", span or Span())
		object.__setattr__(self, "name", name)


class MalformedModel(HeapcheckError):
	"""The program model violates a structural invariant."""

	def __init__(self, message: str, span: Span | None = None) -> None:
		super().__init__("malformed-model", message, span or Span())


__all__ = ["HeapcheckError", "UnresolvedReference", "MalformedModel"]
