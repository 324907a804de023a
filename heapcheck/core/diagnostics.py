"""
Common diagnostic structure for the analysis stages.

Fatal problems are raised as `HeapcheckError`s; everything a stage wants to
report without aborting (simulator violations, skipped loops) is a Diagnostic.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .span import Span


@dataclass
class Diagnostic:
	"""Represents an analysis diagnostic (error/warning/note)."""

	message: str
	code: str | None = None
	# Stage that produced the diagnostic ("resolve", "escape", "simulate", "parser").
	phase: str | None = None
	severity: str = "error"
	span: Span = field(default_factory=Span)  # Source location (Span() denotes unknown).
	notes: list[str] = field(default_factory=list)

	def __post_init__(self) -> None:
		# Normalize missing spans to the sentinel Span() so downstream tooling
		# can rely on a structured object instead of None.
		if self.span is None:  # type: ignore[unreachable]
			self.span = Span()


__all__ = ["Diagnostic"]
