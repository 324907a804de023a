# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Lightweight source span representation used by diagnostics.

A Span carries optional file/line/column info. Models built directly by an
embedding caller usually have no locations at all; `Span()` is the explicit
"unknown location" sentinel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

UNKNOWN_FILE = "<model>"


@dataclass(frozen=True)
class Span:
	"""Represents a source span (best-effort file/line/column plus raw parser loc)."""

	file: Optional[str] = None
	line: Optional[int] = None
	column: Optional[int] = None
	end_line: Optional[int] = None
	end_column: Optional[int] = None
	raw: Any = None

	@classmethod
	def from_loc(cls, loc: Any, *, file: Optional[str] = None) -> "Span":
		"""
		Construct a Span from an existing parser/location object.

		If `loc` is already a Span, it is returned unchanged (with `file`
		filled in when it was missing).
		"""
		if loc is None:
			return cls(file=file)
		if isinstance(loc, cls):
			if loc.file is None and file is not None:
				return cls(file, loc.line, loc.column, loc.end_line, loc.end_column, loc.raw)
			return loc
		return cls(
			file=getattr(loc, "file", None) or getattr(loc, "filename", None) or file,
			line=getattr(loc, "line", None),
			column=getattr(loc, "column", None),
			end_line=getattr(loc, "end_line", None),
			end_column=getattr(loc, "end_column", None),
		)

	def is_unknown(self) -> bool:
		return self.line is None and self.file is None

	def format(self) -> str:
		"""Render as `file:line:col`, omitting the parts that are unknown."""
		parts = [self.file or UNKNOWN_FILE]
		if self.line is not None:
			parts.append(str(self.line))
			if self.column is not None:
				parts.append(str(self.column))
		return ":".join(parts)


__all__ = ["Span", "UNKNOWN_FILE"]
