# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Lightweight source span representation used by diagnostics.

A Span can wrap whatever location object the front end provides via the `raw`
field while also carrying optional file/line/column info when available.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class Span:
	"""Represents a source span (best-effort file/line/column plus raw front-end loc)."""

	file: Optional[str] = None
	line: Optional[int] = None
	column: Optional[int] = None
	end_line: Optional[int] = None
	end_column: Optional[int] = None
	raw: Any = None

	@classmethod
	def from_loc(cls, loc: Any) -> "Span":
		"""
		Construct a Span from an existing front-end location object.

		If `loc` is already a Span, it is returned unchanged. Lark tokens and
		trees (with `propagate_positions`) expose `line`/`column`/`end_line`/
		`end_column` directly; trees carry them under `meta`.
		"""
		if loc is None:
			return cls()
		if isinstance(loc, cls):
			return loc
		meta = getattr(loc, "meta", None)
		src = meta if meta is not None and not getattr(meta, "empty", True) else loc
		return cls(
			file=getattr(loc, "file", None) or getattr(loc, "filename", None) or None,
			line=getattr(src, "line", None),
			column=getattr(src, "column", None),
			end_line=getattr(src, "end_line", None),
			end_column=getattr(src, "end_column", None),
			raw=loc,
		)

	def with_file(self, file: Optional[str]) -> "Span":
		"""Return a copy anchored to `file` (used once the front end knows the path)."""
		if file is None or self.file == file:
			return self
		return Span(
			file=file,
			line=self.line,
			column=self.column,
			end_line=self.end_line,
			end_column=self.end_column,
			raw=self.raw,
		)

	def __str__(self) -> str:
		if self.line is None:
			return self.file or "<unknown>"
		loc = f"{self.line}:{self.column}" if self.column is not None else f"{self.line}"
		return f"{self.file}:{loc}" if self.file else loc


__all__ = ["Span"]
