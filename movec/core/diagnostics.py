"""
Common diagnostic structure for every analysis pass.

A message plus span/metadata. Passes append diagnostics to a per-pass sink
instead of raising, so one bad function never hides problems in the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .span import Span


@dataclass
class Diagnostic:
	"""Represents an analysis diagnostic (error/warning/note)."""

	message: str
	code: str | None = None
	# Pass that produced the diagnostic: parser, typemodel, cfg, moves.
	phase: str | None = None
	severity: str = "error"
	span: Span = field(default_factory=Span)  # Source location (Span() denotes unknown).
	notes: list[str] = field(default_factory=list)

	def __post_init__(self) -> None:
		# Normalize missing spans to the sentinel Span() so downstream tooling
		# can rely on a structured object instead of None.
		if self.span is None:  # type: ignore[unreachable]
			self.span = Span()

	@property
	def is_error(self) -> bool:
		return self.severity == "error"

	def render(self) -> str:
		"""Human-readable one-line rendering (plus indented notes)."""
		head = f"{self.span}: {self.severity}"
		if self.code:
			head += f"[{self.code}]"
		lines = [f"{head}: {self.message}"]
		lines.extend(f"  note: {n}" for n in self.notes)
		return "\n".join(lines)


def has_errors(diags: Iterable[Diagnostic]) -> bool:
	"""True when any diagnostic in `diags` is error-level."""
	return any(d.is_error for d in diags)


__all__ = ["Diagnostic", "has_errors"]
