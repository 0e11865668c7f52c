# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Analysis configuration.

One frozen record per run, built from CLI options by the driver or constructed
directly by library callers. Every knob has a default matching the most precise
and conventional behaviour.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LastUseMode(Enum):
	"""
	Precision of the last-use analysis.

	FIXPOINT: full backward dataflow (default).
	BLOCK_LOCAL: single pass; only the final access of a binding whose accesses
	all sit in one block outside any cycle is marked. Always a subset of FIXPOINT.
	"""

	FIXPOINT = "fixpoint"
	BLOCK_LOCAL = "block-local"


class AssignOrder(Enum):
	"""How an assignment into a live destination is lowered."""

	DESTROY_THEN_CONSTRUCT = "destroy-then-construct"
	MOVE_ASSIGN = "move-assign"


@dataclass(frozen=True)
class AnalysisConfig:
	last_use_mode: LastUseMode = LastUseMode.FIXPOINT
	assign_order: AssignOrder = AssignOrder.DESTROY_THEN_CONSTRUCT
	# Let the consumer of a forwarded reference move when it is the original
	# binding's last use (the forwarding call is treated as inlined).
	inline_forwarding: bool = False


__all__ = ["AnalysisConfig", "AssignOrder", "LastUseMode"]
