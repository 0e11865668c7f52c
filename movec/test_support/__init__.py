# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Shared helpers for tests that need analysis inputs or want to execute a plan.

`standard_types` builds the small type universe most tests use, `run_pipeline`
goes from a CfgBuilder-built function to its FunctionPlan, and `simulate`
walks one concrete path through a function the way the lowered code would,
recording which destructors run. The simulator is what the flag-correctness
tests assert against: for every path, a binding must be destroyed exactly once
or have its destruction elided exactly because it was moved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Union

from movec.analysis.decisions import DestroyKind, FunctionPlan
from movec.cfg.nodes import FunctionCFG, UseKind
from movec.config import AnalysisConfig
from movec.core.types_core import TypeId, TypeTable, UserMoveOp
from movec.driver import analyze_function
from movec.type_model import TypeModel


@dataclass
class StandardTypes:
	"""TypeIds of the shared test universe plus the model built over it."""

	table: TypeTable
	model: TypeModel
	int_: TypeId
	str_: TypeId      # EMT with destructor (user move ctor + assign)
	handle: TypeId    # ordinary type with destructor (no move ops)
	buf: TypeId       # EMT without destructor
	pair: TypeId      # struct { name: Str, count: Int }: EMT by field
	guarded: TypeId   # struct with its own destructor holding a Str
	holder: TypeId    # struct { inner: Pair, ptr: *Pair }


def standard_types() -> StandardTypes:
	table = TypeTable()
	int_ = table.ensure_int()
	str_ = table.new_opaque("Str", move_ctor=UserMoveOp(), move_assign=UserMoveOp(), destructor=True)
	handle = table.new_opaque("Handle", destructor=True)
	buf = table.new_opaque("Buf", move_ctor=UserMoveOp())
	pair = table.new_struct("Pair", [("name", str_), ("count", int_)])
	guarded = table.new_struct("Guarded", [("payload", str_)], destructor=True)
	holder = table.new_struct("Holder", [("inner", pair), ("ptr", table.new_pointer(pair))])
	return StandardTypes(
		table=table,
		model=TypeModel.build(table),
		int_=int_,
		str_=str_,
		handle=handle,
		buf=buf,
		pair=pair,
		guarded=guarded,
		holder=holder,
	)


def run_pipeline(fn: FunctionCFG, model: TypeModel, config: Optional[AnalysisConfig] = None) -> FunctionPlan:
	"""Validate, analyse and plan one function (nested functions included)."""
	return analyze_function(fn, model, config)


Choice = Union[int, Sequence[int]]


@dataclass
class SimulationResult:
	"""What happened along one simulated path."""

	blocks: List[int] = field(default_factory=list)
	destroyed: List[str] = field(default_factory=list)
	elided: List[str] = field(default_factory=list)
	moved: List[int] = field(default_factory=list)
	flags: Dict[str, bool] = field(default_factory=dict)

	def destroy_count(self, place: str) -> int:
		return self.destroyed.count(place)


class SimulationError(RuntimeError):
	"""The requested path does not exist or never reaches an exit."""


def simulate(
	fn: FunctionCFG,
	plan: FunctionPlan,
	choices: Optional[Mapping[int, Choice]] = None,
	*,
	max_steps: int = 10_000,
) -> SimulationResult:
	"""
	Execute `plan` along one path.

	`choices` maps a block id to the index of the outgoing edge to take, or to a
	sequence of indices consumed one per visit (the last one repeats); blocks
	not listed take their first edge.
	"""
	choices = choices or {}
	visits: Dict[int, int] = {}
	result = SimulationResult()
	flags = result.flags

	set_at: Dict[int, List[str]] = {}
	clear_at: Dict[int, List[str]] = {}
	for dp in plan.destruction.values():
		if dp.flag is None:
			continue
		flags[dp.flag.name] = dp.flag.decl_site is None
		if dp.flag.decl_site is not None:
			set_at.setdefault(dp.flag.decl_site, []).append(dp.flag.name)
		for pt in dp.flag.clear_points:
			clear_at.setdefault(pt.site, []).append(dp.flag.name)
		for pt in dp.flag.set_points:
			set_at.setdefault(pt.site, []).append(dp.flag.name)

	order = list(fn.params) + [s.binding for s in fn.all_sites() if s.kind is UseKind.DECL and s.binding is not None]

	def end_scope(names: List[str]) -> None:
		for name in reversed(names):
			mine = sorted((dp for dp in plan.destruction.values() if dp.binding == name), key=lambda dp: -len(dp.path))
			for dp in mine:
				place = str(dp.place)
				if dp.kind is DestroyKind.ALWAYS_DESTROY:
					result.destroyed.append(place)
				elif dp.kind is DestroyKind.GUARDED_DESTROY and dp.flag is not None and flags[dp.flag.name]:
					result.destroyed.append(place)
				else:
					result.elided.append(place)

	bid = fn.entry
	for _ in range(max_steps):
		if bid not in fn.blocks:
			raise SimulationError(f"path leaves '{fn.name}' at missing block bb{bid}")
		result.blocks.append(bid)
		blk = fn.blocks[bid]
		for site in blk.sites:
			for name in clear_at.get(site.id, []):
				flags[name] = False
			for name in set_at.get(site.id, []):
				flags[name] = True
			decision = plan.decisions.get(site.id)
			if decision is not None and decision.transfers_ownership:
				result.moved.append(site.id)
		if blk.is_exit:
			end_scope([n for n in order if fn.bindings[n].in_region(bid)])
			return result
		visit = visits.get(bid, 0)
		visits[bid] = visit + 1
		choice = choices.get(bid, 0)
		if not isinstance(choice, int):
			seq = list(choice)
			choice = seq[min(visit, len(seq) - 1)]
		if choice >= len(blk.edges):
			raise SimulationError(f"bb{bid} has no edge #{choice}")
		edge = blk.edges[choice]
		end_scope([n for n in order if fn.bindings[n].in_region(bid) and not fn.bindings[n].in_region(edge.dst)])
		bid = edge.dst
	raise SimulationError(f"no exit reached in '{fn.name}' after {max_steps} steps")


__all__ = [
	"SimulationError",
	"SimulationResult",
	"StandardTypes",
	"run_pipeline",
	"simulate",
	"standard_types",
]
