# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Forward move-state dataflow for one place (a binding or one of its field paths).

The state at a program point is the set of conditions the place may be in on
the paths reaching it: VALID (owns a live value), MOVED (ownership left through
a move-out), UNINIT (not declared yet on this path). The empty set means no path
reaches the point. Joins are set unions, so the analysis is a plain may-analysis
and converges in a few passes.

Transfer for a place `b.p`:
  - DECL of `b`: VALID;
  - WRITE of `b.q` where `q` is a prefix of `p` (whole or ancestor write): VALID;
  - moving site of `b.q` where `q` is a prefix of `p`: MOVED;
  - anything else leaves the state alone. Moving a descendant of `p` only makes
    `p` partial; per-field plans track that.

Only edges that stay inside the binding's region carry state; a block outside
the region starts the binding afresh (UNINIT), which is how loop-local bindings
get a new lifetime every iteration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import AbstractSet, Dict, FrozenSet, List, Optional, Tuple

from movec.cfg.nodes import FunctionCFG, UseKind, UseSite


class MoveState(Enum):
	"""Summary of a place's condition at a program point."""

	UNREACHED = auto()  # no path reaches the point
	UNINIT = auto()     # declared on no reaching path
	VALID = auto()      # live value on every reaching path
	MOVED = auto()      # no live value on any reaching path, moved on at least one
	MAYBE = auto()      # live on some paths, moved or undeclared on others


StateSet = FrozenSet[MoveState]

_UNREACHED: StateSet = frozenset()
_VALID: StateSet = frozenset({MoveState.VALID})
_MOVED: StateSet = frozenset({MoveState.MOVED})
_UNINIT: StateSet = frozenset({MoveState.UNINIT})


def summarize(states: AbstractSet[MoveState]) -> MoveState:
	if not states:
		return MoveState.UNREACHED
	if MoveState.VALID in states:
		return MoveState.VALID if len(states) == 1 else MoveState.MAYBE
	if MoveState.MOVED in states:
		return MoveState.MOVED
	return MoveState.UNINIT


def join_move_state(a: MoveState, b: MoveState) -> MoveState:
	"""Merge two summaries at a control-flow join."""
	if a is MoveState.UNREACHED:
		return b
	if b is MoveState.UNREACHED or a is b:
		return a
	if MoveState.MAYBE in (a, b) or MoveState.VALID in (a, b):
		return MoveState.MAYBE
	return MoveState.MOVED


@dataclass(frozen=True)
class Place:
	"""A binding or a field path of it (`path=()` is the whole binding)."""

	binding: str
	path: Tuple[str, ...] = ()

	def covered_by(self, path: Tuple[str, ...]) -> bool:
		"""True when an operation on `path` reaches this place (`path` is a prefix)."""
		return self.path[: len(path)] == path

	def __str__(self) -> str:
		return ".".join((self.binding,) + self.path)


@dataclass(frozen=True)
class ScopeExit:
	"""End of `block` where the place's lifetime ends: a return (`to` None) or a region exit edge."""

	block: int
	to: Optional[int] = None


@dataclass
class MoveStateResult:
	"""States before every site of the binding and at every reachable scope exit."""

	place: Place
	before: Dict[int, StateSet] = field(default_factory=dict)
	after: Dict[int, StateSet] = field(default_factory=dict)
	exits: Dict[ScopeExit, StateSet] = field(default_factory=dict)

	def state_before(self, site_id: int) -> MoveState:
		return summarize(self.before.get(site_id, _UNREACHED))

	def may_be_moved_before(self, site_id: int) -> bool:
		return MoveState.MOVED in self.before.get(site_id, _UNREACHED)

	def exit_states(self) -> Dict[ScopeExit, MoveState]:
		return {ex: summarize(st) for ex, st in self.exits.items()}


def scope_exits(fn: FunctionCFG, binding: str, reachable: AbstractSet[int]) -> List[ScopeExit]:
	"""Reachable points where `binding`'s lifetime ends, in block order."""
	b = fn.bindings[binding]
	out: List[ScopeExit] = []
	for bid in sorted(fn.blocks):
		if bid not in reachable or not b.in_region(bid):
			continue
		blk = fn.blocks[bid]
		if blk.is_exit:
			out.append(ScopeExit(block=bid))
			continue
		for e in blk.edges:
			if not b.in_region(e.dst):
				out.append(ScopeExit(block=bid, to=e.dst))
	return out


class MoveStateAnalysis:
	"""
	Run the dataflow for one place.

	`moves` is the set of site ids that actually transfer ownership (decided by
	the decision layer); sites of the binding not in it are copies or in-place
	accesses and leave the state untouched.
	"""

	def __init__(self, fn: FunctionCFG, moves: AbstractSet[int]) -> None:
		self.fn = fn
		self.moves = moves
		self._order = fn.ordered_blocks()
		self._preds = fn.predecessor_map()
		self._reachable = fn.reachable()

	def _transfer_site(self, place: Place, site: UseSite, state: StateSet) -> StateSet:
		if site.binding != place.binding:
			return state
		if site.kind is UseKind.DECL:
			return _VALID
		if site.kind is UseKind.WRITE and place.covered_by(site.path):
			return _VALID
		if site.kind is UseKind.MOVE_OUT and site.id in self.moves and place.covered_by(site.path):
			return _MOVED
		return state

	def run(self, place: Place) -> MoveStateResult:
		fn = self.fn
		binding = fn.bindings[place.binding]
		initial = _VALID if binding.is_param or place.binding in fn.captures else _UNINIT
		out_state: Dict[int, StateSet] = {bid: _UNREACHED for bid in self._order}
		in_state: Dict[int, StateSet] = {bid: _UNREACHED for bid in self._order}

		changed = True
		while changed:
			changed = False
			for bid in self._order:
				if bid not in self._reachable:
					continue
				if not binding.in_region(bid):
					new_out = _UNINIT
				else:
					acc: StateSet = initial if bid == fn.entry else _UNREACHED
					for p in self._preds.get(bid, []):
						if p not in self._reachable:
							continue
						acc = acc | (out_state[p] if binding.in_region(p) else _UNINIT)
					in_state[bid] = acc
					new_out = acc
					for site in fn.blocks[bid].sites:
						new_out = self._transfer_site(place, site, new_out)
				if new_out != out_state[bid]:
					out_state[bid] = new_out
					changed = True

		result = MoveStateResult(place=place)
		for bid in self._order:
			if bid not in self._reachable or not binding.in_region(bid):
				continue
			state = in_state[bid]
			for site in fn.blocks[bid].sites:
				if site.binding == place.binding:
					result.before[site.id] = state
				state = self._transfer_site(place, site, state)
				if site.binding == place.binding:
					result.after[site.id] = state
		for ex in scope_exits(fn, place.binding, self._reachable):
			result.exits[ex] = out_state[ex.block]
		return result


__all__ = [
	"MoveState",
	"MoveStateAnalysis",
	"MoveStateResult",
	"Place",
	"ScopeExit",
	"StateSet",
	"join_move_state",
	"scope_exits",
	"summarize",
]
