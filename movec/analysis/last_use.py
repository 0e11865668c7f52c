# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Last-use analysis: which accesses of a binding are its final access.

Scope:
- Backward liveness per binding over the CFG, iterated to a fixed point so
  loop back-edges and backward jumps are handled uniformly.
- A path ends where the binding's lifetime ends: an edge leaving its region,
  a function exit, or a re-declaration (loop-local bindings are re-declared on
  every iteration, which bounds their lifetime to one iteration).
- A site is last-use iff nothing of the binding is live immediately after it.

Conservative suppression applied on top of liveness (soundness over precision):
- captured bindings: nothing is ever last-use;
- address-of: every site at or after an address-of (forward, may-reach) is
  suppressed for the rest of the binding's scope;
- label loops: a site reachable from a label and able to reach a jump back to
  that label is suppressed, whatever the declarations in between;
- field moves: an access to `a.f` is a move candidate only if it is also the
  last use of `a`, the path does not go through a pointer, no aggregate on the
  path has a destructor, and `f`'s type is move-capable.

Short-circuit operands, return expressions with several references and
multiple last uses on divergent paths need no special casing: they fall out of
block-level liveness plus in-block site order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, List, Mapping, Set, Tuple

from movec.config import LastUseMode
from movec.cfg.nodes import ACCESS_KINDS, EdgeKind, FunctionCFG, UseKind, UseSite
from movec.type_model import TypeModel


class SuppressReason(Enum):
	"""Why a site that liveness considered final is still reported not-last-use."""

	CAPTURED = auto()
	ADDRESS_TAKEN = auto()
	LABEL_LOOP = auto()


class FieldMoveBlock(Enum):
	"""Why a field access may not move out of its aggregate, last use or not."""

	THROUGH_POINTER = auto()
	DESTRUCTOR_ANCESTOR = auto()
	NOT_MOVE_CAPABLE = auto()


@dataclass
class LastUseFacts:
	"""
	Per-function results, keyed by site id.

	`last_use` covers every access site of a named binding. `move_candidate`
	refines it for field paths; `field_blocked` records the field rule that
	forbids moving a path, for every field access (explicit moves consult it
	too). `live_in` is the per-binding block-entry liveness used by the
	engine (kept for traces and tests).
	"""

	function: str
	mode: LastUseMode
	last_use: Dict[int, bool] = field(default_factory=dict)
	move_candidate: Dict[int, bool] = field(default_factory=dict)
	suppressed: Dict[int, SuppressReason] = field(default_factory=dict)
	field_blocked: Dict[int, FieldMoveBlock] = field(default_factory=dict)
	live_in: Dict[str, Dict[int, bool]] = field(default_factory=dict)

	def is_last_use(self, site_id: int) -> bool:
		return self.last_use.get(site_id, False)

	def is_move_candidate(self, site_id: int) -> bool:
		return self.move_candidate.get(site_id, False)

	def last_use_sites(self, fn: FunctionCFG, binding: str) -> List[int]:
		return [s.id for s in fn.sites_of(binding) if self.last_use.get(s.id, False)]


class LastUseAnalysis:
	"""
	Compute LastUseFacts for one function.

	Inputs:
	- type_model: answers field types, destructors and move capability for the
	  field-move rule. Shared, read-only.
	- mode: FIXPOINT or BLOCK_LOCAL.
	"""

	def __init__(self, type_model: TypeModel, mode: LastUseMode = LastUseMode.FIXPOINT) -> None:
		self.type_model = type_model
		self.mode = mode

	def analyze(self, fn: FunctionCFG) -> LastUseFacts:
		facts = LastUseFacts(function=fn.name, mode=self.mode)
		order = fn.ordered_blocks()
		succs = fn.successor_map()
		preds = fn.predecessor_map()
		captured = fn.captured_names()
		label_loops = self._label_loop_blocks(fn)

		sites_by_binding: Dict[str, List[UseSite]] = {}
		for site in fn.all_sites():
			if site.binding is not None:
				sites_by_binding.setdefault(site.binding, []).append(site)

		for name in sorted(sites_by_binding):
			sites = sites_by_binding[name]
			binding = fn.bindings.get(name)
			if binding is None:
				continue
			if self.mode is LastUseMode.FIXPOINT:
				live_after, live_in = self._fixpoint_liveness(fn, name, order, succs)
				facts.live_in[name] = live_in
			else:
				live_after = self._block_local_liveness(fn, name, sites, succs)
			exposed = self._address_exposure(fn, name, order, preds)
			for site in sites:
				if site.kind not in ACCESS_KINDS:
					continue
				last = not live_after[site.id]
				if last and name in captured:
					facts.suppressed[site.id] = SuppressReason.CAPTURED
					last = False
				elif last and site.id in exposed:
					facts.suppressed[site.id] = SuppressReason.ADDRESS_TAKEN
					last = False
				elif last and site.block in label_loops:
					facts.suppressed[site.id] = SuppressReason.LABEL_LOOP
					last = False
				facts.last_use[site.id] = last
				field_ok = self._field_move_ok(facts, binding.type_id, site)
				facts.move_candidate[site.id] = last and field_ok
		return facts

	# ---------------------------------------------------------------- liveness

	@staticmethod
	def _transfer(sites: List[UseSite], name: str, live: bool) -> bool:
		"""Backward transfer of one block for `name`: DECL kills, any access generates."""
		for site in reversed(sites):
			if site.binding != name:
				continue
			if site.kind is UseKind.DECL:
				live = False
			elif site.kind in ACCESS_KINDS:
				live = True
		return live

	def _fixpoint_liveness(
		self,
		fn: FunctionCFG,
		name: str,
		order: List[int],
		succs: Mapping[int, List[int]],
	) -> Tuple[Dict[int, bool], Dict[int, bool]]:
		"""
		live_in per block, then live-after per site.

		Successors outside the binding's region contribute nothing: leaving the
		region ends the lifetime.
		"""
		binding = fn.bindings[name]
		live_in: Dict[int, bool] = {bid: False for bid in order}
		live_out: Dict[int, bool] = {bid: False for bid in order}
		changed = True
		while changed:
			changed = False
			for bid in reversed(order):
				out = any(
					live_in.get(s, False)
					for s in succs.get(bid, [])
					if binding.in_region(s)
				)
				inn = self._transfer(fn.blocks[bid].sites, name, out)
				if out != live_out[bid] or inn != live_in[bid]:
					live_out[bid] = out
					live_in[bid] = inn
					changed = True

		live_after: Dict[int, bool] = {}
		for bid in order:
			live = live_out[bid]
			for site in reversed(fn.blocks[bid].sites):
				if site.binding != name:
					continue
				live_after[site.id] = live
				if site.kind is UseKind.DECL:
					live = False
				elif site.kind in ACCESS_KINDS:
					live = True
		return live_after, live_in

	def _block_local_liveness(
		self,
		fn: FunctionCFG,
		name: str,
		sites: List[UseSite],
		succs: Mapping[int, List[int]],
	) -> Dict[int, bool]:
		"""
		Single-pass approximation: everything is live except the final access of
		a binding whose accesses all live in one block that sits on no cycle.
		"""
		live_after = {s.id: True for s in sites}
		access_blocks = {s.block for s in sites if s.kind in ACCESS_KINDS}
		if len(access_blocks) != 1:
			return live_after
		(bid,) = access_blocks
		on_cycle = any(bid in fn.reachable(s) for s in succs.get(bid, []))
		if on_cycle:
			return live_after
		accesses = [s for s in sites if s.kind in ACCESS_KINDS]
		live_after[accesses[-1].id] = False
		return live_after

	# ------------------------------------------------------------ suppression

	def _address_exposure(
		self,
		fn: FunctionCFG,
		name: str,
		order: List[int],
		preds: Mapping[int, List[int]],
	) -> Set[int]:
		"""
		Sites of `name` at or after an address-of on some path.

		Forward may-analysis; the exposure is never reset, not even by a
		re-declaration.
		"""
		if not any(s.binding == name and s.kind is UseKind.ADDR_OF for s in fn.all_sites()):
			return set()
		exposed_out: Dict[int, bool] = {bid: False for bid in order}
		changed = True
		while changed:
			changed = False
			for bid in order:
				flag = any(exposed_out.get(p, False) for p in preds.get(bid, []))
				for site in fn.blocks[bid].sites:
					if site.binding == name and site.kind is UseKind.ADDR_OF:
						flag = True
				if flag != exposed_out[bid]:
					exposed_out[bid] = flag
					changed = True
		out: Set[int] = set()
		for bid in order:
			flag = any(exposed_out.get(p, False) for p in preds.get(bid, []))
			for site in fn.blocks[bid].sites:
				if site.binding != name:
					continue
				if site.kind is UseKind.ADDR_OF:
					flag = True
				if flag and site.kind in ACCESS_KINDS:
					out.add(site.id)
		return out

	@staticmethod
	def _label_loop_blocks(fn: FunctionCFG) -> Set[int]:
		"""
		Blocks lying after a label and before a jump back to it.

		For each labeled jump J→L: blocks reachable from L that can also reach J.
		"""
		jumps: List[Tuple[int, int]] = []
		for bid in sorted(fn.blocks):
			for e in fn.blocks[bid].edges:
				if e.kind is EdgeKind.JUMP and e.dst in fn.blocks:
					jumps.append((bid, e.dst))
		if not jumps:
			return set()
		preds = fn.predecessor_map()
		out: Set[int] = set()
		for src, label_block in jumps:
			after_label = fn.reachable(label_block)
			if src not in after_label:
				# Forward jump: the label does not precede the jump.
				continue
			reaches_jump: Set[int] = set()
			stack = [src]
			while stack:
				bid = stack.pop()
				if bid in reaches_jump:
					continue
				reaches_jump.add(bid)
				stack.extend(preds.get(bid, []))
			out |= after_label & reaches_jump
		return out

	def _field_move_ok(self, facts: LastUseFacts, root_ty: int, site: UseSite) -> bool:
		if not site.path:
			return True
		info = self.type_model.resolve_path(root_ty, site.path)
		if site.through_pointer or info.through_pointer:
			facts.field_blocked[site.id] = FieldMoveBlock.THROUGH_POINTER
			return False
		if any(self.type_model.has_destructor(t) for t in info.ancestors):
			facts.field_blocked[site.id] = FieldMoveBlock.DESTRUCTOR_ANCESTOR
			return False
		if not self.type_model.is_move_capable(info.leaf):
			facts.field_blocked[site.id] = FieldMoveBlock.NOT_MOVE_CAPABLE
			return False
		return True


__all__ = [
	"FieldMoveBlock",
	"LastUseAnalysis",
	"LastUseFacts",
	"LastUseMode",
	"SuppressReason",
]
