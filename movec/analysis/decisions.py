# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Move/copy decisions and destructor elision for one function.

Inputs: a validated FunctionCFG, its LastUseFacts and the shared TypeModel.
Output: a FunctionPlan the code generator consumes as-is.

Per move-out site of a move-capable value:
  - temporary source: move;
  - named binding: move iff last use (explicit `move` always moves);
  - ordinary values: copy;
  - reads, writes and address-of are in-place (plain-reference-pass).
Passing conventions and forwarding are settled by `movec.analysis.ownership`.

Destruction plans are computed from the moves actually chosen:
  - a move dominating every reachable scope exit (with no later
    re-initialisation) → never-destroy;
  - otherwise the forward move-state dataflow decides: moved on every exit →
    never-destroy, valid on every exit → always-destroy, mixed →
    guarded-destroy with an obligation flag.
Moved field paths get plans of their own; the parent is then partial.

Any definite or possible use of a value after an explicit move is reported as
E_USE_AFTER_MOVE and the whole function falls back to copy-everywhere /
always-destroy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, List, Optional, Set, Tuple

from movec.analysis.last_use import LastUseFacts, SuppressReason
from movec.analysis.move_state import MoveState, MoveStateAnalysis, MoveStateResult, Place, ScopeExit
from movec.analysis.ownership import (
	BindingOwnership,
	PassKind,
	binding_ownership,
	pass_decision,
	returns_forwarded_ref,
)
from movec.cfg.dom import DominatorAnalysis, DominatorInfo
from movec.cfg.nodes import (
	ACCESS_KINDS,
	Binding,
	FunctionCFG,
	PassMode,
	TargetKind,
	UseKind,
	UseSite,
)
from movec.config import AnalysisConfig, AssignOrder
from movec.core.diagnostics import Diagnostic, has_errors
from movec.core.types_core import TypeId
from movec.type_model import TypeModel


class UseDecisionKind(Enum):
	CONSTRUCT_BY_MOVE = auto()
	CONSTRUCT_BY_COPY = auto()
	PLAIN_REF_PASS = auto()
	MOVE_REF_PASS = auto()


_PASS_KIND_TO_DECISION = {
	PassKind.MOVE: UseDecisionKind.CONSTRUCT_BY_MOVE,
	PassKind.COPY: UseDecisionKind.CONSTRUCT_BY_COPY,
	PassKind.PLAIN_REF: UseDecisionKind.PLAIN_REF_PASS,
	PassKind.MOVE_REF: UseDecisionKind.MOVE_REF_PASS,
}


@dataclass(frozen=True)
class UseDecision:
	"""What the code generator emits at one site; `reason` is a short trace tag."""

	site: int
	kind: UseDecisionKind
	transfers_ownership: bool = False
	reason: str = ""


class DestroyKind(Enum):
	ALWAYS_DESTROY = auto()
	NEVER_DESTROY = auto()
	GUARDED_DESTROY = auto()


@dataclass(frozen=True)
class FlagPoint:
	"""
	A program point touching an obligation flag.

	Clear points sit right after their site unless `before_call` is set (the
	receiving call may fail, so ownership is considered gone before it runs).
	"""

	site: int
	block: int
	before_call: bool = False


@dataclass(frozen=True)
class DropFlag:
	"""
	Runtime boolean "destruction still owed" for one place.

	Set true at `decl_site` (None: function entry, for parameters), cleared at
	every `clear_points` move, set again at `set_points` re-initialising writes,
	read once at every scope exit.
	"""

	name: str
	binding: str
	path: Tuple[str, ...]
	decl_site: Optional[int]
	clear_points: Tuple[FlagPoint, ...] = ()
	set_points: Tuple[FlagPoint, ...] = ()


@dataclass(frozen=True)
class DestructionPlan:
	binding: str
	path: Tuple[str, ...]
	type_id: TypeId
	kind: DestroyKind
	flag: Optional[DropFlag] = None
	# Some field paths of this place have plans of their own; destroying the
	# place destroys only the remaining fields.
	partial: bool = False
	reason: str = ""

	@property
	def place(self) -> Place:
		return Place(self.binding, self.path)


@dataclass(frozen=True)
class AssignPlan:
	"""
	Lowering of one write into a destination of move-capable or destructible type.

	`dest_state` is the destination's condition right before the write;
	`dispose` says whether the old value must be destroyed first (guarded by
	`flag` when it is only maybe alive).
	"""

	site: int
	dest: str
	path: Tuple[str, ...]
	order: AssignOrder
	dest_state: MoveState
	dispose: DestroyKind
	flag: Optional[str] = None
	source_site: Optional[int] = None


@dataclass
class FunctionPlan:
	"""Everything the code generator needs for one function (and its nested ones)."""

	name: str
	decisions: Dict[int, UseDecision] = field(default_factory=dict)
	destruction: Dict[Place, DestructionPlan] = field(default_factory=dict)
	assigns: Dict[int, AssignPlan] = field(default_factory=dict)
	diagnostics: List[Diagnostic] = field(default_factory=list)
	excluded: bool = False
	facts: Optional[LastUseFacts] = None
	nested: List["FunctionPlan"] = field(default_factory=list)

	def decision(self, site_id: int) -> UseDecision:
		return self.decisions[site_id]

	def destruction_of(self, binding: str, path: Tuple[str, ...] = ()) -> DestructionPlan:
		return self.destruction[Place(binding, path)]

	@property
	def flags(self) -> List[DropFlag]:
		return [p.flag for p in self.destruction.values() if p.flag is not None]

	def nested_plan(self, name: str) -> "FunctionPlan":
		for plan in self.nested:
			if plan.name == name:
				return plan
		raise KeyError(f"'{self.name}' has no nested function '{name}'")


def flag_name(place: Place) -> str:
	return f"{place}.live"


def _moves_place(site: UseSite, place: Place) -> bool:
	return site.binding == place.binding and place.covered_by(site.path)


class MoveDecisionLayer:
	"""
	Turn last-use facts into a FunctionPlan.

	Stateless between calls; one instance can serve every function of a
	program (and every worker thread).
	"""

	def __init__(self, type_model: TypeModel, config: Optional[AnalysisConfig] = None) -> None:
		self.type_model = type_model
		self.config = config or AnalysisConfig()

	# -------------------------------------------------------------- entry points

	def plan(self, fn: FunctionCFG, facts: LastUseFacts) -> FunctionPlan:
		decisions: Dict[int, UseDecision] = {}
		for site in fn.all_sites():
			if site.kind is UseKind.DECL:
				continue
			decisions[site.id] = self._decide(fn, site, facts)
		moves = {sid for sid, d in decisions.items() if d.transfers_ownership}
		states = MoveStateAnalysis(fn, moves)

		diagnostics = self._check_use_after_move(fn, moves, states)
		if has_errors(diagnostics):
			return self.fallback(fn, diagnostics)

		dom = DominatorAnalysis().compute(fn)
		destruction = self._destruction_plans(fn, moves, states, dom)
		assigns = self._assign_plans(fn, states, destruction)
		return FunctionPlan(
			name=fn.name,
			decisions=decisions,
			destruction=destruction,
			assigns=assigns,
			diagnostics=diagnostics,
			facts=facts,
		)

	def fallback(self, fn: FunctionCFG, diagnostics: List[Diagnostic]) -> FunctionPlan:
		"""
		Copy-everywhere, never-elide plan for an excluded function.

		Tolerates malformed input: sites naming unknown bindings and bindings of
		unknown types are skipped rather than planned.
		"""
		tm = self.type_model
		decisions: Dict[int, UseDecision] = {}
		for site in fn.all_sites():
			if site.kind is UseKind.DECL:
				continue
			if site.kind is not UseKind.MOVE_OUT:
				decisions[site.id] = UseDecision(site.id, UseDecisionKind.PLAIN_REF_PASS, reason="in-place")
				continue
			target = site.target
			binding = fn.bindings.get(site.binding) if site.binding is not None else None
			if target is not None and target.mode is PassMode.PLAIN_REF:
				decisions[site.id] = UseDecision(site.id, UseDecisionKind.PLAIN_REF_PASS, reason="plain-ref")
			elif target is not None and target.kind is TargetKind.CALL_ARG and target.forwarding:
				decisions[site.id] = UseDecision(site.id, UseDecisionKind.MOVE_REF_PASS, reason="forwarding")
			elif target is not None and returns_forwarded_ref(fn, binding, site.path, target):
				decisions[site.id] = UseDecision(site.id, UseDecisionKind.MOVE_REF_PASS, reason="forwarded-return")
			else:
				decisions[site.id] = UseDecision(site.id, UseDecisionKind.CONSTRUCT_BY_COPY, reason="fallback")

		destruction: Dict[Place, DestructionPlan] = {}
		for name in sorted(fn.bindings):
			binding = fn.bindings[name]
			if binding.type_id not in tm.table:
				continue
			owed = binding_ownership(fn, binding) is BindingOwnership.OWNED and tm.needs_destroy(binding.type_id)
			destruction[Place(name)] = DestructionPlan(
				binding=name,
				path=(),
				type_id=binding.type_id,
				kind=DestroyKind.ALWAYS_DESTROY if owed else DestroyKind.NEVER_DESTROY,
				reason="fallback",
			)

		assigns: Dict[int, AssignPlan] = {}
		for site in fn.all_sites():
			if site.kind is not UseKind.WRITE or site.binding not in fn.bindings:
				continue
			leaf = self._leaf_type(fn.bindings[site.binding], site.path)
			if leaf is None or not self._assign_relevant(leaf):
				continue
			assigns[site.id] = AssignPlan(
				site=site.id,
				dest=site.binding,
				path=site.path,
				order=self.config.assign_order,
				dest_state=MoveState.VALID,
				dispose=DestroyKind.ALWAYS_DESTROY if tm.needs_destroy(leaf) else DestroyKind.NEVER_DESTROY,
				source_site=self._assign_source(fn, site),
			)

		return FunctionPlan(
			name=fn.name,
			decisions=decisions,
			destruction=destruction,
			assigns=assigns,
			diagnostics=list(diagnostics),
			excluded=True,
		)

	# -------------------------------------------------------------- move / copy

	def _leaf_type(self, binding: Binding, path: Tuple[str, ...]) -> Optional[TypeId]:
		if binding.type_id not in self.type_model.table:
			return None
		if not path:
			return binding.type_id
		try:
			return self.type_model.resolve_path(binding.type_id, path).leaf
		except KeyError:
			return None

	def _site_type(self, fn: FunctionCFG, site: UseSite) -> TypeId:
		if site.binding is None:
			if site.temp_type is None:
				raise ValueError(f"untyped temporary at {site.describe()} in '{fn.name}'; run validate_cfg first")
			return site.temp_type
		binding = fn.bindings.get(site.binding)
		leaf = self._leaf_type(binding, site.path) if binding is not None else None
		if leaf is None:
			raise ValueError(f"unresolvable place at {site.describe()} in '{fn.name}'; run validate_cfg first")
		return leaf

	def _decide(self, fn: FunctionCFG, site: UseSite, facts: LastUseFacts) -> UseDecision:
		if site.kind is not UseKind.MOVE_OUT:
			return UseDecision(site.id, UseDecisionKind.PLAIN_REF_PASS, reason="in-place")
		target = site.target
		if target is None:
			raise ValueError(f"move-out without a target at {site.describe()} in '{fn.name}'; run validate_cfg first")
		binding = fn.bindings.get(site.binding) if site.binding is not None else None

		if returns_forwarded_ref(fn, binding, site.path, target):
			return UseDecision(site.id, UseDecisionKind.MOVE_REF_PASS, reason="forwarded-return")
		if target.mode is PassMode.PLAIN_REF:
			return UseDecision(site.id, UseDecisionKind.PLAIN_REF_PASS, reason="plain-ref")
		if target.kind is TargetKind.CALL_ARG and target.forwarding:
			return UseDecision(site.id, UseDecisionKind.MOVE_REF_PASS, reason="forwarding")
		if not self.type_model.is_move_capable(self._site_type(fn, site)):
			return UseDecision(site.id, UseDecisionKind.CONSTRUCT_BY_COPY, reason="ordinary")

		can_move, reason = self._can_move(fn, site, binding, facts)
		kind, transfers = pass_decision(target, can_move)
		return UseDecision(site.id, _PASS_KIND_TO_DECISION[kind], transfers_ownership=transfers, reason=reason)

	def _can_move(
		self,
		fn: FunctionCFG,
		site: UseSite,
		binding: Optional[Binding],
		facts: LastUseFacts,
	) -> Tuple[bool, str]:
		if binding is None:
			return True, "temporary"
		ownership = binding_ownership(fn, binding)
		if ownership is BindingOwnership.BORROWED:
			return False, "borrowed"
		if ownership is BindingOwnership.CAPTURED:
			return False, "captured"
		if site.via_forward:
			if self.config.inline_forwarding and facts.is_move_candidate(site.id):
				return True, "inline-forwarding"
			return False, "forwarded"
		if site.explicit:
			if site.id in facts.field_blocked:
				return False, "field-blocked"
			return True, "explicit"
		if facts.is_move_candidate(site.id):
			return True, "last-use"
		if facts.is_last_use(site.id):
			return False, "field-blocked"
		suppressed = facts.suppressed.get(site.id)
		if suppressed is SuppressReason.CAPTURED:
			return False, "captured"
		if suppressed is SuppressReason.ADDRESS_TAKEN:
			return False, "address-taken"
		if suppressed is SuppressReason.LABEL_LOOP:
			return False, "label-loop"
		return False, "live-after"

	# -------------------------------------------------------------- diagnostics

	def _check_use_after_move(self, fn: FunctionCFG, moves: Set[int], states: MoveStateAnalysis) -> List[Diagnostic]:
		"""
		Report accesses reached by an explicit move.

		Implicit moves happen only at a last use, so nothing can follow them;
		only explicit moves need checking. A whole write after a move is a
		re-initialisation, not a use.
		"""
		diags: List[Diagnostic] = []
		explicit = [fn.site(sid) for sid in sorted(moves) if fn.site(sid).explicit]
		places = sorted({Place(s.binding, s.path) for s in explicit if s.binding is not None}, key=str)
		for place in places:
			result = states.run(place)
			movers = [s for s in explicit if _moves_place(s, place)]
			for site in fn.sites_of(place.binding):
				if site.kind not in ACCESS_KINDS:
					continue
				if site.kind is UseKind.WRITE and place.covered_by(site.path):
					continue
				overlaps = place.covered_by(site.path) or site.path[: len(place.path)] == place.path
				if not overlaps or not result.may_be_moved_before(site.id):
					continue
				definitely = result.state_before(site.id) is MoveState.MOVED
				what = "moved" if definitely else "possibly moved"
				diags.append(
					Diagnostic(
						message=f"use of {what} value '{place}' in '{fn.name}' ({site.describe()})",
						code="E_USE_AFTER_MOVE",
						phase="moves",
						severity="error",
						span=site.span,
						notes=[f"'{place}' moved at {m.span} ({m.describe()})" for m in movers],
					)
				)
		return diags

	# -------------------------------------------------------------- destruction

	def _destruction_plans(
		self,
		fn: FunctionCFG,
		moves: Set[int],
		states: MoveStateAnalysis,
		dom: DominatorInfo,
	) -> Dict[Place, DestructionPlan]:
		tm = self.type_model
		out: Dict[Place, DestructionPlan] = {}
		for name in sorted(fn.bindings):
			binding = fn.bindings[name]
			ownership = binding_ownership(fn, binding)
			if ownership is not BindingOwnership.OWNED:
				out[Place(name)] = DestructionPlan(
					binding=name,
					path=(),
					type_id=binding.type_id,
					kind=DestroyKind.NEVER_DESTROY,
					reason=ownership.name.lower(),
				)
				continue
			if not tm.needs_destroy(binding.type_id):
				out[Place(name)] = DestructionPlan(
					binding=name,
					path=(),
					type_id=binding.type_id,
					kind=DestroyKind.NEVER_DESTROY,
					reason="trivial",
				)
				continue
			moved_sites = [fn.site(sid) for sid in sorted(moves) if fn.site(sid).binding == name]
			field_paths = sorted({s.path for s in moved_sites if s.path})
			root = self._place_plan(fn, binding, Place(name), binding.type_id, moved_sites, states, dom)
			if field_paths:
				root = DestructionPlan(
					binding=root.binding,
					path=root.path,
					type_id=root.type_id,
					kind=root.kind,
					flag=root.flag,
					partial=True,
					reason=root.reason,
				)
			out[root.place] = root
			for path in field_paths:
				leaf = tm.resolve_path(binding.type_id, path).leaf
				place = Place(name, path)
				if not tm.needs_destroy(leaf):
					out[place] = DestructionPlan(
						binding=name,
						path=path,
						type_id=leaf,
						kind=DestroyKind.NEVER_DESTROY,
						reason="trivial",
					)
					continue
				out[place] = self._place_plan(fn, binding, place, leaf, moved_sites, states, dom)
		return out

	def _place_plan(
		self,
		fn: FunctionCFG,
		binding: Binding,
		place: Place,
		type_id: TypeId,
		moved_sites: List[UseSite],
		states: MoveStateAnalysis,
		dom: DominatorInfo,
	) -> DestructionPlan:
		place_moves = [s for s in moved_sites if _moves_place(s, place)]
		result = states.run(place)
		exits = result.exit_states()
		reinit = [
			s
			for s in fn.sites_of(place.binding)
			if s.kind is UseKind.WRITE
			and place.covered_by(s.path)
			and result.state_before(s.id) in (MoveState.MOVED, MoveState.MAYBE)
		]

		if place_moves and not reinit and exits and any(self._dominates_exits(fn, binding, m, exits, dom) for m in place_moves):
			return DestructionPlan(
				binding=place.binding,
				path=place.path,
				type_id=type_id,
				kind=DestroyKind.NEVER_DESTROY,
				reason="dominating-move",
			)

		owed = [st for st in exits.values() if st in (MoveState.VALID, MoveState.MAYBE)]
		if not owed:
			return DestructionPlan(
				binding=place.binding,
				path=place.path,
				type_id=type_id,
				kind=DestroyKind.NEVER_DESTROY,
				reason="moved-on-all-exits" if place_moves else "no-live-exit",
			)
		maybe_at_write = any(result.state_before(s.id) is MoveState.MAYBE for s in reinit)
		if len(owed) == len(exits) and all(st is MoveState.VALID for st in owed) and not maybe_at_write:
			return DestructionPlan(
				binding=place.binding,
				path=place.path,
				type_id=type_id,
				kind=DestroyKind.ALWAYS_DESTROY,
				reason="valid-on-all-exits" if place_moves else "never-moved",
			)

		flag = DropFlag(
			name=flag_name(place),
			binding=place.binding,
			path=place.path,
			decl_site=self._decl_site(fn, binding),
			clear_points=tuple(
				FlagPoint(
					site=s.id,
					block=s.block,
					before_call=bool(s.target is not None and s.target.kind is TargetKind.CALL_ARG and s.target.may_fail),
				)
				for s in place_moves
			),
			set_points=tuple(FlagPoint(site=s.id, block=s.block) for s in reinit),
		)
		return DestructionPlan(
			binding=place.binding,
			path=place.path,
			type_id=type_id,
			kind=DestroyKind.GUARDED_DESTROY,
			flag=flag,
			reason="mixed-exits",
		)

	@staticmethod
	def _decl_site(fn: FunctionCFG, binding: Binding) -> Optional[int]:
		if binding.is_param or binding.name in fn.captures:
			return None
		for site in fn.sites_of(binding.name):
			if site.kind is UseKind.DECL:
				return site.id
		return None

	@staticmethod
	def _dominates_exits(
		fn: FunctionCFG,
		binding: Binding,
		move: UseSite,
		exits: Dict[ScopeExit, MoveState],
		dom: DominatorInfo,
	) -> bool:
		"""`move` runs on every path to every exit, and no re-declaration can follow it."""
		if not all(dom.dominates(move.block, ex.block) for ex in exits):
			return False
		blk = fn.blocks[move.block]
		if any(s.binding == binding.name and s.kind is UseKind.DECL for s in blk.sites[move.index + 1 :]):
			return False
		seen: Set[int] = set()
		stack = [e.dst for e in blk.edges if binding.in_region(e.dst)]
		while stack:
			bid = stack.pop()
			if bid in seen or bid not in fn.blocks:
				continue
			seen.add(bid)
			cur = fn.blocks[bid]
			if any(s.binding == binding.name and s.kind is UseKind.DECL for s in cur.sites):
				return False
			stack.extend(e.dst for e in cur.edges if binding.in_region(e.dst))
		return True

	# -------------------------------------------------------------- assignments

	def _assign_relevant(self, ty: TypeId) -> bool:
		return self.type_model.is_move_capable(ty) or self.type_model.needs_destroy(ty)

	@staticmethod
	def _assign_source(fn: FunctionCFG, site: UseSite) -> Optional[int]:
		if site.index == 0:
			return None
		prev = fn.blocks[site.block].sites[site.index - 1]
		if (
			prev.kind is UseKind.MOVE_OUT
			and prev.target is not None
			and prev.target.kind is TargetKind.ASSIGN
			and prev.target.dest == site.binding
		):
			return prev.id
		return None

	def _assign_plans(
		self,
		fn: FunctionCFG,
		states: MoveStateAnalysis,
		destruction: Dict[Place, DestructionPlan],
	) -> Dict[int, AssignPlan]:
		tm = self.type_model
		cache: Dict[Place, MoveStateResult] = {}
		out: Dict[int, AssignPlan] = {}
		for site in fn.all_sites():
			if site.kind is not UseKind.WRITE or site.binding is None:
				continue
			binding = fn.bindings[site.binding]
			leaf = self._leaf_type(binding, site.path)
			if leaf is None or not self._assign_relevant(leaf):
				continue
			place = Place(site.binding, site.path)
			if place not in cache:
				cache[place] = states.run(place)
			state = cache[place].state_before(site.id)

			flag: Optional[str] = None
			if not tm.needs_destroy(leaf) or state in (MoveState.MOVED, MoveState.UNINIT, MoveState.UNREACHED):
				dispose = DestroyKind.NEVER_DESTROY
			elif state is MoveState.VALID:
				dispose = DestroyKind.ALWAYS_DESTROY
			else:
				dispose = DestroyKind.GUARDED_DESTROY
				flag = self._covering_flag(place, destruction)
			live_dest = dispose is not DestroyKind.NEVER_DESTROY or state is MoveState.VALID
			out[site.id] = AssignPlan(
				site=site.id,
				dest=site.binding,
				path=site.path,
				order=self.config.assign_order if live_dest else AssignOrder.DESTROY_THEN_CONSTRUCT,
				dest_state=state,
				dispose=dispose,
				flag=flag,
				source_site=self._assign_source(fn, site),
			)
		return out

	@staticmethod
	def _covering_flag(place: Place, destruction: Dict[Place, DestructionPlan]) -> Optional[str]:
		"""Flag of the most specific guarded place containing `place`."""
		best: Optional[DestructionPlan] = None
		for plan in destruction.values():
			if plan.flag is None or plan.binding != place.binding or not place.covered_by(plan.path):
				continue
			if best is None or len(plan.path) > len(best.path):
				best = plan
		return best.flag.name if best is not None and best.flag is not None else None


__all__ = [
	"AssignPlan",
	"DestroyKind",
	"DestructionPlan",
	"DropFlag",
	"FlagPoint",
	"FunctionPlan",
	"MoveDecisionLayer",
	"UseDecision",
	"UseDecisionKind",
	"flag_name",
]
