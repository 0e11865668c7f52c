# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Type model: ordinary vs move-capable (EMT) types and synthesized move operations.

Built once from a finished TypeTable (`TypeModel.build`). Building validates
every declared type, synthesizes the missing half of each EMT's move pair and
then freezes: per-function analyses only ever read it, so it can be shared
across worker threads without locking.

Classification rules:
  - scalars, pointers, references and Unknown are ordinary (bitwise copy);
  - an opaque runtime type is an EMT iff it declares at least one user move op;
  - a struct is an EMT iff it declares at least one user move op or contains a
    move-capable field; a struct of only ordinary fields stays ordinary;
  - a missing move op is synthesized field-wise in declaration order, moving
    EMT fields and bitwise-copying the rest.

Violations (fatal, reported before any function is analysed):
  - E_MOVE_CAN_FAIL: a user move operation is declared as able to fail;
  - E_FIELD_MOVE_CAN_FAIL: a struct holds a field whose type is itself violating;
  - E_RECURSIVE_BY_VALUE: a struct contains itself by value.
Violating types are never move-capable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from movec.core.diagnostics import Diagnostic
from movec.core.span import Span
from movec.core.types_core import TypeDef, TypeId, TypeKind, TypeTable, UserMoveOp


class MoveOpOrigin(Enum):
	USER = auto()
	SYNTHESIZED = auto()


class FieldMoveMode(Enum):
	"""How a synthesized move transfers one field."""

	MOVE = auto()     # field type is an EMT: invoke its move operation
	BITCOPY = auto()  # ordinary field: copy the bits


@dataclass(frozen=True)
class FieldStep:
	"""One step of a synthesized move operation."""

	field: str
	type_id: TypeId
	mode: FieldMoveMode


@dataclass(frozen=True)
class MoveOp:
	"""
	A move construction or move assignment operation.

	User operations are opaque to the analysis (`steps` is empty); synthesized
	ones spell out the field-wise composition in declaration order.
	"""

	origin: MoveOpOrigin
	can_fail: bool = False
	steps: Tuple[FieldStep, ...] = ()


@dataclass(frozen=True)
class MoveOps:
	"""The move pair of a type; both halves always present."""

	move_ctor: MoveOp
	move_assign: MoveOp


def _user_op(op: UserMoveOp) -> MoveOp:
	return MoveOp(origin=MoveOpOrigin.USER, can_fail=op.can_fail)


def synthesize_defaults(
	table: TypeTable,
	ty: TypeId,
	is_move_capable: Callable[[TypeId], bool],
) -> MoveOps:
	"""
	Complete a type's move pair, synthesizing whichever half is missing.

	Synthesized halves move each field in declaration order, falling back to a
	bitwise copy for fields whose type is not move-capable. Pure function of
	its inputs, so calling it twice yields identical operations.
	"""
	td = table.get(ty)
	steps = tuple(
		FieldStep(
			field=f.name,
			type_id=f.type_id,
			mode=FieldMoveMode.MOVE if is_move_capable(f.type_id) else FieldMoveMode.BITCOPY,
		)
		for f in td.fields
	)
	synthesized = MoveOp(origin=MoveOpOrigin.SYNTHESIZED, can_fail=False, steps=steps)
	ctor = _user_op(td.move_ctor) if td.move_ctor is not None else synthesized
	assign = _user_op(td.move_assign) if td.move_assign is not None else synthesized
	return MoveOps(move_ctor=ctor, move_assign=assign)


@dataclass(frozen=True)
class PathInfo:
	"""
	Resolution of a field path rooted at a binding's type.

	`chain[0]` is the root type and `chain[i]` the type reached after `path[i-1]`;
	`through_pointer` is set when any step dereferences a pointer or reference.
	"""

	chain: Tuple[TypeId, ...]
	through_pointer: bool

	@property
	def leaf(self) -> TypeId:
		return self.chain[-1]

	@property
	def ancestors(self) -> Tuple[TypeId, ...]:
		return self.chain[:-1]


@dataclass(frozen=True)
class _TypeFacts:
	move_capable: bool
	violating: bool
	needs_destroy: bool
	ops: Optional[MoveOps]


class TypeModel:
	"""
	Immutable, process-wide answers about types.

	Construct with `TypeModel.build(table)`; inspect `diagnostics` for
	type-model violations before running any function analysis.
	"""

	def __init__(self, table: TypeTable, facts: Mapping[TypeId, _TypeFacts], diagnostics: Sequence[Diagnostic]) -> None:
		self._table = table
		self._facts: Dict[TypeId, _TypeFacts] = dict(facts)
		self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)

	@classmethod
	def build(cls, table: TypeTable) -> "TypeModel":
		"""Classify every type in `table`, synthesize defaults and collect violations."""
		builder = _ModelBuilder(table)
		for ty in table.ids():
			builder.classify(ty)
		return cls(table, builder.facts, builder.diagnostics)

	@property
	def table(self) -> TypeTable:
		return self._table

	def _get(self, ty: TypeId) -> _TypeFacts:
		try:
			return self._facts[ty]
		except KeyError:
			raise KeyError(f"type id {ty} is not part of this type model") from None

	def is_move_capable(self, ty: TypeId) -> bool:
		"""True iff `ty` is an EMT: both move operations exist and never fail."""
		return self._get(ty).move_capable

	def is_violating(self, ty: TypeId) -> bool:
		return self._get(ty).violating

	def has_user_move_ctor(self, ty: TypeId) -> bool:
		return self._table.get(ty).move_ctor is not None

	def has_user_move_assign(self, ty: TypeId) -> bool:
		return self._table.get(ty).move_assign is not None

	def has_destructor(self, ty: TypeId) -> bool:
		return self._table.get(ty).destructor

	def needs_destroy(self, ty: TypeId) -> bool:
		"""True when scope exit owes cleanup: own destructor or a field that needs one."""
		return self._get(ty).needs_destroy

	def move_ops(self, ty: TypeId) -> Optional[MoveOps]:
		"""The completed move pair of an EMT (None for ordinary/violating types)."""
		return self._get(ty).ops

	def synthesize_defaults(self, ty: TypeId) -> MoveOps:
		"""Re-run default synthesis for `ty` against this model's classification."""
		return synthesize_defaults(self._table, ty, self.is_move_capable)

	def type_name(self, ty: TypeId) -> str:
		return self._table.get(ty).name

	def resolve_path(self, ty: TypeId, path: Sequence[str]) -> PathInfo:
		"""
		Walk a field path from `ty`.

		Pointers and references are followed transparently (and recorded in
		`through_pointer`). Unknown fields raise KeyError: the front end is
		expected to hand us type-checked paths.
		"""
		chain: List[TypeId] = [ty]
		through_pointer = False
		cur = ty
		for name in path:
			td = self._table.get(cur)
			while td.kind in (TypeKind.POINTER, TypeKind.REF):
				through_pointer = True
				cur = td.param_types[0]
				td = self._table.get(cur)
			fld = td.field_named(name)
			if fld is None:
				raise KeyError(f"type '{td.name}' has no field '{name}'")
			cur = fld.type_id
			chain.append(cur)
		return PathInfo(chain=tuple(chain), through_pointer=through_pointer)


class _ModelBuilder:
	"""Memoized, cycle-aware classification pass used by TypeModel.build."""

	def __init__(self, table: TypeTable) -> None:
		self.table = table
		self.facts: Dict[TypeId, _TypeFacts] = {}
		self.diagnostics: List[Diagnostic] = []
		self._in_progress: Set[TypeId] = set()

	def _error(self, code: str, message: str, span: Span, notes: Optional[List[str]] = None) -> None:
		self.diagnostics.append(
			Diagnostic(message=message, code=code, phase="typemodel", severity="error", span=span, notes=notes or [])
		)

	def classify(self, ty: TypeId) -> _TypeFacts:
		if ty in self.facts:
			return self.facts[ty]
		td = self.table.get(ty)
		if td.kind is TypeKind.STRUCT:
			facts = self._classify_struct(ty, td)
		elif td.kind is TypeKind.OPAQUE:
			facts = self._classify_opaque(td)
		else:
			# Scalars, pointers, refs, Unknown: bitwise copyable, nothing to destroy.
			facts = _TypeFacts(move_capable=False, violating=False, needs_destroy=False, ops=None)
		self.facts[ty] = facts
		return facts

	def _failing_user_ops(self, td: TypeDef) -> List[Tuple[str, UserMoveOp]]:
		out = []
		if td.move_ctor is not None and td.move_ctor.can_fail:
			out.append(("move constructor", td.move_ctor))
		if td.move_assign is not None and td.move_assign.can_fail:
			out.append(("move assignment", td.move_assign))
		return out

	def _classify_opaque(self, td: TypeDef) -> _TypeFacts:
		failing = self._failing_user_ops(td)
		for what, op in failing:
			self._error(
				"E_MOVE_CAN_FAIL",
				f"{what} of '{td.name}' can fail; move operations must not raise",
				op.span if op.span.line is not None else td.span,
			)
		if failing:
			return _TypeFacts(move_capable=False, violating=True, needs_destroy=td.destructor, ops=None)
		has_user = td.move_ctor is not None or td.move_assign is not None
		if not has_user:
			return _TypeFacts(move_capable=False, violating=False, needs_destroy=td.destructor, ops=None)
		ctor = _user_op(td.move_ctor) if td.move_ctor is not None else MoveOp(MoveOpOrigin.SYNTHESIZED)
		assign = _user_op(td.move_assign) if td.move_assign is not None else MoveOp(MoveOpOrigin.SYNTHESIZED)
		return _TypeFacts(move_capable=True, violating=False, needs_destroy=td.destructor, ops=MoveOps(ctor, assign))

	def _classify_struct(self, ty: TypeId, td: TypeDef) -> _TypeFacts:
		assert ty not in self._in_progress, "cycles are caught at the field that closes them"
		self._in_progress.add(ty)
		try:
			violating = False
			any_emt_field = False
			needs_destroy = td.destructor
			for f in td.fields:
				if f.type_id in self._in_progress:
					cycle_name = self.table.get(f.type_id).name
					self._error(
						"E_RECURSIVE_BY_VALUE",
						f"struct '{td.name}' field '{f.name}' holds '{cycle_name}' by value, forming a cycle",
						td.span,
					)
					violating = True
					continue
				ff = self.classify(f.type_id)
				if ff.violating:
					fname = self.table.get(f.type_id).name
					self._error(
						"E_FIELD_MOVE_CAN_FAIL",
						f"struct '{td.name}' field '{f.name}' has type '{fname}' whose move operations are invalid",
						td.span,
					)
					violating = True
				any_emt_field = any_emt_field or ff.move_capable
				needs_destroy = needs_destroy or ff.needs_destroy
			for what, op in self._failing_user_ops(td):
				self._error(
					"E_MOVE_CAN_FAIL",
					f"{what} of '{td.name}' can fail; move operations must not raise",
					op.span if op.span.line is not None else td.span,
				)
				violating = True
		finally:
			self._in_progress.discard(ty)
		if violating:
			return _TypeFacts(move_capable=False, violating=True, needs_destroy=needs_destroy, ops=None)
		has_user = td.move_ctor is not None or td.move_assign is not None
		if not (has_user or any_emt_field):
			return _TypeFacts(move_capable=False, violating=False, needs_destroy=needs_destroy, ops=None)
		ops = synthesize_defaults(self.table, ty, lambda t: self.classify(t).move_capable)
		return _TypeFacts(move_capable=True, violating=False, needs_destroy=needs_destroy, ops=ops)


__all__ = [
	"FieldMoveMode",
	"FieldStep",
	"MoveOp",
	"MoveOpOrigin",
	"MoveOps",
	"PathInfo",
	"TypeModel",
	"synthesize_defaults",
]
