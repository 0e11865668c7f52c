# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Minimal type core: the type declarations as the front end sees them.

TypeIds are opaque ints indexing into a TypeTable. TypeDef records what was
*declared* (fields in declaration order, user-supplied move operations, a
destructor). Derived facts such as "is this an EMT" or "what does the
synthesized move constructor do" live in `movec.type_model`, which is built
once from a finished table.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .span import Span


TypeId = int  # opaque handle into the TypeTable


class TypeKind(Enum):
	"""Kinds of types understood by the type core."""

	SCALAR = auto()
	STRUCT = auto()
	OPAQUE = auto()  # runtime-provided nominal type (String, Buffer, ...): no visible fields
	POINTER = auto()
	REF = auto()
	UNKNOWN = auto()


@dataclass(frozen=True)
class UserMoveOp:
	"""A user-defined move operation (move constructor or move assignment)."""

	can_fail: bool = False
	span: Span = field(default_factory=Span)


@dataclass(frozen=True)
class StructField:
	"""One declared field; order inside TypeDef.fields is declaration order."""

	name: str
	type_id: TypeId


@dataclass(frozen=True)
class TypeDef:
	"""Definition of a type stored in the TypeTable."""

	kind: TypeKind
	name: str
	param_types: Tuple[TypeId, ...] = ()
	fields: Tuple[StructField, ...] = ()
	move_ctor: Optional[UserMoveOp] = None
	move_assign: Optional[UserMoveOp] = None
	destructor: bool = False
	ref_mut: bool | None = None  # only meaningful for TypeKind.REF
	span: Span = field(default_factory=Span)

	def field_named(self, name: str) -> Optional[StructField]:
		for f in self.fields:
			if f.name == name:
				return f
		return None


class TypeTable:
	"""
	Simple type table that owns TypeIds.

	Struct declarations may be split into `declare_struct` + `define_struct` so
	front ends can register mutually-referencing types (through pointers) before
	their fields are known.
	"""

	def __init__(self) -> None:
		self._defs: Dict[TypeId, TypeDef] = {}
		self._by_name: Dict[str, TypeId] = {}
		self._next_id: TypeId = 1  # reserve 0 for "invalid"
		self._int_type: TypeId | None = None
		self._bool_type: TypeId | None = None
		self._unknown_type: TypeId | None = None
		self._ptr_cache: Dict[TypeId, TypeId] = {}
		self._ref_cache: Dict[Tuple[TypeId, bool], TypeId] = {}

	def new_scalar(self, name: str) -> TypeId:
		"""Register a scalar type (e.g., Int, Bool) and return its TypeId."""
		return self._add(TypeDef(kind=TypeKind.SCALAR, name=name))

	def ensure_int(self) -> TypeId:
		"""Return a stable Int TypeId, creating it once."""
		if self._int_type is None:
			self._int_type = self.new_scalar("Int")
		return self._int_type

	def ensure_bool(self) -> TypeId:
		"""Return a stable Bool TypeId, creating it once."""
		if self._bool_type is None:
			self._bool_type = self.new_scalar("Bool")
		return self._bool_type

	def ensure_unknown(self) -> TypeId:
		"""Return a stable Unknown TypeId, creating it once."""
		if self._unknown_type is None:
			self._unknown_type = self._add(TypeDef(kind=TypeKind.UNKNOWN, name="Unknown"))
		return self._unknown_type

	def new_opaque(
		self,
		name: str,
		*,
		move_ctor: Optional[UserMoveOp] = None,
		move_assign: Optional[UserMoveOp] = None,
		destructor: bool = False,
		span: Span | None = None,
	) -> TypeId:
		"""Register a runtime-provided nominal type with optional user move ops."""
		return self._add(
			TypeDef(
				kind=TypeKind.OPAQUE,
				name=name,
				move_ctor=move_ctor,
				move_assign=move_assign,
				destructor=destructor,
				span=span or Span(),
			)
		)

	def declare_struct(
		self,
		name: str,
		*,
		move_ctor: Optional[UserMoveOp] = None,
		move_assign: Optional[UserMoveOp] = None,
		destructor: bool = False,
		span: Span | None = None,
	) -> TypeId:
		"""Register a struct with no fields yet; fill them with `define_struct`."""
		return self._add(
			TypeDef(
				kind=TypeKind.STRUCT,
				name=name,
				move_ctor=move_ctor,
				move_assign=move_assign,
				destructor=destructor,
				span=span or Span(),
			)
		)

	def define_struct(self, ty: TypeId, fields: Sequence[Tuple[str, TypeId]]) -> None:
		"""Set a declared struct's fields (declaration order is preserved)."""
		td = self.get(ty)
		if td.kind is not TypeKind.STRUCT:
			raise ValueError(f"type '{td.name}' is not a struct")
		seen: set[str] = set()
		out: List[StructField] = []
		for fname, fty in fields:
			if fname in seen:
				raise ValueError(f"duplicate field '{fname}' in struct '{td.name}'")
			if fty not in self._defs:
				raise KeyError(f"unknown field type id {fty} for '{td.name}.{fname}'")
			seen.add(fname)
			out.append(StructField(fname, fty))
		self._defs[ty] = replace(td, fields=tuple(out))

	def new_struct(
		self,
		name: str,
		fields: Sequence[Tuple[str, TypeId]],
		*,
		move_ctor: Optional[UserMoveOp] = None,
		move_assign: Optional[UserMoveOp] = None,
		destructor: bool = False,
		span: Span | None = None,
	) -> TypeId:
		"""Declare and define a struct in one step."""
		ty = self.declare_struct(name, move_ctor=move_ctor, move_assign=move_assign, destructor=destructor, span=span)
		self.define_struct(ty, fields)
		return ty

	def new_pointer(self, inner: TypeId) -> TypeId:
		"""Return a stable raw pointer TypeId to `inner`."""
		if inner not in self._ptr_cache:
			inner_name = self.get(inner).name
			self._ptr_cache[inner] = self._add(
				TypeDef(kind=TypeKind.POINTER, name=f"Ptr<{inner_name}>", param_types=(inner,)),
				register_name=False,
			)
		return self._ptr_cache[inner]

	def new_ref(self, inner: TypeId, is_mut: bool = False) -> TypeId:
		"""Return a stable reference TypeId to `inner` (shared or mutable)."""
		key = (inner, is_mut)
		if key not in self._ref_cache:
			inner_name = self.get(inner).name
			name = f"RefMut<{inner_name}>" if is_mut else f"Ref<{inner_name}>"
			self._ref_cache[key] = self._add(
				TypeDef(kind=TypeKind.REF, name=name, param_types=(inner,), ref_mut=is_mut),
				register_name=False,
			)
		return self._ref_cache[key]

	def _add(self, td: TypeDef, *, register_name: bool = True) -> TypeId:
		if register_name and td.name in self._by_name:
			raise ValueError(f"duplicate type name '{td.name}'")
		ty_id = self._next_id
		self._next_id += 1
		self._defs[ty_id] = td
		if register_name:
			self._by_name[td.name] = ty_id
		return ty_id

	def get(self, ty: TypeId) -> TypeDef:
		"""Fetch the TypeDef for a given TypeId."""
		return self._defs[ty]

	def lookup(self, name: str) -> Optional[TypeId]:
		"""Resolve a nominal type name (scalars, structs, opaque types)."""
		return self._by_name.get(name)

	def ids(self) -> Iterator[TypeId]:
		"""Iterate TypeIds in registration order."""
		return iter(sorted(self._defs))

	def __contains__(self, ty: object) -> bool:
		return ty in self._defs

	def __len__(self) -> int:
		return len(self._defs)


__all__ = ["TypeId", "TypeKind", "TypeDef", "StructField", "UserMoveOp", "TypeTable"]
