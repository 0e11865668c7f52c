#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Type model: EMT classification, synthesized move operations and violations."""

import pytest

from movec.core.types_core import TypeTable, UserMoveOp
from movec.type_model import FieldMoveMode, MoveOpOrigin, TypeModel


def _codes(model: TypeModel) -> list[str]:
	return [d.code for d in model.diagnostics]


def test_scalars_and_pointers_are_ordinary():
	"""Scalars and pointers are bitwise-copied and need no destructor."""
	table = TypeTable()
	int_ty = table.ensure_int()
	str_ty = table.new_opaque("Str", move_ctor=UserMoveOp(), destructor=True)
	ptr = table.new_pointer(str_ty)
	ref = table.new_ref(str_ty, is_mut=True)
	model = TypeModel.build(table)
	assert not model.is_move_capable(int_ty)
	assert not model.is_move_capable(ptr)
	assert not model.is_move_capable(ref)
	assert not model.needs_destroy(ptr)
	assert model.move_ops(int_ty) is None
	assert model.diagnostics == ()


def test_opaque_type_is_emt_only_with_user_move_op():
	"""Opaque types become EMT only through a user move operation."""
	table = TypeTable()
	plain = table.new_opaque("Plain", destructor=True)
	ctor_only = table.new_opaque("CtorOnly", move_ctor=UserMoveOp())
	model = TypeModel.build(table)
	assert not model.is_move_capable(plain)
	assert model.needs_destroy(plain)
	assert model.is_move_capable(ctor_only)
	ops = model.move_ops(ctor_only)
	assert ops is not None
	assert ops.move_ctor.origin is MoveOpOrigin.USER
	# The missing half is synthesized.
	assert ops.move_assign.origin is MoveOpOrigin.SYNTHESIZED


def test_struct_of_ordinary_fields_stays_ordinary():
	table = TypeTable()
	int_ty = table.ensure_int()
	point = table.new_struct("Point", [("x", int_ty), ("y", int_ty)])
	model = TypeModel.build(table)
	assert not model.is_move_capable(point)
	assert not model.needs_destroy(point)


def test_struct_with_emt_field_synthesizes_fieldwise_moves_in_order():
	"""Synthesized moves visit fields in declaration order."""
	table = TypeTable()
	int_ty = table.ensure_int()
	str_ty = table.new_opaque("Str", move_ctor=UserMoveOp(), move_assign=UserMoveOp(), destructor=True)
	pair = table.new_struct("Pair", [("name", str_ty), ("count", int_ty)])
	model = TypeModel.build(table)
	assert model.is_move_capable(pair)
	assert model.needs_destroy(pair)
	ops = model.move_ops(pair)
	assert ops is not None
	assert ops.move_ctor.origin is MoveOpOrigin.SYNTHESIZED
	steps = [(s.field, s.mode) for s in ops.move_ctor.steps]
	assert steps == [("name", FieldMoveMode.MOVE), ("count", FieldMoveMode.BITCOPY)]
	assert ops.move_assign.steps == ops.move_ctor.steps


def test_synthesis_is_idempotent():
	"""Building the model twice yields the same operations."""
	table = TypeTable()
	str_ty = table.new_opaque("Str", move_ctor=UserMoveOp(), destructor=True)
	outer = table.new_struct("Outer", [("a", str_ty), ("b", str_ty)], move_assign=UserMoveOp())
	model = TypeModel.build(table)
	first = model.synthesize_defaults(outer)
	second = model.synthesize_defaults(outer)
	assert first == second
	assert first == model.move_ops(outer)
	assert first.move_assign.origin is MoveOpOrigin.USER
	assert first.move_ctor.origin is MoveOpOrigin.SYNTHESIZED


def test_failing_user_move_is_a_violation():
	"""User move operations must not fail."""
	table = TypeTable()
	bad = table.new_opaque("Bad", move_ctor=UserMoveOp(can_fail=True))
	model = TypeModel.build(table)
	assert _codes(model) == ["E_MOVE_CAN_FAIL"]
	assert model.is_violating(bad)
	assert not model.is_move_capable(bad)
	assert model.move_ops(bad) is None


def test_violation_propagates_to_containing_struct():
	"""A struct holding a violating field is itself violating."""
	table = TypeTable()
	bad = table.new_opaque("Bad", move_assign=UserMoveOp(can_fail=True))
	wrapper = table.new_struct("Wrapper", [("inner", bad)])
	model = TypeModel.build(table)
	assert set(_codes(model)) == {"E_MOVE_CAN_FAIL", "E_FIELD_MOVE_CAN_FAIL"}
	assert model.is_violating(wrapper)
	assert not model.is_move_capable(wrapper)
	assert all(d.phase == "typemodel" for d in model.diagnostics)


def test_recursive_by_value_struct_is_rejected():
	"""By-value recursion has no finite layout."""
	table = TypeTable()
	node = table.declare_struct("Node")
	table.define_struct(node, [("next", node)])
	model = TypeModel.build(table)
	assert "E_RECURSIVE_BY_VALUE" in _codes(model)
	assert model.is_violating(node)


def test_recursion_through_pointer_is_fine():
	table = TypeTable()
	str_ty = table.new_opaque("Str", move_ctor=UserMoveOp(), destructor=True)
	node = table.declare_struct("Node")
	table.define_struct(node, [("label", str_ty), ("next", table.new_pointer(node))])
	model = TypeModel.build(table)
	assert model.diagnostics == ()
	assert model.is_move_capable(node)


def test_resolve_path_reports_pointer_and_ancestors():
	"""Field paths resolve to their type and the types they pass through."""
	table = TypeTable()
	int_ty = table.ensure_int()
	str_ty = table.new_opaque("Str", move_ctor=UserMoveOp(), destructor=True)
	pair = table.new_struct("Pair", [("name", str_ty), ("count", int_ty)])
	holder = table.new_struct("Holder", [("inner", pair), ("ptr", table.new_pointer(pair))])
	model = TypeModel.build(table)

	direct = model.resolve_path(holder, ("inner", "name"))
	assert direct.leaf == str_ty
	assert direct.ancestors == (holder, pair)
	assert not direct.through_pointer

	via_ptr = model.resolve_path(holder, ("ptr", "name"))
	assert via_ptr.leaf == str_ty
	assert via_ptr.through_pointer

	with pytest.raises(KeyError):
		model.resolve_path(holder, ("missing",))
