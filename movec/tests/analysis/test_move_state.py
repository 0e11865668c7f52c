#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Forward move-state dataflow: joins, places and scope exits."""

from movec.analysis.move_state import (
	MoveState,
	MoveStateAnalysis,
	Place,
	ScopeExit,
	join_move_state,
	summarize,
)
from movec.cfg.builder import CfgBuilder
from movec.test_support import standard_types


def test_summaries_and_joins():
	assert summarize(set()) is MoveState.UNREACHED
	assert summarize({MoveState.VALID}) is MoveState.VALID
	assert summarize({MoveState.VALID, MoveState.MOVED}) is MoveState.MAYBE
	assert summarize({MoveState.VALID, MoveState.UNINIT}) is MoveState.MAYBE
	assert summarize({MoveState.MOVED, MoveState.UNINIT}) is MoveState.MOVED
	assert join_move_state(MoveState.UNREACHED, MoveState.MOVED) is MoveState.MOVED
	assert join_move_state(MoveState.VALID, MoveState.MOVED) is MoveState.MAYBE
	assert join_move_state(MoveState.MOVED, MoveState.UNINIT) is MoveState.MOVED


def test_place_coverage():
	whole = Place("a")
	field = Place("a", ("b", "c"))
	assert whole.covered_by(())
	assert not whole.covered_by(("b",))
	assert field.covered_by(())
	assert field.covered_by(("b",))
	assert not field.covered_by(("x",))
	assert str(field) == "a.b.c"


def test_states_through_a_conditional_move():
	"""A move on one arm makes the join state MAYBE."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.if_then():
		moved = b.call("g", "s")[0]
	after = b.read("s")
	b.ret()
	fn = b.finish()
	result = MoveStateAnalysis(fn, {moved.id}).run(Place("s"))
	assert result.state_before(moved.id) is MoveState.VALID
	assert result.state_before(after.id) is MoveState.MAYBE
	assert result.may_be_moved_before(after.id)
	assert result.exit_states() == {ScopeExit(block=3): MoveState.MAYBE}


def test_sites_not_in_the_move_set_leave_the_value_alone():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	copied = b.call("g", "s")[0]
	after = b.read("s")
	b.ret()
	fn = b.finish()
	result = MoveStateAnalysis(fn, set()).run(Place("s"))
	assert result.state_before(after.id) is MoveState.VALID
	assert not result.may_be_moved_before(copied.id)


def test_region_exit_edges_are_scope_exits():
	"""Loop-body locals end on both the break edge and the back edge."""
	st = standard_types()
	b = CfgBuilder("f")
	with b.loop() as lp:
		decl = b.declare("t", st.str_)
		lp.break_if()
		b.read("t")
	b.ret()
	fn = b.finish()
	result = MoveStateAnalysis(fn, set()).run(Place("t"))
	exits = result.exit_states()
	assert set(exits) == {ScopeExit(block=decl.block, to=lp.exit), ScopeExit(block=4, to=lp.header)}
	assert set(exits.values()) == {MoveState.VALID}
