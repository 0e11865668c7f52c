#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Passing conventions across calls: move references, plain references and forwarding."""

from movec.analysis.decisions import DestroyKind, UseDecisionKind
from movec.analysis.ownership import BindingOwnership, PassKind, binding_ownership, pass_decision
from movec.cfg.builder import CfgBuilder, call_arg, return_slot
from movec.cfg.nodes import PassMode
from movec.config import AnalysisConfig
from movec.test_support import run_pipeline, simulate, standard_types


def test_pass_decision_table():
	"""Passing convention and last-use status pick the decision kind."""
	value = call_arg("f", 0)
	move_ref = call_arg("f", 0, PassMode.MOVE_REF)
	plain = call_arg("f", 0, PassMode.PLAIN_REF)
	forwarding = call_arg("f", 0, PassMode.MOVE_REF, forwarding=True)
	assert pass_decision(value, True) == (PassKind.MOVE, True)
	assert pass_decision(value, False) == (PassKind.COPY, False)
	assert pass_decision(move_ref, True) == (PassKind.MOVE_REF, True)
	assert pass_decision(move_ref, False) == (PassKind.COPY, False)
	assert pass_decision(plain, True) == (PassKind.PLAIN_REF, False)
	assert pass_decision(forwarding, True) == (PassKind.MOVE_REF, False)
	assert pass_decision(return_slot(), True) == (PassKind.MOVE, True)


def test_binding_ownership_by_parameter_mode():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("v", st.str_)
	b.param("m", st.str_, PassMode.MOVE_REF)
	b.param("r", st.str_, PassMode.PLAIN_REF)
	b.param("fw", st.str_, PassMode.MOVE_REF, forwards=True)
	b.ret()
	fn = b.finish()
	owned = {name: binding_ownership(fn, fn.bindings[name]) for name in fn.params}
	assert owned == {
		"v": BindingOwnership.OWNED,
		"m": BindingOwnership.OWNED,
		"r": BindingOwnership.BORROWED,
		"fw": BindingOwnership.BORROWED,
	}


def test_move_ref_argument_transfers_at_last_use_only():
	"""A move-ref argument transfers ownership only at its last use."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	first = b.call("take", "s", modes=[PassMode.MOVE_REF])[0]
	last = b.call("take", "s", modes=[PassMode.MOVE_REF])[0]
	b.ret()
	plan = run_pipeline(b.finish(), st.model)
	assert plan.decision(first.id).kind is UseDecisionKind.CONSTRUCT_BY_COPY
	assert plan.decision(last.id).kind is UseDecisionKind.MOVE_REF_PASS
	assert plan.decision(last.id).transfers_ownership
	assert plan.destruction_of("s").kind is DestroyKind.NEVER_DESTROY


def test_plain_ref_argument_never_transfers():
	"""Plain references never carry ownership."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	site = b.call("peek", "s", modes=[PassMode.PLAIN_REF])[0]
	b.ret()
	plan = run_pipeline(b.finish(), st.model)
	d = plan.decision(site.id)
	assert d.kind is UseDecisionKind.PLAIN_REF_PASS
	assert not d.transfers_ownership
	assert plan.destruction_of("s").kind is DestroyKind.ALWAYS_DESTROY


def test_move_ref_parameter_is_owned_by_the_callee():
	"""The callee owns and destroys a move-ref parameter."""
	st = standard_types()
	b = CfgBuilder("sink")
	b.param("m", st.str_, PassMode.MOVE_REF)
	b.read("m")
	b.ret()
	fn = b.finish()
	plan = run_pipeline(fn, st.model)
	assert plan.destruction_of("m").kind is DestroyKind.ALWAYS_DESTROY
	assert simulate(fn, plan).destroyed == ["m"]


def test_plain_ref_parameter_is_borrowed():
	st = standard_types()
	b = CfgBuilder("peek")
	b.param("r", st.str_, PassMode.PLAIN_REF)
	site = b.call("g", "r")[0]
	b.ret()
	plan = run_pipeline(b.finish(), st.model)
	assert plan.decision(site.id).kind is UseDecisionKind.CONSTRUCT_BY_COPY
	assert plan.decision(site.id).reason == "borrowed"
	dp = plan.destruction_of("r")
	assert dp.kind is DestroyKind.NEVER_DESTROY
	assert dp.reason == "borrowed"


def test_forwarding_callee_returns_the_reference_without_owning_it():
	"""A forwarding parameter goes back to the caller untouched."""
	st = standard_types()
	b = CfgBuilder("identity")
	b.param("x", st.str_, PassMode.MOVE_REF, forwards=True)
	(site,) = b.ret("x", mode=PassMode.MOVE_REF)
	fn = b.finish()
	plan = run_pipeline(fn, st.model)
	d = plan.decision(site.id)
	assert d.kind is UseDecisionKind.MOVE_REF_PASS
	assert d.reason == "forwarded-return"
	assert not d.transfers_ownership
	assert plan.destruction_of("x").kind is DestroyKind.NEVER_DESTROY
	assert simulate(fn, plan).destroyed == []


def _forwarding_caller():
	st = standard_types()
	b = CfgBuilder("caller")
	b.param("s", st.str_)
	fwd = b.call("identity", "s", modes=[PassMode.MOVE_REF], forwarding=[0])[0]
	consumer = b.move_out("s", call_arg("sink", 0), via_forward=True)
	b.ret()
	return st, b.finish(), fwd, consumer


def test_forwarding_caller_keeps_the_obligation():
	"""Passing through a forwarding callee does not move the caller's value."""
	st, fn, fwd, consumer = _forwarding_caller()
	plan = run_pipeline(fn, st.model)
	assert plan.decision(fwd.id).kind is UseDecisionKind.MOVE_REF_PASS
	assert not plan.decision(fwd.id).transfers_ownership
	assert plan.decision(consumer.id).kind is UseDecisionKind.CONSTRUCT_BY_COPY
	assert plan.decision(consumer.id).reason == "forwarded"
	assert plan.destruction_of("s").kind is DestroyKind.ALWAYS_DESTROY
	assert simulate(fn, plan).destroy_count("s") == 1


def test_inline_forwarding_moves_at_the_original_last_use():
	"""With inline forwarding the final consumer takes ownership."""
	st, fn, fwd, consumer = _forwarding_caller()
	plan = run_pipeline(fn, st.model, AnalysisConfig(inline_forwarding=True))
	assert not plan.decision(fwd.id).transfers_ownership
	d = plan.decision(consumer.id)
	assert d.kind is UseDecisionKind.CONSTRUCT_BY_MOVE
	assert d.reason == "inline-forwarding"
	assert plan.destruction_of("s").kind is DestroyKind.NEVER_DESTROY
	assert simulate(fn, plan).destroy_count("s") == 0
