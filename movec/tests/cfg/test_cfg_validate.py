#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""CFG validation and the fallback plan for functions that fail it."""

import pytest

from movec.analysis.decisions import DestroyKind, MoveDecisionLayer, UseDecisionKind
from movec.analysis.last_use import LastUseAnalysis
from movec.cfg.builder import CfgBuilder, call_arg
from movec.cfg.nodes import Edge, EdgeKind, UseKind, UseSite
from movec.cfg.validate import validate_cfg
from movec.test_support import run_pipeline, standard_types


def _codes(diags) -> list[str]:
	return [d.code for d in diags]


def test_well_formed_function_has_no_diagnostics():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.loop():
		b.declare("t", st.str_)
		b.call("g", "t")
	b.call("h", "s")
	b.ret()
	assert validate_cfg(b.finish(), st.model) == []


def test_dangling_jump_is_reported():
	"""A jump to a missing block is a CFG error."""
	b = CfgBuilder("f")
	b.jump("nowhere")
	diags = validate_cfg(b.finish())
	assert _codes(diags) == ["E_CFG_DANGLING_JUMP"]
	assert "nowhere" in diags[0].message
	assert diags[0].phase == "cfg"


def test_unreachable_label_is_reported():
	"""A label nobody reaches is reported."""
	b = CfgBuilder("f")
	b.ret()
	b.label("dead")
	b.ret()
	assert _codes(validate_cfg(b.finish())) == ["E_CFG_UNREACHABLE_LABEL"]


def test_jump_to_unlabeled_block_is_reported():
	"""Jumps must land on labelled blocks."""
	b = CfgBuilder("f")
	b.ret()
	fn = b.finish()
	fn.blocks[0].edges.append(Edge(src=0, dst=0, label="x", kind=EdgeKind.JUMP))
	assert "E_CFG_JUMP_TARGET" in _codes(validate_cfg(fn))


def test_unknown_binding_and_missing_target_are_reported_together():
	st = standard_types()
	b = CfgBuilder("f")
	b.read("ghost")
	b.ret()
	fn = b.finish()
	fn.blocks[0].sites.append(UseSite(id=99, block=0, index=1, kind=UseKind.MOVE_OUT, binding="ghost"))
	codes = _codes(validate_cfg(fn, st.model))
	assert codes.count("E_CFG_UNKNOWN_BINDING") == 2
	assert "E_CFG_MISSING_TARGET" in codes


def test_bad_field_path_is_reported():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("p", st.pair)
	b.call("g", "p.nope")
	b.ret()
	assert _codes(validate_cfg(b.finish(), st.model)) == ["E_CFG_BAD_PATH"]


def test_untyped_temporary_is_reported():
	b = CfgBuilder("f")
	b.ret()
	fn = b.finish()
	fn.blocks[0].sites.append(
		UseSite(id=0, block=0, index=0, kind=UseKind.MOVE_OUT, binding=None, target=call_arg("g", 0))
	)
	assert _codes(validate_cfg(fn)) == ["E_CFG_TEMP_SITE"]


def test_malformed_function_gets_fallback_plan_and_no_facts():
	"""No facts are computed for malformed functions."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.call("g", "s")
	b.jump("nowhere")
	fn = b.finish()
	plan = run_pipeline(fn, st.model)
	assert plan.excluded
	assert plan.facts is None
	assert "E_CFG_DANGLING_JUMP" in _codes(plan.diagnostics)
	assert plan.decision(0).kind is UseDecisionKind.CONSTRUCT_BY_COPY
	assert plan.destruction_of("s").kind is DestroyKind.ALWAYS_DESTROY


def test_planning_an_unvalidated_function_raises():
	"""The decision layer refuses sites that validation would have rejected."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.ret()
	fn = b.finish()
	fn.blocks[0].sites.append(UseSite(id=0, block=0, index=0, kind=UseKind.MOVE_OUT, binding="s"))
	layer = MoveDecisionLayer(st.model)
	with pytest.raises(ValueError, match="without a target"):
		layer.plan(fn, LastUseAnalysis(st.model).analyze(fn))

	b = CfgBuilder("g")
	b.ret()
	fn = b.finish()
	fn.blocks[0].sites.append(
		UseSite(id=0, block=0, index=0, kind=UseKind.MOVE_OUT, binding=None, target=call_arg("h", 0))
	)
	with pytest.raises(ValueError, match="untyped temporary"):
		layer.plan(fn, LastUseAnalysis(st.model).analyze(fn))
