#!/usr/bin/env python3
# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Last-use analysis over straight-line code, branches, loops, jumps and
short-circuit operands.

Every function built here is also checked against a brute-force oracle: a
site reported as last use must have no later access of its binding reachable
inside the binding's scope (a re-declaration ends the path).
"""

import itertools
import random

from movec.analysis.last_use import LastUseAnalysis, SuppressReason
from movec.cfg.builder import CfgBuilder
from movec.cfg.nodes import ACCESS_KINDS, FunctionCFG, UseKind, UseSite
from movec.config import LastUseMode
from movec.test_support import standard_types


def _later_access_reachable(fn: FunctionCFG, site: UseSite) -> bool:
	binding = fn.bindings[site.binding]

	def scan(sites) -> str:
		for s in sites:
			if s.binding != site.binding:
				continue
			if s.kind is UseKind.DECL:
				return "killed"
			if s.kind in ACCESS_KINDS:
				return "found"
		return "open"

	blk = fn.blocks[site.block]
	first = scan(blk.sites[site.index + 1 :])
	if first != "open":
		return first == "found"
	seen: set[int] = set()
	stack = [e.dst for e in blk.edges if binding.in_region(e.dst)]
	while stack:
		bid = stack.pop()
		if bid in seen or bid not in fn.blocks:
			continue
		seen.add(bid)
		state = scan(fn.blocks[bid].sites)
		if state == "found":
			return True
		if state == "open":
			stack.extend(e.dst for e in fn.blocks[bid].edges if binding.in_region(e.dst))
	return False


def _analyze(fn: FunctionCFG, model, mode: LastUseMode = LastUseMode.FIXPOINT):
	facts = LastUseAnalysis(model, mode).analyze(fn)
	for site in fn.all_sites():
		if facts.is_last_use(site.id):
			assert not _later_access_reachable(fn, site), f"unsound last use at {site.describe()}"
	return facts


def test_second_of_two_calls_is_the_last_use():
	"""Straight-line code: only the final access is a last use."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	g = b.call("g", "s")[0]
	h = b.call("h", "s")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)
	assert facts.is_last_use(h.id)


def test_divergent_paths_each_have_a_last_use():
	"""Each branch of a split ends with its own last use."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.if_else() as (then, otherwise):
		with then:
			g = b.call("g", "s")[0]
		with otherwise:
			h = b.call("h", "s")[0]
	b.ret()
	fn = b.finish()
	facts = _analyze(fn, st.model)
	assert facts.last_use_sites(fn, "s") == [g.id, h.id]


def test_access_on_a_join_path_invalidates_earlier_last_use():
	"""An access after the join keeps the branch sites live."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.if_then():
		g = b.call("g", "s")[0]
	tail = b.read("s")
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)
	assert facts.is_last_use(tail.id)


def test_outer_binding_used_in_loop_is_never_last_use_inside():
	"""A binding declared outside a loop is live around the back edge."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.loop():
		g = b.call("g", "s")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)


def test_loop_local_binding_is_last_used_each_iteration():
	"""A binding declared in the loop body dies at the end of each iteration."""
	st = standard_types()
	b = CfgBuilder("f")
	with b.loop():
		b.declare("t", st.str_)
		g = b.call("g", "t")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert facts.is_last_use(g.id)


def test_loop_condition_keeps_binding_live_through_body():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.loop(cond=["s"]):
		g = b.call("g", "s")[0]
	after = b.read("s")
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)
	assert facts.is_last_use(after.id)


def test_address_of_suppresses_later_last_use():
	"""Once its address is taken a binding is never last-used afterwards."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.addr_of("s")
	g = b.call("g", "s")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)
	assert facts.suppressed[g.id] is SuppressReason.ADDRESS_TAKEN


def test_address_of_on_one_branch_reaches_the_join():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.param("u", st.str_)
	with b.if_then():
		b.addr_of("s")
	g = b.call("g", "s")[0]
	h = b.call("h", "u")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert facts.suppressed[g.id] is SuppressReason.ADDRESS_TAKEN
	# Other bindings are unaffected.
	assert facts.is_last_use(h.id)


def test_captured_binding_is_never_last_use():
	"""Bindings captured by a nested function are permanently live."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	with b.nested("closure", ["s"]) as inner:
		inner.read("s")
		inner.ret()
	g = b.call("g", "s")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(g.id)
	assert facts.suppressed[g.id] is SuppressReason.CAPTURED


def test_backward_jump_suppresses_sites_between_label_and_jump():
	"""Sites inside a label/jump loop are not last uses."""
	st = standard_types()
	b = CfgBuilder("f")
	b.label("top")
	b.declare("t", st.str_)
	g = b.call("g", "t")[0]
	b.jump_if("top")
	b.ret()
	fn = b.finish()
	facts = _analyze(fn, st.model)
	# Liveness alone would accept it: `t` is re-declared on every lap.
	assert not facts.is_last_use(g.id)
	assert facts.suppressed[g.id] is SuppressReason.LABEL_LOOP


def test_forward_jump_is_irrelevant():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.jump_if("out")
	g = b.call("g", "s")[0]
	b.label("out")
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert facts.is_last_use(g.id)
	assert g.id not in facts.suppressed


def test_short_circuit_right_operand_gets_the_last_use():
	"""The right operand of `&&` may be skipped but still holds the last use."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	lhs = b.read("s")
	with b.short_circuit("&&"):
		rhs = b.call("check", "s")[0]
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(lhs.id)
	assert facts.is_last_use(rhs.id)


def test_short_circuit_left_operand_only():
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.param("c", st.int_)
	lhs = b.call("check", "s")[0]
	with b.short_circuit("||"):
		b.read("c")
	b.ret()
	facts = _analyze(b.finish(), st.model)
	assert facts.is_last_use(lhs.id)


def test_return_with_repeated_reference_uses_rightmost():
	"""`return (s, s)` moves only the rightmost reference."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	left, right = b.ret("s", "s")
	facts = _analyze(b.finish(), st.model)
	assert not facts.is_last_use(left.id)
	assert facts.is_last_use(right.id)


def test_block_local_mode_is_a_subset_of_fixpoint():
	"""The cheap block-local mode never reports more last uses than the fixpoint."""
	st = standard_types()
	b = CfgBuilder("f")
	b.param("s", st.str_)
	b.param("u", st.str_)
	b.call("g", "u")
	b.call("h", "u")
	with b.if_else() as (then, otherwise):
		with then:
			b.call("g", "s")
		with otherwise:
			b.call("h", "s")
	with b.loop():
		b.declare("t", st.str_)
		b.call("g", "t")
	b.ret()
	fn = b.finish()
	fixpoint = _analyze(fn, st.model)
	local = _analyze(fn, st.model, LastUseMode.BLOCK_LOCAL)
	for site in fn.all_sites():
		if local.is_last_use(site.id):
			assert fixpoint.is_last_use(site.id)
	# Straight-line bindings are found by both; divergent ones only by the fixpoint.
	assert local.last_use_sites(fn, "u") == fixpoint.last_use_sites(fn, "u") == [1]
	assert local.last_use_sites(fn, "s") == []
	assert len(fixpoint.last_use_sites(fn, "s")) == 2
	assert local.mode is LastUseMode.BLOCK_LOCAL


def _random_access(rng: random.Random, b: CfgBuilder, names: list[str]) -> None:
	ref = rng.choice(names)
	if ref == "p" and rng.random() < 0.5:
		ref = rng.choice(["p.name", "p.count"])
	roll = rng.random()
	if roll < 0.35:
		b.read(ref)
	elif roll < 0.5:
		b.write(ref)
	elif roll < 0.58:
		b.addr_of(ref)
	else:
		b.call("g", ref)


def _random_body(rng, b, st, scope, depth, counter, loop=None) -> None:
	"""Append 1-4 random statements; `scope` is a list of frames of visible names."""
	for _ in range(rng.randint(1, 4)):
		names = [n for frame in scope for n in frame]
		roll = rng.random()
		if depth < 3 and roll < 0.15:
			with b.if_else() as (then, otherwise):
				for arm in (then, otherwise):
					if rng.random() < 0.8:
						with arm:
							_random_body(rng, b, st, scope + [[]], depth + 1, counter, loop)
		elif depth < 3 and roll < 0.3:
			cond = [rng.choice(names)] if rng.random() < 0.5 else []
			with b.loop(cond) as lp:
				_random_body(rng, b, st, scope + [[]], depth + 1, counter, lp)
		elif roll < 0.4:
			with b.short_circuit(rng.choice(["&&", "||"])):
				_random_access(rng, b, names)
		elif loop is not None and roll < 0.47:
			loop.break_if()
		elif roll < 0.57:
			name = f"t{next(counter)}"
			b.declare(name, st.str_)
			scope[-1].append(name)
		else:
			_random_access(rng, b, names)


def _random_function(seed: int, st) -> FunctionCFG:
	rng = random.Random(seed)
	b = CfgBuilder(f"f{seed}")
	b.param("s", st.str_)
	b.param("p", st.pair)
	_random_body(rng, b, st, [["s", "p"]], 0, itertools.count())
	if rng.random() < 0.5:
		b.ret("s")
	else:
		b.ret()
	return b.finish()


def test_random_cfgs_never_report_a_reachable_access_as_last_use():
	"""Seeded random CFGs: every reported last use passes the reachability check."""
	st = standard_types()
	for seed in range(300):
		fn = _random_function(seed, st)
		fixpoint = _analyze(fn, st.model)
		local = _analyze(fn, st.model, LastUseMode.BLOCK_LOCAL)
		for site in fn.all_sites():
			if local.is_last_use(site.id):
				assert fixpoint.is_last_use(site.id), f"seed {seed}: {site.describe()}"
