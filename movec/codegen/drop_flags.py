# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Lowering of FunctionPlans to LLVM IR with llvmlite.

The emitted body is a skeleton of the analysed CFG: every block becomes an
LLVM block, every use site a call to a marker named after its decision
(`movec.construct_by_move`, `movec.plain_ref_pass`, ...) and multi-way control
flow switches on an opaque `movec.choose(block)` so the front end's conditions
stay abstract. What is lowered faithfully is the obligation machinery:

  - one `alloca i8` storage slot per binding (stand-in for its value);
  - one `alloca i1` per obligation flag, false on function entry, true at the
    binding's declaration (function entry for parameters), cleared at move
    sites (before the marker when the callee may fail) and set again after
    re-initialising writes;
  - at every scope exit (return or region-leaving edge) destructor calls for
    the places whose lifetime ends there, innermost binding first: plain calls
    for always-destroy, `if (flag)`-guarded calls for guarded-destroy and
    nothing for never-destroy.

Region-leaving edges that owe destruction are split with a dedicated block.
Malformed CFGs (edges to missing blocks) are rejected with ValueError; the
driver never lowers functions with CFG errors.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from llvmlite import ir

from movec.analysis.decisions import DestroyKind, DestructionPlan, FunctionPlan
from movec.cfg.nodes import Edge, FunctionCFG, UseKind
from movec.type_model import TypeModel

I1 = ir.IntType(1)
I8 = ir.IntType(8)
I32 = ir.IntType(32)
I8P = I8.as_pointer()
VOID = ir.VoidType()


def binding_order(fn: FunctionCFG) -> List[str]:
	"""Parameters in order, then locals in declaration order."""
	order = list(fn.params)
	for site in fn.all_sites():
		if site.kind is UseKind.DECL and site.binding not in order:
			order.append(site.binding)
	return order


class DropFlagLowering:
	"""Accumulates lowered functions into one llvmlite module."""

	def __init__(self, type_model: TypeModel, module: Optional[ir.Module] = None, name: str = "movec") -> None:
		self.type_model = type_model
		self.module = module if module is not None else ir.Module(name=name)

	def _extern(self, name: str, ret: ir.Type, args: Sequence[ir.Type]) -> ir.Function:
		existing = self.module.globals.get(name)
		if isinstance(existing, ir.Function):
			return existing
		return ir.Function(self.module, ir.FunctionType(ret, list(args)), name=name)

	def _drop_fn(self, plan: DestructionPlan) -> ir.Function:
		suffix = "drop_rest" if plan.partial else "drop"
		return self._extern(f"{self.type_model.type_name(plan.type_id)}.{suffix}", VOID, [I8P])

	def lower(self, fn: FunctionCFG, plan: FunctionPlan, *, symbol: Optional[str] = None) -> ir.Function:
		for blk in fn.blocks.values():
			for e in blk.edges:
				if e.dst not in fn.blocks:
					raise ValueError(f"cannot lower '{fn.name}': edge bb{e.src}->bb{e.dst} leaves the CFG")

		func = ir.Function(self.module, ir.FunctionType(VOID, []), name=symbol or fn.name)
		entry = func.append_basic_block("entry")
		ll_blocks: Dict[int, ir.Block] = {bid: func.append_basic_block(f"bb{bid}") for bid in fn.ordered_blocks()}
		builder = ir.IRBuilder(entry)

		order = binding_order(fn)
		slots: Dict[str, ir.Value] = {name: builder.alloca(I8, name=name) for name in order}
		flag_ptrs: Dict[str, ir.Value] = {}
		for dp in plan.destruction.values():
			if dp.flag is None:
				continue
			ptr = builder.alloca(I1, name=dp.flag.name)
			builder.store(ir.Constant(I1, 0), ptr)
			if dp.flag.decl_site is None:
				builder.store(ir.Constant(I1, 1), ptr)
			flag_ptrs[dp.flag.name] = ptr
		builder.branch(ll_blocks[fn.entry])

		clear_before: Dict[int, List[str]] = {}
		clear_after: Dict[int, List[str]] = {}
		set_after: Dict[int, List[str]] = {}
		for dp in plan.destruction.values():
			flag = dp.flag
			if flag is None:
				continue
			if flag.decl_site is not None:
				set_after.setdefault(flag.decl_site, []).append(flag.name)
			for pt in flag.clear_points:
				(clear_before if pt.before_call else clear_after).setdefault(pt.site, []).append(flag.name)
			for pt in flag.set_points:
				set_after.setdefault(pt.site, []).append(flag.name)

		def store_flags(names: List[str], value: int) -> None:
			for name in names:
				builder.store(ir.Constant(I1, value), flag_ptrs[name])

		for bid, ll_block in ll_blocks.items():
			builder.position_at_end(ll_block)
			blk = fn.blocks[bid]
			for site in blk.sites:
				store_flags(clear_before.get(site.id, []), 0)
				if site.kind is UseKind.DECL:
					marker = "movec.decl"
				elif site.id in plan.decisions:
					marker = f"movec.{plan.decisions[site.id].kind.name.lower()}"
				else:
					marker = "movec.access"
				builder.call(self._extern(marker, VOID, [I32]), [ir.Constant(I32, site.id)])
				store_flags(set_after.get(site.id, []), 1)
				store_flags(clear_after.get(site.id, []), 0)

			if blk.is_exit:
				self._emit_drops(builder, fn, plan, order, slots, flag_ptrs, ending=[n for n in order if fn.bindings[n].in_region(bid)])
				builder.ret_void()
				continue
			targets = [self._edge_target(func, builder, fn, plan, order, slots, flag_ptrs, ll_blocks, e) for e in blk.edges]
			builder.position_at_end(ll_block)
			if len(targets) == 1:
				builder.branch(targets[0])
			else:
				choice = builder.call(self._extern("movec.choose", I32, [I32]), [ir.Constant(I32, bid)])
				switch = builder.switch(choice, targets[0])
				for idx, target in enumerate(targets[1:], start=1):
					switch.add_case(ir.Constant(I32, idx), target)
		return func

	def _edge_target(
		self,
		func: ir.Function,
		builder: ir.IRBuilder,
		fn: FunctionCFG,
		plan: FunctionPlan,
		order: List[str],
		slots: Dict[str, ir.Value],
		flag_ptrs: Dict[str, ir.Value],
		ll_blocks: Dict[int, ir.Block],
		edge: Edge,
	) -> ir.Block:
		ending = [
			n for n in order if fn.bindings[n].in_region(edge.src) and not fn.bindings[n].in_region(edge.dst)
		]
		if not any(self._owes(plan, n) for n in ending):
			return ll_blocks[edge.dst]
		split = func.append_basic_block(f"bb{edge.src}.to.bb{edge.dst}")
		builder.position_at_end(split)
		self._emit_drops(builder, fn, plan, order, slots, flag_ptrs, ending=ending)
		builder.branch(ll_blocks[edge.dst])
		return split

	@staticmethod
	def _plans_of(plan: FunctionPlan, binding: str) -> List[DestructionPlan]:
		"""Field plans (deepest first) before the binding's own plan."""
		mine = [dp for dp in plan.destruction.values() if dp.binding == binding]
		return sorted(mine, key=lambda dp: -len(dp.path))

	def _owes(self, plan: FunctionPlan, binding: str) -> bool:
		return any(dp.kind is not DestroyKind.NEVER_DESTROY for dp in self._plans_of(plan, binding))

	def _emit_drops(
		self,
		builder: ir.IRBuilder,
		fn: FunctionCFG,
		plan: FunctionPlan,
		order: List[str],
		slots: Dict[str, ir.Value],
		flag_ptrs: Dict[str, ir.Value],
		*,
		ending: List[str],
	) -> None:
		for name in reversed(ending):
			for dp in self._plans_of(plan, name):
				if dp.kind is DestroyKind.NEVER_DESTROY:
					continue
				drop = self._drop_fn(dp)
				if dp.kind is DestroyKind.ALWAYS_DESTROY:
					builder.call(drop, [slots[name]])
					continue
				assert dp.flag is not None, "guarded plans carry a flag"
				owed = builder.load(flag_ptrs[dp.flag.name], typ=I1)
				with builder.if_then(owed):
					builder.call(drop, [slots[name]])


def lower_program(
	type_model: TypeModel,
	functions: Sequence[FunctionCFG],
	plans: Sequence[FunctionPlan],
	*,
	name: str = "movec",
) -> ir.Module:
	"""Lower every function (and its nested functions, as `outer.inner`) into one module."""
	lowering = DropFlagLowering(type_model, name=name)
	work: List[Tuple[FunctionCFG, FunctionPlan, str]] = [(fn, plan, fn.name) for fn, plan in zip(functions, plans)]
	while work:
		fn, plan, symbol = work.pop(0)
		lowering.lower(fn, plan, symbol=symbol)
		for inner, inner_plan in zip(fn.nested, plan.nested):
			work.append((inner, inner_plan, f"{symbol}.{inner.name}"))
	return lowering.module


__all__ = ["DropFlagLowering", "binding_order", "lower_program"]
