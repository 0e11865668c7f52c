# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Dominator analysis over a FunctionCFG.

The decision layer uses dominance to recognise the common case of a move-out
site that executes on every path to a scope exit: such a binding needs no
destructor call and no runtime flag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from movec.cfg.nodes import FunctionCFG, UseSite


@dataclass
class DominatorInfo:
	"""
	Dominator sets and immediate dominators.

	idom[block] = immediate dominator block, or None for entry and unreachable
	blocks. Unreachable blocks dominate only themselves.
	"""

	dom: Dict[int, Set[int]] = field(default_factory=dict)
	idom: Dict[int, Optional[int]] = field(default_factory=dict)

	def dominates(self, a: int, b: int) -> bool:
		"""True iff every path from entry to `b` passes through `a`."""
		return a in self.dom.get(b, set())

	def site_dominates(self, a: UseSite, b: UseSite) -> bool:
		"""Site-level dominance: same block compares positions, else block dominance."""
		if a.block == b.block:
			return a.index <= b.index
		return self.dominates(a.block, b.block)


class DominatorAnalysis:
	"""
	Compute dominators for a FunctionCFG.

	Algorithm: classic iterative dataflow:
	  - dom(entry) = {entry}
	  - dom(b) = all blocks initially
	  - dom(b) = {b} ∪ (⋂_{p ∈ preds(b)} dom(p)) until fixed point
	Then idom(b) is the dominator of b (other than b) that every other strict
	dominator of b dominates.
	"""

	def compute(self, func: FunctionCFG) -> DominatorInfo:
		"""Compute dominators for the given function."""
		blocks = func.ordered_blocks()
		entry = func.entry
		preds = func.predecessor_map()
		reachable = func.reachable()

		dom: Dict[int, Set[int]] = {b: set(reachable) for b in blocks}
		dom[entry] = {entry}

		changed = True
		while changed:
			changed = False
			for b in blocks:
				if b == entry:
					continue
				live_preds = [p for p in preds[b] if p in reachable]
				if b not in reachable or not live_preds:
					# Unreachable block: conservatively, only itself.
					new_dom = {b}
				else:
					p_iter = iter(live_preds)
					inter = dom[next(p_iter)].copy()
					for p in p_iter:
						inter &= dom[p]
					new_dom = inter | {b}
				if new_dom != dom[b]:
					dom[b] = new_dom
					changed = True

		idom: Dict[int, Optional[int]] = {entry: None}
		for b in blocks:
			if b == entry:
				continue
			candidates = dom[b] - {b}
			id_candidate: Optional[int] = None
			for c in sorted(candidates):
				if all((c == d) or (c not in dom[d]) for d in candidates):
					id_candidate = c
					break
			idom[b] = id_candidate

		return DominatorInfo(dom=dom, idom=idom)


__all__ = ["DominatorAnalysis", "DominatorInfo"]
