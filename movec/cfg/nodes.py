# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
CFG model consumed by the last-use engine.

Pipeline placement:
  front end → FunctionCFG (this file) → validate → last-use → decisions → codegen

A FunctionCFG is a set of basic blocks joined by typed edges. Each block holds
the ordered use sites of bindings it touches; there are no instructions beyond
what the analyses need. Short-circuit operators are two blocks with a SKIP edge
around the right operand, labeled jumps are JUMP edges, and loop back-edges are
BACK edges. Edge kinds are informational: every analysis walks all edges.

Use this file as a reference for what the front end must provide. There are
**no semantics** here beyond lookups.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Tuple

from movec.core.span import Span
from movec.core.types_core import TypeId


class UseKind(Enum):
	"""What a use site does to its binding."""

	DECL = auto()      # lifetime start (not an access)
	READ = auto()
	WRITE = auto()
	ADDR_OF = auto()
	MOVE_OUT = auto()  # by-value consumption: call argument, return, assignment source


ACCESS_KINDS = frozenset({UseKind.READ, UseKind.WRITE, UseKind.ADDR_OF, UseKind.MOVE_OUT})


class EdgeKind(Enum):
	NORMAL = auto()
	TRUE = auto()
	FALSE = auto()
	BACK = auto()   # loop back-edge
	JUMP = auto()   # labeled jump (goto / break / continue to label)
	SKIP = auto()   # short-circuit edge around the right operand


class TargetKind(Enum):
	"""Where a move-out site sends its value."""

	CALL_ARG = auto()
	RETURN = auto()
	ASSIGN = auto()


class PassMode(Enum):
	"""Calling convention of a parameter or return slot."""

	VALUE = auto()      # full value construction
	MOVE_REF = auto()   # reference to an owned value; ownership transfers
	PLAIN_REF = auto()  # non-owning reference


@dataclass(frozen=True)
class MoveTarget:
	"""
	Destination of a move-out site.

	`forwarding` marks a move-ref parameter the callee hands back as its return
	value: passing into it does not transfer ownership. `may_fail` marks a call
	that can raise, which forces obligation flags to be cleared before the call.
	"""

	kind: TargetKind
	callee: Optional[str] = None
	param_index: Optional[int] = None
	mode: PassMode = PassMode.VALUE
	may_fail: bool = False
	forwarding: bool = False
	dest: Optional[str] = None  # assignment destination binding


@dataclass(frozen=True)
class UseSite:
	"""
	A program point referencing a binding.

	`binding` is None for a temporary (expression result with no name); such a
	site is always a MOVE_OUT and carries `temp_type`. `path` is a field
	projection (`a.b.c` → ("b", "c")). `via_forward` marks a consumer of a
	reference returned by a forwarding call: the access is attributed to the
	original binding.
	"""

	id: int
	block: int
	index: int
	kind: UseKind
	binding: Optional[str]
	path: Tuple[str, ...] = ()
	through_pointer: bool = False
	target: Optional[MoveTarget] = None
	explicit: bool = False
	via_forward: bool = False
	temp_type: Optional[TypeId] = None
	span: Span = field(default_factory=Span)

	@property
	def is_access(self) -> bool:
		return self.kind in ACCESS_KINDS

	@property
	def is_temporary(self) -> bool:
		return self.binding is None

	def describe(self) -> str:
		"""Short text form used in diagnostics and traces."""
		name = self.binding if self.binding is not None else "<temp>"
		if self.path:
			name += "." + ".".join(self.path)
		return f"{self.kind.name.lower()} {name} @bb{self.block}[{self.index}]"


@dataclass(frozen=True)
class Edge:
	"""Control edge; `label` names the jump target for JUMP edges."""

	src: int
	dst: int
	kind: EdgeKind = EdgeKind.NORMAL
	label: Optional[str] = None


@dataclass
class BasicBlock:
	"""
	Basic block: ordered use sites plus outgoing edges.

	A block without outgoing edges is a function exit (return).
	"""

	id: int
	label: Optional[str] = None
	sites: List[UseSite] = field(default_factory=list)
	edges: List[Edge] = field(default_factory=list)
	span: Span = field(default_factory=Span)

	@property
	def is_exit(self) -> bool:
		return not self.edges


@dataclass
class Binding:
	"""
	A local variable or parameter.

	`region` is the set of block ids forming the binding's lexical scope; None
	means the whole function (parameters, top-level locals). Leaving the region
	ends the binding's lifetime.
	"""

	name: str
	type_id: TypeId
	is_param: bool = False
	param_mode: PassMode = PassMode.VALUE
	region: Optional[frozenset[int]] = None
	captured: bool = False
	span: Span = field(default_factory=Span)

	def in_region(self, block: int) -> bool:
		return self.region is None or block in self.region


@dataclass
class FunctionCFG:
	"""
	One function body.

	`params` lists parameter binding names in declaration order. `forwards`
	holds indices of move-ref parameters this function returns as the same
	reference (forwarding). Nested functions are analysed separately; their
	`captures` name bindings of the enclosing function.
	"""

	name: str
	entry: int = 0
	blocks: Dict[int, BasicBlock] = field(default_factory=dict)
	bindings: Dict[str, Binding] = field(default_factory=dict)
	params: Tuple[str, ...] = ()
	forwards: frozenset[int] = frozenset()
	nested: List["FunctionCFG"] = field(default_factory=list)
	captures: Tuple[str, ...] = ()
	span: Span = field(default_factory=Span)

	def successors(self, block: int) -> List[int]:
		return [e.dst for e in self.blocks[block].edges]

	def successor_map(self) -> Dict[int, List[int]]:
		return {bid: [e.dst for e in blk.edges] for bid, blk in self.blocks.items()}

	def predecessor_map(self) -> Dict[int, List[int]]:
		preds: Dict[int, List[int]] = {bid: [] for bid in self.blocks}
		for bid in sorted(self.blocks):
			for e in self.blocks[bid].edges:
				if e.dst in preds and bid not in preds[e.dst]:
					preds[e.dst].append(bid)
		return preds

	def predecessors(self, block: int) -> List[int]:
		return self.predecessor_map()[block]

	def exit_blocks(self) -> List[int]:
		return [bid for bid in sorted(self.blocks) if self.blocks[bid].is_exit]

	def reachable(self, start: Optional[int] = None) -> set[int]:
		"""Blocks reachable from `start` (default: entry), including `start`."""
		root = self.entry if start is None else start
		seen: set[int] = set()
		stack = [root]
		while stack:
			bid = stack.pop()
			if bid in seen or bid not in self.blocks:
				continue
			seen.add(bid)
			stack.extend(self.successors(bid))
		return seen

	def ordered_blocks(self) -> List[int]:
		"""Reverse post order from entry, then unreachable blocks by id."""
		order: List[int] = []
		seen: set[int] = set()

		def _dfs(bid: int) -> None:
			# Iterative DFS keeps deep straight-line CFGs off the Python stack.
			stack: List[Tuple[int, Iterator[int]]] = [(bid, iter(self.successors(bid)))]
			seen.add(bid)
			while stack:
				node, it = stack[-1]
				advanced = False
				for succ in it:
					if succ in self.blocks and succ not in seen:
						seen.add(succ)
						stack.append((succ, iter(self.successors(succ))))
						advanced = True
						break
				if not advanced:
					stack.pop()
					order.append(node)

		if self.entry in self.blocks:
			_dfs(self.entry)
		rpo = list(reversed(order))
		rpo.extend(bid for bid in sorted(self.blocks) if bid not in seen)
		return rpo

	def all_sites(self) -> Iterator[UseSite]:
		for bid in sorted(self.blocks):
			yield from self.blocks[bid].sites

	def sites_of(self, binding: str) -> List[UseSite]:
		return [s for s in self.all_sites() if s.binding == binding]

	def site(self, site_id: int) -> UseSite:
		for s in self.all_sites():
			if s.id == site_id:
				return s
		raise KeyError(f"no use site {site_id} in '{self.name}'")

	def label_block(self, label: str) -> Optional[int]:
		for bid in sorted(self.blocks):
			if self.blocks[bid].label == label:
				return bid
		return None

	def captured_names(self) -> set[str]:
		"""Bindings captured by any nested function or flagged by the front end."""
		names = {b.name for b in self.bindings.values() if b.captured}
		for inner in self.nested:
			names.update(inner.captures)
		return names


__all__ = [
	"ACCESS_KINDS",
	"BasicBlock",
	"Binding",
	"Edge",
	"EdgeKind",
	"FunctionCFG",
	"MoveTarget",
	"PassMode",
	"TargetKind",
	"UseKind",
	"UseSite",
]
