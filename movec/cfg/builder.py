# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Structured CFG construction.

CfgBuilder lets a front end (and tests) describe a function body with
structured control flow instead of spelling out blocks and edges by hand. The
context-manager shape follows llvmlite's IRBuilder:

	b = CfgBuilder("f")
	b.param("s", string_ty)
	with b.if_else() as (then, otherwise):
		with then:
			b.call("g", "s")
		with otherwise:
			b.read("s")
	fn = b.finish()

Lexical scopes (loop bodies, if arms, explicit `scope()` blocks) start and end
on block boundaries, so a local's region is exactly the set of blocks created
while its scope was open. Locals declared outside any scope live for the whole
function.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from movec.core.span import Span
from movec.core.types_core import TypeId
from movec.cfg.nodes import (
	BasicBlock,
	Binding,
	Edge,
	EdgeKind,
	FunctionCFG,
	MoveTarget,
	PassMode,
	TargetKind,
	UseKind,
	UseSite,
)


@dataclass(frozen=True)
class Temp:
	"""An unnamed expression result used as a call argument or assignment source."""

	type_id: TypeId


Arg = Union[str, Temp]


def call_arg(
	callee: str,
	index: int,
	mode: PassMode = PassMode.VALUE,
	*,
	may_fail: bool = False,
	forwarding: bool = False,
) -> MoveTarget:
	return MoveTarget(
		kind=TargetKind.CALL_ARG,
		callee=callee,
		param_index=index,
		mode=mode,
		may_fail=may_fail,
		forwarding=forwarding,
	)


def return_slot(mode: PassMode = PassMode.VALUE) -> MoveTarget:
	return MoveTarget(kind=TargetKind.RETURN, mode=mode)


def assign_to(dest: str) -> MoveTarget:
	return MoveTarget(kind=TargetKind.ASSIGN, dest=dest)


def split_ref(ref: str) -> Tuple[str, Tuple[str, ...]]:
	"""`"a.b.c"` → `("a", ("b", "c"))`."""
	parts = ref.split(".")
	if not parts[0]:
		raise ValueError(f"invalid binding reference '{ref}'")
	return parts[0], tuple(parts[1:])


class _Arm:
	"""One arm of an if/else; entering it makes its first block current."""

	def __init__(self, builder: "CfgBuilder", first: int, ends: List[int]) -> None:
		self._b = builder
		self.first = first
		self._ends = ends
		self.entered = False

	def __enter__(self) -> "_Arm":
		self.entered = True
		self._b._scopes.append({self.first})
		self._b._current = self.first
		return self

	def __exit__(self, *exc: object) -> None:
		self._b._scopes.pop()
		if self._b._current is not None:
			self._ends.append(self._b._current)
		self._b._current = None


class LoopHandle:
	"""Handle yielded by `CfgBuilder.loop()` for break/continue edges."""

	def __init__(self, builder: "CfgBuilder", header: int, exit_block: int) -> None:
		self._b = builder
		self.header = header
		self.exit = exit_block

	def break_(self) -> None:
		src = self._b._ensure_current()
		self._b._edge(src, self.exit, EdgeKind.NORMAL)
		self._b._current = None

	def break_if(self) -> None:
		src = self._b._ensure_current()
		cont = self._b._new_block()
		self._b._edge(src, self.exit, EdgeKind.TRUE)
		self._b._edge(src, cont, EdgeKind.FALSE)
		self._b._current = cont

	def continue_(self) -> None:
		src = self._b._ensure_current()
		self._b._edge(src, self.header, EdgeKind.BACK)
		self._b._current = None


class CfgBuilder:
	"""
	Incrementally builds a FunctionCFG.

	`captures` maps names of enclosing-function bindings this (nested) function
	captures to their types; they become bindings flagged `captured`.
	"""

	def __init__(
		self,
		name: str,
		*,
		captures: Mapping[str, TypeId] | None = None,
		span: Span | None = None,
	) -> None:
		self._fn = FunctionCFG(name=name, span=span or Span())
		self._next_block = 0
		self._next_site = 0
		self._scopes: List[Set[int]] = []
		self._regions: Dict[str, Set[int]] = {}
		self._labels: Dict[str, int] = {}
		self._pending_jumps: List[Tuple[int, str]] = []
		self._params: List[str] = []
		self._forwards: Set[int] = set()
		self._current: Optional[int] = self._new_block()
		self._fn.entry = self._current
		for cname, cty in (captures or {}).items():
			self._fn.bindings[cname] = Binding(name=cname, type_id=cty, captured=True)
		self._fn.captures = tuple((captures or {}).keys())

	# ------------------------------------------------------------------ blocks

	@property
	def current_block(self) -> Optional[int]:
		return self._current

	def _new_block(self, label: Optional[str] = None) -> int:
		bid = self._next_block
		self._next_block += 1
		self._fn.blocks[bid] = BasicBlock(id=bid, label=label)
		for scope in self._scopes:
			scope.add(bid)
		return bid

	def _edge(self, src: int, dst: int, kind: EdgeKind, label: Optional[str] = None) -> None:
		self._fn.blocks[src].edges.append(Edge(src=src, dst=dst, kind=kind, label=label))

	def _ensure_current(self) -> int:
		"""Current block, or a fresh (unreachable) one after a return/jump."""
		if self._current is None:
			self._current = self._new_block()
		return self._current

	def _start(self, label: Optional[str] = None) -> int:
		"""Begin a new block, falling through from the current one if it is open."""
		prev = self._current
		bid = self._new_block(label)
		if prev is not None:
			self._edge(prev, bid, EdgeKind.NORMAL)
		self._current = bid
		return bid

	# ---------------------------------------------------------------- bindings

	def param(
		self,
		name: str,
		type_id: TypeId,
		mode: PassMode = PassMode.VALUE,
		*,
		forwards: bool = False,
		span: Span | None = None,
	) -> str:
		"""Declare a parameter; `forwards` marks a move-ref param returned as-is."""
		if name in self._fn.bindings:
			raise ValueError(f"duplicate binding '{name}' in '{self._fn.name}'")
		if forwards and mode is not PassMode.MOVE_REF:
			raise ValueError(f"only move-ref parameters can be forwarded ('{name}')")
		self._fn.bindings[name] = Binding(
			name=name,
			type_id=type_id,
			is_param=True,
			param_mode=mode,
			span=span or Span(),
		)
		if forwards:
			self._forwards.add(len(self._params))
		self._params.append(name)
		return name

	def declare(self, name: str, type_id: TypeId, *, span: Span | None = None) -> UseSite:
		"""Declare a local in the innermost open scope and emit its DECL site."""
		if name in self._fn.bindings:
			raise ValueError(f"duplicate binding '{name}' in '{self._fn.name}'")
		self._fn.bindings[name] = Binding(name=name, type_id=type_id, span=span or Span())
		if self._scopes:
			self._regions[name] = self._scopes[-1]
		return self._site(UseKind.DECL, name, span=span)

	# ------------------------------------------------------------------- sites

	def _site(
		self,
		kind: UseKind,
		binding: Optional[str],
		*,
		path: Tuple[str, ...] = (),
		target: Optional[MoveTarget] = None,
		explicit: bool = False,
		via_forward: bool = False,
		temp_type: Optional[TypeId] = None,
		span: Span | None = None,
	) -> UseSite:
		bid = self._ensure_current()
		block = self._fn.blocks[bid]
		site = UseSite(
			id=self._next_site,
			block=bid,
			index=len(block.sites),
			kind=kind,
			binding=binding,
			path=path,
			target=target,
			explicit=explicit,
			via_forward=via_forward,
			temp_type=temp_type,
			span=span or Span(),
		)
		self._next_site += 1
		block.sites.append(site)
		return site

	def read(self, ref: str, *, span: Span | None = None) -> UseSite:
		name, path = split_ref(ref)
		return self._site(UseKind.READ, name, path=path, span=span)

	def write(self, ref: str, *, span: Span | None = None) -> UseSite:
		name, path = split_ref(ref)
		return self._site(UseKind.WRITE, name, path=path, span=span)

	def addr_of(self, ref: str, *, span: Span | None = None) -> UseSite:
		name, path = split_ref(ref)
		return self._site(UseKind.ADDR_OF, name, path=path, span=span)

	def move_out(
		self,
		ref: Arg,
		target: MoveTarget,
		*,
		explicit: bool = False,
		via_forward: bool = False,
		span: Span | None = None,
	) -> UseSite:
		"""By-value consumption of a binding (or temporary) into `target`."""
		if isinstance(ref, Temp):
			return self._site(UseKind.MOVE_OUT, None, target=target, temp_type=ref.type_id, span=span)
		name, path = split_ref(ref)
		return self._site(
			UseKind.MOVE_OUT,
			name,
			path=path,
			target=target,
			explicit=explicit,
			via_forward=via_forward,
			span=span,
		)

	def temp_move(self, type_id: TypeId, target: MoveTarget, *, span: Span | None = None) -> UseSite:
		return self.move_out(Temp(type_id), target, span=span)

	def call(
		self,
		callee: str,
		*args: Arg,
		modes: Sequence[PassMode] | None = None,
		may_fail: bool = False,
		forwarding: Iterable[int] = (),
		explicit: Iterable[int] = (),
		span: Span | None = None,
	) -> List[UseSite]:
		"""
		Emit one MOVE_OUT site per argument, left to right.

		`forwarding` lists argument positions the callee returns as the same
		move reference; `explicit` lists positions written as `move x`.
		"""
		fwd = set(forwarding)
		exp = set(explicit)
		out: List[UseSite] = []
		for idx, arg in enumerate(args):
			mode = modes[idx] if modes is not None else PassMode.VALUE
			target = call_arg(callee, idx, mode, may_fail=may_fail, forwarding=idx in fwd)
			out.append(self.move_out(arg, target, explicit=idx in exp, span=span))
		return out

	def assign(self, dest: str, src: Arg, *, explicit: bool = False, span: Span | None = None) -> UseSite:
		"""`dest = src`: the source is consumed, then the destination written."""
		self.move_out(src, assign_to(split_ref(dest)[0]), explicit=explicit, span=span)
		return self.write(dest, span=span)

	def ret(self, *refs: Arg, mode: PassMode = PassMode.VALUE, span: Span | None = None) -> List[UseSite]:
		"""Return from the function; each ref is moved into the return slot in order."""
		out = [self.move_out(r, return_slot(mode), span=span) for r in refs]
		self._ensure_current()
		self._current = None
		return out

	# ------------------------------------------------------------ control flow

	@contextmanager
	def if_else(self) -> Iterator[Tuple[_Arm, _Arm]]:
		cond = self._ensure_current()
		then_blk = self._new_block()
		else_blk = self._new_block()
		self._edge(cond, then_blk, EdgeKind.TRUE)
		self._edge(cond, else_blk, EdgeKind.FALSE)
		ends: List[int] = []
		then_arm = _Arm(self, then_blk, ends)
		else_arm = _Arm(self, else_blk, ends)
		self._current = None
		yield then_arm, else_arm
		for arm in (then_arm, else_arm):
			if not arm.entered:
				ends.append(arm.first)
		join = self._new_block()
		for end in ends:
			self._edge(end, join, EdgeKind.NORMAL)
		self._current = join

	@contextmanager
	def if_then(self) -> Iterator[None]:
		with self.if_else() as (then, _otherwise):
			with then:
				yield

	@contextmanager
	def loop(self, cond: Sequence[str] = ()) -> Iterator[LoopHandle]:
		"""
		`while cond { body }`: header evaluates `cond` reads, body is a scope.

		The body's fallthrough returns to the header on a BACK edge.
		"""
		pre = self._ensure_current()
		header = self._new_block()
		self._edge(pre, header, EdgeKind.NORMAL)
		self._current = header
		for ref in cond:
			self.read(ref)
		body = self._new_block()
		exit_block = self._new_block()
		self._edge(header, body, EdgeKind.TRUE)
		self._edge(header, exit_block, EdgeKind.FALSE)
		handle = LoopHandle(self, header, exit_block)
		self._scopes.append({body})
		self._current = body
		try:
			yield handle
		finally:
			self._scopes.pop()
		if self._current is not None:
			self._edge(self._current, header, EdgeKind.BACK)
		self._current = exit_block

	@contextmanager
	def scope(self) -> Iterator[None]:
		self._start()
		self._scopes.append({self._current})  # type: ignore[arg-type]
		try:
			yield
		finally:
			self._scopes.pop()
		self._start()

	@contextmanager
	def short_circuit(self, op: str = "&&") -> Iterator[None]:
		"""
		Right operand of `lhs && rhs` / `lhs || rhs`.

		Sites emitted before entering belong to the left operand; sites inside
		the block to the right operand, which a SKIP edge can bypass.
		"""
		if op not in ("&&", "||"):
			raise ValueError(f"unknown short-circuit operator '{op}'")
		lhs = self._ensure_current()
		rhs = self._new_block()
		join = self._new_block()
		self._edge(lhs, rhs, EdgeKind.TRUE if op == "&&" else EdgeKind.FALSE)
		self._edge(lhs, join, EdgeKind.SKIP)
		self._current = rhs
		yield
		if self._current is not None:
			self._edge(self._current, join, EdgeKind.NORMAL)
		self._current = join

	def label(self, name: str) -> int:
		if name in self._labels:
			raise ValueError(f"duplicate label '{name}' in '{self._fn.name}'")
		bid = self._start(label=name)
		self._labels[name] = bid
		return bid

	def jump(self, label: str) -> None:
		src = self._ensure_current()
		self._pending_jumps.append((src, label))
		self._current = None

	def jump_if(self, label: str) -> None:
		src = self._ensure_current()
		self._pending_jumps.append((src, label))
		cont = self._new_block()
		self._edge(src, cont, EdgeKind.FALSE)
		self._current = cont

	@contextmanager
	def nested(self, name: str, captures: Sequence[str] = ()) -> Iterator["CfgBuilder"]:
		"""
		Define a nested function/closure at the current point.

		Creating the closure reads every captured binding here in the parent.
		"""
		cap_types: Dict[str, TypeId] = {}
		for cname in captures:
			binding = self._fn.bindings.get(cname)
			cap_types[cname] = binding.type_id if binding is not None else -1
			self.read(cname)
		inner = CfgBuilder(name, captures=cap_types)
		yield inner
		self._fn.nested.append(inner.finish())

	# ------------------------------------------------------------------ finish

	def finish(self) -> FunctionCFG:
		"""Resolve jumps, freeze regions and return the FunctionCFG."""
		dangling = max(self._fn.blocks) + 1
		for src, label in self._pending_jumps:
			dst = self._labels.get(label)
			if dst is None:
				# Left dangling on purpose: validation reports it to the front end.
				dst = dangling
				dangling += 1
			self._edge(src, dst, EdgeKind.JUMP, label=label)
		self._pending_jumps = []
		for name, region in self._regions.items():
			self._fn.bindings[name].region = frozenset(region)
		captured = self._fn.captured_names()
		for name in captured:
			binding = self._fn.bindings.get(name)
			if binding is not None:
				binding.captured = True
		self._fn.params = tuple(self._params)
		self._fn.forwards = frozenset(self._forwards)
		return self._fn


__all__ = [
	"Arg",
	"CfgBuilder",
	"LoopHandle",
	"Temp",
	"assign_to",
	"call_arg",
	"return_slot",
	"split_ref",
]
