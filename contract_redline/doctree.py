"""Document tree nodes and the editing engine boundary.

Positions follow the usual rich-text convention: every character of a text
node and every atom occupies one position, and every element (including the
block that wraps a clause) occupies one position for its opening token and
one for its closing token. A block found at position ``p`` therefore starts
its content at ``p + 1``.

``MemoryDocument`` is a small in-process engine that honours the same
contract as an external editor: position-based delete/insert inside a
transaction, committed all-or-nothing.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Union

from .models import BlockStatus

logger = logging.getLogger(__name__)


class EditError(Exception):
    """The editing engine refused a step; nothing from the transaction was applied."""


# ---------------------------------------------------------------------------
# Node variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextNode:
    text: str

    @property
    def size(self) -> int:
        return len(self.text)


@dataclass(frozen=True)
class AtomNode:
    """A leaf with no text: image, hard break, bookmark, field marker."""
    kind: str

    @property
    def size(self) -> int:
        return 1


@dataclass(frozen=True)
class ElementNode:
    kind: str
    children: tuple = ()

    @property
    def size(self) -> int:
        return 2 + sum(child.size for child in self.children)


Node = Union[TextNode, AtomNode, ElementNode]


def node_text(node: Node) -> str:
    """Concatenated text of every text leaf under ``node``."""
    if isinstance(node, TextNode):
        return node.text
    if isinstance(node, AtomNode):
        return ""
    if isinstance(node, ElementNode):
        return "".join(node_text(c) for c in node.children)
    raise TypeError(f"Unknown node type: {type(node).__name__}")


def walk(node: ElementNode) -> Iterator[tuple[Node, int]]:
    """Depth-first walk over the descendants of ``node``.

    Yields ``(child, offset)`` where ``offset`` is the child's position
    relative to the start of ``node``'s content.
    """
    offset = 0
    for child in node.children:
        yield child, offset
        if isinstance(child, ElementNode):
            for sub, sub_offset in walk(child):
                yield sub, offset + 1 + sub_offset
        elif not isinstance(child, (TextNode, AtomNode)):
            raise TypeError(f"Unknown node type: {type(child).__name__}")
        offset += child.size


@dataclass(frozen=True)
class BlockRef:
    """A block as seen in one document state. Positions go stale after any commit."""
    id: str
    position: int
    node: ElementNode
    risk: str = ""
    status: BlockStatus = BlockStatus.ORIGINAL

    @property
    def text(self) -> str:
        return node_text(self.node)


# ---------------------------------------------------------------------------
# Editing engine boundary
# ---------------------------------------------------------------------------

@dataclass
class Transaction:
    base_version: int
    steps: list[tuple] = field(default_factory=list)
    committed: bool = False


class EditingEngine(ABC):
    """What the patch pipeline needs from a document editor.

    Steps are recorded on the transaction and only take effect on
    ``commit``, which applies all of them or none.
    """

    @abstractmethod
    def locate_block_by_id(self, block_id: str) -> Optional[BlockRef]:
        ...

    @abstractmethod
    def iter_blocks(self) -> Iterator[BlockRef]:
        ...

    @abstractmethod
    def begin_transaction(self) -> Transaction:
        ...

    @abstractmethod
    def commit(self, tx: Transaction) -> None:
        ...

    def delete(self, tx: Transaction, start: int, end: int) -> None:
        if start < 0 or end < start:
            raise ValueError(f"Invalid delete range [{start}, {end})")
        tx.steps.append(("delete", start, end))

    def insert_text(self, tx: Transaction, pos: int, text: str) -> None:
        if pos < 0:
            raise ValueError(f"Invalid insert position {pos}")
        tx.steps.append(("insert", pos, text))

    def set_block_status(self, tx: Transaction, block_id: str, status: BlockStatus) -> None:
        tx.steps.append(("status", block_id, BlockStatus(status)))


# ---------------------------------------------------------------------------
# In-memory engine
# ---------------------------------------------------------------------------
# Block content is stored flat: one str per character, and ("open", kind),
# ("close", kind), ("atom", kind) tuples for structure. The flat form makes
# every position edit a list splice.

def _flatten(nodes: Iterable[Node]) -> list:
    tokens: list = []
    for node in nodes:
        if isinstance(node, TextNode):
            tokens.extend(node.text)
        elif isinstance(node, AtomNode):
            tokens.append(("atom", node.kind))
        elif isinstance(node, ElementNode):
            tokens.append(("open", node.kind))
            tokens.extend(_flatten(node.children))
            tokens.append(("close", node.kind))
        else:
            raise TypeError(f"Unknown node type: {type(node).__name__}")
    return tokens


def _parse(tokens: list) -> tuple:
    """Rebuild nodes from flat tokens. A close token ends the innermost open element."""
    stack: list[tuple[Optional[str], list]] = [(None, [])]
    buf: list[str] = []

    def flush():
        if buf:
            stack[-1][1].append(TextNode("".join(buf)))
            buf.clear()

    for tok in tokens:
        if isinstance(tok, str):
            buf.append(tok)
            continue
        flush()
        tag, kind = tok
        if tag == "open":
            stack.append((kind, []))
        elif tag == "close":
            if len(stack) == 1:
                raise EditError("Unbalanced structure: close without open")
            open_kind, children = stack.pop()
            stack[-1][1].append(ElementNode(open_kind, tuple(children)))
        elif tag == "atom":
            stack[-1][1].append(AtomNode(kind))
        else:
            raise EditError(f"Unknown token {tok!r}")
    flush()
    if len(stack) != 1:
        raise EditError("Unbalanced structure: element left open")
    return tuple(stack[0][1])


def _fit_delete(tokens: list, lo: int, hi: int) -> set:
    """Indices in ``tokens[lo:hi]`` that have to survive a delete of that range.

    Elements wholly inside the range go with it. An open or close token whose
    partner lies outside the range stays, so the block keeps its shape. Where
    the range runs from the end of one element into the start of a sibling of
    the same kind, the two are joined, outermost level first.
    """
    depth = 0
    for tok in tokens[:lo]:
        if isinstance(tok, tuple):
            depth += {"open": 1, "close": -1}.get(tok[0], 0)

    opens: list[tuple[int, int, str]] = []
    closes: dict[int, tuple[int, str]] = {}
    for i in range(lo, hi):
        tok = tokens[i]
        if isinstance(tok, str) or tok[0] == "atom":
            continue
        tag, kind = tok
        if tag == "open":
            depth += 1
            opens.append((i, depth, kind))
        else:
            if opens:
                opens.pop()
            else:
                closes[depth] = (i, kind)
            depth -= 1

    keep = {i for i, _ in closes.values()} | {i for i, _, _ in opens}
    for i, level, kind in opens:
        match = closes.get(level)
        if match is None or match[1] != kind:
            break
        keep.discard(i)
        keep.discard(match[0])
    return keep


class _StepMap:
    """Maps positions written against the planned document onto the working copy.

    Callers plan every step as if a delete removes its whole range. Tokens a
    delete had to keep are recorded here as (planned position, count) so later
    steps in the same transaction still land where they were aimed.
    """

    def __init__(self):
        self.kept: list[list[int]] = []

    def start(self, pos: int) -> int:
        return pos + sum(k for s, k in self.kept if s <= pos)

    def end(self, pos: int) -> int:
        return pos + sum(k for s, k in self.kept if s < pos)

    def inserted(self, pos: int, length: int) -> None:
        for entry in self.kept:
            if entry[0] > pos:
                entry[0] += length

    def deleted(self, start: int, end: int, kept: int) -> None:
        entries = []
        for s, k in self.kept:
            if start < s < end:
                continue  # recounted in ``kept``
            if s >= end:
                s -= end - start
            entries.append([s, k])
        if kept:
            entries.append([start, kept])
        self.kept = entries


@dataclass
class _BlockState:
    id: str
    tokens: list
    risk: str = ""
    status: BlockStatus = BlockStatus.ORIGINAL

    @property
    def size(self) -> int:
        return len(self.tokens) + 2


class MemoryDocument(EditingEngine):
    """Reference editing engine holding the whole document in memory."""

    def __init__(self):
        self._blocks: list[_BlockState] = []
        self._version = 0
        self._lock = threading.Lock()

    # -- construction -------------------------------------------------------

    @classmethod
    def from_texts(cls, texts: Iterable[str]) -> "MemoryDocument":
        doc = cls()
        for text in texts:
            doc.add_block([ElementNode("paragraph", (TextNode(text),))])
        return doc

    def add_block(self, children: Iterable[Node], block_id: Optional[str] = None,
                  risk: str = "") -> str:
        """Append a block and return its id. Ids are never reused."""
        block_id = block_id or str(uuid.uuid4())
        with self._lock:
            if any(b.id == block_id for b in self._blocks):
                raise ValueError(f"Duplicate block id: {block_id}")
            self._blocks.append(_BlockState(block_id, _flatten(children), risk))
            self._version += 1
        return block_id

    # -- reading ------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def _ref(self, state: _BlockState, position: int) -> BlockRef:
        return BlockRef(
            id=state.id,
            position=position,
            node=ElementNode("block", _parse(state.tokens)),
            risk=state.risk,
            status=state.status,
        )

    def iter_blocks(self) -> Iterator[BlockRef]:
        with self._lock:
            snapshot = [(b, copy.copy(b.tokens)) for b in self._blocks]
        pos = 0
        for state, tokens in snapshot:
            yield self._ref(_BlockState(state.id, tokens, state.risk, state.status), pos)
            pos += len(tokens) + 2

    def locate_block_by_id(self, block_id: str) -> Optional[BlockRef]:
        with self._lock:
            pos = 0
            for state in self._blocks:
                if state.id == block_id:
                    return self._ref(state, pos)
                pos += state.size
        return None

    def text_of(self, block_id: str) -> Optional[str]:
        ref = self.locate_block_by_id(block_id)
        return ref.text if ref else None

    # -- writing ------------------------------------------------------------

    def begin_transaction(self) -> Transaction:
        return Transaction(base_version=self._version)

    def commit(self, tx: Transaction) -> None:
        if tx.committed:
            raise EditError("Transaction already committed")
        with self._lock:
            if tx.base_version != self._version:
                raise EditError(
                    f"Stale transaction (built against v{tx.base_version}, document is v{self._version})"
                )
            working = [copy.deepcopy(b) for b in self._blocks]
            step_map = _StepMap()
            for step in tx.steps:
                self._apply(working, step, step_map)
            # validate structure of every touched block before swapping in
            for state in working:
                _parse(state.tokens)
            self._blocks = working
            if tx.steps:
                self._version += 1
            tx.committed = True

    @staticmethod
    def _resolve(blocks: list[_BlockState], pos: int) -> tuple[_BlockState, int]:
        """Map a document position to (block, offset into its content tokens)."""
        start = 0
        for state in blocks:
            content_start = start + 1
            if content_start <= pos <= content_start + len(state.tokens):
                return state, pos - content_start
            start += state.size
        raise EditError(f"Position {pos} is not inside any block's content")

    def _apply(self, blocks: list[_BlockState], step: tuple, step_map: _StepMap) -> None:
        kind = step[0]
        if kind == "insert":
            _, pos, text = step
            state, offset = self._resolve(blocks, step_map.start(pos))
            state.tokens[offset:offset] = list(text)
            step_map.inserted(pos, len(text))
        elif kind == "delete":
            _, start, end = step
            actual_start, actual_end = step_map.start(start), step_map.end(end)
            state, offset = self._resolve(blocks, actual_start)
            end_offset = offset + max(actual_end - actual_start, 0)
            if end_offset > len(state.tokens):
                raise EditError(f"Delete range [{start}, {end}) crosses a block boundary")
            keep = _fit_delete(state.tokens, offset, end_offset)
            state.tokens[offset:end_offset] = [
                state.tokens[i] for i in range(offset, end_offset) if i in keep
            ]
            if keep:
                logger.debug("Delete [%d, %d) kept %d structural tokens", start, end, len(keep))
            step_map.deleted(start, end, len(keep))
        elif kind == "status":
            _, block_id, status = step
            for state in blocks:
                if state.id == block_id:
                    state.status = status
                    break
            else:
                raise EditError(f"Block not found: {block_id}")
        else:
            raise EditError(f"Unknown step {kind!r}")
