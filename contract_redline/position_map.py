"""Character index -> document position tables for a block's text."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .doctree import AtomNode, BlockRef, EditingEngine, ElementNode, TextNode, walk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionMap:
    """Valid only against the document state the block ref was taken from."""
    block_id: str
    text: str
    positions: tuple[int, ...]

    @property
    def text_length(self) -> int:
        return len(self.text)

    @property
    def is_empty(self) -> bool:
        return not self.positions

    def __getitem__(self, index: int) -> int:
        return self.positions[index]


def build_position_map(ref: BlockRef) -> PositionMap:
    """Walk the block depth-first and record the absolute position of each character.

    Atoms and element boundaries take up document positions but contribute no
    characters, which is why a character's index and its position drift
    apart. A block with no text leaves yields an empty map.
    """
    content_start = ref.position + 1
    buf: list[str] = []
    positions: list[int] = []
    for node, offset in walk(ref.node):
        if isinstance(node, TextNode):
            base = content_start + offset
            positions.extend(range(base, base + len(node.text)))
            buf.append(node.text)
        elif isinstance(node, (AtomNode, ElementNode)):
            continue
        else:
            raise TypeError(f"Unknown node type: {type(node).__name__}")
    return PositionMap(ref.id, "".join(buf), tuple(positions))


# ---------------------------------------------------------------------------
# Clause context assembly
# ---------------------------------------------------------------------------

@dataclass
class ClauseContext:
    target: str
    context: str
    block_id: str
    start_pos: int
    end_pos: int
    context_start: int
    context_end: int
    truncated: bool = False
    neighbours: list[str] = field(default_factory=list)


def assemble_clause_context(
    engine: EditingEngine,
    block_id: str,
    prev_blocks: int = 1,
    next_blocks: int = 1,
    max_context_chars: int = 2000,
) -> Optional[ClauseContext]:
    """Collect a block's text plus the text of its neighbours.

    Each side is capped at ``max_context_chars``; hitting the cap keeps the
    characters closest to the target and sets ``truncated``.
    """
    refs = list(engine.iter_blocks())
    index = next((i for i, r in enumerate(refs) if r.id == block_id), None)
    if index is None:
        logger.warning("Clause %s not found for context assembly", block_id)
        return None

    target = refs[index]
    truncated = False
    context_start = target.position
    context_end = target.position + target.node.size
    neighbours: list[str] = []

    prev_parts: list[str] = []
    collected = 0
    for i in range(index - 1, max(index - prev_blocks, 0) - 1, -1):
        text = refs[i].text
        if max_context_chars and collected + len(text) > max_context_chars:
            remaining = max_context_chars - collected
            if remaining > 0:
                prev_parts.insert(0, text[-remaining:])
            truncated = True
            break
        prev_parts.insert(0, text)
        collected += len(text)
        context_start = refs[i].position
        neighbours.insert(0, refs[i].id)

    next_parts: list[str] = []
    collected = 0
    for i in range(index + 1, min(index + next_blocks, len(refs) - 1) + 1):
        text = refs[i].text
        if max_context_chars and collected + len(text) > max_context_chars:
            remaining = max_context_chars - collected
            if remaining > 0:
                next_parts.append(text[:remaining])
            truncated = True
            break
        next_parts.append(text)
        collected += len(text)
        context_end = refs[i].position + refs[i].node.size
        neighbours.append(refs[i].id)

    prev_text = "\n".join(prev_parts).strip()
    next_text = "\n".join(next_parts).strip()
    return ClauseContext(
        target=f'<target_clause id="{block_id}">{target.text}</target_clause>',
        context=f"<context>{prev_text}\n...\n{next_text}</context>",
        block_id=block_id,
        start_pos=target.position,
        end_pos=target.position + target.node.size,
        context_start=context_start,
        context_end=context_end,
        truncated=truncated,
        neighbours=neighbours,
    )
