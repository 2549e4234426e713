"""Split a document's blocks into bounded batches for the model."""

import logging
from typing import Sequence

from .config import BLOCK_LIMIT_TIERS, LARGE_BLOCK_LIMIT, MAX_CHARS_PER_BATCH
from .models import BatchJob, Block

logger = logging.getLogger(__name__)


def serialize_block(block: Block) -> str:
    return f'<<CLAUSE id="{block.id}">>\n{block.text}\n<<END_CLAUSE>>\n\n'


def max_blocks_per_batch(
    blocks: Sequence[Block],
    tiers: Sequence[tuple[int, int]] = BLOCK_LIMIT_TIERS,
    fallback: int = LARGE_BLOCK_LIMIT,
) -> int:
    """Block-count ceiling from the document's average block length.

    Short blocks serialize cheaply so more of them fit in one call; long
    blocks get a lower ceiling to keep output size in check.
    """
    if not blocks:
        return fallback
    avg = sum(len(b.text) for b in blocks) / len(blocks)
    for upper, limit in tiers:
        if avg < upper:
            return limit
    return fallback


def create_batches(
    blocks: Sequence[Block],
    max_chars: int = MAX_CHARS_PER_BATCH,
    tiers: Sequence[tuple[int, int]] = BLOCK_LIMIT_TIERS,
    fallback: int = LARGE_BLOCK_LIMIT,
) -> list[BatchJob]:
    """Group blocks in order into batches bounded by characters and block count.

    A block that would overflow the current batch starts a new one. A single
    block larger than ``max_chars`` still goes out, alone; blocks are never
    split.
    """
    if not blocks:
        return []

    limit = max_blocks_per_batch(blocks, tiers, fallback)
    batches: list[BatchJob] = []
    current: list[Block] = []
    current_text = ""

    for block in blocks:
        piece = serialize_block(block)
        will_exceed_chars = len(current_text) + len(piece) > max_chars
        will_exceed_blocks = len(current) + 1 > limit
        if (will_exceed_chars or will_exceed_blocks) and current:
            batches.append(BatchJob(tuple(current), current_text))
            current, current_text = [], ""
        if len(piece) > max_chars:
            logger.warning("Block %s alone exceeds the batch budget (%d > %d chars)",
                           block.id, len(piece), max_chars)
        current.append(block)
        current_text += piece

    if current:
        batches.append(BatchJob(tuple(current), current_text))

    logger.info("Split %d blocks into %d batches (max %d blocks per batch)",
                len(blocks), len(batches), limit)
    return batches
