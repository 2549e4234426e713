"""Turn a clause rewrite into one atomic batch of position edits."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .diffing import word_diff
from .doctree import EditError, EditingEngine, Transaction
from .models import BlockStatus, DiffOp, DiffSegment
from .position_map import PositionMap, build_position_map

logger = logging.getLogger(__name__)

DiffFn = Callable[[str, str], list[DiffSegment]]


@dataclass(frozen=True)
class EditOp:
    kind: str       # "delete" or "insert"
    start: int
    end: int = 0    # delete only
    text: str = ""  # insert only


@dataclass
class PatchPlan:
    ops: list[EditOp] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.ops


@dataclass
class PatchResult:
    block_id: str
    applied: bool
    reason: str = ""
    deletes: int = 0
    inserts: int = 0
    warnings: list[str] = field(default_factory=list)


class NothingToPatch(Exception):
    """Block has no text to anchor edits to."""


def plan_patch(
    original: str,
    proposed: str,
    pmap: PositionMap,
    diff: DiffFn = word_diff,
) -> PatchPlan:
    """Compute the edit ops that turn ``original`` into ``proposed``.

    Every position comes from the original table, corrected by ``offset``,
    the net length change of the ops already planned. Nothing is recomputed
    against an intermediate document, so the ops can all go into a single
    transaction.
    """
    if pmap.is_empty:
        raise NothingToPatch(f"No text to patch in block {pmap.block_id}")

    plan = PatchPlan()
    if original == proposed:
        return plan

    table = pmap.positions
    last = len(table) - 1
    text_index = 0
    offset = 0

    for seg in diff(original, proposed):
        token = seg.token
        if not token:
            continue
        if seg.op == DiffOp.EQUAL:
            text_index += len(token)
        elif seg.op == DiffOp.DELETE:
            if text_index > last:
                plan.warnings.append(
                    f"Delete of {token!r} at index {text_index} is past the end of the position map"
                )
                text_index += len(token)
                continue
            end_index = min(text_index + len(token) - 1, last)
            start = table[text_index] + offset
            end = table[end_index] + 1 + offset
            plan.ops.append(EditOp("delete", start, end))
            offset -= end - start
            text_index += len(token)
        elif seg.op == DiffOp.INSERT:
            if text_index < len(table):
                base = table[text_index]
            else:
                base = table[last] + 1
            plan.ops.append(EditOp("insert", base + offset, text=token))
            offset += len(token)
        else:
            raise ValueError(f"Unknown diff op: {seg.op!r}")

    if text_index != len(original):
        plan.warnings.append(
            f"Diff/position map out of sync in block {pmap.block_id}: "
            f"consumed {text_index} of {len(original)} characters"
        )
    if len(original) != pmap.text_length:
        plan.warnings.append(
            f"Original text length {len(original)} does not match mapped text length "
            f"{pmap.text_length} in block {pmap.block_id}"
        )
    return plan


def build_transaction(engine: EditingEngine, plan: PatchPlan) -> Transaction:
    tx = engine.begin_transaction()
    for op in plan.ops:
        if op.kind == "delete":
            engine.delete(tx, op.start, op.end)
        else:
            engine.insert_text(tx, op.start, op.text)
    return tx


def apply_clause_update(
    engine: EditingEngine,
    block_id: str,
    proposed: str,
    diff: DiffFn = word_diff,
) -> PatchResult:
    """Rewrite a block's text to ``proposed`` and mark it pending.

    The block is located and mapped fresh, the edits are committed as one
    transaction, and the status change follows in a second transaction that
    finds the block by id since the first one moved positions around.
    """
    ref = engine.locate_block_by_id(block_id)
    if ref is None:
        logger.warning("Clause node not found for ID: %s", block_id)
        return PatchResult(block_id, applied=False, reason="block not found")

    pmap = build_position_map(ref)
    try:
        plan = plan_patch(pmap.text, proposed, pmap, diff=diff)
    except NothingToPatch:
        logger.warning("No text found in clause %s", block_id)
        return PatchResult(block_id, applied=False, reason="no text to patch")

    for warning in plan.warnings:
        logger.warning(warning)

    if plan.is_noop:
        return PatchResult(block_id, applied=False, reason="no changes", warnings=plan.warnings)

    try:
        engine.commit(build_transaction(engine, plan))
    except EditError as e:
        logger.warning("Editor refused patch for %s: %s", block_id, e)
        return PatchResult(block_id, applied=False, reason=str(e), warnings=plan.warnings)

    status_tx = engine.begin_transaction()
    engine.set_block_status(status_tx, block_id, BlockStatus.PENDING)
    engine.commit(status_tx)

    result = PatchResult(
        block_id,
        applied=True,
        deletes=sum(1 for op in plan.ops if op.kind == "delete"),
        inserts=sum(1 for op in plan.ops if op.kind == "insert"),
        warnings=plan.warnings,
    )
    logger.info("Patched %s: %d deletes, %d inserts", block_id, result.deletes, result.inserts)
    return result


def verify_patch(engine: EditingEngine, block_id: str, proposed: str) -> Optional[str]:
    """Return a warning if the block text after patching is not ``proposed``."""
    ref = engine.locate_block_by_id(block_id)
    if ref is None:
        return f"Block {block_id} disappeared after patching"
    if ref.text != proposed:
        return f"Block {block_id} text does not match the proposed rewrite after patching"
    return None
