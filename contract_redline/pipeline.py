"""Main orchestration: chunk the document, review batches, apply accepted rewrites."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .chunking import create_batches, serialize_block
from .classifier import relevance
from .config import PipelineConfig, default_config
from .dispatch import BatchOutcome, RunGuard, dispatch_batches
from .doctree import EditingEngine
from .extractors import document_blocks
from .ir import parse_clause_ir, records_to_findings
from .llm import TextGenerator
from .models import Block, Finding, Playbook
from .patching import PatchResult, apply_clause_update, verify_patch
from .position_map import assemble_clause_context
from .prompts import REVIEW_SYSTEM_PROMPT, build_batch_prompt
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, int, str], None]


class ReviewSession:
    """Explicit handle for one editing session: document, model, and run settings.

    Everything the pipeline touches comes through this object. ``reset()``
    abandons any run in flight; its results are dropped instead of merged.
    """

    def __init__(self, engine: EditingEngine, generator: TextGenerator,
                 config: Optional[PipelineConfig] = None):
        self.engine = engine
        self.generator = generator
        self.config = config or default_config()
        self.guard = RunGuard()
        self.findings: dict[str, Finding] = {}
        self._state_lock = threading.Lock()
        # single writer: one patch at a time against this document
        self.write_lock = threading.Lock()

    def reset(self) -> None:
        self.guard.bump()
        with self._state_lock:
            self.findings.clear()
        logger.info("Session reset (generation %d)", self.guard.generation)

    def merge_findings(self, findings: list[Finding], generation: int) -> bool:
        with self._state_lock:
            if not self.guard.is_live(generation):
                return False
            for f in findings:
                self.findings.setdefault(f.target_id, f)
            return True

    def replace_finding(self, block_id: str, finding: Optional[Finding], generation: int) -> bool:
        with self._state_lock:
            if not self.guard.is_live(generation):
                return False
            if finding is None:
                self.findings.pop(block_id, None)
            else:
                self.findings[block_id] = finding
            return True


@dataclass
class ReviewResult:
    findings: list[Finding]
    outcomes: list[BatchOutcome]
    metadata: dict
    warnings: list[str] = field(default_factory=list)
    rejections: list[str] = field(default_factory=list)
    discarded: bool = False


def run_review(
    session: ReviewSession,
    playbook: Playbook,
    party: str = "",
    progress_callback: Optional[ProgressFn] = None,
) -> ReviewResult:
    """Review every block in the session's document against ``playbook``.

    Returns findings in document order. Failed batches are listed in the
    outcomes and warnings; they never stop the run.
    """
    def progress(step, total, msg):
        if progress_callback:
            progress_callback(step, total, msg)
        else:
            logger.info(msg)

    generation = session.guard.generation
    config = session.config
    party = party or playbook.party or "Provider"
    t0 = time.time()

    progress(1, 4, "[Step 1/4] Reading blocks...")
    blocks = [b for b in document_blocks(session.engine) if b.text.strip()]
    order = {b.id: n for n, b in enumerate(blocks)}

    progress(2, 4, "[Step 2/4] Batching blocks...")
    batches = create_batches(
        blocks,
        max_chars=config.max_chars_per_batch,
        tiers=config.block_limit_tiers,
        fallback=config.large_block_limit,
    )

    def on_batch_progress(done, total, msg):
        frac = 2 + (done / total if total else 1)
        progress(frac, 4, f"[Step 3/4] {msg}")

    progress(3, 4, f"[Step 3/4] Reviewing {len(batches)} batches...")
    dispatched = dispatch_batches(
        batches,
        session.generator,
        playbook,
        party,
        config,
        guard=session.guard,
        generation=generation,
        block_texts={b.id: b.text for b in blocks},
        on_progress=on_batch_progress,
    )

    progress(4, 4, "[Step 4/4] Merging findings...")
    findings = sorted(dispatched.findings, key=lambda f: order.get(f.target_id, len(order)))
    discarded = dispatched.discarded or not session.merge_findings(findings, generation)
    if discarded:
        logger.warning("Review run abandoned; %d findings discarded", len(findings))
        findings = []

    warnings = list(dispatched.warnings)
    metadata = {
        "tool": "Contract Redline Reviewer",
        "playbook": playbook.name,
        "party": party,
        "rules_loaded": len(playbook.rules),
        "blocks": len(blocks),
        "batches": len(batches),
        "batches_skipped": len(dispatched.skipped),
        "batches_failed": len(dispatched.failed),
        "llm_calls": sum(1 for o in dispatched.outcomes if o.status in ("ok", "failed", "discarded")),
        "concurrency": config.concurrency,
        "elapsed_seconds": round(time.time() - t0, 1),
    }
    return ReviewResult(
        findings=findings,
        outcomes=dispatched.outcomes,
        metadata=metadata,
        warnings=warnings,
        rejections=dispatched.rejections,
        discarded=discarded,
    )


def review_clause(
    session: ReviewSession,
    playbook: Playbook,
    block_id: str,
    party: str = "",
    instruction: str = "",
) -> list[Finding]:
    """Re-review one block, with its neighbours sent along as read-only context.

    A finding for the block replaces whatever the session held for it. Returns
    an empty list when the block is unknown or the model finds nothing.
    """
    config = session.config
    generation = session.guard.generation
    ctx = assemble_clause_context(session.engine, block_id)
    if ctx is None:
        return []

    text = session.engine.text_of(block_id) or ""
    _, matched = relevance(text, playbook.rules)
    rules = (matched or playbook.rules)[:config.max_rules_per_batch]
    segment = f"{ctx.context}\n\n{serialize_block(Block(block_id, text))}"
    note = f'Review ONLY the clause with id "{block_id}"; the <context> text is for reference.'
    if instruction:
        note += f" {instruction}"
    prompt = build_batch_prompt(segment, rules, playbook, party or playbook.party or "Provider",
                                extra_instruction=note)
    policy = RetryPolicy(
        max_retries=config.max_retries,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )
    raw = call_with_retry(
        lambda: session.generator.generate(prompt, REVIEW_SYSTEM_PROMPT, config.temperature),
        policy, label=f"clause {block_id}",
    )
    findings = [f for f in records_to_findings(parse_clause_ir(raw), {block_id: text})
                if f.target_id == block_id]
    if ctx.truncated:
        logger.info("Context for %s was truncated", block_id)

    if not session.replace_finding(block_id, findings[0] if findings else None, generation):
        logger.warning("Session reset during clause review of %s; result dropped", block_id)
        return []
    return findings[:1]


def accept_finding(session: ReviewSession, finding: Finding,
                   text: Optional[str] = None) -> PatchResult:
    """Apply a finding's rewrite (or ``text``) to its block and mark the finding resolved."""
    proposed = finding.suggested_text if text is None else text
    if not proposed.strip():
        return PatchResult(finding.target_id, applied=False, reason="no suggested text")

    with session.write_lock:
        result = apply_clause_update(session.engine, finding.target_id, proposed)
        if result.applied:
            mismatch = verify_patch(session.engine, finding.target_id, proposed)
            if mismatch:
                logger.warning(mismatch)
                result.warnings.append(mismatch)

    if finding.recovered:
        result.warnings.append(
            f"Finding for {finding.target_id} came from a recovered record; check the rewrite"
        )
    if result.applied:
        finding.status = "resolved"
    return result


def ignore_finding(finding: Finding) -> None:
    finding.status = "ignored"
