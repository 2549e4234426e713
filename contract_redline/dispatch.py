"""Send batches to the model concurrently and merge the findings they return."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .classifier import relevance
from .config import PipelineConfig
from .ir import parse_clause_ir, records_to_findings
from .llm import TextGenerator
from .models import BatchJob, Finding, Playbook
from .prompts import REVIEW_SYSTEM_PROMPT, build_batch_prompt
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class BatchFailedError(Exception):
    """A batch could not be completed; other batches are unaffected."""


class RunGuard:
    """Generation counter. Results from a run started under an older generation are discarded."""

    def __init__(self):
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def bump(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def is_live(self, generation: int) -> bool:
        return self.generation == generation


def fingerprint(text: str, prefix: int = 100) -> str:
    """Lowercased, trimmed text prefix plus the full text length."""
    return f"{text.strip().lower()[:prefix]}_{len(text)}"


class FindingSet:
    """Accepted findings for one run; every merge goes through one lock.

    A finding is rejected if its target id was already accepted, or if its
    original text fingerprint matches a finding accepted under another id.
    """

    def __init__(self, fingerprint_prefix: int = 100):
        self._lock = threading.Lock()
        self._findings: list[Finding] = []
        self._seen_ids: set[str] = set()
        self._seen_fingerprints: dict[str, str] = {}
        self._prefix = fingerprint_prefix
        self.rejections: list[str] = []

    def add(self, finding: Finding) -> bool:
        with self._lock:
            return self._add_locked(finding)

    def _add_locked(self, finding: Finding) -> bool:
        if finding.target_id in self._seen_ids:
            msg = f"Skipping duplicate finding for ID: {finding.target_id}"
            logger.warning(msg)
            self.rejections.append(msg)
            return False

        fp = fingerprint(finding.original_text, self._prefix)
        existing = self._seen_fingerprints.get(fp)
        if finding.original_text.strip() and existing and existing != finding.target_id:
            msg = (f"Skipping duplicate finding with same content. "
                   f"Original ID: {existing}, Duplicate ID: {finding.target_id}")
            logger.warning(msg)
            self.rejections.append(msg)
            return False

        self._seen_ids.add(finding.target_id)
        if finding.original_text.strip():
            self._seen_fingerprints[fp] = finding.target_id
        self._findings.append(finding)
        return True

    def merge(self, findings: Sequence[Finding], guard: Optional[RunGuard] = None,
              generation: int = 0) -> Optional[int]:
        """Add findings in order. Returns how many were accepted, or None if the run is stale."""
        with self._lock:
            if guard is not None and not guard.is_live(generation):
                return None
            return sum(1 for f in findings if self._add_locked(f))

    @property
    def findings(self) -> list[Finding]:
        with self._lock:
            return list(self._findings)

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)


@dataclass
class BatchOutcome:
    index: int
    status: str           # "ok", "skipped", "failed" or "discarded"
    block_ids: list[str] = field(default_factory=list)
    score: int = 0
    records: int = 0
    accepted: int = 0
    recovered: int = 0
    error: str = ""


@dataclass
class DispatchResult:
    findings: list[Finding]
    outcomes: list[BatchOutcome]
    rejections: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    discarded: bool = False

    @property
    def failed(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def skipped(self) -> list[BatchOutcome]:
        return [o for o in self.outcomes if o.status == "skipped"]


def _batch_text(batch: BatchJob) -> str:
    return "\n".join(b.text for b in batch.blocks)


def review_batch(
    batch: BatchJob,
    rules: list,
    generator: TextGenerator,
    playbook: Playbook,
    party: str,
    config: PipelineConfig,
    policy: RetryPolicy,
    label: str = "batch",
    sleep: Optional[Callable[[float], None]] = None,
) -> str:
    """One remote call (plus retries) for one batch. Returns the raw response text."""
    prompt = build_batch_prompt(batch.serialized_text, rules, playbook, party)

    def call():
        return generator.generate(prompt, REVIEW_SYSTEM_PROMPT, config.temperature)

    try:
        return call_with_retry(call, policy, label=label, sleep=sleep)
    except Exception as e:
        raise BatchFailedError(f"{label}: {e}") from e


def dispatch_batches(
    batches: Sequence[BatchJob],
    generator: TextGenerator,
    playbook: Playbook,
    party: str,
    config: PipelineConfig,
    guard: Optional[RunGuard] = None,
    generation: Optional[int] = None,
    block_texts: Optional[dict[str, str]] = None,
    on_progress: Optional[Callable[[int, int, str], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> DispatchResult:
    """Review every relevant batch with at most ``config.concurrency`` calls in flight.

    Batches whose keyword relevance is under the threshold are skipped with no
    call. A batch that still fails after its retries is reported as failed and
    the others carry on. If ``guard`` moves past ``generation`` before a batch
    merges, that batch's findings are thrown away.
    """
    guard = guard or RunGuard()
    generation = guard.generation if generation is None else generation
    block_texts = block_texts or {b.id: b.text for batch in batches for b in batch.blocks}
    known_ids = set(block_texts)
    policy = RetryPolicy(
        max_retries=config.max_retries,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )
    results = FindingSet(config.fingerprint_prefix)
    outcomes: list[Optional[BatchOutcome]] = [None] * len(batches)
    warnings: list[str] = []
    warnings_lock = threading.Lock()
    done = 0
    total = len(batches)

    def progress(msg: str):
        if on_progress:
            on_progress(done, total, msg)

    jobs: list[tuple[int, BatchJob, list]] = []
    for i, batch in enumerate(batches):
        if playbook.rules:
            score, matched = relevance(_batch_text(batch), playbook.rules)
            if score < config.relevance_threshold:
                logger.info("Skipping batch %d - low relevance score (%d)", i, score)
                outcomes[i] = BatchOutcome(i, "skipped", batch.block_ids, score=score)
                continue
            rules = (matched or playbook.rules)[:config.max_rules_per_batch]
        else:
            score, rules = 0, []
        jobs.append((i, batch, rules))
        outcomes[i] = BatchOutcome(i, "pending", batch.block_ids, score=score)

    progress(f"Splitting document into {total} analysis batches ({len(jobs)} to review)...")

    def run_one(index: int, batch: BatchJob, rules: list) -> BatchOutcome:
        outcome = outcomes[index]
        try:
            raw = review_batch(batch, rules, generator, playbook, party, config,
                               policy, label=f"batch {index}", sleep=sleep)
        except BatchFailedError as e:
            logger.error("Batch %d failed: %s", index, e)
            outcome.status = "failed"
            outcome.error = str(e)
            return outcome

        records = parse_clause_ir(raw)
        findings = records_to_findings(records, block_texts)
        outcome.records = len(records)
        outcome.recovered = sum(1 for r in records if r.recovered)

        local_warnings = []
        for f in findings:
            if f.recovered:
                local_warnings.append(f"Finding for {f.target_id} was recovered from a truncated record")
            if f.target_id not in known_ids:
                local_warnings.append(f"Finding references unknown block id: {f.target_id}")
        for w in local_warnings:
            logger.warning(w)

        accepted = results.merge(findings, guard, generation)
        if accepted is None:
            logger.info("Discarding batch %d results: run was abandoned", index)
            outcome.status = "discarded"
            return outcome

        with warnings_lock:
            warnings.extend(local_warnings)
        outcome.accepted = accepted
        outcome.status = "ok"
        return outcome

    with ThreadPoolExecutor(max_workers=config.concurrency) as pool:
        futures = [pool.submit(run_one, i, batch, rules) for i, batch, rules in jobs]
        for future in as_completed(futures):
            outcome = future.result()
            done += 1
            progress(f"Analyzed batch {outcome.index + 1} of {total} ({outcome.status})")

    for o in outcomes:
        if o.status == "failed":
            warnings.append(f"Batch {o.index} failed: {o.error}")

    return DispatchResult(
        findings=results.findings,
        outcomes=list(outcomes),
        rejections=list(results.rejections),
        warnings=warnings,
        discarded=not guard.is_live(generation),
    )
