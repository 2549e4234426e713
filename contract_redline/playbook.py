"""Playbook loading and saving, rule refinement through IR update records, and
playbook drafting from a contract or a free-text rulebook."""

import json
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Callable, Optional, Sequence

from .chunking import create_batches
from .classifier import DEFAULT_CATEGORIES, post_process_rules
from .config import (
    DEFAULT_PARTIES, GENERATION_MAX_CHUNKS, GENERATION_MIN_CHUNK_CHARS, LLM_TEMPERATURE,
    PARTY_SAMPLE_BLOCKS, SOURCE_TEXT_LIMIT,
)
from .ir import merge_rule_updates
from .llm import TextGenerator
from .models import Block, Playbook, PlaybookRule, RiskCriteria
from .prompts import (
    PLAYBOOK_JSON_SYSTEM_PROMPT, REFINEMENT_SYSTEM_PROMPT, build_global_refinement_prompt,
    build_party_detection_prompt, build_playbook_generation_prompt, build_playbook_parsing_prompt,
    build_rule_refinement_prompt,
)
from .retry import RetryPolicy, TransientServiceError, call_with_retry

logger = logging.getLogger(__name__)


class PlaybookError(Exception):
    """Playbook could not be read, parsed or drafted."""


def rule_from_dict(data: dict) -> PlaybookRule:
    if not isinstance(data, dict):
        raise PlaybookError(f"Rule must be an object, got {type(data).__name__}")
    rc = data.get("risk_criteria") or {}
    return PlaybookRule(
        topic=data.get("topic") or "",
        preferred_position=data.get("preferred_position") or "",
        reasoning=data.get("reasoning") or "",
        rule_id=data.get("rule_id") or "",
        category=data.get("category") or "",
        subcategory=data.get("subcategory") or "",
        synonyms=list(data.get("synonyms") or []),
        signal_keywords=list(data.get("signal_keywords") or []),
        clause_number=data.get("clause_number") or "",
        fallback_position=data.get("fallback_position") or "",
        suggested_drafting=data.get("suggested_drafting") or "",
        risk_criteria=RiskCriteria(
            green=rc.get("green") or "",
            yellow=rc.get("yellow") or "",
            red=rc.get("red") or "",
        ),
    )


def playbook_from_dict(data: dict, normalize: bool = True) -> Playbook:
    if not isinstance(data, dict):
        raise PlaybookError("Playbook must be a JSON object")
    meta = data.get("metadata") or {}
    rules = [rule_from_dict(r) for r in data.get("rules") or []]
    if normalize:
        rules = post_process_rules(rules)
    return Playbook(name=meta.get("name") or "Playbook", party=meta.get("party") or "", rules=rules)


def load_playbook(path: Path, normalize: bool = True) -> Playbook:
    """Read a playbook JSON file: ``{"metadata": {...}, "rules": [...]}``."""
    path = Path(path)
    if not path.exists():
        raise PlaybookError(f"Playbook not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PlaybookError(f"Playbook is not valid JSON: {path}: {e}") from e
    return playbook_from_dict(data, normalize=normalize)


def playbook_to_dict(playbook: Playbook) -> dict:
    return {
        "metadata": {"name": playbook.name, "party": playbook.party},
        "rules": [asdict(r) for r in playbook.rules],
    }


def save_playbook(playbook: Playbook, path: Path) -> None:
    Path(path).write_text(json.dumps(playbook_to_dict(playbook), indent=2, ensure_ascii=False),
                          encoding="utf-8")


def _with_ids(rules: list[PlaybookRule]) -> list[PlaybookRule]:
    return [r if r.rule_id else replace(r, rule_id=f"RULE_{i + 1}") for i, r in enumerate(rules)]


def refine_rule(
    generator: TextGenerator,
    rule: PlaybookRule,
    instruction: str,
    policy: Optional[RetryPolicy] = None,
) -> PlaybookRule:
    """Ask the model to rework one rule. Returns the rule unchanged if nothing came back."""
    rule = rule if rule.rule_id else replace(rule, rule_id="SINGLE_RULE_01")
    prompt = build_rule_refinement_prompt(rule, instruction)
    raw = call_with_retry(
        lambda: generator.generate(prompt, REFINEMENT_SYSTEM_PROMPT, LLM_TEMPERATURE),
        policy or RetryPolicy(), label=f"refine {rule.rule_id}",
    )
    changed = merge_rule_updates(raw, [rule])
    return changed[0] if changed else rule


def refine_playbook(
    generator: TextGenerator,
    playbook: Playbook,
    instruction: str,
    policy: Optional[RetryPolicy] = None,
) -> Playbook:
    """Apply an instruction across the playbook; rules the model leaves out stay as they are."""
    rules = _with_ids(playbook.rules)
    prompt = build_global_refinement_prompt(rules, instruction)
    raw = call_with_retry(
        lambda: generator.generate(prompt, REFINEMENT_SYSTEM_PROMPT, LLM_TEMPERATURE),
        policy or RetryPolicy(), label="refine playbook",
    )
    changed = {r.rule_id: r for r in merge_rule_updates(raw, rules)}
    logger.info("Refinement changed %d of %d rules", len(changed), len(rules))
    return replace(playbook, rules=[changed.get(r.rule_id, r) for r in rules])


# ---------------------------------------------------------------------------
# Party detection and playbook generation
# ---------------------------------------------------------------------------

def _parse_json(raw: str, what: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise PlaybookError(f"Model returned invalid JSON for {what}: {e}") from e


def _rules_from_model(data) -> list[PlaybookRule]:
    items = data.get("rules") if isinstance(data, dict) else None
    rules = []
    for item in items or []:
        if not isinstance(item, dict):
            logger.warning("Skipping rule that is not an object: %r", item)
            continue
        rules.append(rule_from_dict(item))
    return post_process_rules(rules)


def detect_parties(
    generator: TextGenerator,
    blocks: Sequence[Block],
    policy: Optional[RetryPolicy] = None,
) -> list[str]:
    """Name the contracting parties from the opening blocks.

    Falls back to ``DEFAULT_PARTIES`` when the call fails or the answer is
    not a list of names.
    """
    sample = "\n".join(b.text for b in blocks[:PARTY_SAMPLE_BLOCKS])
    prompt = build_party_detection_prompt(sample)
    try:
        raw = call_with_retry(
            lambda: generator.generate(prompt, PLAYBOOK_JSON_SYSTEM_PROMPT, LLM_TEMPERATURE),
            policy or RetryPolicy(), label="detect parties",
        )
        parties = _parse_json(raw, "party detection")
    except (TransientServiceError, PlaybookError) as e:
        logger.warning("Party detection failed: %s", e)
        return list(DEFAULT_PARTIES)

    if not isinstance(parties, list):
        logger.warning("Party detection returned %s, not a list", type(parties).__name__)
        return list(DEFAULT_PARTIES)
    names = []
    for p in parties:
        if isinstance(p, str) and p.strip() and p.strip() not in names:
            names.append(p.strip())
    return names or list(DEFAULT_PARTIES)


def generate_playbook_from_document(
    generator: TextGenerator,
    blocks: Sequence[Block],
    party: str,
    progress_callback: Optional[Callable[[str], None]] = None,
    policy: Optional[RetryPolicy] = None,
) -> Playbook:
    """Draft a playbook for ``party`` from the substantial sections of a contract."""
    def progress(msg):
        logger.info(msg)
        if progress_callback:
            progress_callback(msg)

    progress("Scanning document structure...")
    chunks = [b.serialized_text for b in create_batches(blocks)]
    selected = [c for c in chunks if len(c) > GENERATION_MIN_CHUNK_CHARS][:GENERATION_MAX_CHUNKS]
    document_text = "\n\n---\n\n".join(selected)[:SOURCE_TEXT_LIMIT]
    if not document_text:
        raise PlaybookError("Document has no sections long enough to draft a playbook from")

    progress(f"Extracting rules from {len(selected)} sections...")
    prompt = build_playbook_generation_prompt(party, list(DEFAULT_CATEGORIES), document_text)
    raw = call_with_retry(
        lambda: generator.generate(prompt, PLAYBOOK_JSON_SYSTEM_PROMPT, LLM_TEMPERATURE),
        policy or RetryPolicy(), label="generate playbook",
    )
    rules = _rules_from_model(_parse_json(raw, "playbook generation"))
    progress(f"Finalized {len(rules)} rules")
    return Playbook(name=f"{party} Playbook", party=party, rules=rules)


def parse_playbook_from_text(
    generator: TextGenerator,
    text: str,
    filename: str,
    policy: Optional[RetryPolicy] = None,
) -> Playbook:
    """Turn a free-text rulebook into a playbook."""
    prompt = build_playbook_parsing_prompt(list(DEFAULT_CATEGORIES), text[:SOURCE_TEXT_LIMIT])
    raw = call_with_retry(
        lambda: generator.generate(prompt, PLAYBOOK_JSON_SYSTEM_PROMPT, LLM_TEMPERATURE),
        policy or RetryPolicy(), label=f"parse {filename}",
    )
    data = _parse_json(raw, "playbook parsing")
    meta = data.get("metadata") if isinstance(data, dict) else None
    meta = meta if isinstance(meta, dict) else {}
    return Playbook(
        name=meta.get("name") or filename,
        party=meta.get("party") or "Unknown",
        rules=_rules_from_model(data),
    )
