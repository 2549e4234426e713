"""Parser for the delimited intermediate representation (IR) the model writes.

A record looks like::

    <<CLAUSE id="para_12">>
    [RISK]
    Red
    [ISSUE]
    Uncapped liability
    <<END_CLAUSE>>

Field labels are recognised only at the start of a line. There is no escaping
for ``<<`` or ``[LABEL]`` inside values: a value line that starts with a
recognised label will end the previous field early.
"""

import logging
import re
from dataclasses import replace
from typing import Iterable, Optional

from .models import Finding, IRRecord, PlaybookRule, RiskCriteria, RiskLevel

logger = logging.getLogger(__name__)

CLAUSE_TAG = "CLAUSE"
RULE_TAG = "RULE"

CLAUSE_FIELDS = ("RISK", "ISSUE", "ORIGINAL", "REASONING", "SUGGESTED_REWRITE")
CLAUSE_DEFAULTS = {
    "RISK": "yellow",
    "ISSUE": "Review required",
    "REASONING": "No reasoning provided.",
    "SUGGESTED_REWRITE": "",
}

RULE_FIELDS = (
    "TOPIC", "CATEGORY", "PREFERRED", "REASONING", "FALLBACK",
    "DRAFTING", "RISK_RED", "RISK_YELLOW", "RISK_GREEN",
)

_ID_RE = re.compile(r"""\bid\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))""", re.IGNORECASE)
_ANY_LABEL = r"[A-Z][A-Z0-9_]*"


def _start_re(tag: str) -> re.Pattern:
    return re.compile(rf"<<\s*{re.escape(tag)}\b(?P<attrs>[^<>]*)>>")


def _end_re(tag: str) -> re.Pattern:
    return re.compile(rf"<<\s*END_{re.escape(tag)}\s*>>")


def _broken_end_re(tag: str) -> re.Pattern:
    # "<END_CLAUSE>>", "<<END_CLAUSE>", "<</END_CLAUSE", ...
    return re.compile(rf"<{{1,2}}\s*/?\s*END_{re.escape(tag)}\s*>{{0,2}}")


# a marker cut off by the end of the stream: "<<", "<<END_CLA", "<<END_CLAUSE>"
_TRAILING_FRAGMENT_RE = re.compile(r"<{1,2}\s*/?\s*[A-Z_]*\s*>?\s*$")


def _label_re(fields: Optional[Iterable[str]]) -> re.Pattern:
    names = "|".join(re.escape(f) for f in fields) if fields else _ANY_LABEL
    return re.compile(rf"^[ \t]*\[(?P<name>{names})\]", re.MULTILINE)


def _record_id(attrs: str) -> str:
    m = _ID_RE.search(attrs)
    if not m:
        return ""
    return next(g for g in m.groups() if g is not None).strip()


def extract_fields(body: str, fields: Optional[Iterable[str]] = None) -> dict[str, str]:
    """Split a record body into ``{label: value}``.

    A value runs from its label to the next recognised label or the end of
    the body. Empty values are left out; when a label repeats, the first
    occurrence wins.
    """
    label_re = _label_re(fields)
    matches = list(label_re.finditer(body))
    values: dict[str, str] = {}
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        name = m.group("name").upper()
        value = body[m.end():end].strip()
        if value and name not in values:
            values[name] = value
    return values


def parse_ir(
    text: str,
    tag: str = CLAUSE_TAG,
    fields: Optional[Iterable[str]] = None,
    defaults: Optional[dict[str, str]] = None,
) -> list[IRRecord]:
    """Extract every ``tag`` record from generated text, in source order.

    Records without an id are dropped. A record whose end marker is missing
    or mangled runs to the next start marker (or the end of the text) and
    comes back with ``recovered=True``. ``defaults`` fill fields the record
    did not carry; pass ``None`` for update records so absent fields stay
    absent.
    """
    if not text:
        return []

    fields = tuple(fields) if fields else None
    starts = list(_start_re(tag).finditer(text))
    end_re = _end_re(tag)
    broken_end_re = _broken_end_re(tag)
    records: list[IRRecord] = []

    for i, start in enumerate(starts):
        limit = starts[i + 1].start() if i + 1 < len(starts) else len(text)
        record_id = _record_id(start.group("attrs"))
        if not record_id:
            logger.warning("Skipping %s record at offset %d: missing id", tag, start.start())
            continue

        end = end_re.search(text, start.end(), limit)
        if end:
            body = text[start.end():end.start()]
            recovered = False
        else:
            body = text[start.end():limit]
            broken = broken_end_re.search(body)
            if broken:
                body = body[:broken.start()]
            else:
                body = _TRAILING_FRAGMENT_RE.sub("", body)
            recovered = True
            logger.warning("Recovered %s record %s without a valid end marker", tag, record_id)

        values = extract_fields(body, fields)
        if defaults:
            for key, default in defaults.items():
                values.setdefault(key, default)
        records.append(IRRecord(id=record_id, fields=values, recovered=recovered))

    logger.debug("Parsed %d %s records from %d chars", len(records), tag, len(text))
    return records


# ---------------------------------------------------------------------------
# Clause records -> findings
# ---------------------------------------------------------------------------

def normalize_risk(raw: str) -> RiskLevel:
    low = (raw or "").strip().lower()
    if low.startswith(("red", "high")):
        return RiskLevel.RED
    if low.startswith(("green", "low")):
        return RiskLevel.GREEN
    return RiskLevel.YELLOW


def parse_clause_ir(text: str) -> list[IRRecord]:
    return parse_ir(text, CLAUSE_TAG, CLAUSE_FIELDS, CLAUSE_DEFAULTS)


def records_to_findings(
    records: Iterable[IRRecord],
    block_texts: Optional[dict[str, str]] = None,
) -> list[Finding]:
    """Map clause records to findings.

    ``ORIGINAL`` falls back to the referenced block's text when the model
    left it out.
    """
    block_texts = block_texts or {}
    findings = []
    for rec in records:
        f = rec.fields
        original = f.get("ORIGINAL") or block_texts.get(rec.id, "")
        findings.append(Finding(
            target_id=rec.id,
            risk_level=normalize_risk(f.get("RISK", CLAUSE_DEFAULTS["RISK"])),
            issue_type=f.get("ISSUE", CLAUSE_DEFAULTS["ISSUE"]),
            reasoning=f.get("REASONING", CLAUSE_DEFAULTS["REASONING"]),
            suggested_text=f.get("SUGGESTED_REWRITE", CLAUSE_DEFAULTS["SUGGESTED_REWRITE"]),
            original_text=original,
            recovered=rec.recovered,
        ))
    return findings


# ---------------------------------------------------------------------------
# Rule update records -> playbook rules
# ---------------------------------------------------------------------------

def parse_rule_updates(text: str) -> list[IRRecord]:
    return parse_ir(text, RULE_TAG, RULE_FIELDS, defaults=None)


def apply_rule_update(rule: PlaybookRule, record: IRRecord) -> PlaybookRule:
    """Copy ``rule`` with only the fields present in ``record`` changed."""
    f = record.fields
    changes = {}
    if "TOPIC" in f:
        changes["topic"] = f["TOPIC"]
    if "CATEGORY" in f:
        changes["category"] = f["CATEGORY"]
    if "PREFERRED" in f:
        changes["preferred_position"] = f["PREFERRED"]
    if "REASONING" in f:
        changes["reasoning"] = f["REASONING"]
    if "FALLBACK" in f:
        changes["fallback_position"] = f["FALLBACK"]
    if "DRAFTING" in f:
        changes["suggested_drafting"] = f["DRAFTING"]
    if any(k in f for k in ("RISK_RED", "RISK_YELLOW", "RISK_GREEN")):
        rc = rule.risk_criteria
        changes["risk_criteria"] = RiskCriteria(
            green=f.get("RISK_GREEN", rc.green),
            yellow=f.get("RISK_YELLOW", rc.yellow),
            red=f.get("RISK_RED", rc.red),
        )
    return replace(rule, **changes)


def merge_rule_updates(text: str, rules: list[PlaybookRule]) -> list[PlaybookRule]:
    """Return the rules changed by the update records in ``text``, in source order.

    Records are matched strictly by ``rule_id``; unknown ids are skipped.
    """
    by_id = {r.rule_id: r for r in rules}
    changed = []
    for rec in parse_rule_updates(text):
        original = by_id.get(rec.id)
        if original is None:
            logger.warning(
                "Skipping: original rule not found for ID: %s. Ensure the model uses rule_id, not topic.",
                rec.id,
            )
            continue
        changed.append(apply_rule_update(original, rec))
    return changed
