"""Keyword scoring of text against playbook rules, and rule clean-up.

Runs locally with no model calls. Used before dispatch to skip batches that
touch no playbook topic and to send only the rules that matter.
"""

import re
from dataclasses import dataclass, field, replace

from .models import PlaybookRule, RiskCriteria

DEFAULT_CATEGORIES = {
    "LIABILITY": ["CAP", "EXCLUSION", "LIMITATION", "INSURANCE"],
    "INDEMNITY": ["SCOPE", "PROCEDURE", "CARVEOUTS", "MUTUAL"],
    "CONFIDENTIALITY": ["DEFINITION", "OBLIGATIONS", "TERM", "EXCEPTIONS"],
    "TERMINATION": ["FOR_CAUSE", "FOR_CONVENIENCE", "EFFECTS", "SURVIVAL"],
    "IP": ["OWNERSHIP", "LICENSE", "BACKGROUND", "IMPROVEMENTS"],
    "PAYMENT": ["TERMS", "INVOICING", "LATE_FEES", "TAXES"],
    "GOVERNING_LAW": ["JURISDICTION", "VENUE", "CHOICE_OF_LAW"],
    "DISPUTE": ["ARBITRATION", "MEDIATION", "LITIGATION", "ESCALATION"],
    "DEFINITIONS": ["KEY_TERMS", "SERVICES", "DELIVERABLES"],
    "BOILERPLATE": ["ASSIGNMENT", "NOTICES", "FORCE_MAJEURE", "AMENDMENT", "ENTIRE_AGREEMENT"],
}

# substring -> canonical category, checked in order
_CATEGORY_ALIASES = [
    ("COMMERCIAL", "PAYMENT"),
    ("LEGAL", "GENERAL"),
    ("SCOPE", "DEFINITIONS"),
    ("LIMITATION OF LIABILITY", "LIABILITY"),
    ("INTELLECTUAL PROPERTY", "IP"),
    ("WARRANTY", "GENERAL"),
    ("PRIVACY", "CONFIDENTIALITY"),
    ("GDPR", "CONFIDENTIALITY"),
    ("TERM", "TERMINATION"),
    ("NDA", "CONFIDENTIALITY"),
    ("NONDISCLOSURE", "CONFIDENTIALITY"),
]

_STOPWORDS = {"this", "that", "with", "from", "shall", "will", "must"}

KEYWORD_WEIGHT = 2
SYNONYM_WEIGHT = 3


def normalize_category(raw: str) -> str:
    upper = (raw or "").upper().strip()
    if upper in DEFAULT_CATEGORIES:
        return upper
    for pattern, category in _CATEGORY_ALIASES:
        if pattern in upper:
            return category
    # keep reasonable custom categories ("CLINICAL_TRIALS")
    if 2 < len(upper) < 30 and re.fullmatch(r"[A-Z_]+", upper):
        return upper
    return "GENERAL"


def generate_rule_id(category: str, subcategory: str, index: int) -> str:
    cat = re.sub(r"\s+", "_", (category or "GENERAL").upper())[:12]
    sub = ""
    if subcategory:
        sub = "_" + re.sub(r"\s+", "_", subcategory.upper())[:8]
    return f"{cat}{sub}_{index:02d}"


def post_process_rules(rules: list[PlaybookRule]) -> list[PlaybookRule]:
    """Normalise categories, assign semantic ids, and fill in missing keywords/criteria."""
    counters: dict[str, int] = {}
    processed = []
    for rule in rules:
        category = normalize_category(rule.category or "GENERAL")
        counters[category] = counters.get(category, 0) + 1
        rule_id = generate_rule_id(category, rule.subcategory, counters[category])

        synonyms = list(rule.synonyms)
        if not synonyms and rule.topic:
            for s in (rule.topic, rule.topic.lower(), re.sub(r"\s+", " ", rule.topic.lower())):
                if s not in synonyms:
                    synonyms.append(s)

        keywords = list(rule.signal_keywords)
        if not keywords:
            words = re.findall(r"\b[a-z]{4,}\b", f"{rule.topic} {rule.preferred_position}".lower())
            for w in words:
                if w not in _STOPWORDS and w not in keywords:
                    keywords.append(w)
            keywords = keywords[:5]

        rc = rule.risk_criteria
        criteria = RiskCriteria(
            green=rc.green or "Clause meets preferred position",
            yellow=rc.yellow or "Clause exists but needs negotiation",
            red=rc.red or "Clause is missing or clearly adverse",
        )
        processed.append(replace(
            rule,
            rule_id=rule_id,
            category=category,
            synonyms=synonyms,
            signal_keywords=keywords,
            risk_criteria=criteria,
        ))
    return processed


@dataclass
class CategoryScore:
    category: str
    score: int
    rules: list[PlaybookRule] = field(default_factory=list)


def classify_text(text: str, rules: list[PlaybookRule], top: int = 5) -> list[CategoryScore]:
    """Score categories by keyword (2 pts) and synonym (3 pts) hits, best first."""
    low = text.lower()
    scores: dict[str, CategoryScore] = {}
    for rule in rules:
        score = sum(KEYWORD_WEIGHT for kw in rule.signal_keywords if kw and kw.lower() in low)
        score += sum(SYNONYM_WEIGHT for syn in rule.synonyms if syn and syn.lower() in low)
        if score > 0:
            category = normalize_category(rule.category or "GENERAL")
            entry = scores.setdefault(category, CategoryScore(category, 0))
            entry.rules.append(rule)
            entry.score += score
    ranked = sorted(scores.values(), key=lambda c: -c.score)
    return ranked[:top]


def relevance(text: str, rules: list[PlaybookRule]) -> tuple[int, list[PlaybookRule]]:
    """Best category score for ``text`` and the rules behind the top categories."""
    ranked = classify_text(text, rules)
    if not ranked:
        return 0, []
    return ranked[0].score, [r for c in ranked for r in c.rules]
