"""Centralized prompts for the contract redline reviewer.

All model prompts live here so they can be reviewed, versioned, and tuned in one place.
"""

import json
from dataclasses import asdict

from .models import Playbook, PlaybookRule


# ---------------------------------------------------------------------------
# Clause review: system instruction (IR output)
# ---------------------------------------------------------------------------

REVIEW_SYSTEM_PROMPT = """You are a senior legal contract reviewer assistant.
Your output must be in a custom INTERMEDIATE REPRESENTATION (IR) format.

STRICT FORMAT RULES:
1. For each NON-COMPLIANT clause, output a block wrapped in <<CLAUSE id="...">> and <<END_CLAUSE>> tags.
2. Inside the block, use [RISK], [ISSUE], [ORIGINAL], [REASONING], and [SUGGESTED_REWRITE] headers, each at the start of its own line.
3. Do NOT use JSON. Do NOT use Markdown code blocks.
4. Output strictly natural language inside the sections.
5. If a clause is compliant, do NOT output anything for it.
6. CRITICAL: Analyze EVERY clause provided in the input text segment. Do not summarize, skip, or group clauses.
7. Ensure every <<CLAUSE>> tag has a matching <<END_CLAUSE>>.
8. Use the id from the input <<CLAUSE id="...">> tag exactly as given.

Example Output:
<<CLAUSE id="para_123">>
[RISK]
Red
[ISSUE]
Uncapped Liability
[ORIGINAL]
The Provider's liability shall be unlimited.
[REASONING]
This violates the playbook rule requiring a liability cap of 12 months fees.
[SUGGESTED_REWRITE]
The Provider's liability shall not exceed the fees paid in the preceding 12 months.
<<END_CLAUSE>>
"""


def format_rules(rules: list[PlaybookRule]) -> str:
    return "\n".join(
        f"Rule [{r.topic}]:\n- Preferred: {r.preferred_position}\n- Red Flag: {r.risk_criteria.red}\n"
        for r in rules
    )


def build_batch_prompt(
    segment: str,
    rules: list[PlaybookRule],
    playbook: Playbook,
    party: str,
    extra_instruction: str = "",
) -> str:
    """User message for one batch: review context, pre-filtered rules, and the segment."""
    prompt = f"""REVIEW CONTEXT:
Role: Reviewing for {party}.
Playbook Name: {playbook.name}

RELEVANT PLAYBOOK RULES (pre-filtered for this section):
{format_rules(rules)}
DOCUMENT SEGMENT:
{segment}""".strip()
    if extra_instruction:
        prompt += f"\n\nINSTRUCTION: {extra_instruction}"
    return prompt


# ---------------------------------------------------------------------------
# Playbook refinement: system instruction (IR update records)
# ---------------------------------------------------------------------------

REFINEMENT_SYSTEM_PROMPT = """You are an expert legal playbook architect.
Refine the contract playbook rules based on the user's instruction.

Output Format:
For each rule you modify, output a block in this strict format:

<<RULE id="RULE_ID">>
[TOPIC] Updated Topic
[CATEGORY] Updated Category
[PREFERRED] Updated Preferred Position
[REASONING] Updated Reasoning
[FALLBACK] Updated Fallback Position
[DRAFTING] Updated Suggested Drafting
[RISK_RED] Updated Red Flag Criteria
[RISK_YELLOW] Updated Yellow Flag Criteria
[RISK_GREEN] Updated Green Flag Criteria
<<END_RULE>>

Instructions:
1. Only include rules that require changes.
2. CRITICAL: You MUST use the 'rule_id' provided in the context as the identifier in the <<RULE id="...">> tag.
3. NEVER use the 'topic' text as the id.
   - Incorrect: <<RULE id="Confidentiality">>
   - Correct:   <<RULE id="CONFIDENTIALITY_01">>
4. Only output the fields you changed.
5. Do NOT output Markdown code blocks or JSON.
"""


def _rule_context(rule: PlaybookRule) -> dict:
    data = asdict(rule)
    for key in ("synonyms", "signal_keywords", "clause_number", "subcategory"):
        data.pop(key, None)
    return data


def build_rule_refinement_prompt(rule: PlaybookRule, instruction: str) -> str:
    return f"""Refine this single playbook rule based on the instruction: "{instruction}".

CURRENT RULE:
{json.dumps(_rule_context(rule), indent=2)}"""


def build_global_refinement_prompt(rules: list[PlaybookRule], instruction: str) -> str:
    return f"""I have a contract playbook with {len(rules)} rules.

INSTRUCTION: "{instruction}"

Analyze the rules and apply the instruction.
Output ONLY the modified rules in the required IR format.

CURRENT RULES (Use 'rule_id' as key):
{json.dumps([_rule_context(r) for r in rules], indent=2)}"""


# ---------------------------------------------------------------------------
# Party detection and playbook generation (JSON output)
# ---------------------------------------------------------------------------

PLAYBOOK_JSON_SYSTEM_PROMPT = """You are an expert legal playbook architect.
Respond with valid JSON only. Do NOT wrap the JSON in Markdown code blocks."""


def build_party_detection_prompt(sample: str) -> str:
    return ('Identify the contracting parties (e.g. "Customer", "Provider", "Buyer", "Seller") '
            f"from this text. Return a JSON array of strings.\n\n{sample}")


def _category_guidance(categories: list[str]) -> str:
    return f"""CATEGORY TAXONOMY:
Use these DEFAULT CATEGORIES when applicable:
{", ".join(categories)}

You may create NEW categories ONLY if:
1. The clause does NOT fit any existing default category (no overlap)
2. A new category would better capture the essence of the clause than forcing it into a default
3. The new category follows the naming convention (UPPERCASE_WITH_UNDERSCORES)"""


def build_playbook_generation_prompt(party: str, categories: list[str], document_text: str) -> str:
    return f"""Extract a contract playbook from this document for the "{party}".

{_category_guidance(categories)}

For each rule, provide:
- topic: Canonical name (e.g., "Liability Cap")
- category: Use a default category OR create a new one following the criteria above
- subcategory: Optional refinement (e.g., "CAP", "EXCLUSION")
- preferred_position: What {party} wants
- reasoning: Business/legal justification
- fallback_position: Acceptable alternative
- suggested_drafting: The EXACT clause text from the DOCUMENT below that the rule is based on.
  Each clause is marked with <<CLAUSE id="...">> tags. Combine neighbouring clauses verbatim
  if the rule spans them. Make only the minimal edits needed to match preferred_position.
- risk_criteria: {{"red": ..., "yellow": ..., "green": ...}}

Return JSON with structure: {{"metadata": {{"name": ..., "party": ...}}, "rules": [...]}}

DOCUMENT:
{document_text}"""


def build_playbook_parsing_prompt(categories: list[str], text: str) -> str:
    return f"""Convert this text into a structured JSON Playbook.

{_category_guidance(categories)}

For each rule, provide topic, category, subcategory, preferred_position, reasoning,
fallback_position, suggested_drafting and risk_criteria ({{"red", "yellow", "green"}}).
Output JSON matching: {{"metadata": {{"name": ..., "party": ...}}, "rules": [...]}}

TEXT:
{text}"""
