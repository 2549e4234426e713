"""
Tests for the IR extractor
"""

from conftest import ir_record

from contract_redline.ir import (
    extract_fields, merge_rule_updates, normalize_risk, parse_clause_ir, parse_ir,
    parse_rule_updates, records_to_findings,
)
from contract_redline.models import PlaybookRule, RiskCriteria, RiskLevel


class TestParseClauseIR:
    """Tests for clause records."""

    def test_well_formed_record(self):
        """All fields come back verbatim for a complete record."""
        text = ir_record("para_2", risk="Red", issue="Low cap",
                         original="exceed three months", rewrite="exceed twelve months")
        [rec] = parse_clause_ir(text)
        assert rec.id == "para_2"
        assert not rec.recovered
        assert rec.fields["RISK"] == "Red"
        assert rec.fields["ISSUE"] == "Low cap"
        assert rec.fields["ORIGINAL"] == "exceed three months"
        assert rec.fields["SUGGESTED_REWRITE"] == "exceed twelve months"

    def test_records_in_source_order(self):
        """K well-formed records yield K records in order."""
        text = "Preamble chatter\n" + "".join(ir_record(f"p{i}") for i in range(5))
        assert [r.id for r in parse_clause_ir(text)] == ["p0", "p1", "p2", "p3", "p4"]

    def test_missing_id_dropped(self):
        """A record with no id is skipped; the rest survive."""
        text = "<<CLAUSE>>\n[RISK]\nRed\n<<END_CLAUSE>>\n" + ir_record("keep")
        assert [r.id for r in parse_clause_ir(text)] == ["keep"]

    def test_empty_id_dropped(self):
        """An empty id counts as missing."""
        text = '<<CLAUSE id="">>\n[RISK]\nRed\n<<END_CLAUSE>>\n'
        assert parse_clause_ir(text) == []

    def test_truncated_last_record_recovered(self):
        """A record cut off mid-stream is still returned, flagged as recovered."""
        text = ir_record("a") + '<<CLAUSE id="b">>\n[RISK]\nRed\n[ISSUE]\nUncapped'
        records = parse_clause_ir(text)
        assert [r.id for r in records] == ["a", "b"]
        assert not records[0].recovered
        assert records[1].recovered
        assert records[1].fields["ISSUE"] == "Uncapped"

    def test_missing_end_runs_to_next_start(self):
        """An unclosed record ends where the next one begins."""
        text = ir_record("a", issue="First", closed=False) + ir_record("b", issue="Second")
        records = parse_clause_ir(text)
        assert [r.id for r in records] == ["a", "b"]
        assert records[0].recovered
        assert records[0].fields["ISSUE"] == "First"
        assert "<<CLAUSE" not in records[0].fields["REASONING"]

    def test_mangled_end_marker(self):
        """A malformed end marker is cut from the last field."""
        text = '<<CLAUSE id="a">>\n[ISSUE]\nScope\n[REASONING]\nToo broad.\n<END_CLAUSE>>\n'
        [rec] = parse_clause_ir(text)
        assert rec.recovered
        assert rec.fields["REASONING"] == "Too broad."

    def test_trailing_fragment_removed(self):
        """A partial marker at the very end does not leak into the value."""
        text = '<<CLAUSE id="a">>\n[REASONING]\nToo broad.\n<<END_CLA'
        [rec] = parse_clause_ir(text)
        assert rec.fields["REASONING"] == "Too broad."

    def test_defaults_applied(self):
        """Missing fields get their defaults."""
        [rec] = parse_clause_ir('<<CLAUSE id="a">>\n<<END_CLAUSE>>')
        assert rec.fields["RISK"] == "yellow"
        assert rec.fields["ISSUE"] == "Review required"
        assert rec.fields["REASONING"] == "No reasoning provided."
        assert rec.fields["SUGGESTED_REWRITE"] == ""

    def test_empty_input(self):
        """No text, no records."""
        assert parse_clause_ir("") == []
        assert parse_clause_ir("Everything is compliant.") == []

    def test_single_quoted_and_bare_ids(self):
        """Ids may be single-quoted or bare."""
        text = "<<CLAUSE id='x1'>>\n<<END_CLAUSE>>\n<<CLAUSE id=x2>>\n<<END_CLAUSE>>"
        assert [r.id for r in parse_clause_ir(text)] == ["x1", "x2"]


class TestExtractFields:
    """Tests for extract_fields."""

    def test_label_only_at_line_start(self):
        """A bracketed word mid-line is part of the value."""
        body = "[REASONING]\nSee [ISSUE] above.\n[ISSUE]\nScope"
        values = extract_fields(body, ("ISSUE", "REASONING"))
        assert values["REASONING"] == "See [ISSUE] above."
        assert values["ISSUE"] == "Scope"

    def test_first_occurrence_wins(self):
        """A repeated label keeps its first value."""
        values = extract_fields("[RISK]\nRed\n[RISK]\nGreen", ("RISK",))
        assert values["RISK"] == "Red"

    def test_same_line_values(self):
        """Values may follow the label on the same line."""
        values = extract_fields("[TOPIC] New topic\n[PREFERRED] Cap at 12 months", None)
        assert values == {"TOPIC": "New topic", "PREFERRED": "Cap at 12 months"}


class TestFindings:
    """Tests for mapping clause records to findings."""

    def test_risk_normalisation(self):
        """Risk words map onto the three levels."""
        assert normalize_risk("Red") == RiskLevel.RED
        assert normalize_risk("HIGH risk") == RiskLevel.RED
        assert normalize_risk("green") == RiskLevel.GREEN
        assert normalize_risk("Low") == RiskLevel.GREEN
        assert normalize_risk("medium") == RiskLevel.YELLOW
        assert normalize_risk("") == RiskLevel.YELLOW

    def test_original_falls_back_to_block_text(self):
        """Without ORIGINAL the block's own text is used."""
        records = parse_clause_ir(ir_record("para_3", risk="Red", rewrite="Delaware law."))
        [finding] = records_to_findings(records, {"para_3": "Texas law."})
        assert finding.original_text == "Texas law."
        assert finding.suggested_text == "Delaware law."
        assert finding.risk_level == RiskLevel.RED
        assert finding.status == "open"

    def test_recovered_flag_carried(self):
        """Findings from recovered records say so."""
        records = parse_clause_ir(ir_record("a", closed=False))
        [finding] = records_to_findings(records)
        assert finding.recovered


class TestRuleUpdates:
    """Tests for update-flavour records on playbook rules."""

    def _rules(self):
        return [
            PlaybookRule(topic="Liability", preferred_position="Cap at 12 months.",
                         reasoning="Exposure.", rule_id="LIABILITY_CAP_01",
                         risk_criteria=RiskCriteria("ok", "meh", "bad")),
            PlaybookRule(topic="Law", preferred_position="Delaware.", rule_id="GOVERNING_LA_01"),
        ]

    def test_no_defaults_for_updates(self):
        """Absent fields stay absent in update records."""
        [rec] = parse_rule_updates('<<RULE id="R1">>\n[TOPIC] New\n<<END_RULE>>')
        assert rec.fields == {"TOPIC": "New"}

    def test_only_present_fields_change(self):
        """Fields the record leaves out keep their values."""
        text = '<<RULE id="LIABILITY_CAP_01">>\n[PREFERRED] Cap at 24 months.\n[RISK_RED] Uncapped.\n<<END_RULE>>'
        [rule] = merge_rule_updates(text, self._rules())
        assert rule.preferred_position == "Cap at 24 months."
        assert rule.topic == "Liability"
        assert rule.reasoning == "Exposure."
        assert rule.risk_criteria == RiskCriteria("ok", "meh", "Uncapped.")

    def test_unknown_id_skipped(self):
        """A record whose id matches no rule is ignored."""
        text = '<<RULE id="Liability">>\n[TOPIC] X\n<<END_RULE>>'
        assert merge_rule_updates(text, self._rules()) == []

    def test_generic_tag(self):
        """The parser works for any tag name."""
        records = parse_ir('<<NOTE id="n1">>\n[BODY] hi\n<<END_NOTE>>', tag="NOTE")
        assert records[0].fields == {"BODY": "hi"}
