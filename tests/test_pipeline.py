"""
Tests for review orchestration and accepting findings
"""

from conftest import SAMPLE_CLAUSES, ScriptedGenerator, ir_record

from contract_redline.config import default_config
from contract_redline.doctree import EditError, ElementNode, MemoryDocument, TextNode
from contract_redline.models import BlockStatus, Finding, RiskLevel
from contract_redline.pipeline import (
    ReviewSession, accept_finding, ignore_finding, review_clause, run_review,
)

NEW_CAP = ("In no event shall Provider's liability arising out of or related to this Agreement "
           "exceed the total amount paid by Customer hereunder in the preceding twelve (12) months.")


def review_response(prompt):
    return (
        ir_record("para_2", risk="Red", issue="Cap too low", rewrite=NEW_CAP)
        + ir_record("para_1", risk="Yellow", issue="One-sided indemnity")
    )


def make_session(doc, script=review_response, **config):
    config.setdefault("retry_base_delay", 0.0)
    return ReviewSession(doc, ScriptedGenerator(script), default_config(**config))


class LockedDocument(MemoryDocument):
    """Engine that refuses every content edit."""

    def commit(self, tx):
        if any(step[0] != "status" for step in tx.steps):
            raise EditError("document is read-only")
        super().commit(tx)


class TestRunReview:
    """Tests for run_review."""

    def test_findings_in_document_order(self, sample_document, sample_playbook):
        """Findings come back sorted by block position."""
        session = make_session(sample_document)
        result = run_review(session, sample_playbook)
        assert [f.target_id for f in result.findings] == ["para_1", "para_2"]
        assert result.findings[1].risk_level == RiskLevel.RED
        assert result.findings[0].original_text == SAMPLE_CLAUSES["para_1"]

    def test_small_document_one_call(self, sample_document, sample_playbook):
        """A short contract is reviewed with a single model call."""
        session = make_session(sample_document)
        result = run_review(session, sample_playbook)
        assert session.generator.calls == 1
        assert result.metadata["llm_calls"] == 1
        assert result.metadata["batches"] == 1
        assert result.metadata["blocks"] == 4

    def test_party_defaults_to_playbook(self, sample_document, sample_playbook):
        """Without an explicit party the playbook's is used."""
        session = make_session(sample_document)
        result = run_review(session, sample_playbook)
        assert result.metadata["party"] == "Provider"
        assert "Reviewing for Provider" in session.generator.prompts[0]

    def test_findings_stored_on_session(self, sample_document, sample_playbook):
        """Merged findings are kept on the session by block id."""
        session = make_session(sample_document)
        run_review(session, sample_playbook)
        assert set(session.findings) == {"para_1", "para_2"}

    def test_progress_reported(self, sample_document, sample_playbook):
        """The callback sees every step."""
        messages = []
        session = make_session(sample_document)
        run_review(session, sample_playbook, progress_callback=lambda s, t, m: messages.append(m))
        for n in range(1, 5):
            assert any(m.startswith(f"[Step {n}/4]") for m in messages)

    def test_reset_during_run_discards(self, sample_document, sample_playbook):
        """Resetting the session mid-run drops that run's findings."""
        holder = {}

        def respond(prompt):
            holder["session"].reset()
            return review_response(prompt)

        session = make_session(sample_document, script=respond)
        holder["session"] = session
        result = run_review(session, sample_playbook)
        assert result.discarded
        assert result.findings == []
        assert session.findings == {}

    def test_failed_batch_reported(self, sample_document, sample_playbook):
        """A run with a failing batch still completes and says so."""
        session = make_session(sample_document, script=lambda p: ConnectionError("down"))
        result = run_review(session, sample_playbook)
        assert result.findings == []
        assert result.metadata["batches_failed"] == 1
        assert result.warnings


class TestAcceptFinding:
    """Tests for accept_finding and ignore_finding."""

    def test_accept_patches_document(self, sample_document, sample_playbook):
        """Accepting a rewrite changes the block text and marks it pending."""
        session = make_session(sample_document)
        finding = run_review(session, sample_playbook).findings[1]
        result = accept_finding(session, finding)
        assert result.applied
        assert result.warnings == []
        assert sample_document.text_of("para_2") == NEW_CAP
        assert sample_document.locate_block_by_id("para_2").status == BlockStatus.PENDING
        assert finding.status == "resolved"

    def test_accept_with_edited_text(self, sample_document, sample_playbook):
        """The caller may override the suggested text."""
        session = make_session(sample_document)
        finding = run_review(session, sample_playbook).findings[1]
        accept_finding(session, finding, text="Liability is capped at fees paid.")
        assert sample_document.text_of("para_2") == "Liability is capped at fees paid."

    def test_accept_without_rewrite(self, sample_document, sample_playbook):
        """A finding with no rewrite cannot be applied."""
        session = make_session(sample_document)
        finding = run_review(session, sample_playbook).findings[0]
        result = accept_finding(session, finding)
        assert not result.applied
        assert finding.status == "open"
        assert sample_document.text_of("para_1") == SAMPLE_CLAUSES["para_1"]

    def test_accept_recovered_finding_warns(self, sample_document, sample_playbook):
        """Rewrites from truncated records are applied with a warning."""
        response = ir_record("para_3", rewrite="Delaware law governs.", closed=False)
        session = make_session(sample_document, script=[response])
        [finding] = run_review(session, sample_playbook).findings
        result = accept_finding(session, finding)
        assert result.applied
        assert any("recovered" in w for w in result.warnings)

    def test_ignore(self, sample_document, sample_playbook):
        """Ignoring only changes the finding's status."""
        session = make_session(sample_document)
        finding = run_review(session, sample_playbook).findings[0]
        ignore_finding(finding)
        assert finding.status == "ignored"
        assert sample_document.text_of("para_1") == SAMPLE_CLAUSES["para_1"]

    def test_accept_rewrite_across_formatting(self):
        """A rewrite that removes a formatted run still applies."""
        doc = MemoryDocument()
        run = ElementNode("run", (TextNode("unlimited"),))
        doc.add_block([ElementNode("paragraph", (TextNode("Liability is "), run, TextNode(" today.")))],
                      block_id="c1")
        session = make_session(doc)
        finding = Finding("c1", RiskLevel.RED, "Cap", "Uncapped.", "Liability is today.", "")
        result = accept_finding(session, finding)
        assert result.applied
        assert doc.text_of("c1") == "Liability is today."
        assert finding.status == "resolved"

    def test_accept_refused_by_editor(self):
        """An editor refusal is returned and the finding stays open."""
        doc = LockedDocument()
        doc.add_block([ElementNode("paragraph", (TextNode(SAMPLE_CLAUSES["para_2"]),))],
                      block_id="para_2")
        session = make_session(doc)
        finding = Finding("para_2", RiskLevel.RED, "Cap too low", "Short.", NEW_CAP, "")
        result = accept_finding(session, finding)
        assert not result.applied
        assert finding.status == "open"
        assert doc.text_of("para_2") == SAMPLE_CLAUSES["para_2"]


class TestReviewClause:
    """Tests for review_clause."""

    def test_prompt_carries_neighbours(self, sample_document, sample_playbook):
        """The target is tagged and its neighbours are sent as context."""
        session = make_session(sample_document, script=[ir_record("para_2", rewrite=NEW_CAP)])
        review_clause(session, sample_playbook, "para_2")
        prompt = session.generator.prompts[0]
        assert '<<CLAUSE id="para_2">>' in prompt
        assert SAMPLE_CLAUSES["para_1"] in prompt
        assert SAMPLE_CLAUSES["para_3"] in prompt
        assert '<<CLAUSE id="para_1">>' not in prompt

    def test_only_target_kept(self, sample_document, sample_playbook):
        """Records for other blocks are ignored and the session finding is replaced."""
        response = ir_record("para_2", issue="Cap too low", rewrite=NEW_CAP) + ir_record("para_3")
        session = make_session(sample_document, script=[response])
        [finding] = review_clause(session, sample_playbook, "para_2")
        assert finding.target_id == "para_2"
        assert finding.original_text == SAMPLE_CLAUSES["para_2"]
        assert session.findings == {"para_2": finding}

    def test_clean_result_clears_finding(self, sample_document, sample_playbook):
        """A compliant re-review drops the block's earlier finding."""
        session = make_session(sample_document, script=[review_response(""), ""])
        run_review(session, sample_playbook)
        assert "para_2" in session.findings
        assert review_clause(session, sample_playbook, "para_2") == []
        assert "para_2" not in session.findings

    def test_unknown_block(self, sample_document, sample_playbook):
        """An unknown id makes no call."""
        session = make_session(sample_document)
        assert review_clause(session, sample_playbook, "missing") == []
        assert session.generator.calls == 0
