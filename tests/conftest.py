"""
Pytest configuration and fixtures
"""

import sys
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator, Union

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from contract_redline.doctree import ElementNode, MemoryDocument, TextNode  # noqa: E402
from contract_redline.llm import TextGenerator  # noqa: E402
from contract_redline.playbook import playbook_from_dict  # noqa: E402


SAMPLE_CLAUSES = {
    "para_1": "The Customer shall indemnify, defend and hold harmless the Provider against "
              "any and all claims, losses, and damages arising out of Customer's use of the Services.",
    "para_2": "In no event shall Provider's liability arising out of or related to this Agreement "
              "exceed the total amount paid by Customer hereunder in the preceding three (3) months.",
    "para_3": "This Agreement shall be governed by the laws of the State of Texas.",
    "para_4": "Notices shall be sent by registered mail to the addresses listed above.",
}

SAMPLE_PLAYBOOK = {
    "metadata": {"name": "Standard SaaS Agreement", "party": "Provider"},
    "rules": [
        {
            "category": "INDEMNITY",
            "subcategory": "SCOPE",
            "topic": "Indemnification",
            "synonyms": ["hold harmless", "indemnity"],
            "signal_keywords": ["indemnify", "claims", "damages", "losses"],
            "preferred_position": "Mutual indemnification for IP infringement and gross negligence.",
            "risk_criteria": {"red": "Unilateral or uncapped."},
        },
        {
            "category": "LIABILITY",
            "subcategory": "CAP",
            "topic": "Limitation of Liability",
            "synonyms": ["aggregate liability", "maximum liability"],
            "signal_keywords": ["liability", "exceed", "paid"],
            "preferred_position": "Cap at 12 months fees paid. Mutual.",
            "risk_criteria": {"red": "Unlimited liability or a cap under 6 months."},
        },
        {
            "category": "GOVERNING_LAW",
            "subcategory": "JURISDICTION",
            "topic": "Governing Law",
            "synonyms": ["choice of law"],
            "signal_keywords": ["laws of", "governed by"],
            "preferred_position": "State of Delaware or New York.",
        },
    ],
}


def ir_record(block_id: str, risk: str = "Red", issue: str = "Issue",
              original: str = "", rewrite: str = "", reasoning: str = "Because.",
              closed: bool = True) -> str:
    """One clause record in the model's IR."""
    parts = [f'<<CLAUSE id="{block_id}">>', "[RISK]", risk, "[ISSUE]", issue]
    if original:
        parts += ["[ORIGINAL]", original]
    parts += ["[REASONING]", reasoning]
    if rewrite:
        parts += ["[SUGGESTED_REWRITE]", rewrite]
    if closed:
        parts.append("<<END_CLAUSE>>")
    return "\n".join(parts) + "\n"


Response = Union[str, Exception]


class ScriptedGenerator(TextGenerator):
    """Stand-in for the model.

    ``script`` is either a list of responses handed out in call order or a
    callable that maps the prompt to a response. A response that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, script: Union[list, Callable[[str], Response]] = None):
        self.script = script if script is not None else []
        self.calls = 0
        self.prompts: list[str] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()
        self.delay = 0.0

    def generate(self, prompt: str, system_instruction: str, temperature: float) -> str:
        with self._lock:
            self.calls += 1
            self.prompts.append(prompt)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            if callable(self.script):
                response = None
            else:
                response = self.script.pop(0) if self.script else ""
        try:
            if self.delay:
                threading.Event().wait(self.delay)
            if callable(self.script):
                response = self.script(prompt)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            with self._lock:
                self._in_flight -= 1


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_document() -> MemoryDocument:
    """Four single-paragraph blocks with fixed ids."""
    doc = MemoryDocument()
    for block_id, text in SAMPLE_CLAUSES.items():
        doc.add_block([ElementNode("paragraph", (TextNode(text),))], block_id=block_id)
    return doc


@pytest.fixture
def sample_playbook():
    return playbook_from_dict(SAMPLE_PLAYBOOK)


@pytest.fixture
def no_sleep():
    """Records requested backoff delays instead of sleeping."""
    delays: list[float] = []
    return delays.append, delays
