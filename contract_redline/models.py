"""Data classes for the review pipeline."""

from dataclasses import dataclass, field
from enum import Enum


class RiskLevel(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class BlockStatus(str, Enum):
    ORIGINAL = "original"
    PENDING = "pending"
    RESOLVED = "resolved"


class DiffOp(str, Enum):
    EQUAL = "equal"
    DELETE = "delete"
    INSERT = "insert"


@dataclass(frozen=True)
class DiffSegment:
    op: DiffOp
    token: str


@dataclass
class Block:
    """A reviewable unit of content, referenced by id and never owned here."""
    id: str
    text: str = ""          # extracted text at the time the block was read
    risk: str = ""
    status: BlockStatus = BlockStatus.ORIGINAL


@dataclass
class IRRecord:
    id: str
    fields: dict[str, str] = field(default_factory=dict)
    recovered: bool = False  # salvaged from a missing/broken end marker


@dataclass(frozen=True)
class BatchJob:
    blocks: tuple[Block, ...]
    serialized_text: str

    @property
    def block_ids(self) -> list[str]:
        return [b.id for b in self.blocks]


@dataclass
class Finding:
    target_id: str
    risk_level: RiskLevel
    issue_type: str
    reasoning: str
    suggested_text: str
    original_text: str
    status: str = "open"     # "open", "resolved" or "ignored"
    recovered: bool = False

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "risk_level": self.risk_level.value,
            "issue_type": self.issue_type,
            "reasoning": self.reasoning,
            "suggested_text": self.suggested_text,
            "original_text": self.original_text,
            "status": self.status,
            "recovered": self.recovered,
        }


@dataclass
class RiskCriteria:
    green: str = ""
    yellow: str = ""
    red: str = ""


@dataclass
class PlaybookRule:
    topic: str
    preferred_position: str
    reasoning: str = ""
    rule_id: str = ""
    category: str = ""
    subcategory: str = ""
    synonyms: list[str] = field(default_factory=list)
    signal_keywords: list[str] = field(default_factory=list)
    clause_number: str = ""
    fallback_position: str = ""
    suggested_drafting: str = ""
    risk_criteria: RiskCriteria = field(default_factory=RiskCriteria)


@dataclass
class Playbook:
    name: str
    party: str
    rules: list[PlaybookRule] = field(default_factory=list)
