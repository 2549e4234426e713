"""Configuration constants, paths, and thresholds."""

import os
from dataclasses import dataclass
from pathlib import Path

# ---------------------------------------------------------------------------
# Load .env if present
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent.parent
_env_path = BASE_DIR / ".env"
if _env_path.exists():
    for _line in _env_path.read_text().splitlines():
        _line = _line.strip()
        if _line and not _line.startswith("#") and "=" in _line:
            _k, _, _v = _line.partition("=")
            os.environ.setdefault(_k.strip(), _v.strip().strip("\"'"))

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
PLAYBOOK_PATH = BASE_DIR / "playbook.json"
OUTPUT_DIR = BASE_DIR / "output"
OUTPUT_PATH = OUTPUT_DIR / "findings.json"

# ---------------------------------------------------------------------------
# LLM Settings
# ---------------------------------------------------------------------------
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
LLM_MODEL = os.environ.get("LLM_MODEL", "claude-sonnet-4-20250514")
LLM_TEMPERATURE = 0.1
LLM_MAX_TOKENS = 8192
REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", "120"))

# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------
MAX_CHARS_PER_BATCH = 40_000
# (average block length upper bound, max blocks per batch); anything longer
# falls through to LARGE_BLOCK_LIMIT
BLOCK_LIMIT_TIERS = ((200, 50), (500, 30))
LARGE_BLOCK_LIMIT = 18

# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
CONCURRENCY_LIMIT = int(os.environ.get("CONCURRENCY_LIMIT", "3"))
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
RETRY_MAX_DELAY = 30.0
RELEVANCE_THRESHOLD = 4
MAX_RULES_PER_BATCH = 5
FINGERPRINT_PREFIX = 100

# ---------------------------------------------------------------------------
# Playbook generation
# ---------------------------------------------------------------------------
DEFAULT_PARTIES = ("Provider", "Customer")
PARTY_SAMPLE_BLOCKS = 50
GENERATION_MIN_CHUNK_CHARS = 500
GENERATION_MAX_CHUNKS = 8
SOURCE_TEXT_LIMIT = 30_000


@dataclass(frozen=True)
class PipelineConfig:
    """Per-run settings. Built once and never changed while a run is live."""
    model: str = LLM_MODEL
    temperature: float = LLM_TEMPERATURE
    max_tokens: int = LLM_MAX_TOKENS
    request_timeout: float = REQUEST_TIMEOUT
    max_chars_per_batch: int = MAX_CHARS_PER_BATCH
    block_limit_tiers: tuple = BLOCK_LIMIT_TIERS
    large_block_limit: int = LARGE_BLOCK_LIMIT
    concurrency: int = CONCURRENCY_LIMIT
    max_retries: int = MAX_RETRIES
    retry_base_delay: float = RETRY_BASE_DELAY
    retry_max_delay: float = RETRY_MAX_DELAY
    relevance_threshold: int = RELEVANCE_THRESHOLD
    max_rules_per_batch: int = MAX_RULES_PER_BATCH
    fingerprint_prefix: int = FINGERPRINT_PREFIX

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1 (got {self.concurrency})")
        if self.max_chars_per_batch < 1:
            raise ValueError("max_chars_per_batch must be positive")


def default_config(**overrides) -> PipelineConfig:
    """Build the run config from module constants, with keyword overrides."""
    return PipelineConfig(**overrides)
