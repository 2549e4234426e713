"""Word-level diff between an original clause and its proposed rewrite."""

import re
from difflib import SequenceMatcher

from .models import DiffOp, DiffSegment

# Words keep their attached punctuation; whitespace runs are their own tokens.
_TOKEN_RE = re.compile(r"\s+|\S+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)


def word_diff(original: str, proposed: str) -> list[DiffSegment]:
    """Diff two texts word by word.

    Adjacent segments with the same op are merged, and a replaced span always
    comes out as its DELETE followed by its INSERT.
    """
    a = tokenize(original)
    b = tokenize(proposed)
    matcher = SequenceMatcher(None, a, b, autojunk=False)

    segments: list[DiffSegment] = []

    def emit(op: DiffOp, tokens: list[str]):
        if not tokens:
            return
        token = "".join(tokens)
        if segments and segments[-1].op == op:
            segments[-1] = DiffSegment(op, segments[-1].token + token)
        else:
            segments.append(DiffSegment(op, token))

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            emit(DiffOp.EQUAL, a[i1:i2])
        elif tag == "delete":
            emit(DiffOp.DELETE, a[i1:i2])
        elif tag == "insert":
            emit(DiffOp.INSERT, b[j1:j2])
        elif tag == "replace":
            emit(DiffOp.DELETE, a[i1:i2])
            emit(DiffOp.INSERT, b[j1:j2])
    return segments


def source_text(segments: list[DiffSegment]) -> str:
    return "".join(s.token for s in segments if s.op != DiffOp.INSERT)


def target_text(segments: list[DiffSegment]) -> str:
    return "".join(s.token for s in segments if s.op != DiffOp.DELETE)
