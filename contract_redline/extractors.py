"""Build an in-memory document from local files."""

import re
from pathlib import Path

from .doctree import AtomNode, EditingEngine, ElementNode, MemoryDocument, TextNode
from .models import Block


def _run_nodes(text: str) -> list:
    """Text of one run; line breaks inside it become hard-break atoms."""
    nodes = []
    for i, part in enumerate(text.split("\n")):
        if i:
            nodes.append(AtomNode("hard_break"))
        if part:
            nodes.append(TextNode(part))
    return nodes


def load_docx_document(path: Path) -> MemoryDocument:
    """Read a .docx file, one block per non-empty paragraph.

    Only text content and paragraph identity are kept; formatting is dropped.
    """
    from docx import Document

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    source = Document(str(path))
    doc = MemoryDocument()
    for para in source.paragraphs:
        if not para.text.strip():
            continue
        children = []
        for run in para.runs:
            children.extend(_run_nodes(run.text))
        if not any(isinstance(c, TextNode) for c in children):
            # text that lives outside plain runs (hyperlinks, fields)
            children = _run_nodes(para.text)
        doc.add_block([ElementNode("paragraph", tuple(children))])
    return doc


def load_text_document(path: Path) -> MemoryDocument:
    """Read a plain-text file, one block per blank-line separated paragraph."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", path.read_text(encoding="utf-8"))]
    return MemoryDocument.from_texts(p for p in paragraphs if p)


def load_document(path: Path) -> MemoryDocument:
    path = Path(path)
    if path.suffix.lower() == ".docx":
        return load_docx_document(path)
    return load_text_document(path)


def document_blocks(doc: EditingEngine) -> list[Block]:
    """Flat, ordered block list with current text, for chunking."""
    return [Block(id=r.id, text=r.text, risk=r.risk, status=r.status) for r in doc.iter_blocks()]
