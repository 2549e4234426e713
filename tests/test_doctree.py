"""
Tests for document nodes, the in-memory engine and run config
"""

from dataclasses import FrozenInstanceError

import pytest

from contract_redline.config import default_config
from contract_redline.doctree import (
    AtomNode, EditError, ElementNode, MemoryDocument, TextNode, node_text, walk,
)
from contract_redline.models import BlockStatus


class TestNodes:
    """Tests for node sizes and traversal."""

    def test_sizes(self):
        """Text counts characters, atoms one, elements two plus content."""
        para = ElementNode("paragraph", (TextNode("abc"), AtomNode("image")))
        assert TextNode("abc").size == 3
        assert AtomNode("image").size == 1
        assert para.size == 2 + 3 + 1

    def test_walk_offsets(self):
        """Offsets are relative to the walked node's content."""
        run = ElementNode("run", (TextNode("cd"),))
        para = ElementNode("paragraph", (TextNode("ab"), run))
        walked = [(type(n).__name__, off) for n, off in walk(para)]
        assert walked == [("TextNode", 0), ("ElementNode", 2), ("TextNode", 3)]

    def test_node_text_skips_atoms(self):
        """Atoms contribute no text."""
        para = ElementNode("paragraph", (TextNode("a"), AtomNode("br"), TextNode("b")))
        assert node_text(para) == "ab"

    def test_unknown_node_type(self):
        """Anything outside the three variants is rejected."""
        with pytest.raises(TypeError):
            node_text("not a node")


class TestMemoryDocument:
    """Tests for MemoryDocument."""

    def test_ids_and_order(self):
        """Blocks keep insertion order and generated ids are unique."""
        doc = MemoryDocument.from_texts(["one", "two", "three"])
        refs = list(doc.iter_blocks())
        assert [r.text for r in refs] == ["one", "two", "three"]
        assert len({r.id for r in refs}) == 3

    def test_duplicate_id_rejected(self):
        """Block ids cannot repeat."""
        doc = MemoryDocument()
        doc.add_block([TextNode("a")], block_id="x")
        with pytest.raises(ValueError):
            doc.add_block([TextNode("b")], block_id="x")

    def test_positions_are_cumulative(self):
        """Each block starts where the previous one ended."""
        doc = MemoryDocument.from_texts(["ab", "cde"])
        refs = list(doc.iter_blocks())
        assert refs[0].position == 0
        assert refs[1].position == refs[0].node.size

    def test_status_step(self):
        """A status step changes only the named block."""
        doc = MemoryDocument()
        doc.add_block([ElementNode("paragraph", (TextNode("a"),))], block_id="x")
        doc.add_block([ElementNode("paragraph", (TextNode("b"),))], block_id="y")
        tx = doc.begin_transaction()
        doc.set_block_status(tx, "y", BlockStatus.RESOLVED)
        doc.commit(tx)
        assert doc.locate_block_by_id("x").status == BlockStatus.ORIGINAL
        assert doc.locate_block_by_id("y").status == BlockStatus.RESOLVED

    def test_delete_across_blocks_refused(self):
        """A delete may not run past the end of its block."""
        doc = MemoryDocument()
        doc.add_block([ElementNode("paragraph", (TextNode("ab"),))], block_id="x")
        doc.add_block([ElementNode("paragraph", (TextNode("cd"),))], block_id="y")
        tx = doc.begin_transaction()
        doc.delete(tx, 2, 9)
        with pytest.raises(EditError):
            doc.commit(tx)
        assert [r.text for r in doc.iter_blocks()] == ["ab", "cd"]

    def test_delete_joins_sibling_paragraphs(self):
        """Deleting across a paragraph boundary merges the two paragraphs."""
        doc = MemoryDocument()
        doc.add_block([ElementNode("paragraph", (TextNode("ab"),)),
                       ElementNode("paragraph", (TextNode("cd"),))], block_id="x")
        tx = doc.begin_transaction()
        doc.delete(tx, 3, 7)
        doc.commit(tx)
        ref = doc.locate_block_by_id("x")
        assert ref.node.children == (ElementNode("paragraph", (TextNode("ad"),)),)

    def test_delete_keeps_unpaired_boundary(self):
        """A delete that ends inside a run leaves the run's close token."""
        run = ElementNode("run", (TextNode("ab"),))
        doc = MemoryDocument()
        doc.add_block([ElementNode("paragraph", (TextNode("x "), run, TextNode("cd")))], block_id="x")
        tx = doc.begin_transaction()
        doc.delete(tx, 6, 9)
        doc.commit(tx)
        paragraph = doc.locate_block_by_id("x").node.children[0]
        assert paragraph.children == (
            TextNode("x "), ElementNode("run", (TextNode("a"),)), TextNode("d"),
        )

    def test_later_steps_land_past_kept_tokens(self):
        """Steps after a partial delete are placed as if the whole range went."""
        run = ElementNode("run", (TextNode("ab"),))
        doc = MemoryDocument()
        doc.add_block([ElementNode("paragraph", (TextNode("x "), run, TextNode("cd")))], block_id="x")
        tx = doc.begin_transaction()
        doc.delete(tx, 6, 9)
        doc.delete(tx, 6, 7)
        doc.insert_text(tx, 6, "Z")
        doc.commit(tx)
        paragraph = doc.locate_block_by_id("x").node.children[0]
        assert paragraph.children == (
            TextNode("x "), ElementNode("run", (TextNode("a"),)), TextNode("Z"),
        )


class TestConfig:
    """Tests for the run config."""

    def test_defaults(self):
        """Defaults come from the module constants."""
        config = default_config()
        assert config.max_chars_per_batch == 40_000
        assert config.relevance_threshold == 4
        assert config.block_limit_tiers == ((200, 50), (500, 30))

    def test_invalid_concurrency(self):
        """Concurrency must be at least one."""
        with pytest.raises(ValueError):
            default_config(concurrency=0)

    def test_frozen(self):
        """A config cannot change once built."""
        config = default_config()
        with pytest.raises(FrozenInstanceError):
            config.concurrency = 10
