"""
Tests for the sliding-window text chunker.
"""

import pytest

from kb_ingest.core.search.chunking_service import ChunkingService


@pytest.fixture
def chunker():
    return ChunkingService(chunk_size=1000, overlap=200)


# =============================================================================
# Basic behavior
# =============================================================================


class TestChunkText:

    def test_blank_text_gives_no_chunks(self, chunker):
        assert chunker.chunk_text("") == []
        assert chunker.chunk_text("   \n  ") == []

    def test_short_text_is_single_chunk(self, chunker):
        chunks = chunker.chunk_text("  A short document.  ", document_id="doc-1")
        assert len(chunks) == 1
        assert chunks[0].content == "A short document."
        assert chunks[0].chunk_index == 0
        assert chunks[0].document_id == "doc-1"

    def test_1200_chars_gives_two_overlapping_chunks(self, chunker):
        text = "x" * 1200
        chunks = chunker.chunk_text(text)

        assert len(chunks) == 2
        assert all(len(c.content) <= 1000 for c in chunks)
        assert chunks[1].char_start <= chunks[0].char_end
        assert chunks[0].char_end - chunks[1].char_start == 200

    def test_prefers_sentence_boundary_past_midpoint(self, chunker):
        text = "a" * 700 + "." + "b" * 800
        chunks = chunker.chunk_text(text)

        assert chunks[0].content.endswith(".")
        assert chunks[0].char_end == 701

    def test_prefers_newline_boundary(self, chunker):
        text = "a" * 650 + "\n" + "b" * 800
        chunks = chunker.chunk_text(text)
        assert chunks[0].char_end == 651

    def test_ignores_boundary_before_midpoint(self, chunker):
        text = "a" * 300 + "." + "b" * 1200
        chunks = chunker.chunk_text(text)
        assert chunks[0].char_end == 1000

    def test_indices_are_contiguous(self, chunker):
        text = "Sentence number one. " * 300
        chunks = chunker.chunk_text(text)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))

    def test_uses_instance_defaults_when_not_overridden(self):
        chunks = ChunkingService(chunk_size=100, overlap=10).chunk_text("y" * 250)
        assert all(len(c.content) <= 100 for c in chunks)
        assert len(chunks) == 3


# =============================================================================
# Termination and coverage
# =============================================================================


class TestChunkCoverage:

    @pytest.mark.parametrize("size,overlap", [(10, 0), (10, 9), (50, 25), (1000, 200), (7, 3)])
    def test_every_character_is_covered(self, size, overlap):
        text = "The quick brown fox.\nJumps over the lazy dog. " * 40
        chunks = ChunkingService().chunk_text(text, size, overlap)

        covered = set()
        for chunk in chunks:
            covered.update(range(chunk.char_start, chunk.char_end))
            assert len(chunk.content) <= size
        assert covered == set(range(len(text)))

    def test_terminates_on_long_text_with_max_overlap(self):
        chunks = ChunkingService().chunk_text("z" * 5000, 100, 99)
        assert chunks[-1].char_end == 5000


# =============================================================================
# Parameter validation
# =============================================================================


class TestValidateParams:

    @pytest.mark.parametrize("size,overlap", [(0, 0), (-5, 0), (100, 100), (100, 150), (100, -1)])
    def test_invalid_params_raise(self, chunker, size, overlap):
        with pytest.raises(ValueError):
            chunker.chunk_text("some text", size, overlap)

    def test_zero_overlap_is_valid(self, chunker):
        chunks = chunker.chunk_text("w" * 2000, 1000, 0)
        assert len(chunks) == 2
