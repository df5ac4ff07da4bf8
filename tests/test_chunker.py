"""
Tests for text chunking.
"""

import pytest

from src.memory.chunker import (
    ChunkConfig,
    TextChunker,
    chunk_text,
    iter_chunks,
    reconstruct_text,
)
from src.memory.models import ChunkMetadata


class TestChunkText:
    """Tests for chunk boundaries and sizes."""

    def test_empty_input(self):
        assert chunk_text("") == []
        assert chunk_text("   \n\n  ") == []

    def test_short_input_single_chunk(self):
        chunks = chunk_text("Nómina de marzo", 400, 50)

        assert len(chunks) == 1
        assert chunks[0].text == "Nómina de marzo"
        assert chunks[0].index == 0
        assert chunks[0].metadata.char_start == 0
        assert chunks[0].metadata.total_chunks == 1

    def test_hard_cut_without_boundaries(self):
        """1000 chars with no boundary give 3 chunks overlapping by 50."""
        chunks = chunk_text("A" * 1000, 400, 50)

        assert len(chunks) == 3
        assert all(len(c.text) <= 400 for c in chunks)
        spans = [(c.metadata.char_start, c.metadata.char_end) for c in chunks]
        assert spans == [(0, 400), (350, 750), (700, 1000)]

    def test_indexes_are_sequential(self):
        text = " ".join(f"palabra{i}" for i in range(400))
        chunks = chunk_text(text, 200, 20)

        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert all(c.metadata.total_chunks == len(chunks) for c in chunks)

    def test_prefers_paragraph_boundary(self):
        first = "Primer parrafo con datos de la empresa. " * 6
        second = "Segundo parrafo con percepciones y deducciones. " * 6
        text = first.strip() + "\n\n" + second.strip()

        chunks = chunk_text(text, 300, 30)

        assert chunks[0].text.endswith("\n\n") or chunks[0].text.endswith(". ")
        assert len(chunks[0].text) <= 300

    def test_prefers_sentence_over_hard_cut(self):
        text = ("Salario base mensual. " * 30).strip()
        chunks = chunk_text(text, 100, 10)

        for chunk in chunks[:-1]:
            assert chunk.text.rstrip().endswith(".")

    def test_oversized_atomic_unit_still_bounded(self):
        text = "X" * 250 + " fin"
        chunks = chunk_text(text, 100, 10)

        assert all(len(c.text) <= 100 for c in chunks)
        assert reconstruct_text(chunks) == text

    def test_offsets_reconstruct_input(self):
        text = "\n".join(f"Linea {i}: concepto {i} importe {i * 10},00 €." for i in range(60))
        chunks = chunk_text(text, 150, 25)

        assert reconstruct_text(chunks) == text
        for chunk in chunks:
            assert text[chunk.metadata.char_start:chunk.metadata.char_end] == chunk.text


class TestLazyIteration:
    """Tests for generator behavior."""

    def test_iter_is_lazy_and_restartable(self):
        text = "B" * 900
        first = [c.text for c in iter_chunks(text, 400, 50)]
        second = [c.text for c in iter_chunks(text, 400, 50)]

        assert first == second
        assert len(first) == 3

    def test_iter_leaves_total_unset(self):
        chunk = next(iter_chunks("C" * 500, 400, 50))
        assert chunk.metadata.total_chunks is None


class TestChunkMetadata:
    """Tests for per-chunk metadata."""

    def test_amounts_and_table_flags(self):
        chunks = chunk_text("Concepto\tImporte\nSalario base\t1.800,00 €")

        assert chunks[0].metadata.has_amounts is True
        assert chunks[0].metadata.has_table is True

    def test_keywords_extracted(self):
        chunks = chunk_text("Retención IRPF aplicada sobre el salario bruto")

        assert "irpf" in chunks[0].metadata.keywords
        assert "bruto" in chunks[0].metadata.keywords

    def test_page_numbers_from_form_feeds(self):
        text = "Pagina uno " * 10 + "\f" + "Pagina dos " * 10
        chunks = chunk_text(text, 60, 5)

        assert chunks[0].metadata.page_number == 1
        assert chunks[-1].metadata.page_number == 2

    def test_metadata_round_trip_rejects_unknown_keys(self):
        meta = chunk_text("Salario base 1.000 €")[0].metadata
        data = meta.to_dict()

        assert ChunkMetadata.from_dict(data) == meta

        data["unexpected"] = True
        with pytest.raises(ValueError):
            ChunkMetadata.from_dict(data)

    def test_metadata_rejects_other_versions(self):
        data = chunk_text("texto")[0].metadata.to_dict()
        data["schema_version"] = 99

        with pytest.raises(ValueError):
            ChunkMetadata.from_dict(data)


class TestChunkConfig:
    """Tests for configuration validation."""

    def test_overlap_must_be_smaller(self):
        with pytest.raises(ValueError):
            ChunkConfig(max_chunk_size=100, overlap=100)

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ChunkConfig(max_chunk_size=0, overlap=0)

    def test_chunker_uses_config(self):
        chunker = TextChunker(ChunkConfig(max_chunk_size=50, overlap=0))
        chunks = chunker.chunk("D" * 120)

        assert [len(c.text) for c in chunks] == [50, 50, 20]
