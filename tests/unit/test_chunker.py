"""Tests for recursive text chunking."""
import pytest

from groundrag.rag.chunker import TextChunker, split_text


LONG_TEXT = "\n\n".join(
    [
        "Toronto has a large public library system. " * 6,
        "The library lends books, music and films. Branches run free programs.\n"
        "Some branches open on Sundays. Hours vary by season.",
        "A" * 450,
        "Short closing paragraph.",
    ]
)


def _covered_positions(chunks):
    covered = set()
    for chunk in chunks:
        covered.update(range(chunk.char_start, chunk.char_end))
    return covered


def test_sentences_split_when_only_sentences_fit():
    """Test that 'A. B. C.' splits into one chunk per sentence."""
    assert split_text("A. B. C.", max_size=5, overlap=0) == ["A.", "B.", "C."]


def test_empty_input_gives_no_chunks():
    """Test that empty and whitespace-only text produce no chunks."""
    assert split_text("", max_size=100, overlap=10) == []
    assert split_text("   \n\n  ", max_size=100, overlap=10) == []


def test_short_text_is_a_single_chunk():
    """Test that text under the limit comes back whole."""
    assert split_text("Just one line.", max_size=100, overlap=20) == ["Just one line."]


@pytest.mark.parametrize("max_size,overlap", [(50, 0), (120, 30), (200, 50), (1000, 200)])
def test_chunks_never_exceed_max_size(max_size, overlap):
    """Test that every chunk fits within the configured size."""
    chunks = split_text(LONG_TEXT, max_size=max_size, overlap=overlap)

    assert chunks
    assert all(len(chunk) <= max_size for chunk in chunks)


@pytest.mark.parametrize("max_size,overlap", [(50, 0), (120, 30), (300, 60)])
def test_chunks_cover_all_content(max_size, overlap):
    """Test that every non-whitespace character lands in some chunk."""
    chunker = TextChunker(chunk_size=max_size, chunk_overlap=overlap)
    chunks = chunker.chunk_text(LONG_TEXT)

    covered = _covered_positions(chunks)
    missing = [i for i, ch in enumerate(LONG_TEXT) if not ch.isspace() and i not in covered]

    assert missing == []


def test_chunk_positions_match_content():
    """Test that char_start/char_end slice out the chunk content."""
    chunker = TextChunker(chunk_size=120, chunk_overlap=30)

    for index, chunk in enumerate(chunker.chunk_text(LONG_TEXT)):
        assert chunk.chunk_index == index
        assert LONG_TEXT[chunk.char_start:chunk.char_end] == chunk.content


def test_chunking_is_deterministic():
    """Test that re-chunking the same text gives identical chunks."""
    first = split_text(LONG_TEXT, max_size=120, overlap=30)
    second = split_text(LONG_TEXT, max_size=120, overlap=30)

    assert first == second


def test_overlap_repeats_tail_of_previous_chunk():
    """Test that consecutive chunks share text when overlap is set."""
    chunker = TextChunker(chunk_size=100, chunk_overlap=20)
    chunks = chunker.chunk_text(LONG_TEXT)

    assert len(chunks) > 2
    for previous, current in zip(chunks, chunks[1:]):
        assert current.char_start < previous.char_end


def test_no_overlap_means_disjoint_chunks():
    """Test that overlap=0 produces non-overlapping chunks in order."""
    chunker = TextChunker(chunk_size=100, chunk_overlap=0)
    chunks = chunker.chunk_text(LONG_TEXT)

    for previous, current in zip(chunks, chunks[1:]):
        assert current.char_start >= previous.char_end


def test_paragraphs_are_preferred_boundaries():
    """Test that paragraphs that fit are kept intact."""
    text = "First paragraph here.\n\nSecond paragraph here."

    assert split_text(text, max_size=30, overlap=0) == [
        "First paragraph here.",
        "Second paragraph here.",
    ]


def test_unpunctuated_paragraph_falls_back_to_characters():
    """Test that a long run with no boundaries is cut into raw windows."""
    text = "x" * 95
    chunks = split_text(text, max_size=40, overlap=10)

    assert all(len(chunk) <= 40 for chunk in chunks)
    assert chunks[0] == "x" * 30
    # Windows advance by size - overlap and carry the overlap prefix
    assert chunks[1] == "x" * 40
    assert "".join(chunk[10:] if i else chunk for i, chunk in enumerate(chunks)) == text


@pytest.mark.parametrize(
    "size,overlap",
    [(0, 0), (-5, 0), (10, -1), (10, 10), (10, 15)],
)
def test_invalid_configuration_raises(size, overlap):
    """Test that impossible size/overlap combinations are rejected."""
    with pytest.raises(ValueError):
        TextChunker(chunk_size=size, chunk_overlap=overlap)


def test_chunk_stats():
    """Test chunk statistics."""
    chunker = TextChunker(chunk_size=120, chunk_overlap=30)
    chunks = chunker.chunk_text(LONG_TEXT)
    stats = chunker.get_chunk_stats(chunks)

    assert stats["chunk_count"] == len(chunks)
    assert stats["max_chunk_size"] <= 120
    assert stats["overlap"] == 30
    assert chunker.get_chunk_stats([])["chunk_count"] == 0
