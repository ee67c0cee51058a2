"""Unit tests for the chunker."""
import pytest

from knowledge_index.chunking import (
    MAX_CHUNK_CHARS,
    Chunk,
    PageText,
    SectionText,
    chunk_pages,
    chunk_sections,
    chunk_text,
    estimate_token_count,
    get_chunk_stats,
    normalize_text,
    validate_chunks,
)


def _prose(paragraphs: int = 12, sentences: int = 7) -> str:
    parts = []
    for p in range(paragraphs):
        parts.append(" ".join(f"Paragraph {p} sentence {s} talks about things." for s in range(sentences)))
    return "\n\n".join(parts)


class TestNormalizeText:
    def test_line_endings_are_unified(self) -> None:
        assert normalize_text("a\r\nb\rc") == "a\nb\nc"

    def test_blank_line_runs_collapse_to_one_blank_line(self) -> None:
        assert normalize_text("a\n\n\n\n\nb") == "a\n\nb"

    def test_trims_outer_whitespace(self) -> None:
        assert normalize_text("  \n hello \n ") == "hello"

    def test_none_and_empty(self) -> None:
        assert normalize_text("") == ""
        assert normalize_text(None) == ""


class TestChunkText:
    def test_empty_input_returns_empty_list(self) -> None:
        assert chunk_text("") == []
        assert chunk_text("   \n\n  ") == []

    def test_short_text_is_a_single_chunk(self) -> None:
        chunks = chunk_text("Just a short note.")
        assert len(chunks) == 1
        assert chunks[0].content == "Just a short note."
        assert chunks[0].index == 0
        assert chunks[0].char_len == len("Just a short note.")

    def test_worked_example_offsets(self) -> None:
        """2,400 chars with a line break at 980: windows [0,981), [781,1781), [1581,2400)."""
        text = "a" * 980 + "\n" + "b" * 1419
        assert len(text) == 2400

        chunks = chunk_text(text, chunk_size=1000, overlap=200)

        assert [(c.char_start, c.char_end) for c in chunks] == [(0, 981), (781, 1781), (1581, 2400)]
        assert chunks[0].content == "a" * 980
        assert chunks[1].content == text[781:1781]
        assert chunks[2].content == "b" * 819
        assert [c.index for c in chunks] == [0, 1, 2]

    def test_paragraph_break_beats_later_sentence_end(self) -> None:
        text = "A" * 600 + "\n\n" + "B" * 300 + ". " + "C" * 500
        chunks = chunk_text(text, chunk_size=1000, overlap=200)
        assert chunks[0].char_end == 602
        assert chunks[0].content == "A" * 600

    def test_separator_before_midpoint_is_ignored(self) -> None:
        text = "A" * 400 + "\n\n" + "B" * 1000
        chunks = chunk_text(text, chunk_size=1000, overlap=200)
        assert chunks[0].char_end == 1000
        assert len(chunks[0].content) == 1000

    def test_hard_cut_without_separators(self) -> None:
        chunks = chunk_text("x" * 1100, chunk_size=1000, overlap=200)
        assert [(c.char_start, c.char_end) for c in chunks] == [(0, 1000), (800, 1100)]

    def test_cjk_sentence_end_is_a_separator(self) -> None:
        text = "가" * 700 + "。" + "나" * 700
        chunks = chunk_text(text, chunk_size=1000, overlap=200)
        assert chunks[0].char_end == 701
        assert chunks[0].content.endswith("。")

    def test_is_deterministic(self) -> None:
        text = _prose()
        first = chunk_text(text, chunk_size=300, overlap=60)
        second = chunk_text(text, chunk_size=300, overlap=60)
        assert first == second

    def test_size_bound(self) -> None:
        for chunk in chunk_text(_prose(), chunk_size=250, overlap=50):
            assert chunk.char_len <= 250

    def test_windows_cover_text_without_gaps(self) -> None:
        text = normalize_text(_prose())
        chunks = chunk_text(text, chunk_size=300, overlap=60)

        rebuilt = text[chunks[0].char_start:chunks[0].char_end]
        for prev, cur in zip(chunks, chunks[1:]):
            rebuilt += text[prev.char_end:cur.char_end]

        assert chunks[0].char_start == 0
        assert chunks[-1].char_end == len(text)
        assert rebuilt == text

    def test_adjacent_windows_share_overlap(self) -> None:
        overlap = 60
        chunks = chunk_text(_prose(), chunk_size=300, overlap=overlap)
        assert len(chunks) > 3
        for prev, cur in zip(chunks, chunks[1:]):
            assert cur.char_start == prev.char_end - overlap

    def test_content_is_trimmed_window(self) -> None:
        text = normalize_text(_prose())
        for chunk in chunk_text(text, chunk_size=300, overlap=60):
            assert chunk.content == text[chunk.char_start:chunk.char_end].strip()

    def test_zero_overlap_is_contiguous(self) -> None:
        chunks = chunk_text("y" * 2500, chunk_size=1000, overlap=0)
        assert [(c.char_start, c.char_end) for c in chunks] == [(0, 1000), (1000, 2000), (2000, 2500)]

    @pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, 150), (100, -1)])
    def test_rejects_bad_parameters(self, size: int, overlap: int) -> None:
        with pytest.raises(ValueError):
            chunk_text("some text", chunk_size=size, overlap=overlap)

    def test_chunks_carry_token_estimates(self) -> None:
        chunks = chunk_text("abcd" * 10)
        assert chunks[0].token_count == 10


class TestPagesAndSections:
    def test_pages_share_one_continuous_index(self) -> None:
        pages = [PageText(1, "x" * 1500), PageText(2, ""), PageText(3, "short page")]
        chunks = chunk_pages(pages, chunk_size=1000, overlap=200)

        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert [c.page_number for c in chunks] == [1, 1, 3]
        assert chunks[-1].content == "short page"

    def test_sections_are_tagged_with_titles(self) -> None:
        sections = [SectionText("Intro", "Hello there."), SectionText("Body", "z" * 1200)]
        chunks = chunk_sections(sections, chunk_size=1000, overlap=200)

        assert chunks[0].section_title == "Intro"
        assert {c.section_title for c in chunks[1:]} == {"Body"}
        assert [c.index for c in chunks] == [0, 1, 2]
        assert all(c.page_number is None for c in chunks)


class TestEstimateTokenCount:
    def test_narrow_script(self) -> None:
        assert estimate_token_count("abcd") == 1
        assert estimate_token_count("abcde") == 2

    def test_wide_script_weighs_more(self) -> None:
        assert estimate_token_count("가나다") == 3  # ceil(2.1)
        assert estimate_token_count("漢字") == 2  # ceil(1.4)

    def test_mixed(self) -> None:
        assert estimate_token_count("ab가") == 2  # ceil(0.5 + 0.7)

    def test_empty(self) -> None:
        assert estimate_token_count("") == 0


class TestValidateAndStats:
    def test_no_chunks_is_invalid(self) -> None:
        valid, issues = validate_chunks([])
        assert not valid
        assert issues == ["No chunks generated"]

    def test_oversized_and_empty_chunks_are_reported(self) -> None:
        chunks = [
            Chunk(content="ok", index=0, char_start=0, char_end=2),
            Chunk(content="  ", index=1, char_start=2, char_end=4),
            Chunk(content="x" * (MAX_CHUNK_CHARS + 1), index=2, char_start=4, char_end=10005),
        ]
        valid, issues = validate_chunks(chunks)
        assert not valid
        assert len(issues) == 2
        assert "Chunk 1 is empty" in issues[0]
        assert "Chunk 2 is too large" in issues[1]

    def test_valid_chunks(self) -> None:
        assert validate_chunks(chunk_text(_prose())) == (True, [])

    def test_stats_of_empty_list_are_zero(self) -> None:
        assert get_chunk_stats([]).to_dict() == {
            "total_chunks": 0,
            "total_characters": 0,
            "avg_chunk_size": 0,
            "min_chunk_size": 0,
            "max_chunk_size": 0,
            "estimated_tokens": 0,
        }

    def test_stats(self) -> None:
        chunks = chunk_text("x" * 1100, chunk_size=1000, overlap=200)
        stats = get_chunk_stats(chunks)
        assert stats.total_chunks == 2
        assert stats.total_characters == 1300
        assert stats.avg_chunk_size == 650
        assert stats.min_chunk_size == 300
        assert stats.max_chunk_size == 1000
        assert stats.estimated_tokens == 250 + 75
