"""Unit tests for message chunking."""

from modmail.constants import CODE_FENCE, ZERO_WIDTH_SPACE
from modmail.core.chunking import chunk_by_lines, chunk_message_lines, fits_in_one_message


class TestChunkByLines:
    """Tests for chunk_by_lines."""

    def test_short_text_is_one_chunk(self):
        assert chunk_by_lines("hello", 10) == ["hello"]

    def test_splits_on_last_newline_in_window(self):
        text = "aaaa\nbbbb\ncccc"

        assert chunk_by_lines(text, 10) == ["aaaa\nbbbb", "cccc"]

    def test_hard_cuts_lines_without_newline(self):
        assert chunk_by_lines("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]


class TestChunkMessageLines:
    """Tests for chunk_message_lines."""

    def test_edge_newlines_are_preserved(self):
        chunks = chunk_message_lines("\nhello\n", 100)

        assert chunks == [f"{ZERO_WIDTH_SPACE}\nhello\n{ZERO_WIDTH_SPACE}"]

    def test_open_code_block_is_closed_and_reopened(self):
        text = f"{CODE_FENCE}\nline one\nline two\nline three\n{CODE_FENCE}"

        chunks = chunk_message_lines(text, 20)

        assert all(chunk.count(CODE_FENCE) % 2 == 0 for chunk in chunks)
        assert chunks[1].startswith(CODE_FENCE)

    def test_every_chunk_fits(self):
        text = "\n".join(f"line {i}" for i in range(1000))

        chunks = chunk_message_lines(text)

        assert len(chunks) > 1
        assert all(fits_in_one_message(chunk) for chunk in chunks)


def test_fits_in_one_message_boundary():
    assert fits_in_one_message("x" * 2000) is True
    assert fits_in_one_message("x" * 2001) is False
