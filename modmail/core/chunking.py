"""Splitting long posts into platform-sized messages."""

from __future__ import annotations

from modmail.constants import CODE_FENCE, MAX_MESSAGE_CONTENT_LENGTH, MESSAGE_CHUNK_LENGTH, ZERO_WIDTH_SPACE


def chunk_by_lines(text: str, max_chunk_length: int = MAX_MESSAGE_CONTENT_LENGTH) -> list[str]:
    """Split text into chunks of at most max_chunk_length, preferring newline boundaries.

    The newline a chunk is split on is consumed; a run with no newline inside
    the window is hard-cut at the window size.
    """
    if len(text) < max_chunk_length:
        return [text]

    chunks: list[str] = []
    while text:
        if len(text) <= max_chunk_length:
            chunks.append(text)
            break

        window = text[:max_chunk_length]
        last_break = window.rfind("\n")
        if last_break == -1:
            chunks.append(window)
            text = text[max_chunk_length:]
        else:
            chunks.append(text[:last_break])
            text = text[last_break + 1 :]

    return chunks


def chunk_message_lines(text: str, max_chunk_length: int = MESSAGE_CHUNK_LENGTH) -> list[str]:
    """Chunk a message for sending, keeping edge newlines and code fences intact.

    The default chunk length sits a little under the message limit so a chunk
    can grow by one opening and one closing fence.

    - A leading or trailing newline gets a zero-width space so the platform keeps it.
    - A chunk that leaves a code block open is closed, and the next chunk reopens it.
      If the next chunk already starts with a fence (the split landed right before
      the block's end), that fence is dropped instead.
    """
    result: list[str] = []
    carry_open_block = False

    for chunk in chunk_by_lines(text, max_chunk_length):
        if chunk.startswith("\n"):
            chunk = ZERO_WIDTH_SPACE + chunk
        if chunk.endswith("\n"):
            chunk = chunk + ZERO_WIDTH_SPACE

        if carry_open_block:
            carry_open_block = False
            if chunk.startswith(CODE_FENCE):
                chunk = chunk[len(CODE_FENCE) :]
            else:
                chunk = CODE_FENCE + chunk

        if chunk.count(CODE_FENCE) % 2 != 0:
            chunk += CODE_FENCE
            carry_open_block = True

        result.append(chunk)

    return result


def fits_in_one_message(text: str, limit: int = MAX_MESSAGE_CONTENT_LENGTH) -> bool:
    return len(text) <= limit
