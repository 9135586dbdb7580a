# tests/test_chunker.py
import pytest

from tenantrag.errors import EmptyInputError, ValidationError
from tenantrag.memory.chunker import chunk_text


def _words(n):
    return " ".join(f"w{i}" for i in range(n))


class TestChunkText:

    def test_short_text_is_single_chunk(self):
        assert chunk_text("hello   world\n again") == ["hello world again"]

    def test_windows_overlap(self):
        """Windows start every size - overlap words."""
        chunks = chunk_text(_words(12), size=5, overlap=2)

        assert chunks == [
            "w0 w1 w2 w3 w4",
            "w3 w4 w5 w6 w7",
            "w6 w7 w8 w9 w10",
            "w9 w10 w11",
        ]

    def test_default_window_size(self):
        chunks = chunk_text(_words(1000))

        assert len(chunks[0].split()) == 500
        # 450-word stride over 1000 words
        assert len(chunks) == 3

    def test_idempotent(self):
        text = _words(1234)
        assert chunk_text(text) == chunk_text(text)

    def test_no_empty_chunks(self):
        chunks = chunk_text(_words(23), size=4, overlap=1)
        assert all(chunk.strip() for chunk in chunks)

    @pytest.mark.parametrize("text", ["", "   ", "\n\t "])
    def test_empty_input_rejected(self, text):
        with pytest.raises(EmptyInputError):
            chunk_text(text)

    def test_empty_input_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            chunk_text("")

    @pytest.mark.parametrize("size,overlap", [(0, 0), (5, 5), (5, 9), (5, -1)])
    def test_invalid_window(self, size, overlap):
        with pytest.raises(ValueError):
            chunk_text("some text", size=size, overlap=overlap)
