"""
Tests for the response post-processor.

These tests verify:
1. Scripture references are extracted in order of appearance
2. Trailing chat markup and text after stop sequences are removed
3. Empty output is a generation failure
"""

import pytest

from hamorah.ai.errors import GenerationError
from hamorah.ai.response_post_processor import clean_text, extract, extract_references


class TestExtractReferences:
    """Test reference detection."""

    def test_references_in_order(self):
        """Single verses and verse ranges come back in the order they appear."""
        text = "...see John 3:16 and Romans 8:28-30 for more..."
        assert extract_references(text) == ["John 3:16", "Romans 8:28-30"]

    def test_numbered_books(self):
        """A leading numeral is part of the book name."""
        text = "Love is patient (1 Corinthians 13:4). Compare 2 Timothy 1:7."
        assert extract_references(text) == ["1 Corinthians 13:4", "2 Timothy 1:7"]

    def test_case_insensitive(self):
        assert extract_references("read psalm 23:1 today") == ["psalm 23:1"]

    def test_duplicates_kept_by_default(self):
        text = "John 3:16 is famous. Memorize John 3:16."
        assert extract_references(text) == ["John 3:16", "John 3:16"]

    def test_dedupe_keeps_first_occurrence(self):
        text = "John 3:16, Romans 5:8, John 3:16"
        assert extract_references(text, dedupe=True) == ["John 3:16", "Romans 5:8"]

    def test_bold_markdown_references(self):
        """Cloud responses wrap references in bold markers."""
        text = "**Jeremiah 29:11** - 'For I know the thoughts...'\n**Philippians 4:6-7** - 'Be careful for nothing'"
        assert extract_references(text) == ["Jeremiah 29:11", "Philippians 4:6-7"]

    def test_known_false_positive(self):
        """Any word followed by N:N matches."""
        assert extract_references("Let's meet at 10:30") == ["at 10:30"]

    def test_known_false_negative_multiword_book(self):
        """Only the last word of a multi-word book name is captured."""
        assert extract_references("Song of Solomon 2:1") == ["Solomon 2:1"]

    def test_no_references(self):
        assert extract_references("God is love.") == []


class TestCleanText:
    """Test removal of chat markup."""

    def test_strips_trailing_special_tokens(self):
        assert clean_text("Peace be with you.</s>") == "Peace be with you."
        assert clean_text("Peace.<|end|>\n<|endoftext|>") == "Peace."

    def test_cuts_at_stop_sequence(self):
        raw = "Trust in the Lord.\nUser: what about tomorrow?"
        assert clean_text(raw, ("\nUser:",)) == "Trust in the Lord."

    def test_strips_whitespace(self):
        assert clean_text("  \n Amen \n") == "Amen"


class TestExtract:
    """Test the combined clean + extract step."""

    def test_returns_text_and_references(self):
        result = extract(" Read Psalm 46:10.</s>")
        assert result.text == "Read Psalm 46:10."
        assert result.related_references == ("Psalm 46:10",)

    @pytest.mark.parametrize("raw", ["", "   ", "</s>", "\n<|end|>\n"])
    def test_empty_output_is_failure(self, raw):
        """Whitespace or markup alone is not a valid answer."""
        with pytest.raises(GenerationError) as exc_info:
            extract(raw)
        assert exc_info.value.user_message == "AI returned an empty response."
