"""
Response Post-Processor for Hamorah

Turns raw generated text into the pieces an AiResult carries:
- Cuts the text at the first stop sequence and strips trailing chat markup
- Extracts Scripture references ("Book Chapter:Verse" / "Book Chapter:Verse-Verse")

One matcher serves every provider. Its known limits:
- False positives: any "Word N:N" phrase, e.g. "at 10:30", "Chapter 3:4" or
  "ratio 16:9".
- False negatives: multi-word book names ("Song of Solomon 2:1" yields only
  "Solomon 2:1"), spoken forms ("John chapter 3 verse 16"), and books written
  with roman numerals ("II Kings 2:11" yields "Kings 2:11").
"""

import re
from dataclasses import dataclass

from ..logging_config import debug_log
from .errors import GenerationError

# Optional leading numeral for books like "1 Corinthians"
REFERENCE_PATTERN = re.compile(r'(\d?\s?[A-Z][a-z]+)\s+(\d+):(\d+(?:-\d+)?)', re.IGNORECASE)

# End-of-turn markup some runtimes leave in decoded text
TRAILING_SPECIAL_TOKENS = ('</s>', '<|end|>', '<|eot_id|>', '<|im_end|>', '<|endoftext|>', '<|assistant|>')


@dataclass(frozen=True)
class ProcessedResponse:
    text: str
    related_references: tuple[str, ...]


def extract_references(text: str, dedupe: bool = False) -> list[str]:
    """
    Find Scripture references in text.

    Args:
        text: Generated text
        dedupe: Keep only the first occurrence of each reference

    Returns:
        Matched substrings in order of appearance (whitespace-trimmed)
    """
    references = []
    seen = set()
    for match in REFERENCE_PATTERN.finditer(text):
        reference = match.group(0).strip()
        if dedupe:
            if reference in seen:
                continue
            seen.add(reference)
        references.append(reference)
    return references


def clean_text(raw_text: str, stop_sequences: tuple[str, ...] = ()) -> str:
    """Cut at the first stop sequence, then strip whitespace and trailing special tokens."""
    text = raw_text or ""
    for stop in stop_sequences:
        index = text.find(stop)
        if index != -1:
            text = text[:index]

    text = text.strip()
    stripped = True
    while stripped:
        stripped = False
        for token in TRAILING_SPECIAL_TOKENS:
            if text.endswith(token):
                text = text[:-len(token)].rstrip()
                stripped = True
    return text


def extract(raw_text: str, stop_sequences: tuple[str, ...] = (), dedupe: bool = False) -> ProcessedResponse:
    """
    Clean generated text and extract its references.

    Raises:
        GenerationError: If nothing is left after cleaning
    """
    text = clean_text(raw_text, stop_sequences)
    if not text:
        raise GenerationError("AI returned an empty response.", detail=f"raw output: {raw_text!r:.80}")

    references = extract_references(text, dedupe=dedupe)
    debug_log(f"[POST PROCESS] {len(text)} chars, {len(references)} references")
    return ProcessedResponse(text=text, related_references=tuple(references))
