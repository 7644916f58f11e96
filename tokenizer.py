# ABOUTME: Splits a sentence chunk into word and whitespace tokens for tap-to-select
# ABOUTME: Cleans tapped words before they are sent for translation
from __future__ import annotations

import re
from dataclasses import dataclass

WORD = "word"
SPACE = "space"

WHITESPACE_RUN = re.compile(r"(\s+)")
TRAILING_PUNCT = re.compile(r"[.,!?;:\"]+$")


@dataclass(frozen=True)
class WordToken:
    kind: str
    text: str
    word_index: int | None = None  # Only words are indexed


def tokenize_words(text: str) -> list[WordToken]:
    """Split text into word/space tokens that concatenate back to the input."""
    if not text:
        return []

    tokens: list[WordToken] = []
    word_counter = 0
    for part in WHITESPACE_RUN.split(text):
        if not part:
            continue
        if part.strip():
            tokens.append(WordToken(kind=WORD, text=part, word_index=word_counter))
            word_counter += 1
        else:
            tokens.append(WordToken(kind=SPACE, text=part))
    return tokens


def clean_word(word: str) -> str:
    """Strip whitespace and trailing punctuation from a tapped word."""
    return TRAILING_PUNCT.sub("", word.strip())
