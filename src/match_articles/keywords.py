"""Salient-term extraction and lexical similarity for headline matching."""

from __future__ import annotations

import re

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "be",
        "been", "being", "have", "has", "had", "do", "does", "did", "will",
        "would", "could", "should", "may", "might", "must", "can", "about",
        "says", "said", "after", "over", "what", "know", "this", "that",
        "news", "report", "breaking", "live", "least", "officials", "including",
        "mum", "video", "photos", "watch", "today", "updates",
        "scoop", "exclusive", "analysis", "opinion", "review", "fact check", "timeline",
    }
)

_SEPARATORS = re.compile(r"[-_]")
_WHITESPACE = re.compile(r"\s+")
_NON_ENTITY_CHARS = re.compile(r"[^a-zA-Z0-9&.]")
_NON_WORD_CHARS = re.compile(r"[^a-z0-9&.\s]")
_NON_TOKEN_CHARS = re.compile(r"[^a-z0-9\s]")


def extract_entities(text: str | None, excluded_text: str | None = None) -> list[str]:
    """Salient terms of text, in order of first appearance.

    Runs of capitalised words become one term ("Federal Reserve"); words
    longer than three letters that are not stop words are added in lower
    case. Terms equal to, containing, or contained in excluded_text (usually
    the source's own name) are dropped.
    """
    if not text:
        return []
    clean_text = _SEPARATORS.sub(" ", text)

    entities: list[str] = []
    current: list[str] = []
    for word in _WHITESPACE.split(clean_text):
        clean_word = _NON_ENTITY_CHARS.sub("", word)
        if (
            len(clean_word) >= 2
            and clean_word[0].isupper()
            and clean_word.lower() not in STOP_WORDS
        ):
            current.append(clean_word)
        elif current:
            entities.append(" ".join(current))
            current = []
    if current:
        entities.append(" ".join(current))

    important = _NON_WORD_CHARS.sub("", clean_text.lower())
    entities.extend(w for w in _WHITESPACE.split(important) if len(w) > 3 and w not in STOP_WORDS)

    excluded = excluded_text.lower().strip() if excluded_text else ""
    excluded_tokens = set(_WHITESPACE.split(excluded)) if excluded else set()

    result = []
    seen = set()
    for entity in entities:
        if entity in seen:
            continue
        seen.add(entity)
        lower = entity.lower()
        if excluded and (lower in excluded_tokens or excluded in lower or lower in excluded):
            continue
        result.append(entity)
    return result


def article_terms(title: str | None, description: str | None, excluded_text: str | None) -> list[str]:
    """Distinct salient terms of a title followed by those of its description."""
    terms = extract_entities(title, excluded_text) + extract_entities(description, excluded_text)
    return list(dict.fromkeys(terms))


def tokenize(text: str | None) -> set[str]:
    """Lowercase alphanumeric tokens longer than two characters."""
    if not text:
        return set()
    return {t for t in _WHITESPACE.split(_NON_TOKEN_CHARS.sub(" ", text.lower())) if len(t) > 2}


def title_similarity(title_a: str | None, title_b: str | None) -> float:
    """Jaccard similarity of the two titles' tokens, as a percentage."""
    tokens_a = tokenize(title_a)
    tokens_b = tokenize(title_b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b) * 100.0


def shared_terms(source_terms: list[str], candidate_terms: list[str]) -> set[str]:
    """Terms present in both lists, compared case-insensitively."""
    candidate = {t.lower() for t in candidate_terms}
    return {t.lower() for t in source_terms if t.lower() in candidate}


def term_overlap(source_terms: list[str], candidate_terms: list[str]) -> float:
    """Fraction of the source's terms that the candidate shares."""
    if not source_terms:
        return 0.0
    source = {t.lower() for t in source_terms}
    return len(shared_terms(source_terms, candidate_terms)) / len(source)


def title_tokens(text: str | None, limit: int | None = None) -> list[str]:
    """Distinct non-stop-word title tokens in order of appearance."""
    if not text:
        return []
    tokens = []
    for token in _WHITESPACE.split(_NON_TOKEN_CHARS.sub(" ", text.lower())):
        if len(token) > 2 and token not in STOP_WORDS and token not in tokens:
            tokens.append(token)
    return tokens[:limit] if limit is not None else tokens
