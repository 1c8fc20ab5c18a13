"""
Lexical text utilities shared by the store, the grader and the reranker.

Everything here is deterministic and dependency free so it can back the
local fallbacks when remote scorers are unavailable.
"""

import re

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would
    could should may might must shall can need dare ought used to of in for on
    with at by from as into through during before after above below between
    under again further then once here there when where why how all each few
    more most other some such no nor not only own same so than too very just
    and but if or because until while although though unless since i me my
    myself we our ours ourselves you your yours yourself yourselves he him his
    himself she her hers herself it its itself they them their theirs
    themselves what which who whom this that these those am
    """.split()
)

# Smaller list used when shortening over-long queries; keeps words such as
# "how" or "when" that still carry intent in a search string.
QUERY_STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would
    could should may might must shall can need to of in for on with at by from
    as into about what which who whom this that these those and but or if then
    so than too very just
    """.split()
)


def _normalize(text: str) -> str:
    return _NON_WORD.sub(" ", text.lower())


def extract_terms(text: str) -> list[str]:
    """Lowercased content terms longer than two characters, stop words removed."""
    return [
        term
        for term in _WHITESPACE.split(_normalize(text))
        if len(term) > 2 and term not in STOP_WORDS
    ]


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens longer than one character."""
    return [t for t in _WHITESPACE.split(_normalize(text)) if len(t) > 1]


def ngrams(text: str, n: int = 2) -> list[str]:
    """Whitespace-delimited word n-grams of already lowercased text."""
    words = [w for w in _WHITESPACE.split(text) if w]
    return [" ".join(words[i : i + n]) for i in range(len(words) - n + 1)]


def ngram_overlap(query: str, document: str, n: int = 2) -> float:
    """Fraction of the query's n-grams that also occur in the document."""
    query_grams = set(ngrams(query.lower(), n))
    if not query_grams:
        return 0.0
    doc_grams = set(ngrams(document.lower(), n))
    return len(query_grams & doc_grams) / len(query_grams)


def keyword_overlap(query: str, document: str) -> float:
    """
    Fraction of query terms present in the document.

    Returns 0.5 when the query has no content terms at all, so that a
    query made only of stop words is neither rejected nor favored.
    """
    query_terms = extract_terms(query)
    if not query_terms:
        return 0.5
    doc_terms = set(extract_terms(document))
    matches = sum(1 for term in query_terms if term in doc_terms)
    return matches / len(query_terms)


def bm25_score(
    query_tokens: list[str],
    doc_tokens: list[str],
    k1: float = 1.2,
    b: float = 0.75,
    avg_doc_length: float = 200.0,
) -> float:
    """
    Corpus-free BM25 approximation normalized to [0, 1].

    No IDF term is used; the saturated term frequencies are averaged over
    the query tokens and capped at 1.
    """
    if not query_tokens:
        return 0.0

    term_freq: dict[str, int] = {}
    for token in doc_tokens:
        term_freq[token] = term_freq.get(token, 0) + 1

    length_norm = 1 - b + b * (len(doc_tokens) / avg_doc_length)
    score = 0.0
    for token in query_tokens:
        tf = term_freq.get(token, 0)
        if tf:
            score += (tf * (k1 + 1)) / (tf + k1 * length_norm)

    return min(1.0, score / len(query_tokens))


def truncate_content(content: str, max_length: int = 500) -> str:
    """
    Cut memory content to ``max_length`` characters.

    Cuts at the last space when that space lies beyond 80% of the limit,
    otherwise cuts mid-word.
    """
    if len(content) <= max_length:
        return content
    truncated = content[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space]
    return truncated


def truncate_at_sentence(document: str, max_length: int = 2000) -> str:
    """Shorten a document for remote scoring, preferring a sentence boundary."""
    if len(document) <= max_length:
        return document
    truncated = document[:max_length]
    last_sentence = truncated.rfind(". ")
    if last_sentence > max_length * 0.7:
        return truncated[: last_sentence + 1] + " [truncated]"
    return truncated + "... [truncated]"


def shorten(text: str, max_length: int) -> str:
    """Ellipsize ``text`` to at most ``max_length`` characters."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
