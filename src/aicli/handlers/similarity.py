"""
Text relevance scoring for search results and page summaries.

Two measures, both over lowercase whitespace tokens:

- TF-IDF cosine similarity against a small corpus (the scraped pages)
- Term-graph similarity: Jaccard overlap of the terms, averaged with the
  Jaccard overlap of each shared term's neighbours

search_online blends them 0.7/0.3. summarize() reuses the TF-IDF weights
to pick the most representative sentences of a long page.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass

RELEVANCE_THRESHOLD = 0.05
TFIDF_WEIGHT = 0.7
GRAPH_WEIGHT = 0.3

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def tokenize(text: str) -> list[str]:
    return [w.lower() for w in text.split()]


@dataclass
class TfIdf:
    """Vocabulary and inverse document frequencies of a corpus."""
    vocab: list[str]
    idf: dict[str, float]

    @classmethod
    def fit(cls, documents: list[str]) -> "TfIdf":
        doc_freq: Counter[str] = Counter()
        for doc in documents:
            doc_freq.update(set(tokenize(doc)))
        num_docs = len(documents)
        idf = {word: math.log(num_docs / (df + 1)) + 1.0 for word, df in doc_freq.items()}
        return cls(vocab=sorted(idf), idf=idf)

    def vector(self, text: str) -> list[float]:
        words = tokenize(text)
        if not words:
            return [0.0] * len(self.vocab)
        counts = Counter(words)
        total = len(words)
        return [counts.get(word, 0) / total * self.idf.get(word, 1.0) for word in self.vocab]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def build_term_graph(text: str) -> dict[str, set[str]]:
    """Undirected graph linking each word to its immediate neighbours."""
    graph: dict[str, set[str]] = {}
    words = tokenize(text)
    for w1, w2 in zip(words, words[1:]):
        graph.setdefault(w1, set()).add(w2)
        graph.setdefault(w2, set()).add(w1)
    if len(words) == 1:
        graph.setdefault(words[0], set())
    return graph


def graph_similarity(query_graph: dict[str, set[str]], doc_graph: dict[str, set[str]]) -> float:
    query_terms = set(query_graph)
    doc_terms = set(doc_graph)
    union = query_terms | doc_terms
    shared = query_terms & doc_terms
    term_similarity = len(shared) / len(union) if union else 0.0

    edge_scores = []
    for term in shared:
        edges_union = query_graph[term] | doc_graph[term]
        edges_shared = query_graph[term] & doc_graph[term]
        edge_scores.append(len(edges_shared) / len(edges_union) if edges_union else 0.0)
    edge_similarity = sum(edge_scores) / len(edge_scores) if edge_scores else 0.0

    return 0.5 * term_similarity + 0.5 * edge_similarity


def relevance(query: str, document: str, tfidf: TfIdf) -> float:
    """Blended relevance of document to query."""
    cosine = cosine_similarity(tfidf.vector(query), tfidf.vector(document))
    graph = graph_similarity(build_term_graph(query), build_term_graph(document))
    return TFIDF_WEIGHT * cosine + GRAPH_WEIGHT * graph


def split_sentences(text: str) -> list[str]:
    sentences = []
    for block in text.split("\n"):
        sentences.extend(s.strip() for s in _SENTENCE_END.split(block) if s.strip())
    return sentences


def summarize(text: str, max_sentences: int = 3) -> str:
    """
    Extractive summary: the sentences closest to the page as a whole.

    Each sentence is scored by TF-IDF cosine similarity against the full
    text, with the sentences as the corpus. Sentences of fewer than three
    words are never picked. The chosen sentences keep their original
    order. Text with no more than max_sentences sentences is returned
    unchanged.
    """
    sentences = split_sentences(text)
    if len(sentences) <= max_sentences:
        return text
    tfidf = TfIdf.fit(sentences)
    page_vector = tfidf.vector(text)
    scored = []
    for index, sentence in enumerate(sentences):
        if len(tokenize(sentence)) < 3:
            continue
        score = cosine_similarity(tfidf.vector(sentence), page_vector)
        scored.append((score, index, sentence))
    if not scored:
        return text
    top = sorted(scored, key=lambda item: item[0], reverse=True)[:max_sentences]
    return " ".join(sentence for _, _, sentence in sorted(top, key=lambda item: item[1]))
