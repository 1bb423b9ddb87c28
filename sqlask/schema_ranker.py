from __future__ import annotations

from typing import Iterable, List, Tuple

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from .config import SchemaConfig
from .models import SchemaSnapshot, TableInfo


class SchemaRanker:
    """Orders a snapshot's tables by lexical relevance to a question.

    Ties keep discovery order, so a question that matches nothing still gets a
    deterministic schema rendering.
    """

    def __init__(self, cfg: SchemaConfig):
        self._cfg = cfg

    def rank_tables(self, query: str, snapshot: SchemaSnapshot, top_n: int | None = None) -> List[TableInfo]:
        top_n = top_n or self._cfg.ranker_top_n
        scored = self._score_tables(query, snapshot)
        order = sorted(range(len(scored)), key=lambda i: (-scored[i][1], i))
        return [scored[i][0] for i in order[:top_n]]

    def _score_tables(self, query: str, snapshot: SchemaSnapshot) -> List[Tuple[TableInfo, float]]:
        tables = list(snapshot.tables)
        if not tables:
            return []
        documents = [_table_document(t) for t in tables]
        similarities = [0.0] * len(tables)
        try:
            vectorizer = TfidfVectorizer(stop_words="english", token_pattern=r"(?u)\b[a-zA-Z][a-zA-Z0-9]+\b")
            matrix = vectorizer.fit_transform(documents)
            query_vec = vectorizer.transform([query])
            similarities = [float(s) for s in cosine_similarity(query_vec, matrix)[0]]
        except ValueError:
            # Empty vocabulary: every identifier was a stop word or a single character.
            pass
        return [
            (table, score + self._column_overlap_boost(query, table.name, (c.name for c in table.columns)))
            for table, score in zip(tables, similarities)
        ]

    def _column_overlap_boost(self, query: str, table_name: str, columns: Iterable[str]) -> float:
        if not query:
            return 0.0
        lower_query = query.lower()
        score = 0.0
        singular = table_name.lower().rstrip("s")
        if singular and singular in lower_query:
            score += 0.3
        for column in columns:
            if len(column) > 2 and column.lower() in lower_query:
                score += 0.1
        return min(score, 0.5)


def _table_document(table: TableInfo) -> str:
    # snake_case identifiers become separate words so "order_items" matches "items".
    parts = [table.name, table.name.replace("_", " ")]
    for column in table.columns:
        parts.append(column.name.replace("_", " "))
    return " ".join(parts)


__all__ = ["SchemaRanker"]
