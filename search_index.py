import bisect
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Union

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from models import Release
from normalization import tokenize


logger = logging.getLogger(__name__)

FIELD_BOOSTS = {
    "title": 2.0,
    "artists": 1.5,
    "label": 1.0,
    "catno": 1.0,
    "genre": 1.0,
    "style": 1.0,
}
DEFAULT_FUZZY = 0.2  # max edits as a fraction of the query term length
DEFAULT_LIMIT = 100
PREFIX_WEIGHT = 0.5
FUZZY_WEIGHT = 0.5


class SearchHit(NamedTuple):
    id: int
    score: float


@dataclass
class _ScopeIndex:
    document_count: int = 0
    # term -> release id -> field -> term frequency
    postings: Dict[str, Dict[int, Dict[str, int]]] = field(default_factory=dict)
    # release id -> field -> token count
    field_lengths: Dict[int, Dict[str, int]] = field(default_factory=dict)
    vocabulary: List[str] = field(default_factory=list)


def _document_fields(release: Release) -> Dict[str, str]:
    info = release.basic_information
    return {
        "title": info.title,
        "artists": " ".join(artist.name for artist in info.artists),
        "label": " ".join(label.name for label in info.labels),
        "catno": " ".join(label.catno for label in info.labels),
        "genre": " ".join(info.genres),
        "style": " ".join(info.styles),
    }


class SearchIndex:
    """Per-scope full-text index over materialized releases.

    Indexes are always rebuilt from a complete release set, never patched. Query terms
    match index terms exactly, by prefix, or within a small edit distance, and all
    query terms must match (AND). Title and artist hits weigh more than the other fields.
    """

    def __init__(self):
        self._indexes: Dict[str, _ScopeIndex] = {}

    def build_index(self, scope_key: str, releases: Iterable[Release]):
        index = _ScopeIndex()
        postings: Dict[str, Dict[int, Dict[str, int]]] = defaultdict(dict)

        for release in releases:
            lengths: Dict[str, int] = {}
            for name, text in _document_fields(release).items():
                tokens = tokenize(text)
                lengths[name] = len(tokens)
                for token in tokens:
                    fields = postings[token].setdefault(release.id, {})
                    fields[name] = fields.get(name, 0) + 1
            index.field_lengths[release.id] = lengths
            index.document_count += 1

        index.postings = dict(postings)
        index.vocabulary = sorted(index.postings)
        # Whole-object swap so readers never see a half-built index
        self._indexes[scope_key] = index
        logger.info(
            "Search index built for %s with %d documents", scope_key, index.document_count
        )

    def search(
        self,
        scope_key: str,
        query: str,
        limit: int = DEFAULT_LIMIT,
        fuzzy: Union[bool, float] = True,
        prefix: bool = True,
    ) -> List[SearchHit]:
        """Ranked release ids for a query, best match first"""
        index = self._indexes.get(scope_key)
        if index is None:
            logger.warning("No search index found for %s", scope_key)
            return []

        terms = tokenize(query)
        if not terms:
            return []

        if fuzzy is True:
            fuzziness = DEFAULT_FUZZY
        elif fuzzy is False:
            fuzziness = 0.0
        else:
            fuzziness = float(fuzzy)

        combined: Dict[int, float] = {}
        for position, term in enumerate(terms):
            term_scores = self._score_term(index, term, fuzziness, prefix)
            if position == 0:
                combined = term_scores
            else:
                combined = {
                    release_id: combined[release_id] + score
                    for release_id, score in term_scores.items()
                    if release_id in combined
                }
            if not combined:
                return []

        ranked = sorted(combined.items(), key=lambda item: (-item[1], item[0]))
        return [SearchHit(release_id, score) for release_id, score in ranked[:limit]]

    def _matching_terms(
        self, index: _ScopeIndex, term: str, fuzziness: float, prefix: bool
    ) -> Dict[str, float]:
        """Index terms matched by one query term, with the weight of each match kind"""
        matches: Dict[str, float] = {}
        if term in index.postings:
            matches[term] = 1.0

        if prefix:
            start = bisect.bisect_left(index.vocabulary, term)
            for candidate in index.vocabulary[start:]:
                if not candidate.startswith(term):
                    break
                if candidate != term:
                    matches.setdefault(candidate, PREFIX_WEIGHT * len(term) / len(candidate))

        max_edits = round(fuzziness * len(term))
        if max_edits > 0:
            for candidate, distance, _ in process.extract(
                term,
                index.vocabulary,
                scorer=Levenshtein.distance,
                score_cutoff=max_edits,
                limit=None,
            ):
                if candidate in matches:
                    continue
                similarity = 1 - distance / max(len(term), len(candidate))
                matches[candidate] = FUZZY_WEIGHT * similarity
        return matches

    def _score_term(
        self, index: _ScopeIndex, term: str, fuzziness: float, prefix: bool
    ) -> Dict[int, float]:
        scores: Dict[int, float] = defaultdict(float)
        for candidate, weight in self._matching_terms(index, term, fuzziness, prefix).items():
            documents = index.postings[candidate]
            idf = math.log(1 + index.document_count / len(documents))
            for release_id, fields in documents.items():
                lengths = index.field_lengths[release_id]
                for name, frequency in fields.items():
                    scores[release_id] += (
                        FIELD_BOOSTS[name]
                        * weight
                        * idf
                        * frequency
                        / math.sqrt(lengths[name])
                    )
        return scores

    def has_index(self, scope_key: str) -> bool:
        return scope_key in self._indexes

    def clear_index(self, scope_key: str):
        self._indexes.pop(scope_key, None)

    def index_stats(self, scope_key: str) -> Dict[str, object]:
        index = self._indexes.get(scope_key)
        if index is None:
            return {"exists": False}
        return {"exists": True, "document_count": index.document_count}
