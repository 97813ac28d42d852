from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from research_agent.autonomous.config import MemoryConfig
from research_agent.autonomous.models import Fact, NewFact, utc_now
from research_agent.llm.base import CompletionService, EmbeddingService, Message, user_message
from research_agent.llm.json_enforcer import ParseError, extract_text, parse_model, parse_model_list
from research_agent.llm.schemas import ExtractedFact, MergedFactPayload
from research_agent.llm.tokens import estimate_tokens, truncate_to_tokens

from .budget import select_within_budget
from .scoring import FactScoreWeights, RelevanceDecay, age_in_days, decayed_relevance, fact_context_score
from .stores.base import DocumentStore, FactFilter, VectorIndex, VectorItem

logger = logging.getLogger(__name__)

NAMESPACE = "facts"
CONTEXT_CANDIDATES = 50
MAX_EXTRACTION_TOKENS = 3000

EXTRACTION_PROMPT = """Extract atomic, verifiable facts from the text below.
Return ONLY a JSON array. Each element:
{{"content": "...", "category": "...", "subcategory": "...", "confidence": 0.0-1.0, "tags": ["..."]}}
Topic: {topic}

Text:
{text}
"""

MERGE_PROMPT = """Merge these two closely related facts into one precise fact that keeps every detail.
Return ONLY JSON: {{"content": "...", "subcategory": "..."}}

Fact A: {a}
Fact B: {b}
"""


@dataclass
class ScoredFact:
    fact: Fact
    score: float


@dataclass
class KnowledgeContext:
    facts: List[Fact] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False

    def format(self) -> str:
        return format_facts_as_context(self.facts)


@dataclass
class FactStats:
    total: int = 0
    average_confidence: float = 0.0
    average_relevance: float = 0.0
    top_categories: List[Tuple[str, int]] = field(default_factory=list)
    top_tags: List[Tuple[str, int]] = field(default_factory=list)


def format_fact(fact: Fact) -> str:
    return f"- {fact.content} (confidence {fact.confidence:.2f}, source: {fact.source or 'unknown'})"


def format_facts_as_context(facts: Sequence[Fact]) -> str:
    grouped: Dict[str, List[Fact]] = defaultdict(list)
    for fact in facts:
        grouped[fact.category].append(fact)
    sections = []
    for category, items in grouped.items():
        sections.append(f"## {category}\n" + "\n".join(format_fact(f) for f in items))
    return "\n\n".join(sections)


def _union(*lists: Sequence[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for values in lists:
        for v in values:
            if v not in seen:
                seen.add(v)
                out.append(v)
    return out


class SemanticManager:
    def __init__(
        self,
        store: DocumentStore,
        vector_index: VectorIndex,
        embeddings: EmbeddingService,
        completion: CompletionService,
        *,
        config: MemoryConfig = MemoryConfig(),
        weights: FactScoreWeights = FactScoreWeights(),
    ):
        self._store = store
        self._index = vector_index
        self._embeddings = embeddings
        self._completion = completion
        self._config = config
        self._weights = weights
        self._decay = RelevanceDecay(decay_days=config.fact_relevance_decay_days)

    # Extraction

    async def extract_facts(self, text: str, source: str, *, topic: str = "") -> List[NewFact]:
        """Ask the completion service for facts in ``text``; empty on any failure."""
        if not text.strip():
            return []
        prompt = EXTRACTION_PROMPT.format(
            topic=topic or "general", text=truncate_to_tokens(text, MAX_EXTRACTION_TOKENS)
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=1500, temperature=0.2)
        except Exception as exc:
            logger.warning("Fact extraction failed: %s", exc)
            return []
        parsed = parse_model_list(extract_text(response), ExtractedFact, key="facts")
        if isinstance(parsed, ParseError):
            logger.warning("Fact extraction returned unusable output: %s", parsed.reason)
            return []
        return [
            NewFact(
                content=item.content,
                category=item.category,
                subcategory=item.subcategory,
                source=source,
                confidence=item.confidence,
                tags=_union(item.tags),
            )
            for item in parsed.value
        ]

    async def extract_facts_from_messages(self, messages: Sequence[Message], topic: str = "") -> List[NewFact]:
        text = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in messages)
        return await self.extract_facts(text, source="conversation", topic=topic)

    # Storage

    def _to_fact(self, new: NewFact) -> Fact:
        now = utc_now()
        return Fact(**new.model_dump(), created_at=now, last_accessed=now, last_modified=now)

    def _metadata(self, fact: Fact) -> Dict[str, object]:
        return {
            "category": fact.category,
            "confidence": fact.confidence,
            "created_at": fact.created_at.isoformat(),
        }

    async def store_fact(self, new: NewFact) -> Fact:
        fact = self._to_fact(new)
        await self._store.create_fact(fact)
        try:
            vector = await self._embeddings.embed(fact.content, "document")
            await self._index.upsert(NAMESPACE, fact.id, vector, self._metadata(fact), fact.content)
        except Exception as exc:
            logger.warning("Fact %s stored without embedding: %s", fact.id, exc)
        return fact

    async def store_facts(self, news: Sequence[NewFact]) -> List[Fact]:
        facts = [self._to_fact(n) for n in news]
        for fact in facts:
            await self._store.create_fact(fact)
        if not facts:
            return facts
        try:
            vectors = await self._embeddings.embed_batch([f.content for f in facts], "document")
            await self._index.upsert_many(
                NAMESPACE,
                [
                    VectorItem(id=f.id, vector=v, metadata=self._metadata(f), document=f.content)
                    for f, v in zip(facts, vectors)
                ],
            )
        except Exception as exc:
            logger.warning("%d facts stored without embeddings: %s", len(facts), exc)
        return facts

    async def get_fact(self, fact_id: str) -> Optional[Fact]:
        return await self._store.get_fact(fact_id)

    async def get_all_facts(self, filters: FactFilter = FactFilter()) -> List[Fact]:
        return await self._store.list_facts(filters)

    async def count_facts(self) -> int:
        return await self._store.count_facts()

    async def check_health(self) -> None:
        """Touch the store, the embedder and the index; any failure propagates."""
        await self._store.count_facts()
        vector = await self._embeddings.embed("health check", "query")
        await self._index.search_by_vector(NAMESPACE, vector, limit=1)

    async def record_access(self, fact_id: str) -> Optional[Fact]:
        fact = await self._store.get_fact(fact_id)
        if fact is None:
            return None
        fact.access_count += 1
        fact.last_accessed = utc_now()
        return await self._store.update_fact(fact)

    async def delete_fact(self, fact_id: str) -> bool:
        deleted = await self._store.delete_fact(fact_id)
        try:
            await self._index.delete(NAMESPACE, fact_id)
        except Exception as exc:
            logger.warning("Fact %s removed from store but not from index: %s", fact_id, exc)
        return deleted

    # Retrieval

    async def search(
        self,
        query: str,
        *,
        limit: int = 10,
        category: Optional[str] = None,
        min_confidence: Optional[float] = None,
        min_relevance: Optional[float] = None,
        min_similarity: Optional[float] = None,
    ) -> List[ScoredFact]:
        numeric_filters = min_confidence is not None or min_relevance is not None
        fetch_limit = limit * 2 if numeric_filters else limit
        try:
            vector = await self._embeddings.embed(query, "query")
            matches = await self._index.search_by_vector(
                NAMESPACE,
                vector,
                limit=fetch_limit,
                where={"category": category} if category else None,
                min_score=min_similarity,
            )
        except Exception as exc:
            logger.warning("Fact search failed for %r: %s", query[:80], exc)
            return []
        out: List[ScoredFact] = []
        for match in matches:
            fact = await self._store.get_fact(match.id)
            if fact is None:
                continue
            if min_confidence is not None and fact.confidence < min_confidence:
                continue
            if min_relevance is not None and fact.relevance < min_relevance:
                continue
            out.append(ScoredFact(fact=fact, score=match.score))
            if len(out) >= limit:
                break
        return out

    async def build_knowledge_context(
        self,
        query: str,
        max_tokens: int,
        *,
        category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> KnowledgeContext:
        now = now or utc_now()
        results = await self.search(query, limit=CONTEXT_CANDIDATES, category=category)
        scored = [
            (
                fact_context_score(
                    r.fact.confidence, age_in_days(r.fact.created_at, now), r.fact.access_count, self._weights
                ),
                r.fact,
            )
            for r in results
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        selection = select_within_budget(
            [f for _, f in scored],
            max_tokens,
            lambda f: estimate_tokens(format_fact(f)),
        )
        return KnowledgeContext(facts=selection.items, total_tokens=selection.total_tokens, truncated=selection.truncated)

    # Deduplication

    async def find_similar_facts(self, fact: Fact, threshold: float = 0.85, *, limit: int = 10) -> List[ScoredFact]:
        """Facts in the same category whose exact cosine similarity meets ``threshold``.

        Index scores only pick candidates; every candidate is re-embedded and
        compared against ``fact`` directly. Sorted by similarity, highest first.
        """
        try:
            anchor = await self._embeddings.embed(fact.content, "document")
            matches = await self._index.search_by_vector(
                NAMESPACE, anchor, limit=limit + 1, where={"category": fact.category}
            )
        except Exception as exc:
            logger.warning("Similar-fact lookup failed for %s: %s", fact.id, exc)
            return []
        candidates: List[Fact] = []
        for match in matches:
            if match.id == fact.id:
                continue
            other = await self._store.get_fact(match.id)
            if other is not None and other.category == fact.category:
                candidates.append(other)
        if not candidates:
            return []
        try:
            vectors = await self._embeddings.embed_batch([c.content for c in candidates], "document")
        except Exception as exc:
            logger.warning("Re-embedding similar-fact candidates failed for %s: %s", fact.id, exc)
            return []
        out = []
        for other, vector in zip(candidates, vectors):
            similarity = self._embeddings.cosine_similarity(anchor, vector)
            if similarity >= threshold:
                out.append(ScoredFact(fact=other, score=similarity))
        out.sort(key=lambda s: s.score, reverse=True)
        return out

    async def merge_facts(self, a: Fact, b: Fact) -> Fact:
        """Store a new fact combining ``a`` and ``b``; the originals are left as they are."""
        content = a.content if a.confidence >= b.confidence else b.content
        subcategory = a.subcategory or b.subcategory
        try:
            response = await self._completion.complete(
                [user_message(MERGE_PROMPT.format(a=a.content, b=b.content))], max_tokens=500, temperature=0.2
            )
            parsed = parse_model(extract_text(response), MergedFactPayload)
            if isinstance(parsed, ParseError):
                logger.warning("Merge output unusable for %s + %s: %s", a.id, b.id, parsed.reason)
            else:
                content = parsed.value.content
                subcategory = parsed.value.subcategory or subcategory
        except Exception as exc:
            logger.warning("Merge synthesis failed for %s + %s: %s", a.id, b.id, exc)
        sources = _union([s for s in (a.source, b.source) if s])
        merged = NewFact(
            content=content,
            category=a.category,
            subcategory=subcategory,
            source="; ".join(sources),
            confidence=max(a.confidence, b.confidence),
            relevance=max(a.relevance, b.relevance),
            tags=_union(a.tags, b.tags),
            related_facts=_union(a.related_facts, b.related_facts, [a.id, b.id]),
        )
        return await self.store_fact(merged)

    async def consolidate_facts(self, *, category: Optional[str] = None, threshold: Optional[float] = None) -> List[Fact]:
        """One greedy pass: each unprocessed fact merges with its top similar match.

        Facts already folded into a merged fact (listed in some fact's
        ``related_facts``) take no further part, so repeated passes over
        unchanged data merge nothing. When the top match was processed
        earlier in the pass, the fact is left alone for this pass.
        """
        threshold = self._config.fact_merge_threshold if threshold is None else threshold
        facts = await self._store.list_facts(FactFilter(category=category))
        superseded: Set[str] = {rid for f in facts for rid in f.related_facts}
        processed: Set[str] = set()
        merged: List[Fact] = []
        for fact in facts:
            if fact.id in processed or fact.id in superseded:
                continue
            processed.add(fact.id)
            similar = [s for s in await self.find_similar_facts(fact, threshold) if s.fact.id not in superseded]
            if not similar or similar[0].fact.id in processed:
                continue
            partner = similar[0].fact
            processed.add(partner.id)
            new_fact = await self.merge_facts(fact, partner)
            processed.add(new_fact.id)
            merged.append(new_fact)
        if merged:
            logger.info("Merged %d fact pairs", len(merged))
        return merged

    async def update_fact_relevance(self, *, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        updated = 0
        for fact in await self._store.list_facts():
            relevance = decayed_relevance(
                fact.relevance, age_in_days(fact.last_accessed, now), fact.access_count, self._decay
            )
            if abs(relevance - fact.relevance) < 1e-9:
                continue
            fact.relevance = relevance
            fact.last_modified = now
            await self._store.update_fact(fact)
            updated += 1
        return updated

    async def get_stats(self) -> FactStats:
        facts = await self._store.list_facts()
        if not facts:
            return FactStats()
        categories = Counter(f.category for f in facts)
        tags = Counter(t for f in facts for t in f.tags)
        return FactStats(
            total=len(facts),
            average_confidence=sum(f.confidence for f in facts) / len(facts),
            average_relevance=sum(f.relevance for f in facts) / len(facts),
            top_categories=categories.most_common(5),
            top_tags=tags.most_common(10),
        )
