"""
Vectorization jobs: chunk, embed and index knowledge entries and memories, keep the
record store in step with the index, reindex stored embeddings and report drift.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ..models.core import (ContentType, KnowledgeEntry, Memory, SourceType, VectorMetadata, VectorRecord, content_hash,
                           make_vector_id)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import ChunkingConfig
from ..utils.exceptions import InputError, PartialBatchFailure, RetrievalError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchVectorIndex
from ..utils.record_store import RecordStore
from ..utils.timestamp_utils import utc_now
from .chunking import chunk_source

logger = get_logger(__name__)

Source = Union[KnowledgeEntry, Memory]


@dataclass
class VectorizationResult:
    source_type: SourceType
    source_id: str
    chunk_count: int
    vector_ids: List[str] = field(default_factory=list)


@dataclass
class ReindexResult:
    """One reindex page. Resume from next_offset until done."""
    offset: int
    batch_size: int
    processed: int
    skipped: int
    failed: int
    next_offset: int
    done: bool
    error: Optional[str] = None


@dataclass
class SyncReport:
    tenant_id: str
    missing_vectors: List[Dict[str, Any]] = field(default_factory=list)
    orphaned_vectors: List[Dict[str, Any]] = field(default_factory=list)
    chunk_count_mismatch: List[Dict[str, Any]] = field(default_factory=list)
    stale_vectors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.missing_vectors or self.orphaned_vectors or self.chunk_count_mismatch or self.stale_vectors)


class VectorizationService:
    """Write path of the retrieval pipeline."""

    def __init__(self,
                 record_store: RecordStore,
                 embedder: BedrockEmbed,
                 vector_index: OpenSearchVectorIndex,
                 chunking: Optional[ChunkingConfig] = None,
                 max_concurrency: int = 4,
                 reindex_batch_size: int = 50,
                 reindex_max_batch_size: int = 100):
        """
        Initialize the vectorization service.

        Args:
            record_store: Source of truth for sources and vector records
            embedder: Embedding client
            vector_index: Vector index client
            chunking: Chunk profiles per content type (optional, global config if None)
            max_concurrency: Maximum embedding calls in flight
            reindex_batch_size: Default reindex page size
            reindex_max_batch_size: Largest accepted reindex page size
        """
        self.record_store = record_store
        self.embedder = embedder
        self.vector_index = vector_index
        self.chunking = chunking
        self.max_concurrency = max(1, max_concurrency)
        self.reindex_batch_size = reindex_batch_size
        self.reindex_max_batch_size = reindex_max_batch_size

    def vectorize_knowledge(self, tenant_id: str, entry_id: str) -> VectorizationResult:
        entry = self.record_store.get_knowledge(tenant_id, entry_id)
        if entry is None:
            raise InputError(f'Knowledge entry {entry_id} not found')
        return self._vectorize(entry, SourceType.KNOWLEDGE, entry.content_type)

    def vectorize_memory(self, tenant_id: str, memory_id: str) -> VectorizationResult:
        memory = self.record_store.get_memory(tenant_id, memory_id)
        if memory is None:
            raise InputError(f'Memory {memory_id} not found')
        return self._vectorize(memory, SourceType.MEMORY, ContentType.MEMORY)

    def _metadata(self, source: Source, source_type: SourceType, content_type: ContentType, chunk_index: int,
                  total_chunks: int) -> VectorMetadata:
        if isinstance(source, Memory):
            return VectorMetadata(type=content_type,
                                  tenant_id=source.tenant_id,
                                  user_id=source.tenant_id,
                                  source_type=source_type,
                                  source_id=source.id,
                                  chunk_index=chunk_index,
                                  total_chunks=total_chunks,
                                  applies_to_bots=list(source.participants.bots),
                                  applies_to_personas=list(source.participants.personas),
                                  importance=source.importance)
        return VectorMetadata(type=content_type,
                              tenant_id=source.tenant_id,
                              user_id=source.tenant_id,
                              source_type=source_type,
                              source_id=source.id,
                              chunk_index=chunk_index,
                              total_chunks=total_chunks,
                              applies_to_bots=list(source.applies_to_bots),
                              applies_to_personas=list(source.applies_to_personas),
                              tags=list(source.tags))

    def _embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in sub-batches with a bounded worker pool, preserving order."""
        batch_size = max(1, self.embedder.config.batch_size)
        batches = [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]
        if len(batches) == 1:
            return self.embedder.embed_texts(batches[0])

        with ThreadPoolExecutor(max_workers=min(self.max_concurrency, len(batches))) as executor:
            results = list(executor.map(self.embedder.embed_texts, batches))
        return [vector for batch in results for vector in batch]

    def _vectorize(self, source: Source, source_type: SourceType, content_type: ContentType,
                   attempts: int = 3) -> VectorizationResult:
        """
        Run the full chunk, embed, index pipeline for one source.

        The source is marked not vectorized before any work starts and only marked
        vectorized after every record is indexed and stored. If the source text changes
        while the pipeline runs, the new vectors are dropped and the pipeline starts over
        on the current text, up to `attempts` runs in total.
        """
        logger.info(f'Vectorizing {source_type.value} {source.id} for tenant {source.tenant_id}')

        source.is_vectorized = False
        source.chunk_count = 0
        self.record_store.save_source(source)

        # Full re-run: drop whatever an earlier run left behind
        self._remove_vectors(source.tenant_id, source_type, source.id)

        text = source.text
        try:
            chunks = chunk_source(text, content_type, self.chunking)
            vectors = self._embed([chunk.text for chunk in chunks])

            total = len(chunks)
            records = []
            for chunk, vector in zip(chunks, vectors):
                records.append(
                    VectorRecord(vector_id=make_vector_id(source_type, source.id, chunk.index),
                                 source_type=source_type,
                                 source_id=source.id,
                                 tenant_id=source.tenant_id,
                                 chunk_index=chunk.index,
                                 total_chunks=total,
                                 chunk_text=chunk.text,
                                 metadata=self._metadata(source, source_type, content_type, chunk.index, total),
                                 embedding_model=self.embedder.model_id,
                                 embedding_dimensions=len(vector),
                                 embedding=vector))

            self.vector_index.upsert(records)
            self.record_store.save_vector_records(records)
        except Exception as e:
            logger.error(f'Vectorization of {source_type.value} {source.id} failed: {e}')
            raise

        current = self.record_store.get_source(source.tenant_id, source_type, source.id)
        if current is None or current.text != text:
            # The vectors describe text that no longer exists
            self._remove_vectors(source.tenant_id, source_type, source.id)
            if current is None:
                raise InputError(f'{source_type.value} {source.id} was deleted during vectorization')
            if attempts <= 1:
                raise RetrievalError(f'{source_type.value} {source.id} kept changing during vectorization')
            logger.warning(f'{source_type.value} {source.id} changed during vectorization, starting over')
            if isinstance(current, KnowledgeEntry):
                content_type = current.content_type
            return self._vectorize(current, source_type, content_type, attempts - 1)

        current.is_vectorized = True
        current.chunk_count = total
        current.content_hash = content_hash(text)
        self.record_store.save_source(current)

        logger.info(f'Vectorized {source_type.value} {source.id} into {total} chunks')
        return VectorizationResult(source_type=source_type,
                                   source_id=source.id,
                                   chunk_count=total,
                                   vector_ids=[r.vector_id for r in records])

    def _remove_vectors(self, tenant_id: str, source_type: SourceType, source_id: str) -> int:
        records = self.record_store.list_vector_records(tenant_id, source_type, source_id)
        if records:
            self.vector_index.delete_by_ids([r.vector_id for r in records])
        self.record_store.delete_vector_records(tenant_id, source_type, source_id)
        return len(records)

    def delete_source_vectors(self, tenant_id: str, source_type: SourceType, source_id: str) -> int:
        """
        Remove a source's vectors from the index and the record store.

        Returns:
            Number of vector records removed
        """
        removed = self._remove_vectors(tenant_id, source_type, source_id)

        source = self.record_store.get_source(tenant_id, source_type, source_id)
        if source is not None:
            source.is_vectorized = False
            source.chunk_count = 0
            self.record_store.save_source(source)

        logger.info(f'Deleted {removed} vectors of {source_type.value} {source_id}')
        return removed

    def invalidate_knowledge(self, tenant_id: str, entry_id: str, new_text: str) -> KnowledgeEntry:
        """Apply a text edit; the entry must be vectorized again afterwards."""
        if not new_text or not new_text.strip():
            raise InputError('Knowledge text must not be empty')
        entry = self.record_store.get_knowledge(tenant_id, entry_id)
        if entry is None:
            raise InputError(f'Knowledge entry {entry_id} not found')

        self._remove_vectors(tenant_id, SourceType.KNOWLEDGE, entry_id)
        entry.text = new_text
        entry.is_vectorized = False
        entry.chunk_count = 0
        entry.modified_at = utc_now()
        self.record_store.save_knowledge(entry)
        return entry

    def delete_knowledge(self, tenant_id: str, entry_id: str) -> bool:
        """Delete an entry and cascade to its vectors."""
        self._remove_vectors(tenant_id, SourceType.KNOWLEDGE, entry_id)
        return self.record_store.delete_knowledge(tenant_id, entry_id)

    def reindex(self, offset: int = 0, batch_size: Optional[int] = None) -> ReindexResult:
        """
        Re-upsert one page of stored embeddings.

        Records without a valid embedding or whose source no longer exists are skipped.
        On a partial failure the result points next_offset at the first record that
        was not written, so the page can be resumed.

        Args:
            offset: Position of the first vector record to process
            batch_size: Page size (default from config, capped at the configured max)

        Returns:
            ReindexResult for the page
        """
        batch_size = batch_size or self.reindex_batch_size
        if offset < 0:
            raise InputError(f'offset must not be negative, got {offset}')
        if batch_size <= 0 or batch_size > self.reindex_max_batch_size:
            raise InputError(f'batch_size must be within 1-{self.reindex_max_batch_size}, got {batch_size}')

        rows = self.record_store.page_vector_records(offset, batch_size)

        valid: List[VectorRecord] = []
        positions: List[int] = []
        skipped: List[Tuple[int, str]] = []
        for position, row in enumerate(rows):
            if not row.embedding or len(row.embedding) != self.vector_index.config.dimension:
                skipped.append((position, 'no valid embedding'))
                continue
            if self.record_store.get_source(row.tenant_id, row.source_type, row.source_id) is None:
                skipped.append((position, 'source missing'))
                continue
            valid.append(row)
            positions.append(position)

        for position, reason in skipped:
            logger.debug(f'Reindex skipped {rows[position].vector_id}: {reason}')

        try:
            self.vector_index.upsert(valid, start_offset=0)
        except PartialBatchFailure as e:
            failing_position = positions[e.processed] if e.processed < len(positions) else len(rows)
            skipped_before = sum(1 for position, _ in skipped if position < failing_position)
            logger.error(f'Reindex stopped at offset {offset + failing_position}: {e}')
            return ReindexResult(offset=offset,
                                 batch_size=batch_size,
                                 processed=e.processed,
                                 skipped=skipped_before,
                                 failed=e.failed,
                                 next_offset=offset + failing_position,
                                 done=False,
                                 error=str(e))

        logger.info(f'Reindexed {len(valid)} vectors at offset {offset} ({len(skipped)} skipped)')
        return ReindexResult(offset=offset,
                             batch_size=batch_size,
                             processed=len(valid),
                             skipped=len(skipped),
                             failed=0,
                             next_offset=offset + len(rows),
                             done=len(rows) < batch_size)

    def sync_check(self, tenant_id: str) -> SyncReport:
        """Compare a tenant's sources against their stored vector records."""
        sources: Dict[Tuple[SourceType, str], Source] = {}
        for entry in self.record_store.list_knowledge(tenant_id):
            sources[(SourceType.KNOWLEDGE, entry.id)] = entry
        for memory in self.record_store.list_memories(tenant_id):
            sources[(SourceType.MEMORY, memory.id)] = memory

        grouped: Dict[Tuple[SourceType, str], List[VectorRecord]] = {}
        for record in self.record_store.list_vector_records(tenant_id):
            grouped.setdefault((record.source_type, record.source_id), []).append(record)

        report = SyncReport(tenant_id=tenant_id)
        for key, records in grouped.items():
            if key not in sources:
                report.orphaned_vectors.append({
                    'source_type': key[0].value,
                    'source_id': key[1],
                    'vector_ids': sorted(r.vector_id for r in records)
                })

        for (source_type, source_id), source in sources.items():
            if not source.is_vectorized:
                continue
            records = grouped.get((source_type, source_id), [])
            item = {'source_type': source_type.value, 'source_id': source_id}
            if not records:
                report.missing_vectors.append(item)
                continue
            totals = {r.total_chunks for r in records}
            if len(records) != source.chunk_count or totals != {len(records)}:
                report.chunk_count_mismatch.append({**item, 'expected': source.chunk_count, 'actual': len(records)})
            if source.content_hash and source.content_hash != content_hash(source.text):
                report.stale_vectors.append(item)

        logger.info(f'Sync check for tenant {tenant_id}: {len(report.missing_vectors)} missing, '
                    f'{len(report.orphaned_vectors)} orphaned, {len(report.chunk_count_mismatch)} mismatched, '
                    f'{len(report.stale_vectors)} stale')
        return report
