"""
MemoryService — one object wiring the store to its collaborators.

The CLI and the MCP server both talk to this facade so that configuration
(extractor command, embedder, ranking weights, answer limits) is resolved in
one place.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from projmem.answer import AskResult, ContextResult, ask_memories, build_project_context
from projmem.config import ProjmemConfig
from projmem.embedding import CommandEmbedder, Embedder, PseudoEmbedder
from projmem.extraction import ExtractionPipeline, IngestResult
from projmem.ingest import ingest, ingest_file
from projmem.llm import CommandExtractor, CommandLLM, Extractor
from projmem.notes import create_note, list_recent_notes
from projmem.organize import run_consolidator_pass, run_organizer_pass
from projmem.retrieval import search_memories
from projmem.store import MemoryStore
from projmem.types import MemoryRecord, Note, RankedCitation, Source

logger = logging.getLogger(__name__)


class MemoryService:
    """Ingest, extraction, organization, retrieval and answers over one store."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        extractor: Optional[Extractor] = None,
        embedder: Optional[Embedder] = None,
        answerer: Optional[CommandLLM] = None,
        config: Optional[ProjmemConfig] = None,
    ):
        self.store = store
        self.config = config or ProjmemConfig()
        self.embedder = embedder
        self.answerer = answerer
        self.pipeline = ExtractionPipeline(store, extractor=extractor, embedder=embedder)

    @classmethod
    def from_config(
        cls, config: ProjmemConfig, db_path: Optional[str] = None,
    ) -> MemoryService:
        """Open the store and build command-backed collaborators from *config*."""
        store = MemoryStore(
            db_path or config.store.db_path, wal_mode=config.store.wal_mode,
        )
        ext = config.extractor
        extractor = CommandExtractor(
            ext.llm_cmd,
            model=ext.model,
            mode=ext.llm_mode,
            timeout=ext.timeout,
            max_memories=ext.max_memories,
        )
        emb = config.embedder
        if emb.embed_cmd:
            embedder: Embedder = CommandEmbedder(
                emb.embed_cmd, model_name=emb.model_name, timeout=emb.timeout,
            )
        else:
            embedder = PseudoEmbedder(emb.dims)
        ans = config.answer
        answerer = (
            CommandLLM(ans.llm_cmd, mode=ans.llm_mode, timeout=ans.timeout)
            if ans.llm_cmd else None
        )
        return cls(
            store,
            extractor=extractor,
            embedder=embedder,
            answerer=answerer,
            config=config,
        )

    # -- Ingestion ---------------------------------------------------------

    def ingest(
        self,
        filename: Optional[str],
        markdown: Optional[str],
        *,
        source_path: Optional[str] = None,
        external_source_id: Optional[str] = None,
        agentfs_uri: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        return ingest(
            self.pipeline, filename, markdown,
            source_path=source_path,
            external_source_id=external_source_id,
            agentfs_uri=agentfs_uri,
            metadata=metadata,
        )

    def ingest_file(
        self,
        path: str,
        *,
        external_source_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        return ingest_file(
            self.pipeline, path,
            external_source_id=external_source_id,
            metadata=metadata,
        )

    def extract_source(
        self, source_id: str, version: Optional[int] = None, *, allow_empty: bool = False,
    ) -> IngestResult:
        return self.pipeline.extract_source(
            source_id, version,
            allow_empty=allow_empty,
            metadata={"writtenBy": "memory-extraction-workflow"},
        )

    def delete_source(self, source_id: str) -> Optional[Source]:
        """Soft-delete; versions and memories stay for audit."""
        return self.store.mark_source_deleted(source_id)

    # -- Records -----------------------------------------------------------

    def list_memory_records(self, limit: int = 50) -> List[MemoryRecord]:
        return self.store.list_memory_records(limit)

    def export_range(self, start: str, end: str, limit: int = 2000) -> List[MemoryRecord]:
        return self.store.list_memory_records_by_updated_range(start, end, limit)

    def organize(self, limit: int = 120) -> Dict[str, Any]:
        return run_organizer_pass(self.store, self.answerer, limit)

    def consolidate(self, limit: int = 120) -> Dict[str, Any]:
        return run_consolidator_pass(self.store, self.answerer, limit)

    # -- Notes -------------------------------------------------------------

    def create_note(
        self,
        content: Optional[str] = "",
        *,
        source_type: str = "text",
        source_url: Optional[str] = "",
        project: Optional[str] = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Note:
        return create_note(
            self.store, content,
            source_type=source_type,
            source_url=source_url,
            project=project,
            metadata=metadata,
            answerer=self.answerer,
            embedder=self.embedder,
        )

    def list_recent_notes(self, limit: int = 20, project: str = "") -> List[Note]:
        return list_recent_notes(self.store, limit, project)

    def list_projects(self) -> List[Dict[str, Any]]:
        return self.store.list_projects()

    # -- Retrieval and answers ---------------------------------------------

    def search(
        self, query: str = "", project: str = "", limit: Optional[int] = None,
    ) -> List[RankedCitation]:
        return search_memories(
            self.store, query, project, limit,
            embedder=self.embedder, config=self.config.retrieval,
        )

    def ask(self, question: str, project: str = "", limit: Optional[int] = None) -> AskResult:
        return ask_memories(
            self.store, question, project,
            self.config.answer.ask_limit if limit is None else limit,
            answerer=self.answerer,
            embedder=self.embedder,
            config=self.config.retrieval,
        )

    def build_context(
        self, task: str = "", project: str = "", limit: Optional[int] = None,
    ) -> ContextResult:
        return build_project_context(
            self.store, task, project,
            self.config.answer.context_limit if limit is None else limit,
            answerer=self.answerer,
            embedder=self.embedder,
            config=self.config.retrieval,
        )

    # -- Housekeeping ------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()

    def close(self) -> None:
        self.store.close()
