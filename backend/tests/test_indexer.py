"""
DocumentProcessingService のテスト（チャンキング → Embedding → VectorStore）
"""
import pytest

from ragdesk.core.errors import DocumentNotFoundError
from ragdesk.docs.models import ChunkType, Document
from ragdesk.docs.store import DocumentStore
from ragdesk.rag.chunking import ChunkingEngine
from ragdesk.rag.indexer import DocumentProcessingService
from ragdesk.rag.vectorstore import InMemoryVectorStore

from conftest import FakeEmbedder


def _paragraph(word: str, repeat: int = 37) -> str:
    return " ".join([word] * repeat)


@pytest.fixture
def document_store(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path)


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


def make_service(document_store, vector_store, embedder, **kwargs) -> DocumentProcessingService:
    return DocumentProcessingService(
        document_store,
        ChunkingEngine(chunk_size=200, chunk_overlap=20),
        embedder,
        vector_store,
        **kwargs,
    )


async def _add(document_store: DocumentStore, content: str, name: str = "notes.txt") -> Document:
    document = Document.create(name=name, source_path=f"/tmp/{name}", content=content, size_bytes=len(content))
    await document_store.save(document)
    return document


class TestProcess:
    @pytest.mark.asyncio
    async def test_processing_indexes_all_chunks(self, document_store, vector_store):
        # Arrange
        document = await _add(document_store, f"{_paragraph('cat')}\n\n{_paragraph('dog')}")
        service = make_service(document_store, vector_store, FakeEmbedder())

        # Act
        processed = await service.process(document.id)

        # Assert
        assert processed.is_processed is True
        assert processed.is_selected is True
        assert len(processed.chunks) == 2
        assert await vector_store.count() == 2
        stored = await document_store.get(document.id, include_content=False)
        assert stored.is_processed is True

    @pytest.mark.asyncio
    async def test_partial_embedding_failure_is_absorbed(self, document_store, vector_store):
        document = await _add(document_store, f"{_paragraph('cat')}\n\n{_paragraph('dog')}")
        service = make_service(document_store, vector_store, FakeEmbedder(fail_on=["dog"]))

        processed = await service.process(document.id)

        assert processed.is_processed is True
        assert len(processed.chunks) == 1
        assert "dog" not in processed.chunks[0].content
        assert await vector_store.count() == 1

    @pytest.mark.asyncio
    async def test_total_embedding_failure_leaves_document_unprocessed(self, document_store, vector_store):
        document = await _add(document_store, _paragraph("cat"))
        service = make_service(document_store, vector_store, FakeEmbedder(fail_on=["cat"]))

        processed = await service.process(document.id)

        assert processed.is_processed is False
        assert await vector_store.count() == 0
        stored = await document_store.get(document.id, include_content=False)
        assert stored.is_processed is False

    @pytest.mark.asyncio
    async def test_total_embedding_failure_does_not_select(self, document_store, vector_store):
        document = await _add(document_store, _paragraph("cat"))
        service = make_service(document_store, vector_store, FakeEmbedder(fail_on=["cat"]))

        processed = await service.process(document.id)

        assert processed.is_selected is False
        stored = await document_store.get(document.id, include_content=False)
        assert stored.is_selected is False

    @pytest.mark.asyncio
    async def test_selection_changed_during_embedding_is_kept(self, document_store, vector_store):
        # Arrange: 選択済みのドキュメントを、Embedding の途中で選択解除する
        document = await _add(document_store, _paragraph("cat"))
        document.is_selected = True
        await document_store.save(document, include_content=False)

        class DeselectingEmbedder(FakeEmbedder):
            async def embed_many(self, texts):
                stored = await document_store.get(document.id, include_content=False)
                stored.is_selected = False
                await document_store.save(stored, include_content=False)
                return await super().embed_many(texts)

        service = make_service(document_store, vector_store, DeselectingEmbedder())

        # Act
        processed = await service.process(document.id)

        # Assert
        assert processed.is_processed is True
        assert processed.is_selected is False
        stored = await document_store.get(document.id, include_content=False)
        assert stored.is_selected is False
        assert stored.is_processed is True

    @pytest.mark.asyncio
    async def test_reprocessing_replaces_chunks(self, document_store, vector_store):
        document = await _add(document_store, f"{_paragraph('cat')}\n\n{_paragraph('dog')}")
        service = make_service(document_store, vector_store, FakeEmbedder())

        await service.process(document.id)
        await service.process(document.id)

        assert await vector_store.count() == 2

    @pytest.mark.asyncio
    async def test_missing_document_raises(self, document_store, vector_store):
        service = make_service(document_store, vector_store, FakeEmbedder())

        with pytest.raises(DocumentNotFoundError):
            await service.process("missing")

    @pytest.mark.asyncio
    async def test_outline_chunking_uses_hierarchy(self, document_store, vector_store):
        document = await _add(
            document_store,
            "# Pets\nAll about pets.\n\n## Cats\nCats purr.\n",
            name="pets.md",
        )
        service = make_service(document_store, vector_store, FakeEmbedder(), use_outline_chunking=True)

        processed = await service.process(document.id)

        assert processed.chunks
        assert all(c.chunk_type == ChunkType.HIERARCHICAL for c in processed.chunks)
        assert any(c.content.startswith("Context: Pets/Cats\n\n") for c in processed.chunks)

    @pytest.mark.asyncio
    async def test_forget_removes_vectors(self, document_store, vector_store):
        document = await _add(document_store, _paragraph("cat"))
        service = make_service(document_store, vector_store, FakeEmbedder())
        await service.process(document.id)

        await service.forget(document.id)

        assert await vector_store.count() == 0


class TestBuildChunks:
    def test_whitespace_only_document_has_no_chunks(self, document_store, vector_store):
        service = make_service(document_store, vector_store, FakeEmbedder())
        document = Document.create(name="blank.txt", source_path="/tmp/blank.txt", content="  \n ", size_bytes=4)

        assert service.build_chunks(document) == []
