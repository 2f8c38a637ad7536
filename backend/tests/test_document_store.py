"""
DocumentStore のテスト（library.json + documents/{id}.txt）
"""
import pytest

from ragdesk.core.errors import DocumentNotFoundError
from ragdesk.docs.models import Document
from ragdesk.docs.store import DocumentStore


def _document(name: str = "notes.md", content: str = "# Notes\nbody") -> Document:
    return Document.create(name=name, source_path=f"/tmp/{name}", content=content, size_bytes=len(content))


class TestDocumentStore:
    @pytest.mark.asyncio
    async def test_save_and_get_round_trip(self, tmp_path):
        # Arrange
        store = DocumentStore(tmp_path)
        document = _document()

        # Act
        await store.save(document)
        loaded = await store.get(document.id)

        # Assert
        assert loaded.id == document.id
        assert loaded.content == "# Notes\nbody"
        assert loaded.document_type == "md"
        assert loaded.date_added == document.date_added
        assert (tmp_path / "library.json").exists()
        assert (tmp_path / "documents" / f"{document.id}.txt").exists()

    @pytest.mark.asyncio
    async def test_get_without_content(self, tmp_path):
        store = DocumentStore(tmp_path)
        document = _document()
        await store.save(document)

        loaded = await store.get(document.id, include_content=False)

        assert loaded.content == ""
        assert loaded.name == "notes.md"

    @pytest.mark.asyncio
    async def test_metadata_update_keeps_content(self, tmp_path):
        store = DocumentStore(tmp_path)
        document = _document()
        await store.save(document)

        flags_only = await store.get(document.id, include_content=False)
        flags_only.is_selected = True
        await store.save(flags_only, include_content=False)

        loaded = await store.get(document.id)
        assert loaded.is_selected is True
        assert loaded.content == "# Notes\nbody"

    @pytest.mark.asyncio
    async def test_list_keeps_insertion_order(self, tmp_path):
        store = DocumentStore(tmp_path)
        first, second = _document("a.txt", "a"), _document("b.txt", "b")
        await store.save(first)
        await store.save(second)

        documents = await store.list_documents()

        assert [d.id for d in documents] == [first.id, second.id]
        assert all(d.content == "" for d in documents)

    @pytest.mark.asyncio
    async def test_missing_document_raises(self, tmp_path):
        store = DocumentStore(tmp_path)

        with pytest.raises(DocumentNotFoundError) as exc_info:
            await store.get("missing")

        assert exc_info.value.document_id == "missing"
        assert await store.exists("missing") is False

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_content(self, tmp_path):
        store = DocumentStore(tmp_path)
        document = _document()
        await store.save(document)

        await store.delete(document.id)

        assert await store.exists(document.id) is False
        assert not (tmp_path / "documents" / f"{document.id}.txt").exists()
        with pytest.raises(DocumentNotFoundError):
            await store.delete(document.id)

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        document = _document()
        document.is_processed = True
        await DocumentStore(tmp_path).save(document)

        reopened = DocumentStore(tmp_path)
        loaded = await reopened.get(document.id)

        assert loaded.is_processed is True
        assert loaded.content == document.content
