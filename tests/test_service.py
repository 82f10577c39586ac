"""End-to-end tests for ingestion and question answering with fake models.

Tests:
- Upload validation and ingestion results
- Failure handling: nothing persisted on parse or embedding errors,
  orphaned document on chunk insert errors
- Query state machine: refusal, scope errors, model failures, deadlines
- Listing and cascading delete
"""

import threading
from unittest.mock import patch

import pytest

from tabular_rag.errors import (
    InvalidQuestionError,
    ModelError,
    RequestTimeoutError,
    ScopeError,
    StorageError,
)
from tabular_rag.models import QueryState
from tabular_rag.rag.document_store import DocumentStore
from tabular_rag.rag.planner import NO_DOCUMENTS, NO_MATCHING_DOCUMENTS
from tabular_rag.rag.relevance import OUT_OF_SCOPE_MESSAGE
from tabular_rag.rag.synthesizer import NO_ANSWER_FALLBACK
from tabular_rag.service import RagService

from conftest import FakeEmbedder, FakeGenerator, make_settings


def _big_csv(rows: int) -> bytes:
    lines = ["id,name,city"] + [f"{n},Person {n},Paris" for n in range(1, rows + 1)]
    return ("\n".join(lines) + "\n").encode("utf-8")


class TestIngest:
    def test_people_csv(self, service, store, people_csv):
        result = service.ingest(people_csv, "people.csv", len(people_csv), "text/csv")

        assert result.success is True
        assert result.chunks_stored == 5
        assert result.error is None

        document = store.documents[result.document_id]
        assert document.filename == "people.csv"
        assert document.file_size == len(people_csv)
        assert document.metadata.row_count == 5
        assert document.metadata.headers == ["name", "city"]

        chunks = store.get_chunks(result.document_id)
        assert [c.chunk_index for c in chunks] == [0, 1, 2, 3, 4]
        assert chunks[1].content == "name: Bob, city: N/A"
        assert all(c.metadata.document_id == result.document_id for c in chunks)
        assert all(c.metadata.source == "people.csv" for c in chunks)

    def test_single_embedding_batch(self, service, embedder, people_csv):
        service.ingest(people_csv, "people.csv")
        assert len(embedder.batches) == 1
        assert len(embedder.batches[0]) == 5

    def test_large_csv_is_split(self, service, store):
        raw = _big_csv(600)
        result = service.ingest(raw, "big.csv")

        assert result.success is True
        assert 1 < result.chunks_stored < 600
        assert store.documents[result.document_id].metadata.row_count == 600

    def test_rejects_non_csv(self, service, store):
        result = service.ingest(b"hello", "notes.txt", 5, "text/plain")

        assert result.success is False
        assert result.error == "Only CSV files are allowed"
        assert store.list_documents() == []

    def test_accepts_csv_content_type(self, service):
        result = service.ingest(b"a,b\n1,2\n", "upload", 8, "text/csv")
        assert result.success is True

    def test_rejects_oversized_upload(self, service, store, people_csv):
        result = service.ingest(people_csv, "people.csv", 3 * 1024 * 1024 + 1)

        assert result.success is False
        assert "3MB" in result.error
        assert store.list_documents() == []

    def test_parse_failure_persists_nothing(self, service, store, embedder):
        result = service.ingest(b"\xff\xfe\xfa", "broken.csv")

        assert result.success is False
        assert result.document_id is None
        assert store.list_documents() == []
        assert embedder.batches == []

    def test_header_only_file(self, service, store):
        result = service.ingest(b"a,b\n", "empty.csv")

        assert result.success is False
        assert "no data rows" in result.error
        assert store.list_documents() == []

    def test_embedding_failure_persists_nothing(self, settings, store, generator, people_csv):
        service = RagService(settings, store, FakeEmbedder(fail=True), generator)
        try:
            result = service.ingest(people_csv, "people.csv")
        finally:
            service.close()

        assert result.success is False
        assert "embedding service unavailable" in result.error
        assert store.list_documents() == []
        assert store.count_chunks() == 0

    def test_chunk_failure_leaves_orphan_document(self, service, store, people_csv):
        with patch.object(
            store, "put_chunks", side_effect=StorageError("Failed to insert chunks: boom")
        ):
            result = service.ingest(people_csv, "people.csv")

        assert result.success is False
        assert result.document_id is not None
        assert [d.id for d in service.list_documents()] == [result.document_id]
        assert store.get_chunks(result.document_id) == []


class TestAsk:
    def test_answers_from_context(self, service, generator, people_csv):
        service.ingest(people_csv, "people.csv")

        answer = service.ask("How many people are listed?")

        assert answer == "There are 5 rows."
        # Gate prompt then answer prompt
        assert len(generator.prompts) == 2
        answer_prompt = generator.prompts[1]
        assert "people.csv (5 rows)" in answer_prompt
        assert "name: Alice, city: Paris" in answer_prompt
        assert "Question: How many people are listed?" in answer_prompt

    def test_refusal_short_circuits(self, service, embedder, generator, people_csv):
        service.ingest(people_csv, "people.csv")
        generator.verdict = "NO"

        with patch.object(service.store, "similarity_search") as search:
            answer = service.ask("What's the weather in Paris today?")

        assert answer == OUT_OF_SCOPE_MESSAGE
        assert len(generator.prompts) == 1
        assert embedder.queries == []
        search.assert_not_called()

    def test_refusal_state(self, service, generator, people_csv):
        service.ingest(people_csv, "people.csv")
        generator.verdict = "NO"

        outcome = service.run_query("Tell me a joke")

        assert outcome.state is QueryState.REFUSED
        assert outcome.retrieval is None

    def test_answered_state(self, service, people_csv):
        service.ingest(people_csv, "people.csv")

        outcome = service.run_query("List the cities")

        assert outcome.state is QueryState.ANSWERED
        assert outcome.retrieval.k == 10
        assert len(outcome.retrieval.hits) == 5
        assert outcome.retrieval.answer == outcome.answer

    def test_no_documents(self, service):
        with pytest.raises(ScopeError) as exc:
            service.ask("How many rows?")
        assert exc.value.message == NO_DOCUMENTS

    def test_unknown_scope(self, service, people_csv):
        service.ingest(people_csv, "people.csv")
        with pytest.raises(ScopeError) as exc:
            service.ask("How many rows?", ["00000000-0000-0000-0000-000000000000"])
        assert exc.value.message == NO_MATCHING_DOCUMENTS

    def test_scope_limits_context(self, service, generator, people_csv):
        first = service.ingest(people_csv, "people.csv")
        service.ingest(b"product,price\nlamp,12\n", "products.csv")

        service.ask("What products are there?", [first.document_id])

        answer_prompt = generator.prompts[-1]
        assert "people.csv (5 rows)" in answer_prompt
        assert "products.csv" not in answer_prompt
        assert "product: lamp" not in answer_prompt

    def test_empty_retrieval_still_asks_model(self, embedder, generator, people_csv):
        settings = make_settings(similarity_threshold=1.5)
        service = RagService(settings, DocumentStore(settings), embedder, generator)
        try:
            service.ingest(people_csv, "people.csv")
            outcome = service.run_query("How many rows?")
        finally:
            service.close()

        assert outcome.state is QueryState.ANSWERED
        assert outcome.retrieval.hits == []
        assert len(generator.prompts) == 2

    def test_blank_answer_uses_fallback(self, service, generator, people_csv):
        service.ingest(people_csv, "people.csv")
        generator.answer = "   "
        assert service.ask("Summarize the data") == NO_ANSWER_FALLBACK

    @pytest.mark.parametrize("question", ["", "   ", "\n\t"])
    def test_blank_question(self, service, generator, question):
        with pytest.raises(InvalidQuestionError):
            service.ask(question)
        assert generator.prompts == []

    def test_model_failure(self, service, generator, people_csv):
        service.ingest(people_csv, "people.csv")
        cause = ModelError("Text generation failed: 503")
        generator.error = cause

        with pytest.raises(ModelError) as exc:
            service.ask("How many rows?")

        assert exc.value.message == "Failed to process chat message"
        assert exc.value.original_error is cause

    def test_model_failure_state(self, service, generator, people_csv):
        service.ingest(people_csv, "people.csv")
        generator.error = ModelError("down")

        outcome = service.run_query("How many rows?")

        assert outcome.state is QueryState.FAILED
        assert isinstance(outcome.error, ModelError)
        assert outcome.answer is None

    def test_deadline_exceeded(self, store, embedder, people_csv):
        release = threading.Event()

        class SlowGenerator(FakeGenerator):
            def complete(self, prompt, temperature=None, max_new_tokens=None):
                release.wait(5)
                return "YES"

        service = RagService(
            make_settings(request_timeout_seconds=0.05), store, embedder, SlowGenerator()
        )
        try:
            service.ingest(people_csv, "people.csv")
            with pytest.raises(RequestTimeoutError):
                service.ask("How many rows?")
        finally:
            release.set()
            service.close()


class TestDocuments:
    def test_list_newest_first(self, service, store, people_csv):
        first = service.ingest(people_csv, "first.csv")
        second = service.ingest(people_csv, "second.csv")
        store.documents[first.document_id].uploaded_at = store.documents[
            second.document_id
        ].uploaded_at.replace(year=2000)

        summaries = service.list_documents()

        assert [s.id for s in summaries] == [second.document_id, first.document_id]
        assert summaries[0].filename == "second.csv"
        assert summaries[0].size == len(people_csv)
        assert summaries[0].metadata.row_count == 5

    def test_delete_cascades(self, service, store, people_csv):
        result = service.ingest(people_csv, "people.csv")

        assert service.delete_document(result.document_id).success is True
        assert service.list_documents() == []
        assert store.count_chunks() == 0

        with pytest.raises(ScopeError):
            service.ask("How many rows?")

    def test_failed_delete_keeps_document_answerable(self, service, store, people_csv):
        result = service.ingest(people_csv, "people.csv")

        with patch.object(store, "_save", side_effect=OSError("read-only")):
            assert service.delete_document(result.document_id).success is False

        assert [d.id for d in service.list_documents()] == [result.document_id]
        assert service.ask("How many people?") == "There are 5 rows."

    def test_delete_unknown(self, service):
        assert service.delete_document("missing").success is False
