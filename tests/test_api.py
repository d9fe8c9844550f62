"""End-to-end tests for the CareNotes application container."""

import pytest

from carenotes.api import CareNotes
from carenotes.config import StoreConfig
from carenotes.errors import StorageError
from carenotes.providers import static_factory
from carenotes.sync import PullResult

from conftest import MockEmbeddingProvider


class RecordingTransport:
    def __init__(self):
        self.pushed = []

    def pull(self, cursor):
        return PullResult(cursor=cursor)

    def push(self, changes):
        self.pushed.extend(changes)
        return len(changes)

    def close(self):
        pass


def test_rows_written_before_model_load_are_indexed_on_ready(notes):
    patient = notes.add_node("Patient", "Jane Doe", payload={"gender": "Female"})
    assert notes.store.count_unindexed()["nodes"] == 1

    notes.load_model(background=False)

    assert notes.is_embedding_ready
    assert notes.store.get_node_embedding(patient.id) is not None


def test_writes_after_ready_are_indexed_on_notify(notes):
    notes.load_model(background=False)

    patient = notes.add_node("Patient", "Jane Doe")
    diagnosis = notes.add_node(
        "Diagnosis", "Type 2 diabetes", parentid=patient.id,
        payload={"severity": "Moderate", "status": "Chronic"},
    )
    actor = notes.add_actor("Person", "Dr Grey", metadata="endocrinology")

    assert notes.store.count_unindexed() == {"nodes": 0, "actors": 0}
    assert notes.store.get_node_embedding(diagnosis.id) is not None
    assert notes.store.get_actor_vector(actor.id) is not None


def test_search_text_finds_indexed_record(notes):
    notes.load_model(background=False)
    patient = notes.add_node("Patient", "Jane Doe")
    notes.add_node("Patient", "John Roe")

    results = notes.search_text(f"Jane Doe Patient {patient.universalcode}", limit=1)

    assert [r["id"] for r in results] == [patient.id]


def test_search_by_vector(notes, mock_embedding_provider):
    notes.load_model(background=False)
    actor = notes.add_actor("Organisation", "St Mary's")
    vector = notes.generate(f"St Mary's Organisation {actor.globalcode}")

    results = notes.search(vector, 3, kind="actors")

    assert results[0]["id"] == actor.id


def test_search_before_ready_is_empty(notes):
    notes.add_node("Patient", "Jane Doe")
    assert notes.search_text("Jane") == []


def test_child_must_attach_to_patient(notes):
    patient = notes.add_node("Patient", "Jane Doe")
    diagnosis = notes.add_node("Diagnosis", "Asthma", parentid=patient.id)
    with pytest.raises(ValueError, match="attach to a Patient"):
        notes.add_node("Prescription", "Inhaler", parentid=diagnosis.id)


def test_missing_parent_is_a_storage_error(notes):
    with pytest.raises(StorageError):
        notes.add_node("Diagnosis", "Asthma", parentid="nope")


def test_reads(notes):
    patient = notes.add_node("Patient", "Jane Doe")
    notes.add_node("Vitals", "Heart rate", parentid=patient.id, payload={"value": "72", "unit": "bpm"})
    notes.add_event("stream-1", 3, patient.id, "care-team")

    assert [r["title"] for r in notes.get_patients()] == ["Jane Doe"]
    assert [r["title"] for r in notes.get_nodes(patient.id)] == ["Heart rate"]
    assert notes.get_events("stream-1")[0]["refid"] == patient.id


def test_events_do_not_notify(notes):
    calls = []
    notes.bus.subscribe(lambda: calls.append(1))
    notes.add_event("stream-1", 1, "ref", "private")
    assert calls == []


def test_status(notes):
    notes.add_node("Patient", "Jane Doe")
    info = notes.status()

    assert info["embedding"]["state"] == "unloaded"
    assert info["indexing"]["unindexed"] == {"nodes": 1, "actors": 0}
    assert info["sync"]["configured"] is False
    assert info["sync"]["pending_changes"] == 1


def test_local_only_sync(notes):
    assert notes.sync() is False


def test_sync_with_environment_remote(tmp_path, monkeypatch):
    monkeypatch.setenv("CARENOTES_SYNC_URL", "https://sync.example.com")
    monkeypatch.setenv("CARENOTES_SYNC_TOKEN", "secret")
    transport = RecordingTransport()

    with CareNotes(
        config=StoreConfig(path=tmp_path),
        embedding_factory=static_factory(MockEmbeddingProvider()),
        transport_factory=lambda remote: transport,
        ops_log=False,
    ) as notes:
        patient = notes.add_node("Patient", "Jane Doe")
        assert notes.sync() is True

    assert [c["row"]["id"] for c in transport.pushed] == [patient.id]


def test_store_path_creates_config_and_ops_log(tmp_path):
    store_dir = tmp_path / "store"
    with CareNotes(store_dir, embedding_factory=static_factory(MockEmbeddingProvider())) as notes:
        notes.add_node("Patient", "Jane Doe")
        assert notes.store_path == store_dir.resolve()

    assert (store_dir / "carenotes.toml").exists()
    assert (store_dir / "carenotes.db").exists()
    assert "Added Patient" in (store_dir / "carenotes-ops.log").read_text()


def test_reopen_keeps_records(tmp_path):
    factory = static_factory(MockEmbeddingProvider())
    with CareNotes(tmp_path, embedding_factory=factory, ops_log=False) as notes:
        notes.add_node("Patient", "Jane Doe")
    with CareNotes(tmp_path, embedding_factory=factory, ops_log=False) as notes:
        assert [r["title"] for r in notes.get_patients()] == ["Jane Doe"]
