from datetime import date, datetime, timezone

import pytest

from app.petmemorial.db import session_scope
from app.petmemorial.docstore import (
    SERVER_TIMESTAMP,
    DocumentStoreError,
    FirestoreDocumentStore,
    SqlDocumentStore,
    docstore_from_config,
)


def test_add_and_get_round_trips_native_dates(app):
    born = datetime(2012, 3, 4, tzinfo=timezone.utc)
    with session_scope(app) as s:
        doc_id = SqlDocumentStore(s).add("pet_profiles", {"name": "Thor", "birthDate": born, "imageUrls": ["https://x/1.jpg"]})

    with session_scope(app) as s:
        doc = SqlDocumentStore(s).get("pet_profiles", doc_id)
    assert doc["name"] == "Thor"
    assert doc["birthDate"] == born
    assert doc["imageUrls"] == ["https://x/1.jpg"]


def test_server_timestamp_resolved_on_write(app):
    before = datetime.now(timezone.utc)
    with session_scope(app) as s:
        store = SqlDocumentStore(s)
        doc_id = store.add("pet_profiles", {"createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP})
        doc = store.get("pet_profiles", doc_id)
    assert isinstance(doc["createdAt"], datetime)
    assert doc["createdAt"] >= before
    assert doc["createdAt"] == doc["updatedAt"]


def test_set_merge_keeps_unsubmitted_fields(app):
    with session_scope(app) as s:
        store = SqlDocumentStore(s)
        store.set("pet_profiles", "abc", {"name": "Luna", "tree": "Ipê"})
        store.set("pet_profiles", "abc", {"name": "Luna II"}, merge=True)
        assert store.get("pet_profiles", "abc") == {"name": "Luna II", "tree": "Ipê"}

        store.set("pet_profiles", "abc", {"name": "Luna III"})
        assert store.get("pet_profiles", "abc") == {"name": "Luna III"}


def test_delete_and_missing_documents(app):
    with session_scope(app) as s:
        store = SqlDocumentStore(s)
        store.set("pet_profiles", "abc", {"name": "Luna"})
        store.delete("pet_profiles", "abc")
        assert store.get("pet_profiles", "abc") is None
        # Deleting twice is a no-op.
        store.delete("pet_profiles", "abc")


def test_collections_are_isolated_and_listed_in_insert_order(app):
    with session_scope(app) as s:
        store = SqlDocumentStore(s)
        store.set("pet_profiles", "one", {"n": 1})
        store.set("pet_profiles", "two", {"n": 2})
        store.set("other", "one", {"n": 99})
        assert store.list("pet_profiles") == [("one", {"n": 1}), ("two", {"n": 2})]
        assert store.get("other", "one") == {"n": 99}


def test_docstore_from_config(app):
    with session_scope(app) as s:
        assert isinstance(docstore_from_config({"DOCSTORE_BACKEND": "sql"}, session=s), SqlDocumentStore)
    with pytest.raises(DocumentStoreError):
        docstore_from_config({"DOCSTORE_BACKEND": "sql"})
    with pytest.raises(DocumentStoreError):
        docstore_from_config({"DOCSTORE_BACKEND": "couchdb"})


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocRef:
    def __init__(self, coll, doc_id):
        self.coll = coll
        self.id = doc_id

    def get(self):
        return FakeSnapshot(self.id, self.coll.docs.get(self.id))

    def set(self, data, merge=False):
        self.coll.calls.append(("set", self.id, data, merge))
        base = self.coll.docs.get(self.id, {}) if merge else {}
        self.coll.docs[self.id] = {**base, **data}

    def delete(self):
        self.coll.calls.append(("delete", self.id))
        self.coll.docs.pop(self.id, None)


class FakeCollection:
    def __init__(self):
        self.docs = {}
        self.calls = []

    def document(self, doc_id):
        return FakeDocRef(self, doc_id)

    def add(self, data):
        ref = FakeDocRef(self, f"fs-{len(self.docs) + 1}")
        self.calls.append(("add", ref.id, data))
        self.docs[ref.id] = dict(data)
        return object(), ref

    def stream(self):
        return [FakeSnapshot(k, v) for k, v in self.docs.items()]


class FakeFirestore:
    def __init__(self):
        self.collections = {}

    def collection(self, name):
        return self.collections.setdefault(name, FakeCollection())


def test_firestore_add_maps_server_timestamp_and_dates():
    from google.cloud.firestore_v1 import SERVER_TIMESTAMP as FS_SERVER_TIMESTAMP

    client = FakeFirestore()
    store = FirestoreDocumentStore(client)
    doc_id = store.add("pet_profiles", {"name": "Thor", "birthDate": date(2012, 3, 4), "createdAt": SERVER_TIMESTAMP})

    assert doc_id == "fs-1"
    op, _, sent = client.collection("pet_profiles").calls[0]
    assert op == "add"
    assert sent["createdAt"] is FS_SERVER_TIMESTAMP
    assert sent["birthDate"] == datetime(2012, 3, 4, tzinfo=timezone.utc)
    assert sent["name"] == "Thor"


def test_firestore_set_forwards_merge_and_reads_back():
    client = FakeFirestore()
    store = FirestoreDocumentStore(client)
    store.set("pet_profiles", "abc", {"name": "Luna", "visits": 3})
    store.set("pet_profiles", "abc", {"name": "Luna Maria"}, merge=True)

    calls = client.collection("pet_profiles").calls
    assert [c[3] for c in calls] == [False, True]
    assert store.get("pet_profiles", "abc") == {"name": "Luna Maria", "visits": 3}
    assert store.get("pet_profiles", "missing") is None


def test_firestore_delete_and_list():
    client = FakeFirestore()
    store = FirestoreDocumentStore(client)
    store.set("pet_profiles", "a", {"name": "Amora"})
    store.set("pet_profiles", "b", {"name": "Bidu"})
    store.delete("pet_profiles", "a")
    assert store.list("pet_profiles") == [("b", {"name": "Bidu"})]
    assert store.list("other") == []
