import pytest

from app.petmemorial.storage import (
    FirebaseStorage,
    LocalStorage,
    S3Storage,
    StorageError,
    StorageUnavailableError,
    missing_storage_settings,
    storage_from_config,
)


def test_local_storage_put_open_and_public_url(tmp_path):
    storage = LocalStorage(root=tmp_path, base_url="http://localhost:5000/")
    storage.put_bytes("pet_images/1_rex.png", b"png-bytes", content_type="image/png")

    assert storage.exists("pet_images/1_rex.png")
    with storage.open("pet_images/1_rex.png") as fh:
        assert fh.read() == b"png-bytes"
    assert storage.public_url("pet_images/1_rex.png") == "http://localhost:5000/media/pet_images/1_rex.png"


def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalStorage(root=tmp_path / "storage")
    with pytest.raises(StorageError):
        storage.put_bytes("../outside.txt", b"x")


def test_local_is_default_backend(tmp_path):
    storage = storage_from_config({"STORAGE_LOCAL_ROOT": str(tmp_path)}, base_url="http://localhost/")
    assert isinstance(storage, LocalStorage)
    assert storage.public_url("a.png") == "http://localhost/media/a.png"


def test_public_base_url_setting_wins(tmp_path):
    storage = storage_from_config(
        {"STORAGE_LOCAL_ROOT": str(tmp_path), "PUBLIC_BASE_URL": "https://memorial.example.com"},
        base_url="http://localhost/",
    )
    assert storage.public_url("a.png") == "https://memorial.example.com/media/a.png"


def test_s3_missing_settings_is_unavailable():
    config = {"STORAGE_BACKEND": "s3", "S3_BUCKET": "pets"}
    assert missing_storage_settings(config) == ["S3_ENDPOINT", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"]
    with pytest.raises(StorageUnavailableError):
        storage_from_config(config)


def test_s3_public_urls():
    config = {
        "STORAGE_BACKEND": "s3",
        "S3_ENDPOINT": "nyc3.digitaloceanspaces.com",
        "S3_BUCKET": "pets",
        "S3_ACCESS_KEY_ID": "key",
        "S3_SECRET_ACCESS_KEY": "secret",
    }
    storage = storage_from_config(config)
    assert isinstance(storage, S3Storage)
    assert storage.public_url("pet_images/1_a b.png") == "https://pets.nyc3.digitaloceanspaces.com/pet_images/1_a%20b.png"

    storage = storage_from_config({**config, "S3_PUBLIC_BASE_URL": "https://cdn.example.com/"})
    assert storage.public_url("pet_images/1_a.png") == "https://cdn.example.com/pet_images/1_a.png"


def test_firebase_backend_selected_when_bucket_configured():
    with pytest.raises(StorageUnavailableError):
        storage_from_config({"STORAGE_BACKEND": "firebase"})
    storage = storage_from_config({"STORAGE_BACKEND": "firebase", "FIREBASE_STORAGE_BUCKET": "pets.appspot.com"})
    assert isinstance(storage, FirebaseStorage)
    assert storage.bucket_name == "pets.appspot.com"


def test_unknown_backend_is_unavailable():
    with pytest.raises(StorageUnavailableError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})


class FakeBlob:
    def __init__(self, bucket, key):
        self.bucket = bucket
        self.name = key
        self.public = False

    def upload_from_string(self, data, content_type=None):
        self.bucket.objects[self.name] = (data, content_type)
        self.bucket.blobs[self.name] = self

    def make_public(self):
        self.public = True

    def download_as_bytes(self):
        return self.bucket.objects[self.name][0]

    def exists(self):
        return self.name in self.bucket.objects

    @property
    def public_url(self):
        return f"https://storage.googleapis.com/memorial-pet.appspot.com/{self.name}"


class FakeBucket:
    def __init__(self):
        self.objects = {}
        self.blobs = {}

    def blob(self, key):
        return self.blobs.get(key) or FakeBlob(self, key)


@pytest.fixture()
def firebase_bucket(monkeypatch):
    bucket = FakeBucket()
    monkeypatch.setattr(FirebaseStorage, "_bucket", lambda self: bucket)
    return bucket


def test_firebase_upload_is_made_public(firebase_bucket):
    storage = FirebaseStorage(bucket_name="memorial-pet.appspot.com")
    storage.put_bytes("pet_images/1_rex.png", b"png", content_type="image/png")

    assert firebase_bucket.objects["pet_images/1_rex.png"] == (b"png", "image/png")
    assert firebase_bucket.blobs["pet_images/1_rex.png"].public
    assert storage.public_url("pet_images/1_rex.png") == (
        "https://storage.googleapis.com/memorial-pet.appspot.com/pet_images/1_rex.png"
    )


def test_firebase_open_and_exists(firebase_bucket):
    storage = FirebaseStorage(bucket_name="memorial-pet.appspot.com")
    assert not storage.exists("pet_images/2_luna.jpg")
    storage.put_bytes("pet_images/2_luna.jpg", b"jpg")
    assert storage.exists("pet_images/2_luna.jpg")
    assert storage.open("pet_images/2_luna.jpg").read() == b"jpg"
    # Missing content type falls back to a generic one.
    assert firebase_bucket.objects["pet_images/2_luna.jpg"][1] == "application/octet-stream"
