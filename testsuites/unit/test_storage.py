import threading

import pytest

from visual_validation.config_loader import ConfigLoader
from visual_validation.errors import StorageError
from visual_validation.storage import (
    FileSystemBlobStorage,
    InMemoryBlobStorage,
    create_storage,
    validate_key,
)


@pytest.fixture(params=["memory", "filesystem"])
def storage(request, tmp_path):
    if request.param == "memory":
        return InMemoryBlobStorage()
    return FileSystemBlobStorage(tmp_path / "blobs")


def test_put_get_list_delete(storage):
    storage.put("models/home/v000001.npz", b"one")
    storage.put("models/home/LATEST", b"1")
    storage.put("corpus/home/00000001.npy", b"pixels")

    assert storage.get("models/home/v000001.npz") == b"one"
    assert storage.exists("models/home/LATEST")
    assert storage.list("models/") == ["models/home/LATEST", "models/home/v000001.npz"]
    assert storage.list("models/other/") == []

    storage.delete("models/home/LATEST")
    storage.delete("models/home/LATEST")
    assert not storage.exists("models/home/LATEST")
    with pytest.raises(StorageError):
        storage.get("models/home/LATEST")


def test_put_replaces_whole_value(storage):
    storage.put("pointer", b"1")
    storage.put("pointer", b"22")
    assert storage.get("pointer") == b"22"


@pytest.mark.parametrize("key", ["", "../escape", "/absolute", "a//b", "a/ b"])
def test_invalid_keys_are_rejected(key):
    with pytest.raises(StorageError):
        validate_key(key)


def test_lock_serializes_writers(storage):
    counter = {"value": 0}

    def bump():
        for _ in range(50):
            with storage.lock("counter"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 200


def test_filesystem_storage_leaves_no_temp_files(tmp_path):
    storage = FileSystemBlobStorage(tmp_path)
    storage.put("a/b", b"data")

    leftovers = [p.name for p in (tmp_path / "a").iterdir() if p.name != "b"]
    assert leftovers == []
    assert storage.list() == ["a/b"]


def test_create_storage_from_config(monkeypatch, tmp_path):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    assert isinstance(create_storage(ConfigLoader()), InMemoryBlobStorage)

    ConfigLoader.reset()
    monkeypatch.setenv("STORAGE_BACKEND", "filesystem")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "root"))
    storage = create_storage(ConfigLoader())
    assert isinstance(storage, FileSystemBlobStorage)
    assert storage.root == tmp_path / "root"

    ConfigLoader.reset()
    monkeypatch.setenv("STORAGE_BACKEND", "s3")
    with pytest.raises(StorageError):
        create_storage(ConfigLoader())
