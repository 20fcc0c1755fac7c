from pathlib import Path

import pytest

from chunkdrop.storage import LocalBlobStore


def test_local_blob_store_put_list_delete(tmp_path: Path) -> None:
    source = tmp_path / "source.bin"
    source.write_bytes(b"payload")
    store = LocalBlobStore(tmp_path / "bucket")

    store.put_file("user-1/report.bin", source)
    store.put_file("user-2/other.bin", source)

    listed = store.list_objects("user-1/")
    assert [item.key for item in listed] == ["user-1/report.bin"]
    assert listed[0].size == len(b"payload")
    assert (tmp_path / "bucket" / "user-1" / "report.bin").read_bytes() == b"payload"

    store.delete_key("user-1/report.bin")
    store.delete_key("user-1/report.bin")
    assert store.list_objects("user-1/") == []
    assert [item.key for item in store.list_objects()] == ["user-2/other.bin"]


def test_local_blob_store_rejects_keys_outside_root(tmp_path: Path) -> None:
    source = tmp_path / "source.bin"
    source.write_bytes(b"x")
    store = LocalBlobStore(tmp_path / "bucket")

    with pytest.raises(ValueError):
        store.put_file("../escape.bin", source)
    assert not (tmp_path / "escape.bin").exists()
