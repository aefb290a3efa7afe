from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from ocisync_core.content import FileStore, MemoryStore, OciLayoutStore, ReferrerLister, TagLister, Target
from ocisync_core.descriptor import compute_descriptor
from ocisync_core.errors import (
    AlreadyExistsError,
    DigestMismatchError,
    DuplicateNameError,
    NotFoundError,
    SecurityError,
    UnsupportedError,
)
from ocisync_core.manifest import canonical_json
from ocisync_core.mediatype import ANNOTATION_REF_NAME, ANNOTATION_TITLE, OCI_EMPTY, OCI_IMAGE_MANIFEST


def _referrer_manifest(subject, artifact_type: str = "application/vnd.test.sig"):
    config = compute_descriptor(b"{}", OCI_EMPTY)
    data = canonical_json(
        {
            "schemaVersion": 2,
            "mediaType": OCI_IMAGE_MANIFEST,
            "artifactType": artifact_type,
            "config": config.to_dict(),
            "layers": [],
            "subject": subject.to_dict(),
        }
    )
    return compute_descriptor(data, OCI_IMAGE_MANIFEST), data


@pytest.fixture(params=["memory", "file", "oci"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return MemoryStore()
    if request.param == "file":
        return FileStore(tmp_path / "files")
    return OciLayoutStore(tmp_path / "layout")


def test_store_contract(store) -> None:
    assert isinstance(store, Target)
    assert isinstance(store, TagLister)
    assert isinstance(store, ReferrerLister)

    desc = compute_descriptor(b"hello", "text/plain")
    assert not store.exists(desc)
    with pytest.raises(NotFoundError):
        store.fetch(desc)

    store.push(desc, b"hello")
    assert store.exists(desc)
    assert store.fetch(desc) == b"hello"
    with pytest.raises(AlreadyExistsError):
        store.push(desc, b"hello")


def test_store_rejects_corrupt_push(store) -> None:
    desc = compute_descriptor(b"hello", "text/plain")
    with pytest.raises(DigestMismatchError):
        store.push(desc, b"hellp")
    assert not store.exists(desc)


def test_store_tag_and_resolve(store) -> None:
    desc = compute_descriptor(b"{}", OCI_EMPTY)
    with pytest.raises(NotFoundError):
        store.tag(desc, "v1")
    store.push(desc, b"{}")
    store.tag(desc, "v1")
    store.tag(desc, "latest")

    assert store.resolve("v1").digest == desc.digest
    assert store.resolve(desc.digest).digest == desc.digest
    assert store.tags() == ["latest", "v1"]
    with pytest.raises(NotFoundError):
        store.resolve("missing")
    with pytest.raises(ValueError):
        store.tag(desc, "")


def test_store_lists_referrers(store) -> None:
    subject = compute_descriptor(b"{}", OCI_EMPTY)
    store.push(subject, b"{}")
    sig, sig_data = _referrer_manifest(subject, "application/vnd.test.sig")
    sbom, sbom_data = _referrer_manifest(subject, "application/vnd.test.sbom")
    store.push(sig, sig_data)
    store.push(sbom, sbom_data)

    found = store.referrers(subject)
    assert sorted(item.digest for item in found) == sorted([sig.digest, sbom.digest])
    only_sbom = store.referrers(subject, "application/vnd.test.sbom")
    assert [item.digest for item in only_sbom] == [sbom.digest]
    assert only_sbom[0].artifact_type == "application/vnd.test.sbom"


def test_file_store_writes_titled_blobs(tmp_path: Path) -> None:
    store = FileStore(tmp_path)
    desc = compute_descriptor(b"content", "text/plain", annotations={ANNOTATION_TITLE: "notes.txt"})
    store.push(desc, b"content")
    assert (tmp_path / "notes.txt").read_bytes() == b"content"
    assert not list(tmp_path.glob(".ocisync-*"))


def test_file_store_add_tracks_file_by_name(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_bytes(b"alpha")
    store = FileStore(tmp_path)
    desc = store.add("a.txt", "text/plain")
    assert desc.annotations[ANNOTATION_TITLE] == "a.txt"
    assert store.fetch(desc) == b"alpha"
    with pytest.raises(DuplicateNameError):
        store.add("a.txt")
    with pytest.raises(FileNotFoundError):
        store.add("missing.txt")


def test_file_store_rejects_name_reuse_and_traversal(tmp_path: Path) -> None:
    store = FileStore(tmp_path / "out")
    first = compute_descriptor(b"one", "text/plain", annotations={ANNOTATION_TITLE: "same.txt"})
    second = compute_descriptor(b"two", "text/plain", annotations={ANNOTATION_TITLE: "same.txt"})
    store.push(first, b"one")
    with pytest.raises(DuplicateNameError):
        store.push(second, b"two")

    escape = compute_descriptor(b"x", "text/plain", annotations={ANNOTATION_TITLE: "../escape.txt"})
    with pytest.raises(SecurityError):
        store.push(escape, b"x")
    assert not (tmp_path / "escape.txt").exists()


def test_oci_layout_persists_index(tmp_path: Path) -> None:
    root = tmp_path / "layout"
    store = OciLayoutStore(root)
    desc = compute_descriptor(b"{}", OCI_EMPTY)
    store.push(desc, b"{}")
    store.tag(desc, "v1")

    marker = json.loads((root / "oci-layout").read_text(encoding="utf-8"))
    assert marker == {"imageLayoutVersion": "1.0.0"}
    assert (root / "blobs" / "sha256" / desc.parsed_digest.hex).read_bytes() == b"{}"
    index = json.loads((root / "index.json").read_text(encoding="utf-8"))
    assert index["manifests"][0]["annotations"][ANNOTATION_REF_NAME] == "v1"

    reopened = OciLayoutStore(root)
    assert reopened.resolve("v1") == desc
    assert reopened.tags() == ["v1"]


def test_oci_layout_referrers_survive_reopen(tmp_path: Path) -> None:
    root = tmp_path / "layout"
    store = OciLayoutStore(root)
    subject = compute_descriptor(b"{}", OCI_EMPTY)
    store.push(subject, b"{}")
    sig, sig_data = _referrer_manifest(subject)
    store.push(sig, sig_data)

    reopened = OciLayoutStore(root)
    assert [item.digest for item in reopened.referrers(subject)] == [sig.digest]
    assert reopened.resolve(sig.digest).media_type == OCI_IMAGE_MANIFEST


def test_oci_layout_rejects_unknown_version(tmp_path: Path) -> None:
    root = tmp_path / "layout"
    root.mkdir()
    (root / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "9.9.9"}), encoding="utf-8")
    with pytest.raises(UnsupportedError, match="9.9.9"):
        OciLayoutStore(root)


def test_memory_store_describe_names_the_store() -> None:
    assert MemoryStore("staging").describe() == "memory:staging"
    assert len(MemoryStore()) == 0


@pytest.mark.parametrize("kind", ["file", "oci"])
def test_concurrent_push_of_same_digest_writes_once(kind: str, tmp_path: Path) -> None:
    root = tmp_path / kind
    target = FileStore(root) if kind == "file" else OciLayoutStore(root)
    data = b"shared-blob-content" * 64
    desc = compute_descriptor(data, "application/octet-stream", annotations={ANNOTATION_TITLE: "shared.bin"})
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def push() -> None:
        barrier.wait()
        try:
            target.push(desc, data)
            outcome = "ok"
        except AlreadyExistsError:
            outcome = "exists"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=push) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["exists"] * (workers - 1) + ["ok"]
    assert target.fetch(desc) == data
    assert list(root.rglob(".ocisync-*")) == []
