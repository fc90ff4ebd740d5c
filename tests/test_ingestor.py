"""Tests for archive ingestion."""

import hashlib

import pytest

from registry_proxy.domain.errors import (
    ConfigurationError,
    ExtractionError,
    ManifestParseError,
    NameMismatchError,
)
from registry_proxy.services.ingestor import ArchiveIngestor, relative_tarball_path


@pytest.mark.asyncio
async def test_ingest_builds_record(make_tgz, ingestor, store):
    archive = make_tgz("left-pad", "1.3.0")
    record = await ingestor.ingest("left-pad", archive)

    raw = archive.read_bytes()
    digest = hashlib.sha1(raw).hexdigest()

    assert record.name == "left-pad"
    assert record.version == "1.3.0"
    assert record.digest == digest
    assert record.object_path == store.objects_dir / f"{digest}.tgz"
    assert record.object_path.read_bytes() == raw
    assert record.relative_tarball == f"left-pad/-/{digest}.tgz"
    assert record.tarball_url == record.relative_tarball
    assert not record.is_rewritten


@pytest.mark.asyncio
async def test_metadata_document_shape(make_tgz, ingestor):
    archive = make_tgz("left-pad", "1.3.0")
    record = await ingestor.ingest("left-pad", archive)
    doc = record.metadata.to_document()

    assert doc["name"] == "left-pad"
    assert doc["dist-tags"] == {"latest": "1.3.0"}
    assert doc["modified"].endswith("Z")
    assert list(doc["versions"]) == ["1.3.0"]

    version = doc["versions"]["1.3.0"]
    assert version["_hasShrinkwrap"] is False
    assert version["dependencies"] == {}
    assert version["devDependencies"] == {}
    assert version["peerDependencies"] == {}
    assert version["optionalDependencies"] == {}
    assert version["bundleDependencies"] == []
    assert version["bin"] == {}
    assert version["directories"] == {}
    assert version["engines"] == {}
    assert version["dist"]["shasum"] == record.digest
    assert version["dist"]["integrity"].startswith("sha512-")


@pytest.mark.asyncio
async def test_manifest_fields_are_copied(make_tgz, ingestor):
    archive = make_tgz(
        "my-cli",
        "2.0.0",
        manifest={
            "dependencies": {"left-pad": "^1.3.0"},
            "devDependencies": {"pytest-ish": "1.0.0"},
            "peerDependencies": {"react": ">=18"},
            "optionalDependencies": {"fsevents": "*"},
            "bundledDependencies": ["left-pad"],
            "bin": "./cli.js",
            "engines": {"node": ">=18"},
            "directories": None,
            "scripts": {"test": "exit 0"},
        },
    )
    record = await ingestor.ingest("my-cli", archive)
    version = record.metadata.to_document()["versions"]["2.0.0"]

    assert version["dependencies"] == {"left-pad": "^1.3.0"}
    assert version["devDependencies"] == {"pytest-ish": "1.0.0"}
    assert version["peerDependencies"] == {"react": ">=18"}
    assert version["optionalDependencies"] == {"fsevents": "*"}
    assert version["bundleDependencies"] == ["left-pad"]
    assert version["bin"] == {"my-cli": "./cli.js"}
    assert version["engines"] == {"node": ">=18"}
    assert version["directories"] == {}
    assert "scripts" not in version


@pytest.mark.asyncio
async def test_scoped_package_tarball_path_is_encoded(make_tgz, ingestor):
    archive = make_tgz("@scope/pkg", "0.1.0")
    record = await ingestor.ingest("@scope/pkg", archive)

    assert record.relative_tarball == f"%40scope%2Fpkg/-/{record.digest}.tgz"
    assert relative_tarball_path("@scope/pkg", "abc") == "%40scope%2Fpkg/-/abc.tgz"


@pytest.mark.asyncio
async def test_manifest_at_archive_root(make_tgz, ingestor):
    archive = make_tgz("flat", "1.0.0", root="")
    record = await ingestor.ingest("flat", archive)
    assert record.version == "1.0.0"


@pytest.mark.asyncio
async def test_digest_is_deterministic(make_tgz, tmp_path):
    archive = make_tgz("left-pad", "1.3.0")
    first = await ArchiveIngestor(tmp_path / "a").ingest("left-pad", archive)
    second = await ArchiveIngestor(tmp_path / "b").ingest("left-pad", archive)

    assert first.digest == second.digest
    assert first.object_path.name == second.object_path.name


@pytest.mark.asyncio
async def test_name_mismatch(make_tgz, ingestor):
    archive = make_tgz("right-pad")
    with pytest.raises(NameMismatchError) as exc_info:
        await ingestor.ingest("left-pad", archive)
    assert exc_info.value.manifest_name == "right-pad"
    assert "left-pad is called right-pad" in str(exc_info.value)


@pytest.mark.asyncio
async def test_not_an_archive(tmp_path, ingestor):
    archive = tmp_path / "broken.tgz"
    archive.write_bytes(b"this is not a gzip file")

    with pytest.raises(ExtractionError) as exc_info:
        await ingestor.ingest("broken", archive)
    assert exc_info.value.returncode != 0
    assert exc_info.value.output


@pytest.mark.asyncio
async def test_missing_manifest(tmp_path, ingestor):
    import tarfile

    archive = tmp_path / "empty.tgz"
    with tarfile.open(archive, "w:gz"):
        pass

    with pytest.raises(ManifestParseError):
        await ingestor.ingest("empty", archive)


@pytest.mark.asyncio
async def test_malformed_manifest(make_tgz, ingestor):
    archive = make_tgz("bad", manifest_bytes=b"{not json")
    with pytest.raises(ManifestParseError):
        await ingestor.ingest("bad", archive)


@pytest.mark.asyncio
async def test_manifest_without_version(make_tgz, ingestor):
    archive = make_tgz("noversion", manifest_bytes=b'{"name": "noversion"}')
    with pytest.raises(ManifestParseError):
        await ingestor.ingest("noversion", archive)


@pytest.mark.asyncio
async def test_missing_archive(tmp_path, ingestor):
    with pytest.raises(ConfigurationError):
        await ingestor.ingest("ghost", tmp_path / "ghost.tgz")


@pytest.mark.asyncio
async def test_no_temporary_objects_left_behind(make_tgz, ingestor, store):
    await ingestor.ingest("left-pad", make_tgz("left-pad"))
    names = [p.name for p in store.objects_dir.iterdir()]
    assert len(names) == 1
    assert names[0].endswith(".tgz")
