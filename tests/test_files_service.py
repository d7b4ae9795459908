from io import BytesIO

import pytest
from PIL import Image

from squirrel.src.modules.errors import (
    DuplicateFolderException,
    EntityNotFoundException,
    FileTypeNotAllowedException,
    FolderException,
)
from squirrel.src.modules.file_storage import LocalFileStorageStrategy, compute_hash
from squirrel.src.modules.files_service import FileService, FileUpload
from squirrel.src.modules.folders_service import FolderService


def _png(width=3, height=2) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), "red").save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorageStrategy(tmp_path / "files")


@pytest.mark.asyncio
async def test_upload_download_and_dedupe(session, storage):
    files = FileService(session, storage)
    first = await files.upload(b"hello world", "notes.txt", uploaded_by="alice")
    second = await files.upload(b"hello world", "copy.txt")
    assert first.file_hash == compute_hash(b"hello world")
    assert first.file_hash == second.file_hash
    assert first.content_type == "text/plain"
    assert first.current_version == 1
    assert await files.get_usage_count(first.file_hash) == 2

    download = await files.download(first.id)
    assert download.data == b"hello world"
    assert download.file_name == "notes.txt"

    await files.delete(first.id)
    assert await storage.exists(first.file_path)
    await files.delete(second.id)
    assert not await storage.exists(first.file_path)
    with pytest.raises(EntityNotFoundException):
        await files.get_by_id(second.id)


@pytest.mark.asyncio
async def test_upload_rejects_unknown_extension(session, storage):
    with pytest.raises(FileTypeNotAllowedException):
        await FileService(session, storage).upload(b"MZ", "tool.exe")


@pytest.mark.asyncio
async def test_image_dimensions_are_reported(session, storage):
    image = await FileService(session, storage).upload(_png(), "pixel.png")
    assert image.is_image
    assert (image.width, image.height) == (3, 2)


@pytest.mark.asyncio
async def test_new_versions(session, storage):
    files = FileService(session, storage)
    original = await files.upload(b"v1", "doc.txt")
    same = await files.upload_new_version(original.id, b"v1")
    assert same.current_version == 1

    updated = await files.upload_new_version(original.id, b"v2", change_description="fix typo", uploaded_by="bob")
    assert updated.current_version == 2
    assert (await files.download(original.id)).data == b"v2"
    versions = await files.get_versions(original.id)
    assert [v.version_number for v in versions] == [2, 1]
    assert versions[0].change_description == "fix typo"
    assert not await storage.exists(original.file_path)


@pytest.mark.asyncio
async def test_folder_tree_and_paths(session, storage):
    files = FileService(session, storage)
    folders = FolderService(session, files=files)
    docs = await folders.create("Docs")
    manuals = await folders.create("Manuals", parent_id=docs.id)
    uploaded = await files.upload(b"pdf", "guide.pdf", folder_id=manuals.id)

    assert (await files.get_by_path("docs/manuals/GUIDE.pdf")).id == uploaded.id
    with pytest.raises(EntityNotFoundException):
        await files.get_by_path("docs/guide.pdf")

    crumbs = await folders.get_breadcrumb(manuals.id)
    assert [c.name for c in crumbs] == ["Docs", "Manuals"]
    tree = await folders.get_tree()
    assert tree[0].children[0].file_count == 1
    assert (await folders.get(docs.id)).subfolder_count == 1

    with pytest.raises(DuplicateFolderException):
        await folders.create("manuals", parent_id=docs.id)
    with pytest.raises(FolderException):
        await folders.move(docs.id, manuals.id)


@pytest.mark.asyncio
async def test_folder_delete_requires_recursive(session, storage):
    files = FileService(session, storage)
    folders = FolderService(session, files=files)
    root = await folders.create("Root")
    await folders.create("Child", parent_id=root.id)
    uploaded = await files.upload(b"data", "data.txt", folder_id=root.id)

    with pytest.raises(FolderException):
        await folders.delete(root.id)
    await folders.delete(root.id, recursive=True)
    assert await folders.get_roots() == []
    with pytest.raises(EntityNotFoundException):
        await files.get_by_id(uploaded.id)


@pytest.mark.asyncio
async def test_move_search_and_batch_upload(session, storage):
    files = FileService(session, storage)
    folders = FolderService(session, files=files)
    target = await folders.create("Target")
    results = await files.upload_many(
        [FileUpload(data=b"a", file_name="alpha.txt"), FileUpload(data=b"b", file_name="beta.md", description="alpha notes")],
        uploaded_by="carol",
    )
    moved = await files.move(results[0].id, target.id)
    assert moved.folder_id == target.id
    assert [f.file_name for f in await files.get_by_folder(target.id)] == ["alpha.txt"]

    found = await files.search("alpha")
    assert sorted(f.file_name for f in found) == ["alpha.txt", "beta.md"]
    assert [f.file_name for f in await files.search(uploaded_by="CAROL", folder_id=target.id)] == ["alpha.txt"]
