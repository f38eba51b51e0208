"""Tests for bundle import (extraction, validation, collision handling, commit)."""

import gc
import json
import zipfile
from pathlib import Path
from unittest import mock

import pytest

from nubrub.config import MAX_ARCHIVE_ENTRIES, MAX_MANIFEST_BYTES
from nubrub.errors import (
    BundleNotFoundError,
    FileOperationError,
    InvalidStateError,
    PackErrorCode,
    PackExistsError,
    PackValidationError,
    UnsafePathError,
)
from nubrub.importer import (
    CollisionPolicy,
    ImportOutcome,
    ImportState,
    PackImportSession,
    import_bundle,
)


def tree(root: Path) -> set[str]:
    """Every path under root, relative, for before/after comparisons."""
    return {str(p.relative_to(root)) for p in root.rglob("*")}


def glass_manifest(name="Glass Remix", rub=("rub1.wav", "rub2.wav"), finish=("done.wav",)):
    return {"name": name, "version": "1.2", "rubsounds": list(rub), "finishsound": list(finish)}


@pytest.fixture
def glass_bundle(make_bundle):
    return make_bundle(glass_manifest(), sounds=["rub1.wav", "rub2.wav", "done.wav"])


class TestImportHappyPath:
    """Tests for a valid bundle."""

    def test_import_creates_pack(self, repository, glass_bundle, packs_root):
        result = import_bundle(glass_bundle, repository)

        assert result.outcome == ImportOutcome.CREATED
        assert result.pack_id == "Glass_Remix"
        record = repository.get_pack("Glass_Remix")
        assert record.name == "Glass Remix"
        assert record.version == "1.2"
        assert record.manifest.rub_sounds == ("rub1.wav", "rub2.wav")
        assert record.manifest.finish_sounds == ("done.wav",)
        assert sorted(p.name for p in (packs_root / "Glass_Remix").iterdir()) == [
            "done.wav",
            "pack.json",
            "rub1.wav",
            "rub2.wav",
        ]

    def test_state_machine(self, repository, glass_bundle):
        with PackImportSession(glass_bundle, repository) as session:
            assert session.state == ImportState.OPENED
            work_dir = session.extract()
            assert session.state == ImportState.EXTRACTED
            assert work_dir.is_dir()
            session.validate()
            assert session.state == ImportState.READY_TO_COMMIT
            session.commit()
            assert session.state == ImportState.COMMITTED
        assert not work_dir.exists()

    def test_directory_bundle(self, repository, make_pack, tmp_path):
        source = make_pack("Folder Pack", rub=("a.wav",), root=tmp_path / "incoming")
        result = import_bundle(source, repository)
        assert result.pack_id == "Folder_Pack"

    def test_preview_and_summary(self, repository, glass_bundle):
        with PackImportSession(glass_bundle, repository) as session:
            session.validate()
            preview = session.preview()
            assert preview.name == "Glass Remix"
            assert [s.filename for s in preview.rub_sounds] == ["rub1.wav", "rub2.wav"]
            assert preview.rub_sounds[0].duration_sec == pytest.approx(0.1)
            assert preview.collides_with is None

            text = session.summary_text()
        assert "Pack: Glass Remix" in text
        assert "Rub sounds (2):" in text
        assert "done.wav (0.1s)" in text

    def test_manifest_is_reserialized(self, repository, make_bundle, packs_root):
        manifest = glass_manifest(rub=("rub1.wav",), finish=())
        manifest["author"] = "someone"
        bundle = make_bundle(manifest, sounds=["rub1.wav"])

        import_bundle(bundle, repository)

        written = json.loads((packs_root / "Glass_Remix" / "pack.json").read_text(encoding="utf-8"))
        assert written == {
            "name": "Glass Remix",
            "version": "1.2",
            "rubsounds": ["rub1.wav"],
            "finishsound": [],
        }

    def test_unreferenced_files_not_copied(self, repository, make_bundle, packs_root):
        bundle = make_bundle(
            glass_manifest(rub=("rub1.wav",), finish=()),
            sounds=["rub1.wav", "extra.wav"],
            extra={"readme.txt": b"hi", "nested/rub1.wav": b"ignored"},
        )
        import_bundle(bundle, repository)
        assert sorted(p.name for p in (packs_root / "Glass_Remix").iterdir()) == ["pack.json", "rub1.wav"]


class TestImportRejection:
    """Invalid bundles never touch the packs root."""

    def test_missing_asset_leaves_root_unchanged(self, repository, make_bundle, packs_root):
        bundle = make_bundle(glass_manifest(), sounds=["rub1.wav", "rub2.wav"])
        before = tree(packs_root)

        session = PackImportSession(bundle, repository)
        work_dir = session.extract()
        with pytest.raises(PackValidationError) as exc_info:
            session.validate()

        assert exc_info.value.error_code == PackErrorCode.ASSET_INVALID
        assert any("done.wav" in reason for reason in exc_info.value.reasons)
        assert session.state == ImportState.REJECTED
        assert session.error is exc_info.value
        assert tree(packs_root) == before
        assert not work_dir.exists()

    def test_no_manifest(self, repository, make_bundle):
        bundle = make_bundle(None, sounds=["rub1.wav"])
        with pytest.raises(PackValidationError) as exc_info:
            import_bundle(bundle, repository)
        assert exc_info.value.error_code == PackErrorCode.BUNDLE_INVALID

    def test_manifest_in_subdirectory_does_not_count(self, repository, make_bundle):
        bundle = make_bundle(None, extra={"inner/pack.json": json.dumps(glass_manifest())})
        with pytest.raises(PackValidationError):
            import_bundle(bundle, repository)

    def test_deeply_nested_manifest(self, repository, make_bundle):
        depth = 50_000
        text = '{"name": "Deep", "x": ' + "[" * depth + "]" * depth + "}"
        bundle = make_bundle(None, sounds=["rub1.wav"], extra={"pack.json": text})

        session = PackImportSession(bundle, repository)
        with pytest.raises(PackValidationError) as exc_info:
            session.validate()

        assert exc_info.value.error_code == PackErrorCode.MANIFEST_INVALID
        assert session.state == ImportState.REJECTED
        assert session.work_dir is None

    def test_invalid_manifest(self, repository, make_bundle):
        bundle = make_bundle({"name": "bad/name", "rubsounds": ["rub1.wav"]}, sounds=["rub1.wav"])
        with pytest.raises(PackValidationError) as exc_info:
            import_bundle(bundle, repository)
        assert exc_info.value.error_code == PackErrorCode.MANIFEST_INVALID

    def test_non_wav_asset(self, repository, make_bundle):
        bundle = make_bundle(
            glass_manifest(rub=("song.mp3",), finish=()), extra={"song.mp3": b"ID3..."}
        )
        with pytest.raises(PackValidationError):
            import_bundle(bundle, repository)

    def test_too_many_assets(self, repository, make_bundle):
        names = [f"r{i}.wav" for i in range(21)]
        bundle = make_bundle(glass_manifest(rub=names, finish=()), sounds=names)
        with pytest.raises(PackValidationError, match="at most 20"):
            import_bundle(bundle, repository)

    def test_header_check_is_opt_in(self, repository, make_bundle):
        bundle = make_bundle(
            glass_manifest(rub=("fake.wav",), finish=()), extra={"fake.wav": b"not audio"}
        )
        with pytest.raises(PackValidationError, match="not a WAV"):
            import_bundle(bundle, repository, verify_wav_headers=True)
        assert import_bundle(bundle, repository, verify_wav_headers=False).outcome == ImportOutcome.CREATED

    def test_missing_bundle(self, repository, tmp_path):
        with pytest.raises(BundleNotFoundError):
            import_bundle(tmp_path / "nope.nubrub", repository)

    def test_corrupt_archive(self, repository, tmp_path):
        bundle = tmp_path / "corrupt.nubrub"
        bundle.write_bytes(b"PK\x03\x04 this is not really a zip")
        with pytest.raises(PackValidationError) as exc_info:
            import_bundle(bundle, repository)
        assert exc_info.value.error_code == PackErrorCode.BUNDLE_INVALID

    def test_commit_before_validate(self, repository, glass_bundle):
        with PackImportSession(glass_bundle, repository) as session:
            with pytest.raises(InvalidStateError):
                session.commit()


class TestArchiveHardening:
    @pytest.mark.parametrize(
        "entry",
        ["../evil.wav", "/abs/evil.wav", "C:/evil.wav", "a/../../evil.wav", "..\\evil.wav"],
    )
    def test_unsafe_entries_reject_bundle(self, repository, make_bundle, packs_root, entry):
        bundle = make_bundle(glass_manifest(rub=("rub1.wav",), finish=()), sounds=["rub1.wav"], extra={entry: b"x"})
        before = tree(packs_root)
        with pytest.raises(UnsafePathError):
            import_bundle(bundle, repository)
        assert tree(packs_root) == before
        assert not (packs_root.parent / "evil.wav").exists()

    def test_too_many_entries(self, repository, make_bundle):
        extra = {f"junk{i}.txt": b"x" for i in range(MAX_ARCHIVE_ENTRIES)}
        bundle = make_bundle(glass_manifest(rub=("rub1.wav",), finish=()), sounds=["rub1.wav"], extra=extra)
        with pytest.raises(PackValidationError, match="too many entries"):
            import_bundle(bundle, repository)

    def test_oversized_manifest_entry(self, repository, make_bundle):
        bundle = make_bundle(None, extra={"pack.json": b" " * (MAX_MANIFEST_BYTES + 1)})
        with pytest.raises(PackValidationError, match="too large"):
            import_bundle(bundle, repository)

    def test_entry_size_enforced_while_streaming(self, repository, make_bundle):
        bundle = make_bundle(glass_manifest(rub=("rub1.wav",), finish=()), sounds=["rub1.wav"])
        with mock.patch("nubrub.importer.MAX_ASSET_BYTES", 16):
            with pytest.raises(PackValidationError) as exc_info:
                import_bundle(bundle, repository)
        assert exc_info.value.error_code == PackErrorCode.BUNDLE_INVALID

    def test_duplicate_entries(self, repository, tmp_path, make_wav):
        bundle = tmp_path / "dup.nubrub"
        wav = make_wav(tmp_path / "src" / "rub1.wav")
        with zipfile.ZipFile(bundle, "w") as zf:
            zf.writestr("pack.json", json.dumps(glass_manifest(rub=("rub1.wav",), finish=())))
            zf.write(wav, arcname="rub1.wav")
            zf.write(wav, arcname="RUB1.wav")
        with pytest.raises(PackValidationError, match="duplicate"):
            import_bundle(bundle, repository)


class TestCollisions:
    """Tests for the overwrite / rename / abort choice."""

    def test_abort_changes_nothing(self, repository, make_pack, glass_bundle, packs_root):
        make_pack("Existing", name="Glass Remix", rub=("old.wav",))
        before = tree(packs_root)

        with PackImportSession(glass_bundle, repository) as session:
            session.validate()
            assert session.find_collision().pack_id == "Existing"
            assert "already exists" in session.summary_text()
            result = session.commit(CollisionPolicy.ABORT)
            work_dir_after = session.work_dir

        assert result.outcome == ImportOutcome.ABORTED
        assert result.pack_id is None
        assert work_dir_after is None
        assert tree(packs_root) == before

    def test_rename(self, repository, make_pack, glass_bundle):
        make_pack("Existing", name="Glass Remix", rub=("old.wav",))

        result = import_bundle(glass_bundle, repository, on_collision=CollisionPolicy.RENAME)

        assert result.outcome == ImportOutcome.RENAMED
        assert result.name == "Glass Remix (Imported)"
        assert repository.get_pack(result.pack_id).name == "Glass Remix (Imported)"
        assert repository.get_pack("Existing") is not None

    def test_rename_twice(self, repository, make_pack, make_bundle):
        make_pack("A", name="Glass Remix", rub=("old.wav",))
        make_pack("B", name="Glass Remix (Imported)", rub=("old.wav",))
        bundle = make_bundle(glass_manifest(), sounds=["rub1.wav", "rub2.wav", "done.wav"])

        result = import_bundle(bundle, repository, on_collision=CollisionPolicy.RENAME)

        assert result.name == "Glass Remix (Imported 2)"

    def test_overwrite(self, repository, make_pack, glass_bundle, packs_root):
        old = make_pack("Glass_Remix", name="Glass Remix", rub=("old.wav",))
        releaser = mock.Mock()

        result = import_bundle(
            glass_bundle, repository, on_collision=CollisionPolicy.OVERWRITE, lock_releaser=releaser
        )

        assert result.outcome == ImportOutcome.OVERWRITTEN
        assert result.replaced_pack_id == "Glass_Remix"
        releaser.release_file_locks.assert_called()
        assert not (old / "old.wav").exists()
        assert repository.get_pack("Glass_Remix").manifest.rub_sounds == ("rub1.wav", "rub2.wav")

    def test_collision_is_case_insensitive(self, repository, make_pack, glass_bundle):
        make_pack("Existing", name="GLASS REMIX", rub=("old.wav",))
        result = import_bundle(glass_bundle, repository)
        assert result.outcome == ImportOutcome.ABORTED

    def test_builtin_names_never_collide(self, repository, make_bundle, packs_root):
        bundle = make_bundle(glass_manifest(name="Glass"), sounds=["rub1.wav", "rub2.wav", "done.wav"])
        result = import_bundle(bundle, repository)

        assert result.outcome == ImportOutcome.CREATED
        assert result.pack_id == "Glass_AudioPack"
        record = repository.get_pack(result.pack_id)
        assert not record.is_builtin
        assert record.name == "Glass"
        assert repository.get_pack("glass").is_builtin

        repository.delete_pack(result.pack_id)
        assert not (packs_root / "Glass_AudioPack").exists()

    def test_stray_folder_blocks_create(self, repository, packs_root, glass_bundle):
        (packs_root / "Glass_Remix").mkdir()
        with pytest.raises(PackExistsError):
            import_bundle(glass_bundle, repository)


class TestCommitFailure:
    def test_failed_copy_removes_new_directory(self, repository, glass_bundle, packs_root):
        before = tree(packs_root)
        with mock.patch(
            "nubrub.importer.safe_copy",
            side_effect=FileOperationError("x.wav", "Failed to copy", PackErrorCode.FILE_IN_USE),
        ):
            with pytest.raises(FileOperationError):
                import_bundle(glass_bundle, repository)
        assert tree(packs_root) == before


class TestTempCleanup:
    def test_dropped_session_cleans_up(self, repository, glass_bundle):
        session = PackImportSession(glass_bundle, repository)
        work_dir = session.extract()
        assert work_dir.exists()

        del session
        gc.collect()

        assert not work_dir.exists()

    def test_close_is_idempotent(self, repository, glass_bundle):
        session = PackImportSession(glass_bundle, repository)
        work_dir = session.extract()
        session.close()
        session.close()
        assert not work_dir.exists()
