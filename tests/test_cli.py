"""Tests for the nubrub command-line interface."""

import pytest

from nubrub.cli import main


def run(packs_root, *args):
    return main(["--packs-dir", str(packs_root), *args])


class TestList:
    def test_lists_builtins_and_custom(self, packs_root, make_pack, capsys):
        make_pack("Mine", name="My Pack")

        assert run(packs_root, "list") == 0

        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 5
        assert lines[0].split()[0] == "squeak"
        assert lines[-1].startswith("Mine")
        assert lines[-1].rstrip().endswith("custom")


class TestShow:
    def test_show_custom(self, packs_root, make_pack, capsys):
        make_pack("Mine", rub=("a.wav",), finish=("end.wav",))

        assert run(packs_root, "show", "mine") == 0

        out = capsys.readouterr().out
        assert "Pack: Mine" in out
        assert "Rub sounds (1):" in out
        assert "  - end.wav" in out

    def test_show_unknown(self, packs_root, capsys):
        assert run(packs_root, "show", "ghost") == 1
        assert "Error: Audio pack not found: ghost" in capsys.readouterr().err


class TestImportExportDelete:
    def test_import(self, packs_root, make_bundle, capsys):
        bundle = make_bundle({"name": "CLI Pack", "rubsounds": ["a.wav"]}, sounds=["a.wav"])

        assert run(packs_root, "import", str(bundle)) == 0

        assert "as CLI_Pack (created)" in capsys.readouterr().out
        assert (packs_root / "CLI_Pack" / "pack.json").is_file()

    def test_import_collision_aborts(self, packs_root, make_pack, make_bundle, capsys):
        make_pack("Taken")
        bundle = make_bundle({"name": "Taken", "rubsounds": ["a.wav"]}, sounds=["a.wav"])

        assert run(packs_root, "import", str(bundle)) == 1
        assert "--on-collision" in capsys.readouterr().err

        assert run(packs_root, "import", str(bundle), "--on-collision", "rename") == 0
        assert (packs_root / "Taken_(Imported)").is_dir()

    def test_import_rejected(self, packs_root, make_bundle, capsys):
        bundle = make_bundle({"name": "Broken", "rubsounds": ["missing.wav"]})
        assert run(packs_root, "import", str(bundle)) == 1
        assert "missing.wav" in capsys.readouterr().err

    def test_export_then_delete(self, packs_root, make_pack, tmp_path, capsys):
        directory = make_pack("Mine")
        archive = tmp_path / "mine.nubrub"

        assert run(packs_root, "export", "Mine", str(archive)) == 0
        assert archive.is_file()

        assert run(packs_root, "delete", "Mine") == 0
        assert not directory.exists()

    def test_delete_builtin(self, packs_root, capsys):
        assert run(packs_root, "delete", "glass") == 1
        assert "read-only" in capsys.readouterr().err


def test_command_required(packs_root):
    with pytest.raises(SystemExit):
        run(packs_root)
