"""Shared pytest fixtures for NubRub tests.

Every test gets its own packs root under tmp_path; nothing touches the real
per-user packs directory.
"""

import json
import wave
import zipfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from nubrub.repository import PackRepository
from services.pack_api.main import app, override_repository


def write_wav(path: Path, seconds: float = 0.1, sample_rate: int = 8000) -> Path:
    """Write a silent mono 16-bit WAV file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00\x00" * int(sample_rate * seconds))
    return path


@pytest.fixture
def packs_root(tmp_path):
    """Empty packs root directory."""
    root = tmp_path / "AudioPacks"
    root.mkdir()
    return root


@pytest.fixture
def repository(packs_root):
    return PackRepository(packs_root)


@pytest.fixture
def make_wav():
    """Factory: make_wav(path, seconds=0.1) -> Path."""
    return write_wav


@pytest.fixture
def make_pack(packs_root):
    """Factory that writes a custom pack directory under the packs root.

    make_pack(folder, name=None, rub=("rub1.wav",), finish=(), version="1.0",
              create_files=True, root=None) -> Path

    Sounds listed in ``rub``/``finish`` are created as real WAV files unless
    create_files is False.
    """

    def _make(
        folder,
        name=None,
        rub=("rub1.wav",),
        finish=(),
        version="1.0",
        create_files=True,
        root=None,
    ):
        directory = Path(root or packs_root) / folder
        directory.mkdir(parents=True, exist_ok=True)
        manifest = {
            "name": name or folder,
            "version": version,
            "rubsounds": list(rub),
            "finishsound": list(finish),
        }
        (directory / "pack.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        if create_files:
            for filename in [*rub, *finish]:
                write_wav(directory / filename)
        return directory

    return _make


@pytest.fixture
def make_bundle(tmp_path):
    """Factory that writes a .nubrub ZIP archive.

    make_bundle(manifest, sounds=None, extra=None, name="bundle.nubrub") -> Path

    ``manifest`` is a dict (serialized to pack.json) or None for no manifest.
    ``sounds`` lists WAV entry names to generate; ``extra`` maps raw entry
    names to bytes.
    """
    counter = {"n": 0}

    def _make(manifest, sounds=None, extra=None, name=None):
        counter["n"] += 1
        archive_path = tmp_path / (name or f"bundle{counter['n']}.nubrub")
        scratch = tmp_path / f"bundle_src{counter['n']}"
        scratch.mkdir()
        with zipfile.ZipFile(archive_path, "w") as zf:
            if manifest is not None:
                zf.writestr("pack.json", json.dumps(manifest))
            for sound in sounds or ():
                zf.write(write_wav(scratch / Path(sound).name), arcname=sound)
            for entry_name, data in (extra or {}).items():
                zf.writestr(entry_name, data)
        return archive_path

    return _make


@pytest.fixture
def client(repository):
    """FastAPI test client bound to the temporary repository.

    Yields:
        tuple: (test_client, repository)
    """
    override_repository(repository)
    with TestClient(app) as test_client:
        yield test_client, repository
    override_repository(None)
