"""NubRub - WAV sniffing and metadata.

Best-effort, stdlib only (wave module). Used for the import review and for
the optional header check that catches files merely renamed to .wav.
Decoding audio is the playback component's job, not ours.
"""

import wave
from dataclasses import dataclass
from pathlib import Path

_RIFF_MAGIC = b"RIFF"
_WAVE_MAGIC = b"WAVE"


@dataclass
class WavInfo:
    """Metadata read from a WAV header. Fields are None when unreadable."""

    duration_sec: float | None = None
    sample_rate: int | None = None
    channels: int | None = None


def has_wav_header(path: str | Path) -> bool:
    """Check the RIFF/WAVE container signature.

    Never raises: unreadable files are reported as not WAV.
    """
    try:
        with open(path, "rb") as f:
            header = f.read(12)
    except OSError:
        return False
    return len(header) == 12 and header[:4] == _RIFF_MAGIC and header[8:12] == _WAVE_MAGIC


def read_wav_info(path: str | Path) -> WavInfo:
    """Read duration/sample rate/channels from a WAV file.

    This function NEVER raises. Compressed or malformed WAVs that the stdlib
    wave module rejects come back as an empty WavInfo.
    """
    try:
        with wave.open(str(path), "rb") as wf:
            sample_rate = wf.getframerate()
            n_frames = wf.getnframes()
            return WavInfo(
                duration_sec=n_frames / sample_rate if sample_rate > 0 else None,
                sample_rate=sample_rate,
                channels=wf.getnchannels(),
            )
    except (OSError, EOFError, wave.Error):
        return WavInfo()


__all__ = [
    "WavInfo",
    "has_wav_header",
    "read_wav_info",
]
