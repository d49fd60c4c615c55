"""Shared fixtures: fake ffmpeg/ffprobe, in-memory S3, job and worker factories."""
from __future__ import annotations

import io
import json
import subprocess
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from renders.audio import FFmpeg, Mixer, ToneSynthesizer
from renders.models import RenderJob
from renders.storage import AssetFetcher, StorageUploader
from renders.voices import ProviderAudio, VoiceAdapter, VoiceProvider
from renders.worker import RenderWorker

MAX_BYTES = 10 * 1024 * 1024


# ── ffmpeg / ffprobe ─────────────────────────────────────────────────


class FakeRun:
    """Stands in for subprocess.run: records commands, writes outputs, answers probes."""

    def __init__(self):
        self.commands: list[list[str]] = []
        self.probe_channels = 2
        self.probe_duration = 12.5
        self.fail_on: str | None = None
        self.output_bytes = b"RIFF\x00\x00\x00\x00WAVEfake-audio"

    def __call__(self, cmd, check=False, stdout=None, stderr=None, **kwargs):
        cmd = [str(c) for c in cmd]
        self.commands.append(cmd)

        if Path(cmd[0]).name.startswith("ffprobe"):
            payload = {
                "streams": [{"codec_type": "audio", "channels": self.probe_channels, "sample_rate": "44100"}],
                "format": {"duration": str(self.probe_duration)},
            }
            return subprocess.CompletedProcess(cmd, 0, json.dumps(payload).encode(), b"")

        if self.fail_on and any(self.fail_on in arg for arg in cmd):
            raise subprocess.CalledProcessError(1, cmd, b"", b"Error while filtering: Invalid argument")

        Path(cmd[-1]).write_bytes(self.output_bytes)
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    @property
    def ffmpeg_commands(self) -> list[list[str]]:
        return [c for c in self.commands if not Path(c[0]).name.startswith("ffprobe")]

    def find(self, needle: str) -> list[str]:
        """The first ffmpeg command containing ``needle`` in any argument."""
        for cmd in self.ffmpeg_commands:
            if any(needle in arg for arg in cmd):
                return cmd
        raise AssertionError(f"no ffmpeg command containing {needle!r}")


@pytest.fixture
def fake_run(monkeypatch):
    run = FakeRun()
    monkeypatch.setattr("renders.audio.subprocess.run", run)
    return run


@pytest.fixture
def ffmpeg(fake_run):
    return FFmpeg("ffmpeg", "ffprobe")


# ── S3 ───────────────────────────────────────────────────────────────


def _client_error(code: str, status: int, op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


class FakeS3:
    def __init__(self):
        self.objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.uploads: list[dict] = []
        self.deleted: list[tuple[str, str]] = []

    def put(self, bucket, key, body: bytes, content_type="audio/mpeg"):
        self.objects[(bucket, key)] = (body, content_type)

    def _get(self, bucket, key, op):
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise _client_error("404", 404, op) from None

    def head_object(self, Bucket, Key):
        body, content_type = self._get(Bucket, Key, "HeadObject")
        return {"ContentLength": len(body), "ContentType": content_type}

    def download_file(self, bucket, key, filename):
        body, _ = self._get(bucket, key, "GetObject")
        Path(filename).write_bytes(body)

    def get_object(self, Bucket, Key):
        body, content_type = self._get(Bucket, Key, "GetObject")
        return {"Body": io.BytesIO(body), "ContentType": content_type}

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        body = Path(filename).read_bytes()
        content_type = (ExtraArgs or {}).get("ContentType", "")
        self.objects[(bucket, key)] = (body, content_type)
        self.uploads.append({"bucket": bucket, "key": key, "content_type": content_type, "size": len(body)})

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)
        self.deleted.append((Bucket, Key))


@pytest.fixture
def fake_s3():
    return FakeS3()


# ── voices ───────────────────────────────────────────────────────────


class FakeProvider(VoiceProvider):
    def __init__(self, name="openai", max_chars=4096, error: Exception | None = None,
                 content=b"ID3fake-mp3", on_call=None):
        self.name = name
        self.max_chars = max_chars
        self.error = error
        self.content = content
        self.on_call = on_call
        self.calls: list[tuple[str, str, dict]] = []

    def synthesize(self, text, voice_id, options):
        self.calls.append((text, voice_id, dict(options)))
        if self.on_call:
            self.on_call()
        if self.error:
            raise self.error
        return ProviderAudio(self.content, "audio/mpeg")


@pytest.fixture
def fake_provider():
    return FakeProvider()


# ── jobs ─────────────────────────────────────────────────────────────


def job_data(**overrides):
    data = {
        "script": "Calm your mind",
        "voice": {"provider": "openai", "voice_id": "alloy", "settings": {}},
        "solfeggio": {"frequency_hz": 528, "gain_db": -18},
        "output": {"format": "mp3", "quality": "medium", "normalize": True, "target_loudness_lufs": -16.0},
    }
    for key, value in overrides.items():
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
    return data


@pytest.fixture
def make_job(db):
    def _make(status=RenderJob.Status.PENDING, track_id="track-1", user_id="user-1", **overrides):
        return RenderJob.objects.create(
            track_id=track_id,
            user_id=user_id,
            status=status,
            job_data=job_data(**overrides),
        )
    return _make


@pytest.fixture
def work_root(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def make_worker(ffmpeg, fake_s3, fake_provider, work_root):
    def _make(providers=None, listeners=(), **kwargs):
        providers = providers if providers is not None else {"openai": fake_provider}
        options = dict(
            voice_adapter=VoiceAdapter(providers, ffmpeg, MAX_BYTES),
            tone_synthesizer=ToneSynthesizer(ffmpeg),
            mixer=Mixer(ffmpeg),
            music_fetcher=AssetFetcher(fake_s3, "background-music", MAX_BYTES),
            uploader=StorageUploader(fake_s3, "audio-renders", ffmpeg),
            ffmpeg=ffmpeg,
            work_dir=work_root,
            worker_id="test-worker",
            max_output_bytes=MAX_BYTES,
            claim_timeout_seconds=900,
            listeners=listeners,
        )
        options.update(kwargs)
        return RenderWorker(**options)
    return _make
