"""
Render Worker: claims one job and drives it through the pipeline.

    setup -> voice synthesis (30) -> [background music (40)]
          -> [solfeggio synthesis (45)] -> [binaural synthesis (50)]
          -> mixing (85) -> upload (95) -> finalization (100)

Every stage boundary goes through the ProgressRecorder, whose writes are
conditional on this worker's claim; that is where cancellation and lost
claims are observed. A stage failure is written once as
``"<stage> failed: <cause>"``. An artifact uploaded for a job that then fails
or stops is deleted again. The per-job working directory is removed on every
exit path.
"""
from __future__ import annotations

import logging
import math
import os
import shutil
import socket
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from django.conf import settings

from .audio import FFmpeg, Layer, Mixer, ToneSynthesizer, loop_voice, prepare_background_music, tone_duration
from .dispatcher import claim_job, claim_next
from .errors import ConcurrencyError, JobCancelled, ProviderError, ResourceLimitError, StageError
from .events import JobCompleted, JobFailed, ProgressRecorder, ProgressUpdated, StageCompleted, StageStarted
from .jobdata import JobData
from .models import RenderJob
from .storage import AssetFetcher, StorageUploader, get_s3_client, render_key
from .voices import VoiceAdapter, default_providers

logger = logging.getLogger(__name__)

WORK_DIR_PREFIX = "job-"


@dataclass(frozen=True)
class Stage:
    name: str
    checkpoint: int


SETUP = Stage("setup", 0)
VOICE = Stage("voice synthesis", 30)
MUSIC = Stage("background music", 40)
SOLFEGGIO = Stage("solfeggio synthesis", 45)
BINAURAL = Stage("binaural synthesis", 50)
MIXING = Stage("mixing", 85)
UPLOAD = Stage("upload", 95)
FINALIZATION = Stage("finalization", 100)


@dataclass(frozen=True)
class RenderOutcome:
    """What happened to a claimed job. ``status`` is ``superseded`` when the claim was lost."""

    job_id: str
    status: str
    result: Optional[dict] = None
    error: Optional[str] = None


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def sweep_work_dirs(root, older_than_seconds: float, now: Optional[float] = None) -> int:
    """Remove orphaned per-job working directories; returns how many were removed."""
    root = Path(root)
    if not root.is_dir() or older_than_seconds <= 0:
        return 0
    cutoff = (now if now is not None else time.time()) - older_than_seconds
    removed = 0
    for path in root.glob(f"{WORK_DIR_PREFIX}*"):
        try:
            if path.is_dir() and path.stat().st_mtime < cutoff:
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        except FileNotFoundError:
            continue
    if removed:
        logger.info("Removed %d orphaned working directories under %s", removed, root)
    return removed


class RenderWorker:
    def __init__(
        self,
        *,
        voice_adapter: VoiceAdapter,
        tone_synthesizer: ToneSynthesizer,
        mixer: Mixer,
        music_fetcher: AssetFetcher,
        uploader: StorageUploader,
        ffmpeg: FFmpeg,
        work_dir,
        worker_id: Optional[str] = None,
        words_per_minute: int = 150,
        max_output_bytes: int = 200 * 1024 * 1024,
        claim_timeout_seconds: int = 0,
        listeners: Iterable[Callable] = (),
    ):
        self.voice_adapter = voice_adapter
        self.tones = tone_synthesizer
        self.mixer = mixer
        self.music_fetcher = music_fetcher
        self.uploader = uploader
        self.ffmpeg = ffmpeg
        self.work_dir = Path(work_dir)
        self.worker_id = worker_id or default_worker_id()
        self.words_per_minute = words_per_minute
        self.max_output_bytes = max_output_bytes
        self.claim_timeout_seconds = claim_timeout_seconds
        self.listeners = list(listeners)

    @classmethod
    def from_settings(cls, **overrides) -> "RenderWorker":
        """Production wiring: S3 buckets, HTTP providers and ffmpeg from Django settings."""
        client = get_s3_client()
        ffmpeg = FFmpeg.from_settings()
        max_bytes = settings.RENDER_MAX_ASSET_BYTES
        voice_fetcher = AssetFetcher(client, settings.S3_VOICE_BUCKET, max_bytes)
        options = dict(
            voice_adapter=VoiceAdapter(default_providers(voice_fetcher), ffmpeg, max_bytes),
            tone_synthesizer=ToneSynthesizer(ffmpeg),
            mixer=Mixer(ffmpeg),
            music_fetcher=AssetFetcher(client, settings.S3_MUSIC_BUCKET, max_bytes),
            uploader=StorageUploader(client, settings.S3_RENDER_BUCKET, ffmpeg),
            ffmpeg=ffmpeg,
            work_dir=settings.RENDER_WORK_DIR,
            words_per_minute=settings.RENDER_WORDS_PER_MINUTE,
            max_output_bytes=max_bytes,
            claim_timeout_seconds=settings.RENDER_CLAIM_TIMEOUT_SECONDS,
        )
        options.update(overrides)
        return cls(**options)

    # -- entry points -----------------------------------------------------

    def run_next(self) -> Optional[RenderOutcome]:
        """Claim and render the oldest available job; None when the queue is empty."""
        job = claim_next(self.worker_id, self.claim_timeout_seconds)
        if job is None:
            return None
        return self.process(job)

    def run_job(self, job_id) -> Optional[RenderOutcome]:
        """Claim and render one specific job; None when it cannot be claimed."""
        job = claim_job(job_id, self.worker_id, self.claim_timeout_seconds)
        if job is None:
            return None
        return self.process(job)

    def process(self, job: RenderJob) -> RenderOutcome:
        """Render a job this worker has already claimed."""
        recorder = ProgressRecorder(job, listeners=self.listeners)
        work_dir = self._make_work_dir(job)
        job_id = str(job.pk)
        try:
            result = self._render(job, recorder, work_dir)
            logger.info("Render job %s completed: %s", job_id, result["url"])
            return RenderOutcome(job_id, RenderJob.Status.COMPLETED, result=result)

        except JobCancelled:
            logger.info("Render job %s was cancelled; stopping", job_id)
            return RenderOutcome(job_id, RenderJob.Status.CANCELLED)

        except ConcurrencyError as exc:
            logger.warning("Render job %s abandoned: %s", job_id, exc)
            return RenderOutcome(job_id, "superseded")

        except StageError as exc:
            logger.error("Render job %s failed: %s", job_id, exc, exc_info=exc.cause)
            return self._fail(recorder, job_id, exc)

        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    # -- pipeline ---------------------------------------------------------

    def _render(self, job: RenderJob, recorder: ProgressRecorder, work_dir: Path) -> dict:
        data = self._stage(recorder, SETUP, JobData.from_dict, job.job_data)

        voice = self._stage(recorder, VOICE, self._voice, data, work_dir)
        layers = [Layer(voice, data.voice.gain_db, "voice")]

        duration = tone_duration(data.script, data.duration_seconds, self.words_per_minute)

        if data.background_music:
            music = self._stage(recorder, MUSIC, self._prepare_music, data, voice, work_dir)
            layers.append(Layer(music, data.background_music.gain_db, "music"))

        # Tone gains are applied at synthesis.
        if data.solfeggio:
            tone = self._stage(
                recorder, SOLFEGGIO, self.tones.solfeggio,
                data.solfeggio.frequency_hz, duration, data.solfeggio.gain_db,
                work_dir / "solfeggio.wav", data.carrier,
            )
            layers.append(Layer(tone, 0.0, "solfeggio"))

        if data.binaural:
            beat = self._stage(
                recorder, BINAURAL, self.tones.binaural,
                data.binaural.base_frequency_hz, data.binaural.beat_frequency_hz,
                duration, data.binaural.gain_db, work_dir / "binaural.wav", data.carrier,
            )
            layers.append(Layer(beat, 0.0, "binaural"))

        master = self._stage(recorder, MIXING, self._mix, layers, data, work_dir)

        key = render_key(job.track_id, data.output.format)
        uploaded = []
        try:
            upload = self._stage(recorder, UPLOAD, self._upload, master, key, uploaded)
            result = {
                "url": upload.url,
                "duration_seconds": upload.duration_seconds,
                "size_bytes": upload.size_bytes,
                "format": data.output.format,
            }
            self._stage(recorder, FINALIZATION, recorder.emit, JobCompleted(result))
        except Exception:
            # A job that did not complete must not leave its artifact behind.
            if uploaded and not recorder.completed:
                self._discard_upload(job, key)
            raise
        return result

    def _discard_upload(self, job: RenderJob, key: str) -> None:
        try:
            self.uploader.delete(key)
        except ProviderError as exc:
            logger.warning("Render job %s stopped after upload; could not delete %s: %s", job.pk, key, exc)

    def _upload(self, master, key: str, uploaded: list):
        upload = self.uploader.upload(master, key)
        uploaded.append(upload)
        return upload

    def _stage(self, recorder: ProgressRecorder, stage: Stage, fn, *args):
        try:
            recorder.emit(StageStarted(stage.name))
            value = fn(*args)
            if 0 < stage.checkpoint < 100:
                recorder.emit(ProgressUpdated(stage.checkpoint, stage.name))
            recorder.emit(StageCompleted(stage.name))
        except (JobCancelled, ConcurrencyError):
            raise
        except Exception as exc:
            raise StageError(stage.name, exc) from exc
        return value

    def _voice(self, data: JobData, work_dir: Path):
        voice = self.voice_adapter.synthesize(data.script, data.voice, work_dir)
        target = data.duration_seconds
        if target and voice.duration_seconds and voice.duration_seconds < target:
            voice = loop_voice(self.ffmpeg, voice, target, data.voice.pause_seconds, work_dir / "voice_looped.wav")
        return voice

    def _prepare_music(self, data: JobData, voice, work_dir: Path):
        asset_id = data.background_music.asset_id
        source = self.music_fetcher.fetch(asset_id, work_dir / f"music_source{Path(asset_id).suffix}")
        if voice.duration_seconds:
            target = math.ceil(voice.duration_seconds)
        else:
            target = tone_duration(data.script, data.duration_seconds, self.words_per_minute)
        return prepare_background_music(self.ffmpeg, source, target, work_dir / "music.wav")

    def _mix(self, layers, data: JobData, work_dir: Path):
        master = self.mixer.mix(layers, data.output, work_dir / f"master.{data.output.format}", data.fade)
        size = master.size_bytes
        if size > self.max_output_bytes:
            raise ResourceLimitError("rendered output", size, self.max_output_bytes)
        return master

    # -- helpers ----------------------------------------------------------

    def _make_work_dir(self, job: RenderJob) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{WORK_DIR_PREFIX}{job.pk}-", dir=self.work_dir))

    def _fail(self, recorder: ProgressRecorder, job_id: str, error: StageError) -> RenderOutcome:
        message = error.message
        try:
            recorder.emit(JobFailed(error.stage, message))
        except JobCancelled:
            logger.info("Render job %s was cancelled before its failure was recorded", job_id)
            return RenderOutcome(job_id, RenderJob.Status.CANCELLED)
        except ConcurrencyError as exc:
            logger.warning("Failure of render job %s not recorded: %s", job_id, exc)
            return RenderOutcome(job_id, "superseded")
        return RenderOutcome(job_id, RenderJob.Status.FAILED, error=message)
