import os
import time

import pytest

from renders import services
from renders.errors import ProviderError
from renders.events import JobCompleted, JobFailed, ProgressUpdated, StageCompleted, StageStarted
from renders.models import RenderJob
from renders.worker import sweep_work_dirs

from .conftest import FakeProvider

pytestmark = pytest.mark.django_db


class Trace:
    """Listener recording events and the stored progress seen after each one."""

    def __init__(self, job_id=None):
        self.events = []
        self.stored_progress = []
        self.job_id = job_id

    def __call__(self, event):
        self.events.append(event)
        if self.job_id:
            self.stored_progress.append(RenderJob.objects.get(pk=self.job_id).progress)

    @property
    def percents(self):
        out = [e.percent for e in self.events if isinstance(e, ProgressUpdated)]
        if any(isinstance(e, JobCompleted) for e in self.events):
            out.append(100)
        return out


def test_happy_path(make_job, make_worker, fake_run, fake_s3, fake_provider, work_root):
    job = make_job()
    trace = Trace(job.pk)

    outcome = make_worker(listeners=[trace]).run_next()

    job.refresh_from_db()
    assert outcome.status == RenderJob.Status.COMPLETED
    assert job.status == RenderJob.Status.COMPLETED
    assert job.progress == 100
    assert job.error is None
    assert job.result["format"] == "mp3"
    assert job.result["url"].startswith("https://cdn.example.test/renders/track-1/rendered_")
    assert job.result["url"].endswith(".mp3")
    assert job.result["duration_seconds"] == fake_run.probe_duration
    assert job.result["size_bytes"] == len(fake_run.output_bytes)

    assert fake_provider.calls == [("Calm your mind", "alloy", {})]
    assert any("sine=frequency=528:" in arg for arg in fake_run.find("sine="))
    mix = fake_run.find("amix")
    assert mix[mix.index("-b:a") + 1] == "192k"
    assert "loudnorm=I=-16:TP=-1.5:LRA=11" in mix[mix.index("-filter_complex") + 1]
    assert fake_s3.uploads[0]["content_type"] == "audio/mpeg"

    # Working files are gone.
    assert list(work_root.iterdir()) == []


def test_progress_checkpoints(make_job, make_worker):
    job = make_job()
    trace = Trace(job.pk)
    make_worker(listeners=[trace]).run_job(job.pk)

    assert trace.percents == [30, 45, 85, 95, 100]
    assert trace.stored_progress == sorted(trace.stored_progress)


def test_all_layers(make_job, make_worker, fake_run, fake_s3):
    fake_s3.put("background-music", "beds/rain.mp3", b"ID3rain")
    job = make_job(
        background_music={"asset_id": "beds/rain.mp3", "gain_db": -12},
        binaural={"base_frequency_hz": 200, "beat_frequency_hz": 10, "gain_db": -20},
        output={"format": "wav", "quality": "high", "normalize": False},
    )
    trace = Trace()

    make_worker(listeners=[trace]).run_job(job.pk)

    job.refresh_from_db()
    assert job.status == RenderJob.Status.COMPLETED
    assert trace.percents == [30, 40, 45, 50, 85, 95, 100]
    assert [e.stage for e in trace.events if isinstance(e, StageCompleted)] == [
        "setup", "voice synthesis", "background music", "solfeggio synthesis",
        "binaural synthesis", "mixing", "upload", "finalization",
    ]

    graph_cmd = fake_run.find("amix")
    graph = graph_cmd[graph_cmd.index("-filter_complex") + 1]
    assert "amix=inputs=4" in graph
    assert "[1:a]volume=-12dB" in graph
    assert "loudnorm" not in graph
    assert graph_cmd[graph_cmd.index("-c:a", graph_cmd.index("-filter_complex")) + 1] == "pcm_s16le"
    assert job.result["format"] == "wav"
    assert job.result["url"].endswith(".wav")


def test_explicit_duration_drives_tones(make_job, make_worker, fake_run):
    job = make_job(duration_seconds=600)
    make_worker().run_job(job.pk)
    assert any("duration=600" in arg for arg in fake_run.find("sine="))


def test_provider_failure_marks_job_failed(make_job, make_worker, work_root):
    job = make_job()
    provider = FakeProvider(error=ProviderError("openai", "TTS request failed with status 500", status_code=500))
    trace = Trace()

    outcome = make_worker(providers={"openai": provider}, listeners=[trace]).run_job(job.pk)

    job.refresh_from_db()
    assert outcome.status == RenderJob.Status.FAILED
    assert job.status == RenderJob.Status.FAILED
    assert job.error.startswith("voice synthesis failed: openai: TTS request failed")
    assert job.result is None
    assert job.progress < 100
    assert [e for e in trace.events if isinstance(e, JobFailed)][0].stage == "voice synthesis"
    assert list(work_root.iterdir()) == []


def test_unsupported_provider(make_job, make_worker):
    job = make_job(voice={"provider": "polly", "voice_id": "joanna"})
    make_worker().run_job(job.pk)

    job.refresh_from_db()
    assert job.status == RenderJob.Status.FAILED
    assert "voice synthesis failed: Unsupported voice provider: 'polly'" in job.error


def test_mixing_failure_reports_stage_and_stderr(make_job, make_worker, fake_run, fake_s3):
    fake_run.fail_on = "amix"
    job = make_job()
    make_worker().run_job(job.pk)

    job.refresh_from_db()
    assert job.status == RenderJob.Status.FAILED
    assert job.error.startswith("mixing failed:")
    assert "Invalid argument" in job.error
    assert fake_s3.uploads == []


def test_missing_music_asset_fails_in_music_stage(make_job, make_worker):
    job = make_job(background_music={"asset_id": "nope.mp3"})
    make_worker().run_job(job.pk)

    job.refresh_from_db()
    assert job.error.startswith("background music failed: storage:")


def test_error_is_truncated(make_job, make_worker):
    job = make_job()
    provider = FakeProvider(error=RuntimeError("x" * 10000))
    make_worker(providers={"openai": provider}).run_job(job.pk)

    job.refresh_from_db()
    assert len(job.error) == 4000


def test_cancellation_observed_at_stage_boundary(make_job, make_worker, fake_s3, work_root):
    job = make_job()

    def cancel_after_voice(event):
        if isinstance(event, StageCompleted) and event.stage == "voice synthesis":
            services.cancel(job.pk, "user request")

    outcome = make_worker(listeners=[cancel_after_voice]).run_job(job.pk)

    job.refresh_from_db()
    assert outcome.status == RenderJob.Status.CANCELLED
    assert job.status == RenderJob.Status.CANCELLED
    assert job.progress == 30
    assert job.error is None
    assert job.result is None
    assert fake_s3.uploads == []
    assert list(work_root.iterdir()) == []


def test_cancellation_during_provider_call(make_job, make_worker):
    job = make_job()
    provider = FakeProvider(on_call=lambda: services.cancel(job.pk))

    outcome = make_worker(providers={"openai": provider}).run_job(job.pk)

    assert outcome.status == RenderJob.Status.CANCELLED
    assert RenderJob.objects.get(pk=job.pk).status == RenderJob.Status.CANCELLED


def test_artifact_removed_when_cancelled_during_upload(make_job, make_worker, fake_s3):
    job = make_job()

    def cancel_on_upload(event):
        if isinstance(event, StageStarted) and event.stage == "upload":
            services.cancel(job.pk)

    outcome = make_worker(listeners=[cancel_on_upload]).run_job(job.pk)

    assert outcome.status == RenderJob.Status.CANCELLED
    assert len(fake_s3.uploads) == 1
    assert fake_s3.deleted == [("audio-renders", fake_s3.uploads[0]["key"])]
    assert RenderJob.objects.get(pk=job.pk).result is None


def test_superseded_worker_stops_quietly(make_job, make_worker):
    job = make_job()

    def steal_claim():
        RenderJob.objects.filter(pk=job.pk).update(claim_token=None, claimed_by="someone-else")

    outcome = make_worker(providers={"openai": FakeProvider(on_call=steal_claim)}).run_job(job.pk)

    assert outcome.status == "superseded"
    stored = RenderJob.objects.get(pk=job.pk)
    assert stored.status == RenderJob.Status.PROCESSING
    assert stored.error is None


def test_listener_error_at_stage_start_fails_the_job(make_job, make_worker):
    job = make_job()

    def broken(event):
        if event == StageStarted("voice synthesis"):
            raise RuntimeError("listener exploded")

    outcome = make_worker(listeners=[broken]).run_job(job.pk)

    job.refresh_from_db()
    assert outcome.status == RenderJob.Status.FAILED
    assert job.status == RenderJob.Status.FAILED
    assert job.error == "voice synthesis failed: listener exploded"


def test_artifact_removed_when_finalization_fails(make_job, make_worker, fake_s3):
    job = make_job()

    def broken(event):
        if event == StageStarted("finalization"):
            raise RuntimeError("database went away")

    outcome = make_worker(listeners=[broken]).run_job(job.pk)

    job.refresh_from_db()
    assert outcome.status == RenderJob.Status.FAILED
    assert job.error.startswith("finalization failed:")
    assert job.result is None
    assert fake_s3.deleted == [("audio-renders", fake_s3.uploads[0]["key"])]


def test_completed_artifact_is_kept(make_job, make_worker, fake_s3):
    make_worker().run_job(make_job().pk)
    assert len(fake_s3.uploads) == 1
    assert fake_s3.deleted == []


# ── layer options ────────────────────────────────────────────────────


def _mix_graph(fake_run):
    cmd = fake_run.find("amix")
    return cmd[cmd.index("-filter_complex") + 1]


def test_voice_gain_is_applied_in_mix(make_job, make_worker, fake_run):
    job = make_job(voice={"provider": "openai", "voice_id": "alloy", "gain_db": -6})
    make_worker().run_job(job.pk)
    assert _mix_graph(fake_run).startswith("[0:a]volume=-6dB,")


def test_voice_gain_defaults_to_minus_one(make_job, make_worker, fake_run):
    make_worker().run_job(make_job().pk)
    assert _mix_graph(fake_run).startswith("[0:a]volume=-1dB,")


def test_master_is_faded_before_normalization(make_job, make_worker, fake_run):
    make_worker().run_job(make_job(fade={"in_ms": 2000, "out_ms": 500}).pk)

    graph = _mix_graph(fake_run)
    # voice probe reports 12.5 s
    assert "afade=t=in:st=0:d=2" in graph
    assert "afade=t=out:st=12:d=0.5" in graph
    assert graph.index("afade") < graph.index("loudnorm")


def test_voice_is_looped_to_explicit_duration(make_job, make_worker, fake_run, fake_s3):
    fake_s3.put("background-music", "beds/rain.mp3", b"ID3rain")
    job = make_job(
        duration_seconds=60,
        voice={"provider": "openai", "voice_id": "alloy", "pause_seconds": 5},
        background_music={"asset_id": "beds/rain.mp3"},
    )

    make_worker().run_job(job.pk)

    assert RenderJob.objects.get(pk=job.pk).status == RenderJob.Status.COMPLETED
    pad = fake_run.find("apad=")
    assert "apad=pad_dur=5" in pad
    loop = [c for c in fake_run.ffmpeg_commands if "-stream_loop" in c]
    voice_loop, music_loop = loop
    assert voice_loop[voice_loop.index("-i") + 1] == pad[-1]
    assert voice_loop[voice_loop.index("-t") + 1] == "60"
    # The music bed follows the looped narration.
    assert music_loop[music_loop.index("-t") + 1] == "60"
    assert "afade=t=out:st=58.5:d=1.5" in _mix_graph(fake_run)


def test_voice_is_not_looped_without_explicit_duration(make_job, make_worker, fake_run):
    make_worker().run_job(make_job().pk)
    assert not any("apad=" in arg for cmd in fake_run.ffmpeg_commands for arg in cmd)


def test_noise_carrier_under_both_tones(make_job, make_worker, fake_run):
    job = make_job(
        binaural={"base_frequency_hz": 200, "beat_frequency_hz": 6},
        carrier={"color": "pink", "gain_db": -24},
    )
    make_worker().run_job(job.pk)

    solfeggio = fake_run.find("sine=frequency=528")
    assert "anoisesrc=color=pink:duration=2:sample_rate=44100" in solfeggio
    binaural = fake_run.find("amerge")
    graph = binaural[binaural.index("-filter_complex") + 1]
    assert "[2:a]volume=-26dB,pan=stereo|c0=c0|c1=c0[noise]" in graph


def test_run_next_with_empty_queue(db, make_worker):
    assert make_worker().run_next() is None


def test_run_job_not_claimable(make_job, make_worker):
    job = make_job(status=RenderJob.Status.COMPLETED)
    assert make_worker().run_job(job.pk) is None


def test_sweep_removes_only_old_job_dirs(tmp_path):
    old = tmp_path / "job-abc-123"
    fresh = tmp_path / "job-def-456"
    other = tmp_path / "keep-me"
    for path in (old, fresh, other):
        path.mkdir()
    past = time.time() - 7200
    os.utime(old, (past, past))
    os.utime(other, (past, past))

    assert sweep_work_dirs(tmp_path, 900) == 1
    assert not old.exists()
    assert fresh.exists()
    assert other.exists()
