"""
Audio synthesis and mixing on top of ffmpeg/ffprobe.

Every intermediate layer is written as 44.1 kHz stereo PCM WAV so the mixer
can treat all inputs alike; only the final master is encoded to the
requested format and quality tier.
"""
from __future__ import annotations

import json
import logging
import math
import subprocess
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

from django.conf import settings

from .errors import AudioProcessingError
from .jobdata import CarrierSpec, FadeSpec, OutputSpec

logger = logging.getLogger(__name__)

SAMPLE_RATE = 44100
STEREO = 2
PEAK_CEILING_DBTP = -1.5
LOUDNESS_RANGE_LU = 11
DEFAULT_WORDS_PER_MINUTE = 150

MUSIC_FADE_IN_SECONDS = 1.0
MUSIC_FADE_OUT_SECONDS = 1.5
# The binaural carrier sits slightly below the solfeggio one.
BINAURAL_CARRIER_OFFSET_DB = -2.0

MP3_BITRATES = {"low": "128k", "medium": "192k", "high": "320k"}
CONTENT_TYPES = {"mp3": "audio/mpeg", "wav": "audio/wav"}

PCM_STEREO = ["-ac", str(STEREO), "-ar", str(SAMPLE_RATE), "-c:a", "pcm_s16le"]


@dataclass(frozen=True)
class AudioAsset:
    path: Path
    channels: int = STEREO
    duration_seconds: Optional[float] = None
    format: str = "wav"
    # Per-channel tone frequencies, set by the tone synthesizer.
    channel_frequencies: Optional[tuple[Decimal, ...]] = None

    @property
    def size_bytes(self) -> int:
        return self.path.stat().st_size


@dataclass(frozen=True)
class Layer:
    asset: AudioAsset
    gain_db: float = 0.0
    label: str = ""


@dataclass(frozen=True)
class ProbeResult:
    duration_seconds: float
    channels: int
    sample_rate: Optional[int] = None


def estimate_script_duration(script: str, words_per_minute: int = DEFAULT_WORDS_PER_MINUTE) -> int:
    """Seconds needed to speak ``script``: ceil(words / wpm * 60)."""
    words = len(script.split())
    return math.ceil(words * 60 / words_per_minute)


def tone_duration(script: str, explicit: Optional[int] = None,
                  words_per_minute: int = DEFAULT_WORDS_PER_MINUTE) -> int:
    if explicit:
        return int(explicit)
    return estimate_script_duration(script, words_per_minute)


def format_hz(value) -> str:
    """Exact decimal rendering of a frequency (``210`` not ``210.0``)."""
    return format(Decimal(str(value)).normalize(), "f")


def format_db(value: float) -> str:
    return f"{format_hz(value)}dB"


def fade_filters(duration_s: Optional[float], fade_in_s: float, fade_out_s: float) -> list[str]:
    """afade filters for both ends; the fade-out needs a known duration."""
    filters = []
    if fade_in_s > 0:
        filters.append(f"afade=t=in:st=0:d={format_hz(fade_in_s)}")
    if fade_out_s > 0 and duration_s:
        start = max(0.0, duration_s - fade_out_s)
        filters.append(f"afade=t=out:st={format_hz(round(start, 3))}:d={format_hz(fade_out_s)}")
    return filters


def noise_source(color: str, duration_s) -> str:
    return f"anoisesrc=color={color}:duration={duration_s}:sample_rate={SAMPLE_RATE}"


def encoding_params(fmt: str, quality: str) -> list[str]:
    if fmt == "mp3":
        try:
            bitrate = MP3_BITRATES[quality]
        except KeyError:
            raise AudioProcessingError(f"Unknown quality tier: {quality!r}") from None
        return ["-c:a", "libmp3lame", "-b:a", bitrate, "-ar", str(SAMPLE_RATE)]
    if fmt == "wav":
        # Fixed PCM profile regardless of tier.
        return ["-c:a", "pcm_s16le", "-ar", str(SAMPLE_RATE)]
    raise AudioProcessingError(f"Unsupported output format: {fmt!r}")


class FFmpeg:
    """Thin runner around the ffmpeg and ffprobe executables."""

    def __init__(self, binary: str = "ffmpeg", probe_binary: str = "ffprobe"):
        self.binary = binary
        self.probe_binary = probe_binary

    @classmethod
    def from_settings(cls) -> "FFmpeg":
        return cls(settings.FFMPEG_BINARY, settings.FFPROBE_BINARY)

    def run(self, args: Sequence[str]) -> None:
        cmd = [self.binary, "-y", "-hide_banner", "-loglevel", "error", *map(str, args)]
        logger.debug("ffmpeg: %s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as exc:
            raise AudioProcessingError(f"{self.binary} executable not found") from exc
        except subprocess.CalledProcessError as exc:
            err = exc.stderr.decode("utf-8", errors="ignore") if exc.stderr else ""
            raise AudioProcessingError(
                f"ffmpeg exited with status {exc.returncode}: {err.strip()[-1000:]}"
            ) from exc

    def probe(self, path: Path) -> ProbeResult:
        cmd = [
            self.probe_binary,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            proc = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as exc:
            raise AudioProcessingError(f"{self.probe_binary} executable not found") from exc
        except subprocess.CalledProcessError as exc:
            err = exc.stderr.decode("utf-8", errors="ignore") if exc.stderr else ""
            raise AudioProcessingError(f"ffprobe failed on {Path(path).name}: {err.strip()[-500:]}") from exc

        try:
            info = json.loads(proc.stdout or b"{}")
        except ValueError as exc:
            raise AudioProcessingError(f"ffprobe returned unreadable output for {Path(path).name}") from exc

        audio = next((s for s in info.get("streams", []) if s.get("codec_type") == "audio"), None)
        if audio is None:
            raise AudioProcessingError(f"{Path(path).name} has no audio stream")

        duration = info.get("format", {}).get("duration") or audio.get("duration") or 0
        sample_rate = audio.get("sample_rate")
        return ProbeResult(
            duration_seconds=float(duration),
            channels=int(audio.get("channels") or 0),
            sample_rate=int(sample_rate) if sample_rate else None,
        )


def to_stereo_wav(ffmpeg: FFmpeg, inputs: Sequence[Path], output_path: Path) -> AudioAsset:
    """Decode one or more inputs (concatenated in order) to stereo PCM WAV."""
    if not inputs:
        raise AudioProcessingError("No input audio to convert")

    args: list[str] = []
    for path in inputs:
        args += ["-i", str(path)]

    if len(inputs) == 1:
        args += ["-vn"]
    else:
        streams = "".join(f"[{i}:a]" for i in range(len(inputs)))
        args += ["-filter_complex", f"{streams}concat=n={len(inputs)}:v=0:a=1[out]", "-map", "[out]"]

    ffmpeg.run([*args, *PCM_STEREO, str(output_path)])
    probe = ffmpeg.probe(output_path)
    return AudioAsset(path=Path(output_path), channels=STEREO, duration_seconds=probe.duration_seconds)


def loop_voice(ffmpeg: FFmpeg, voice: AudioAsset, duration_s: float, pause_s: int,
               output_path: Path) -> AudioAsset:
    """Repeat the narration, with ``pause_s`` of silence after each take, until ``duration_s``."""
    output_path = Path(output_path)
    take = output_path.with_name(f"{output_path.stem}_take.wav")
    ffmpeg.run(["-i", str(voice.path), "-af", f"apad=pad_dur={pause_s}", *PCM_STEREO, str(take)])
    ffmpeg.run([
        "-stream_loop", "-1",
        "-i", str(take),
        "-t", format_hz(duration_s),
        *PCM_STEREO,
        str(output_path),
    ])
    logger.info("Looped %ss narration to %ss with %ss pauses", voice.duration_seconds, duration_s, pause_s)
    return AudioAsset(path=output_path, channels=STEREO, duration_seconds=float(duration_s))


def prepare_background_music(ffmpeg: FFmpeg, source: Path, duration_s: float, output_path: Path) -> AudioAsset:
    """Loop or trim the music bed to ``duration_s`` with short fades at both ends."""
    filters = ",".join([
        *fade_filters(duration_s, MUSIC_FADE_IN_SECONDS, MUSIC_FADE_OUT_SECONDS),
        f"aformat=sample_rates={SAMPLE_RATE}:channel_layouts=stereo",
    ])
    ffmpeg.run([
        "-stream_loop", "-1",
        "-i", str(source),
        "-t", format_hz(duration_s),
        "-af", filters,
        *PCM_STEREO,
        str(output_path),
    ])
    return AudioAsset(path=Path(output_path), channels=STEREO, duration_seconds=float(duration_s))


class ToneSynthesizer:
    """Pure-tone (solfeggio) and dual-channel (binaural) generators, optionally over a noise carrier."""

    def __init__(self, ffmpeg: FFmpeg):
        self.ffmpeg = ffmpeg

    @staticmethod
    def solfeggio_command(frequency_hz, duration_s, gain_db, output_path,
                          carrier: Optional[CarrierSpec] = None) -> list[str]:
        tone = f"sine=frequency={format_hz(frequency_hz)}:duration={duration_s}:sample_rate={SAMPLE_RATE}"
        if carrier is None:
            return [
                "-f", "lavfi",
                "-i", tone,
                # mono source duplicated to both channels
                "-af", f"volume={format_db(gain_db)},aformat=channel_layouts=stereo",
                *PCM_STEREO,
                str(output_path),
            ]
        return [
            "-f", "lavfi",
            "-i", tone,
            "-f", "lavfi",
            "-i", noise_source(carrier.color, duration_s),
            "-filter_complex",
            f"[0:a]volume={format_db(gain_db)}[tone];"
            f"[1:a]volume={format_db(carrier.gain_db)}[carrier];"
            "[tone][carrier]amix=inputs=2:duration=first,aformat=channel_layouts=stereo[out]",
            "-map", "[out]",
            *PCM_STEREO,
            str(output_path),
        ]

    @staticmethod
    def binaural_command(left_hz, right_hz, duration_s, gain_db, output_path,
                         carrier: Optional[CarrierSpec] = None) -> list[str]:
        args = [
            "-f", "lavfi",
            "-i", f"sine=frequency={format_hz(left_hz)}:duration={duration_s}:sample_rate={SAMPLE_RATE}",
            "-f", "lavfi",
            "-i", f"sine=frequency={format_hz(right_hz)}:duration={duration_s}:sample_rate={SAMPLE_RATE}",
        ]
        # input 0 -> left, input 1 -> right; never downmixed
        beat = f"[0:a][1:a]amerge=inputs=2,pan=stereo|c0=c0|c1=c1,volume={format_db(gain_db)}"
        if carrier is None:
            graph = f"{beat}[out]"
        else:
            args += ["-f", "lavfi", "-i", noise_source(carrier.color, duration_s)]
            # The same noise on both ears leaves the L/R frequency difference intact.
            noise_db = carrier.gain_db + BINAURAL_CARRIER_OFFSET_DB
            graph = ";".join([
                f"{beat}[beat]",
                f"[2:a]volume={format_db(noise_db)},pan=stereo|c0=c0|c1=c0[noise]",
                "[beat][noise]amix=inputs=2:duration=first[out]",
            ])
        return [*args, "-filter_complex", graph, "-map", "[out]", *PCM_STEREO, str(output_path)]

    def solfeggio(self, frequency_hz, duration_s: int, gain_db: float, output_path: Path,
                  carrier: Optional[CarrierSpec] = None) -> AudioAsset:
        frequency = Decimal(str(frequency_hz))
        logger.info(
            "Generating solfeggio tone %s Hz for %ss at %s dB (carrier: %s)",
            frequency, duration_s, gain_db, carrier.color if carrier else "none",
        )
        self.ffmpeg.run(self.solfeggio_command(frequency, duration_s, gain_db, output_path, carrier))
        return AudioAsset(
            path=Path(output_path),
            channels=STEREO,
            duration_seconds=float(duration_s),
            channel_frequencies=(frequency, frequency),
        )

    def binaural(self, base_frequency_hz, beat_frequency_hz, duration_s: int, gain_db: float,
                 output_path: Path, carrier: Optional[CarrierSpec] = None) -> AudioAsset:
        # Decimal keeps right - left exactly equal to the configured beat.
        left = Decimal(str(base_frequency_hz))
        right = left + Decimal(str(beat_frequency_hz))
        logger.info("Generating binaural beat L=%s Hz R=%s Hz for %ss", left, right, duration_s)
        self.ffmpeg.run(self.binaural_command(left, right, duration_s, gain_db, output_path, carrier))
        return AudioAsset(
            path=Path(output_path),
            channels=STEREO,
            duration_seconds=float(duration_s),
            channel_frequencies=(left, right),
        )


class Mixer:
    """Sums layers into one stereo master, then fades and optionally loudness-normalizes it."""

    def __init__(self, ffmpeg: FFmpeg):
        self.ffmpeg = ffmpeg

    @staticmethod
    def filter_graph(gains: Sequence[float], output: OutputSpec, fade: Optional[FadeSpec] = None,
                     duration_s: Optional[float] = None) -> str:
        if not gains:
            raise AudioProcessingError("At least one layer is required to mix")

        # Each layer is forced to stereo before summation so mono inputs cannot collapse the master.
        chains = [
            f"[{i}:a]volume={format_db(gain)},aformat=sample_rates={SAMPLE_RATE}:channel_layouts=stereo[a{i}]"
            for i, gain in enumerate(gains)
        ]
        labels = "".join(f"[a{i}]" for i in range(len(gains)))
        if len(gains) > 1:
            # The first input (the voice) defines the length; shorter inputs drop out.
            chains.append(f"{labels}amix=inputs={len(gains)}:duration=first:dropout_transition=2[mix]")
        else:
            chains.append(f"{labels}anull[mix]")

        post = []
        if fade is not None:
            post += fade_filters(duration_s, fade.in_ms / 1000, fade.out_ms / 1000)
        if output.normalize:
            post.append(
                f"loudnorm=I={format_hz(output.target_loudness_lufs)}"
                f":TP={format_hz(PEAK_CEILING_DBTP)}:LRA={LOUDNESS_RANGE_LU}"
            )
        post.append(f"aformat=sample_rates={SAMPLE_RATE}:channel_layouts=stereo")
        chains.append("[mix]" + ",".join(post) + "[out]")
        return ";".join(chains)

    def mix(self, layers: Sequence[Layer], output: OutputSpec, output_path: Path,
            fade: Optional[FadeSpec] = None) -> AudioAsset:
        # The master is as long as the first layer.
        duration = layers[0].asset.duration_seconds if layers else None
        graph = self.filter_graph([layer.gain_db for layer in layers], output, fade, duration)

        args: list[str] = []
        for layer in layers:
            args += ["-i", str(layer.asset.path)]
        args += [
            "-filter_complex", graph,
            "-map", "[out]",
            "-ac", str(STEREO),
            *encoding_params(output.format, output.quality),
            str(output_path),
        ]

        logger.info(
            "Mixing %d layers (%s) to %s/%s normalize=%s",
            len(layers), ", ".join(layer.label or layer.asset.path.name for layer in layers),
            output.format, output.quality, output.normalize,
        )
        self.ffmpeg.run(args)

        probe = self.ffmpeg.probe(output_path)
        if probe.channels != STEREO:
            raise AudioProcessingError(f"Mixed output has {probe.channels} channels, expected {STEREO}")

        return AudioAsset(
            path=Path(output_path),
            channels=probe.channels,
            duration_seconds=probe.duration_seconds,
            format=output.format,
        )
