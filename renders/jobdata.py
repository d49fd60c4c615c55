"""
Typed view of ``RenderJob.job_data``.

The JSON blob is validated once by the intake serializer; the worker only
ever reads it through these dataclasses.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

SOLFEGGIO_FREQUENCIES = (174, 285, 396, 417, 528, 639, 741, 852, 963)

DEFAULT_TARGET_LUFS = -16.0
DEFAULT_MUSIC_GAIN_DB = -10.0
DEFAULT_SOLFEGGIO_GAIN_DB = -18.0
DEFAULT_BINAURAL_GAIN_DB = -20.0
DEFAULT_BINAURAL_BASE_HZ = 200.0
DEFAULT_VOICE_GAIN_DB = -1.0
DEFAULT_CARRIER_GAIN_DB = -24.0
DEFAULT_PAUSE_SECONDS = 3
DEFAULT_FADE_IN_MS = 1000
DEFAULT_FADE_OUT_MS = 1500

# Default beat frequency (Hz) for each brainwave band.
BINAURAL_BANDS = {"delta": 2.0, "theta": 6.0, "alpha": 10.0, "beta": 20.0, "gamma": 40.0}
NOISE_COLORS = ("pink", "brown")

OUTPUT_FORMATS = ("mp3", "wav")
QUALITY_TIERS = ("low", "medium", "high")


@dataclass(frozen=True)
class VoiceSelection:
    provider: str
    voice_id: str
    settings: dict = field(default_factory=dict)
    gain_db: float = DEFAULT_VOICE_GAIN_DB
    # Silence between repetitions when the narration is looped to an explicit duration.
    pause_seconds: int = DEFAULT_PAUSE_SECONDS


@dataclass(frozen=True)
class BackgroundMusicSpec:
    asset_id: str
    gain_db: float = DEFAULT_MUSIC_GAIN_DB


@dataclass(frozen=True)
class SolfeggioSpec:
    frequency_hz: float
    gain_db: float = DEFAULT_SOLFEGGIO_GAIN_DB


@dataclass(frozen=True)
class BinauralSpec:
    beat_frequency_hz: float
    base_frequency_hz: float = DEFAULT_BINAURAL_BASE_HZ
    gain_db: float = DEFAULT_BINAURAL_GAIN_DB


@dataclass(frozen=True)
class CarrierSpec:
    """Low-level noise bed mixed under the tones."""

    color: str
    gain_db: float = DEFAULT_CARRIER_GAIN_DB


@dataclass(frozen=True)
class FadeSpec:
    in_ms: int = DEFAULT_FADE_IN_MS
    out_ms: int = DEFAULT_FADE_OUT_MS


@dataclass(frozen=True)
class OutputSpec:
    format: str = "mp3"
    quality: str = "medium"
    normalize: bool = True
    target_loudness_lufs: float = DEFAULT_TARGET_LUFS
    channels: int = 2


@dataclass(frozen=True)
class JobData:
    script: str
    voice: VoiceSelection
    output: OutputSpec
    fade: FadeSpec = field(default_factory=FadeSpec)
    background_music: Optional[BackgroundMusicSpec] = None
    solfeggio: Optional[SolfeggioSpec] = None
    binaural: Optional[BinauralSpec] = None
    carrier: Optional[CarrierSpec] = None
    duration_seconds: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobData":
        voice = data["voice"]
        output = data.get("output") or {}
        music = data.get("background_music")
        solfeggio = data.get("solfeggio")
        binaural = data.get("binaural")
        carrier = data.get("carrier")
        fade = data.get("fade") or {}

        target = output.get("target_loudness_lufs")
        return cls(
            script=data["script"],
            voice=VoiceSelection(
                provider=voice["provider"],
                voice_id=voice["voice_id"],
                settings=dict(voice.get("settings") or {}),
                gain_db=float(voice.get("gain_db", DEFAULT_VOICE_GAIN_DB)),
                pause_seconds=int(voice.get("pause_seconds", DEFAULT_PAUSE_SECONDS)),
            ),
            output=OutputSpec(
                format=output.get("format", "mp3"),
                quality=output.get("quality", "medium"),
                normalize=bool(output.get("normalize", True)),
                target_loudness_lufs=DEFAULT_TARGET_LUFS if target is None else float(target),
                channels=int(output.get("channels", 2)),
            ),
            fade=FadeSpec(
                in_ms=int(fade.get("in_ms", DEFAULT_FADE_IN_MS)),
                out_ms=int(fade.get("out_ms", DEFAULT_FADE_OUT_MS)),
            ),
            background_music=BackgroundMusicSpec(
                asset_id=music["asset_id"],
                gain_db=float(music.get("gain_db", DEFAULT_MUSIC_GAIN_DB)),
            ) if music else None,
            solfeggio=SolfeggioSpec(
                frequency_hz=float(solfeggio["frequency_hz"]),
                gain_db=float(solfeggio.get("gain_db", DEFAULT_SOLFEGGIO_GAIN_DB)),
            ) if solfeggio else None,
            binaural=BinauralSpec(
                beat_frequency_hz=float(binaural["beat_frequency_hz"]),
                base_frequency_hz=float(binaural.get("base_frequency_hz", DEFAULT_BINAURAL_BASE_HZ)),
                gain_db=float(binaural.get("gain_db", DEFAULT_BINAURAL_GAIN_DB)),
            ) if binaural else None,
            carrier=CarrierSpec(
                color=carrier["color"],
                gain_db=float(carrier.get("gain_db", DEFAULT_CARRIER_GAIN_DB)),
            ) if carrier else None,
            duration_seconds=data.get("duration_seconds"),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict; absent optional layers are omitted."""
        return {key: value for key, value in asdict(self).items() if value is not None}
