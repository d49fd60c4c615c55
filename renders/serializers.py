from rest_framework import serializers

from .jobdata import (
    BINAURAL_BANDS,
    DEFAULT_BINAURAL_BASE_HZ,
    DEFAULT_BINAURAL_GAIN_DB,
    DEFAULT_CARRIER_GAIN_DB,
    DEFAULT_FADE_IN_MS,
    DEFAULT_FADE_OUT_MS,
    DEFAULT_MUSIC_GAIN_DB,
    DEFAULT_PAUSE_SECONDS,
    DEFAULT_SOLFEGGIO_GAIN_DB,
    DEFAULT_TARGET_LUFS,
    DEFAULT_VOICE_GAIN_DB,
    NOISE_COLORS,
    OUTPUT_FORMATS,
    QUALITY_TIERS,
    SOLFEGGIO_FREQUENCIES,
)
from .models import RenderJob

MAX_SCRIPT_LENGTH = 5000
MAX_CANCEL_REASON_LENGTH = 255
MAX_FADE_MS = 10000


def _gain(default):
    return serializers.FloatField(required=False, default=default, min_value=-60.0, max_value=0.0)


class OpenAIVoiceSettingsSerializer(serializers.Serializer):
    speed = serializers.FloatField(required=False, min_value=0.25, max_value=4.0)
    model = serializers.CharField(required=False, max_length=64)


class ElevenLabsVoiceSettingsSerializer(serializers.Serializer):
    stability = serializers.FloatField(required=False, min_value=0.0, max_value=1.0)
    similarity_boost = serializers.FloatField(required=False, min_value=0.0, max_value=1.0)
    model_id = serializers.CharField(required=False, max_length=64)


class UploadedVoiceSettingsSerializer(serializers.Serializer):
    pass


# Settings accepted per known provider; anything else is rejected at intake.
VOICE_SETTINGS_SERIALIZERS = {
    "openai": OpenAIVoiceSettingsSerializer,
    "elevenlabs": ElevenLabsVoiceSettingsSerializer,
    "uploaded": UploadedVoiceSettingsSerializer,
}


class VoiceSerializer(serializers.Serializer):
    # Free text: unknown providers are reported by the worker.
    provider = serializers.CharField(max_length=64)
    voice_id = serializers.CharField(max_length=255)
    settings = serializers.DictField(required=False, default=dict)
    gain_db = serializers.FloatField(required=False, default=DEFAULT_VOICE_GAIN_DB, min_value=-30.0, max_value=10.0)
    pause_seconds = serializers.IntegerField(required=False, default=DEFAULT_PAUSE_SECONDS, min_value=1, max_value=30)

    def validate(self, attrs):
        settings_serializer = VOICE_SETTINGS_SERIALIZERS.get(attrs["provider"])
        if settings_serializer is None:
            return attrs

        raw = attrs.get("settings") or {}
        ser = settings_serializer(data=raw)
        errors = {} if ser.is_valid() else dict(ser.errors)
        for key in sorted(set(raw) - set(ser.fields)):
            errors[key] = [f"Unknown setting for provider {attrs['provider']!r}."]
        if errors:
            raise serializers.ValidationError({"settings": errors})

        attrs["settings"] = dict(ser.validated_data)
        return attrs


class BackgroundMusicSerializer(serializers.Serializer):
    asset_id = serializers.CharField(max_length=512)
    gain_db = _gain(DEFAULT_MUSIC_GAIN_DB)


class SolfeggioSerializer(serializers.Serializer):
    frequency_hz = serializers.FloatField()
    gain_db = _gain(DEFAULT_SOLFEGGIO_GAIN_DB)

    def validate_frequency_hz(self, value):
        if value not in SOLFEGGIO_FREQUENCIES:
            raise serializers.ValidationError(
                f"Unsupported solfeggio frequency {value:g}. Allowed: {list(SOLFEGGIO_FREQUENCIES)}"
            )
        return value


class BinauralSerializer(serializers.Serializer):
    base_frequency_hz = serializers.FloatField(
        required=False, default=DEFAULT_BINAURAL_BASE_HZ, min_value=50.0, max_value=1000.0
    )
    beat_frequency_hz = serializers.FloatField(required=False, min_value=0.1, max_value=100.0)
    band = serializers.ChoiceField(choices=list(BINAURAL_BANDS), required=False, write_only=True)
    gain_db = _gain(DEFAULT_BINAURAL_GAIN_DB)

    def validate(self, attrs):
        # An explicit beat wins over the band preset.
        band = attrs.pop("band", None)
        if "beat_frequency_hz" not in attrs:
            if band is None:
                raise serializers.ValidationError({"beat_frequency_hz": ["Provide beat_frequency_hz or band."]})
            attrs["beat_frequency_hz"] = BINAURAL_BANDS[band]
        return attrs


class CarrierSerializer(serializers.Serializer):
    color = serializers.ChoiceField(choices=NOISE_COLORS)
    gain_db = _gain(DEFAULT_CARRIER_GAIN_DB)


class FadeSerializer(serializers.Serializer):
    in_ms = serializers.IntegerField(default=DEFAULT_FADE_IN_MS, min_value=0, max_value=MAX_FADE_MS)
    out_ms = serializers.IntegerField(default=DEFAULT_FADE_OUT_MS, min_value=0, max_value=MAX_FADE_MS)


class OutputSerializer(serializers.Serializer):
    format = serializers.ChoiceField(choices=OUTPUT_FORMATS, default="mp3")
    quality = serializers.ChoiceField(choices=QUALITY_TIERS, default="medium")
    normalize = serializers.BooleanField(default=True)
    target_loudness_lufs = serializers.FloatField(
        required=False, default=DEFAULT_TARGET_LUFS, min_value=-30.0, max_value=-6.0
    )
    channels = serializers.ChoiceField(choices=(1, 2), default=2)


class JobDataSerializer(serializers.Serializer):
    script = serializers.CharField(max_length=MAX_SCRIPT_LENGTH, trim_whitespace=True)
    voice = VoiceSerializer()
    background_music = BackgroundMusicSerializer(required=False, allow_null=True)
    solfeggio = SolfeggioSerializer(required=False, allow_null=True)
    binaural = BinauralSerializer(required=False, allow_null=True)
    carrier = CarrierSerializer(required=False, allow_null=True)
    output = OutputSerializer(required=False)
    fade = FadeSerializer(required=False)
    duration_seconds = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=1800)

    def validate(self, attrs):
        if "output" not in attrs:
            attrs["output"] = OutputSerializer().run_validation({})
        if "fade" not in attrs:
            attrs["fade"] = FadeSerializer().run_validation({})
        if attrs.get("binaural") and attrs["output"]["channels"] == 1:
            raise serializers.ValidationError({"output": ["binaural enabled with mono output"]})
        return attrs


class RenderJobCreateSerializer(serializers.Serializer):
    track_id = serializers.CharField(max_length=64)
    user_id = serializers.CharField(max_length=64)
    job_data = JobDataSerializer()


class RenderJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = RenderJob
        fields = [
            "id",
            "track_id",
            "user_id",
            "status",
            "progress",
            "stage",
            "job_data",
            "result",
            "error",
            "cancel_reason",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class CancelRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(
        required=False, allow_blank=True, max_length=MAX_CANCEL_REASON_LENGTH
    )
