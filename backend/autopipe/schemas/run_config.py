"""Frozen run configuration snapshot.

Captured once when a run starts and stored on the run row. Unknown fields are
rejected so a typo in a client payload fails loudly instead of being dropped.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class NarrationVoice(BaseModel):
    """Voice used for every narrated utterance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider: Literal["google", "elevenlabs", "fish"] = "google"
    voice_id: str = Field(default="ja-JP-Neural2-B", min_length=1, max_length=100)


class RunConfig(BaseModel):
    """All parameters a run needs, validated at creation and never mutated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    experience_tag: Literal["autopipe_v1"] = "autopipe_v1"
    target_scene_count: int = Field(default=5, ge=3, le=10)
    split_mode: Literal["ai", "preserve"] = "ai"
    output_preset: Literal["yt_long", "short_vertical"] = "yt_long"
    narration_voice: NarrationVoice = NarrationVoice()
    bgm_mode: Literal["none", "auto"] = "none"
