"""
Feature unlock resolution.

Every consuming surface (chat, calls, album, calendar) asks `resolve()` before
allowing an action. The mapping is pure lookup data and never changes at runtime.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List

from .stages import Stage, display_name, stage_index


@dataclass(frozen=True)
class FeatureFlag:
    key: str
    name: str
    description: str
    unlock_stage: Stage


ADVISOR_CHAT = "advisor_chat"

FEATURE_FLAGS: tuple[FeatureFlag, ...] = (
    FeatureFlag(ADVISOR_CHAT, "Family Advisor", "Talk to your family advisor", Stage.GETTING_TO_KNOW),
    FeatureFlag("text", "Text Messaging", "Unlimited messages", Stage.GETTING_TO_KNOW),
    FeatureFlag("voice_message", "Voice Messages", "Send short voice notes", Stage.GETTING_TO_KNOW),
    FeatureFlag("photo_share", "Photo Sharing", "Share memories", Stage.GETTING_TO_KNOW),
    FeatureFlag("video_call", "Video Calls", "Up to 2 hours daily", Stage.TRIAL_PERIOD),
    FeatureFlag("voice_call", "Voice Calls", "Call each other", Stage.TRIAL_PERIOD),
    FeatureFlag("diary", "Shared Diary", "Document your journey", Stage.TRIAL_PERIOD),
    FeatureFlag("scheduling", "Calendar Events", "Plan activities together", Stage.TRIAL_PERIOD),
    FeatureFlag("home_visits", "Home Visits", "Visit each other at home", Stage.OFFICIAL_CEREMONY),
    FeatureFlag("certificate", "Family Certificate", "Your certificate of adoption", Stage.FAMILY_LIFE),
)

FROZEN_FEATURES: FrozenSet[str] = frozenset({ADVISOR_CHAT})


def resolve(stage, is_frozen: bool) -> FrozenSet[str]:
    if is_frozen:
        return FROZEN_FEATURES
    current = stage_index(stage)
    return frozenset(f.key for f in FEATURE_FLAGS if stage_index(f.unlock_stage) <= current)


def is_enabled(feature_key: str, stage, is_frozen: bool) -> bool:
    return feature_key in resolve(stage, is_frozen)


def newly_unlocked(from_stage, to_stage) -> List[str]:
    before = resolve(from_stage, False)
    after = resolve(to_stage, False)
    return [f.key for f in FEATURE_FLAGS if f.key in after and f.key not in before]


def describe_features(stage, is_frozen: bool) -> List[Dict[str, Any]]:
    enabled = resolve(stage, is_frozen)
    out = []
    for f in FEATURE_FLAGS:
        unlocked = f.key in enabled
        if unlocked:
            message = None
        elif is_frozen:
            message = "Paused during the cooling-off period"
        else:
            message = f"Unlocks at {display_name(f.unlock_stage)} stage"
        out.append({
            "key": f.key,
            "name": f.name,
            "description": f.description,
            "unlock_stage": f.unlock_stage.value,
            "is_unlocked": unlocked,
            "unlock_message": message,
        })
    return out
