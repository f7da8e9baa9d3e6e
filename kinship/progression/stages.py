from enum import Enum
from typing import Any, Dict, List


class Stage(str, Enum):
    GETTING_TO_KNOW = "getting_to_know"
    TRIAL_PERIOD = "trial_period"
    OFFICIAL_CEREMONY = "official_ceremony"
    FAMILY_LIFE = "family_life"
    JOURNEY_COMPLETED = "journey_completed"


# Forward-only chain; journey_completed is the terminal marker.
STAGE_ORDER: List[Stage] = [
    Stage.GETTING_TO_KNOW,
    Stage.TRIAL_PERIOD,
    Stage.OFFICIAL_CEREMONY,
    Stage.FAMILY_LIFE,
    Stage.JOURNEY_COMPLETED,
]

ACTIVE_STAGES = STAGE_ORDER[:-1]

STAGE_NAMES = {
    Stage.GETTING_TO_KNOW: "Getting Acquainted",
    Stage.TRIAL_PERIOD: "Building Trust",
    Stage.OFFICIAL_CEREMONY: "Family Bond",
    Stage.FAMILY_LIFE: "Full Adoption",
    Stage.JOURNEY_COMPLETED: "Journey Completed",
}

STAGE_PREVIEWS = {
    Stage.GETTING_TO_KNOW: [
        "Send unlimited text messages",
        "Share photos and memories",
        "Meet in person for the first time",
    ],
    Stage.TRIAL_PERIOD: [
        "Weekly video calls",
        "Shared diary entries",
        "Complete trust exercises",
    ],
    Stage.OFFICIAL_CEREMONY: [
        "One offline meetup (coffee/meal)",
        "Weekly video call for 3 weeks",
        "Help with simple weekly tasks",
    ],
    Stage.FAMILY_LIFE: [
        "Full family integration",
        "Official ceremony",
        "Certificate of adoption",
    ],
    Stage.JOURNEY_COMPLETED: [],
}

LOCKED_MESSAGES = {
    Stage.GETTING_TO_KNOW: {
        Stage.TRIAL_PERIOD: 'Complete "Getting Acquainted" stage to unlock Building Trust.',
        Stage.OFFICIAL_CEREMONY: "Complete previous stages to unlock Family Bond.",
        Stage.FAMILY_LIFE: "Complete all previous stages to unlock Full Adoption.",
    },
    Stage.TRIAL_PERIOD: {
        Stage.OFFICIAL_CEREMONY: 'Complete "Building Trust" stage to unlock Family Bond.',
        Stage.FAMILY_LIFE: "Complete previous stages to unlock Full Adoption.",
    },
    Stage.OFFICIAL_CEREMONY: {
        Stage.FAMILY_LIFE: 'Complete "Family Bond" stage to unlock Full Adoption.',
    },
}


def stage_index(stage) -> int:
    return STAGE_ORDER.index(Stage(stage))


def next_stage(stage) -> Stage | None:
    idx = stage_index(stage)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def is_terminal(stage) -> bool:
    return Stage(stage) == Stage.JOURNEY_COMPLETED


def display_name(stage) -> str:
    return STAGE_NAMES[Stage(stage)]


def locked_stage_message(target, current) -> str:
    return LOCKED_MESSAGES.get(Stage(current), {}).get(Stage(target), "This stage is locked.")


def stage_progression(current) -> List[Dict[str, Any]]:
    """
    Stage list for the progression screen.

    Each entry: stage, display_name, order (1-based), is_current, is_completed.
    The terminal marker is left out; once it is reached every stage reads as completed.
    """
    current_idx = stage_index(current)
    return [
        {
            "stage": stage.value,
            "display_name": STAGE_NAMES[stage],
            "order": idx + 1,
            "is_current": idx == current_idx,
            "is_completed": idx < current_idx,
        }
        for idx, stage in enumerate(ACTIVE_STAGES)
    ]


def locked_stage_detail(target, current) -> Dict[str, Any]:
    target = Stage(target)
    unlocked = stage_index(target) <= stage_index(current)
    return {
        "stage": target.value,
        "stage_order": stage_index(target) + 1,
        "title": STAGE_NAMES[target],
        "description": "This stage unlocks after you complete all requirements in the previous stage.",
        "is_locked": not unlocked,
        "unlock_message": None if unlocked else locked_stage_message(target, current),
        "preview_requirements": list(STAGE_PREVIEWS[target]),
    }


def next_stage_preview(current) -> List[str]:
    nxt = next_stage(current)
    if nxt is None or is_terminal(nxt):
        return []
    return list(STAGE_PREVIEWS[nxt])
