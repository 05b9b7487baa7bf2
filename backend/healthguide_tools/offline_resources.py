from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class ResourceItem:
    title: str
    content: str


EMERGENCY_INSTRUCTIONS: tuple[ResourceItem, ...] = (
    ResourceItem(
        "Chest Pain / Heart Attack",
        "1. Call emergency services immediately. 2. Sit and rest. 3. If prescribed, take nitroglycerin. "
        "4. If not allergic, chew an aspirin.",
    ),
    ResourceItem(
        "Choking (Heimlich Maneuver)",
        "1. Stand behind the person. 2. Wrap arms around waist. 3. Make a fist and place it above the navel. "
        "4. Give quick, upward thrusts.",
    ),
    ResourceItem(
        "Severe Bleeding",
        "1. Apply direct pressure to the wound with a clean cloth. 2. Elevate the limb. "
        "3. Do not remove the cloth if soaked; add more on top.",
    ),
    ResourceItem(
        "Stroke Symptoms (FAST)",
        "F: Face drooping. A: Arm weakness. S: Speech difficulty. T: Time to call emergency services.",
    ),
)

CACHED_FAQS: tuple[ResourceItem, ...] = (
    ResourceItem(
        "How do I check a fever?",
        "Use a digital thermometer. A normal temperature is around 98.6°F (37°C). "
        "A fever is generally considered 100.4°F (38°C) or higher.",
    ),
    ResourceItem(
        "What is the best way to clean a wound?",
        "Rinse with cool water for several minutes. Use mild soap to clean the surrounding area, "
        "but avoid getting soap in the wound itself.",
    ),
    ResourceItem(
        "How much water should I drink daily?",
        "While it varies, a general rule is about 8-10 glasses (2 liters) per day for most healthy adults.",
    ),
    ResourceItem(
        "How do I treat a minor burn?",
        "Run cool (not cold) water over the area for 10-20 minutes. "
        "Apply an antibiotic ointment and cover with a clean bandage.",
    ),
)


def offline_resources() -> dict[str, Any]:
    return {
        "emergency_instructions": [asdict(item) for item in EMERGENCY_INSTRUCTIONS],
        "faqs": [asdict(item) for item in CACHED_FAQS],
    }
