"""Pre-built step catalogue and helpers for custom steps."""

from typing import List, Optional

from .core import StepDefinition, StepKind


PREBUILT_PROMPTS = [
    {"name": "Add a Llama", "prompt": "can you add a llama next to the main subject of the image"},
    {"name": "Convert to B&W", "prompt": "convert this image to black and white, maintaining high contrast"},
    {"name": "Make it Surreal", "prompt": "transform this image into a surrealist painting style"},
    {"name": "Add a Pop of Color", "prompt": "make the main subject vibrant and colorful, and the background muted"},
    {"name": "Cyberpunk Style", "prompt": "give this image a cyberpunk aesthetic with neon lights and a futuristic feel"},
    {"name": "Vintage Look", "prompt": "apply a vintage, sepia-toned filter to this image"},
]

CUSTOM_NAME_LENGTH = 20


def list_prebuilt_steps() -> List[StepDefinition]:
    """Fresh step instances for every preset, each with its own id."""
    return [
        StepDefinition(name=preset["name"], prompt=preset["prompt"], kind=StepKind.PREBUILT)
        for preset in PREBUILT_PROMPTS
    ]


def prebuilt_step(name: str, step_id: Optional[str] = None) -> StepDefinition:
    """Create a step from the preset with the given display name."""
    for preset in PREBUILT_PROMPTS:
        if preset["name"] == name:
            kwargs = {"name": preset["name"], "prompt": preset["prompt"], "kind": StepKind.PREBUILT}
            if step_id:
                kwargs["id"] = step_id
            return StepDefinition(**kwargs)
    raise KeyError(f"Unknown preset step: {name}")


def custom_step_name(prompt: str) -> str:
    trimmed = prompt.strip()
    suffix = "..." if len(trimmed) > CUSTOM_NAME_LENGTH else ""
    return f"Custom: {trimmed[:CUSTOM_NAME_LENGTH]}{suffix}"


def custom_step(prompt: str, step_id: Optional[str] = None) -> StepDefinition:
    """Create a custom step named after the start of its prompt."""
    if not prompt or not prompt.strip():
        raise ValueError("Custom prompt cannot be empty")
    kwargs = {"name": custom_step_name(prompt), "prompt": prompt.strip(), "kind": StepKind.CUSTOM}
    if step_id:
        kwargs["id"] = step_id
    return StepDefinition(**kwargs)
