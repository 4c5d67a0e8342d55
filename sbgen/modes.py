"""Generation modes and the per-mode wording injected into prompt templates."""

from __future__ import annotations

from enum import Enum


class GenerationMode(str, Enum):
    CHARACTER_CLOSEUP = "character_closeup"
    CHARACTER_IN_SCENE = "character_in_scene"
    OBJECT_CLOSEUP = "object_closeup"
    STORYTELLING_SCENE = "storytelling_scene"
    ANIMATION = "animation"
    FREESTYLE = "freestyle"

    @classmethod
    def parse(cls, value: "str | GenerationMode | None") -> "GenerationMode":
        if isinstance(value, GenerationMode):
            return value
        if not value:
            return cls.CHARACTER_CLOSEUP
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            choices = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown generation mode {value!r}; expected one of: {choices}") from exc

    @property
    def is_animated(self) -> bool:
        return self is GenerationMode.ANIMATION


_DRAFTING_INSTRUCTIONS = {
    GenerationMode.CHARACTER_CLOSEUP: (
        "Mode: character close-up. Each shot focuses on a character's facial expression, "
        "emotion or interaction with a product. Prefer terms like close-up, medium close-up "
        "and 'eyes fixed on ...'."
    ),
    GenerationMode.CHARACTER_IN_SCENE: (
        "Mode: character in scene. Each shot shows a character interacting with the environment. "
        "Describe action, posture, atmosphere and lighting using medium and long shots."
    ),
    GenerationMode.OBJECT_CLOSEUP: (
        "Mode: object close-up. Each shot renders an object or product in extreme detail: "
        "material, sheen and texture, using macro lenses and light sweeping across surfaces."
    ),
    GenerationMode.STORYTELLING_SCENE: (
        "Mode: storytelling scene. Each shot is a complete story moment with characters, "
        "props and setting. Explain what the character does, what role the object plays and "
        "how the environment sets the mood."
    ),
    GenerationMode.ANIMATION: (
        "Mode: animation. Every description must follow the visual language and world logic "
        "of high-quality animation."
    ),
    GenerationMode.FREESTYLE: (
        "Mode: freestyle. No composition or style restrictions; write the boldest, most "
        "creative shot descriptions you can."
    ),
}

_COMPOSITION_RULES = {
    GenerationMode.CHARACTER_CLOSEUP: (
        "Composition: strict close-up or medium close-up. Focus on the character's face to "
        "capture subtle expression and gaze; the background may fall into soft bokeh."
    ),
    GenerationMode.CHARACTER_IN_SCENE: (
        "Composition: medium or long shot showing the full interaction between character and "
        "surroundings. Emphasize atmosphere, light and depth so the character sits naturally "
        "in the scene."
    ),
    GenerationMode.OBJECT_CLOSEUP: (
        "Composition: product or macro photography. Focus on the key object described in "
        "\"{{scene}}\" and bring out its material, texture and detail with professional lighting."
    ),
    GenerationMode.STORYTELLING_SCENE: (
        "Composition: cinematic scene composition. Frame characters, key props and setting "
        "together to build a moment with story, guiding the viewer's eye through their placement."
    ),
    GenerationMode.ANIMATION: (
        "Composition: cinematic scene composition. Frame characters, key props and setting "
        "together to build a moment with story, guiding the viewer's eye through their placement."
    ),
    GenerationMode.FREESTYLE: (
        "Composition: full creative freedom. Choose the framing and photographic style that "
        "gives the strongest visual impact for the scene."
    ),
}


def drafting_instruction(mode: GenerationMode) -> str:
    """Mode paragraph used when drafting the per-shot image prompts."""
    return _DRAFTING_INSTRUCTIONS[mode]


def drafting_style(mode: GenerationMode) -> str:
    if mode.is_animated:
        return (
            "Style: high-quality anime. Describe clean line work, vivid colour and scene and "
            "character dynamics that follow animation aesthetics."
        )
    return "Style: realistic 'raw photo'. Emphasize natural light, fine texture and a cinematic feel."


def style_rules(mode: GenerationMode) -> tuple[str, str, str]:
    """Return ``(style, negative, physics)`` lines for the final image prompt."""
    if mode.is_animated:
        return (
            "Style: high-quality anime with clean lines, vivid colours and expressive composition.",
            "Negative prompt: absolutely no realistic, photographic, 3D-render or live-action look.",
            "Physics: interactions and anatomy follow the logic and exaggeration of animation.",
        )
    return (
        "Style: raw photo realism with natural light, a cinematic feel and rich detail.",
        "Negative prompt: absolutely no anime, cartoon, illustration or other non-photographic style.",
        "Physics: all physical interaction and human anatomy must be real and logical.",
    )


def composition_rule(mode: GenerationMode, scene: str) -> str:
    return _COMPOSITION_RULES[mode].replace("{{scene}}", scene)


__all__ = [
    "GenerationMode",
    "drafting_instruction",
    "drafting_style",
    "style_rules",
    "composition_rule",
]
