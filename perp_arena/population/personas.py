"""Default persona picker used when no text generator is wired in."""
import random
from typing import Optional

from perp_arena.constants import (
    BOT_NAME_SUFFIX_MAX,
    DEFAULT_PERSONA_BIO,
    DEFAULT_PERSONA_PREFIX,
    STRATEGIES,
)
from perp_arena.domain.protocols import Persona


class TemplatePersonaProvider:
    """Picks a strategy label from the fixed table; keeps the caller's name hint."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def __call__(self, name_hint: Optional[str] = None) -> Persona:
        name = (name_hint or "").strip()
        if not name:
            name = f"{DEFAULT_PERSONA_PREFIX}-{self.rng.randint(0, BOT_NAME_SUFFIX_MAX)}"
        return Persona(name=name, strategy=self.rng.choice(STRATEGIES), bio=DEFAULT_PERSONA_BIO)
