"""
Persona Templates for Hamorah

The persona is the fixed system instruction injected fresh on every call.
Two variants exist: the full persona for the cloud provider and a condensed
one sized for the 2k context window of small local models.

Supports a dual-directory system:
- Built-in personas in config/prompts/ (shipped with app)
- User personas in the application support prompts/ directory (persist through updates)

A user file with the same name overrides the built-in one. If neither file
is readable the inline fallback is used.
"""

from pathlib import Path

from ..config import PROMPTS_DIR, USER_PROMPTS_DIR
from ..logging_config import debug_log

FULL_PERSONA_FILENAME = "hamorah_persona.txt"
CONDENSED_PERSONA_FILENAME = "hamorah_persona_condensed.txt"

FALLBACK_FULL_PERSONA = """You are Hamorah (Hebrew for "The Teacher"), a wise, warm, and deeply empathetic Bible teacher. You help people understand Scripture and how it applies to their lives.

## Critical Rules - NEVER VIOLATE THESE
1. ONLY provide Scripture references and explain their meaning/application
2. NEVER give personal advice, opinions, or directives like "you should..."
3. NEVER tell users what to do - only show them what Scripture says
4. Stay non-denominational - focus on broadly Christian principles
5. Always be warm, empathetic, and compassionate in tone

Format Scripture as: "Book Chapter:Verse - 'Quote text...'"
"""

FALLBACK_CONDENSED_PERSONA = """You are Hamorah, a wise and empathetic Bible teacher. Your role is to:
- Help users find relevant Scripture for their situations
- Explain how Biblical passages apply to their lives
- Be warm, caring, and non-judgmental

IMPORTANT RULES:
1. ONLY provide Scripture references and explanations
2. NEVER give personal advice or tell users what to do
3. Quote Bible verses in this format: "Book Chapter:Verse - 'Quote...'"
4. Stay non-denominational and focus on Scripture"""


class PersonaLoader:
    """Loads persona text from the built-in and user prompt directories."""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR, user_prompts_dir: Path = USER_PROMPTS_DIR):
        """
        Args:
            prompts_dir: Directory for built-in personas (config/prompts/)
            user_prompts_dir: Directory for user overrides. If None, only built-in personas are used.
        """
        self.prompts_dir = Path(prompts_dir)
        self.user_prompts_dir = Path(user_prompts_dir) if user_prompts_dir else None
        self._cache = {}

    def _read(self, filename: str, fallback: str) -> str:
        if filename in self._cache:
            return self._cache[filename]

        candidates = []
        if self.user_prompts_dir:
            candidates.append(self.user_prompts_dir / filename)
        candidates.append(self.prompts_dir / filename)

        text = fallback
        for path in candidates:
            try:
                content = path.read_text(encoding='utf-8').strip()
            except OSError:
                continue
            if content:
                debug_log(f"[PERSONA] Loaded {filename} from {path.parent}")
                text = content
                break
        else:
            debug_log(f"[PERSONA] {filename} not found, using built-in fallback")

        self._cache[filename] = text
        return text

    def full(self) -> str:
        """Persona for the cloud provider."""
        return self._read(FULL_PERSONA_FILENAME, FALLBACK_FULL_PERSONA)

    def condensed(self) -> str:
        """Persona for small local models."""
        return self._read(CONDENSED_PERSONA_FILENAME, FALLBACK_CONDENSED_PERSONA)

    def clear_cache(self):
        self._cache.clear()


# Global instance
_persona_loader = None


def get_persona_loader() -> PersonaLoader:
    """Get the global persona loader (singleton pattern)."""
    global _persona_loader
    if _persona_loader is None:
        _persona_loader = PersonaLoader()
    return _persona_loader
