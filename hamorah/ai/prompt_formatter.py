"""
Prompt Formatter for Hamorah

Assembles persona + recent history + the new user message into the shape a
backend expects:
- ZEPHYR: TinyLlama / Zephyr chat markup (<|system|> ... </s>)
- PHI3: Phi-3 chat markup (<|system|> ... <|end|>)
- TRANSCRIPT: plain "User:" / "Hamorah:" transcript for models without chat markup
- MESSAGES: role-tagged message records for chat-completions endpoints

History is cut to the most recent K turns. System-role turns are never
replayed; the persona is injected fresh on every call.
"""

from dataclasses import dataclass, field
from enum import Enum

from ..conversation import ConversationTurn, MessageRole
from ..logging_config import debug_log


class PromptStyle(str, Enum):
    ZEPHYR = "zephyr"
    PHI3 = "phi3"
    TRANSCRIPT = "transcript"
    MESSAGES = "messages"


# Sequences that end the assistant's turn for each text style
STOP_SEQUENCES = {
    PromptStyle.ZEPHYR: ("</s>", "<|user|>"),
    PromptStyle.PHI3: ("<|end|>", "<|user|>"),
    PromptStyle.TRANSCRIPT: ("\nUser:",),
    PromptStyle.MESSAGES: (),
}

ASSISTANT_NAME = "Hamorah"


@dataclass(frozen=True)
class BuiltPrompt:
    """A prompt in one backend-specific shape (text for markup styles, messages for MESSAGES)."""
    style: PromptStyle
    text: str = ""
    messages: list[dict[str, str]] = field(default_factory=list)
    history_turns: int = 0

    @property
    def stop_sequences(self) -> tuple[str, ...]:
        return STOP_SEQUENCES[self.style]

    @property
    def debug_text(self) -> str:
        """Human-readable rendering used for diagnostics."""
        if self.style != PromptStyle.MESSAGES:
            return self.text
        return "\n\n".join(f"[{m['role']}]\n{m['content']}" for m in self.messages)


def style_for_model(model_family: str) -> PromptStyle:
    """
    Pick the chat markup a model family was trained on.

    Args:
        model_family: Family name from the artifact catalog (e.g., "tinyllama", "phi-3")

    Returns:
        PromptStyle (TRANSCRIPT for unknown families)
    """
    family = (model_family or "").lower()

    if any(x in family for x in ['tinyllama', 'zephyr']):
        debug_log(f"[PROMPT FORMAT] Applied Zephyr format for {model_family}")
        return PromptStyle.ZEPHYR

    elif 'phi' in family:
        debug_log(f"[PROMPT FORMAT] Applied Phi-3 format for {model_family}")
        return PromptStyle.PHI3

    else:
        # Gemma and unknown models: a plain transcript works with any instruction-tuned model
        debug_log(f"[PROMPT FORMAT] Using transcript format for {model_family or 'unknown model'}")
        return PromptStyle.TRANSCRIPT


def recent_history(history: list[ConversationTurn] | None, window: int) -> list[ConversationTurn]:
    """The last `window` non-system turns, oldest first."""
    if not history or window <= 0:
        return []
    turns = [turn for turn in history if turn.role != MessageRole.SYSTEM]
    return turns[-window:]


def _build_zephyr(persona: str, turns: list[ConversationTurn], user_message: str) -> str:
    parts = [f"<|system|>\n{persona}</s>\n"]
    for turn in turns:
        tag = "<|user|>" if turn.is_user else "<|assistant|>"
        parts.append(f"{tag}\n{turn.content}</s>\n")
    parts.append(f"<|user|>\n{user_message}</s>\n<|assistant|>\n")
    return "".join(parts)


def _build_phi3(persona: str, turns: list[ConversationTurn], user_message: str) -> str:
    parts = [f"<|system|>\n{persona}<|end|>\n"]
    for turn in turns:
        tag = "<|user|>" if turn.is_user else "<|assistant|>"
        parts.append(f"{tag}\n{turn.content}<|end|>\n")
    parts.append(f"<|user|>\n{user_message}<|end|>\n<|assistant|>\n")
    return "".join(parts)


def _build_transcript(persona: str, turns: list[ConversationTurn], user_message: str) -> str:
    lines = [persona, "", "---", ""]
    for turn in turns:
        speaker = "User" if turn.is_user else ASSISTANT_NAME
        lines.append(f"{speaker}: {turn.content}")
    if turns:
        lines.append("")
    lines.extend([f"User: {user_message}", "", f"{ASSISTANT_NAME}:"])
    return "\n".join(lines)


def _build_messages(persona: str, turns: list[ConversationTurn], user_message: str) -> list[dict[str, str]]:
    messages = [{'role': 'system', 'content': persona}]
    messages.extend(turn.to_api_format() for turn in turns)
    messages.append({'role': 'user', 'content': user_message})
    return messages


def build_prompt(
    persona: str,
    history: list[ConversationTurn] | None,
    user_message: str,
    style: PromptStyle,
    history_window: int,
) -> BuiltPrompt:
    """
    Build a backend-specific prompt.

    Args:
        persona: System instruction text
        history: Prior turns, oldest first (may be None)
        user_message: The new user turn
        style: Target shape
        history_window: Number of most recent turns to replay

    Returns:
        BuiltPrompt
    """
    turns = recent_history(history, history_window)

    if style == PromptStyle.MESSAGES:
        prompt = BuiltPrompt(style, messages=_build_messages(persona, turns, user_message), history_turns=len(turns))
    elif style == PromptStyle.ZEPHYR:
        prompt = BuiltPrompt(style, text=_build_zephyr(persona, turns, user_message), history_turns=len(turns))
    elif style == PromptStyle.PHI3:
        prompt = BuiltPrompt(style, text=_build_phi3(persona, turns, user_message), history_turns=len(turns))
    else:
        prompt = BuiltPrompt(style, text=_build_transcript(persona, turns, user_message), history_turns=len(turns))

    debug_log(f"[PROMPT FORMAT] Built {style.value} prompt with {len(turns)} history turns")
    return prompt
