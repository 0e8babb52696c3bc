"""
Result types returned to the host application.

AiResult is the single value type produced by every chat call. AiDiagnostics
is optional debugging/telemetry data and never affects correctness.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime

from .errors import ErrorKind


@dataclass(frozen=True)
class AiDiagnostics:
    """Debug info for one AI request."""
    provider: str                      # 'grok', 'llama_cpp', 'llamafile', 'onnx'
    model: str
    raw_prompt: str                    # Full prompt sent to the model
    timestamp: datetime = field(default_factory=datetime.now)
    prompt_tokens: int | None = None
    response_tokens: int | None = None
    latency_ms: float | None = None

    def __str__(self) -> str:
        lines = [
            "=== AI Debug Info ===",
            f"Provider: {self.provider}",
            f"Model: {self.model}",
            f"Timestamp: {self.timestamp.isoformat()}",
        ]
        if self.prompt_tokens is not None:
            lines.append(f"Prompt tokens: {self.prompt_tokens}")
        if self.response_tokens is not None:
            lines.append(f"Response tokens: {self.response_tokens}")
        if self.latency_ms is not None:
            lines.append(f"Response time: {self.latency_ms:.0f}ms")
        lines.extend(["", "=== Raw Prompt ===", self.raw_prompt])
        return "\n".join(lines)

    def to_json(self) -> str:
        """Serialize for storage next to an assistant turn."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return json.dumps(data)


@dataclass(frozen=True)
class AiResult:
    """Response from an AI provider."""
    success: bool
    content: str = ""
    related_references: tuple[str, ...] = ()
    error: str | None = None
    error_kind: ErrorKind | None = None
    diagnostics: AiDiagnostics | None = None

    @classmethod
    def ok(
        cls,
        content: str,
        related_references: list[str] | tuple[str, ...] = (),
        diagnostics: AiDiagnostics | None = None,
    ) -> "AiResult":
        return cls(
            success=True,
            content=content,
            related_references=tuple(related_references),
            diagnostics=diagnostics,
        )

    @classmethod
    def failure(
        cls,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        diagnostics: AiDiagnostics | None = None,
    ) -> "AiResult":
        return cls(success=False, error=message, error_kind=kind, diagnostics=diagnostics)
