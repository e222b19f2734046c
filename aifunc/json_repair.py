"""LLM-powered literal repair (the model-assisted stage of the repair pipeline).

Given a completion that failed to parse or conform and a rendering of the
expected shape, it asks the model to emit corrected literal-only output.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aifunc.llm_client import AsyncLLMClient


@dataclass(slots=True)
class ModelRepairAgent:
    """Repair malformed JSON (or YAML) given an expected shape.

    The shape is the Python-flavoured type rendering used in function
    prompts, e.g. ``{"returnData": list[float]}``. Callers parse and check
    the returned text themselves.
    """

    llm: "AsyncLLMClient"
    model: str

    async def repair(
        self,
        raw: str,
        schema_text: str,
        error: str | None = None,
        req_id: str | None = None,
        format_name: str = "json",
    ) -> str:
        """Return a best-effort repaired literal as text."""

        notation = format_name.upper()
        system = f"""
You are a strict {notation} repair tool.
You receive invalid or partially valid {notation} that was intended to match
this target shape (Python type notation):

{schema_text}

Your job:
- Return a single valid {notation} value that best matches the shape, preserving its content.
- Do NOT invent new fields beyond the shape unless absolutely necessary.
- If values are missing or unclear, use null or an empty list/string.
- Output {notation} only, with no markdown, no backticks, and no commentary.
"""

        parts = [
            f"The following text is the model's output that failed to parse or validate as {notation}.",
            f"Return a corrected {notation} version.",
            "",
            "Original output:",
            raw,
        ]
        if error:
            parts.extend(["", "Parser/validation error:", error])
        user = "\n".join(parts)

        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        # Temperature 0 to keep the repair as deterministic as possible.
        extra = {"req_id": req_id} if req_id else {}
        return await self.llm.chat(messages=messages, model=self.model, temperature=0.0, **extra)
