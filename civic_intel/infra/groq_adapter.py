from __future__ import annotations

from typing import Any

from groq import Groq

from civic_intel.domain.errors import CollaboratorUnavailable
from civic_intel.domain.states import Category


_CATEGORY_LIST = ", ".join(c.value for c in Category)

CLASSIFY_PROMPT = (
    "You classify citizen complaints about civic infrastructure. Return strict JSON with keys: "
    f"category (one of: {_CATEGORY_LIST}), subcategory, confidence (0-1), summary (one sentence), "
    "entities (object with arrays locations, severity_indicators, affected_infrastructure), "
    "suggested_priority (1-10), alternative_categories (array of {category, confidence})."
)


class GroqClassificationCollaborator:
    def __init__(self, api_key: str, model: str) -> None:
        self.client = Groq(api_key=api_key)
        self.model = model
        self.name = f"groq:{model}"

    def classify(self, text: str, hints: dict[str, Any] | None = None) -> dict[str, Any] | str | None:
        if not str(text or "").strip():
            return None

        hints = hints or {}
        user_text = text[:12000]
        labels = [str(x) for x in hints.get("image_labels") or [] if str(x).strip()]
        if labels:
            user_text = f"Objects seen in attached photos: {', '.join(labels[:30])}\n\n{user_text}"
        if hints.get("language"):
            user_text = f"Language: {hints['language']}\n\n{user_text}"

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": CLASSIFY_PROMPT},
                    {"role": "user", "content": user_text},
                ],
            )
        except Exception as exc:
            raise CollaboratorUnavailable("classification", str(exc)) from exc

        # Raw content is returned unparsed; the normalizer validates it.
        return completion.choices[0].message.content
