"""
Shared LLM helpers.

This module centralizes the OpenAI-compatible chat completion call and the
model fallback order, so the OCR and classifier providers build requests
the same way. Transient API errors are not retried here; a provider tries
its next model, and when every model fails it raises ``ServiceCallFailure``
for the workflow engine to retry the whole stage.
"""

import openai


class OpenAIChatMixin:
    """
    Mixin providing an OpenAI-compatible chat completion call.

    The mixin expects ``self.settings`` to expose ``AI_MODELS`` and
    ``REQUEST_TIMEOUT``.
    """

    def _create_completion(self, **kwargs):
        """Call the OpenAI-compatible chat completion API."""
        return openai.chat.completions.create(
            timeout=self.settings.REQUEST_TIMEOUT, **kwargs
        )

    def _models_to_try(self) -> list[str]:
        """Configured models in order, without duplicates."""
        seen = set()
        models = []
        for candidate in self.settings.AI_MODELS:
            if candidate in seen:
                continue
            seen.add(candidate)
            models.append(candidate)
        return models
