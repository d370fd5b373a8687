"""Operator for calls to a generative model.

The model call itself is supplied by the caller as ``generate``; this module
only renders the prompt and shapes the result. The operator always declares
itself stochastic so the optimizer never caches, deduplicates or skips it.
"""

from __future__ import annotations

import string
from typing import Any, Callable, Dict, Mapping, Optional

from emberjit.operators.base import KeySet, Operator


def template_fields(template: str) -> frozenset[str]:
    """Return the top-level field names referenced by a format template."""
    fields = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name:
            fields.add(field_name.split(".")[0].split("[")[0])
    return frozenset(fields)


class LLMOperator(Operator):
    """Render a prompt from the context and pass it to ``generate``.

    Attributes:
        generate: Callable receiving the rendered prompt plus ``model`` and
            ``temperature`` keyword arguments, returning the model output.
        prompt_template: ``str.format`` template rendered with the context.
        output_key: Context key the model output is written to.
        model: Optional model identifier forwarded to ``generate``.
        temperature: Sampling temperature forwarded to ``generate``.
    """

    stochastic = True

    def __init__(
        self,
        generate: Callable[..., Any],
        prompt_template: str,
        output_key: str = "response",
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        name: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> None:
        super().__init__(name=name, operation_id=operation_id)
        self.generate = generate
        self.prompt_template = prompt_template
        self.output_key = output_key
        self.model = model
        self.temperature = temperature

    def render_prompt(self, inputs: Mapping[str, Any]) -> str:
        return self.prompt_template.format(**inputs)

    def forward(self, *, inputs: Mapping[str, Any]) -> Dict[str, Any]:
        prompt = self.render_prompt(inputs)
        output = self.generate(prompt, model=self.model, temperature=self.temperature)
        return {self.output_key: output}

    def reads(self) -> KeySet:
        return template_fields(self.prompt_template)

    def writes(self) -> KeySet:
        return frozenset({self.output_key})


__all__ = ["LLMOperator", "template_fields"]
