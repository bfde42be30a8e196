"""
TestMaster AI
Generation Executor.

Picks a model and a template from the registry, renders the prompt, calls
the gateway once and parses the structured JSON result.

Resolution order:
    model     explicit id (if it exists and is active) → task default → NoActiveModel
    template  explicit id (if active, same task and variant) → first active
              template for (task, variant) → NoActiveTemplate

Nothing is cached and nothing is retried.
"""

import json
import logging
import re
from dataclasses import dataclass

from testmaster.core.exceptions import MalformedResponse, NoActiveModel, NoActiveTemplate

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass
class GenerationResult:
    data: dict
    model_id: str
    template_id: str
    prompt: str


def first_json_object(text: str) -> str | None:
    """Return the first balanced top-level {...} span, skipping braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_structured_response(text: str) -> dict:
    """Extract the JSON object from a model response.

    A ```json fenced block wins; otherwise the first balanced object span
    is used. Raises MalformedResponse when neither yields a JSON object.
    """
    text = text or ""
    candidates = []
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    span = first_json_object(text)
    if span:
        candidates.append(span)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data

    logger.warning("Unparseable model response: %s", text[:300])
    raise MalformedResponse("Model response contained no JSON object", raw=text[:2000])


class GenerationExecutor:
    """Runs one generation task against the injected registry and gateway."""

    def __init__(self, registry, gateway):
        self.registry = registry
        self.gateway = gateway

    def resolve_model(self, task: str, model_id: str | None = None):
        if model_id:
            model = self.registry.get_model(model_id)
            if model is not None and model.is_active:
                return model
            logger.info("Requested model %s unavailable, using default for %s", model_id, task)
        model = self.registry.get_default_model(task)
        if model is None:
            raise NoActiveModel(task)
        return model

    def resolve_template(self, task: str, variant: str = "single", template_id: str | None = None):
        if template_id:
            tpl = self.registry.get_template(template_id)
            if tpl is not None and tpl.is_active and tpl.task == task and tpl.variant == variant:
                return tpl
            logger.info("Requested template %s unusable for %s/%s, using first active",
                        template_id, task, variant)
        templates = self.registry.get_templates_for_task(task, variant)
        if not templates:
            raise NoActiveTemplate(task, variant)
        return templates[0]

    def execute(
        self,
        task: str,
        variables: dict,
        model_id: str | None = None,
        template_id: str | None = None,
        variant: str = "single",
    ) -> GenerationResult:
        """
        Render, complete and parse.

        Raises:
            NoActiveModel / NoActiveTemplate before any network call,
            ProviderError / GenerationTimeout from the gateway,
            MalformedResponse when the response holds no JSON object.
        """
        model = self.resolve_model(task, model_id)
        template = self.resolve_template(task, variant, template_id)
        prompt = self.registry.render_template(template, variables)

        logger.debug("Executing %s/%s with model=%s template=%s", task, variant, model.id, template.id)
        raw = self.gateway.complete(prompt, model)
        data = parse_structured_response(raw)
        return GenerationResult(data=data, model_id=model.id, template_id=template.id, prompt=prompt)
