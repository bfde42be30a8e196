"""
TestMaster AI
Batch generation flow.

One document goes to the model in a single call; the model decides how
many plans (or cases) to derive. The returned items are not persisted:
they start in pending and go through the review workflow.
"""

import logging

from testmaster.ai.records import normalize_content
from testmaster.ai.review import GeneratedItem
from testmaster.core.exceptions import InvalidBatchShape, NotFoundError, ValidationError
from testmaster.models.ai import BATCH_KEYS, TASK_FOR_KIND, RecordKind

logger = logging.getLogger(__name__)


class BatchGenerator:
    """Document → N pending GeneratedItems."""

    def __init__(self, executor, storage):
        self.executor = executor
        self.storage = storage

    def _validate(self, kind, document_text: str, plan_id) -> tuple[RecordKind, int | None]:
        try:
            kind = RecordKind(kind)
        except ValueError as exc:
            raise ValidationError("Unsupported batch kind", {"kind": "must be plan or case"}) from exc
        if kind not in BATCH_KEYS:
            raise ValidationError("Unsupported batch kind", {"kind": "must be plan or case"})
        if not str(document_text or "").strip():
            raise ValidationError("Missing required fields", {"document": "required"})
        if plan_id in (None, ""):
            return kind, None
        try:
            return kind, int(plan_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("plan_id must be an integer", {"plan_id": "invalid"}) from exc

    def plan_context(self, plan_id: int | None) -> dict | None:
        if plan_id is None:
            return None
        plan = self.storage.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("TestPlan", plan_id)
        return plan.to_dict()

    def generate_batch(
        self,
        kind,
        document_text: str,
        context: str = "",
        owner_id: str | None = None,
        plan_id=None,
        model_id: str | None = None,
        template_id: str | None = None,
    ) -> list[GeneratedItem]:
        """
        Run one batch generation.

        Raises:
            ValidationError / NotFoundError before any network call.
            GenerationError subclasses from the executor.
            InvalidBatchShape when the response lacks the item array or an
            element is not an object.
        """
        kind, plan_id = self._validate(kind, document_text, plan_id)
        plan = self.plan_context(plan_id)
        key = BATCH_KEYS[kind]

        result = self.executor.execute(
            TASK_FOR_KIND[kind].value,
            {"document": document_text, "context": context or "", "plan": plan},
            model_id=model_id,
            template_id=template_id,
            variant="batch",
        )
        raw_items = result.data.get(key)
        if not isinstance(raw_items, list):
            raise InvalidBatchShape(key)
        if any(not isinstance(entry, dict) for entry in raw_items):
            raise InvalidBatchShape(key)

        items = [GeneratedItem(kind=kind, content=normalize_content(kind, entry)) for entry in raw_items]
        for n, item in enumerate(items, start=1):
            if not item.content.get("title"):
                item.content["title"] = f"Generated {kind.value} {n}"
        logger.info("Batch generation produced %d %s items for %s (model=%s)",
                    len(items), kind.value, owner_id, result.model_id)
        return items
