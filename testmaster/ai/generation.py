"""
TestMaster AI
Single-item generation flow.

One request produces one plan, case or execution, which is persisted
immediately with generated_by_ai=True. Input is validated before any
network call; nothing is written unless generation and parsing succeed.

Usage:
    gen = SingleItemGenerator(executor, storage)
    plan = gen.generate_one("plan-generation", {"description": "Checkout flow"}, owner_id="u-1")
"""

import logging

from testmaster.core.exceptions import NotFoundError, PersistenceError, ValidationError
from testmaster.ai.records import handler_for, normalize_content
from testmaster.models.ai import KIND_FOR_TASK, GenerationTask, RecordKind

logger = logging.getLogger(__name__)

RECORD_TASKS = tuple(t.value for t in KIND_FOR_TASK)


class SingleItemGenerator:
    """Generate-and-persist flow for one record."""

    def __init__(self, executor, storage):
        self.executor = executor
        self.storage = storage

    # ── Validation ────────────────────────────────────────────────────────

    def _validate(self, task: str, fields: dict) -> dict:
        if task not in RECORD_TASKS:
            raise ValidationError(
                "Unsupported generation type",
                {"type": f"must be one of {', '.join(RECORD_TASKS)}"},
            )
        errors = {}
        if not str(fields.get("description") or "").strip():
            errors["description"] = "required"
        if task == GenerationTask.EXECUTION.value:
            for name in ("case_id", "plan_id"):
                if fields.get(name) in (None, ""):
                    errors[name] = "required"
        if errors:
            raise ValidationError("Missing required fields", errors)

        links = {}
        for name in ("plan_id", "case_id"):
            if fields.get(name) not in (None, ""):
                try:
                    links[name] = int(fields[name])
                except (TypeError, ValueError) as exc:
                    raise ValidationError(f"{name} must be an integer", {name: "invalid"}) from exc
        return links

    def _context_variables(self, fields: dict, links: dict) -> dict:
        variables = {
            "description": fields.get("description", ""),
            "requirements": fields.get("requirements", ""),
            "context": fields.get("context", ""),
        }
        if "plan_id" in links:
            plan = self.storage.get_plan(links["plan_id"])
            if plan is None:
                raise NotFoundError("TestPlan", links["plan_id"])
            variables["plan"] = plan.to_dict()
        if "case_id" in links:
            case = self.storage.get_case(links["case_id"])
            if case is None:
                raise NotFoundError("TestCase", links["case_id"])
            variables["case"] = case.to_dict()
        return variables

    # ── Flow ──────────────────────────────────────────────────────────────

    def generate_one(
        self,
        task: str,
        fields: dict,
        owner_id: str,
        model_id: str | None = None,
        template_id: str | None = None,
    ):
        """
        Generate one record and persist it.

        Returns:
            The committed TestPlan / TestCase / TestExecution.

        Raises:
            ValidationError, NotFoundError: before any network call.
            GenerationError subclasses: unchanged from the executor; nothing written.
            PersistenceError: storage failed; ``generated`` holds the content.
        """
        links = self._validate(task, fields)
        variables = self._context_variables(fields, links)
        kind = KIND_FOR_TASK[GenerationTask(task)]

        result = self.executor.execute(task, variables, model_id=model_id, template_id=template_id)
        content = normalize_content(kind, result.data)
        if kind in (RecordKind.PLAN, RecordKind.CASE) and not content.get("title"):
            content["title"] = f"AI {handler_for(kind).label}: {str(fields['description']).strip()[:80]}"

        try:
            record = handler_for(kind).persist(self.storage, content, owner_id, **links)
        except PersistenceError as exc:
            raise PersistenceError(str(exc), generated=content) from exc

        logger.info("AI generated %s #%d for %s (model=%s template=%s)",
                    kind.value, record.id, owner_id, result.model_id, result.template_id)
        return record

    def complete(self, fields: dict, model_id: str | None = None) -> dict:
        """General completion: returns the parsed JSON without persisting."""
        if not str(fields.get("description") or "").strip():
            raise ValidationError("Missing required fields", {"description": "required"})
        result = self.executor.execute(
            GenerationTask.GENERAL.value,
            {"description": fields["description"], "context": fields.get("context", "")},
            model_id=model_id,
        )
        return result.data
