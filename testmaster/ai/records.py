"""
TestMaster AI
Record kind handlers.

Generated content is tagged with a RecordKind. Everything kind-specific
(which fields are kept, how values are coerced, which storage call
persists it) is looked up in KIND_HANDLERS by that tag.
"""

from dataclasses import dataclass
from typing import Callable

from testmaster.models.ai import RecordKind
from testmaster.models.testing import (
    CASE_FIELDS,
    CASE_PRIORITIES,
    CASE_TYPES,
    EXECUTION_FIELDS,
    EXECUTION_STATUSES,
    PLAN_FIELDS,
)
from testmaster.services.storage_service import normalize_steps


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(f"- {v}" for v in value)
    if isinstance(value, dict):
        return "\n".join(f"{k}: {v}" for k, v in value.items())
    return str(value).strip()


def _normalize_plan(data: dict) -> dict:
    return {name: _as_text(data.get(name)) for name in PLAN_FIELDS}


def _normalize_case(data: dict) -> dict:
    content = {name: _as_text(data.get(name)) for name in CASE_FIELDS}
    priority = content["priority"].lower()
    content["priority"] = priority if priority in CASE_PRIORITIES else "medium"
    case_type = content["type"].lower()
    content["type"] = case_type if case_type in CASE_TYPES else "functional"
    content["steps"] = normalize_steps(data.get("steps"))
    return content


def _normalize_execution(data: dict) -> dict:
    content = {name: _as_text(data.get(name)) for name in EXECUTION_FIELDS}
    status = content["status"].lower().replace(" ", "_")
    content["status"] = status if status in EXECUTION_STATUSES else "not_tested"
    content["executed_by"] = content["executed_by"] or "AI Assistant"
    return content


@dataclass(frozen=True)
class KindHandler:
    kind: RecordKind
    label: str
    normalize: Callable[[dict], dict]
    create: str  # StorageService method name
    links: tuple[str, ...] = ()

    def persist(self, storage, content: dict, owner_id: str, **links):
        """Write normalized content through the storage service."""
        fields = dict(content)
        for name in self.links:
            if links.get(name) is not None:
                fields[name] = links[name]
        fields["owner_id"] = owner_id
        fields["generated_by_ai"] = True
        return getattr(storage, self.create)(fields)


KIND_HANDLERS: dict[RecordKind, KindHandler] = {
    RecordKind.PLAN: KindHandler(RecordKind.PLAN, "Test Plan", _normalize_plan, "create_plan"),
    RecordKind.CASE: KindHandler(RecordKind.CASE, "Test Case", _normalize_case, "create_case",
                                 links=("plan_id",)),
    RecordKind.EXECUTION: KindHandler(RecordKind.EXECUTION, "Test Execution", _normalize_execution,
                                      "create_execution", links=("plan_id", "case_id")),
}


def handler_for(kind) -> KindHandler:
    return KIND_HANDLERS[RecordKind(kind)]


def normalize_content(kind, data: dict) -> dict:
    """Keep only the fields known to the kind, coercing enum values."""
    return handler_for(kind).normalize(data if isinstance(data, dict) else {})
