"""
TestMaster AI
AI domain constants and enums.

The registry (models, templates, task defaults) is not stored in SQL tables:
it is held in memory and persisted through the key-value store and the
user_settings mirror. See testmaster.ai.model_registry.
"""

from enum import Enum


class GenerationTask(str, Enum):
    """Kind of AI request, used to pick the default model and template."""
    PLAN = "plan-generation"
    CASE = "case-generation"
    EXECUTION = "execution-generation"
    GENERAL = "general-completion"


GENERATION_TASKS = tuple(t.value for t in GenerationTask)


class RecordKind(str, Enum):
    """Discriminator for generated items and the records they become."""
    PLAN = "plan"
    CASE = "case"
    EXECUTION = "execution"


RECORD_KINDS = tuple(k.value for k in RecordKind)

TASK_FOR_KIND = {
    RecordKind.PLAN: GenerationTask.PLAN,
    RecordKind.CASE: GenerationTask.CASE,
    RecordKind.EXECUTION: GenerationTask.EXECUTION,
}

KIND_FOR_TASK = {task: kind for kind, task in TASK_FOR_KIND.items()}


class ItemStatus(str, Enum):
    """Review state of a generated item."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REGENERATING = "regenerating"


ITEM_STATUSES = tuple(s.value for s in ItemStatus)

# Template flavours within one task
TEMPLATE_VARIANTS = ("single", "batch", "regenerate")

PROVIDERS = ("gemini", "anthropic", "openai", "local")

# Key under which each batch kind returns its array
BATCH_KEYS = {
    RecordKind.PLAN: "plans",
    RecordKind.CASE: "cases",
}
