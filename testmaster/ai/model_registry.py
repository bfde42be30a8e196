"""
TestMaster AI
Model / Template Registry.

Holds the configurable AI models, the prompt templates and the
task → default model mapping. One instance is built per Flask app and
injected into the executor and the generation flows.

Persistence:
    - local key-value store, two keys:
        model_config    models (without credentials), templates, task map, default model
        model_api_keys  {model_id: api_key}
    - remote mirror in user_settings (key "model_config"), credentials stripped

Both copies are last-write-wins.

Usage:
    from testmaster.ai.model_registry import ModelRegistry, KeyValueStore
    registry = ModelRegistry(store=KeyValueStore("/var/lib/testmaster/model_config"))
    model = registry.get_default_model("case-generation")
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from testmaster.ai.prompt_registry import (
    PromptTemplate,
    default_templates,
    load_templates_from_dir,
    new_template_id,
    render,
)
from testmaster.models.ai import GENERATION_TASKS, PROVIDERS

logger = logging.getLogger(__name__)

CONFIG_KEY = "model_config"
API_KEYS_KEY = "model_api_keys"

DEFAULT_SETTINGS = {
    "temperature": 0.7,
    "max_output_tokens": 2048,
    "top_k": 40,
    "top_p": 0.95,
}


# ═════════════════════════════════════════════════════════════════════════════
# Local key-value store
# ═════════════════════════════════════════════════════════════════════════════

class KeyValueStore:
    """JSON documents keyed by name, one file per key.

    With ``directory=None`` the store is memory-only (used in tests and when
    no config directory is configured).
    """

    def __init__(self, directory: str | None = None):
        self._directory = directory
        self._memory: dict[str, object] = {}
        self._lock = threading.Lock()
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self._directory, f"{key}.json")

    def get(self, key: str, default=None):
        with self._lock:
            if not self._directory:
                value = self._memory.get(key, default)
                return json.loads(json.dumps(value)) if value is not None else default
            path = self._path(key)
            if not os.path.exists(path):
                return default
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Could not read %s from key-value store: %s", key, e)
                return default

    def set(self, key: str, value) -> None:
        with self._lock:
            if not self._directory:
                self._memory[key] = json.loads(json.dumps(value, default=str))
                return
            tmp_path = self._path(key) + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, self._path(key))

    def delete(self, key: str) -> None:
        with self._lock:
            if not self._directory:
                self._memory.pop(key, None)
                return
            try:
                os.remove(self._path(key))
            except FileNotFoundError:
                pass


# ═════════════════════════════════════════════════════════════════════════════
# Model descriptor
# ═════════════════════════════════════════════════════════════════════════════

def _now():
    return datetime.now(timezone.utc)


@dataclass
class ModelDescriptor:
    """A configured AI model.

    ``provider_model`` is the name sent to the provider API; ``id`` is the
    registry key. ``api_key`` is never written to the config blob.
    """

    id: str
    name: str
    provider: str
    provider_model: str = ""
    description: str = ""
    version: str = "1.0"
    tasks: list[str] = field(default_factory=list)
    is_active: bool = True
    api_key: str = ""
    settings: dict = field(default_factory=lambda: dict(DEFAULT_SETTINGS))

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "provider_model": self.provider_model or self.id,
            "description": self.description,
            "version": self.version,
            "tasks": list(self.tasks),
            "is_active": self.is_active,
            "settings": dict(self.settings),
            "has_api_key": bool(self.api_key),
        }
        if include_secret:
            data["api_key"] = self.api_key
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ModelDescriptor":
        settings = dict(DEFAULT_SETTINGS)
        settings.update(data.get("settings") or {})
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            provider=data.get("provider", "gemini"),
            provider_model=data.get("provider_model", ""),
            description=data.get("description", ""),
            version=str(data.get("version", "1.0")),
            tasks=list(data.get("tasks") or []),
            is_active=bool(data.get("is_active", True)),
            api_key=data.get("api_key", "") or "",
            settings=settings,
        )


def validate_model_fields(data: dict, partial: bool = False) -> dict:
    """Return field errors for a model payload (empty when valid)."""
    errors = {}
    if not partial or "name" in data:
        if not str(data.get("name") or "").strip():
            errors["name"] = "required"
    if not partial or "provider" in data:
        if data.get("provider") not in PROVIDERS:
            errors["provider"] = f"must be one of {', '.join(PROVIDERS)}"
    if "tasks" in data:
        tasks = data.get("tasks")
        if not isinstance(tasks, list) or any(t not in GENERATION_TASKS for t in tasks):
            errors["tasks"] = f"must be a list of {', '.join(GENERATION_TASKS)}"
    if "settings" in data and not isinstance(data.get("settings"), dict):
        errors["settings"] = "must be an object"
    if "is_active" in data and not isinstance(data["is_active"], bool):
        errors["is_active"] = "must be a boolean"
    return errors


def _default_models() -> list[ModelDescriptor]:
    return [
        ModelDescriptor(
            id="gemini-flash",
            name="Gemini Flash",
            provider="gemini",
            provider_model="gemini-2.5-flash",
            description="Google Gemini model for test artefact generation",
            tasks=list(GENERATION_TASKS),
        ),
        ModelDescriptor(
            id="local-stub",
            name="Local stub",
            provider="local",
            provider_model="local-stub",
            description="Deterministic offline responses for development",
            tasks=list(GENERATION_TASKS),
        ),
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════

class ModelRegistry:
    """In-memory registry of models, templates and task defaults.

    Every mutation is saved to the local store immediately.
    """

    def __init__(self, store: KeyValueStore | None = None, prompts_dir: str | None = None):
        self._store = store or KeyValueStore()
        self._prompts_dir = prompts_dir
        self._lock = threading.RLock()
        self._models: list[ModelDescriptor] = []
        self._templates: list[PromptTemplate] = []
        self._task_defaults: dict[str, str | None] = {}
        self._default_model_id: str | None = None
        self.load()

    # ── Persistence ───────────────────────────────────────────────────────

    def _apply_defaults(self):
        self._models = _default_models()
        self._templates = default_templates()
        for tpl in load_templates_from_dir(self._prompts_dir):
            self._templates = [t for t in self._templates if t.id != tpl.id]
            self._templates.append(tpl)
        self._default_model_id = self._models[0].id
        self._task_defaults = {task: self._default_model_id for task in GENERATION_TASKS}

    def _apply_config(self, blob: dict, api_keys: dict | None = None):
        api_keys = api_keys or {}
        self._models = []
        for m in blob.get("models", []):
            model = ModelDescriptor.from_dict(m)
            model.api_key = api_keys.get(model.id, "")
            self._models.append(model)
        self._templates = [PromptTemplate.from_dict(t) for t in blob.get("templates", [])]
        self._task_defaults = dict(blob.get("task_defaults") or {})
        self._default_model_id = blob.get("default_model")

    def config_blob(self) -> dict:
        """Credential-free snapshot of the whole configuration."""
        with self._lock:
            return {
                "models": [m.to_dict() for m in self._models],
                "templates": [t.to_dict() for t in self._templates],
                "task_defaults": dict(self._task_defaults),
                "default_model": self._default_model_id,
            }

    def _api_keys(self) -> dict:
        return {m.id: m.api_key for m in self._models if m.api_key}

    def load(self) -> None:
        """Load from the local store, falling back to built-in defaults."""
        with self._lock:
            blob = self._store.get(CONFIG_KEY)
            if blob:
                self._apply_config(blob, self._store.get(API_KEYS_KEY, {}))
                logger.info("Model registry loaded: %d models, %d templates",
                            len(self._models), len(self._templates))
            else:
                self._apply_defaults()
                logger.info("Model registry initialised with defaults")

    def save(self) -> None:
        with self._lock:
            self._store.set(CONFIG_KEY, self.config_blob())
            self._store.set(API_KEYS_KEY, self._api_keys())

    def reset(self) -> None:
        """Restore the built-in configuration (credentials are dropped)."""
        with self._lock:
            self._apply_defaults()
            self.save()
        logger.info("Model registry reset to defaults")

    def sync_to_remote(self, user_id: str) -> dict:
        """Upsert the credential-free configuration into user_settings."""
        from testmaster.models import db
        from testmaster.models.auth import UserSetting
        from testmaster.utils.helpers import commit_or_raise

        blob = self.config_blob()
        setting = UserSetting.query.filter_by(user_id=user_id, key=CONFIG_KEY).first()
        if setting is None:
            setting = UserSetting(user_id=user_id, key=CONFIG_KEY, value=blob)
            db.session.add(setting)
        else:
            setting.value = blob
            setting.updated_at = _now()
        commit_or_raise()
        logger.info("Model registry synced to user_settings for user %s", user_id)
        return blob

    def load_from_remote(self, user_id: str) -> bool:
        """Replace the configuration with the user's remote copy.

        Locally stored credentials are re-attached by model id.
        Returns False when no remote copy exists.
        """
        from testmaster.models.auth import UserSetting

        setting = UserSetting.query.filter_by(user_id=user_id, key=CONFIG_KEY).first()
        if setting is None or not setting.value:
            return False
        with self._lock:
            local_keys = self._api_keys()
            local_keys.update(self._store.get(API_KEYS_KEY, {}) or {})
            self._apply_config(setting.value, local_keys)
            self.save()
        logger.info("Model registry loaded from user_settings for user %s", user_id)
        return True

    # ── Models ────────────────────────────────────────────────────────────

    def list_models(self) -> list[ModelDescriptor]:
        with self._lock:
            return list(self._models)

    def get_model(self, model_id: str) -> ModelDescriptor | None:
        with self._lock:
            return next((m for m in self._models if m.id == model_id), None)

    @property
    def default_model_id(self) -> str | None:
        return self._default_model_id

    def task_defaults(self) -> dict[str, str | None]:
        with self._lock:
            return dict(self._task_defaults)

    def get_default_model(self, task: str) -> ModelDescriptor | None:
        """Active model mapped to the task, or None."""
        with self._lock:
            model_id = self._task_defaults.get(task)
            if not model_id:
                return None
            model = self.get_model(model_id)
            if model is None or not model.is_active:
                return None
            return model

    def set_default_model(self, task: str, model_id: str) -> None:
        with self._lock:
            self._task_defaults[task] = model_id
            self.save()
        logger.info("Default model for %s set to %s", task, model_id)

    def add_model(self, fields: dict) -> ModelDescriptor:
        """Create a model under a fresh id (any id in ``fields`` is ignored)."""
        with self._lock:
            data = dict(fields)
            data["id"] = f"model-{uuid.uuid4().hex[:12]}"
            model = ModelDescriptor.from_dict(data)
            self._models.append(model)
            self.save()
        logger.info("Model added: %s (%s)", model.id, model.provider)
        return model

    def update_model(self, model_id: str, fields: dict) -> ModelDescriptor | None:
        with self._lock:
            model = self.get_model(model_id)
            if model is None:
                return None
            for key in ("name", "provider", "provider_model", "description", "version",
                        "tasks", "is_active", "api_key"):
                if key in fields:
                    setattr(model, key, fields[key])
            if "settings" in fields and isinstance(fields["settings"], dict):
                model.settings.update(fields["settings"])
            self.save()
        logger.info("Model updated: %s", model_id)
        return model

    def delete_model(self, model_id: str) -> bool:
        """Remove a model; task and global defaults pointing at it move to the first remaining active model."""
        with self._lock:
            before = len(self._models)
            self._models = [m for m in self._models if m.id != model_id]
            if len(self._models) == before:
                return False
            replacement = next((m.id for m in self._models if m.is_active), None)
            if self._default_model_id == model_id:
                self._default_model_id = replacement
            for task, mapped in list(self._task_defaults.items()):
                if mapped == model_id:
                    self._task_defaults[task] = replacement
            self.save()
        logger.info("Model deleted: %s (defaults reassigned to %s)", model_id, replacement)
        return True

    # ── Templates ─────────────────────────────────────────────────────────

    def list_templates(self) -> list[PromptTemplate]:
        with self._lock:
            return list(self._templates)

    def get_template(self, template_id: str) -> PromptTemplate | None:
        with self._lock:
            return next((t for t in self._templates if t.id == template_id), None)

    def get_templates_for_task(self, task: str, variant: str | None = None) -> list[PromptTemplate]:
        """Active templates for a task, in registration order."""
        with self._lock:
            return [
                t for t in self._templates
                if t.task == task and t.is_active and (variant is None or t.variant == variant)
            ]

    def add_template(self, fields: dict) -> PromptTemplate:
        with self._lock:
            data = dict(fields)
            data["id"] = new_template_id()
            data.pop("created_at", None)
            data.pop("updated_at", None)
            tpl = PromptTemplate.from_dict(data)
            self._templates.append(tpl)
            self.save()
        logger.info("Template added: %s (%s/%s)", tpl.id, tpl.task, tpl.variant)
        return tpl

    def update_template(self, template_id: str, fields: dict) -> PromptTemplate | None:
        with self._lock:
            tpl = self.get_template(template_id)
            if tpl is None:
                return None
            for key in ("name", "task", "variant", "template", "parameters", "description", "is_active"):
                if key in fields:
                    setattr(tpl, key, fields[key])
            tpl.updated_at = _now()
            self.save()
        logger.info("Template updated: %s", template_id)
        return tpl

    def delete_template(self, template_id: str) -> bool:
        with self._lock:
            before = len(self._templates)
            self._templates = [t for t in self._templates if t.id != template_id]
            deleted = len(self._templates) < before
            if deleted:
                self.save()
        return deleted

    @staticmethod
    def render_template(template: PromptTemplate | str, variables: dict | None = None) -> str:
        """Render a template (or raw template text). Total: never raises."""
        source = template.template if isinstance(template, PromptTemplate) else template
        return render(source, variables)
