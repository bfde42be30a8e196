"""
TestMaster AI
Tests — template engine and model/template registry.

Covers:
    - render: substitution, dotted names, unresolved tokens, conditionals
    - flattening of nested / unterminated / stray blocks
    - YAML template loading
    - registry: default model resolution, reassignment after delete,
      local persistence, remote sync
"""

import pytest

from testmaster.ai.model_registry import (
    API_KEYS_KEY,
    CONFIG_KEY,
    KeyValueStore,
    ModelRegistry,
    validate_model_fields,
)
from testmaster.ai.prompt_registry import (
    load_templates_from_dir,
    placeholders,
    render,
    validate_template_fields,
)
from testmaster.models.ai import GENERATION_TASKS


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATE ENGINE
# ═════════════════════════════════════════════════════════════════════════════

class TestRender:
    """Rendering is total and keeps what it cannot resolve."""

    def test_substitutes_variables(self):
        assert render("Hello {{name}}!", {"name": "QA"}) == "Hello QA!"

    def test_whitespace_inside_braces(self):
        assert render("{{ name }}", {"name": "x"}) == "x"

    def test_dotted_lookup(self):
        assert render("Plan: {{plan.title}}", {"plan": {"title": "Checkout"}}) == "Plan: Checkout"

    def test_unresolved_token_kept_verbatim(self):
        assert render("A {{missing}} B", {}) == "A {{missing}} B"

    def test_unresolved_dotted_token_kept(self):
        assert render("{{plan.owner}}", {"plan": {"title": "x"}}) == "{{plan.owner}}"

    def test_none_renders_empty(self):
        assert render("[{{v}}]", {"v": None}) == "[]"

    def test_booleans_and_structures(self):
        out = render("{{flag}} {{items}}", {"flag": True, "items": [1, 2]})
        assert out.startswith("true ")
        assert "1" in out and "2" in out

    def test_malformed_token_is_literal(self):
        assert render("{{ not a name }}", {"not": 1}) == "{{ not a name }}"

    def test_no_variables_argument(self):
        assert render("plain {{x}}") == "plain {{x}}"

    def test_empty_template(self):
        assert render("", {"x": 1}) == ""


class TestConditionals:
    """{{#if}} blocks follow truthiness and never nest."""

    @pytest.mark.parametrize("value", [True, "text", 1, ["a"], {"k": "v"}])
    def test_truthy_values_emit_body(self, value):
        assert render("{{#if v}}yes{{/if}}", {"v": value}) == "yes"

    @pytest.mark.parametrize("value", [False, "", 0, [], {}, None])
    def test_falsy_values_drop_body(self, value):
        assert render("a{{#if v}}yes{{/if}}b", {"v": value}) == "ab"

    def test_missing_name_drops_body(self):
        assert render("a{{#if v}}yes{{/if}}b", {}) == "ab"

    def test_body_variables_rendered(self):
        out = render("{{#if ctx}}Context: {{ctx}}{{/if}}", {"ctx": "staging"})
        assert out == "Context: staging"

    def test_nested_if_is_flattened(self):
        source = "{{#if a}}A{{#if b}}B{{/if}}C{{/if}}"
        # Inner opener is literal; the first {{/if}} closes the outer block
        assert render(source, {"a": True, "b": False}) == "A{{#if b}}BC{{/if}}"

    def test_unterminated_if_kept_literal(self):
        assert render("{{#if a}}body", {"a": False}) == "{{#if a}}body"

    def test_stray_endif_kept_literal(self):
        assert render("x{{/if}}y", {}) == "x{{/if}}y"

    def test_placeholders_first_seen_order(self):
        assert placeholders("{{b}} {{#if a}}{{b}}{{/if}} {{c.d}}") == ["b", "a", "c.d"]


class TestTemplateValidation:
    def test_full_payload_requires_fields(self):
        errors = validate_template_fields({})
        assert set(errors) == {"name", "task", "template"}

    def test_partial_payload_checks_only_given(self):
        assert validate_template_fields({"variant": "batch"}, partial=True) == {}
        assert "variant" in validate_template_fields({"variant": "bulk"}, partial=True)

    def test_unknown_task_rejected(self):
        errors = validate_template_fields({"name": "x", "task": "poetry", "template": "t"})
        assert "task" in errors

    def test_is_active_must_be_bool(self):
        assert validate_template_fields({"is_active": "false"}, partial=True) == {"is_active": "must be a boolean"}
        assert validate_template_fields({"is_active": False}, partial=True) == {}


class TestYamlTemplates:
    def test_loads_yaml_files(self, tmp_path):
        (tmp_path / "case-short.yaml").write_text(
            "name: Short cases\n"
            "task: case-generation\n"
            "variant: batch\n"
            "template: |\n"
            "  Cases for {{document}}\n",
            encoding="utf-8",
        )
        templates = load_templates_from_dir(str(tmp_path))
        assert len(templates) == 1
        tpl = templates[0]
        assert tpl.id == "case-short"
        assert tpl.variant == "batch"
        assert tpl.parameters == ["document"]

    def test_invalid_yaml_skipped(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("name: [unclosed\n", encoding="utf-8")
        (tmp_path / "no-task.yaml").write_text("template: hi\n", encoding="utf-8")
        assert load_templates_from_dir(str(tmp_path)) == []

    def test_missing_directory(self, tmp_path):
        assert load_templates_from_dir(str(tmp_path / "nope")) == []
        assert load_templates_from_dir(None) == []

    def test_registry_prefers_directory_template(self, tmp_path):
        (tmp_path / "template-plan-single.yaml").write_text(
            "name: Custom plan\ntask: plan-generation\ntemplate: Custom {{description}}\n",
            encoding="utf-8",
        )
        registry = ModelRegistry(store=KeyValueStore(), prompts_dir=str(tmp_path))
        tpl = registry.get_template("template-plan-single")
        assert tpl.name == "Custom plan"
        assert len([t for t in registry.list_templates() if t.id == "template-plan-single"]) == 1


# ═════════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def registry():
    return ModelRegistry(store=KeyValueStore())


class TestRegistryDefaults:
    def test_every_task_has_a_default(self, registry):
        for task in GENERATION_TASKS:
            assert registry.get_default_model(task) is not None
        assert registry.get_templates_for_task("case-generation", "batch")

    def test_inactive_default_is_unavailable(self, registry):
        model_id = registry.task_defaults()["plan-generation"]
        registry.update_model(model_id, {"is_active": False})
        assert registry.get_default_model("plan-generation") is None

    def test_set_default_model(self, registry):
        registry.set_default_model("case-generation", "local-stub")
        assert registry.get_default_model("case-generation").id == "local-stub"

    def test_unmapped_task(self, registry):
        registry.set_default_model("execution-generation", "")
        assert registry.get_default_model("execution-generation") is None


class TestDefaultReassignment:
    """Deleting a mapped model moves its tasks to the first remaining active model."""

    def test_delete_reassigns_task_defaults(self, registry):
        doomed = registry.task_defaults()["plan-generation"]
        assert registry.delete_model(doomed) is True
        first = registry.list_models()[0].id
        assert registry.default_model_id == first
        for task in GENERATION_TASKS:
            assert registry.task_defaults()[task] == first

    def test_inactive_models_skipped(self, registry):
        registry.update_model("local-stub", {"is_active": False})
        added = registry.add_model({"name": "Claude", "provider": "anthropic"})
        registry.delete_model("gemini-flash")
        assert registry.task_defaults()["plan-generation"] == added.id
        assert registry.default_model_id == added.id
        assert registry.get_default_model("plan-generation").id == added.id

    def test_only_inactive_left_maps_to_none(self, registry):
        registry.update_model("local-stub", {"is_active": False})
        registry.delete_model("gemini-flash")
        assert registry.task_defaults()["plan-generation"] is None
        assert registry.get_default_model("plan-generation") is None

    def test_unrelated_mapping_untouched(self, registry):
        added = registry.add_model({"name": "Claude", "provider": "anthropic"})
        registry.set_default_model("case-generation", added.id)
        registry.delete_model("local-stub")
        assert registry.task_defaults()["case-generation"] == added.id

    def test_delete_last_model_leaves_none(self, registry):
        for model in registry.list_models():
            registry.delete_model(model.id)
        assert registry.default_model_id is None
        assert registry.get_default_model("plan-generation") is None

    def test_delete_unknown(self, registry):
        assert registry.delete_model("nope") is False


class TestRegistryPersistence:
    def test_credentials_stored_separately(self):
        store = KeyValueStore()
        registry = ModelRegistry(store=store)
        model = registry.add_model({"name": "GPT", "provider": "openai", "api_key": "sk-test"})
        blob = store.get(CONFIG_KEY)
        stored = next(m for m in blob["models"] if m["id"] == model.id)
        assert "api_key" not in stored
        assert stored["has_api_key"] is True
        assert store.get(API_KEYS_KEY) == {model.id: "sk-test"}

    def test_reload_from_store(self):
        store = KeyValueStore()
        first = ModelRegistry(store=store)
        model = first.add_model({"name": "GPT", "provider": "openai", "api_key": "sk-test"})
        first.set_default_model("case-generation", model.id)

        second = ModelRegistry(store=store)
        assert second.get_default_model("case-generation").id == model.id
        assert second.get_model(model.id).api_key == "sk-test"

    def test_file_store_roundtrip(self, tmp_path):
        store = KeyValueStore(str(tmp_path))
        store.set("model_config", {"a": 1})
        assert KeyValueStore(str(tmp_path)).get("model_config") == {"a": 1}
        store.delete("model_config")
        assert store.get("model_config", "gone") == "gone"

    def test_reset_restores_builtins(self, registry):
        registry.add_model({"name": "Extra", "provider": "openai"})
        registry.reset()
        assert [m.id for m in registry.list_models()] == ["gemini-flash", "local-stub"]

    def test_remote_sync_and_load(self, app):
        registry = app.extensions["testmaster.registry"]
        model = registry.add_model({"name": "Claude", "provider": "anthropic", "api_key": "key-1"})
        registry.sync_to_remote("admin-1")
        registry.reset()
        assert registry.get_model(model.id) is None

        assert registry.load_from_remote("admin-1") is True
        assert registry.get_model(model.id) is not None
        assert registry.load_from_remote("someone-else") is False


class TestModelValidation:
    def test_requires_name_and_known_provider(self):
        errors = validate_model_fields({"provider": "mystery"})
        assert set(errors) == {"name", "provider"}

    def test_partial_update(self):
        assert validate_model_fields({"is_active": False}, partial=True) == {}
        assert "tasks" in validate_model_fields({"tasks": ["poetry"]}, partial=True)

    def test_is_active_must_be_bool(self):
        for value in ("false", 0, None):
            assert validate_model_fields({"is_active": value}, partial=True) == {"is_active": "must be a boolean"}
