"""
TestMaster AI
Tests — generation executor, single-item flow, batch flow and review workflow.

Covers:
    - response parsing (fenced JSON, embedded object, prose)
    - model / template resolution, NoActiveModel before any network call
    - single generation persists with generated_by_ai and links
    - batch decomposition and shape errors
    - review state machine: approve / reject / regenerate, item independence,
      save of approved items at most once, session store TTL
    - gateway provider routing and the local stub
"""

import pytest

from testmaster.ai.executor import first_json_object, parse_structured_response
from testmaster.ai.gateway import LLMGateway, LocalStubProvider
from testmaster.ai.model_registry import ModelDescriptor
from testmaster.ai.review import GeneratedItem, ReviewSession, ReviewSessionStore
from testmaster.core.exceptions import (
    GenerationTimeout,
    InvalidBatchShape,
    InvalidTransition,
    MalformedResponse,
    NoActiveModel,
    NoActiveTemplate,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from testmaster.models.ai import ItemStatus, RecordKind
from testmaster.models.testing import TestCase, TestExecution, TestPlan

PLAN_PAYLOAD = {
    "title": "Login test plan",
    "description": "Covers the login page",
    "objective": "Users can sign in",
    "scope": "Web login",
    "approach": "Manual",
    "criteria": "No critical defects",
    "resources": "1 QA",
    "schedule": "2 days",
    "risks": ["SSO outage", "Test data"],
}


def _case(n):
    return {
        "title": f"Case {n}",
        "description": f"Checks behaviour {n}",
        "preconditions": "Logged in",
        "steps": [{"order": 1, "action": f"Do {n}", "expected_result": f"Result {n}"}],
        "expected_result": "Works",
        "priority": "HIGH",
        "type": "functional",
    }


@pytest.fixture()
def services(app):
    ext = app.extensions
    return {
        "registry": ext["testmaster.registry"],
        "executor": ext["testmaster.executor"],
        "single": ext["testmaster.single_generator"],
        "batch": ext["testmaster.batch_generator"],
        "storage": ext["testmaster.storage"],
    }


# ═════════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ═════════════════════════════════════════════════════════════════════════════

class TestResponseParsing:
    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"title": "x"}\n```\nthanks'
        assert parse_structured_response(text) == {"title": "x"}

    def test_embedded_object(self):
        assert parse_structured_response('Sure! {"a": {"b": 1}} done') == {"a": {"b": 1}}

    def test_braces_inside_strings(self):
        text = 'x {"title": "use {curly} braces", "n": 2} y'
        assert first_json_object(text) == '{"title": "use {curly} braces", "n": 2}'
        assert parse_structured_response(text)["n"] == 2

    def test_skips_unbalanced_prefix(self):
        assert parse_structured_response('oops { then {"ok": true}') == {"ok": True}

    def test_prose_is_malformed(self):
        with pytest.raises(MalformedResponse):
            parse_structured_response("I am sorry, I cannot produce that.")

    def test_invalid_json_is_malformed(self):
        with pytest.raises(MalformedResponse):
            parse_structured_response("{title: missing quotes}")


class TestExecutor:
    def test_renders_and_parses(self, services, fake_llm):
        fake_llm.queue({"response": "ok"})
        result = services["executor"].execute("general-completion", {"description": "Say ok"})
        assert result.data == {"response": "ok"}
        assert result.model_id == "gemini-flash"
        assert result.template_id == "template-general"
        assert "Say ok" in fake_llm.prompts[0]

    def test_explicit_model_used_when_active(self, services, fake_llm):
        stub_result = services["executor"].execute(
            "plan-generation", {"description": "Checkout"}, model_id="local-stub",
        )
        assert stub_result.model_id == "local-stub"
        assert stub_result.data["title"].startswith("Test Plan 1")
        assert fake_llm.calls == 0

    def test_inactive_explicit_model_falls_back_to_default(self, services, fake_llm):
        services["registry"].update_model("local-stub", {"is_active": False})
        fake_llm.queue(PLAN_PAYLOAD)
        result = services["executor"].execute(
            "plan-generation", {"description": "x"}, model_id="local-stub",
        )
        assert result.model_id == "gemini-flash"

    def test_no_active_model_makes_no_call(self, services, fake_llm):
        """No model for execution-generation: fails before the network."""
        services["registry"].set_default_model("execution-generation", "")
        with pytest.raises(NoActiveModel):
            services["executor"].execute("execution-generation", {"description": "x"})
        assert fake_llm.calls == 0

    def test_no_active_template(self, services, fake_llm):
        for tpl in services["registry"].get_templates_for_task("plan-generation", "batch"):
            services["registry"].update_template(tpl.id, {"is_active": False})
        with pytest.raises(NoActiveTemplate):
            services["executor"].execute("plan-generation", {"document": "x"}, variant="batch")
        assert fake_llm.calls == 0

    def test_wrong_variant_template_id_ignored(self, services, fake_llm):
        fake_llm.queue(PLAN_PAYLOAD)
        result = services["executor"].execute(
            "plan-generation", {"description": "x"}, template_id="template-case-single",
        )
        assert result.template_id == "template-plan-single"


# ═════════════════════════════════════════════════════════════════════════════
# SINGLE-ITEM GENERATION
# ═════════════════════════════════════════════════════════════════════════════

class TestSingleGeneration:
    def test_plan_generated_and_persisted(self, services, fake_llm):
        fake_llm.queue(PLAN_PAYLOAD)
        plan = services["single"].generate_one(
            "plan-generation", {"description": "Login page"}, owner_id="u-1",
        )
        assert plan.id is not None
        assert plan.generated_by_ai is True
        assert plan.owner_id == "u-1"
        assert plan.title == "Login test plan"
        assert plan.risks == "- SSO outage\n- Test data"
        assert "Login page" in fake_llm.prompts[0]

    def test_case_normalised_and_linked(self, services, fake_llm):
        parent = services["storage"].create_plan({"title": "P", "owner_id": "u-1"})
        fake_llm.queue(_case(1))
        case = services["single"].generate_one(
            "case-generation", {"description": "Card payment", "plan_id": str(parent.id)}, owner_id="u-1",
        )
        assert case.plan_id == parent.id
        assert case.priority == "high"
        assert [s.action for s in case.steps] == ["Do 1"]
        assert '"title": "P"' in fake_llm.prompts[0]

    def test_execution_requires_links(self, services, fake_llm):
        with pytest.raises(ValidationError) as exc:
            services["single"].generate_one("execution-generation", {"description": "run"}, owner_id="u-1")
        assert set(exc.value.details) == {"case_id", "plan_id"}
        assert fake_llm.calls == 0

    def test_execution_generated(self, services, fake_llm):
        storage = services["storage"]
        plan = storage.create_plan({"title": "P", "owner_id": "u-1"})
        case = storage.create_case({"title": "C", "owner_id": "u-1", "plan_id": plan.id})
        fake_llm.queue({"status": "Failed", "actual_result": "Error 500", "notes": ""})
        execution = services["single"].generate_one(
            "execution-generation",
            {"description": "ran on staging", "plan_id": plan.id, "case_id": case.id},
            owner_id="u-1",
        )
        assert execution.status == "failed"
        assert execution.executed_by == "AI Assistant"
        assert execution.generated_by_ai is True

    def test_missing_description(self, services, fake_llm):
        with pytest.raises(ValidationError):
            services["single"].generate_one("plan-generation", {"description": "  "}, owner_id="u-1")
        assert fake_llm.calls == 0

    def test_storage_failure_keeps_generated_content(self, services, fake_llm, monkeypatch):
        def _fail(fields):
            raise PersistenceError("disk full")

        monkeypatch.setattr(services["storage"], "create_plan", _fail)
        fake_llm.queue(PLAN_PAYLOAD)
        with pytest.raises(PersistenceError) as exc:
            services["single"].generate_one("plan-generation", {"description": "Login page"}, owner_id="u-1")
        assert exc.value.generated["title"] == "Login test plan"
        assert exc.value.generated["objective"] == "Users can sign in"
        assert TestPlan.query.count() == 0

    def test_unknown_plan_link(self, services, fake_llm):
        with pytest.raises(NotFoundError):
            services["single"].generate_one(
                "case-generation", {"description": "x", "plan_id": 999}, owner_id="u-1",
            )
        assert fake_llm.calls == 0

    def test_prose_response_persists_nothing(self, services, fake_llm):
        """A prose answer raises MalformedResponse and writes no record."""
        fake_llm.queue("Here is a great test plan: first, test the login.")
        with pytest.raises(MalformedResponse):
            services["single"].generate_one("plan-generation", {"description": "Login"}, owner_id="u-1")
        assert TestPlan.query.count() == 0

    def test_provider_error_persists_nothing(self, services, fake_llm):
        fake_llm.queue(GenerationTimeout("deadline exceeded", provider="gemini"))
        with pytest.raises(GenerationTimeout):
            services["single"].generate_one("case-generation", {"description": "x"}, owner_id="u-1")
        assert TestCase.query.count() == 0

    def test_missing_title_gets_fallback(self, services, fake_llm):
        fake_llm.queue({"objective": "only an objective"})
        plan = services["single"].generate_one("plan-generation", {"description": "Search"}, owner_id="u-1")
        assert plan.title == "AI Test Plan: Search"

    def test_general_completion_not_persisted(self, services, fake_llm):
        fake_llm.queue({"answer": 42})
        assert services["single"].complete({"description": "meaning?"}) == {"answer": 42}
        assert TestPlan.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# BATCH GENERATION
# ═════════════════════════════════════════════════════════════════════════════

class TestBatchGeneration:
    def test_items_start_pending_and_unsaved(self, services, fake_llm):
        fake_llm.queue({"cases": [_case(1), _case(2), _case(3)]})
        items = services["batch"].generate_batch("case", "Requirements doc", owner_id="u-1")
        assert len(items) == 3
        assert all(i.status == ItemStatus.PENDING for i in items)
        assert all(i.kind == RecordKind.CASE for i in items)
        assert len({i.id for i in items}) == 3
        assert TestCase.query.count() == 0
        assert "Requirements doc" in fake_llm.prompts[0]

    def test_plans_batch(self, services, fake_llm):
        fake_llm.queue({"plans": [PLAN_PAYLOAD, {"objective": "untitled"}]})
        items = services["batch"].generate_batch("plan", "Spec", owner_id="u-1")
        assert [i.content["title"] for i in items] == ["Login test plan", "Generated plan 2"]

    def test_empty_array_is_valid(self, services, fake_llm):
        fake_llm.queue({"cases": []})
        assert services["batch"].generate_batch("case", "Doc", owner_id="u-1") == []

    def test_missing_array(self, services, fake_llm):
        fake_llm.queue({"items": [_case(1)]})
        with pytest.raises(InvalidBatchShape):
            services["batch"].generate_batch("case", "Doc", owner_id="u-1")

    def test_non_object_element(self, services, fake_llm):
        fake_llm.queue({"cases": [_case(1), "just text"]})
        with pytest.raises(InvalidBatchShape):
            services["batch"].generate_batch("case", "Doc", owner_id="u-1")

    def test_execution_batch_rejected(self, services, fake_llm):
        with pytest.raises(ValidationError):
            services["batch"].generate_batch("execution", "Doc", owner_id="u-1")
        assert fake_llm.calls == 0

    def test_empty_document_rejected(self, services, fake_llm):
        with pytest.raises(ValidationError):
            services["batch"].generate_batch("case", "   ", owner_id="u-1")
        assert fake_llm.calls == 0


# ═════════════════════════════════════════════════════════════════════════════
# REVIEW WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def review(services, fake_llm):
    """A review session over three generated cases."""
    fake_llm.queue({"cases": [_case(1), _case(2), _case(3)]})
    items = services["batch"].generate_batch("case", "Requirements", owner_id="u-1")
    return ReviewSession(items, owner_id="u-1", kind=RecordKind.CASE, document="Requirements")


def _ids(session):
    return list(session.items)


class TestReviewTransitions:
    def test_approve_two_reject_others(self, review, services):
        """Batch of three: approve #2, reject #1 and #3, one item is eligible."""
        first, second, third = _ids(review)
        review.approve(second)
        review.reject(first)
        review.reject(third)

        eligible = review.approved_items()
        assert [i.id for i in eligible] == [second]
        summary = review.summary()
        assert summary["counts"]["approved"] == 1
        assert summary["counts"]["rejected"] == 2
        assert summary["complete"] is True

        records = review.persist_approved(services["storage"])
        assert len(records) == 1
        assert records[0].title == "Case 2"
        assert records[0].generated_by_ai is True
        assert TestCase.query.count() == 1

    def test_items_are_independent(self, review):
        first, second, third = _ids(review)
        before = {i: dict(review.items[i].content) for i in (second, third)}
        review.reject(first)
        assert review.items[second].status == ItemStatus.PENDING
        assert review.items[third].status == ItemStatus.PENDING
        assert {i: review.items[i].content for i in (second, third)} == before

    def test_only_pending_items_transition(self, review):
        first = _ids(review)[0]
        review.approve(first)
        with pytest.raises(InvalidTransition):
            review.reject(first)
        with pytest.raises(InvalidTransition):
            review.approve(first)

    def test_unknown_item(self, review):
        with pytest.raises(NotFoundError):
            review.approve("missing")

    def test_view_details_does_not_change_state(self, review):
        item_id = _ids(review)[0]
        details = review.view_details(item_id)
        assert details["status"] == "pending"
        assert details["content"]["title"] == "Case 1"

    def test_persist_is_at_most_once(self, review, services):
        item_id = _ids(review)[0]
        review.approve(item_id)
        assert len(review.persist_approved(services["storage"])) == 1
        assert review.persist_approved(services["storage"]) == []
        assert review.items[item_id].record_id is not None
        assert TestCase.query.count() == 1

    def test_persist_failure_keeps_unsaved_item_approved(self, review, services, monkeypatch):
        storage = services["storage"]
        first, second = _ids(review)[:2]
        review.approve(first)
        review.approve(second)
        real_create = storage.create_case
        calls = []

        def _fail_second(fields):
            calls.append(fields["title"])
            if len(calls) == 2:
                raise PersistenceError("constraint failed")
            return real_create(fields)

        monkeypatch.setattr(storage, "create_case", _fail_second)
        with pytest.raises(PersistenceError) as exc:
            review.persist_approved(storage)
        assert exc.value.generated["id"] == second
        assert exc.value.generated["content"]["title"] == "Case 2"
        assert review.items[first].record_id is not None
        assert [i.id for i in review.approved_items()] == [second]

        monkeypatch.setattr(storage, "create_case", real_create)
        assert [r.title for r in review.persist_approved(storage)] == ["Case 2"]
        assert TestCase.query.count() == 2


class TestRegenerate:
    def test_success_returns_to_pending(self, review, services, fake_llm):
        item_id, other = _ids(review)[:2]
        fake_llm.queue(_case(9))
        item = review.regenerate(item_id, "Add negative path", services["executor"])
        assert item.status == ItemStatus.PENDING
        assert item.content["title"] == "Case 9"
        assert item.regeneration_count == 1
        assert item.feedback == ["Add negative path"]
        assert "Add negative path" in fake_llm.prompts[-1]
        assert review.items[other].content["title"] == "Case 2"

    def test_failure_returns_to_pending(self, review, services, fake_llm):
        item_id = _ids(review)[0]
        fake_llm.queue(ProviderError("HTTP 500", provider="gemini", status=500))
        with pytest.raises(ProviderError):
            review.regenerate(item_id, "", services["executor"])
        item = review.items[item_id]
        assert item.status == ItemStatus.PENDING
        assert item.content["title"] == "Case 1"
        assert item.regeneration_count == 0
        assert item.last_error

    def test_malformed_response_returns_to_pending(self, review, services, fake_llm):
        item_id = _ids(review)[0]
        fake_llm.queue("no json here")
        with pytest.raises(MalformedResponse):
            review.regenerate(item_id, "shorter", services["executor"])
        assert review.items[item_id].status == ItemStatus.PENDING

    def test_uses_batch_model(self, services, fake_llm):
        registry = services["registry"]
        registry.set_default_model("case-generation", "local-stub")
        fake_llm.queue({"cases": [_case(1)]})
        items = services["batch"].generate_batch("case", "Requirements", owner_id="u-1",
                                                 model_id="gemini-flash")
        session = ReviewSession(items, owner_id="u-1", kind=RecordKind.CASE, model_id="gemini-flash")
        used = []
        executor = services["executor"]

        class _Recording:
            def execute(self, task, variables, **kwargs):
                used.append(kwargs.get("model_id"))
                return executor.execute(task, variables, **kwargs)

        fake_llm.queue(_case(7))
        item = session.regenerate(_ids(session)[0], "", _Recording())
        assert used == ["gemini-flash"]
        assert fake_llm.calls == 2
        assert item.content["title"] == "Case 7"

    def test_regenerate_requires_pending(self, review, services, fake_llm):
        item_id = _ids(review)[0]
        review.reject(item_id)
        with pytest.raises(InvalidTransition):
            review.regenerate(item_id, "", services["executor"])
        assert fake_llm.calls == 1


class TestReviewSessionStore:
    def test_owner_scoped(self):
        store = ReviewSessionStore()
        session = store.add(ReviewSession([], owner_id="u-1", kind="plan"))
        assert store.get(session.id, "u-1") is session
        with pytest.raises(NotFoundError):
            store.get(session.id, "u-2")

    def test_expired_sessions_disappear(self):
        store = ReviewSessionStore(ttl_seconds=60)
        session = store.add(ReviewSession([], owner_id="u-1", kind="case"))
        session.touched -= 120
        with pytest.raises(NotFoundError):
            store.get(session.id, "u-1")
        assert len(store) == 0

    def test_discard_returns_summary(self):
        store = ReviewSessionStore()
        item = GeneratedItem(kind=RecordKind.PLAN, content={"title": "x"})
        session = store.add(ReviewSession([item], owner_id="u-1", kind="plan"))
        session.approve(item.id)
        summary = store.discard(session.id, "u-1")
        assert summary["unsaved_approved"] == 1
        assert store.list_for_owner("u-1") == []


# ═════════════════════════════════════════════════════════════════════════════
# GATEWAY
# ═════════════════════════════════════════════════════════════════════════════

class TestGateway:
    def test_unknown_provider(self):
        gateway = LLMGateway(providers={})
        model = ModelDescriptor(id="m", name="m", provider="gemini")
        with pytest.raises(ProviderError):
            gateway.complete("hi", model)

    def test_local_stub_shapes(self):
        gateway = LLMGateway(providers={"local": LocalStubProvider()})
        model = ModelDescriptor(id="local-stub", name="Local", provider="local")
        batch = parse_structured_response(gateway.complete('DOCUMENT:\nShop\n{"cases": []}', model))
        assert len(batch["cases"]) == 2
        single = parse_structured_response(gateway.complete('Application description:\nShop\n"objective"', model))
        assert single["title"] == "Test Plan 1: Shop"

    def test_missing_api_key(self, monkeypatch):
        from testmaster.ai.gateway import OpenAIProvider

        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        gateway = LLMGateway(providers={"openai": OpenAIProvider()})
        model = ModelDescriptor(id="gpt", name="GPT", provider="openai", provider_model="gpt-4o-mini")
        with pytest.raises(ProviderError):
            gateway.complete("hi", model)

    def test_provider_error_propagates(self, services, fake_llm):
        fake_llm.queue(ProviderError("boom", provider="gemini"))
        with pytest.raises(ProviderError):
            services["executor"].execute("general-completion", {"description": "x"})
        assert TestExecution.query.count() == 0
