"""
TestMaster AI
Prompt templates and the template rendering engine.

Template syntax:
    {{name}}                 variable substitution (dotted paths allowed: {{plan.title}})
    {{#if name}}...{{/if}}   body emitted only when the value is truthy

Rendering is total: it never raises. Rules:
    - unresolved {{name}} tokens are kept verbatim in the output
    - None renders as "", dicts/lists render as JSON, booleans as true/false
    - conditionals do not nest: an inner {{#if}} is kept as literal text
      and the first {{/if}} closes the open block
    - an unterminated {{#if}} or a stray {{/if}} is kept as literal text

Templates may also be loaded from YAML files (one template per file):

    id: case-batch-detailed
    name: Detailed case batch
    task: case-generation
    variant: batch
    parameters: [document, context]
    template: |
      ...
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import yaml

from testmaster.models.ai import GENERATION_TASKS, TEMPLATE_VARIANTS

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_NAME_RE = re.compile(r"^[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)*$")
_IF_RE = re.compile(r"^#if\s+(.+)$")

_MISSING = object()


# ═════════════════════════════════════════════════════════════════════════════
# Template AST
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class Literal:
    text: str


@dataclass
class Variable:
    name: str
    raw: str


@dataclass
class Conditional:
    name: str
    raw_open: str
    body: list = field(default_factory=list)


def tokenize(source: str) -> list[tuple[str, str, str]]:
    """Split a template into (kind, value, raw) tokens.

    kind is one of "text", "var", "if", "endif". Tokens whose inner text is
    not a valid name come back as "text".
    """
    tokens = []
    pos = 0
    for match in _TOKEN_RE.finditer(source):
        if match.start() > pos:
            tokens.append(("text", source[pos:match.start()], source[pos:match.start()]))
        raw = match.group(0)
        inner = match.group(1).strip()
        if_match = _IF_RE.match(inner)
        if inner == "/if":
            tokens.append(("endif", "", raw))
        elif if_match and _NAME_RE.match(if_match.group(1).strip()):
            tokens.append(("if", if_match.group(1).strip(), raw))
        elif _NAME_RE.match(inner):
            tokens.append(("var", inner, raw))
        else:
            tokens.append(("text", raw, raw))
        pos = match.end()
    if pos < len(source):
        tokens.append(("text", source[pos:], source[pos:]))
    return tokens


def parse(source: str) -> list:
    """Build the node list for a template. Never raises."""
    nodes: list = []
    block: Conditional | None = None

    for kind, value, raw in tokenize(source):
        target = block.body if block is not None else nodes
        if kind == "text":
            target.append(Literal(value))
        elif kind == "var":
            target.append(Variable(value, raw))
        elif kind == "if":
            if block is None:
                block = Conditional(value, raw)
            else:
                # Nested conditionals are flattened into the open block
                target.append(Literal(raw))
        elif kind == "endif":
            if block is None:
                nodes.append(Literal(raw))
            else:
                nodes.append(block)
                block = None

    if block is not None:
        # Unterminated block: the opener is literal, the body renders normally
        nodes.append(Literal(block.raw_open))
        nodes.extend(block.body)
    return nodes


def lookup(variables: dict, name: str):
    """Resolve a dotted name against nested mappings; _MISSING when absent."""
    current = variables
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def stringify(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, indent=2, default=str)
    return str(value)


def evaluate(nodes: list, variables: dict) -> str:
    out = []
    for node in nodes:
        if isinstance(node, Literal):
            out.append(node.text)
        elif isinstance(node, Variable):
            value = lookup(variables, node.name)
            out.append(node.raw if value is _MISSING else stringify(value))
        elif isinstance(node, Conditional):
            value = lookup(variables, node.name)
            if value is not _MISSING and value:
                out.append(evaluate(node.body, variables))
    return "".join(out)


def render(source: str, variables: dict | None = None) -> str:
    """Render a template string against variables."""
    return evaluate(parse(source or ""), variables or {})


def placeholders(source: str) -> list[str]:
    """Names referenced by a template, in first-seen order."""
    seen = []
    for kind, value, _raw in tokenize(source or ""):
        if kind in ("var", "if") and value not in seen:
            seen.append(value)
    return seen


# ═════════════════════════════════════════════════════════════════════════════
# Prompt Template
# ═════════════════════════════════════════════════════════════════════════════

def _now():
    return datetime.now(timezone.utc)


def new_template_id() -> str:
    return f"template-{uuid.uuid4().hex[:12]}"


@dataclass
class PromptTemplate:
    """A prompt template bound to one generation task."""

    id: str
    name: str
    task: str
    template: str
    variant: str = "single"
    parameters: list[str] = field(default_factory=list)
    description: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def render(self, variables: dict | None = None) -> str:
        return render(self.template, variables)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "task": self.task,
            "variant": self.variant,
            "template": self.template,
            "parameters": list(self.parameters),
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PromptTemplate":
        return cls(
            id=data.get("id") or new_template_id(),
            name=data.get("name", ""),
            task=data.get("task", "general-completion"),
            template=data.get("template", ""),
            variant=data.get("variant", "single"),
            parameters=list(data.get("parameters") or placeholders(data.get("template", ""))),
            description=data.get("description", ""),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            logger.debug("Unparseable template timestamp %r", value)
    return _now()


def validate_template_fields(data: dict, partial: bool = False) -> dict:
    """Return field errors for a template payload (empty when valid).

    Without ``partial`` the name, task and template text are required.
    """
    errors = {}
    if not partial:
        for name in ("name", "task", "template"):
            if name not in data:
                errors[name] = "required"
    if "name" in data and not str(data.get("name") or "").strip():
        errors["name"] = "required"
    if "template" in data and not str(data.get("template") or "").strip():
        errors["template"] = "required"
    if "task" in data and data["task"] not in GENERATION_TASKS:
        errors["task"] = f"must be one of {', '.join(GENERATION_TASKS)}"
    if "variant" in data and data["variant"] not in TEMPLATE_VARIANTS:
        errors["variant"] = f"must be one of {', '.join(TEMPLATE_VARIANTS)}"
    if "is_active" in data and not isinstance(data["is_active"], bool):
        errors["is_active"] = "must be a boolean"
    return errors


def load_templates_from_dir(prompts_dir: str | None) -> list[PromptTemplate]:
    """Load prompt templates from *.yaml files in a directory."""
    if not prompts_dir:
        return []
    prompts_path = Path(prompts_dir)
    if not prompts_path.exists():
        logger.info("Prompts directory not found: %s. Using defaults only.", prompts_dir)
        return []

    loaded = []
    for yaml_file in sorted(prompts_path.glob("*.yaml")):
        try:
            with open(yaml_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
            continue
        if not data or not isinstance(data, dict):
            continue
        data.setdefault("id", yaml_file.stem)
        data.setdefault("name", yaml_file.stem)
        errors = validate_template_fields({**data, "template": data.get("template", "")})
        if errors:
            logger.error("Invalid prompt %s: %s", yaml_file.name, errors)
            continue
        tpl = PromptTemplate.from_dict(data)
        loaded.append(tpl)
        logger.info("Loaded prompt template: %s (%s/%s) from %s",
                    tpl.id, tpl.task, tpl.variant, yaml_file.name)
    return loaded


# ── Built-in Default Templates ────────────────────────────────────────────────

_JSON_RULE = "Respond ONLY with a valid JSON object, no prose before or after it."

_PLAN_FIELDS_JSON = (
    '    "title": "plan title",\n'
    '    "description": "what is being tested",\n'
    '    "objective": "testing objective",\n'
    '    "scope": "features in and out of scope",\n'
    '    "approach": "test approach and techniques",\n'
    '    "criteria": "acceptance / exit criteria",\n'
    '    "resources": "people, tools and environments",\n'
    '    "schedule": "phases and timeline",\n'
    '    "risks": "main risks and mitigations"\n'
)

_CASE_FIELDS_JSON = (
    '    "title": "case title",\n'
    '    "description": "what the case verifies",\n'
    '    "preconditions": "state required before running",\n'
    '    "steps": [{"order": 1, "action": "step action", "expected_result": "step outcome"}],\n'
    '    "expected_result": "overall expected result",\n'
    '    "priority": "low | medium | high | critical",\n'
    '    "type": "functional | integration | performance | security | usability"\n'
)

_PLAN_JSON = "{\n" + _PLAN_FIELDS_JSON + "}\n"
_CASE_JSON = "{\n" + _CASE_FIELDS_JSON + "}\n"
_PLAN_BATCH_JSON = '{\n  "plans": [\n  {\n' + _PLAN_FIELDS_JSON + "  }\n  ]\n}\n"
_CASE_BATCH_JSON = '{\n  "cases": [\n  {\n' + _CASE_FIELDS_JSON + "  }\n  ]\n}\n"


def _default_templates() -> list[PromptTemplate]:
    return [
        PromptTemplate(
            id="template-plan-single",
            name="Test plan",
            task="plan-generation",
            variant="single",
            description="Generate one complete test plan from an application description",
            parameters=["description", "requirements", "context"],
            template=(
                "You are a senior QA engineer. Write a detailed test plan for the application below.\n\n"
                "Application description:\n{{description}}\n"
                "{{#if requirements}}\nRequirements:\n{{requirements}}\n{{/if}}"
                "{{#if context}}\nAdditional context:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _PLAN_JSON
            ),
        ),
        PromptTemplate(
            id="template-case-single",
            name="Test case",
            task="case-generation",
            variant="single",
            description="Generate one test case, optionally within a test plan",
            parameters=["description", "requirements", "context", "plan"],
            template=(
                "You are a senior QA engineer. Write one detailed test case.\n\n"
                "What to test:\n{{description}}\n"
                "{{#if plan}}\nIt belongs to this test plan:\n{{plan}}\n{{/if}}"
                "{{#if requirements}}\nRequirements:\n{{requirements}}\n{{/if}}"
                "{{#if context}}\nAdditional context:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _CASE_JSON
            ),
        ),
        PromptTemplate(
            id="template-execution-single",
            name="Test execution",
            task="execution-generation",
            variant="single",
            description="Simulate a plausible execution record for a test case",
            parameters=["case", "plan", "context"],
            template=(
                "You are a QA engineer recording the execution of this test case:\n{{case}}\n\n"
                "Test plan:\n{{plan}}\n"
                "{{#if description}}\nExecution notes from the tester:\n{{description}}\n{{/if}}"
                "{{#if context}}\nAdditional context:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n"
                "{\n"
                '    "status": "passed | failed | blocked | not_tested",\n'
                '    "actual_result": "what actually happened",\n'
                '    "notes": "observations",\n'
                '    "executed_by": "AI Assistant"\n'
                "}\n"
            ),
        ),
        PromptTemplate(
            id="template-plan-batch",
            name="Test plans from document",
            task="plan-generation",
            variant="batch",
            description="Decompose a document into independent test plans",
            parameters=["document", "context"],
            template=(
                "Analyse the document below and identify, on your own, the distinct features, "
                "systems or modules that each need a dedicated test plan. Keep every plan "
                "independent, specific and testable.\n\n"
                "DOCUMENT:\n{{document}}\n"
                "{{#if context}}\nADDITIONAL CONTEXT:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _PLAN_BATCH_JSON
            ),
        ),
        PromptTemplate(
            id="template-case-batch",
            name="Test cases from document",
            task="case-generation",
            variant="batch",
            description="Decompose a document into independent test cases",
            parameters=["document", "context", "plan"],
            template=(
                "Analyse the document below and derive the test cases needed to cover it. "
                "Decide the number of cases yourself. Each case must be independent.\n\n"
                "DOCUMENT:\n{{document}}\n"
                "{{#if plan}}\nThe cases belong to this test plan:\n{{plan}}\n{{/if}}"
                "{{#if context}}\nADDITIONAL CONTEXT:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _CASE_BATCH_JSON
            ),
        ),
        PromptTemplate(
            id="template-plan-regenerate",
            name="Revise test plan",
            task="plan-generation",
            variant="regenerate",
            description="Rewrite one generated plan using reviewer feedback",
            parameters=["current", "feedback", "document", "context"],
            template=(
                "Rewrite this generated test plan.\n\nCurrent version:\n{{current}}\n"
                "{{#if feedback}}\nReviewer feedback to address:\n{{feedback}}\n{{/if}}"
                "{{#if document}}\nSource document:\n{{document}}\n{{/if}}"
                "{{#if context}}\nAdditional context:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _PLAN_JSON
            ),
        ),
        PromptTemplate(
            id="template-case-regenerate",
            name="Revise test case",
            task="case-generation",
            variant="regenerate",
            description="Rewrite one generated case using reviewer feedback",
            parameters=["current", "feedback", "document", "context"],
            template=(
                "Rewrite this generated test case.\n\nCurrent version:\n{{current}}\n"
                "{{#if feedback}}\nReviewer feedback to address:\n{{feedback}}\n{{/if}}"
                "{{#if document}}\nSource document:\n{{document}}\n{{/if}}"
                "{{#if context}}\nAdditional context:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n" + _CASE_JSON
            ),
        ),
        PromptTemplate(
            id="template-general",
            name="General completion",
            task="general-completion",
            variant="single",
            description="Free-form request answered as JSON",
            parameters=["description", "context"],
            template=(
                "{{description}}\n"
                "{{#if context}}\nContext:\n{{context}}\n{{/if}}"
                "\n" + _JSON_RULE + "\n"
            ),
        ),
    ]


def default_templates() -> list[PromptTemplate]:
    """Fresh copies of the built-in templates."""
    return _default_templates()
