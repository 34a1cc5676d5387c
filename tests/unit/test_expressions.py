from __future__ import annotations

import pytest

from graphflow.context import ContextStore
from graphflow.errors import ExpressionError
from graphflow.expressions import evaluate, render_template, resolve_path

CONTEXT = {
    "amount": 150,
    "status": "open",
    "tags": ["urgent", "billing"],
    "review": {"output": "Looks good, APPROVED", "score": "7.5"},
    "task-1": {"status": "completed"},
    "items": [{"name": "first"}, {"name": "second"}],
    "empty": "",
}


def test_resolve_path_walks_mappings_and_list_indices() -> None:
    assert resolve_path("review.score", CONTEXT) == "7.5"
    assert resolve_path("items.1.name", CONTEXT) == "second"
    assert resolve_path("items.5.name", CONTEXT) is None
    assert resolve_path("missing.deeper", CONTEXT) is None
    assert resolve_path("task-1.status", CONTEXT) == "completed"


def test_render_template_substitutes_values() -> None:
    rendered = render_template("Amount {{amount}} for {{ status }}; {{missing}}|{{tags}}", CONTEXT)
    assert rendered == 'Amount 150 for open; |["urgent", "billing"]'


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("true", True),
        ("false", False),
        ("amount > 100", True),
        ("amount <= 100", False),
        ("review.score >= 7", True),
        ("status == 'open'", True),
        ("status !== 'open'", False),
        ("review.output.includes('APPROVED')", True),
        ("'billing' in tags", True),
        ("'shipping' in tags", False),
        ("not empty", True),
        ("!status", False),
        ("amount > 100 and status == 'closed'", False),
        ("amount > 100 || status == 'closed'", True),
        ("(amount > 1000 or tags) && task-1.status === 'completed'", True),
        ("missing == null", True),
        ("status > 3", False),
    ],
)
def test_evaluate(expression: str, expected: bool) -> None:
    assert evaluate(expression, CONTEXT) is expected


@pytest.mark.parametrize("expression", ["", "amount >", "(amount > 1", "amount ? 3", "review.output.includes(1)"])
def test_evaluate_rejects_malformed_expressions(expression: str) -> None:
    with pytest.raises(ExpressionError):
        evaluate(expression, CONTEXT)


def test_context_store_merge_prefers_later_overlays() -> None:
    base = {"shared": "base", "nested": {"a": 1}}
    merged = ContextStore.merged(base, [{"shared": "first", "x": 1}, {"shared": "second"}])

    assert merged.snapshot() == {"shared": "second", "nested": {"a": 1}, "x": 1}
    merged.lookup("nested")["a"] = 2
    assert base["nested"]["a"] == 1
