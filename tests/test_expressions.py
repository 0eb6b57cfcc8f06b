"""Tests for workflow expression trees."""

import pytest

from repo_agents.workflow.expressions import (
    Template,
    all_of,
    always,
    any_of,
    call,
    condition_text,
    eq,
    lit,
    not_,
    ref,
    truthy,
    walk,
)


class TestRender:
    def test_literal_quoting(self):
        assert lit("it's").render() == "'it''s'"
        assert lit(True).render() == "true"
        assert lit(None).render() == "null"
        assert lit(3).render() == "3"

    def test_precedence_parentheses(self):
        expr = all_of(ref("a"), any_of(ref("b"), ref("c")))
        assert expr.render() == "a && (b || c)"
        assert not_(eq(ref("x"), "y")).render() == "!(x == 'y')"

    def test_flattening(self):
        expr = all_of(all_of(ref("a"), ref("b")), ref("c"))
        assert expr.render() == "a && b && c"
        assert any_of(ref("only")).render() == "only"

    def test_call(self):
        assert call("fromJSON", ref("needs.x.outputs.y")).wrap() == "${{ fromJSON(needs.x.outputs.y) }}"

    def test_condition_text_wraps_negation(self):
        assert condition_text(always()) == "always()"
        assert condition_text(not_(ref("a"))) == "${{ !a }}"

    def test_template(self):
        t = Template(("run-", ref("github.run_id"), "-x"))
        assert t.render() == "run-${{ github.run_id }}-x"
        assert t.evaluate({"github": {"run_id": 12}}) == "run-12-x"


class TestEvaluate:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, False), (False, False), (0, False), ("", False), ("false", True), (1, True), ({}, True)],
    )
    def test_truthy(self, value, expected):
        assert truthy(value) is expected

    def test_or_propagates_value(self):
        ctx = {"a": None, "b": 0, "c": 17}
        assert any_of(ref("a"), ref("b"), ref("c")).evaluate(ctx) == 17

    def test_and_returns_first_falsy(self):
        assert all_of(ref("a"), ref("b")).evaluate({"a": 1, "b": ""}) == ""

    def test_equality_is_case_insensitive(self):
        assert eq(ref("x"), "TRUE").evaluate({"x": "true"})

    def test_missing_path_is_null(self):
        assert ref("github.event.issue.number").evaluate({"github": {"event": {}}}) is None

    def test_functions(self):
        ctx = {"actor": "Repo-Agents[BOT]", "list": ["a", "b"], "json": '["x"]'}
        assert call("endsWith", ref("actor"), lit("[bot]")).evaluate(ctx)
        assert call("startsWith", ref("actor"), lit("repo")).evaluate(ctx)
        assert call("contains", ref("list"), lit("B")).evaluate(ctx)
        assert call("fromJSON", ref("json")).evaluate(ctx) == ["x"]

    def test_status_functions(self):
        assert always().evaluate({"__status__": "failure"})
        assert call("failure").evaluate({"__status__": "failure"})
        assert not call("success").evaluate({"__status__": "cancelled"})

    def test_unknown_function(self):
        with pytest.raises(ValueError, match="Unsupported"):
            call("hashFiles", lit("*.py")).evaluate({})


class TestWalk:
    def test_visits_every_node(self):
        expr = all_of(always(), not_(eq(ref("a"), "b")))
        refs = [node.path for node in walk(expr) if hasattr(node, "path")]
        assert refs == ["a"]
        assert len(list(walk(expr))) == 6
