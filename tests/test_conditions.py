"""Tests for the condition evaluator used by condition nodes."""
import pytest
from flows.models import ConditionRule
from utils.conditions import evaluate_condition, evaluate_conditions


def rule(variable, operator, value=""):
    return ConditionRule(variable=variable, operator=operator, value=value)


class TestEvaluateCondition:
    def test_equals_case_insensitive(self):
        cond = rule("status", "equals", "Ativo")
        assert evaluate_condition(cond, {"status": "ativo"})
        assert evaluate_condition(cond, {"status": "  ATIVO "})
        assert not evaluate_condition(cond, {"status": "encerrado"})

    def test_not_equals(self):
        cond = rule("status", "not_equals", "closed")
        assert evaluate_condition(cond, {"status": "open"})
        assert not evaluate_condition(cond, {"status": "Closed"})

    def test_contains(self):
        cond = rule("msg", "contains", "boleto")
        assert evaluate_condition(cond, {"msg": "Quero a segunda via do BOLETO"})
        assert not evaluate_condition(cond, {"msg": "pix"})

    def test_starts_and_ends_with(self):
        assert evaluate_condition(rule("cep", "starts_with", "01"), {"cep": "01310-100"})
        assert evaluate_condition(rule("file", "ends_with", ".PDF"), {"file": "doc.pdf"})
        assert not evaluate_condition(rule("file", "ends_with", ".pdf"), {"file": "doc.png"})

    @pytest.mark.parametrize("age,expected", [("17", False), ("25", True), ("18", False)])
    def test_greater_than_numeric_strings(self, age, expected):
        assert evaluate_condition(rule("age", "greater_than", "18"), {"age": age}) is expected

    def test_less_than_with_comma_decimal(self):
        assert evaluate_condition(rule("valor", "less_than", "100"), {"valor": "99,90"})
        assert not evaluate_condition(rule("valor", "less_than", 100), {"valor": 150})

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_condition(rule("age", "greater_than", "18"), {"age": "abc"})
        assert not evaluate_condition(rule("age", "greater_than", "18"), {})
        assert not evaluate_condition(rule("flag", "less_than", "1"), {"flag": True})

    def test_is_empty(self):
        cond = rule("email", "is_empty")
        assert evaluate_condition(cond, {})
        assert evaluate_condition(cond, {"email": "   "})
        assert not evaluate_condition(cond, {"email": "a@b.com"})

    def test_is_not_empty(self):
        cond = rule("email", "is_not_empty")
        assert evaluate_condition(cond, {"email": "a@b.com"})
        assert evaluate_condition(cond, {"ok": False}) is False

    def test_regex(self):
        cond = rule("email", "matches_regex", r"@.*\.com$")
        assert evaluate_condition(cond, {"email": "test@example.com"})
        assert not evaluate_condition(cond, {"email": "test@example.org"})

    def test_invalid_regex_is_false(self):
        assert not evaluate_condition(rule("x", "matches_regex", "(["), {"x": "abc"})

    def test_unknown_operator_is_false(self):
        assert not evaluate_condition(rule("x", "between", "1"), {"x": "1"})

    def test_boolean_variable_display_text(self):
        assert evaluate_condition(rule("tag_vip", "equals", "true"), {"tag_vip": True})


class TestEvaluateConditions:
    def test_all_must_pass(self):
        conds = [rule("age", "greater_than", "18"), rule("city", "equals", "Recife")]
        assert evaluate_conditions(conds, {"age": "30", "city": "recife"})
        assert not evaluate_conditions(conds, {"age": "30", "city": "Olinda"})

    def test_empty_list_passes(self):
        assert evaluate_conditions([], {})
