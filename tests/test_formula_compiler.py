# WORKFLOW: Tests for the rate-text compiler and formula safety validator.
# Test scenarios:
# 1. Pattern translation (free, ad valorem, specific, cents, compound, range)
# 2. Surcharge formulas for Chapter-99 heading text
# 3. Note delegation and AI fallback
# 4. Safety validation and evaluation

import pytest

from core.exceptions import FormulaSafetyError
from etl.formula_compiler import (
    compile_by_pattern, compile_rate_text, compile_surcharge, evaluate_formula, extract_variables,
    map_unit_to_variable, validate_formula,
)


class TestCompileByPattern:
    @pytest.mark.parametrize("text", ["Free", "free", "FREE (A+, AU)"])
    def test_free_compiles_to_zero(self, text):
        result = compile_by_pattern(text)
        assert result["formula"] == "0"
        assert result["variables"] == []
        assert result["confidence"] == 1.0

    def test_ad_valorem(self):
        result = compile_by_pattern("5% ad valorem")
        assert result["formula"] == "value * 0.05"
        assert result["variables"] == ["value"]
        assert result["method"] == "pattern"

    def test_decimal_percent_keeps_exact_literal(self):
        assert compile_by_pattern("6.8%")["formula"] == "value * 0.068"

    def test_specific_per_kilogram(self):
        result = compile_by_pattern("$2.50/kg")
        assert result["formula"] == "weight * 2.50"
        assert result["variables"] == ["weight"]

    def test_cents_per_kilogram(self):
        assert compile_by_pattern("25¢/kg")["formula"] == "weight * 0.25"

    def test_cents_each(self):
        result = compile_by_pattern("0.9 cents each")
        assert result["formula"] == "quantity * 0.009"

    def test_compound_rate(self):
        result = compile_by_pattern("25¢/kg + 5%")
        assert result["formula"] == "value * 0.05 + weight * 0.25"
        assert result["variables"] == ["value", "weight"]

    def test_range_uses_lower_bound(self):
        result = compile_by_pattern("5%-10%")
        assert result["formula"] == "value * 0.05"
        assert result["confidence"] == 0.7

    def test_empty_text_is_zero(self):
        assert compile_by_pattern("")["formula"] == "0"

    def test_unknown_text_returns_none(self):
        assert compile_by_pattern("The rate applicable to the article") is None


class TestCompileSurcharge:
    def test_applicable_subheading_plus_percent(self):
        result = compile_surcharge("The duty provided in the applicable subheading + 25%")
        assert result["formula"] == "value * 0.25"

    def test_applicable_subheading_without_rate_is_zero(self):
        result = compile_surcharge("The duty provided in the applicable subheading")
        assert result["formula"] == "0"
        assert result["variables"] == []

    def test_plain_percent(self):
        assert compile_surcharge("7.5%")["formula"] == "value * 0.075"

    def test_free_is_not_a_surcharge(self):
        assert compile_surcharge("Free") is None


class TestCompileRateText:
    def test_note_reference_without_resolver(self):
        assert compile_rate_text("See note 2(b) to this chapter", code="0401.10.00") is None

    def test_note_reference_with_resolver(self):
        class Resolver:
            def resolve_note_reference(self, code, text, column, year, exact_only=False):
                assert exact_only is True
                return {"formula": "value * 0.1", "confidence": 1.0}

        result = compile_rate_text("See note 2(b)", code="0401.10.00", note_resolver=Resolver())
        assert result["formula"] == "value * 0.1"
        assert result["method"] == "note"
        assert result["variables"] == ["value"]

    def test_ai_fallback_reduces_confidence(self):
        class Assistant:
            def propose(self, text, unit):
                return {"formula": "value * 0.12", "variables": ["value"], "confidence": 0.8}

        result = compile_rate_text("twelve percent of the appraised value", assistant=Assistant())
        assert result["method"] == "ai"
        assert result["confidence"] == pytest.approx(0.7)

    def test_ai_fallback_unsafe_formula_rejected(self):
        class Assistant:
            def propose(self, text, unit):
                return {"formula": "__import__('os')", "variables": [], "confidence": 0.9}

        assert compile_rate_text("unknown wording", assistant=Assistant()) is None

    def test_pattern_wins_over_assistant(self):
        class Assistant:
            def propose(self, text, unit):
                raise AssertionError("assistant should not be called")

        assert compile_rate_text("5%", assistant=Assistant())["method"] == "pattern"


class TestFormulaSafety:
    @pytest.mark.parametrize("formula", [
        "value * 0.05",
        "(value * 0.05) + (value * 0.25)",
        "weight * 2.50 + quantity * 0.1",
        "0",
    ])
    def test_valid_formulas(self, formula):
        assert validate_formula(formula) == (True, None)

    @pytest.mark.parametrize("formula", [
        "",
        "eval('1')",
        "value ** 2",
        "value; import os",
        "price * 0.05",
        "value / 0",
        "value * 0.05 = 1",
    ])
    def test_invalid_formulas(self, formula):
        is_valid, error = validate_formula(formula)
        assert is_valid is False
        assert error

    def test_evaluate(self):
        assert evaluate_formula("value * 0.05 + weight * 0.25", {"value": 1000, "weight": 100}) == pytest.approx(75.0)

    @pytest.mark.parametrize("formula", ["value ** 2", "value *", "abs(value)"])
    def test_evaluate_rejects_unsafe_syntax(self, formula):
        with pytest.raises(FormulaSafetyError) as error:
            evaluate_formula(formula, {"value": 10})
        assert error.value.formula == formula

    def test_extract_variables_in_order(self):
        assert extract_variables("weight * 2 + value * 0.1 + weight") == ["weight", "value"]


def test_map_unit_to_variable():
    assert map_unit_to_variable("kg") == "weight"
    assert map_unit_to_variable("doz.") == "quantity"
    assert map_unit_to_variable("pf. liter") == "quantity"
    assert map_unit_to_variable("widgets") is None
