from __future__ import annotations

import pytest

from manifest_billing.modules.billing.expressions import evaluate, tokenize


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("12+15+30", 57),
        ("10/0", 0),
        ("", 0),
        ("2*(3+4)", 14),
        ("abc", 0),
        ("2 + 3 * 4", 14),
        ("(2+3)*4", 20),
        ("10-4", 6),
        ("7/2", 3.5),
        ("1.5*2", 3),
        ("8/(4-4)+1", 1),
        ("2*(3+4", 14),
        ("₹12 + 3kg", 15),
    ],
)
def test_evaluate(text, expected):
    assert evaluate(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", ["-5", "2*-3", "-(4)"])
def test_unary_minus_is_not_supported(text):
    assert evaluate(text) == 0


def test_trailing_tokens_after_a_complete_expression_are_ignored():
    assert evaluate("5)+3") == 5


def test_none_and_deep_nesting_never_raise():
    assert evaluate(None) == 0
    assert evaluate("(" * 5000 + "1" + ")" * 5000) == 0


def test_huge_numbers_collapse_to_zero():
    assert evaluate("9" * 400) == 0


def test_tokenize_discards_disallowed_characters():
    assert tokenize("a1 + b2.5 * (x3)") == ["1", "+", "2.5", "*", "(", "3", ")"]
