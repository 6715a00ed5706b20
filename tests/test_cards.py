import pytest

from chicken_vault.utils.cards import (
    apply_caller_modifier,
    calculate_guess_points,
    card_facts,
    compose_bold_guess,
    normalize_guess,
    normalize_token,
    parse_card_code,
    validate_guess,
)


@pytest.mark.parametrize(
    "raw, expected",
    [("QD", "QD"), ("qd", "QD"), (" 10h ", "TH"), ("td", "TD"), ("AS", "AS")],
)
def test_parse_card_code_normalizes(raw, expected):
    assert parse_card_code(raw).code == expected


@pytest.mark.parametrize("raw", ["", "1H", "QX", "11D", "QDX", None])
def test_parse_card_code_rejects_garbage(raw):
    assert parse_card_code(raw) is None


def test_normalize_token_handles_cell_values():
    assert normalize_token(None) == ""
    assert normalize_token(10.0) == "10"
    assert normalize_token(" red ") == "RED"
    assert normalize_token(True) == "YES"


def test_validate_guess_by_level():
    assert validate_guess("SAFE", "RED")
    assert not validate_guess("SAFE", "HEARTS")
    assert validate_guess("MEDIUM", "S")
    assert not validate_guess("MEDIUM", "RED")
    assert validate_guess("BOLD", "10D")
    assert not validate_guess("BOLD", "D")
    assert not validate_guess("MAX", "RED")


def test_compose_bold_guess():
    assert compose_bold_guess("Q", "d") == "QD"
    assert compose_bold_guess(10, "H") == "TH"
    assert compose_bold_guess("11", "H") is None
    assert compose_bold_guess("Q", "") is None


def test_points_for_each_level():
    assert calculate_guess_points("SAFE", "RED", "QD", 6) == 1
    assert calculate_guess_points("SAFE", "BLACK", "QD", 6) == 0
    assert calculate_guess_points("MEDIUM", "D", "QD", 6) == 3
    assert calculate_guess_points("MEDIUM", "S", "QD", 6) == -1
    assert calculate_guess_points("BOLD", "QD", "QD", 4) == 4
    assert calculate_guess_points("BOLD", "QD", "7S", 4) == -3


def test_points_reject_invalid_secret():
    with pytest.raises(ValueError):
        calculate_guess_points("SAFE", "RED", "ZZ", 4)


def test_caller_modifier():
    assert apply_caller_modifier(6) == 7
    assert apply_caller_modifier(0) == -1
    assert apply_caller_modifier(-3) == -4


def test_normalize_guess_keeps_non_cards():
    assert normalize_guess("10s") == "TS"
    assert normalize_guess("red") == "RED"


def test_card_facts_for_ai():
    facts = card_facts("qd")
    assert facts == {
        "code": "QD",
        "rank": "Q",
        "rankValue": 12,
        "suit": "D",
        "color": "RED",
        "isFaceCard": True,
        "isAce": False,
    }
