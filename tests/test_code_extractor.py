import pytest

from leadbot.services.code_extractor import extract_code


def test_labelled_code_with_trailing_period():
    assert extract_code("Descuento: Nv5M-ilY.") == "Nv5M-ilY"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Hola! codigo: fauqwPlA", "fauqwPlA"),
        ("Mi CÓDIGO:abc_123 gracias", "abc_123"),
        ("token : X1", "X1"),
        ("Promoción: promo2024-AR.", "promo2024-AR"),
    ],
)
def test_labelled_forms(text, expected):
    assert extract_code(text) == expected


def test_label_wins_over_earlier_long_token():
    assert extract_code("Buenisimas tardes, descuento: ab12") == "ab12"


def test_fallback_prefers_long_token():
    assert extract_code("hola fauqwPlA", fallback=True) == "fauqwPlA"


def test_fallback_any_token_when_no_long_token():
    assert extract_code("hola", fallback=True) == "hola"


def test_strict_mode_ignores_unlabelled_text():
    assert extract_code("hola fauqwPlA", fallback=False) is None


def test_label_value_longer_than_limit_is_truncated():
    assert extract_code("codigo: " + "a" * 30, fallback=False) == "a" * 21


@pytest.mark.parametrize("text", [None, "", "   ", "!!! ???"])
def test_no_code(text):
    assert extract_code(text, fallback=True) is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Sí", "S"),
        ("Información", "Informaci"),
        ("¿Qué tal?", "Qu"),
    ],
)
def test_fallback_stops_tokens_at_accented_letters(text, expected):
    assert extract_code(text, fallback=True) == expected
