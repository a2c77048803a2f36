"""Unit tests for short code candidate generation."""

import re
from unittest.mock import patch

import pytest

from app.code_generator import ALPHABET, DEFAULT_CODE_LENGTH, generate_code
from app.config import get_settings

settings = get_settings()


def test_generate_code_default_length() -> None:
    code = generate_code()
    assert len(code) == DEFAULT_CODE_LENGTH == settings.SHORT_CODE_LENGTH


def test_generate_code_custom_length() -> None:
    assert len(generate_code(length=12)) == 12


def test_generate_code_only_alphanumeric() -> None:
    pattern = re.compile(r"^[A-Za-z0-9]{6}$")
    for _ in range(200):
        assert pattern.match(generate_code())


def test_alphabet_has_62_distinct_characters() -> None:
    assert len(ALPHABET) == len(set(ALPHABET)) == 62


def test_generate_code_uniqueness() -> None:
    codes = {generate_code() for _ in range(1000)}
    # 62^6 possibilities make a collision among 1000 draws vanishingly unlikely
    assert len(codes) == 1000


def test_generate_code_draws_from_alphabet() -> None:
    with patch("app.code_generator.generate", return_value="zzzzzz") as mock_generate:
        assert generate_code(6) == "zzzzzz"
    mock_generate.assert_called_once_with(ALPHABET, 6)


@pytest.mark.parametrize("length", [0, -1])
def test_generate_code_rejects_non_positive_length(length: int) -> None:
    with pytest.raises(ValueError, match="length must be positive"):
        generate_code(length)
