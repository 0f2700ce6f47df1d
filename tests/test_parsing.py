import pytest

from core import parse_percent, parse_dollars, round_half_up


@pytest.mark.parametrize(
    "text, expected",
    [
        ("10%", 0.10),
        ("0%", 0.0),
        ("100%", 1.0),
        (" 2.5% ", 0.025),
    ],
)
def test_parse_percent_valid(text, expected):
    assert parse_percent(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", ["101%", "-5%", "abc%"])
def test_parse_percent_invalid(text):
    with pytest.raises(ValueError):
        parse_percent(text)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$1,234", 1234.0),
        ("0", 0.0),
        (" 500 ", 500.0),
        ("$500,000", 500_000.0),
    ],
)
def test_parse_dollars_valid(text, expected):
    assert parse_dollars(text) == expected


@pytest.mark.parametrize("text", ["-1", "-$5", "abc"])
def test_parse_dollars_invalid(text):
    with pytest.raises(ValueError):
        parse_dollars(text)


@pytest.mark.parametrize(
    "value, expected",
    [(0.5, 1), (1.5, 2), (2.5, 3), (2.4999, 2), (36_000.0, 36_000), (-0.5, 0)],
)
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
