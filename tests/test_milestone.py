import pytest

from greenfi.milestone import evaluate, progress_percent, to_int

UINT256_MAX = 2 ** 256 - 1


@pytest.mark.parametrize(
    "funds, goal, reached, expected",
    [
        ("1000", "1000", False, True),
        ("1001", "1000", False, True),
        ("999", "1000", False, False),
        ("1000", "0", False, False),
        ("0", "0", False, False),
        ("5000", "1000", True, False),
    ],
)
def test_evaluate(funds, goal, reached, expected):
    assert evaluate(funds, goal, reached) is expected


def test_evaluate_is_exact_beyond_float_precision():
    # differ only in the last unit; a float comparison would call these equal
    assert evaluate(str(UINT256_MAX - 1), str(UINT256_MAX), False) is False
    assert evaluate(str(UINT256_MAX), str(UINT256_MAX), False) is True


def test_empty_values_count_as_zero():
    assert to_int(None) == 0
    assert to_int("") == 0
    assert evaluate("", "", False) is False


def test_progress_percent():
    assert progress_percent("600", "1000") == 60.0
    assert progress_percent("5000", "1000") == 100.0
    assert progress_percent("600", "0") == 0
    assert isinstance(progress_percent("600", "0"), float)
