import pytest

from property_selection.security import build_fnr_where_clause


def test_integer_fnr():
    assert build_fnr_where_clause(100) == "FNR = 100"
    assert build_fnr_where_clause(0) == "FNR = 0"


def test_string_fnr_is_quoted_and_escaped():
    assert build_fnr_where_clause("abc") == "FNR = 'abc'"
    assert build_fnr_where_clause("o'brien") == "FNR = 'o''brien'"
    assert build_fnr_where_clause("1' OR '1'='1") == "FNR = '1'' OR ''1''=''1'"


@pytest.mark.parametrize("value", [-1, 2**53, float("nan"), float("inf"), 1.5, "", "   ", None, True, [1]])
def test_invalid_fnr_values(value):
    with pytest.raises(ValueError):
        build_fnr_where_clause(value)
