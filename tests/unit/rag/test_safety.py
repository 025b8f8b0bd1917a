"""Tests for the generated-code safety gate and business-rule lint."""

from __future__ import annotations

import pytest

from quarry.errors import CodeSafetyViolation
from quarry.rag.safety import check_code, find_rule_violations, strip_code_fences

_PERIODS = ["Jan", "Feb", "Mar"]
_CANDIDATES = ["Sales", "Payments", "Total"]


def _rules(code: str) -> list[str]:
    return find_rule_violations(
        code, total_column="Total", period_columns=_PERIODS, total_candidates=_CANDIDATES
    )


# ------------------------------------------------------------------
# check_code: accepted
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "code",
    [
        "result = float(df['Total'].sum())",
        "data = df.copy()\ndata['x'] = data['Total'] * 2\nresult = data['x'].tolist()",
        "mask = df['Region'].astype(str).str.strip().str.lower() == 'atlanta'\n"
        "result = float(df.loc[mask, 'Total'].sum())",
        "result = df.groupby('Region')['Total'].sum().to_dict()",
    ],
)
def test_safe_code_passes(code):
    check_code(code)


# ------------------------------------------------------------------
# check_code: rejected
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "code,reason",
    [
        ("import os\nresult = 1", "import statement"),
        ("result = __import__('os')", "dunder access"),
        ("result = eval('1+1')", "dynamic evaluation"),
        ("result = open('/etc/passwd').read()", "builtin I/O"),
        ("result = getattr(df, 'shape')", "reflection"),
        ("result = pd.read_csv('other.csv')", "data file I/O"),
        ("df.to_csv('out.csv')\nresult = 1", "data file I/O"),
        ("df.dropna(inplace=True)\nresult = 1", "in-place mutation"),
        ("result = subprocess", "system module"),
        ("result = requests", "serialization or network module"),
    ],
)
def test_deny_list(code, reason):
    with pytest.raises(CodeSafetyViolation) as info:
        check_code(code)
    assert info.value.reason == reason
    assert info.value.snippet


@pytest.mark.parametrize(
    "code",
    [
        "df['new'] = 1\nresult = 1",
        "df.loc[0, 'Total'] = 0\nresult = 1",
        "df['Total'] += 1\nresult = 1",
        "del df['Total']\nresult = 1",
        "df.pop('Total')\nresult = 1",
        "df.columns = ['a']\nresult = 1",
    ],
)
def test_mutating_shared_frame_rejected(code):
    with pytest.raises(CodeSafetyViolation, match="mutates the shared dataframe"):
        check_code(code)


def test_private_attribute_rejected():
    with pytest.raises(CodeSafetyViolation, match="private attribute"):
        check_code("result = df._data")


def test_syntax_error_rejected():
    with pytest.raises(CodeSafetyViolation, match="syntax error"):
        check_code("result = (")


def test_missing_result_rejected():
    with pytest.raises(CodeSafetyViolation, match="result"):
        check_code("total = df['Total'].sum()")


def test_empty_code_rejected():
    with pytest.raises(CodeSafetyViolation, match="empty"):
        check_code("   ")


def test_strip_code_fences():
    fenced = "```python\nresult = 1\n```"
    assert strip_code_fences(fenced) == "result = 1"


# ------------------------------------------------------------------
# find_rule_violations
# ------------------------------------------------------------------


def test_periods_plus_total_flagged():
    code = "result = float(df[['Jan', 'Feb', 'Mar', 'Total']].sum().sum())"
    assert any("never both" in v for v in _rules(code))


def test_multiple_total_candidates_summed_flagged():
    code = "result = float(df['Sales'].sum() + df['Payments'].sum())"
    assert any("several total-like columns" in v for v in _rules(code))


def test_select_dtypes_sum_flagged():
    code = "result = float(df.select_dtypes('number').sum().sum())"
    assert any("double counts" in v for v in _rules(code))


def test_substring_filter_flagged():
    code = "result = float(df[df['City'].str.contains('Atlanta')]['Total'].sum())"
    assert any("substring" in v for v in _rules(code))


def test_negated_contains_allowed():
    code = "data = df[~df['Region'].str.contains('Total')]\nresult = float(data['Sales'].sum())"
    assert _rules(code) == []


def test_single_total_column_is_clean():
    assert _rules("result = float(df['Total'].sum())") == []


def test_periods_only_is_clean():
    assert _rules("result = float(df[['Jan', 'Feb', 'Mar']].sum().sum())") == []


def test_period_list_bound_to_name_plus_total_flagged():
    code = (
        "months = ['Jan', 'Feb', 'Mar']\n"
        "result = float(df[months].sum().sum() + df['Total'].sum())"
    )
    assert any("never both" in v for v in _rules(code))


def test_double_count_across_statements_flagged():
    code = (
        "periods = df[['Jan', 'Feb', 'Mar']].sum().sum()\n"
        "total = df['Total'].sum()\n"
        "result = float(periods + total)"
    )
    assert any("never both" in v for v in _rules(code))


def test_column_name_bound_to_variable_flagged():
    code = "col = 'Total'\nresult = float(df[['Jan', 'Feb']].sum().sum() + df[col].sum())"
    assert any("never both" in v for v in _rules(code))


@pytest.mark.parametrize(
    "code",
    [
        "result = float(df.sum(numeric_only=True).sum())",
        "result = float(df.sum().sum())",
        "data = df.copy()\nresult = float(data.sum(numeric_only=True).sum())",
        "data = df[df['Region'] != 'Total']\nresult = float(data.sum(axis=1).sum())",
    ],
)
def test_whole_frame_sum_flagged(code):
    assert any("double counts" in v for v in _rules(code))


def test_row_filter_then_single_column_is_clean():
    code = (
        "mask = df['Region'].astype(str).str.strip().str.lower() == 'atlanta'\n"
        "result = float(df.loc[mask, 'Total'].sum())"
    )
    assert _rules(code) == []


def test_dropping_total_rows_then_summing_periods_is_clean():
    code = (
        "data = df[~df['Region'].str.contains('Total')]\n"
        "months = ['Jan', 'Feb', 'Mar']\n"
        "result = float(data[months].sum().sum())"
    )
    assert _rules(code) == []


def test_total_candidates_summed_across_statements_flagged():
    code = "a = df['Sales'].sum()\nb = df['Payments'].sum()\nresult = float(a + b)"
    assert any("several total-like columns" in v for v in _rules(code))
