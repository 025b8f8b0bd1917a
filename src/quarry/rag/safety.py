"""Static gate for generated dataframe code.

Two independent checks run before anything is sent for execution:

``check_code``
    Deny-list scan for process, filesystem, network and dynamic-evaluation
    access, plus a parse with :mod:`ast` that rejects imports, dunder access
    and writes into the shared ``df``. A violation raises
    :class:`~quarry.errors.CodeSafetyViolation`; the code is never dispatched.

``find_rule_violations``
    Business-rule lint over the syntax tree: period columns combined with
    the total column (followed through intermediate names), several total
    candidates summed together, sums over every numeric column, or
    substring text filters.
    Violations are returned as messages, used to ask for one regeneration.

The deny-list is a pre-filter, not a sandbox; the execution service is
responsible for isolating what it runs.
"""

from __future__ import annotations

import ast
import re

from quarry.errors import CodeSafetyViolation

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*$|^```\s*$", re.MULTILINE)

DENY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bimport\b"), "import statement"),
    (re.compile(r"__\w*__|\b__"), "dunder access"),
    (re.compile(r"\b(?:eval|exec|compile|execfile)\s*\("), "dynamic evaluation"),
    (re.compile(r"\b(?:globals|locals|vars|getattr|setattr|delattr)\s*\("), "reflection"),
    (re.compile(r"\b(?:open|input|breakpoint|help|exit|quit)\s*\("), "builtin I/O"),
    (re.compile(r"\b(?:os|sys|subprocess|shutil|pathlib|socket|ctypes|importlib|builtins)\b"), "system module"),
    (re.compile(r"\b(?:pickle|marshal|shelve|requests|urllib|http|httpx)\b"), "serialization or network module"),
    (re.compile(r"\.(?:read|to)_(?:csv|excel|json|parquet|pickle|sql|html|feather|hdf|clipboard|stata)\s*\("), "data file I/O"),
    (re.compile(r"\bpd\.(?:read_\w+|DataFrame\.from_\w+)\s*\("), "dataset reload"),
    (re.compile(r"\binplace\s*=\s*True\b"), "in-place mutation"),
    (re.compile(r"\b(?:system|popen|spawn\w*|fork)\s*\("), "process control"),
]

_SHARED_FRAME = "df"
_MUTATING_METHODS = frozenset({"insert", "pop", "update"})


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences an LLM may wrap around code."""
    return _FENCE_RE.sub("", text).strip()


def check_code(code: str) -> None:
    """Raise CodeSafetyViolation if *code* is not safe to dispatch.

    Raises:
        CodeSafetyViolation: With ``reason`` and the offending ``snippet``.
    """
    if not code.strip():
        raise CodeSafetyViolation("empty code")

    for pattern, reason in DENY_PATTERNS:
        match = pattern.search(code)
        if match:
            raise CodeSafetyViolation(reason, _line_of(code, match.start()))

    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        raise CodeSafetyViolation("syntax error", exc.text or "") from exc

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise CodeSafetyViolation("import statement", ast.unparse(node))
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise CodeSafetyViolation("private attribute access", ast.unparse(node))
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and node.func.attr in _MUTATING_METHODS
            and _root_name(node.func.value) == _SHARED_FRAME
        ):
            raise CodeSafetyViolation("mutates the shared dataframe", ast.unparse(node))
        if isinstance(node, (ast.Assign, ast.AugAssign, ast.AnnAssign, ast.Delete)):
            targets = node.targets if isinstance(node, (ast.Assign, ast.Delete)) else [node.target]
            for target in targets:
                if _writes_shared_frame(target):
                    raise CodeSafetyViolation("mutates the shared dataframe", ast.unparse(node))

    if not _assigns_result(tree):
        raise CodeSafetyViolation("no assignment to 'result'", code.splitlines()[-1])


def find_rule_violations(
    code: str,
    *,
    total_column: str | None,
    period_columns: list[str],
    total_candidates: list[str],
) -> list[str]:
    """Return human-readable rule violations found in *code* (empty if none).

    Column references are followed through intermediate names, so
    ``months = [...]`` then ``df[months]`` counts as touching every month, and
    ``a = df['Total'].sum()`` carries ``Total`` into any later ``a + ...``.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []

    tracker = _ColumnTracker({total_column, *period_columns, *total_candidates} - {None})
    periods = set(period_columns)
    candidates = set(total_candidates)
    double_count = multi_total = whole_frame = substring = False

    for stmt in _statements(tree):
        value = getattr(stmt, "value", None)
        if value is None:
            continue
        refs = tracker.refs(value)
        if isinstance(stmt, ast.AugAssign) and isinstance(stmt.target, ast.Name):
            refs |= tracker.deps.get(stmt.target.id, set())

        if total_column and periods and total_column in refs and refs & periods:
            double_count = True
        if candidates and _sums_several(value, tracker, candidates):
            multi_total = True
        if total_column and periods and _sums_whole_frame(value, tracker):
            whole_frame = True
        if _substring_filter(value):
            substring = True

        tracker.bind(stmt, value, refs)

    violations: list[str] = []
    if double_count:
        violations.append(
            f"Combines period columns with the '{total_column}' column. "
            "Either sum the periods or read the total column, never both."
        )
    if multi_total:
        violations.append("Sums several total-like columns together. Use exactly one.")
    if whole_frame:
        violations.append(
            "Sums every numeric column, which double counts the periods "
            f"and the '{total_column}' column."
        )
    if substring:
        violations.append(
            "Filters text with substring containment. Use case-insensitive exact "
            "match: df[col].astype(str).str.strip().str.lower() == value.lower()."
        )
    return violations


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

# Methods that keep every column of the frame they are called on.
_ROW_PRESERVING = frozenset(
    {"copy", "dropna", "fillna", "reset_index", "head", "tail", "query", "sort_values", "drop_duplicates"}
)


class _ColumnTracker:
    """Which column names each bound name (transitively) refers to."""

    def __init__(self, known: set[str]) -> None:
        self.known = known
        self.lists: dict[str, set[str]] = {}
        self.deps: dict[str, set[str]] = {}
        self.frames: set[str] = {_SHARED_FRAME}

    def literals(self, node: ast.AST | None) -> set[str]:
        """String literals in a column selector: 'a', ['a', 'b'], names + ['c'], 'a':'c'."""
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            return {node.value}
        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            found: set[str] = set()
            for elt in node.elts:
                found |= self.literals(elt)
            return found
        if isinstance(node, ast.Name):
            return set(self.lists.get(node.id, set()))
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Add):
            return self.literals(node.left) | self.literals(node.right)
        if isinstance(node, ast.Slice):
            return self.literals(node.lower) | self.literals(node.upper)
        return set()

    def refs(self, node: ast.AST) -> set[str]:
        found: set[str] = set()
        for sub in ast.walk(node):
            if isinstance(sub, ast.Subscript):
                found |= self.literals(sub.slice)
            elif isinstance(sub, ast.Attribute) and sub.attr in self.known:
                found.add(sub.attr)
            elif isinstance(sub, ast.Name) and sub.id in self.deps:
                found |= self.deps[sub.id]
        return found

    def is_whole_frame(self, node: ast.AST) -> bool:
        if isinstance(node, ast.Name):
            return node.id in self.frames
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
            if node.func.attr == "select_dtypes":
                return True
            return node.func.attr in _ROW_PRESERVING and self.is_whole_frame(node.func.value)
        if isinstance(node, ast.Subscript):
            target = node.value
            if isinstance(target, ast.Attribute) and target.attr in ("loc", "iloc"):
                if isinstance(node.slice, ast.Tuple):
                    return False
                return self.is_whole_frame(target.value)
            # df[mask] filters rows; df['col'] / df[cols] selects columns.
            return not self.literals(node.slice) and self.is_whole_frame(target)
        return False

    def bind(self, stmt: ast.stmt, value: ast.AST, refs: set[str]) -> None:
        targets = stmt.targets if isinstance(stmt, ast.Assign) else [getattr(stmt, "target", None)]
        for target in targets:
            if not isinstance(target, ast.Name):
                continue
            name = target.id
            if isinstance(value, (ast.Constant, ast.List, ast.Tuple, ast.BinOp)) and self.literals(value):
                self.lists[name] = self.literals(value)
                continue
            self.deps[name] = refs
            if isinstance(stmt, ast.Assign) and self.is_whole_frame(value):
                self.frames.add(name)
            else:
                self.frames.discard(name)


def _statements(tree: ast.AST) -> list[ast.stmt]:
    stmts = [n for n in ast.walk(tree) if isinstance(n, (ast.Assign, ast.AugAssign, ast.AnnAssign, ast.Expr))]
    return sorted(stmts, key=lambda n: (n.lineno, n.col_offset))


def _is_sum_call(node: ast.AST) -> bool:
    if not isinstance(node, ast.Call):
        return False
    func = node.func
    return (isinstance(func, ast.Attribute) and func.attr == "sum") or (
        isinstance(func, ast.Name) and func.id == "sum"
    )


def _sums_several(value: ast.AST, tracker: _ColumnTracker, candidates: set[str]) -> bool:
    for node in ast.walk(value):
        if _is_sum_call(node) and len(tracker.refs(node) & candidates) > 1:
            return True
        if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Add):
            left = tracker.refs(node.left) & candidates
            right = tracker.refs(node.right) & candidates
            if left and right and len(left | right) > 1:
                return True
    return False


def _sums_whole_frame(value: ast.AST, tracker: _ColumnTracker) -> bool:
    for node in ast.walk(value):
        if not _is_sum_call(node) or not isinstance(node.func, ast.Attribute):
            continue
        if any(
            kw.arg == "numeric_only"
            and isinstance(kw.value, ast.Constant)
            and kw.value.value is True
            for kw in node.keywords
        ):
            return True
        if tracker.is_whole_frame(node.func.value):
            return True
    return False


def _substring_filter(value: ast.AST) -> bool:
    """``.str.contains(...)`` outside a negation; ``~...contains('Total')`` drops rows."""
    negated: set[int] = set()
    for node in ast.walk(value):
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.Invert, ast.Not)):
            negated.update(id(n) for n in ast.walk(node.operand))
    for node in ast.walk(value):
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and node.func.attr == "contains"
            and isinstance(node.func.value, ast.Attribute)
            and node.func.value.attr == "str"
            and id(node) not in negated
        ):
            return True
    return False


def _line_of(code: str, offset: int) -> str:
    start = code.rfind("\n", 0, offset) + 1
    end = code.find("\n", offset)
    return code[start : end if end != -1 else len(code)].strip()



def _root_name(node: ast.AST) -> str | None:
    while isinstance(node, (ast.Subscript, ast.Attribute)):
        node = node.value
    return node.id if isinstance(node, ast.Name) else None


def _writes_shared_frame(target: ast.AST) -> bool:
    """Assignments through ``df[...]`` or ``df.attr`` mutate the shared handle."""
    if isinstance(target, (ast.Tuple, ast.List)):
        return any(_writes_shared_frame(t) for t in target.elts)
    if isinstance(target, (ast.Subscript, ast.Attribute)):
        return _root_name(target) == _SHARED_FRAME
    return False


def _assigns_result(tree: ast.AST) -> bool:
    for node in ast.walk(tree):
        if isinstance(node, ast.Assign):
            if any(isinstance(t, ast.Name) and t.id == "result" for t in node.targets):
                return True
        elif isinstance(node, (ast.AugAssign, ast.AnnAssign)):
            if isinstance(node.target, ast.Name) and node.target.id == "result":
                return True
    return False
