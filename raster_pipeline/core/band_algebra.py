"""
Band Algebra Engine

Per-pixel expression evaluation over the aligned bands of a Raster. Expressions
are small immutable trees built either with Python operators on Band/Constant
nodes or parsed from a textual formula:

    >>> ndvi = normalized_difference(scene, 'nir', 'red', 'ndvi')
    >>> savi = parse_expression('1.5 * (NIR - RED) / (NIR + RED + 0.5)',
    ...                         {'NIR': 'nir', 'RED': 'red'})
    >>> scene = add_index(scene, savi, 'savi')

Numeric semantics:
- Arithmetic runs in float64.
- No-data in any operand gives no-data in the output.
- Division by zero, log of non-positive values and any other non-finite
  result become no-data at that pixel instead of raising.
- Comparisons and boolean combinators yield boolean bands.
- Bitwise operators require integer (or boolean) bands and keep their dtype.

Author: Diego Bengochea
"""

import ast
import re
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Union

import numpy as np

from shared_utils import get_logger

from .errors import InputSchemaError
from .raster import Raster

logger = get_logger('band_algebra')

# (data, mask) pair; both broadcastable to the raster shape
Value = Tuple[np.ndarray, np.ndarray]

ARITHMETIC_OPS = {
    '+': np.add,
    '-': np.subtract,
    '*': np.multiply,
    '/': np.divide,
    '**': np.power,
    '%': np.mod,
}

COMPARISON_OPS = {
    '<': np.less,
    '<=': np.less_equal,
    '>': np.greater,
    '>=': np.greater_equal,
    '==': np.equal,
    '!=': np.not_equal,
}

LOGICAL_OPS = {
    'and': np.logical_and,
    'or': np.logical_or,
}

BITWISE_OPS = {
    '&': np.bitwise_and,
    '|': np.bitwise_or,
    '^': np.bitwise_xor,
    '<<': np.left_shift,
    '>>': np.right_shift,
}

FUNCTIONS: Dict[str, Tuple[Callable, int]] = {
    'abs': (np.abs, 1),
    'sqrt': (np.sqrt, 1),
    'log': (np.log, 1),
    'log10': (np.log10, 1),
    'exp': (np.exp, 1),
    'min': (np.minimum, 2),
    'max': (np.maximum, 2),
}


def _float(value: Value) -> Value:
    data, mask = value
    return np.asarray(data, dtype=np.float64), mask


def _finite(data: np.ndarray, mask: np.ndarray) -> Value:
    """Mark non-finite results as no-data."""
    return data, mask | ~np.isfinite(data)


def _require_integer(data: np.ndarray, op: str) -> None:
    if np.asarray(data).dtype.kind not in 'biu':
        raise InputSchemaError(f"Bitwise operator '{op}' requires integer bands, got {np.asarray(data).dtype}")


class Expression:
    """
    Base class of expression tree nodes.

    Subclasses implement ``band_names`` and ``_eval``. Operators build new
    nodes; ``==`` keeps identity semantics, use ``eq``/``neq`` for pixel-wise
    equality.
    """

    default_name = 'expression'

    def band_names(self) -> FrozenSet[str]:
        raise NotImplementedError

    def _eval(self, bands: Mapping[str, np.ma.MaskedArray]) -> Value:
        raise NotImplementedError

    # Arithmetic
    def __add__(self, other): return BinaryOp('+', self, other)
    def __radd__(self, other): return BinaryOp('+', other, self)
    def __sub__(self, other): return BinaryOp('-', self, other)
    def __rsub__(self, other): return BinaryOp('-', other, self)
    def __mul__(self, other): return BinaryOp('*', self, other)
    def __rmul__(self, other): return BinaryOp('*', other, self)
    def __truediv__(self, other): return BinaryOp('/', self, other)
    def __rtruediv__(self, other): return BinaryOp('/', other, self)
    def __pow__(self, other): return BinaryOp('**', self, other)
    def __rpow__(self, other): return BinaryOp('**', other, self)
    def __mod__(self, other): return BinaryOp('%', self, other)
    def __neg__(self): return UnaryOp('-', self)
    def __abs__(self): return Function('abs', self)

    # Comparison
    def __lt__(self, other): return BinaryOp('<', self, other)
    def __le__(self, other): return BinaryOp('<=', self, other)
    def __gt__(self, other): return BinaryOp('>', self, other)
    def __ge__(self, other): return BinaryOp('>=', self, other)

    def eq(self, other): return BinaryOp('==', self, other)
    def neq(self, other): return BinaryOp('!=', self, other)

    # Bitwise (logical on boolean bands)
    def __and__(self, other): return BinaryOp('&', self, other)
    def __rand__(self, other): return BinaryOp('&', other, self)
    def __or__(self, other): return BinaryOp('|', self, other)
    def __ror__(self, other): return BinaryOp('|', other, self)
    def __xor__(self, other): return BinaryOp('^', self, other)
    def __lshift__(self, other): return BinaryOp('<<', self, other)
    def __rshift__(self, other): return BinaryOp('>>', self, other)
    def __invert__(self): return UnaryOp('~', self)

    # Boolean combinators
    def logical_and(self, other): return BinaryOp('and', self, other)
    def logical_or(self, other): return BinaryOp('or', self, other)
    def logical_not(self): return UnaryOp('not', self)

    def where(self, then, otherwise) -> 'Conditional':
        """Pixel-wise ``then if self else otherwise``."""
        return Conditional(self, then, otherwise)

    __hash__ = object.__hash__


def as_expression(value: Any) -> Expression:
    """Wrap numbers as Constant and strings as Band references."""
    if isinstance(value, Expression):
        return value
    if isinstance(value, str):
        return Band(value)
    if isinstance(value, (bool, int, float, np.integer, np.floating)):
        return Constant(value)
    raise InputSchemaError(f"Cannot use {type(value).__name__} in a band expression")


class Band(Expression):
    """Reference to a named band of the evaluated raster."""

    def __init__(self, name: str):
        self.name = name

    @property
    def default_name(self) -> str:
        return self.name

    def band_names(self) -> FrozenSet[str]:
        return frozenset([self.name])

    def _eval(self, bands):
        band = bands[self.name]
        return np.ma.getdata(band), np.ma.getmaskarray(band)

    def __repr__(self):
        return f"Band({self.name!r})"


class Constant(Expression):
    def __init__(self, value: Union[int, float, bool]):
        self.value = value

    def band_names(self) -> FrozenSet[str]:
        return frozenset()

    def _eval(self, bands):
        return np.asarray(self.value), np.asarray(False)

    def __repr__(self):
        return f"Constant({self.value!r})"


class BinaryOp(Expression):
    def __init__(self, op: str, left: Any, right: Any):
        if op not in ARITHMETIC_OPS and op not in COMPARISON_OPS and op not in LOGICAL_OPS and op not in BITWISE_OPS:
            raise InputSchemaError(f"Unknown binary operator '{op}'")
        self.op = op
        self.left = as_expression(left)
        self.right = as_expression(right)

    def band_names(self) -> FrozenSet[str]:
        return self.left.band_names() | self.right.band_names()

    def _eval(self, bands):
        left_data, left_mask = self.left._eval(bands)
        right_data, right_mask = self.right._eval(bands)
        mask = left_mask | right_mask

        with np.errstate(all='ignore'):
            if self.op in ARITHMETIC_OPS:
                left_data, right_data = np.asarray(left_data, np.float64), np.asarray(right_data, np.float64)
                return _finite(ARITHMETIC_OPS[self.op](left_data, right_data), mask)
            if self.op in COMPARISON_OPS:
                return COMPARISON_OPS[self.op](left_data, right_data), mask
            if self.op in LOGICAL_OPS:
                return LOGICAL_OPS[self.op](left_data != 0, right_data != 0), mask

        _require_integer(left_data, self.op)
        _require_integer(right_data, self.op)
        return BITWISE_OPS[self.op](left_data, right_data), mask

    def __repr__(self):
        return f"({self.left!r} {self.op} {self.right!r})"


class UnaryOp(Expression):
    def __init__(self, op: str, operand: Any):
        if op not in ('-', 'not', '~'):
            raise InputSchemaError(f"Unknown unary operator '{op}'")
        self.op = op
        self.operand = as_expression(operand)

    def band_names(self) -> FrozenSet[str]:
        return self.operand.band_names()

    def _eval(self, bands):
        data, mask = self.operand._eval(bands)
        if self.op == '-':
            return _finite(-np.asarray(data, np.float64), mask)
        if self.op == 'not':
            return data == 0, mask
        _require_integer(data, '~')
        return np.invert(data), mask

    def __repr__(self):
        return f"{self.op}({self.operand!r})"


class NormalizedDifference(Expression):
    """
    ``(a - b) / (a + b)`` as a first-class node.

    Exactly 0 where a == b != 0 and no-data where a == b == 0.
    """

    default_name = 'nd'

    def __init__(self, first: Any, second: Any):
        self.first = as_expression(first)
        self.second = as_expression(second)

    def band_names(self) -> FrozenSet[str]:
        return self.first.band_names() | self.second.band_names()

    def _eval(self, bands):
        a, a_mask = _float(self.first._eval(bands))
        b, b_mask = _float(self.second._eval(bands))
        with np.errstate(all='ignore'):
            return _finite((a - b) / (a + b), a_mask | b_mask)

    def __repr__(self):
        return f"NormalizedDifference({self.first!r}, {self.second!r})"


class Conditional(Expression):
    """Pixel-wise ``then if condition else otherwise``; only the selected branch's no-data counts."""

    def __init__(self, condition: Any, then: Any, otherwise: Any):
        self.condition = as_expression(condition)
        self.then = as_expression(then)
        self.otherwise = as_expression(otherwise)

    def band_names(self) -> FrozenSet[str]:
        return self.condition.band_names() | self.then.band_names() | self.otherwise.band_names()

    def _eval(self, bands):
        cond, cond_mask = self.condition._eval(bands)
        then, then_mask = _float(self.then._eval(bands))
        other, other_mask = _float(self.otherwise._eval(bands))
        selector = np.asarray(cond) != 0
        data = np.where(selector, then, other)
        mask = cond_mask | np.where(selector, then_mask, other_mask)
        return data, mask

    def __repr__(self):
        return f"({self.then!r} if {self.condition!r} else {self.otherwise!r})"


class Function(Expression):
    """Named numeric function from FUNCTIONS; min/max are pixel-wise over their arguments."""

    def __init__(self, name: str, *args: Any):
        if name not in FUNCTIONS:
            raise InputSchemaError(f"Unknown function '{name}', expected one of {sorted(FUNCTIONS)}")
        func, arity = FUNCTIONS[name]
        if arity == 1 and len(args) != 1 or arity == 2 and len(args) < 2:
            raise InputSchemaError(f"Function '{name}' got {len(args)} arguments")
        self.name = name
        self.args = tuple(as_expression(arg) for arg in args)

    def band_names(self) -> FrozenSet[str]:
        names = frozenset()
        for arg in self.args:
            names = names | arg.band_names()
        return names

    def _eval(self, bands):
        func, _ = FUNCTIONS[self.name]
        data, mask = _float(self.args[0]._eval(bands))
        with np.errstate(all='ignore'):
            if len(self.args) == 1:
                return _finite(func(data), mask)
            for arg in self.args[1:]:
                other, other_mask = _float(arg._eval(bands))
                data, mask = func(data, other), mask | other_mask
        return _finite(data, mask)

    def __repr__(self):
        return f"{self.name}({', '.join(map(repr, self.args))})"


# Textual expressions -------------------------------------------------------

_AST_BINARY = {
    ast.Add: '+', ast.Sub: '-', ast.Mult: '*', ast.Div: '/', ast.Pow: '**', ast.Mod: '%',
    ast.BitAnd: '&', ast.BitOr: '|', ast.BitXor: '^', ast.LShift: '<<', ast.RShift: '>>',
}

_AST_COMPARE = {
    ast.Lt: '<', ast.LtE: '<=', ast.Gt: '>', ast.GtE: '>=', ast.Eq: '==', ast.NotEq: '!=',
}


_ATOM = re.compile(r'[A-Za-z0-9_.]+')


def _closing_paren(text: str, start: int) -> int:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == '(':
            depth += 1
        elif text[i] == ')':
            depth -= 1
            if depth == 0:
                return i
    return len(text) - 1


def _operand_end(text: str, start: int) -> int:
    """End of the unary operand starting at start: a name, number, call or parenthesised group."""
    i = start
    while i < len(text) and text[i].isspace():
        i += 1
    if i < len(text) and text[i] in '!-+~':
        return _operand_end(text, i + 1)
    if i < len(text) and text[i] == '(':
        return _closing_paren(text, i) + 1
    atom = _ATOM.match(text, i)
    if atom is None:
        return i
    i = atom.end()
    j = i
    while j < len(text) and text[j].isspace():
        j += 1
    if j < len(text) and text[j] == '(':
        return _closing_paren(text, j) + 1
    return i


def _normalize_operators(text: str) -> str:
    """
    Translate ``&&``, ``||`` and ``!`` to Python boolean keywords.

    ``!`` binds to its operand only, so ``!a > 0.5`` is ``(not a) > 0.5``.
    """
    text = text.replace('&&', ' and ').replace('||', ' or ')
    pieces = []
    i = 0
    while i < len(text):
        if text[i] == '!' and text[i + 1:i + 2] != '=':
            end = _operand_end(text, i + 1)
            pieces.append(f" (not {_normalize_operators(text[i + 1:end])}) ")
            i = end
        else:
            pieces.append(text[i])
            i += 1
    return ''.join(pieces)


class _ExpressionBuilder:
    """Translate a Python AST into an Expression tree, binding operand names to bands."""

    def __init__(self, operands: Mapping[str, str]):
        self.operands = operands

    def build(self, node: ast.AST) -> Expression:
        if isinstance(node, ast.Expression):
            return self.build(node.body)

        if isinstance(node, ast.Constant):
            if isinstance(node.value, (bool, int, float)):
                return Constant(node.value)
            raise InputSchemaError(f"Unsupported literal {node.value!r} in expression")

        if isinstance(node, ast.Name):
            return Band(self.operands.get(node.id, node.id))

        if isinstance(node, ast.BinOp) and type(node.op) in _AST_BINARY:
            return BinaryOp(_AST_BINARY[type(node.op)], self.build(node.left), self.build(node.right))

        if isinstance(node, ast.UnaryOp):
            operand = self.build(node.operand)
            if isinstance(node.op, ast.USub):
                return UnaryOp('-', operand)
            if isinstance(node.op, ast.UAdd):
                return operand
            if isinstance(node.op, ast.Not):
                return UnaryOp('not', operand)
            return UnaryOp('~', operand)

        if isinstance(node, ast.BoolOp):
            op = 'and' if isinstance(node.op, ast.And) else 'or'
            result = self.build(node.values[0])
            for value in node.values[1:]:
                result = BinaryOp(op, result, self.build(value))
            return result

        if isinstance(node, ast.Compare):
            # Chained comparisons: a < b < c is (a < b) and (b < c)
            result, left = None, node.left
            for op, right in zip(node.ops, node.comparators):
                if type(op) not in _AST_COMPARE:
                    raise InputSchemaError(f"Unsupported comparison {type(op).__name__}")
                term = BinaryOp(_AST_COMPARE[type(op)], self.build(left), self.build(right))
                result = term if result is None else BinaryOp('and', result, term)
                left = right
            return result

        if isinstance(node, ast.IfExp):
            return Conditional(self.build(node.test), self.build(node.body), self.build(node.orelse))

        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
            name = node.func.id
            if name == 'b':
                if len(node.args) != 1 or not isinstance(node.args[0], ast.Constant) \
                        or not isinstance(node.args[0].value, str):
                    raise InputSchemaError("b() takes a single band name string")
                return Band(node.args[0].value)
            return Function(name, *(self.build(arg) for arg in node.args))

        raise InputSchemaError(f"Unsupported syntax in expression: {ast.dump(node)[:80]}")


def parse_expression(text: str, operands: Optional[Mapping[str, str]] = None) -> Expression:
    """
    Parse a textual formula into an expression tree.

    Args:
        text: Formula such as ``'2.5 * (NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1)'``
        operands: Optional mapping of formula names to band names; names not
            in the mapping refer to bands directly

    Returns:
        Expression tree

    Raises:
        InputSchemaError: On syntax errors or unsupported constructs
    """
    try:
        tree = ast.parse(_normalize_operators(text).strip(), mode='eval')
    except SyntaxError as e:
        raise InputSchemaError(f"Invalid expression '{text}': {e.msg}")
    return _ExpressionBuilder(dict(operands or {})).build(tree)


# Evaluation ---------------------------------------------------------------

def evaluate_bands(expression: Expression, bands: Mapping[str, np.ma.MaskedArray],
                   shape: Tuple[int, int]) -> np.ma.MaskedArray:
    """Evaluate an expression over plain band arrays and broadcast the result to shape."""
    data, mask = expression._eval(bands)
    data = np.broadcast_to(np.asarray(data), shape)
    mask = np.broadcast_to(np.asarray(mask, dtype=bool), shape)
    return np.ma.MaskedArray(data, mask=mask)


def evaluate(expression: Union[Expression, str], raster: Raster, name: Optional[str] = None,
             operands: Optional[Mapping[str, str]] = None) -> Raster:
    """
    Evaluate an expression over a raster.

    Args:
        expression: Expression tree or textual formula
        raster: Input raster; every referenced band must exist
        name: Output band name (defaults to the expression's default name)
        operands: Name bindings when expression is a string

    Returns:
        Single-band Raster on the input grid carrying the input metadata

    Raises:
        InputSchemaError: If a referenced band is absent, before any evaluation
    """
    if isinstance(expression, str):
        expression = parse_expression(expression, operands)
    raster.require_bands(sorted(expression.band_names()))
    result = evaluate_bands(expression, raster.bands(), raster.shape)
    return Raster({name or expression.default_name: result}, raster.grid, metadata=raster.metadata)


def normalized_difference(raster: Raster, first: str, second: str, name: str = 'nd') -> Raster:
    """Normalized difference of two bands, e.g. NDVI from ('nir', 'red')."""
    return evaluate(NormalizedDifference(Band(first), Band(second)), raster, name)


def add_index(raster: Raster, expression: Union[Expression, str], name: str,
              operands: Optional[Mapping[str, str]] = None, overwrite: bool = False) -> Raster:
    """Append the evaluated expression to the raster as a new band."""
    return raster.add_bands(evaluate(expression, raster, name, operands), overwrite=overwrite)


def rescale(raster: Raster, scale: Union[float, Mapping[str, float]] = 1.0,
            offset: Union[float, Mapping[str, float]] = 0.0, bands=None) -> Raster:
    """
    Apply the affine calibration ``value * scale + offset`` in float64.

    Args:
        raster: Input raster
        scale: Multiplier, scalar or per-band mapping
        offset: Additive term, scalar or per-band mapping
        bands: Bands to rescale (default: all, or the keys of a mapping)

    Returns:
        Raster with rescaled bands; other bands unchanged
    """
    if bands is None:
        keys = set()
        for coefficient in (scale, offset):
            if isinstance(coefficient, Mapping):
                keys |= set(coefficient)
        bands = [name for name in raster.band_names if name in keys] if keys else list(raster.band_names)
    bands = list(bands)
    raster.require_bands(bands)

    def coefficient(value, band_name, default):
        if isinstance(value, Mapping):
            return float(value.get(band_name, default))
        return float(value)

    updated = {}
    for name in bands:
        band = raster.band(name)
        data = np.ma.getdata(band).astype(np.float64) * coefficient(scale, name, 1.0) + coefficient(offset, name, 0.0)
        updated[name] = np.ma.MaskedArray(data, mask=np.ma.getmaskarray(band))

    return raster.add_bands(updated, overwrite=True)
