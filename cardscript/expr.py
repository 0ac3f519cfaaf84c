"""Expression evaluator — lexer, precedence parser, tree walker.

Every value is a string. The parser never fails: a run of tokens it cannot
read as an operator expression becomes an atom, and an atom that resolves to
nothing (no property, variable or special form) evaluates to its own source
text, so `put Hello World` yields "Hello World".

Precedence, lowest first:

    or
    and
    &  &&
    =  is  is not  <>  !=  <  >  <=  >=  contains
    +  -
    *  /  mod  div
    unary -  not
    literal | call | ( expr ) | atom

The word operators only act on operands of their kind: `and`/`or`/`not` on
true, false, empty or numbers, `mod`/`div` on numbers, `contains` on a left
side that resolved to something. Otherwise the expression is its own text.
"""

from __future__ import annotations

import logging
import math
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Union

from cardscript.scene import Card, get_property
from cardscript.values import (
    format_number, is_number, is_truthy, normalize_color, opens_quote, parse_number,
    reads_as_logical, to_text,
)

if TYPE_CHECKING:
    from cardscript.runtime import ExecContext

log = logging.getLogger(__name__)


# ── Lexer ────────────────────────────────────────────────────────

class TokenType(Enum):
    STRING = "string"
    NUMBER = "number"
    WORD = "word"
    OP = "op"
    LPAREN = "("
    RPAREN = ")"
    COMMA = ","
    EOF = "eof"


@dataclass(slots=True)
class Token:
    type: TokenType
    value: str
    start: int
    end: int

    def is_word(self, *words: str) -> bool:
        return self.type is TokenType.WORD and self.value.lower() in words


_SYMBOLS = ("&&", ">=", "<=", "<>", "!=", "&", ">", "<", "=", "+", "-", "*", "/")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")
_WORD_RE = re.compile(r"[^\s\"'&=<>!+\-*/(),]+(?:'[^\s\"'&=<>!+\-*/(),]*)*")


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if opens_quote(text, i):
            close = text.find(ch, i + 1)
            end = n if close == -1 else close + 1
            tokens.append(Token(TokenType.STRING, text[i + 1:close if close != -1 else n], i, end))
            i = end
            continue
        if ch == "(":
            tokens.append(Token(TokenType.LPAREN, ch, i, i + 1))
            i += 1
            continue
        if ch == ")":
            tokens.append(Token(TokenType.RPAREN, ch, i, i + 1))
            i += 1
            continue
        if ch == ",":
            tokens.append(Token(TokenType.COMMA, ch, i, i + 1))
            i += 1
            continue
        symbol = next((s for s in _SYMBOLS if text.startswith(s, i)), None)
        if symbol:
            tokens.append(Token(TokenType.OP, symbol, i, i + len(symbol)))
            i += len(symbol)
            continue
        m = _NUMBER_RE.match(text, i)
        if m:
            # "12px" stays one word so it keeps its source text
            w = _WORD_RE.match(text, i)
            if w and w.end() > m.end():
                tokens.append(Token(TokenType.WORD, w.group(0), i, w.end()))
                i = w.end()
            else:
                tokens.append(Token(TokenType.NUMBER, m.group(0), i, m.end()))
                i = m.end()
            continue
        m = _WORD_RE.match(text, i)
        if m:
            tokens.append(Token(TokenType.WORD, m.group(0), i, m.end()))
            i = m.end()
            continue
        # A lone "!" or similar stray character
        tokens.append(Token(TokenType.WORD, ch, i, i + 1))
        i += 1
    tokens.append(Token(TokenType.EOF, "", n, n))
    return tokens


# ── Tree ─────────────────────────────────────────────────────────

@dataclass(slots=True)
class Literal:
    value: str


@dataclass(slots=True)
class Atom:
    """A run of words/strings/numbers resolved against the scene at eval time."""
    text: str
    tokens: list[Token] = field(default_factory=list)


@dataclass(slots=True)
class Call:
    name: str
    args: list[Expr]


@dataclass(slots=True)
class Unary:
    op: str
    operand: Expr
    text: str = field(default="", compare=False)


@dataclass(slots=True)
class Binary:
    op: str
    left: Expr
    right: Expr
    text: str = field(default="", compare=False)


Expr = Union[Literal, Atom, Call, Unary, Binary]


# ── Parser ───────────────────────────────────────────────────────

_COMPARISON_OPS = frozenset({"=", "<>", "!=", "<", ">", "<=", ">="})
_WORD_OPERATORS = frozenset({"or", "and", "is", "contains", "mod", "div"})


class Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    def parse(self) -> Expr:
        if self.tokens[0].type is TokenType.EOF:
            return Literal("")
        expr = self._parse_or()
        if self._peek().type is not TokenType.EOF:
            log.debug("Unparsed tail in %r; treating it as text", self.text)
            return Atom(self.text.strip())
        return expr

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.type is not TokenType.EOF:
            self.pos += 1
        return tok

    def _at_op(self, *ops: str) -> bool:
        tok = self._peek()
        return tok.type is TokenType.OP and tok.value in ops

    def _span(self, start: int) -> str:
        """Source text from offset `start` to the end of the last consumed token."""
        return self.text[start:self.tokens[self.pos - 1].end]

    def _parse_or(self) -> Expr:
        start = self._peek().start
        left = self._parse_and()
        while self._peek().is_word("or"):
            self._advance()
            right = self._parse_and()
            left = Binary("or", left, right, self._span(start))
        return left

    def _parse_and(self) -> Expr:
        start = self._peek().start
        left = self._parse_concat()
        while self._peek().is_word("and"):
            self._advance()
            right = self._parse_concat()
            left = Binary("and", left, right, self._span(start))
        return left

    def _parse_concat(self) -> Expr:
        start = self._peek().start
        left = self._parse_comparison()
        while self._at_op("&", "&&"):
            op = self._advance().value
            right = self._parse_comparison()
            left = Binary(op, left, right, self._span(start))
        return left

    def _parse_comparison(self) -> Expr:
        start = self._peek().start
        left = self._parse_additive()
        while True:
            tok = self._peek()
            if tok.type is TokenType.OP and tok.value in _COMPARISON_OPS:
                op = self._advance().value
            elif tok.is_word("is"):
                self._advance()
                op = "is"
                if self._peek().is_word("not"):
                    self._advance()
                    op = "is not"
            elif tok.is_word("contains"):
                self._advance()
                op = "contains"
            else:
                return left
            right = self._parse_additive()
            left = Binary(op, left, right, self._span(start))

    def _parse_additive(self) -> Expr:
        start = self._peek().start
        left = self._parse_multiplicative()
        while self._at_op("+", "-"):
            op = self._advance().value
            right = self._parse_multiplicative()
            left = Binary(op, left, right, self._span(start))
        return left

    def _parse_multiplicative(self) -> Expr:
        start = self._peek().start
        left = self._parse_unary()
        while self._at_op("*", "/") or self._peek().is_word("mod", "div"):
            op = self._advance().value.lower()
            right = self._parse_unary()
            left = Binary(op, left, right, self._span(start))
        return left

    def _parse_unary(self) -> Expr:
        tok = self._peek()
        if self._at_op("-"):
            self._advance()
            operand = self._parse_unary()
            return Unary("-", operand, self._span(tok.start))
        nxt = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else tok
        if tok.is_word("not") and nxt.type is not TokenType.EOF:
            self._advance()
            operand = self._parse_unary()
            return Unary("not", operand, self._span(tok.start))
        return self._parse_primary()

    def _parse_primary(self) -> Expr:
        tok = self._peek()
        if tok.type is TokenType.LPAREN:
            self._advance()
            inner = self._parse_or()
            if self._peek().type is TokenType.RPAREN:
                self._advance()
            return inner
        if (tok.type is TokenType.WORD
                and self.tokens[self.pos + 1].type is TokenType.LPAREN):
            return self._parse_call()
        return self._parse_atom()

    def _parse_call(self) -> Call:
        name = self._advance().value
        self._advance()  # (
        args: list[Expr] = []
        if self._peek().type is TokenType.RPAREN:
            self._advance()
            return Call(name, args)
        while True:
            args.append(self._parse_or())
            if self._peek().type is TokenType.COMMA:
                self._advance()
                continue
            if self._peek().type is TokenType.RPAREN:
                self._advance()
            return Call(name, args)

    def _parse_atom(self) -> Expr:
        run: list[Token] = []
        while True:
            tok = self._peek()
            if tok.type not in (TokenType.WORD, TokenType.STRING, TokenType.NUMBER):
                break
            if run and tok.type is TokenType.WORD and tok.value.lower() in _WORD_OPERATORS:
                break
            run.append(self._advance())
        if not run:
            # Missing operand, e.g. "5 +"
            return Literal("")
        if len(run) == 1:
            only = run[0]
            if only.type is TokenType.STRING:
                return Literal(only.value)
            if only.type is TokenType.NUMBER:
                return Literal(only.value)
        return Atom(self.text[run[0].start:run[-1].end], run)


def parse(text: str) -> Expr:
    return Parser(text).parse()


# ── Evaluation ───────────────────────────────────────────────────

def evaluate(text: str, ctx: ExecContext) -> str:
    """Evaluate expression source text to a string."""
    return to_text(eval_node(parse(text.strip()), ctx))


def eval_node(node: Expr, ctx: ExecContext) -> str:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Atom):
        return resolve_atom(node, ctx)
    if isinstance(node, Call):
        return call_function(node.name, [eval_node(a, ctx) for a in node.args])
    if isinstance(node, Unary):
        value = eval_node(node.operand, ctx)
        if node.op == "not":
            # "not bad" is prose, not negation
            if not reads_as_logical(value):
                return node.text
            return to_text(not is_truthy(value))
        return format_number(-_num(value))
    return _eval_binary(node, ctx)


def _num(value: str) -> float:
    number = parse_number(value)
    return 0.0 if number is None else number


def _unresolved(node: Expr, value: str) -> bool:
    return isinstance(node, Atom) and value == node.text


def _eval_binary(node: Binary, ctx: ExecContext) -> str:
    op = node.op
    left = eval_node(node.left, ctx)
    right = eval_node(node.right, ctx)
    # Word operators only apply to operands of the right kind; otherwise the
    # words are text ("Tom and Jerry", "Hello mod world")
    if op in ("and", "or"):
        if not (reads_as_logical(left) and reads_as_logical(right)):
            return node.text
        if op == "and":
            return to_text(is_truthy(left) and is_truthy(right))
        return to_text(is_truthy(left) or is_truthy(right))
    if op in ("mod", "div") and not (is_number(left) and is_number(right)):
        return node.text
    if op == "contains" and _unresolved(node.left, left):
        return node.text
    if op == "&":
        return left + right
    if op == "&&":
        return f"{left} {right}"
    if op in _COMPARISON_OPS or op in ("is", "is not", "contains"):
        return compare(left, right, op)
    a, b = _num(left), _num(right)
    if op == "+":
        return format_number(a + b)
    if op == "-":
        return format_number(a - b)
    if op == "*":
        return format_number(a * b)
    if op == "/":
        if b == 0:
            # n/0 is +-Infinity; 0/0 is NaN, which reads as "0"
            return format_number(math.copysign(math.inf, a) if a else math.nan)
        return format_number(a / b)
    if b == 0:
        return "0"
    if op == "mod":
        return format_number(math.fmod(a, b))
    return format_number(math.trunc(a / b))  # div


def compare(left: str, right: str, op: str) -> str:
    """Compare two values; numeric when both read as numbers, else case-folded text."""
    if op == "contains":
        return to_text(right.strip().lower() in left.lower())
    ln, rn = parse_number(left), parse_number(right)
    a: float | str
    b: float | str
    if ln is not None and rn is not None:
        a, b = ln, rn
    else:
        a = normalize_color(left.lower().strip())
        b = normalize_color(right.lower().strip())
    if op in ("=", "is"):
        result = a == b
    elif op in ("<>", "!=", "is not"):
        result = a != b
    elif op == ">":
        result = a > b
    elif op == "<":
        result = a < b
    elif op == ">=":
        result = a >= b
    else:
        result = a <= b
    return to_text(result)


# ── Functions ────────────────────────────────────────────────────

def _random(n: float) -> str:
    return str(random.randint(1, max(1, int(n))))


def _round(x: float) -> str:
    # Half away from zero, not banker's rounding
    return format_number(math.copysign(math.floor(abs(x) + 0.5), x))


def _sqrt(x: float) -> str:
    return format_number(math.sqrt(x)) if x >= 0 else "0"


def _numbers(args: list[str]) -> list[float]:
    # max("1,5,3") reads a single comma list as several arguments
    if len(args) == 1 and "," in args[0]:
        args = args[0].split(",")
    return [_num(a) for a in args]


def _aggregate(fn: Callable[[list[float]], float]) -> Callable[[list[str]], str]:
    def apply(args: list[str]) -> str:
        numbers = _numbers(args)
        return format_number(fn(numbers)) if numbers else "0"
    return apply


def _first(args: list[str]) -> str:
    return args[0] if args else ""


FUNCTIONS: dict[str, Callable[[list[str]], str]] = {
    "random": lambda args: _random(_num(_first(args))),
    "abs": lambda args: format_number(abs(_num(_first(args)))),
    "round": lambda args: _round(_num(_first(args))),
    "trunc": lambda args: format_number(math.trunc(_num(_first(args)))),
    "sqrt": lambda args: _sqrt(_num(_first(args))),
    "length": lambda args: str(len(_first(args))),
    "upper": lambda args: _first(args).upper(),
    "toupper": lambda args: _first(args).upper(),
    "lower": lambda args: _first(args).lower(),
    "tolower": lambda args: _first(args).lower(),
    "max": _aggregate(max),
    "min": _aggregate(min),
    "sum": _aggregate(math.fsum),
    "rgb": lambda args: "rgb(" + ",".join(a.strip() for a in args) + ")",
}


def call_function(name: str, args: list[str]) -> str:
    fn = FUNCTIONS.get(name.lower())
    if fn is None:
        log.debug("Unknown function %s(); degrading to text", name)
        return name + ",".join(args)
    return fn(args)


# ── Atoms ────────────────────────────────────────────────────────

_SPECIAL_ATOMS: dict[tuple[str, ...], Callable[[ExecContext], str]] = {
    ("it",): lambda ctx: ctx.it,
    ("empty",): lambda ctx: "",
    ("true",): lambda ctx: "true",
    ("false",): lambda ctx: "false",
    ("the", "date"): lambda ctx: time.strftime("%x"),
    ("the", "time"): lambda ctx: time.strftime("%X"),
    ("the", "width"): lambda ctx: format_number(ctx.scene.stack.card_size.width),
    ("the", "height"): lambda ctx: format_number(ctx.scene.stack.card_size.height),
    ("the", "card", "width"): lambda ctx: format_number(ctx.scene.stack.card_size.width),
    ("the", "card", "height"): lambda ctx: format_number(ctx.scene.stack.card_size.height),
    ("the", "target"): lambda ctx: ctx.origin_id or "",
    ("the", "number", "of", "cards"): lambda ctx: str(len(ctx.scene.cards)),
    ("the", "number", "of", "this", "card"): lambda ctx: str(ctx.scene.current_index + 1),
    ("the", "number", "of", "buttons"): lambda ctx: _count_kind(ctx, "button"),
    ("the", "number", "of", "fields"): lambda ctx: _count_kind(ctx, "field"),
}


def _count_kind(ctx: ExecContext, kind: str) -> str:
    objects = ctx.scene.card_objects(ctx.scene.current_index)
    return str(sum(1 for obj in objects if obj.kind.value == kind))


def resolve_atom(atom: Atom, ctx: ExecContext) -> str:
    tokens = atom.tokens
    if not tokens:
        return atom.text
    words = tuple(t.value.lower() if t.type is not TokenType.STRING else "\0" for t in tokens)

    special = _SPECIAL_ATOMS.get(words)
    if special is not None:
        return special(ctx)

    if words[0] == "random" and len(tokens) == 2:
        n = parse_number(tokens[1].value) if tokens[1].type is TokenType.NUMBER else None
        if n is None:
            n = parse_number(ctx.lookup_variable(tokens[1].value) or "")
        if n is not None:
            return _random(n)

    if words[0] == "the" and "of" in words[2:]:
        value = _property_of(atom, words, ctx)
        if value is not None:
            return value

    if len(tokens) == 1 and tokens[0].type is TokenType.WORD:
        value = ctx.lookup_variable(tokens[0].value)
        if value is not None:
            return value

    return atom.text


def _property_of(atom: Atom, words: tuple[str, ...], ctx: ExecContext) -> str | None:
    of_index = words.index("of", 2)
    prop = " ".join(t.value for t in atom.tokens[1:of_index])
    target_tokens = atom.tokens[of_index + 1:]
    if not target_tokens:
        return None
    base = atom.tokens[0].start
    target_text = atom.text[target_tokens[0].start - base:]
    entity = ctx.resolve_target(target_text)
    if entity is None:
        log.debug("No target for %r", atom.text)
        return None
    if prop.lower() == "number" and isinstance(entity, Card):
        return str(ctx.scene.cards.index(entity) + 1)
    value = get_property(entity, prop)
    return "" if value is None else value
