from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from community_operator.src.errors import InvalidSelectorError

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_DNS_SUBDOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")
_TOKEN_PATTERN = re.compile(r"\s*(?:(==|!=|=|!|\(|\)|,|>|<)|([^\s=!(),<>]+))")
_MAX_NAME_LENGTH = 63
_MAX_PREFIX_LENGTH = 253

_END = "end"
_IDENTIFIER = "identifier"
_KEYWORDS = frozenset({"in", "notin"})


class Operator(StrEnum):
    EQUALS = "="
    DOUBLE_EQUALS = "=="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"


_SET_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN})
_NUMERIC_OPERATORS = frozenset({Operator.GREATER_THAN, Operator.LESS_THAN})
_SYMBOL_OPERATORS = {
    "=": Operator.EQUALS,
    "==": Operator.DOUBLE_EQUALS,
    "!=": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    "<": Operator.LESS_THAN,
}


@dataclass(frozen=True)
class Requirement:
    """A single ``key <operator> values`` clause of a label selector."""

    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator is Operator.EXISTS:
            return present
        if self.operator is Operator.DOES_NOT_EXIST:
            return not present
        if self.operator in {Operator.EQUALS, Operator.DOUBLE_EQUALS, Operator.IN}:
            return present and labels[self.key] in self.values
        if self.operator in {Operator.NOT_EQUALS, Operator.NOT_IN}:
            return not present or labels[self.key] not in self.values

        if not present:
            return False
        actual = _parse_integer(labels[self.key])
        if actual is None:
            return False
        expected = int(self.values[0])
        if self.operator is Operator.GREATER_THAN:
            return actual > expected
        return actual < expected

    def __str__(self) -> str:
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator in _SET_OPERATORS:
            return f"{self.key} {self.operator.value} ({','.join(sorted(self.values))})"
        if self.operator is Operator.GREATER_THAN:
            return f"{self.key}>{self.values[0]}"
        if self.operator is Operator.LESS_THAN:
            return f"{self.key}<{self.values[0]}"
        return f"{self.key}{self.operator.value}{self.values[0]}"


@dataclass(frozen=True)
class LabelSelector:
    """Parsed Kubernetes label selector.

    A selector is the conjunction of its requirements; the empty selector
    matches every label set. ``str()`` renders the canonical form accepted
    by the API server's ``labelSelector`` query parameter.
    """

    requirements: tuple[Requirement, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        values = labels or {}
        return all(requirement.matches(values) for requirement in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(requirement) for requirement in self.requirements)


def _tokenize(text: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    position = 0
    while position < len(text):
        if text[position:].strip() == "":
            break
        match = _TOKEN_PATTERN.match(text, position)
        if match is None:
            raise InvalidSelectorError(f"unable to tokenize label selector at position {position}")
        symbol, identifier = match.groups()
        start = match.start(1) if symbol is not None else match.start(2)
        if symbol is not None:
            tokens.append((symbol, symbol, start))
        else:
            tokens.append((_IDENTIFIER, identifier, start))
        position = match.end()
    tokens.append((_END, "", len(text)))
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.position = 0

    def _peek(self) -> tuple[str, str, int]:
        return self.tokens[self.position]

    def _consume(self) -> tuple[str, str, int]:
        token = self.tokens[self.position]
        if token[0] != _END:
            self.position += 1
        return token

    def _error(self, token: tuple[str, str, int], expected: str) -> InvalidSelectorError:
        found = token[1] if token[0] != _END else "end of string"
        return InvalidSelectorError(
            f"unable to parse label selector {self.text!r}: found {found!r} "
            f"at position {token[2]}, expected: {expected}"
        )

    def parse(self) -> LabelSelector:
        requirements: list[Requirement] = []
        if self._peek()[0] == _END:
            return LabelSelector()

        while True:
            requirements.append(self._parse_requirement())
            token = self._consume()
            if token[0] == _END:
                break
            if token[0] != ",":
                raise self._error(token, "',' or end of string")
            if self._peek()[0] not in {_IDENTIFIER, "!"}:
                raise self._error(self._peek(), "identifier after ','")

        requirements.sort(key=lambda requirement: requirement.key)
        return LabelSelector(requirements=tuple(requirements))

    def _parse_requirement(self) -> Requirement:
        negated = False
        token = self._consume()
        if token[0] == "!":
            negated = True
            token = self._consume()
        if token[0] != _IDENTIFIER or token[1] in _KEYWORDS:
            raise self._error(token, "identifier")
        key = _validate_key(token[1])

        if negated:
            return Requirement(key=key, operator=Operator.DOES_NOT_EXIST)

        if self._peek()[0] in {_END, ","}:
            return Requirement(key=key, operator=Operator.EXISTS)

        operator = self._parse_operator()
        if operator in _SET_OPERATORS:
            values = self._parse_value_set()
            if not values:
                raise InvalidSelectorError(
                    f"unable to parse label selector {self.text!r}: "
                    f"values set for {operator.value!r} can't be empty"
                )
            return Requirement(key=key, operator=operator, values=values)

        value = self._parse_exact_value()
        if operator in _NUMERIC_OPERATORS:
            if _parse_integer(value) is None:
                raise InvalidSelectorError(
                    f"unable to parse label selector {self.text!r}: "
                    f"value for {key!r} must be an integer, got {value!r}"
                )
        return Requirement(key=key, operator=operator, values=(value,))

    def _parse_operator(self) -> Operator:
        token = self._consume()
        if token[0] in _SYMBOL_OPERATORS:
            return _SYMBOL_OPERATORS[token[0]]
        if token[0] == _IDENTIFIER and token[1] in _KEYWORDS:
            return Operator(token[1])
        raise self._error(token, "'=', '==', '!=', 'in', 'notin', '>' or '<'")

    def _parse_exact_value(self) -> str:
        token = self._peek()
        if token[0] in {_END, ","}:
            return ""
        token = self._consume()
        if token[0] != _IDENTIFIER:
            raise self._error(token, "label value")
        return _validate_value(token[1])

    def _parse_value_set(self) -> tuple[str, ...]:
        token = self._consume()
        if token[0] != "(":
            raise self._error(token, "'('")

        values: list[str] = []
        if self._peek()[0] == ")":
            self._consume()
            return ()

        while True:
            token = self._peek()
            if token[0] == _IDENTIFIER:
                self._consume()
                values.append(_validate_value(token[1]))
                token = self._peek()
            elif token[0] in {",", ")"}:
                values.append("")
            else:
                raise self._error(token, "label value")

            token = self._consume()
            if token[0] == ")":
                break
            if token[0] != ",":
                raise self._error(token, "',' or ')'")

        return tuple(sorted(set(values)))


def _parse_integer(value: str) -> int | None:
    # Base-10 only; int() would also take "1_0" and non-ASCII digits.
    if not _INTEGER_PATTERN.fullmatch(value):
        return None
    return int(value)


def _validate_key(key: str) -> str:
    prefix, _, name = key.rpartition("/")
    if "/" in key and not prefix:
        raise InvalidSelectorError(f"invalid label key {key!r}: prefix part must be non-empty")
    if prefix and (
        len(prefix) > _MAX_PREFIX_LENGTH or not _DNS_SUBDOMAIN_PATTERN.match(prefix)
    ):
        raise InvalidSelectorError(
            f"invalid label key {key!r}: prefix part must be a DNS-1123 subdomain"
        )
    if not name or len(name) > _MAX_NAME_LENGTH or not _NAME_PATTERN.match(name):
        raise InvalidSelectorError(
            f"invalid label key {key!r}: name part must consist of alphanumeric "
            "characters, '-', '_' or '.', and must start and end with an alphanumeric character"
        )
    return key


def _validate_value(value: str) -> str:
    if value and (len(value) > _MAX_NAME_LENGTH or not _NAME_PATTERN.match(value)):
        raise InvalidSelectorError(
            f"invalid label value {value!r}: must be 63 characters or less and consist of "
            "alphanumeric characters, '-', '_' or '.'"
        )
    return value


def parse_selector(text: str) -> LabelSelector:
    """Parse a Kubernetes label selector string.

    Supports equality (``=``, ``==``, ``!=``), set (``in``, ``notin``),
    existence (``key``, ``!key``) and integer comparison (``>``, ``<``)
    requirements separated by commas. Raises :class:`InvalidSelectorError`
    on malformed input.
    """
    return _Parser(text).parse()
