"""Clause analysis for user-supplied ClickHouse SQL.

This module provides a small lexer and a single-pass analyzer that locate the
top-level LIMIT and FORMAT clauses of a query:
1. String literals, quoted identifiers, heredocs and comments are opaque
2. Keywords inside parentheses (subqueries, function arguments) are ignored
3. `limit` and `format` used as column names or aliases are ordinary words
4. Malformed clauses are reported separately and never raise
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    """Lexical token categories."""

    WORD = "word"
    NUMBER = "number"
    STRING = "string literal"
    QUOTED_IDENTIFIER = "quoted identifier"
    HEREDOC = "heredoc"
    LINE_COMMENT = "line comment"
    BLOCK_COMMENT = "block comment"
    PUNCT = "punctuation"


class ClauseKind(str, Enum):
    """Clause kinds the rewriter enforces."""

    LIMIT = "LIMIT"
    FORMAT = "FORMAT"


@dataclass(frozen=True)
class Token:
    """A lexical token; `closed` is False when the text ends inside it."""

    kind: TokenKind
    start: int
    end: int
    closed: bool = True


@dataclass(frozen=True)
class ClauseSpan:
    """A clause located in the query text.

    Attributes:
        kind: LIMIT or FORMAT
        start: Offset of the keyword
        end: Offset just past the clause argument (past the keyword if malformed)
        value: Row count for LIMIT, format name for FORMAT, None if malformed
    """

    kind: ClauseKind
    start: int
    end: int
    value: int | str | None = None


@dataclass(frozen=True)
class AnalysisResult:
    """Structural facts about one query, as seen at the outermost level.

    Attributes:
        clauses: Well-formed top-level LIMIT/FORMAT clauses in text order
        malformed: Top-level LIMIT/FORMAT keywords whose argument did not parse
        compound_limits: Top-level LIMIT clauses with an offset or WITH TIES
        semicolons: Offsets of top-level semicolons
        set_operators: Offsets of top-level UNION/INTERSECT/EXCEPT keywords
        settings: Offsets of top-level SETTINGS keywords
        unterminated: Kind of literal or comment left open at end of text
        balanced: False if parentheses do not pair up
    """

    clauses: tuple[ClauseSpan, ...] = ()
    malformed: tuple[ClauseSpan, ...] = ()
    compound_limits: tuple[ClauseSpan, ...] = ()
    semicolons: tuple[int, ...] = ()
    set_operators: tuple[int, ...] = ()
    settings: tuple[int, ...] = ()
    unterminated: str | None = None
    balanced: bool = True

    @property
    def trailing_clauses(self) -> tuple[ClauseSpan, ...]:
        """Clauses that apply to the statement result.

        With a set operation, clauses before the last operator belong to an
        earlier branch and stay where they are.
        """
        if not self.set_operators:
            return self.clauses
        boundary = self.set_operators[-1]
        return tuple(c for c in self.clauses if c.start > boundary)

    @property
    def needs_wrapping(self) -> bool:
        """True if a LIMIT appended to the body would not cap the whole result.

        Set operations, LIMIT ... OFFSET / WITH TIES and SETTINGS must all stay
        inside a subquery for the appended clauses to parse.
        """
        return bool(self.set_operators or self.compound_limits or self.settings)

    @property
    def limits(self) -> tuple[ClauseSpan, ...]:
        return tuple(c for c in self.trailing_clauses if c.kind is ClauseKind.LIMIT)

    @property
    def formats(self) -> tuple[ClauseSpan, ...]:
        return tuple(c for c in self.trailing_clauses if c.kind is ClauseKind.FORMAT)

    @property
    def limit(self) -> ClauseSpan | None:
        """The governing LIMIT clause (last one wins)."""
        limits = self.limits
        return limits[-1] if limits else None

    @property
    def format(self) -> ClauseSpan | None:
        """The governing FORMAT clause (last one wins)."""
        formats = self.formats
        return formats[-1] if formats else None


_COMMENT_KINDS = (TokenKind.LINE_COMMENT, TokenKind.BLOCK_COMMENT)

_QUOTE_KINDS = {
    "'": TokenKind.STRING,
    '"': TokenKind.QUOTED_IDENTIFIER,
    "`": TokenKind.QUOTED_IDENTIFIER,
}

_HEREDOC_TAG = re.compile(r"\$([A-Za-z0-9_]*)\$")

_SET_OPERATORS = {"UNION", "INTERSECT", "EXCEPT"}

# Words that may follow the row count and turn LIMIT into another construct
_LIMIT_OFFSET_MARKERS = {",", "OFFSET"}

# Tokens after which the next word is an expression, a name or an alias.
# A `limit` or `format` following one of these is a column, not a clause.
_EXPRESSION_STARTERS = {
    "SELECT", "DISTINCT", "BY", "WHERE", "PREWHERE", "HAVING", "QUALIFY",
    "FROM", "JOIN", "ON", "USING", "INTO", "TABLE", "AS", "WITH",
    "AND", "OR", "NOT", "IN", "IS", "LIKE", "ILIKE", "BETWEEN",
    "CASE", "WHEN", "THEN", "ELSE", "INTERVAL", "SETTINGS", "SET",
    ",", "(", "[", ".", "=", "<", ">", "!", "+", "-", "/", "%", "|", "?", ":",
}

# What may follow `FORMAT name` at the end of a statement
_FORMAT_FOLLOWERS = {"", ";", "SETTINGS", "LIMIT", "FORMAT"}


def _find_closing_quote(text: str, start: int, quote: str) -> int | None:
    """Return the offset past the closing quote, honoring \\ escapes and doubling."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return None


def _find_block_comment_end(text: str, start: int) -> int | None:
    """Return the offset past the matching */; ClickHouse allows nesting."""
    depth = 0
    i = start
    n = len(text)
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
        elif text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return None


def tokenize(text: str) -> Iterator[Token]:
    """Split SQL text into tokens, skipping whitespace.

    Tokenizing stops after a token that runs to the end of the text unclosed.
    """
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]

        if ch.isspace():
            i += 1
            continue

        if text.startswith("--", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            yield Token(TokenKind.LINE_COMMENT, i, end)
            i = end
            continue

        if text.startswith("/*", i):
            end = _find_block_comment_end(text, i)
            if end is None:
                yield Token(TokenKind.BLOCK_COMMENT, i, n, closed=False)
                return
            yield Token(TokenKind.BLOCK_COMMENT, i, end)
            i = end
            continue

        if ch in _QUOTE_KINDS:
            end = _find_closing_quote(text, i, ch)
            if end is None:
                yield Token(_QUOTE_KINDS[ch], i, n, closed=False)
                return
            yield Token(_QUOTE_KINDS[ch], i, end)
            i = end
            continue

        if ch == "$":
            match = _HEREDOC_TAG.match(text, i)
            if match:
                end = text.find(match.group(0), match.end())
                if end == -1:
                    yield Token(TokenKind.HEREDOC, i, n, closed=False)
                    return
                end += len(match.group(0))
                yield Token(TokenKind.HEREDOC, i, end)
                i = end
                continue

        if ch.isalpha() or ch == "_":
            j = i + 1
            while j < n and (text[j].isalnum() or text[j] in "_$"):
                j += 1
            yield Token(TokenKind.WORD, i, j)
            i = j
            continue

        if ch.isdigit():
            # Swallow suffixes too so that 5LIMIT or 1e5 stay one token
            j = i + 1
            while j < n and (text[j].isalnum() or text[j] in "_."):
                j += 1
            yield Token(TokenKind.NUMBER, i, j)
            i = j
            continue

        yield Token(TokenKind.PUNCT, i, i + 1)
        i += 1


def has_code(text: str) -> bool:
    """True if the text holds anything besides whitespace, comments and semicolons."""
    for token in tokenize(text):
        if token.kind in _COMMENT_KINDS:
            continue
        if token.kind is TokenKind.PUNCT and text[token.start] == ";":
            continue
        return True
    return False


def ends_in_line_comment(text: str) -> bool:
    """True if text appended to `text` on the same line would be commented out."""
    last = None
    for last in tokenize(text):
        pass
    if last is None or last.kind is not TokenKind.LINE_COMMENT:
        return False
    return "\n" not in text[last.end:]


class _ClauseScanner:
    """Walks the code tokens of one query and collects its clause structure."""

    def __init__(self, query: str):
        self.query = query
        self.tokens: list[Token] = []
        self.unterminated: str | None = None
        for token in tokenize(query):
            if not token.closed:
                self.unterminated = token.kind.value
            if token.kind not in _COMMENT_KINDS:
                self.tokens.append(token)

        self.clauses: list[ClauseSpan] = []
        self.malformed: list[ClauseSpan] = []
        self.compound_limits: list[ClauseSpan] = []

    def text(self, index: int) -> str:
        """Upper-cased text of the code token at `index`, or '' past the end."""
        if index < 0 or index >= len(self.tokens):
            return ""
        token = self.tokens[index]
        return self.query[token.start:token.end].upper()

    def kind(self, index: int) -> TokenKind | None:
        if index < 0 or index >= len(self.tokens):
            return None
        return self.tokens[index].kind

    def scan(self) -> AnalysisResult:
        semicolons: list[int] = []
        set_operators: list[int] = []
        settings: list[int] = []
        depth = 0
        balanced = True

        for index, token in enumerate(self.tokens):
            word = self.text(index)

            if token.kind is TokenKind.PUNCT:
                if word == "(":
                    depth += 1
                elif word == ")":
                    depth -= 1
                    if depth < 0:
                        balanced = False
                elif word == ";" and depth == 0:
                    semicolons.append(token.start)
                continue

            if depth != 0 or token.kind is not TokenKind.WORD:
                continue

            if word in _SET_OPERATORS and self._is_set_operator(index, word):
                set_operators.append(token.start)
                continue

            if word == "SETTINGS":
                if self._is_settings_clause(index):
                    settings.append(token.start)
                continue

            if word not in ClauseKind.__members__:
                continue
            # SELECT format, ORDER BY limit, t.limit, AS format: names, not clauses
            if self.text(index - 1) in _EXPRESSION_STARTERS:
                continue

            if word == ClauseKind.LIMIT.value:
                self._scan_limit(index)
            else:
                self._scan_format(index)

        return AnalysisResult(
            clauses=tuple(self.clauses),
            malformed=tuple(self.malformed),
            compound_limits=tuple(self.compound_limits),
            semicolons=tuple(semicolons),
            set_operators=tuple(set_operators),
            settings=tuple(settings),
            unterminated=self.unterminated,
            balanced=balanced and depth == 0,
        )

    def _is_set_operator(self, index: int, word: str) -> bool:
        if word != "EXCEPT":
            return True
        # SELECT * EXCEPT (col) is a column transformer, not a set operation
        following = self.text(index + 1)
        if following in ("SELECT", "DISTINCT", "ALL"):
            return True
        return following == "(" and self.text(index + 2) in ("SELECT", "WITH")

    def _is_settings_clause(self, index: int) -> bool:
        # SETTINGS name = value
        if self.text(index - 1) in _EXPRESSION_STARTERS:
            return False
        return self.kind(index + 1) is TokenKind.WORD and self.text(index + 2) == "="

    def _scan_limit(self, index: int):
        keyword = self.tokens[index]
        count = self.text(index + 1)
        if self.kind(index + 1) is not TokenKind.NUMBER or not (count.isascii() and count.isdigit()):
            self.malformed.append(ClauseSpan(ClauseKind.LIMIT, keyword.start, keyword.end))
            return

        span = ClauseSpan(ClauseKind.LIMIT, keyword.start, self.tokens[index + 1].end, int(count))
        following = self.text(index + 2)
        if following == "BY":
            # LIMIT n BY expr is a per-group limit
            return
        if following in _LIMIT_OFFSET_MARKERS:
            if self.text(index + 4) != "BY":
                self.compound_limits.append(span)
            return
        if following == "WITH":
            # LIMIT n WITH TIES
            self.compound_limits.append(span)
            return

        self.clauses.append(span)

    def _scan_format(self, index: int):
        keyword = self.tokens[index]
        if self.text(index + 1) == "(":
            # format(pattern, ...) function call
            return

        argument_kind = self.kind(index + 1)
        if argument_kind is TokenKind.WORD:
            if self.text(index + 2) not in _FORMAT_FOLLOWERS:
                # An alias without AS, e.g. SELECT x format FROM t
                return
            argument = self.tokens[index + 1]
            self.clauses.append(
                ClauseSpan(
                    ClauseKind.FORMAT,
                    keyword.start,
                    argument.end,
                    self.query[argument.start:argument.end],
                )
            )
        elif argument_kind in (None, TokenKind.STRING) or self.text(index + 1) == ";":
            self.malformed.append(ClauseSpan(ClauseKind.FORMAT, keyword.start, keyword.end))


def analyze(query: str) -> AnalysisResult:
    """Locate the top-level LIMIT and FORMAT clauses of a query.

    Args:
        query: Raw SQL text as received from the user

    Returns:
        AnalysisResult describing clauses, statement separators and
        lexical problems. Never raises for malformed SQL.
    """
    return _ClauseScanner(query).scan()
