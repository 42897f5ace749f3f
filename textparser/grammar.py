"""Rules and patterns: the grammar half of the parser.

A grammar is a set of named Rules. Each Rule has one or more Patterns, and
each Pattern is a sequence of tokens. Tokens are written as strings where the
first character says what kind of token it is:

    !name   a reference to another rule
    $NAME   a variable token: a class of values produced by the scanner,
            like identifiers, strings or numbers
    _text   a literal: exactly this text
    .       the end of the input

For example, a rule for a comma separated list of identifiers might be:

    parser.new_rule("idList")
    parser.pattern(["$ID", "!moreIds"], lambda v: [v[0]] + (v[1] or []))

    parser.new_rule("moreIds")
    parser.optional()
    parser.repeatable()
    parser.pattern(["_,", "$ID"], lambda v: v[1])

Unlike a textbook LL grammar, repetition and optionality are flags on the rule
rather than recursive or empty productions. That keeps the grammars readable
but it does make the state machine a little more interesting to build; see
`states.py` for that part.

Besides the syntax itself, patterns carry documentation (a keyword, a
description, argument docs, a support level) which is used to render the
EBNF-ish syntax strings in the reference manual.
"""

import dataclasses
import enum
import typing

from .errors import GrammarError
from .states import State
from .tokens import TokenDescriptor, TokenKind


RuleTable = typing.Mapping[str, "Rule"]
StateTable = dict[typing.Tuple["Rule", "Pattern | None", int], State]

SemanticAction = typing.Callable[[list[typing.Any]], typing.Any]


class SupportLevel(enum.Enum):
    """The syntax evolves over time; this is how far along a pattern is."""

    EXPERIMENTAL = "experimental"
    BETA = "beta"
    SUPPORTED = "supported"
    DEPRECATED = "deprecated"
    REMOVED = "removed"


@dataclasses.dataclass
class TokenDoc:
    """Documentation for one argument of a pattern.

    A TokenDoc without a name documents a terminal token; the token text is
    used as the name when the syntax is rendered.
    """

    name: str | None
    text: str | None = None
    pattern: "Pattern | None" = None
    type_spec: str | None = None


class Pattern:
    """One alternative of a Rule: an ordered list of tokens and an optional
    semantic action.

    The action is called with the list of values collected for the pattern,
    one slot per token, in token order. Whatever it returns becomes the value
    of the pattern in the enclosing pattern.
    """

    tokens: list[TokenDescriptor]
    function: SemanticAction | None
    keyword: str | None
    doc: str | None
    args: list[TokenDoc | None]
    support_level: SupportLevel
    see_also: list[str]
    example_file: str | None
    example_tag: str | None
    last_syntax_token: int

    def __init__(
        self,
        tokens: typing.Iterable[str | TokenDescriptor],
        function: SemanticAction | None = None,
    ):
        self.tokens = [
            t if isinstance(t, TokenDescriptor) else TokenDescriptor.parse(t) for t in tokens
        ]
        for token in self.tokens:
            if not isinstance(token.kind, TokenKind):
                raise GrammarError(f"Unknown token kind {token.kind!r} in pattern {self}")

        self.function = function
        self.keyword = None
        self.doc = None
        self.args = [None] * len(self.tokens)
        self.support_level = SupportLevel.SUPPORTED
        self.see_also = []
        self.example_file = None
        self.example_tag = None
        # Only this many tokens are shown in the syntax documentation.
        self.last_syntax_token = len(self.tokens) - 1

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, index: int) -> TokenDescriptor:
        return self.tokens[index]

    def __iter__(self) -> typing.Iterator[TokenDescriptor]:
        return iter(self.tokens)

    def __str__(self) -> str:
        return " ".join(str(t) for t in self.tokens)

    def __repr__(self) -> str:
        return f"<Pattern {self}>"

    ###########################################################################
    # Grammar analysis
    ###########################################################################
    def optional(self, rules: RuleTable, visiting: set[str] | None = None) -> bool:
        """True if every token of the pattern may be absent, i.e. the pattern
        only consists of references to optional rules. An empty pattern is
        trivially optional.
        """
        for token in self.tokens:
            match token.kind:
                case TokenKind.LITERAL | TokenKind.VARIABLE | TokenKind.EOF:
                    return False
                case TokenKind.REFERENCE:
                    if not _lookup(rules, token.name, self).optional(rules, visiting):
                        return False
                case _:
                    typing.assert_never(token.kind)
        return True

    def first_terminals(
        self, rules: RuleTable, visited: set[str] | None = None
    ) -> set[TokenDescriptor]:
        """The terminal tokens that this pattern can start with.

        References are only followed into rules that have a single pattern;
        a rule with alternatives contributes nothing here. This is used for
        documentation and diagnostics, not for building the state machine.
        """
        if len(self.tokens) == 0:
            return set()

        token = self.tokens[0]
        match token.kind:
            case TokenKind.LITERAL | TokenKind.VARIABLE | TokenKind.EOF:
                return {token}

            case TokenKind.REFERENCE:
                rule = rules.get(token.name)
                if rule is None or len(rule.patterns) != 1:
                    return set()

                if visited is None:
                    visited = set()
                if rule.name in visited:
                    return set()
                visited.add(rule.name)
                return rule.patterns[0].first_terminals(rules, visited)

            case _:
                typing.assert_never(token.kind)

    def _optional_token(self, index: int, rules: RuleTable) -> bool:
        token = self.tokens[index]
        if token.kind == TokenKind.REFERENCE:
            return _lookup(rules, token.name, self).optional(rules)
        return False

    ###########################################################################
    # State machine generation
    ###########################################################################
    def generate_states(self, rule: "Rule", rules: RuleTable) -> list[State]:
        """Make one State per token of the pattern.

        The last token of a pattern can always trigger a reduce. But if the
        trailing tokens are all references to optional rules then the pattern
        may also end before them, so every state from the last mandatory token
        on is allowed to reduce.
        """
        first_reduceable = len(self.tokens) - 1
        for i in range(len(self.tokens) - 2, -1, -1):
            if self._optional_token(i + 1, rules):
                first_reduceable = i
            else:
                break

        states = []
        for i in range(len(self.tokens)):
            state = State(rule, self, i)
            state.reduce_eligible = i >= first_reduceable
            states.append(state)
        return states

    def add_transitions_to_state(
        self,
        states: StateTable,
        rules: RuleTable,
        state_stack: list[State],
        source: State,
        dest_rule: "Rule",
        dest_index: int,
        loop_back: bool,
    ):
        """Add the transitions that lead from `source` into this pattern,
        starting at token `dest_index`.

        When the token at `dest_index` is a reference, we don't get a
        transition to it directly; instead we dive into the referenced rule
        and add transitions to the first tokens of its patterns. The state we
        skipped over is pushed onto `state_stack` so that the parser knows
        where to come back to once the referenced rule has been reduced. If
        the referenced rule is optional, the parser may skip it entirely, so
        we also carry on with the next token of this pattern.
        """
        while True:
            if dest_index >= len(self.tokens):
                # We fell off the end of the pattern. If we were continuing the
                # source's own pattern and the rule repeats, the parser may
                # start the rule over from here.
                if (
                    dest_rule is source.rule
                    and dest_rule.repeatable
                    and source.pattern is not None
                    and not loop_back
                    and len(state_stack) == 0
                ):
                    dest_rule.add_transitions_to_state(states, rules, [], source, True)
                return

            token = self.tokens[dest_index]
            match token.kind:
                case TokenKind.REFERENCE:
                    ref_rule = _lookup(rules, token.name, self)
                    skipped = states[(dest_rule, self, dest_index)]

                    # Rules may reference themselves, directly or through
                    # other rules. If we are already expanding this state in
                    # the current chain, we have all the transitions we need.
                    if skipped not in state_stack:
                        state_stack.append(skipped)
                        ref_rule.add_transitions_to_state(
                            states, rules, state_stack, source, loop_back
                        )
                        state_stack.pop()

                    if not ref_rule.optional(rules):
                        break

                case TokenKind.LITERAL | TokenKind.VARIABLE | TokenKind.EOF:
                    dest_state = states.get((dest_rule, self, dest_index))
                    if dest_state is None:
                        raise GrammarError(
                            f"Destination state {dest_rule.name} {dest_index} not found"
                        )
                    source.add_transition(token, dest_state, state_stack, loop_back)
                    # Terminals are never optional.
                    break

                case _:
                    typing.assert_never(token.kind)

            dest_index += 1

    ###########################################################################
    # Documentation
    ###########################################################################
    def set_doc(self, keyword: str | None, doc: str | None):
        self.keyword = keyword
        self.doc = doc

    def set_arg(self, index: int, doc: TokenDoc):
        if index < 0 or index >= len(self.tokens):
            raise GrammarError(f"Argument index {index} out of range for pattern {self}")
        self.args[index] = doc

    def set_last_syntax_token(self, index: int):
        self.last_syntax_token = index

    def set_support_level(self, level: SupportLevel | str):
        try:
            self.support_level = SupportLevel(level)
        except ValueError:
            raise GrammarError(f"Unknown support level {level}") from None

    def set_see_also(self, also: typing.Iterable[str]):
        self.see_also = list(also)

    def set_example(self, file: str, tag: str | None):
        self.example_file = file
        self.example_tag = tag

    def to_syntax(self, arg_docs: list[TokenDoc], rules: RuleTable, skip: int = 0) -> str:
        """Render the pattern in an EBNF-like way. Argument documentation that
        we come across is collected in `arg_docs`.
        """
        return self._to_syntax(set(), arg_docs, rules, skip)

    def _to_syntax(
        self, stack: set[int], arg_docs: list[TokenDoc], rules: RuleTable, skip: int
    ) -> str:
        # Seeing ourselves again means a recursive pattern, which is how
        # lists are written.
        if id(self) in stack:
            return "[, ... ]"
        stack.add(id(self))
        try:
            parts: list[str] = []
            for i in range(skip, self.last_syntax_token + 1):
                token = self.tokens[i]
                # A pattern that opens with a brace describes an attribute
                # block, which has a standard rendering.
                if i == skip and token.kind == TokenKind.LITERAL and token.name == "{":
                    return "{ <attributes> }"

                arg = self.args[i]
                if arg is not None:
                    arg_doc = dataclasses.replace(arg)
                    if arg.name is None:
                        parts.append(token.name)
                        arg_doc.name = token.name
                    else:
                        parts.append(f"<{arg.name}>")
                    if token.kind == TokenKind.VARIABLE:
                        arg_doc.type_spec = f"<{token.name}>"
                    _add_arg_doc(arg_docs, arg_doc)
                    continue

                match token.kind:
                    case TokenKind.LITERAL:
                        parts.append(token.name)
                    case TokenKind.VARIABLE:
                        parts.append(f"<{token.name}>")
                    case TokenKind.REFERENCE:
                        ref_rule = _lookup(rules, token.name, self)
                        if len(ref_rule.patterns) == 1 and ref_rule.patterns[0].doc is not None:
                            ref_pattern = ref_rule.patterns[0]
                            _add_arg_doc(arg_docs, TokenDoc(ref_pattern.keyword, pattern=ref_pattern))
                            parts.append(f"<{ref_pattern.keyword}>")
                        else:
                            text = ref_rule.to_syntax(stack, arg_docs, rules, 0)
                            if text:
                                parts.append(text)
                    case TokenKind.EOF:
                        pass
                    case _:
                        typing.assert_never(token.kind)

            return " ".join(parts)
        finally:
            stack.discard(id(self))


class Rule:
    """A named set of alternative Patterns.

    `marked_optional` and `repeatable` are set by the grammar author. Whether
    the rule can actually match nothing is a property of the whole grammar,
    computed (and cached) by `optional`.
    """

    name: str
    patterns: list[Pattern]
    marked_optional: bool
    repeatable: bool
    _transitively_optional: bool | None

    def __init__(self, name: str):
        self.name = name
        self.patterns = []
        self.marked_optional = False
        self.repeatable = False
        self._transitively_optional = None

    def __repr__(self) -> str:
        return f"<Rule {self.name}>"

    def flush_cache(self):
        self._transitively_optional = None

    def add_pattern(self, pattern: Pattern):
        self.patterns.append(pattern)

    def set_optional(self):
        self.marked_optional = True

    def set_repeatable(self):
        self.repeatable = True

    def optional(self, rules: RuleTable, visiting: set[str] | None = None) -> bool:
        """True if the rule was marked optional or all of its patterns are.

        Rules can reference each other in cycles, so we track the rules that
        are currently being evaluated. A rule that we run into again while we
        are still working it out counts as not optional: any derivation of
        "nothing" that goes around the cycle has to come from somewhere else.
        """
        if self._transitively_optional is not None:
            return self._transitively_optional

        if self.marked_optional:
            self._transitively_optional = True
            return True

        if visiting is None:
            visiting = set()
        if self.name in visiting:
            return False

        visiting.add(self.name)
        try:
            result = all(p.optional(rules, visiting) for p in self.patterns)
        finally:
            visiting.discard(self.name)

        self._transitively_optional = result
        return result

    def first_terminals(self, rules: RuleTable) -> set[TokenDescriptor]:
        result: set[TokenDescriptor] = set()
        for pattern in self.patterns:
            result |= pattern.first_terminals(rules, {self.name})
        return result

    def generate_states(self, rules: RuleTable) -> list[State]:
        """The rule's entry state, followed by the states of every pattern."""
        entry = State(self)
        entry.reduce_eligible = self.optional(rules)
        states = [entry]
        for pattern in self.patterns:
            states.extend(pattern.generate_states(self, rules))
        return states

    def add_transitions_to_state(
        self,
        states: StateTable,
        rules: RuleTable,
        state_stack: list[State],
        source: State,
        loop_back: bool,
    ):
        """Add transitions from `source` to the start of every pattern."""
        for pattern in self.patterns:
            pattern.add_transitions_to_state(
                states, rules, list(state_stack), source, self, 0, loop_back
            )

    ###########################################################################
    # Documentation, always for the most recently added pattern
    ###########################################################################
    def _last_pattern(self) -> Pattern:
        if len(self.patterns) == 0:
            raise GrammarError(f"No pattern defined yet for rule {self.name}")
        return self.patterns[-1]

    def set_doc(self, keyword: str | None, doc: str | None):
        self._last_pattern().set_doc(keyword, doc)

    def set_arg(self, index: int, doc: TokenDoc):
        self._last_pattern().set_arg(index, doc)

    def set_last_syntax_token(self, index: int):
        pattern = self._last_pattern()
        if index >= len(pattern):
            raise GrammarError(f"Token index {index} too large for pattern {pattern}")
        pattern.set_last_syntax_token(index)

    def set_support_level(self, level: SupportLevel | str):
        self._last_pattern().set_support_level(level)

    def set_see_also(self, also: typing.Iterable[str]):
        self._last_pattern().set_see_also(also)

    def set_example(self, file: str, tag: str | None):
        self._last_pattern().set_example(file, tag)

    def to_syntax(
        self, stack: set[int], arg_docs: list[TokenDoc], rules: RuleTable, skip: int
    ) -> str:
        bracket = self.marked_optional or self.repeatable
        alternatives = len(self.patterns) > 1

        body = " | ".join(p._to_syntax(stack, arg_docs, rules, skip) for p in self.patterns)
        if body == "" or body.strip(" |") == "":
            return ""

        text = body
        if self.repeatable:
            text += "..."
        if alternatives:
            text = f"({text})"
        if bracket:
            text = f"[{text}]"
        return text

    def dump(self) -> str:
        flags = []
        if self.marked_optional:
            flags.append("[optional]")
        if self.repeatable:
            flags.append("[repeatable]")
        lines = [f"Rule: {self.name} {' '.join(flags)}".rstrip()]
        for pattern in self.patterns:
            lines.append(f'  Pattern: "{pattern}"')
        return "\n".join(lines)


def _lookup(rules: RuleTable, name: str, pattern: Pattern) -> Rule:
    rule = rules.get(name)
    if rule is None:
        raise GrammarError(f"Unknown rule {name} referenced in pattern '{pattern}'")
    return rule


def _add_arg_doc(arg_docs: list[TokenDoc], arg_doc: TokenDoc):
    if arg_doc.name is None:
        raise GrammarError("Argument documentation needs a name")
    for existing in arg_docs:
        if existing.name == arg_doc.name:
            return
    arg_docs.append(arg_doc)
