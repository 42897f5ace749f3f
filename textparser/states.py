"""The state machine that drives the parser.

Every position in every pattern gets a State: "we have just consumed token i
of pattern P of rule R". Every rule also gets an entry State, which is where
the parser sits before it has read anything for that rule.

A State's transitions are keyed by the terminal token that can come next. A
transition says which State the token lands in, and which States we skipped
on the way there. When the next token of a pattern is a reference to another
rule we don't stop at the reference; we dive into the referenced rule (and the
rule *it* starts with, and so on) until we reach a terminal. The states we
dove through are recorded on the transition as its "state stack", and the
parser pushes a stack frame for each of them so that it knows where to
resume once the inner rules have been reduced.

Because each (state, token) pair has exactly one transition there is never any
backtracking. If the grammar would need two, we raise an AmbiguityError when
the tables are compiled.
"""

import logging
import typing

from .errors import AmbiguityError
from .tokens import END_OF_INPUT, EOF, LITERAL, Token, TokenDescriptor, TokenKind

if typing.TYPE_CHECKING:
    from .grammar import Pattern, Rule


state_log = logging.getLogger("textparser.states")


StateKey = typing.Tuple["Rule", "Pattern | None", int]


class Transition(typing.NamedTuple):
    """Where a token takes the parser, and what it skipped on the way."""

    token: TokenDescriptor
    state: "State"
    state_stack: typing.Tuple["State", ...]
    loop_back: bool

    def __str__(self) -> str:
        text = f"{self.token} -> {self.state}"
        if self.state_stack:
            skipped = ", ".join(str(s) for s in self.state_stack)
            text += f" via [{skipped}]"
        if self.loop_back:
            text += " (loop back)"
        return text


class State:
    """A position in the grammar.

    `pattern` is None for the entry state of a rule. For pattern states,
    `index` is the position of the token that was just consumed.
    """

    rule: "Rule"
    pattern: "Pattern | None"
    index: int
    reduce_eligible: bool
    transitions: dict[TokenDescriptor, Transition]

    def __init__(self, rule: "Rule", pattern: "Pattern | None" = None, index: int = 0):
        self.rule = rule
        self.pattern = pattern
        self.index = index
        # Entry states are the only states whose reduce flag depends on the
        # rest of the grammar; Rule.generate_states fills it in.
        self.reduce_eligible = False
        self.transitions = {}

    @property
    def key(self) -> StateKey:
        return (self.rule, self.pattern, self.index)

    def add_transitions(self, states: dict[StateKey, "State"], rules: typing.Mapping[str, "Rule"]):
        """Compute every transition that leaves this state."""
        if self.pattern is not None:
            # Carry on with the rest of our own pattern.
            self.pattern.add_transitions_to_state(
                states, rules, [], self, self.rule, self.index + 1, False
            )
        else:
            # An entry state can go to the start of any pattern of its rule.
            self.rule.add_transitions_to_state(states, rules, [], self, False)

    def add_transition(
        self,
        token: TokenDescriptor,
        next_state: "State",
        state_stack: typing.Sequence["State"],
        loop_back: bool,
    ):
        if token.kind == TokenKind.EOF:
            token = END_OF_INPUT

        transition = Transition(token, next_state, tuple(state_stack), loop_back)
        existing = self.transitions.get(token)
        if existing is not None:
            raise AmbiguityError(self, existing, transition)
        self.transitions[token] = transition

    def transition(self, token: Token, keyword_kinds: typing.Container[str]) -> Transition | None:
        """Find the transition for an input token.

        Literals win over variables. For token kinds listed in `keyword_kinds`
        we first check whether the token's text is a literal of the grammar,
        so that a scanner can deliver keywords as plain identifiers.
        """
        if token.kind == EOF:
            return self.transitions.get(END_OF_INPUT)
        if token.kind == LITERAL:
            return self.transitions.get(TokenDescriptor(TokenKind.LITERAL, str(token.value)))

        if token.kind in keyword_kinds and isinstance(token.value, str):
            result = self.transitions.get(TokenDescriptor(TokenKind.LITERAL, token.value))
            if result is not None:
                return result
        return self.transitions.get(TokenDescriptor(TokenKind.VARIABLE, token.kind))

    def expected_tokens(self) -> list[str]:
        """Human readable list of the tokens that would have been accepted."""
        return sorted(t.expected_str() for t in self.transitions)

    def __str__(self) -> str:
        if self.pattern is None:
            return f"{self.rule.name}[entry]"
        pattern_index = self.rule.patterns.index(self.pattern)
        return f"{self.rule.name}[{pattern_index}:{self.index}]"

    def __repr__(self) -> str:
        return f"<State {self}>"

    def dump(self) -> str:
        lines = [f"State: {self} ({'reduce' if self.reduce_eligible else 'no reduce'})"]
        if self.pattern is not None:
            tokens = [str(t) for t in self.pattern.tokens]
            tokens.insert(self.index + 1, "*")
            lines.append("  Pattern: " + " ".join(tokens))
        for transition in self.transitions.values():
            lines.append(f"  {transition}")
        return "\n".join(lines)


def compile_states(rules: typing.Mapping[str, "Rule"]) -> dict[StateKey, State]:
    """Build the complete state table for a set of rules.

    All states have to exist before we wire any transitions, since a
    transition can point into any rule of the grammar.
    """
    states: dict[StateKey, State] = {}
    for rule in rules.values():
        for state in rule.generate_states(rules):
            states[state.key] = state

    for state in states.values():
        state.add_transitions(states, rules)

    if state_log.isEnabledFor(logging.DEBUG):
        transitions = sum(len(s.transitions) for s in states.values())
        state_log.debug(
            "Compiled %d rules into %d states with %d transitions",
            len(rules),
            len(states),
            transitions,
        )
        for state in states.values():
            state_log.debug("%s", state.dump())

    return states
