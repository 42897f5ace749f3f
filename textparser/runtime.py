"""The parser itself: the rule declaration API and the stack machine that
walks the compiled states.

A grammar is written by subclassing TextParser and declaring rules, usually
in `rule_<name>` methods that `init_rules` picks up:

    class ListParser(TextParser):
        def __init__(self):
            super().__init__()
            self.init_rules()

        def rule_list(self):
            self.pattern(["_[", "!items", "_]"], lambda v: v[1])

        def rule_items(self):
            self.optional()
            self.repeatable()
            self.pattern(["$INTEGER"], lambda v: v[0])

The driver keeps a stack of frames, one per rule invocation that is still
open. Each frame collects the values of its pattern, one slot per token. When
the parser can't go any further in the current pattern and the pattern is
allowed to end here, the frame is popped, the semantic action is called with
the collected values, and the result goes into the slot of the parent pattern
that referenced the rule.
"""

import contextlib
import inspect
import logging
import typing

from .errors import GrammarError
from .grammar import Pattern, Rule, SemanticAction, SupportLevel, TokenDoc
from .messages import MessageHandler
from .states import State, StateKey, Transition, compile_states
from .tokens import SourceFileInfo, Token, TokenKind


action_log = logging.getLogger("textparser.action")


class TokenSource(typing.Protocol):
    """What the parser needs from a scanner."""

    def next_token(self) -> Token:
        """The next token of the input. At the end of the input this keeps
        returning an EOF token."""
        ...

    def return_token(self, token: Token):
        """Push a token back, to be returned by the next `next_token`. Only
        one token may be pushed back at a time."""
        ...

    def source_file_info(self) -> SourceFileInfo | None: ...

    def error(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None): ...

    def warning(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None): ...


class ResultList(list):
    """The values produced by a repeatable rule.

    A repeatable rule that references another repeatable rule would produce
    lists of lists; appending a ResultList to a ResultList splices it in
    instead, so the caller always gets a flat list.
    """

    def append(self, value):
        if isinstance(value, ResultList):
            self.extend(value)
        else:
            super().append(value)


class StackFrame:
    """One open rule invocation.

    `state` is the state the frame will resume from once a nested rule has
    been reduced: the position of the reference that is currently being
    expanded.
    """

    state: State
    function: SemanticAction | None
    values: list[typing.Any]
    positions: list[SourceFileInfo | None]
    first_position: SourceFileInfo | None

    def __init__(self, state: State, position: SourceFileInfo | None = None):
        self.state = state
        self.function = state.pattern.function if state.pattern is not None else None
        self.values = []
        self.positions = []
        self.first_position = position

    def insert(
        self,
        index: int,
        value: typing.Any,
        position: SourceFileInfo | None,
        multi_value: bool,
    ):
        while len(self.values) <= index:
            self.values.append(None)
            self.positions.append(None)

        if multi_value:
            if not isinstance(self.values[index], ResultList):
                self.values[index] = ResultList()
            self.values[index].append(value)
        else:
            self.values[index] = value

        self.positions[index] = position
        if self.first_position is None:
            self.first_position = position

    def __str__(self) -> str:
        return f"{self.state} {self.values!r}"


class TextParser:
    """Base class for parsers.

    `keyword_kinds` names the scanner token kinds that may also be read as
    literals. A scanner usually can't tell the keyword `task` from an
    identifier; with the default `("ID",)` an `ID` token whose text is a
    literal of the grammar matches the literal first.
    """

    rules: dict[str, Rule]
    variables: list[str] | None
    message_handler: MessageHandler
    keyword_kinds: frozenset[str]
    scanner: TokenSource | None

    # The values and positions of the pattern whose action is running.
    val: list[typing.Any] | None
    val_info: list[SourceFileInfo | None] | None

    def __init__(
        self,
        message_handler: MessageHandler | None = None,
        keyword_kinds: typing.Iterable[str] = ("ID",),
    ):
        self.rules = {}
        self.variables = None
        self.message_handler = message_handler if message_handler is not None else MessageHandler()
        self.keyword_kinds = frozenset(keyword_kinds)
        self.scanner = None

        self._cr: Rule | None = None
        self._states: dict[StateKey, State] = {}
        self._dirty = True

        self._stack: list[StackFrame] | None = None
        self._reducing: StackFrame | None = None
        self._blocked_variables: frozenset[str] = frozenset()
        self.val = None
        self.val_info = None

    ###########################################################################
    # Declaring the grammar
    ###########################################################################
    def init_rules(self):
        """Declare a rule for every `rule_<name>` method of this class."""
        for name, method in inspect.getmembers(self, inspect.ismethod):
            if name.startswith("rule_"):
                with self.rule(name[len("rule_") :]):
                    method()

    def new_rule(self, name: str) -> Rule:
        """Add a new rule and make it the current rule. The other declaration
        methods all work on the current rule."""
        if name in self.rules:
            raise GrammarError(f"Rule {name} already exists")
        rule = Rule(name)
        self.rules[name] = rule
        self._cr = rule
        self._dirty = True
        return rule

    @contextlib.contextmanager
    def rule(self, name: str) -> typing.Iterator[Rule]:
        """Like `new_rule`, but restores the previous current rule on exit."""
        saved = self._cr
        try:
            yield self.new_rule(name)
        finally:
            self._cr = saved

    def _current_rule(self) -> Rule:
        if self._cr is None:
            raise GrammarError("No rule has been declared yet")
        return self._cr

    def pattern(
        self,
        tokens: typing.Iterable[str],
        function: SemanticAction | None = None,
    ) -> Pattern:
        pattern = Pattern(tokens, function)
        self._current_rule().add_pattern(pattern)
        self._dirty = True
        return pattern

    def optional(self):
        self._current_rule().set_optional()
        self._dirty = True

    def repeatable(self):
        self._current_rule().set_repeatable()
        self._dirty = True

    def doc(self, keyword: str | None, text: str | None):
        self._current_rule().set_doc(keyword, text)

    def descr(self, text: str):
        """Describe the most recent pattern without changing its keyword."""
        rule = self._current_rule()
        if len(rule.patterns) == 0:
            raise GrammarError(f"No pattern defined yet for rule {rule.name}")
        if rule.patterns[-1].keyword is None:
            raise GrammarError(f"No documentation keyword defined for the last pattern of {rule.name}")
        rule.set_doc(rule.patterns[-1].keyword, text)

    def arg(self, index: int, name: str | None, text: str | None):
        self._current_rule().set_arg(index, TokenDoc(name, text))

    def last_syntax_token(self, index: int):
        self._current_rule().set_last_syntax_token(index)

    def support_level(self, level: SupportLevel | str):
        self._current_rule().set_support_level(level)

    def also(self, keywords: str | typing.Iterable[str]):
        if isinstance(keywords, str):
            keywords = [keywords]
        self._current_rule().set_see_also(keywords)

    def example(self, file: str, tag: str | None = None):
        self._current_rule().set_example(file, tag)

    ###########################################################################
    # Compiling the grammar
    ###########################################################################
    def update_parser_tables(self):
        """Rebuild the state tables from the rules.

        This may be called from inside a semantic action, e.g. when the input
        declares new keywords. The stack of the parse that is in flight refers
        to states by identity, so we save it by state key and look the states
        up again in the new table.
        """
        saved = None
        if self._stack is not None:
            saved = [frame.state.key for frame in self._stack]

        for rule in self.rules.values():
            rule.flush_cache()
        for rule in self.rules.values():
            self._check_rule(rule)

        self._states = compile_states(self.rules)
        self._dirty = False

        if saved is not None and self._stack is not None:
            for frame, key in zip(self._stack, saved):
                state = self._states.get(key)
                if state is None:
                    raise GrammarError(f"Could not restore parser state {frame.state}")
                frame.state = state

    def _check_rule(self, rule: Rule):
        if len(rule.patterns) == 0:
            raise GrammarError(f"Rule {rule.name} must have at least one pattern")

        for pattern in rule.patterns:
            for token in pattern:
                match token.kind:
                    case TokenKind.REFERENCE:
                        if token.name not in self.rules:
                            raise GrammarError(
                                f"Unknown rule {token.name} referenced in rule {rule.name}"
                            )
                    case TokenKind.VARIABLE:
                        if self.variables and token.name not in self.variables:
                            raise GrammarError(
                                f"Unknown variable {token.name} referenced in rule {rule.name}"
                            )
                    case TokenKind.LITERAL | TokenKind.EOF:
                        pass
                    case _:
                        typing.assert_never(token.kind)

    def limit_token_set(self, kinds: typing.Iterable[str]):
        """Only accept the listed variable classes until the next reset."""
        self._blocked_variables = frozenset(self.variables or ()) - frozenset(kinds)

    def reset(self):
        self._stack = None
        self._reducing = None
        self._blocked_variables = frozenset()
        self.scanner = None
        self.val = None
        self.val_info = None

    ###########################################################################
    # Parsing
    ###########################################################################
    def parse(self, rule_name: str, scanner: TokenSource) -> typing.Any:
        """Parse the tokens from `scanner` as an instance of `rule_name` and
        return the value produced by its semantic action.

        Errors in the input are recorded with the message handler and raised
        as ParseError.
        """
        rule = self.rules.get(rule_name)
        if rule is None:
            raise GrammarError(f"Unknown start rule {rule_name}")
        if self._dirty:
            self.update_parser_tables()

        self.scanner = scanner
        state = self._states.get((rule, None, 0))
        if state is None:
            raise GrammarError(f"No start state for rule {rule_name}")

        self._stack = [StackFrame(state)]
        self._parse_fsm(state)

        root = self._stack[0]
        if len(root.values) == 0:
            return ResultList() if rule.repeatable else None
        return root.values[0]

    def _parse_fsm(self, state: State):
        al = action_log
        while True:
            token = None
            if state.transitions:
                token = self._next_token()
                transition = state.transition(token, self.keyword_kinds)

                if transition is not None and transition.loop_back:
                    # The pattern is complete and the token starts the rule
                    # over again. Reduce what we have, then take the same
                    # transition into a fresh frame.
                    if al.isEnabledFor(logging.INFO):
                        al.info("loop back in %s on %r", state, token.value)
                    self._finish_pattern(token)
                    state = self._states.get(state.key, state)
                    token = self._next_token()
                    transition = state.transition(token, self.keyword_kinds)

                if transition is not None:
                    self._shift(state, transition, token)
                    state = transition.state
                    continue

            if not state.reduce_eligible:
                if token is None:
                    token = self._next_token()
                self.error(
                    "no_reduce",
                    f"Unexpected token '{token.value}' found. "
                    f"Expecting one of {', '.join(state.expected_tokens())}",
                    token.position,
                )

            if self._finish_pattern(token):
                break

            if len(self._stack) == 1:
                # The start rule is complete, only the end of the input may
                # follow.
                if self._finish_pattern(None):
                    break

            state = self._stack[-1].state

    def _shift(self, source: State, transition: Transition, token: Token):
        stack = self._stack
        assert stack is not None

        for i, skipped in enumerate(transition.state_stack):
            if i == 0 and source.pattern is not None and not transition.loop_back:
                # The first skipped state is a later position of the pattern
                # we are in; that frame just moves forward.
                stack[-1].state = skipped
            else:
                self._push_frame(skipped, token)

        target = transition.state
        if transition.loop_back or transition.state_stack or source.pattern is None:
            self._push_frame(target, token)
        else:
            stack[-1].state = target

        stack[-1].insert(target.index, token.value, token.position, False)

        al = action_log
        if al.isEnabledFor(logging.INFO):
            al.info(
                "{stack: <40} {input: <15} shift {target}".format(
                    stack=repr([str(f.state) for f in stack[-4:]]),
                    input=repr(token.value),
                    target=target,
                )
            )

    def _push_frame(self, state: State, token: Token):
        pattern = state.pattern
        assert pattern is not None

        keyword = pattern.keyword or token.value
        match pattern.support_level:
            case SupportLevel.DEPRECATED:
                self.warning(
                    "deprecated_keyword",
                    f"The keyword '{keyword}' has been deprecated! "
                    "See the reference manual for details.",
                    token.position,
                )
            case SupportLevel.REMOVED:
                self.error(
                    "removed_keyword",
                    f"The keyword '{keyword}' is no longer supported! "
                    "See the reference manual for details.",
                    token.position,
                )
            case SupportLevel.EXPERIMENTAL | SupportLevel.BETA | SupportLevel.SUPPORTED:
                pass
            case _:
                typing.assert_never(pattern.support_level)

        assert self._stack is not None
        self._stack.append(StackFrame(state, token.position))

    def _finish_pattern(self, token: Token | None) -> bool:
        """Reduce the frame on top of the stack. Returns True once the root
        frame has been finished at the end of the input.
        """
        assert self.scanner is not None
        assert self._stack is not None

        if token is not None:
            self.scanner.return_token(token)

        frame = self._stack.pop()
        if len(self._stack) == 0:
            token = self._next_token()
            if token.is_eof:
                self._stack.append(frame)
                return True
            self.error(
                "unexpctd_token",
                f"Unexpected token '{token.value}' found. Expecting end of input.",
                token.position,
            )

        state = frame.state
        pattern = state.pattern
        assert pattern is not None

        # Pad out the slots of tokens we never saw. References to repeatable
        # rules always produce a list, even if it's empty.
        values = frame.values + [None] * (len(pattern) - len(frame.values))
        positions = frame.positions + [None] * (len(pattern) - len(frame.positions))
        for i, token_desc in enumerate(pattern):
            if (
                values[i] is None
                and token_desc.kind == TokenKind.REFERENCE
                and self.rules[token_desc.name].repeatable
            ):
                values[i] = ResultList()

        result = None
        if frame.function is not None:
            self.val = values
            self.val_info = positions
            self._reducing = frame
            try:
                result = frame.function(values)
            finally:
                self._reducing = None

        parent = self._stack[-1]
        parent.insert(parent.state.index, result, frame.first_position, state.rule.repeatable)

        al = action_log
        if al.isEnabledFor(logging.INFO):
            al.info(
                "{stack: <40} reduce {rule} -> {result!r}".format(
                    stack=repr([str(f.state) for f in self._stack[-4:]]),
                    rule=state.rule.name,
                    result=result,
                )
            )
        return False

    def _next_token(self) -> Token:
        assert self.scanner is not None
        token = self.scanner.next_token()
        if token.kind in self._blocked_variables:
            self.error(
                "unsupported_token",
                f"The token {token.value} is not supported in this context.",
                token.position,
            )
        return token

    ###########################################################################
    # Diagnostics
    ###########################################################################
    def source_file_info(self) -> SourceFileInfo | None:
        """Where the construct being parsed started: the start of the current
        pattern while its action runs, otherwise the scanner position."""
        if self._reducing is not None:
            return self._reducing.first_position
        if self._stack is not None and len(self._stack) > 1:
            return self._stack[-1].first_position
        if self.scanner is not None:
            return self.scanner.source_file_info()
        return None

    def error(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None):
        """Report an error in the input. This raises ParseError."""
        if sfi is None:
            sfi = self.source_file_info()
        if self.scanner is not None:
            self.scanner.error(id, text, sfi, data)
        else:
            self.message_handler.error(id, text, sfi, data=data)

    def warning(self, id: str, text: str, sfi: SourceFileInfo | None = None, data=None):
        if sfi is None:
            sfi = self.source_file_info()
        if self.scanner is not None:
            self.scanner.warning(id, text, sfi, data)
        else:
            self.message_handler.warning(id, text, sfi, data=data)

    def syntax(self, rule_name: str, skip: int = 0) -> typing.Tuple[list[str], list[TokenDoc]]:
        """Render the syntax of every pattern of a rule for the manual,
        along with the documentation of the arguments used."""
        rule = self.rules.get(rule_name)
        if rule is None:
            raise GrammarError(f"Unknown rule {rule_name}")
        arg_docs: list[TokenDoc] = []
        return [p.to_syntax(arg_docs, self.rules, skip) for p in rule.patterns], arg_docs
