"""Text macros.

A macro is a named piece of text. A call like `${greet Hello World}` is
replaced by the macro's text, where `${1}`, `${2}`, ... are replaced by the
arguments of the call and `${0}` by the name of the macro. A call written as
`${?greet}` expands to nothing if there is no such macro, instead of being an
error. To get a literal `${` into the expanded text, write `$${`.

The table is a plain object owned by whoever runs the parse; there is no
global macro table.
"""

import dataclasses
import logging
import re
import typing

from .tokens import SourceFileInfo


scanner_log = logging.getLogger("textparser.scanner")


_PLACEHOLDER = re.compile(r"(?<!\$)\$\{(\d+)\}")


@dataclasses.dataclass(frozen=True)
class Macro:
    name: str
    value: str
    source_file_info: SourceFileInfo | None = None


class MacroTable:
    _macros: dict[str, Macro]

    def __init__(self):
        self._macros = {}

    def add(self, macro: Macro):
        """Add a macro. A macro with the same name is replaced."""
        self._macros[macro.name] = macro

    def clear(self):
        self._macros.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._macros

    def __getitem__(self, name: str) -> Macro:
        return self._macros[name]

    def __len__(self) -> int:
        return len(self._macros)

    def get(self, name: str) -> Macro | None:
        return self._macros.get(name)

    def resolve(
        self,
        args: typing.Sequence[str],
        sfi: SourceFileInfo | None = None,
    ) -> typing.Tuple[Macro | None, str] | None:
        """Expand a macro call. `args[0]` is the name as written in the call,
        the rest are the arguments.

        Returns `(macro, text)`, or None if the macro is not defined. A name
        starting with `?` may be undefined; then we return `(None, "")`.
        """
        name = args[0]
        if name.startswith("?"):
            name = name[1:]
            if name not in self._macros:
                return (None, "")
        macro = self._macros.get(name)
        if macro is None:
            return None

        values = [name] + list(args[1:])

        def substitute(match: re.Match) -> str:
            index = int(match.group(1))
            if index < len(values):
                return values[index]
            return match.group(0)

        # All placeholders are replaced in one pass, so argument text that
        # happens to look like a placeholder is left alone.
        resolved = _PLACEHOLDER.sub(substitute, macro.value)
        resolved = resolved.replace("$${", "${")

        if scanner_log.isEnabledFor(logging.DEBUG):
            scanner_log.debug("%s expanded macro %s to %r", sfi or "", name, resolved)
        return (macro, resolved)
