import pytest

from textparser.errors import GrammarError
from textparser.tokens import (
    END_OF_INPUT,
    EOF,
    SourceFileInfo,
    Token,
    TokenDescriptor,
    TokenKind,
)


def test_parse_descriptors():
    assert TokenDescriptor.parse("!rule") == TokenDescriptor(TokenKind.REFERENCE, "rule")
    assert TokenDescriptor.parse("$ID") == TokenDescriptor(TokenKind.VARIABLE, "ID")
    assert TokenDescriptor.parse("_task") == TokenDescriptor(TokenKind.LITERAL, "task")
    assert TokenDescriptor.parse(".") is END_OF_INPUT


def test_literal_names_keep_everything_after_the_prefix():
    assert TokenDescriptor.parse("_{").name == "{"
    assert TokenDescriptor.parse("__").name == "_"
    assert TokenDescriptor.parse("_!x").name == "!x"


def test_malformed_descriptors():
    for text in ["", "rule", "#x", "!", "$", "_", ".x"]:
        with pytest.raises(GrammarError):
            TokenDescriptor.parse(text)


def test_descriptor_str_is_the_grammar_text():
    for text in ["!a", "$B", "_c", "."]:
        assert str(TokenDescriptor.parse(text)) == text


def test_terminals():
    assert not TokenDescriptor.parse("!a").terminal
    assert TokenDescriptor.parse("$A").terminal
    assert TokenDescriptor.parse("_a").terminal
    assert END_OF_INPUT.terminal


def test_expected_str():
    assert TokenDescriptor.parse("_task").expected_str() == "'task'"
    assert TokenDescriptor.parse("$ID").expected_str() == ":ID"
    assert END_OF_INPUT.expected_str() == ":eof"


def test_source_file_info():
    sfi = SourceFileInfo("project.tjp", 12, 4)
    assert str(sfi) == "project.tjp:12:"
    assert SourceFileInfo("x", 1).column == 0


def test_token_eof():
    assert Token(EOF, "<END>").is_eof
    assert not Token("ID", "x").is_eof
