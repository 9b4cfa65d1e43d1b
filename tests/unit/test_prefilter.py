"""Unit tests for the static pre-filter."""

from __future__ import annotations

import pytest

from cincout.config import CinCoutConfig
from cincout.errors import InputRejectedError
from cincout.security.prefilter import DENYLIST, StaticPrefilter, find_denylisted_call

HELLO = '#include <stdio.h>\nint main(void) { printf("hi\\n"); return 0; }\n'


@pytest.fixture
def prefilter(cincout_config: CinCoutConfig) -> StaticPrefilter:
    return StaticPrefilter(cincout_config)


# ---------------------------------------------------------------------------
# Accepted source
# ---------------------------------------------------------------------------


def test_plain_program_accepted(prefilter: StaticPrefilter) -> None:
    verdict = prefilter.inspect(HELLO, "c")
    assert verdict.accepted
    assert verdict.reason is None


def test_denylisted_word_without_paren_accepted(prefilter: StaticPrefilter) -> None:
    code = "int main(void) { int system = 3; return system; }"
    assert prefilter.inspect(code, "c").accepted


def test_denylisted_word_with_space_before_paren_accepted(prefilter: StaticPrefilter) -> None:
    # Known under-rejection of a lexical filter
    assert prefilter.inspect('int main(void) { system ("ls"); }', "c").accepted


def test_exactly_at_ceilings_accepted(cincout_config: CinCoutConfig) -> None:
    prefilter = StaticPrefilter(cincout_config)
    at_lines = "\n".join(["int x;"] * cincout_config.max_code_lines)
    assert prefilter.inspect(at_lines, "c").accepted
    at_chars = "x" * cincout_config.max_code_chars
    assert prefilter.inspect(at_chars, "cpp").accepted


# ---------------------------------------------------------------------------
# Rejected source
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("code", ["", "   ", "\n\t\n"])
def test_empty_rejected(prefilter: StaticPrefilter, code: str) -> None:
    verdict = prefilter.inspect(code, "c")
    assert not verdict.accepted
    assert verdict.reason == "No code provided"


def test_too_long_rejected(prefilter: StaticPrefilter) -> None:
    verdict = prefilter.inspect("x" * 50_001, "c")
    assert not verdict.accepted
    assert verdict.reason == "Code exceeds maximum length of 50,000 characters"


def test_too_many_lines_rejected(prefilter: StaticPrefilter) -> None:
    verdict = prefilter.inspect("\n".join(["int x;"] * 1_001), "c")
    assert not verdict.accepted
    assert verdict.reason == "Code exceeds maximum of 1,000 lines"


@pytest.mark.parametrize(
    "call",
    ["system(", "fork(", "socket(", "execve(", "ptrace(", "popen(", "dlopen(", "__asm__(", "gets(", "mmap(", "`("],
)
def test_denylisted_call_rejected(prefilter: StaticPrefilter, call: str) -> None:
    code = f'int main(void) {{ {call}"x"); return 0; }}'
    verdict = prefilter.inspect(code, "c")
    assert not verdict.accepted
    assert verdict.reason is not None
    assert verdict.reason.startswith("Code contains restricted function call:")


def test_identifier_containing_denylisted_name_over_rejects(prefilter: StaticPrefilter) -> None:
    # "fopen(" contains "open(": a documented false positive
    verdict = prefilter.inspect('int main(void) { fopen("a", "r"); }', "c")
    assert not verdict.accepted


def test_unsupported_language_rejected(prefilter: StaticPrefilter) -> None:
    verdict = prefilter.inspect(HELLO, "rust")
    assert not verdict.accepted
    assert "Unsupported language" in (verdict.reason or "")


def test_validate_raises_with_reason(prefilter: StaticPrefilter) -> None:
    with pytest.raises(InputRejectedError) as info:
        prefilter.validate('int main(void) { system("ls"); }', "c")
    assert info.value.reason == "Code contains restricted function call: system()"


def test_validate_passes_clean_code(prefilter: StaticPrefilter) -> None:
    prefilter.validate(HELLO, "c")


def test_ceilings_follow_config(cincout_config: CinCoutConfig) -> None:
    cincout_config.max_code_chars = 10
    prefilter = StaticPrefilter(cincout_config)
    assert not prefilter.inspect("int main(){}", "c").accepted


# ---------------------------------------------------------------------------
# Denylist table
# ---------------------------------------------------------------------------


def test_denylist_covers_each_category() -> None:
    for name in ("fork", "connect", "unlink", "kill", "execvp", "asm", "alloca"):
        assert name in DENYLIST


def test_find_denylisted_call_is_deterministic() -> None:
    assert find_denylisted_call("fork(); system();") == "fork"
    assert find_denylisted_call("int main(void) { return 0; }") is None


def test_backtick_substitution_reported_by_name(prefilter: StaticPrefilter) -> None:
    verdict = prefilter.inspect("const char *cmd = \"`(id)`\";\nint main(void) { return 0; }", "c")
    assert not verdict.accepted
    assert verdict.reason == "Code contains restricted function call: `()"
