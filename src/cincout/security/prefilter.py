"""Static pre-filter — lexical screening of C/C++ source before any process is spawned.

This is a best-effort filter, not a parser. It rejects source that contains a
denylisted name immediately followed by "(", which both over-rejects (a helper
named ``send`` or a call to ``fopen`` trips on ``send(`` / ``open(``) and
under-rejects (calls hidden behind macros, token pasting, function pointers or
whitespace before the parenthesis slip through). It is not a security boundary;
the resource envelope of the execution supervisor is.
"""

from __future__ import annotations

from cincout.config import CinCoutConfig
from cincout.errors import InputRejectedError
from cincout.models import FilterVerdict, Language
from cincout.utils.logging import get_logger

logger = get_logger(__name__)

# Process manipulation
_PROCESS_CALLS: frozenset[str] = frozenset(
    {
        "fork",
        "vfork",
        "clone",
        "exec",
        "execve",
        "system",
        "popen",
        "spawn",
        "posix_spawn",
        "daemon",
        "setpgrp",
        "setsid",
    }
)

# Raw networking
_NETWORK_CALLS: frozenset[str] = frozenset(
    {
        "socket",
        "connect",
        "bind",
        "listen",
        "accept",
        "recv",
        "send",
        "sendto",
        "recvfrom",
        "gethostbyname",
        "getaddrinfo",
        "inet_addr",
        "inet_ntoa",
        "socketpair",
        "setsockopt",
        "getsockopt",
        "shutdown",
    }
)

# Raw filesystem syscalls
_FILESYSTEM_CALLS: frozenset[str] = frozenset(
    {
        "unlink",
        "remove",
        "rename",
        "symlink",
        "link",
        "mkdir",
        "rmdir",
        "chmod",
        "chown",
        "truncate",
        "open",
        "creat",
        "mknod",
        "mkfifo",
        "mount",
        "umount",
        "chroot",
        "pivot_root",
        "sync",
        "fsync",
    }
)

# Signals and privilege escalation
_SIGNAL_PRIVILEGE_CALLS: frozenset[str] = frozenset(
    {
        "ptrace",
        "kill",
        "raise",
        "abort",
        "signal",
        "sigaction",
        "sigsuspend",
        "sigwait",
        "setuid",
        "setgid",
        "setgroups",
        "capabilities",
        "reboot",
        "sysctl",
        "nice",
        "setpriority",
        "setrlimit",
    }
)

# Shell invocation and dynamic loading
_SHELL_CALLS: frozenset[str] = frozenset(
    {
        "execl",
        "execlp",
        "execle",
        "execv",
        "execvp",
        "execvpe",
        "shell",
        "`",
        "dlopen",
        "dlsym",
        "dlclose",
    }
)

# Inline assembly and raw memory / IPC manipulation
_ASSEMBLY_MEMORY_CALLS: frozenset[str] = frozenset(
    {
        "asm",
        "__asm",
        "__asm__",
        "inline",
        "__builtin",
        "mmap",
        "mprotect",
        "shmat",
        "shmctl",
        "shmget",
        "semget",
        "semctl",
        "semop",
        "msgget",
        "msgsnd",
        "msgrcv",
        "msgctl",
    }
)

# Unsafe libc functions
_UNSAFE_LIBC_CALLS: frozenset[str] = frozenset(
    {
        "gets",
        "getwd",
        "mktemp",
        "tmpnam",
        "setenv",
        "putenv",
        "alloca",
        "longjmp",
        "setjmp",
        "atexit",
        "_exit",
        "quick_exit",
        "at_quick_exit",
    }
)

DENYLIST: frozenset[str] = (
    _PROCESS_CALLS
    | _NETWORK_CALLS
    | _FILESYSTEM_CALLS
    | _SIGNAL_PRIVILEGE_CALLS
    | _SHELL_CALLS
    | _ASSEMBLY_MEMORY_CALLS
    | _UNSAFE_LIBC_CALLS
)

# Sorted once so the reported name is deterministic
_DENYLIST_PATTERNS: tuple[tuple[str, str], ...] = tuple((name, f"{name}(") for name in sorted(DENYLIST))


def find_denylisted_call(code: str) -> str | None:
    """Return the first denylisted name that appears immediately followed by "(".

    Args:
        code: C/C++ source text.

    Returns:
        The matching denylisted name, or None when the text is clean.
    """
    for name, pattern in _DENYLIST_PATTERNS:
        if pattern in code:
            return name
    return None


class StaticPrefilter:
    """Lexical filter applied to every job before a workspace exists."""

    def __init__(self, config: CinCoutConfig) -> None:
        """Initialize the pre-filter.

        Args:
            config: Service configuration holding the length and line ceilings.
        """
        self._max_chars = config.max_code_chars
        self._max_lines = config.max_code_lines

    def inspect(self, code: str, lang: Language | str) -> FilterVerdict:
        """Screen source text without raising.

        Args:
            code: Source text submitted by the client.
            lang: Requested language ("c" or "cpp").

        Returns:
            FilterVerdict accepting the text or carrying the rejection reason.
        """
        try:
            Language(lang)
        except ValueError:
            return FilterVerdict.reject(f"Unsupported language: {lang!r}")

        if not code or not code.strip():
            return FilterVerdict.reject("No code provided")

        if len(code) > self._max_chars:
            return FilterVerdict.reject(f"Code exceeds maximum length of {self._max_chars:,} characters")

        if len(code.split("\n")) > self._max_lines:
            return FilterVerdict.reject(f"Code exceeds maximum of {self._max_lines:,} lines")

        name = find_denylisted_call(code)
        if name is not None:
            return FilterVerdict.reject(f"Code contains restricted function call: {name}()")

        return FilterVerdict.accept()

    def validate(self, code: str, lang: Language | str, context: str = "") -> None:
        """Screen source text, raising on rejection.

        Args:
            code: Source text submitted by the client.
            lang: Requested language.
            context: Optional identifier for logging (never the code itself).

        Raises:
            InputRejectedError: If the text is empty, oversized or denylisted.
        """
        verdict = self.inspect(code, lang)
        if not verdict.accepted:
            logger.warning("input_rejected", context=context, reason=verdict.reason)
            raise InputRejectedError(verdict.reason or "Input rejected")
