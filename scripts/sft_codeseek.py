#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp", "pydantic>=2.5.0"]
# ///
"""Code search and safe search/replace on top of ugrep. Dry run first, backups always.

Discovery and raw search run through the ugrep binary. Replacements are applied
in Python so every change is counted, previewed, and backed up before a write.

Workflow:
    1. search   - basic / boolean / fuzzy / archive / structure search
    2. dry      - search-and-replace, bulk-replace or code-refactor (dry run is the default)
    3. apply    - same command with --apply (one backup per touched file)

Usage:
    sft_codeseek.py basic-search <pattern> [path] [-s] [-t py,js] [-C N] [-m N]
    sft_codeseek.py boolean-search <query> [path] [-t TYPES]
    sft_codeseek.py fuzzy-search <pattern> [path] [-e MAX_ERRORS]
    sft_codeseek.py archive-search <pattern> [path] [-a zip,tar]
    sft_codeseek.py interactive-search [pattern] [path]
    sft_codeseek.py code-structure-search <kind> <language> [path] [-n NAME]
    sft_codeseek.py list-file-types
    sft_codeseek.py get-search-stats <pattern> [path]
    sft_codeseek.py search-and-replace <pattern> <replacement> [path] [-a] [-B]
    sft_codeseek.py bulk-replace [path] [-o ops.json | < ops.json] [-a]
    sft_codeseek.py code-refactor <kind> <language> <old> <new> [path] [-a]
    sft_codeseek.py check-ugrep-installation
    sft_codeseek.py mcp-stdio
"""

import json
import os
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, NamedTuple, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = [
    "basic_search",
    "boolean_search",
    "fuzzy_search",
    "archive_search",
    "interactive_search",
    "code_structure_search",
    "list_file_types",
    "get_search_stats",
    "search_and_replace",
    "bulk_replace",
    "code_refactor",
    "check_ugrep_installation",
]

CONFIG = {
    "tool": "ugrep",
    "timeout_s": 30,
    "max_results": 100,
    "max_files": 50,
    "bulk_max_files": 100,
    "refactor_max_files": 100,
    "structure_context": 2,
    "preview_width": 160,
}

BACKUP_MARKER = ".backup-"

INSTALL_HELP = """Install ugrep with one of:

  Ubuntu/Debian:  sudo apt-get install ugrep
  macOS:          brew install ugrep
  Windows:        choco install ugrep
  From source:    https://github.com/Genivia/ugrep

Point SFB_UGREP_PATH at the binary if it is not on PATH."""


# =============================================================================
# PATH HELPERS
# =============================================================================


def _normalize_path(path_str: str) -> Path:
    """Normalize a path string to a resolved Path object."""
    if not path_str:
        return Path.cwd()
    return Path(path_str).expanduser().resolve()


def _get_tool_path(tool_name: str, env_var: str) -> str | None:
    """Get path to external tool, checking env override first."""
    override = os.environ.get(env_var)
    if override and os.path.exists(override):
        return override
    return shutil.which(tool_name)


@dataclass(frozen=True)
class EngineConfig:
    """Process-wide settings injected into CodeSeeker. Never mutated after load."""

    tool: str = CONFIG["tool"]
    timeout_s: float = float(CONFIG["timeout_s"])
    default_root: Path = field(default_factory=Path.cwd)


def _load_engine_config() -> EngineConfig:
    """Resolve EngineConfig from CONFIG defaults and SFB_* env overrides."""
    tool = _get_tool_path(CONFIG["tool"], "SFB_UGREP_PATH") or CONFIG["tool"]
    timeout_s = float(CONFIG["timeout_s"])
    timeout_raw = os.environ.get("SFB_CODESEEK_TIMEOUT", "")
    if timeout_raw:
        try:
            timeout_s = float(timeout_raw)
        except ValueError:
            _log("WARN", "config", f"ignoring SFB_CODESEEK_TIMEOUT={timeout_raw!r}")
        if timeout_s <= 0:
            timeout_s = float(CONFIG["timeout_s"])
    root = _normalize_path(os.environ.get("SFB_CODESEEK_ROOT", ""))
    return EngineConfig(tool=tool, timeout_s=timeout_s, default_root=root)


# =============================================================================
# ERRORS
# =============================================================================


class CodeSeekError(Exception):
    """Base for every failure the router turns into an error-flagged response."""


class InvalidPattern(CodeSeekError):
    """Search pattern does not compile as a regular expression."""


PatternCompileError = InvalidPattern


class UnsupportedStructureKind(CodeSeekError):
    pass


class UnsupportedLanguageForStructure(CodeSeekError):
    pass


class ToolUnavailable(CodeSeekError):
    """ugrep is missing, cannot be spawned, or exited with an error."""


class ToolTimeout(ToolUnavailable):
    """ugrep was killed after exceeding the configured timeout."""


class FileAccessError(CodeSeekError):
    pass


class BackupWriteError(CodeSeekError):
    pass


class WriteFailure(CodeSeekError):
    pass


class RequestMalformed(CodeSeekError):
    pass


class InvalidToolOptions(RequestMalformed):
    """Option set that would produce an invalid ugrep invocation."""


def _describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class Operation:
    """One regex replacement. Replacement text uses $1, $&, $`, $', $$, ${name} and $<name> tokens."""

    search_pattern: str
    replacement: str
    case_sensitive: bool = False
    description: str | None = None

    @property
    def label(self) -> str:
        return self.description or f"Pattern: {self.search_pattern}"


@dataclass(frozen=True)
class ExecutionScope:
    root_path: Path
    file_types: tuple[str, ...] = ()
    max_files: int = CONFIG["max_files"]
    dry_run: bool = True
    create_backup: bool = True


@dataclass(frozen=True)
class ReplaceResult:
    file_path: Path
    original_content: str
    modified_content: str
    change_count: int


@dataclass(frozen=True)
class Backup:
    source_path: Path
    backup_path: Path
    timestamp: datetime


@dataclass
class FileSummary:
    """Per-file outcome of one operation. preview is (line_no, before, after)."""

    path: Path
    changes: int = 0
    preview: tuple[int, str, str] | None = None
    error: str | None = None


@dataclass
class OperationSummary:
    index: int
    operation: Operation
    files: list[FileSummary] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return sum(entry.changes for entry in self.files)

    @property
    def errors(self) -> list[FileSummary]:
        return [entry for entry in self.files if entry.error]


@dataclass
class ExecutionReport:
    root: Path
    dry_run: bool
    batch: bool
    files_available: int = 0
    operations: list[OperationSummary] = field(default_factory=list)
    backups: list[Backup] = field(default_factory=list)

    @property
    def per_file(self) -> dict[Path, int]:
        """Total changes per file across all operations, files without changes omitted."""
        totals: dict[Path, int] = {}
        for summary in self.operations:
            for entry in summary.files:
                if entry.changes:
                    totals[entry.path] = totals.get(entry.path, 0) + entry.changes
        return totals

    @property
    def files_processed(self) -> int:
        return len(self.per_file)

    @property
    def total_changes(self) -> int:
        return sum(summary.changes for summary in self.operations)

    @property
    def errors(self) -> list[FileSummary]:
        return [entry for summary in self.operations for entry in summary.errors]


@dataclass(frozen=True)
class ToolResponse:
    """Response envelope handed back to the CLI or the MCP transport."""

    text: str
    is_error: bool = False


# =============================================================================
# PATTERN TRANSLATOR
# =============================================================================


class StructureKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    IMPORT = "import"
    VARIABLE = "variable"


class Language(str, Enum):
    JS = "js"
    TS = "ts"
    PY = "py"
    JAVA = "java"
    CPP = "cpp"
    C = "c"

    @property
    def ugrep_type(self) -> str:
        return _UGREP_TYPES[self]

    @property
    def identifier_char(self) -> str:
        return r"[\w$]" if self in (Language.JS, Language.TS) else r"\w"


_UGREP_TYPES = {
    Language.JS: "javascript",
    Language.TS: "typescript",
    Language.PY: "python",
    Language.JAVA: "java",
    Language.CPP: "c++",
    Language.C: "c",
}

_LANGUAGE_ALIASES = {
    "javascript": "js",
    "jsx": "js",
    "mjs": "js",
    "typescript": "ts",
    "tsx": "ts",
    "python": "py",
    "c++": "cpp",
    "cxx": "cpp",
    "cc": "cpp",
}


class StructurePattern(NamedTuple):
    """generic matches any declaration; prefix + lookbehind + name + lookahead matches a named one.

    lookbehind holds extra zero-width guards placed right before the name.
    """

    generic: str
    prefix: str
    lookahead: str = ""
    lookbehind: str = ""


_ID = r"[A-Za-z_]\w*"
_JS_ID = r"[A-Za-z_$][\w$]*"
_JAVA_MODIFIER = r"\b(?:public|private|protected)\s+[\w<>\[\], ]*?"
_C_NOT_KEYWORD = r"\b(?!(?:return|else|new|delete|throw|case|goto)\b)"
_C_DECL_TYPE = r"\b(?:const|static|auto|int|long|short|char|float|double|bool|unsigned|signed|size_t)\b"
_JS_NOT_KEYWORD = r"(?<![\w$.])(?!(?:if|for|while|switch|catch|function|return)\b)"
_JS_IMPORT_PREFIX = r"\bfrom\s*['\"]|\bimport\s*['\"]|\brequire\s*\(\s*['\"]"
_JS_METHOD_BODY = r"\s*\([^)]*\)\s*\{"
_TS_METHOD_BODY = r"\s*\([^)]*\)\s*(?::\s*[^{;]+)?\{"
# statement start: a Python declaration is never an attribute or a keyword argument
_LINE_START = r"(?:^|(?<=\n))[ \t]*"
_PY_ASSIGN = r"\s*(?::[^=\n]+)?=(?!=)"

_STRUCTURE_PATTERNS: dict[tuple[StructureKind, Language], StructurePattern] = {
    # function
    (StructureKind.FUNCTION, Language.JS): StructurePattern(r"\bfunction\s+" + _JS_ID, r"\bfunction\s+"),
    (StructureKind.FUNCTION, Language.TS): StructurePattern(r"\bfunction\s+" + _JS_ID, r"\bfunction\s+"),
    (StructureKind.FUNCTION, Language.PY): StructurePattern(r"\bdef\s+" + _ID, r"\bdef\s+"),
    (StructureKind.FUNCTION, Language.JAVA): StructurePattern(
        _JAVA_MODIFIER + r"\b" + _ID + r"\s*\(", _JAVA_MODIFIER, r"\s*\("
    ),
    (StructureKind.FUNCTION, Language.CPP): StructurePattern(
        _C_NOT_KEYWORD + _ID + r"[\s*&]+" + _ID + r"\s*\(", _C_NOT_KEYWORD + _ID + r"[\s*&]+", r"\s*\("
    ),
    (StructureKind.FUNCTION, Language.C): StructurePattern(
        _C_NOT_KEYWORD + _ID + r"[\s*]+" + _ID + r"\s*\(", _C_NOT_KEYWORD + _ID + r"[\s*]+", r"\s*\("
    ),
    # class
    (StructureKind.CLASS, Language.JS): StructurePattern(r"\bclass\s+" + _JS_ID, r"\bclass\s+"),
    (StructureKind.CLASS, Language.TS): StructurePattern(
        r"\b(?:class|interface)\s+" + _JS_ID, r"\b(?:class|interface)\s+"
    ),
    (StructureKind.CLASS, Language.PY): StructurePattern(r"\bclass\s+" + _ID, r"\bclass\s+"),
    (StructureKind.CLASS, Language.JAVA): StructurePattern(
        r"\b(?:class|interface|enum|record)\s+" + _ID, r"\b(?:class|interface|enum|record)\s+"
    ),
    (StructureKind.CLASS, Language.CPP): StructurePattern(r"\b(?:class|struct)\s+" + _ID, r"\b(?:class|struct)\s+"),
    # method
    (StructureKind.METHOD, Language.JS): StructurePattern(
        _JS_NOT_KEYWORD + _JS_ID + _JS_METHOD_BODY, "", _JS_METHOD_BODY, r"(?<![\w$.])"
    ),
    (StructureKind.METHOD, Language.TS): StructurePattern(
        _JS_NOT_KEYWORD + _JS_ID + _TS_METHOD_BODY, "", _TS_METHOD_BODY, r"(?<![\w$.])"
    ),
    (StructureKind.METHOD, Language.PY): StructurePattern(
        r"\bdef\s+" + _ID + r"\s*\(\s*(?:self|cls)\b", r"\bdef\s+", r"\s*\(\s*(?:self|cls)\b"
    ),
    (StructureKind.METHOD, Language.JAVA): StructurePattern(
        _JAVA_MODIFIER + r"\b" + _ID + r"\s*\(", _JAVA_MODIFIER, r"\s*\("
    ),
    (StructureKind.METHOD, Language.CPP): StructurePattern(
        r"\b" + _ID + r"::~?" + _ID + r"\s*\(", r"\b" + _ID + r"::~?", r"\s*\("
    ),
    # import
    (StructureKind.IMPORT, Language.JS): StructurePattern(
        r"\bimport\s[^;]*?\bfrom\s*['\"]|\bimport\s*['\"]|\brequire\s*\(\s*['\"]", _JS_IMPORT_PREFIX, r"['\"]"
    ),
    (StructureKind.IMPORT, Language.TS): StructurePattern(
        r"\bimport\s[^;]*?\bfrom\s*['\"]|\bimport\s*['\"]|\brequire\s*\(\s*['\"]", _JS_IMPORT_PREFIX, r"['\"]"
    ),
    (StructureKind.IMPORT, Language.PY): StructurePattern(
        r"\b(?:import|from)\s+[A-Za-z_][\w.]*", r"\b(?:import|from)\s+"
    ),
    (StructureKind.IMPORT, Language.JAVA): StructurePattern(
        r"\bimport\s+(?:static\s+)?[\w.]+(?:\.\*)?", r"\bimport\s+(?:static\s+)?"
    ),
    (StructureKind.IMPORT, Language.CPP): StructurePattern(
        r"#\s*include\s*[<\"][^>\"]+[>\"]", r"#\s*include\s*[<\"]", r"[>\"]"
    ),
    (StructureKind.IMPORT, Language.C): StructurePattern(
        r"#\s*include\s*[<\"][^>\"]+[>\"]", r"#\s*include\s*[<\"]", r"[>\"]"
    ),
    # variable
    (StructureKind.VARIABLE, Language.JS): StructurePattern(
        r"\b(?:var|let|const)\s+" + _JS_ID, r"\b(?:var|let|const)\s+"
    ),
    (StructureKind.VARIABLE, Language.TS): StructurePattern(
        r"\b(?:var|let|const)\s+" + _JS_ID, r"\b(?:var|let|const)\s+"
    ),
    (StructureKind.VARIABLE, Language.PY): StructurePattern(
        _LINE_START + r"(?!(?:else|try|finally|lambda)\b)" + _ID + _PY_ASSIGN, _LINE_START, _PY_ASSIGN
    ),
    (StructureKind.VARIABLE, Language.JAVA): StructurePattern(
        r"\b(?:private|protected|public|final|static)\s+[\w<>\[\], ]*?\b" + _ID + r"\s*=(?!=)",
        r"\b[\w<>\[\]]+\s+",
        r"\s*=(?!=)",
    ),
    (StructureKind.VARIABLE, Language.CPP): StructurePattern(
        _C_DECL_TYPE + r"[\w\s*&:<>]*?\b" + _ID + r"\s*=(?!=)", r"\b[\w:<>]+[\s*&]+", r"\s*=(?!=)"
    ),
    (StructureKind.VARIABLE, Language.C): StructurePattern(
        _C_DECL_TYPE + r"[\w\s*]*?\b" + _ID + r"\s*=(?!=)", r"\b\w+[\s*]+", r"\s*=(?!=)"
    ),
}


def parse_structure_kind(kind: "str | StructureKind") -> StructureKind:
    try:
        return StructureKind(str(kind.value if isinstance(kind, StructureKind) else kind).strip().lower())
    except ValueError:
        supported = ", ".join(k.value for k in StructureKind)
        raise UnsupportedStructureKind(
            f'Unsupported structure type "{kind}". Supported types are: {supported}.'
        ) from None


def parse_language(language: "str | Language", kind: "str | StructureKind" = "") -> Language:
    if isinstance(language, Language):
        return language
    tag = str(language).strip().lower()
    tag = _LANGUAGE_ALIASES.get(tag, tag)
    try:
        return Language(tag)
    except ValueError:
        supported = ", ".join(lang.value for lang in Language)
        target = f' for structure type "{kind}"' if kind else ""
        raise UnsupportedLanguageForStructure(
            f'Unsupported language "{language}"{target}. Supported languages are: {supported}.'
        ) from None


def _lookup_structure(kind: "str | StructureKind", language: "str | Language") -> tuple[StructurePattern, Language]:
    structure = parse_structure_kind(kind)
    lang = parse_language(language, structure.value)
    entry = _STRUCTURE_PATTERNS.get((structure, lang))
    if entry is None:
        raise UnsupportedLanguageForStructure(
            f'Unsupported language "{lang.value}" for structure type "{structure.value}".'
        )
    return entry, lang


def _named_pattern(entry: StructurePattern, language: Language, name: str) -> str:
    guard = language.identifier_char
    lookahead = f"(?={entry.lookahead})" if entry.lookahead else ""
    return f"({entry.prefix}){entry.lookbehind}(?<!{guard}){re.escape(name)}(?!{guard}){lookahead}"


def resolve_structure_pattern(
    kind: "str | StructureKind",
    language: "str | Language",
    name: str | None = None,
) -> str:
    """Translate a structure kind and language tag into a regex.

    Without a name the pattern matches any declaration of that kind. With a name
    the pattern is anchored to that identifier on both sides, so `fetchData`
    never matches `fetchDataAll`. Group 1 always holds the declaration prefix.
    """
    entry, lang = _lookup_structure(kind, language)
    if name and name.strip():
        return _named_pattern(entry, lang, name.strip())
    return entry.generic


def resolve_refactor(
    kind: "str | StructureKind",
    language: "str | Language",
    old_name: str,
    new_name: str,
) -> tuple[str, str]:
    """Pattern/replacement pair renaming one declaration while keeping its prefix."""
    if not old_name.strip() or not new_name.strip():
        raise RequestMalformed("Both the old and the new name are required for a refactor")
    entry, lang = _lookup_structure(kind, language)
    replacement = "$1" + new_name.strip().replace("$", "$$")
    return _named_pattern(entry, lang, old_name.strip()), replacement


# =============================================================================
# COMMAND BUILDER
# =============================================================================


class ToolMode(str, Enum):
    SEARCH = "search"
    REPLACE = "replace"


class SearchKind(str, Enum):
    BASIC = "basic"
    BOOLEAN = "boolean"
    FUZZY = "fuzzy"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class ToolOptions:
    pattern: str
    path: str = "."
    kind: SearchKind = SearchKind.BASIC
    case_sensitive: bool = False
    context_lines: int = 0
    recursive_depth: int | None = None
    file_types: tuple[str, ...] = ()
    exclude_types: tuple[str, ...] = ()
    extensions: tuple[str, ...] = ()
    max_results: int = CONFIG["max_results"]
    max_errors: int = 2
    stats: bool = False
    perl_regex: bool = False
    replacement: str | None = None
    dry_run: bool = True


_TYPE_TAG = re.compile(r"^[\w+#.-]+$")


def _split_types(value: "str | Sequence[str] | None") -> tuple[str, ...]:
    """Normalize 'py,js' or ['py', 'js'] into a tuple of tags."""
    if not value:
        return ()
    items = value.split(",") if isinstance(value, str) else value
    return tuple(str(item).strip() for item in items if str(item).strip())


def _check_tags(tags: Sequence[str], label: str) -> None:
    for tag in tags:
        if not _TYPE_TAG.match(tag):
            raise InvalidToolOptions(f"Invalid {label} {tag!r}")


def _type_args(include: Sequence[str], exclude: Sequence[str] = ()) -> list[str]:
    _check_tags(include, "file type")
    _check_tags(exclude, "file type")
    args: list[str] = []
    if include:
        args.extend(["-t", ",".join(include)])
    if exclude:
        args.extend(["-t", ",".join(f"^{tag}" for tag in exclude)])
    return args


def _validate_options(options: ToolOptions, mode: ToolMode) -> None:
    if not options.pattern:
        raise InvalidToolOptions("A search pattern is required")
    if options.context_lines < 0:
        raise InvalidToolOptions("context_lines must be >= 0")
    if options.max_results < 1:
        raise InvalidToolOptions("max_results must be >= 1")
    if options.recursive_depth is not None and options.recursive_depth < 1:
        raise InvalidToolOptions("recursive_depth must be >= 1")
    overlap = set(options.file_types) & set(options.exclude_types)
    if overlap:
        raise InvalidToolOptions(f"File types both included and excluded: {', '.join(sorted(overlap))}")
    if mode is ToolMode.SEARCH:
        if options.replacement is not None:
            raise InvalidToolOptions("A replacement is only valid in replace mode")
        if options.kind is SearchKind.FUZZY and not 1 <= options.max_errors <= 9:
            raise InvalidToolOptions("max_errors must be between 1 and 9")
        if options.kind is SearchKind.BOOLEAN and options.perl_regex:
            raise InvalidToolOptions("Boolean queries cannot be combined with Perl regex mode")
        return
    if options.replacement is None:
        raise InvalidToolOptions("Replace mode requires a replacement")
    if options.kind is not SearchKind.BASIC:
        raise InvalidToolOptions(f"{options.kind.value} search cannot be used in replace mode")
    if options.stats:
        raise InvalidToolOptions("--stats cannot be used in replace mode")


def build_command(options: ToolOptions, mode: "ToolMode | str", tool: str = CONFIG["tool"]) -> str:
    """Assemble one ugrep command line with every element shell-quoted.

    The pattern goes in through -e and the path after --, so neither can be
    parsed as a flag. Invalid option combinations raise InvalidToolOptions
    before anything is executed.
    """
    mode = ToolMode(mode)
    _validate_options(options, mode)
    args = [tool]
    if not options.case_sensitive:
        args.append("-i")
    if mode is ToolMode.SEARCH:
        args.append("--json")
        if options.context_lines:
            args.extend(["-C", str(options.context_lines)])
        if options.kind is SearchKind.BOOLEAN:
            args.append("--bool")
        elif options.kind is SearchKind.FUZZY:
            args.append(f"-Z{options.max_errors}")
        elif options.kind is SearchKind.ARCHIVE:
            args.append("-z")
        if options.perl_regex:
            args.append("-P")
        if options.stats:
            args.append("--stats")
        args.append(f"--max-count={options.max_results}")
    else:
        args.append("--line-number")
        if not options.dry_run:
            args.append(f"--replace={options.replacement}")
    if options.recursive_depth:
        args.append(f"--max-depth={options.recursive_depth}")
    args.extend(_type_args(options.file_types, options.exclude_types))
    if options.extensions:
        _check_tags(options.extensions, "extension")
        args.extend(["-O", ",".join(options.extensions)])
    args.extend(["-e", options.pattern, "--", options.path or "."])
    return shlex.join(args)


def build_discovery_command(scope: ExecutionScope, tool: str = CONFIG["tool"]) -> str:
    """List non-empty text files under the scope root, skipping backup artifacts."""
    if scope.max_files < 1:
        raise InvalidToolOptions("max_files must be >= 1")
    args = [tool, "-l", "-r", "-I", f"--exclude=*{BACKUP_MARKER}*", f"--max-files={scope.max_files}"]
    args.extend(_type_args(scope.file_types))
    args.extend(["-e", ".", "--", str(scope.root_path)])
    return shlex.join(args)


# =============================================================================
# REPLACE ENGINE
# =============================================================================
_TOKEN = re.compile(r"\$(?:(\$)|(&)|(`)|(')|(\d{1,2})|\{(\w+)\}|<(\w+)>)")


@lru_cache(maxsize=256)
def compile_pattern(pattern: str, case_sensitive: bool = False) -> "re.Pattern[str]":
    if not pattern:
        raise InvalidPattern("Search pattern is empty")
    try:
        return re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as e:
        raise InvalidPattern(f"Invalid regular expression {pattern!r}: {e}") from e


def _expand_replacement(template: str, match: "re.Match[str]") -> str:
    """Resolve $1..$99, $&, $`, $', $$, ${name} and $<name> against one match.

    Unknown tokens stay literal.
    """
    if "$" not in template:
        return template
    group_count = match.re.groups

    def _token(tok: "re.Match[str]") -> str:
        dollar, whole, before, after, digits, name, label = tok.groups()
        if dollar:
            return "$"
        if whole:
            return match.group(0)
        if before:
            return match.string[: match.start()]
        if after:
            return match.string[match.end():]
        if label is not None:
            if label in match.re.groupindex:
                return match.group(label) or ""
            return tok.group(0)
        if name is not None:
            if name.isdigit():
                index = int(name)
                return (match.group(index) or "") if 0 < index <= group_count else tok.group(0)
            if name in match.re.groupindex:
                return match.group(name) or ""
            return tok.group(0)
        if len(digits) == 2 and 0 < int(digits) <= group_count:
            return match.group(int(digits)) or ""
        first = int(digits[0])
        if 0 < first <= group_count:
            return (match.group(first) or "") + digits[1:]
        return tok.group(0)

    return _TOKEN.sub(_token, template)


def apply_replacement(text: str, operation: Operation) -> tuple[str, int]:
    """Substitute every match in one pass. The count is matches, not changed characters."""
    regex = compile_pattern(operation.search_pattern, operation.case_sensitive)
    return regex.subn(lambda m: _expand_replacement(operation.replacement, m), text)


def _read_text(path: Path) -> str:
    # bytes + decode keeps CRLF line endings intact
    try:
        return path.read_bytes().decode("utf-8")
    except UnicodeDecodeError as e:
        raise FileAccessError(f"{path}: not valid UTF-8 ({e.reason} at byte {e.start})") from e
    except OSError as e:
        raise FileAccessError(f"{path}: {e.strerror or e}") from e


def _first_difference(original: str, modified: str) -> tuple[int, str, str] | None:
    before = original.split("\n")
    after = modified.split("\n")
    for line_no, (old, new) in enumerate(zip(before, after), 1):
        if old != new:
            return line_no, old, new
    if len(before) != len(after):
        line_no = min(len(before), len(after)) + 1
        old = before[line_no - 1] if line_no <= len(before) else ""
        new = after[line_no - 1] if line_no <= len(after) else ""
        return line_no, old, new
    return None


# =============================================================================
# BACKUP MANAGER
# =============================================================================


def _backup_timestamp(now: datetime) -> str:
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return stamp.replace(":", "-").replace(".", "-")


def backup_path_for(source: Path, now: datetime) -> Path:
    """<source>.backup-<UTC ISO8601 with ':' and '.' replaced by '-'>."""
    return source.with_name(f"{source.name}{BACKUP_MARKER}{_backup_timestamp(now)}")


def snapshot(file_path: Path, now: datetime | None = None) -> Backup:
    """Stream the file's bytes to its backup path. Never overwrites an existing backup."""
    now = now or datetime.now(timezone.utc)
    source = Path(file_path)
    target = backup_path_for(source, now)
    try:
        with open(source, "rb") as src, open(target, "xb") as dst:
            shutil.copyfileobj(src, dst)
        shutil.copystat(source, target)
    except FileExistsError as e:
        raise BackupWriteError(f"Backup already exists: {target}") from e
    except OSError as e:
        target.unlink(missing_ok=True)
        raise BackupWriteError(f"Cannot back up {source} to {target}: {e.strerror or e}") from e
    _log("INFO", "backup", str(source), detail=str(target))
    return Backup(source_path=source, backup_path=target, timestamp=now)


def persist(file_path: Path, content: str) -> None:
    """Replace the file's content atomically: temp file in the same directory, then os.replace."""
    path = Path(file_path)
    tmp: Path | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".codeseek", dir=path.parent)
        tmp = Path(tmp_name)
        with os.fdopen(fd, "wb") as handle:
            handle.write(content.encode("utf-8"))
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except OSError as e:
        if tmp is not None:
            tmp.unlink(missing_ok=True)
        raise WriteFailure(f"Cannot write {path}: {e.strerror or e}") from e
    _log("DEBUG", "write", str(path), metrics=f"bytes={len(content.encode('utf-8'))}")


# =============================================================================
# ENGINE
# =============================================================================


class CodeSeeker:
    """Search/replace engine.

    Holds nothing but a frozen EngineConfig, so one instance serves every request
    in the process. Discovery, working copies and backup bookkeeping live inside
    each call.
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or _load_engine_config()

    def resolve_root(self, path: str | None) -> Path:
        raw = Path(path or ".").expanduser()
        if not raw.is_absolute():
            raw = self.config.default_root / raw
        return raw.resolve()

    def run_tool(self, command: str) -> str:
        """Run a built command without a shell. Exit 1 with empty stderr means no matches."""
        start_ms = time.time() * 1000
        args = shlex.split(command)
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.config.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            _log("WARN", "timeout", f"{self.config.timeout_s:g}s", detail=command)
            raise ToolTimeout(f"{args[0]} timed out after {self.config.timeout_s:g}s") from e
        except OSError as e:
            raise ToolUnavailable(f"Cannot run {args[0]}: {e.strerror or e}") from e

        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("DEBUG", "tool", command, metrics=f"latency_ms={latency_ms} exit={result.returncode}")
        if result.returncode == 1 and not result.stderr.strip():
            return ""
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise ToolUnavailable(f"{args[0]} exited with code {result.returncode}: {detail}")
        return result.stdout

    def tool_version(self) -> str | None:
        try:
            output = self.run_tool(shlex.join([self.config.tool, "--version"]))
        except ToolUnavailable:
            return None
        lines = output.strip().splitlines()
        # exit 1 with no output passes run_tool but proves nothing about the binary
        return lines[0] if lines else None

    def tool_available(self) -> bool:
        return self.tool_version() is not None

    def discover(self, scope: ExecutionScope) -> list[Path]:
        """Candidate files in tool order, capped at scope.max_files. Empty when ugrep is unusable."""
        start_ms = time.time() * 1000
        command = build_discovery_command(scope, self.config.tool)
        try:
            output = self.run_tool(command)
        except ToolTimeout:
            raise
        except ToolUnavailable as e:
            _log("WARN", "discover", f"no candidates: {e}")
            return []
        files: list[Path] = []
        for line in output.splitlines():
            line = line.rstrip("\r")
            if not line:
                continue
            candidate = Path(line)
            files.append(candidate if candidate.is_absolute() else Path.cwd() / candidate)
            if len(files) >= scope.max_files:
                break
        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("INFO", "discover", str(scope.root_path), metrics=f"latency_ms={latency_ms} files={len(files)}")
        return files

    def apply(self, file_path: Path, operation: Operation, content: str | None = None) -> ReplaceResult:
        """Compute the substitution for one file. content overrides the on-disk text."""
        path = Path(file_path)
        original = _read_text(path) if content is None else content
        modified, count = apply_replacement(original, operation)
        return ReplaceResult(file_path=path, original_content=original, modified_content=modified, change_count=count)

    def run(self, scope: ExecutionScope, operations: "Operation | Sequence[Operation]") -> ExecutionReport:
        """Apply one operation or an ordered batch to the discovered files.

        Patterns are compiled before discovery, so a bad pattern never touches
        the filesystem. Files are discovered once per call and shared by every
        operation; operation i+1 sees the output of operation i through a
        per-call working copy, in dry runs too. Per-file failures land in the
        report and never stop the loop.
        """
        start_ms = time.time() * 1000
        batch = not isinstance(operations, Operation)
        ops = list(operations) if batch else [operations]
        if not ops:
            raise RequestMalformed("At least one replace operation is required")
        if scope.max_files < 1:
            raise RequestMalformed("max_files must be >= 1")
        for op in ops:
            compile_pattern(op.search_pattern, op.case_sensitive)

        files = self.discover(scope)
        report = ExecutionReport(
            root=scope.root_path, dry_run=scope.dry_run, batch=batch, files_available=len(files)
        )
        working: dict[Path, str] = {}
        backed_up: dict[Path, Backup] = {}
        for index, op in enumerate(ops, 1):
            summary = OperationSummary(index=index, operation=op)
            for path in files:
                entry = self._process_file(path, op, scope, working, backed_up, report)
                if entry is not None:
                    summary.files.append(entry)
            report.operations.append(summary)

        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log(
            "INFO",
            "run",
            f"{'DRY' if scope.dry_run else 'LIVE'} ops={len(ops)} root={scope.root_path}",
            metrics=(
                f"latency_ms={latency_ms} files={report.files_processed} "
                f"changes={report.total_changes} backups={len(report.backups)} errors={len(report.errors)}"
            ),
        )
        return report

    def _process_file(
        self,
        path: Path,
        op: Operation,
        scope: ExecutionScope,
        working: dict[Path, str],
        backed_up: dict[Path, Backup],
        report: ExecutionReport,
    ) -> FileSummary | None:
        try:
            result = self.apply(path, op, content=working.get(path))
        except FileAccessError as e:
            _log("WARN", "read", str(path), detail=str(e))
            return FileSummary(path=path, error=_describe_error(e))
        if result.change_count == 0:
            return None

        if scope.dry_run:
            working[path] = result.modified_content
            return FileSummary(
                path=path,
                changes=result.change_count,
                preview=_first_difference(result.original_content, result.modified_content),
            )

        try:
            # first live write of a file in this call owns its backup
            if scope.create_backup and path not in backed_up:
                backup = snapshot(path)
                backed_up[path] = backup
                report.backups.append(backup)
            persist(path, result.modified_content)
        except (BackupWriteError, WriteFailure) as e:
            working.pop(path, None)
            _log("ERROR", "write", str(path), detail=str(e))
            return FileSummary(path=path, error=_describe_error(e))
        working[path] = result.modified_content
        return FileSummary(path=path, changes=result.change_count)


_ENGINE: CodeSeeker | None = None


def _get_engine() -> CodeSeeker:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = CodeSeeker()
    return _ENGINE


# =============================================================================
# REQUEST MODELS
# =============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class _SearchFields(_Request):
    pattern: str = Field(min_length=1, description="Search pattern or regular expression")
    path: str = Field(".", description="Directory or file to search")
    case_sensitive: bool = False
    recursive_depth: int | None = Field(None, ge=1)
    file_types: str | list[str] | None = Field(None, description="Comma-separated ugrep file types")
    exclude_types: str | list[str] | None = None
    context_lines: int | None = Field(None, ge=0)
    max_results: int = Field(CONFIG["max_results"], ge=1)


class BasicSearchRequest(_SearchFields):
    tool: Literal["basic_search"] = "basic_search"


class SearchStatsRequest(_SearchFields):
    tool: Literal["get_search_stats"] = "get_search_stats"


class BooleanSearchRequest(_Request):
    tool: Literal["boolean_search"] = "boolean_search"
    query: str = Field(min_length=1, description="Boolean query using AND, OR, NOT")
    path: str = "."
    file_types: str | list[str] | None = None
    max_results: int = Field(CONFIG["max_results"], ge=1)


class FuzzySearchRequest(_Request):
    tool: Literal["fuzzy_search"] = "fuzzy_search"
    pattern: str = Field(min_length=1)
    max_errors: int = Field(2, ge=1, le=9, description="Maximum character errors allowed")
    path: str = "."
    file_types: str | list[str] | None = None
    max_results: int = Field(CONFIG["max_results"], ge=1)


class ArchiveSearchRequest(_Request):
    tool: Literal["archive_search"] = "archive_search"
    pattern: str = Field(min_length=1)
    path: str = "."
    archive_types: str | list[str] | None = Field(None, description="Archive extensions, e.g. zip,tar,gz")
    max_results: int = Field(CONFIG["max_results"], ge=1)


class InteractiveSearchRequest(_Request):
    tool: Literal["interactive_search"] = "interactive_search"
    initial_pattern: str | None = None
    path: str | None = None


class CodeStructureSearchRequest(_Request):
    tool: Literal["code_structure_search"] = "code_structure_search"
    structure_type: str = Field(min_length=1)
    language: str = Field(min_length=1)
    name: str | None = None
    path: str = "."
    max_results: int = Field(CONFIG["max_results"], ge=1)


class ListFileTypesRequest(_Request):
    tool: Literal["list_file_types"] = "list_file_types"


class CheckInstallationRequest(_Request):
    tool: Literal["check_ugrep_installation"] = "check_ugrep_installation"


class SearchAndReplaceRequest(_Request):
    tool: Literal["search_and_replace"] = "search_and_replace"
    pattern: str = Field(min_length=1)
    replacement: str = Field(description="Replacement text, $1/$2 refer to capture groups")
    path: str = "."
    file_types: str | list[str] | None = None
    case_sensitive: bool = False
    dry_run: bool = True
    max_files: int = Field(CONFIG["max_files"], ge=1)
    backup: bool = True


class OperationRequest(_Request):
    pattern: str = Field(min_length=1)
    replacement: str
    description: str | None = None
    case_sensitive: bool | None = None


class BulkReplaceRequest(_Request):
    tool: Literal["bulk_replace"] = "bulk_replace"
    replacements: list[OperationRequest] = Field(min_length=1)
    path: str = "."
    file_types: str | list[str] | None = None
    case_sensitive: bool = False
    dry_run: bool = True
    max_files: int = Field(CONFIG["bulk_max_files"], ge=1)
    backup: bool = True


class CodeRefactorRequest(_Request):
    tool: Literal["code_refactor"] = "code_refactor"
    structure_type: str = Field(min_length=1)
    old_pattern: str = Field(min_length=1, description="Current name")
    new_pattern: str = Field(min_length=1, description="New name")
    language: str = Field(min_length=1)
    path: str = "."
    dry_run: bool = True
    backup: bool = True
    max_files: int = Field(CONFIG["refactor_max_files"], ge=1)


ToolRequest = Annotated[
    Union[
        BasicSearchRequest,
        SearchStatsRequest,
        BooleanSearchRequest,
        FuzzySearchRequest,
        ArchiveSearchRequest,
        InteractiveSearchRequest,
        CodeStructureSearchRequest,
        ListFileTypesRequest,
        CheckInstallationRequest,
        SearchAndReplaceRequest,
        BulkReplaceRequest,
        CodeRefactorRequest,
    ],
    Field(discriminator="tool"),
]

_REQUESTS: TypeAdapter = TypeAdapter(ToolRequest)


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


def _existing_root(engine: CodeSeeker, path: str | None) -> Path:
    root = engine.resolve_root(path)
    if not root.exists():
        raise FileAccessError(f"Path not found: {root}")
    return root


def _mode_label(dry_run: bool) -> str:
    return "DRY RUN (preview)" if dry_run else "LIVE REPLACEMENT"


def _clip(text: str) -> str:
    width = CONFIG["preview_width"]
    text = text.rstrip("\r")
    return text if len(text) <= width else text[: width - 3] + "..."


def _render_entries(entries: list[FileSummary], dry_run: bool, noun: str, indent: str = "") -> list[str]:
    lines: list[str] = []
    tag = "DRY" if dry_run else "OK"
    for entry in entries:
        if entry.error:
            lines.append(f"{indent}[FAIL] {entry.path}: {entry.error}")
            continue
        lines.append(f"{indent}[{tag}] {entry.path}: {entry.changes} {noun}(s)")
        if entry.preview:
            line_no, before, after = entry.preview
            lines.append(f"{indent}     L{line_no} - {_clip(before)}")
            lines.append(f"{indent}     L{line_no} + {_clip(after)}")
    return lines


def _render_report(report: ExecutionReport, header: list[str], noun: str = "replacement") -> str:
    out = list(header)
    out.append("")
    if report.files_available == 0:
        out.append("No files found to process.")
        return "\n".join(out)

    if report.batch:
        for summary in report.operations:
            out.append(f"Operation {summary.index}: {summary.operation.label}")
            out.extend(_render_entries(summary.files, report.dry_run, noun, indent="   "))
            out.append(f"   Changes: {summary.changes}")
            out.append("")
    else:
        entries = report.operations[0].files
        out.extend(_render_entries(entries, report.dry_run, noun) or [f"No matches in {report.files_available} file(s)."])
        out.append("")

    out.append("Summary:")
    if report.batch:
        out.append(f"- Operations performed: {len(report.operations)}")
    out.append(f"- Files available: {report.files_available}")
    out.append(f"- Files processed: {report.files_processed}")
    out.append(f"- Total {noun}s: {report.total_changes}")
    if report.errors:
        out.append(f"- Errors: {len(report.errors)}")
    if report.backups:
        out.append(f"- Backup files created: {len(report.backups)}")
        out.extend(f"     Backup: {backup.backup_path}" for backup in report.backups)
    if report.dry_run:
        out.append("")
        out.append("[DRY] Nothing written. Set dry_run=false (CLI: --apply) to apply these changes.")
    return "\n".join(out)


def _search_text(title: str, fields: list[str], output: str, empty: str = "No matches found.") -> str:
    return "\n".join([title, "", *fields, "", output.strip() or empty])


# --- Search ---


def _basic_search_impl(request: _SearchFields, engine: CodeSeeker, stats: bool = False) -> str:
    """Plain regex search through ugrep.

    CLI: basic-search, get-search-stats
    MCP: basic_search, get_search_stats
    """
    root = _existing_root(engine, request.path)
    options = ToolOptions(
        pattern=request.pattern,
        path=str(root),
        case_sensitive=request.case_sensitive,
        context_lines=request.context_lines or 0,
        recursive_depth=request.recursive_depth,
        file_types=_split_types(request.file_types),
        exclude_types=_split_types(request.exclude_types),
        max_results=request.max_results,
        stats=stats,
    )
    output = engine.run_tool(build_command(options, ToolMode.SEARCH, engine.config.tool))
    title = "Search Statistics" if stats else "Basic Search Results"
    empty = "No statistics available." if stats else "No matches found."
    return _search_text(title, [f"Pattern: `{request.pattern}`", f"Path: `{root}`"], output, empty)


def _search_stats_impl(request: SearchStatsRequest, engine: CodeSeeker) -> str:
    return _basic_search_impl(request, engine, stats=True)


def _boolean_search_impl(request: BooleanSearchRequest, engine: CodeSeeker) -> str:
    root = _existing_root(engine, request.path)
    options = ToolOptions(
        pattern=request.query,
        path=str(root),
        kind=SearchKind.BOOLEAN,
        file_types=_split_types(request.file_types),
        max_results=request.max_results,
    )
    output = engine.run_tool(build_command(options, ToolMode.SEARCH, engine.config.tool))
    return _search_text("Boolean Search Results", [f"Query: `{request.query}`", f"Path: `{root}`"], output)


def _fuzzy_search_impl(request: FuzzySearchRequest, engine: CodeSeeker) -> str:
    root = _existing_root(engine, request.path)
    options = ToolOptions(
        pattern=request.pattern,
        path=str(root),
        kind=SearchKind.FUZZY,
        max_errors=request.max_errors,
        file_types=_split_types(request.file_types),
        max_results=request.max_results,
    )
    output = engine.run_tool(build_command(options, ToolMode.SEARCH, engine.config.tool))
    fields = [f"Pattern: `{request.pattern}`", f"Max Errors: {request.max_errors}", f"Path: `{root}`"]
    return _search_text("Fuzzy Search Results", fields, output)


def _archive_search_impl(request: ArchiveSearchRequest, engine: CodeSeeker) -> str:
    root = _existing_root(engine, request.path)
    options = ToolOptions(
        pattern=request.pattern,
        path=str(root),
        kind=SearchKind.ARCHIVE,
        extensions=_split_types(request.archive_types),
        max_results=request.max_results,
    )
    output = engine.run_tool(build_command(options, ToolMode.SEARCH, engine.config.tool))
    return _search_text(
        "Archive Search Results",
        [f"Pattern: `{request.pattern}`", f"Path: `{root}`"],
        output,
        "No matches found in archives.",
    )


def _interactive_search_impl(request: InteractiveSearchRequest, engine: CodeSeeker) -> str:
    """Interactive mode needs a terminal, so this only hands back the command to run."""
    args = [engine.config.tool, "-Q"]
    if request.initial_pattern:
        args.extend(["-e", request.initial_pattern])
    if request.path:
        args.extend(["--", request.path])
    return "\n".join([
        "Interactive Search Mode",
        "",
        "Run this in a terminal:",
        "",
        f"    {shlex.join(args)}",
        "",
        "Type patterns to see live results, arrow keys to navigate, F1 for help, Ctrl+C to exit.",
        "The TUI cannot run through this tool's stdio transport.",
    ])


def _code_structure_search_impl(request: CodeStructureSearchRequest, engine: CodeSeeker) -> str:
    pattern = resolve_structure_pattern(request.structure_type, request.language, request.name)
    kind = parse_structure_kind(request.structure_type)
    language = parse_language(request.language, kind.value)
    root = _existing_root(engine, request.path)
    options = ToolOptions(
        pattern=pattern,
        path=str(root),
        case_sensitive=True,
        context_lines=CONFIG["structure_context"],
        file_types=(language.ugrep_type,),
        max_results=request.max_results,
        perl_regex=True,
    )
    output = engine.run_tool(build_command(options, ToolMode.SEARCH, engine.config.tool))
    named = f' named "{request.name}"' if request.name else ""
    fields = [
        f"Searching for {kind.value}s{named} in {language.value} files",
        f"Path: `{root}`",
        f"Pattern used: {pattern}",
    ]
    return _search_text(f"{kind.value.capitalize()} Search Results", fields, output)


def _list_file_types_impl(request: ListFileTypesRequest, engine: CodeSeeker) -> str:
    output = engine.run_tool(shlex.join([engine.config.tool, "-tlist"]))
    return "\n".join([
        "Supported File Types",
        "",
        "Use these with file_types (CLI: -t/--types) to filter searches.",
        "",
        output.rstrip(),
    ])


def _check_installation_impl(request: CheckInstallationRequest, engine: CodeSeeker) -> str:
    version = engine.tool_version()
    if version:
        return f"[OK] ugrep is installed and available: {version}"
    return f"[FAIL] ugrep is not installed or not runnable ({engine.config.tool}).\n\n{INSTALL_HELP}"


# --- Replace ---


def _search_and_replace_impl(request: SearchAndReplaceRequest, engine: CodeSeeker) -> str:
    """Single regex replacement across discovered files.

    CLI: search-and-replace
    MCP: search_and_replace
    """
    operation = Operation(request.pattern, request.replacement, case_sensitive=request.case_sensitive)
    root = _existing_root(engine, request.path)
    scope = ExecutionScope(
        root_path=root,
        file_types=_split_types(request.file_types),
        max_files=request.max_files,
        dry_run=request.dry_run,
        create_backup=request.backup,
    )
    equivalent = build_command(
        ToolOptions(
            pattern=request.pattern,
            path=str(root),
            case_sensitive=request.case_sensitive,
            file_types=scope.file_types,
            replacement=request.replacement,
            dry_run=request.dry_run,
        ),
        ToolMode.REPLACE,
        engine.config.tool,
    )
    report = engine.run(scope, operation)
    header = [
        "Search and Replace Results",
        "",
        f"Pattern: `{request.pattern}`",
        f"Replacement: `{request.replacement}`",
        f"Path: `{root}`",
        f"Mode: {_mode_label(request.dry_run)}",
        f"ugrep equivalent: {equivalent}",
    ]
    return _render_report(report, header)


def _bulk_replace_impl(request: BulkReplaceRequest, engine: CodeSeeker) -> str:
    """Ordered batch of replacements over one discovered file set.

    CLI: bulk-replace
    MCP: bulk_replace
    """
    operations = [
        Operation(
            item.pattern,
            item.replacement,
            case_sensitive=request.case_sensitive if item.case_sensitive is None else item.case_sensitive,
            description=item.description,
        )
        for item in request.replacements
    ]
    root = _existing_root(engine, request.path)
    scope = ExecutionScope(
        root_path=root,
        file_types=_split_types(request.file_types),
        max_files=request.max_files,
        dry_run=request.dry_run,
        create_backup=request.backup,
    )
    report = engine.run(scope, operations)
    header = ["Bulk Replace Results", "", f"Path: `{root}`", f"Mode: {_mode_label(request.dry_run)}"]
    return _render_report(report, header)


def _code_refactor_impl(request: CodeRefactorRequest, engine: CodeSeeker) -> str:
    """Rename a declaration (function, class, method, import, variable) in one language.

    CLI: code-refactor
    MCP: code_refactor
    """
    pattern, replacement = resolve_refactor(
        request.structure_type, request.language, request.old_pattern, request.new_pattern
    )
    kind = parse_structure_kind(request.structure_type)
    language = parse_language(request.language, kind.value)
    operation = Operation(
        pattern,
        replacement,
        case_sensitive=True,
        description=f"{kind.value} {request.old_pattern} -> {request.new_pattern}",
    )
    root = _existing_root(engine, request.path)
    scope = ExecutionScope(
        root_path=root,
        file_types=(language.ugrep_type,),
        max_files=request.max_files,
        dry_run=request.dry_run,
        create_backup=request.backup,
    )
    report = engine.run(scope, operation)
    header = [
        "Code Refactor Results",
        "",
        f"Structure: {kind.value}",
        f"Old: `{request.old_pattern}`",
        f"New: `{request.new_pattern}`",
        f"Language: {language.value}",
        f"Mode: {_mode_label(request.dry_run)}",
    ]
    if report.files_available == 0:
        return "\n".join([*header, "", f"No {language.value} files found to process."])
    return _render_report(report, header, noun="refactoring")


# --- Router ---

_HANDLERS: dict[str, Callable[[Any, CodeSeeker], str]] = {
    "basic_search": _basic_search_impl,
    "boolean_search": _boolean_search_impl,
    "fuzzy_search": _fuzzy_search_impl,
    "archive_search": _archive_search_impl,
    "interactive_search": _interactive_search_impl,
    "code_structure_search": _code_structure_search_impl,
    "list_file_types": _list_file_types_impl,
    "get_search_stats": _search_stats_impl,
    "search_and_replace": _search_and_replace_impl,
    "bulk_replace": _bulk_replace_impl,
    "code_refactor": _code_refactor_impl,
    "check_ugrep_installation": _check_installation_impl,
}


def _format_validation(tool: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        loc = [str(part) for part in item.get("loc", ()) if str(part) != tool]
        where = ".".join(loc) or "arguments"
        problems.append(f"{where}: {item.get('msg', 'invalid')}")
    return f"Invalid arguments for {tool}: " + "; ".join(problems)


def _dispatch(tool: str, arguments: dict[str, Any] | None = None, engine: CodeSeeker | None = None) -> ToolResponse:
    """Validate one tool request and run it. Never raises; failures come back flagged."""
    start_ms = time.time() * 1000
    handler = _HANDLERS.get(tool)
    if handler is None:
        _log("WARN", "dispatch", f"unknown tool {tool}")
        return ToolResponse(f"Error: RequestMalformed: Unknown tool: {tool}", is_error=True)

    payload = {key: value for key, value in (arguments or {}).items() if value is not None and key != "tool"}
    try:
        request = _REQUESTS.validate_python({**payload, "tool": tool})
        text = handler(request, engine or _get_engine())
    except ValidationError as e:
        message = _format_validation(tool, e)
        _log("WARN", "dispatch", tool, detail=message)
        return ToolResponse(f"Error: RequestMalformed: {message}", is_error=True)
    except CodeSeekError as e:
        _log("WARN", "dispatch", tool, detail=_describe_error(e))
        return ToolResponse(f"Error: {_describe_error(e)}", is_error=True)
    except Exception as e:
        _log("ERROR", "dispatch", tool, detail=_describe_error(e))
        return ToolResponse(f"An unexpected error occurred: {_describe_error(e)}", is_error=True)

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log("INFO", "dispatch", tool, metrics=f"latency_ms={latency_ms}")
    return ToolResponse(text)


# =============================================================================
# CLI INTERFACE
# =============================================================================


def _load_operations(source: str) -> list[dict[str, Any]]:
    """Operations as a JSON list, or an object with a "replacements" list."""
    data = json.loads(source)
    if isinstance(data, dict):
        data = data.get("replacements")
    assert isinstance(data, list), "operations JSON must be a list (or {\"replacements\": [...]})"
    return data


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Code search and safe search/replace on top of ugrep")
    parser.add_argument("-V", "--version", action="version", version="%(prog)s 1.0.0")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("mcp-stdio", help="Run as MCP server")

    # --- Search ---
    for name, help_text in (("basic-search", "Regex search"), ("get-search-stats", "Search with statistics")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("pattern")
        p.add_argument("path", nargs="?", default=".")
        p.add_argument("-s", "--case-sensitive", action="store_true")
        p.add_argument("-d", "--depth", type=int, default=None, help="Max recursion depth")
        p.add_argument("-t", "--types", default="", help="File types, comma-separated (e.g. python,js)")
        p.add_argument("-x", "--exclude", default="", help="File types to exclude")
        p.add_argument("-C", "--context", type=int, default=0)
        p.add_argument("-m", "--max", type=int, default=CONFIG["max_results"], help="Max results")

    p_bool = sub.add_parser("boolean-search", help="Boolean query (AND, OR, NOT)")
    p_bool.add_argument("query")
    p_bool.add_argument("path", nargs="?", default=".")
    p_bool.add_argument("-t", "--types", default="")
    p_bool.add_argument("-m", "--max", type=int, default=CONFIG["max_results"])

    p_fuzzy = sub.add_parser("fuzzy-search", help="Approximate matching")
    p_fuzzy.add_argument("pattern")
    p_fuzzy.add_argument("path", nargs="?", default=".")
    p_fuzzy.add_argument("-e", "--max-errors", type=int, default=2)
    p_fuzzy.add_argument("-t", "--types", default="")
    p_fuzzy.add_argument("-m", "--max", type=int, default=CONFIG["max_results"])

    p_archive = sub.add_parser("archive-search", help="Search inside archives and compressed files")
    p_archive.add_argument("pattern")
    p_archive.add_argument("path", nargs="?", default=".")
    p_archive.add_argument("-a", "--archive-types", default="", help="Archive extensions (zip,tar,gz)")
    p_archive.add_argument("-m", "--max", type=int, default=CONFIG["max_results"])

    p_inter = sub.add_parser("interactive-search", help="Print the ugrep TUI command")
    p_inter.add_argument("pattern", nargs="?", default=None)
    p_inter.add_argument("path", nargs="?", default=None)

    p_struct = sub.add_parser("code-structure-search", help="Find functions, classes, methods, imports, variables")
    p_struct.add_argument("kind", help="function, class, method, import, variable")
    p_struct.add_argument("language", help="js, ts, py, java, cpp, c")
    p_struct.add_argument("path", nargs="?", default=".")
    p_struct.add_argument("-n", "--name", default=None)
    p_struct.add_argument("-m", "--max", type=int, default=CONFIG["max_results"])

    sub.add_parser("list-file-types", help="List ugrep file types")
    sub.add_parser("check-ugrep-installation", help="Check that ugrep is available")

    # --- Replace ---
    p_repl = sub.add_parser("search-and-replace", help="Regex replace across files (dry run unless --apply)")
    p_repl.add_argument("pattern")
    p_repl.add_argument("replacement")
    p_repl.add_argument("path", nargs="?", default=".")
    p_repl.add_argument("-t", "--types", default="")
    p_repl.add_argument("-s", "--case-sensitive", action="store_true")
    p_repl.add_argument("-a", "--apply", action="store_true", help="Write changes (default: dry run)")
    p_repl.add_argument("-B", "--no-backup", action="store_true")
    p_repl.add_argument("-f", "--max-files", type=int, default=CONFIG["max_files"])

    p_bulk = sub.add_parser("bulk-replace", help="Ordered batch of replacements (JSON via --ops or stdin)")
    p_bulk.add_argument("path", nargs="?", default=".")
    p_bulk.add_argument("-o", "--ops", default="", help="JSON file with [{pattern, replacement, description}]")
    p_bulk.add_argument("-t", "--types", default="")
    p_bulk.add_argument("-s", "--case-sensitive", action="store_true")
    p_bulk.add_argument("-a", "--apply", action="store_true")
    p_bulk.add_argument("-B", "--no-backup", action="store_true")
    p_bulk.add_argument("-f", "--max-files", type=int, default=CONFIG["bulk_max_files"])

    p_ref = sub.add_parser("code-refactor", help="Rename a declaration")
    p_ref.add_argument("kind")
    p_ref.add_argument("language")
    p_ref.add_argument("old")
    p_ref.add_argument("new")
    p_ref.add_argument("path", nargs="?", default=".")
    p_ref.add_argument("-a", "--apply", action="store_true")
    p_ref.add_argument("-B", "--no-backup", action="store_true")
    p_ref.add_argument("-f", "--max-files", type=int, default=CONFIG["refactor_max_files"])

    args = parser.parse_args()

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return
        if args.command is None:
            parser.print_help()
            return

        if args.command in ("basic-search", "get-search-stats"):
            tool = args.command.replace("-", "_")
            arguments = {
                "pattern": args.pattern,
                "path": args.path,
                "case_sensitive": args.case_sensitive,
                "recursive_depth": args.depth,
                "file_types": args.types or None,
                "exclude_types": args.exclude or None,
                "context_lines": args.context,
                "max_results": args.max,
            }
        elif args.command == "boolean-search":
            tool = "boolean_search"
            arguments = {"query": args.query, "path": args.path, "file_types": args.types or None, "max_results": args.max}
        elif args.command == "fuzzy-search":
            tool = "fuzzy_search"
            arguments = {
                "pattern": args.pattern,
                "path": args.path,
                "max_errors": args.max_errors,
                "file_types": args.types or None,
                "max_results": args.max,
            }
        elif args.command == "archive-search":
            tool = "archive_search"
            arguments = {
                "pattern": args.pattern,
                "path": args.path,
                "archive_types": args.archive_types or None,
                "max_results": args.max,
            }
        elif args.command == "interactive-search":
            tool = "interactive_search"
            arguments = {"initial_pattern": args.pattern, "path": args.path}
        elif args.command == "code-structure-search":
            tool = "code_structure_search"
            arguments = {
                "structure_type": args.kind,
                "language": args.language,
                "name": args.name,
                "path": args.path,
                "max_results": args.max,
            }
        elif args.command in ("list-file-types", "check-ugrep-installation"):
            tool = args.command.replace("-", "_")
            arguments = {}
        elif args.command == "search-and-replace":
            tool = "search_and_replace"
            arguments = {
                "pattern": args.pattern,
                "replacement": args.replacement,
                "path": args.path,
                "file_types": args.types or None,
                "case_sensitive": args.case_sensitive,
                "dry_run": not args.apply,
                "backup": not args.no_backup,
                "max_files": args.max_files,
            }
        elif args.command == "bulk-replace":
            tool = "bulk_replace"
            if args.ops:
                source = Path(args.ops).expanduser().read_text(encoding="utf-8")
            elif not sys.stdin.isatty():
                source = sys.stdin.read()
            else:
                source = ""
            assert source.strip(), "operations required (--ops FILE or JSON on stdin)"
            arguments = {
                "replacements": _load_operations(source),
                "path": args.path,
                "file_types": args.types or None,
                "case_sensitive": args.case_sensitive,
                "dry_run": not args.apply,
                "backup": not args.no_backup,
                "max_files": args.max_files,
            }
        elif args.command == "code-refactor":
            tool = "code_refactor"
            arguments = {
                "structure_type": args.kind,
                "language": args.language,
                "old_pattern": args.old,
                "new_pattern": args.new,
                "path": args.path,
                "dry_run": not args.apply,
                "backup": not args.no_backup,
                "max_files": args.max_files,
            }
        else:
            parser.print_help()
            return

        response = _dispatch(tool, arguments)
        if response.is_error:
            _log("ERROR", args.command, response.text)
            print(response.text, file=sys.stderr)
            sys.exit(1)
        print(response.text)
    except (AssertionError, Exception) as e:
        _log("ERROR", args.command or "unknown", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _run_mcp():
    from fastmcp import FastMCP
    from fastmcp.exceptions import ToolError

    engine = _get_engine()
    mcp = FastMCP("codeseek")

    def _reply(tool: str, **arguments: Any) -> str:
        response = _dispatch(tool, arguments, engine)
        if response.is_error:
            raise ToolError(response.text)
        return response.text

    @mcp.tool()
    def check_ugrep_installation() -> str:
        """Check whether ugrep is installed and show installation instructions if not.

        Args:
            None.
        """
        return _reply("check_ugrep_installation")

    if not engine.tool_available():
        _log("WARN", "mcp", f"ugrep unavailable ({engine.config.tool}), serving check_ugrep_installation only")
        print("codeseek MCP server starting (ugrep missing, reduced tool set)...", file=sys.stderr)
        mcp.run(transport="stdio")
        return

    # --- Search ---

    @mcp.tool()
    def basic_search(
        pattern: str,
        path: str = ".",
        case_sensitive: bool = False,
        recursive_depth: int = 0,
        file_types: str = "",
        exclude_types: str = "",
        context_lines: int = 0,
        max_results: int = 100,
    ) -> str:
        """Regex search with optional type filters and context lines.

        Args:
            pattern: Search pattern or regular expression
            path: Directory or file to search (default: current directory)
            case_sensitive: Case-sensitive matching (default: false)
            recursive_depth: Maximum directory depth (0 = unlimited)
            file_types: Comma-separated ugrep file types (e.g. "python,js")
            exclude_types: Comma-separated file types to skip
            context_lines: Lines of context around each match
            max_results: Maximum matches per file (default: 100)
        """
        return _reply(
            "basic_search",
            pattern=pattern,
            path=path,
            case_sensitive=case_sensitive,
            recursive_depth=recursive_depth or None,
            file_types=file_types or None,
            exclude_types=exclude_types or None,
            context_lines=context_lines,
            max_results=max_results,
        )

    @mcp.tool()
    def boolean_search(query: str, path: str = ".", file_types: str = "", max_results: int = 100) -> str:
        """Google-like Boolean search with AND, OR and NOT operators.

        Args:
            query: Boolean query, e.g. "TODO AND NOT test"
            path: Directory or file to search
            file_types: Comma-separated ugrep file types
            max_results: Maximum matches per file
        """
        return _reply("boolean_search", query=query, path=path, file_types=file_types or None, max_results=max_results)

    @mcp.tool()
    def fuzzy_search(pattern: str, max_errors: int = 2, path: str = ".", file_types: str = "", max_results: int = 100) -> str:
        """Approximate search allowing a number of character errors.

        Args:
            pattern: Pattern to match approximately
            max_errors: Maximum character errors allowed (1-9)
            path: Directory or file to search
            file_types: Comma-separated ugrep file types
            max_results: Maximum matches per file
        """
        return _reply(
            "fuzzy_search",
            pattern=pattern,
            max_errors=max_errors,
            path=path,
            file_types=file_types or None,
            max_results=max_results,
        )

    @mcp.tool()
    def archive_search(pattern: str, path: str = ".", archive_types: str = "", max_results: int = 100) -> str:
        """Search inside archives and compressed files (zip, tar, gz, 7z, ...).

        Args:
            pattern: Search pattern
            path: Directory containing archives
            archive_types: Comma-separated archive extensions to include
            max_results: Maximum matches per file
        """
        return _reply(
            "archive_search",
            pattern=pattern,
            path=path,
            archive_types=archive_types or None,
            max_results=max_results,
        )

    @mcp.tool()
    def interactive_search(initial_pattern: str = "", path: str = "") -> str:
        """Return the command that opens ugrep's interactive TUI in a terminal.

        Args:
            initial_pattern: Pattern to start with
            path: Directory to start in
        """
        return _reply("interactive_search", initial_pattern=initial_pattern or None, path=path or None)

    @mcp.tool()
    def code_structure_search(structure_type: str, language: str, name: str = "", path: str = ".", max_results: int = 100) -> str:
        """Find declarations of one structure kind in one language.

        Args:
            structure_type: function, class, method, import or variable
            language: js, ts, py, java, cpp or c
            name: Exact identifier to look for (empty = any declaration)
            path: Directory or file to search
            max_results: Maximum matches per file
        """
        return _reply(
            "code_structure_search",
            structure_type=structure_type,
            language=language,
            name=name or None,
            path=path,
            max_results=max_results,
        )

    @mcp.tool()
    def list_file_types() -> str:
        """List the file types accepted by file_types filters.

        Args:
            None.
        """
        return _reply("list_file_types")

    @mcp.tool()
    def get_search_stats(
        pattern: str,
        path: str = ".",
        case_sensitive: bool = False,
        file_types: str = "",
        max_results: int = 100,
    ) -> str:
        """Run a basic search and report ugrep's statistics.

        Args:
            pattern: Search pattern or regular expression
            path: Directory or file to search
            case_sensitive: Case-sensitive matching
            file_types: Comma-separated ugrep file types
            max_results: Maximum matches per file
        """
        return _reply(
            "get_search_stats",
            pattern=pattern,
            path=path,
            case_sensitive=case_sensitive,
            file_types=file_types or None,
            max_results=max_results,
        )

    # --- Replace: dry run by default, backup before every first write ---

    @mcp.tool()
    def search_and_replace(
        pattern: str,
        replacement: str,
        path: str = ".",
        file_types: str = "",
        case_sensitive: bool = False,
        dry_run: bool = True,
        max_files: int = 50,
        backup: bool = True,
    ) -> str:
        """Regex search and replace across files. Preview first, then rerun with dry_run=false.

        Args:
            pattern: Regular expression to replace
            replacement: Replacement text ($1, $2 = capture groups, $& = whole match, $` and $' = text before and after the match, $<name> = named group, $$ = literal $)
            path: Directory or file to process
            file_types: Comma-separated ugrep file types
            case_sensitive: Case-sensitive matching (default: false)
            dry_run: Preview only (default: true)
            max_files: Maximum files to process (default: 50)
            backup: Write <file>.backup-<timestamp> before changing a file (default: true)
        """
        return _reply(
            "search_and_replace",
            pattern=pattern,
            replacement=replacement,
            path=path,
            file_types=file_types or None,
            case_sensitive=case_sensitive,
            dry_run=dry_run,
            max_files=max_files,
            backup=backup,
        )

    @mcp.tool()
    def bulk_replace(
        replacements: list[dict[str, Any]],
        path: str = ".",
        file_types: str = "",
        dry_run: bool = True,
        case_sensitive: bool = False,
        backup: bool = True,
        max_files: int = 100,
    ) -> str:
        """Apply an ordered list of replacements to one shared file set.

        Args:
            replacements: List of {pattern, replacement, description?, caseSensitive?}
            path: Directory or file to process
            file_types: Comma-separated ugrep file types
            dry_run: Preview only (default: true)
            case_sensitive: Default case sensitivity for every operation
            backup: One backup per touched file, taken before its first write
            max_files: Maximum files to process (default: 100)
        """
        return _reply(
            "bulk_replace",
            replacements=replacements,
            path=path,
            file_types=file_types or None,
            dry_run=dry_run,
            case_sensitive=case_sensitive,
            backup=backup,
            max_files=max_files,
        )

    @mcp.tool()
    def code_refactor(
        structure_type: str,
        old_pattern: str,
        new_pattern: str,
        language: str,
        path: str = ".",
        dry_run: bool = True,
        backup: bool = True,
        max_files: int = 100,
    ) -> str:
        """Rename a function, class, method, import or variable declaration.

        Args:
            structure_type: function, class, method, import or variable
            old_pattern: Current name
            new_pattern: New name
            language: js, ts, py, java, cpp or c
            path: Directory or file to refactor
            dry_run: Preview only (default: true)
            backup: Back up files before writing (default: true)
            max_files: Maximum files to process (default: 100)
        """
        return _reply(
            "code_refactor",
            structure_type=structure_type,
            old_pattern=old_pattern,
            new_pattern=new_pattern,
            language=language,
            path=path,
            dry_run=dry_run,
            backup=backup,
            max_files=max_files,
        )

    print("codeseek MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
