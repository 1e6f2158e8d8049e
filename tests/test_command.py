import shlex
from pathlib import Path

import pytest

from sft_codeseek import (
    ExecutionScope,
    InvalidToolOptions,
    RequestMalformed,
    SearchKind,
    ToolMode,
    ToolOptions,
    build_command,
    build_discovery_command,
)


@pytest.mark.parametrize(
    "pattern",
    [
        "foo; rm -rf /",
        "$(whoami)",
        "`id`",
        "it's \"quoted\"",
        "-rf",
        "a|b && c",
        "line\nbreak",
        "back\\slash $HOME *",
    ],
)
def test_hostile_pattern_is_a_single_argument(pattern):
    argv = shlex.split(build_command(ToolOptions(pattern=pattern, path="/tmp/x y"), ToolMode.SEARCH))
    index = argv.index("-e")
    assert argv[index + 1] == pattern
    assert argv[-2:] == ["--", "/tmp/x y"]


def test_search_mode_flags():
    options = ToolOptions(
        pattern="TODO",
        path="src",
        context_lines=2,
        recursive_depth=3,
        file_types=("python", "js"),
        exclude_types=("markdown",),
        max_results=7,
    )
    argv = shlex.split(build_command(options, "search"))
    assert argv[0] == "ugrep"
    assert "-i" in argv
    assert "--json" in argv
    assert argv[argv.index("-C") + 1] == "2"
    assert "--max-depth=3" in argv
    assert "--max-count=7" in argv
    assert ["-t", "python,js"] == argv[argv.index("-t"): argv.index("-t") + 2]
    assert "^markdown" in argv


def test_case_sensitive_drops_ignore_case():
    argv = shlex.split(build_command(ToolOptions(pattern="X", case_sensitive=True), ToolMode.SEARCH))
    assert "-i" not in argv


@pytest.mark.parametrize(
    "kind,flag",
    [(SearchKind.BOOLEAN, "--bool"), (SearchKind.FUZZY, "-Z3"), (SearchKind.ARCHIVE, "-z")],
)
def test_search_kind_flags(kind, flag):
    argv = shlex.split(build_command(ToolOptions(pattern="p", kind=kind, max_errors=3), ToolMode.SEARCH))
    assert flag in argv


def test_stats_and_perl_flags():
    argv = shlex.split(build_command(ToolOptions(pattern="p", stats=True, perl_regex=True), ToolMode.SEARCH))
    assert "--stats" in argv and "-P" in argv


def test_replace_mode_dry_run_omits_replace_flag():
    options = ToolOptions(pattern="old", replacement="new", dry_run=True)
    argv = shlex.split(build_command(options, ToolMode.REPLACE, tool="/opt/ugrep"))
    assert argv[0] == "/opt/ugrep"
    assert "--line-number" in argv
    assert not any(arg.startswith("--replace") for arg in argv)
    assert "--json" not in argv


def test_replace_mode_live_includes_replacement():
    options = ToolOptions(pattern="old", replacement="new $1", dry_run=False)
    argv = shlex.split(build_command(options, ToolMode.REPLACE))
    assert "--replace=new $1" in argv


@pytest.mark.parametrize(
    "options,mode",
    [
        (ToolOptions(pattern=""), ToolMode.SEARCH),
        (ToolOptions(pattern="p", context_lines=-1), ToolMode.SEARCH),
        (ToolOptions(pattern="p", max_results=0), ToolMode.SEARCH),
        (ToolOptions(pattern="p", recursive_depth=0), ToolMode.SEARCH),
        (ToolOptions(pattern="p", kind=SearchKind.FUZZY, max_errors=12), ToolMode.SEARCH),
        (ToolOptions(pattern="p", replacement="r"), ToolMode.SEARCH),
        (ToolOptions(pattern="p", kind=SearchKind.BOOLEAN, perl_regex=True), ToolMode.SEARCH),
        (ToolOptions(pattern="p"), ToolMode.REPLACE),
        (ToolOptions(pattern="p", replacement="r", kind=SearchKind.FUZZY), ToolMode.REPLACE),
        (ToolOptions(pattern="p", replacement="r", stats=True), ToolMode.REPLACE),
        (ToolOptions(pattern="p", file_types=("py",), exclude_types=("py",)), ToolMode.SEARCH),
        (ToolOptions(pattern="p", file_types=("py;rm",)), ToolMode.SEARCH),
    ],
)
def test_invalid_combinations_are_rejected(options, mode):
    with pytest.raises(InvalidToolOptions):
        build_command(options, mode)


def test_invalid_options_are_request_errors():
    assert issubclass(InvalidToolOptions, RequestMalformed)


def test_discovery_command(tmp_path):
    scope = ExecutionScope(root_path=tmp_path, file_types=("python",), max_files=5)
    argv = shlex.split(build_discovery_command(scope, tool="ugrep"))
    assert argv[:4] == ["ugrep", "-l", "-r", "-I"]
    assert "--exclude=*.backup-*" in argv
    assert "--max-files=5" in argv
    assert argv[argv.index("-t") + 1] == "python"
    assert argv[-2:] == ["--", str(tmp_path)]


def test_discovery_rejects_zero_max_files():
    with pytest.raises(InvalidToolOptions):
        build_discovery_command(ExecutionScope(root_path=Path("."), max_files=0))
