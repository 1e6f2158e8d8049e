import sys

import pytest

import sft_codeseek
from sft_codeseek import EXPOSED, ToolResponse, _HANDLERS, _dispatch


def test_every_exposed_tool_has_a_handler():
    assert sorted(EXPOSED) == sorted(_HANDLERS)


def test_unknown_tool(make_engine):
    response = _dispatch("delete_everything", {}, make_engine())
    assert response.is_error
    assert "Unknown tool" in response.text


def test_missing_required_argument(make_engine):
    response = _dispatch("search_and_replace", {"replacement": "x"}, make_engine())
    assert response.is_error
    assert response.text.startswith("Error: RequestMalformed")
    assert "pattern" in response.text


def test_unknown_argument_is_rejected(make_engine):
    response = _dispatch("basic_search", {"pattern": "x", "colour": "red"}, make_engine())
    assert response.is_error


def test_invalid_regex_is_flagged(engine_with_files, tmp_path):
    response = _dispatch("search_and_replace", {"pattern": "(oops", "replacement": "x", "path": str(tmp_path)},
                         engine_with_files([]))
    assert response.is_error
    assert "InvalidPattern" in response.text


def test_structure_errors_are_flagged(make_engine, tmp_path):
    engine = make_engine()
    bad_kind = _dispatch("code_structure_search", {"structure_type": "enum", "language": "py"}, engine)
    assert bad_kind.is_error and "UnsupportedStructureKind" in bad_kind.text
    bad_lang = _dispatch(
        "code_refactor",
        {"structureType": "class", "language": "c", "oldPattern": "a", "newPattern": "b"},
        engine,
    )
    assert bad_lang.is_error and "UnsupportedLanguageForStructure" in bad_lang.text


def test_missing_tool_is_an_error_for_search(make_engine, tmp_path):
    response = _dispatch("basic_search", {"pattern": "x", "path": str(tmp_path)}, make_engine())
    assert response.is_error
    assert "ToolUnavailable" in response.text


def test_missing_path_is_an_error(make_engine, tmp_path):
    response = _dispatch("basic_search", {"pattern": "x", "path": str(tmp_path / "nowhere")}, make_engine())
    assert response.is_error
    assert "FileAccessError" in response.text


def test_unexpected_exceptions_are_caught(make_engine, monkeypatch):
    def _boom(request, engine):
        raise RuntimeError("kaboom")

    monkeypatch.setitem(_HANDLERS, "list_file_types", _boom)
    response = _dispatch("list_file_types", {}, make_engine())
    assert response.is_error
    assert "kaboom" in response.text


def test_search_and_replace_camel_case_dry_run(engine_with_files, tmp_path):
    source = tmp_path / "a.js"
    source.write_text("let oldName = 1;\nconsole.log(oldName);\n")
    engine = engine_with_files([source])

    response = _dispatch(
        "search_and_replace",
        {"pattern": "oldName", "replacement": "newName", "path": str(tmp_path), "fileTypes": "js", "maxFiles": 10},
        engine,
    )

    assert not response.is_error
    assert "[DRY]" in response.text
    assert "2 replacement(s)" in response.text
    assert "- Total replacements: 2" in response.text
    assert "--replace" not in response.text
    assert source.read_text() == "let oldName = 1;\nconsole.log(oldName);\n"
    scope = engine.discover_calls[0]
    assert scope.file_types == ("js",)
    assert scope.max_files == 10
    assert scope.dry_run is True


def test_search_and_replace_live_reports_backup(engine_with_files, tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("one\n")
    response = _dispatch(
        "search_and_replace",
        {"pattern": "one", "replacement": "two", "path": str(tmp_path), "dry_run": False},
        engine_with_files([source]),
    )
    assert "[OK]" in response.text
    assert "Backup:" in response.text
    assert source.read_text() == "two\n"


def test_bulk_replace_uses_defaults(engine_with_files, tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("Foo\n")
    engine = engine_with_files([source])
    response = _dispatch(
        "bulk_replace",
        {
            "path": str(tmp_path),
            "replacements": [
                {"pattern": "foo", "replacement": "bar", "description": "rename foo"},
                {"pattern": "BAR", "replacement": "baz", "caseSensitive": True},
            ],
        },
        engine,
    )
    assert not response.is_error
    assert "Operation 1: rename foo" in response.text
    assert "Operation 2: Pattern: BAR" in response.text
    assert "- Operations performed: 2" in response.text
    assert engine.discover_calls[0].max_files == 100
    assert source.read_text() == "Foo\n"


def test_bulk_replace_needs_operations(make_engine, tmp_path):
    response = _dispatch("bulk_replace", {"path": str(tmp_path), "replacements": []}, make_engine())
    assert response.is_error


def test_code_refactor_renames_declarations_only(engine_with_files, tmp_path):
    source = tmp_path / "app.py"
    source.write_text("def load(path):\n    return load(path)\n")
    engine = engine_with_files([source])
    response = _dispatch(
        "code_refactor",
        {
            "structure_type": "function",
            "language": "python",
            "old_pattern": "load",
            "new_pattern": "fetch",
            "path": str(tmp_path),
            "dry_run": False,
            "backup": False,
        },
        engine,
    )
    assert not response.is_error, response.text
    assert source.read_text() == "def fetch(path):\n    return load(path)\n"
    assert engine.discover_calls[0].file_types == ("python",)


def test_empty_discovery_is_not_an_error(engine_with_files, tmp_path):
    response = _dispatch("search_and_replace", {"pattern": "a", "replacement": "b", "path": str(tmp_path)},
                         engine_with_files([]))
    assert not response.is_error
    assert "No files found to process" in response.text


def test_basic_search_builds_command(make_engine, fake_ugrep, tmp_path):
    args_file = tmp_path / "args.txt"
    tool = fake_ugrep(f"printf '%s\\n' \"$@\" > '{args_file}'\necho 'src/a.py:1:match'")
    response = _dispatch(
        "basic_search",
        {"pattern": "-rf; x", "path": str(tmp_path), "fileTypes": "python", "contextLines": 1},
        make_engine(tool),
    )
    assert not response.is_error
    assert "src/a.py:1:match" in response.text
    argv = args_file.read_text().splitlines()
    assert argv[argv.index("-e") + 1] == "-rf; x"
    assert argv[-1] == str(tmp_path.resolve())
    assert "--json" in argv and "-i" in argv


def test_structure_search_is_case_sensitive_perl(make_engine, fake_ugrep, tmp_path):
    args_file = tmp_path / "args.txt"
    tool = fake_ugrep(f"printf '%s\\n' \"$@\" > '{args_file}'")
    response = _dispatch(
        "code_structure_search",
        {"structure_type": "class", "language": "ts", "name": "Widget", "path": str(tmp_path)},
        make_engine(tool),
    )
    assert not response.is_error
    assert "No matches found." in response.text
    argv = args_file.read_text().splitlines()
    assert "-i" not in argv
    assert "-P" in argv
    assert argv[argv.index("-t") + 1] == "typescript"


def test_no_matches_exit_code(make_engine, fake_ugrep, tmp_path):
    response = _dispatch("fuzzy_search", {"pattern": "x", "path": str(tmp_path)}, make_engine(fake_ugrep("exit 1")))
    assert not response.is_error
    assert "No matches found." in response.text


def test_interactive_search_returns_command(make_engine):
    response = _dispatch("interactive_search", {"initialPattern": "TODO", "path": "src"}, make_engine("ugrep"))
    assert not response.is_error
    assert "ugrep -Q -e TODO -- src" in response.text


def test_check_installation(make_engine, fake_ugrep):
    missing = _dispatch("check_ugrep_installation", {}, make_engine())
    assert not missing.is_error
    assert "[FAIL]" in missing.text and "brew install ugrep" in missing.text
    present = _dispatch("check_ugrep_installation", {}, make_engine(fake_ugrep("echo 'ugrep 7.2.0'")))
    assert "[OK]" in present.text and "ugrep 7.2.0" in present.text


def test_cli_dry_run(engine_with_files, tmp_path, monkeypatch, capsys):
    source = tmp_path / "a.txt"
    source.write_text("red\n")
    monkeypatch.setattr(sft_codeseek, "_ENGINE", engine_with_files([source]))
    monkeypatch.setattr(sys, "argv", ["sft_codeseek.py", "search-and-replace", "red", "blue", str(tmp_path)])
    sft_codeseek.main()
    out = capsys.readouterr().out
    assert "[DRY]" in out
    assert source.read_text() == "red\n"


def test_cli_apply(engine_with_files, tmp_path, monkeypatch, capsys):
    source = tmp_path / "a.txt"
    source.write_text("red\n")
    monkeypatch.setattr(sft_codeseek, "_ENGINE", engine_with_files([source]))
    monkeypatch.setattr(
        sys, "argv", ["sft_codeseek.py", "search-and-replace", "red", "blue", str(tmp_path), "--apply", "-B"]
    )
    sft_codeseek.main()
    assert "[OK]" in capsys.readouterr().out
    assert source.read_text() == "blue\n"


def test_cli_bulk_replace_from_file(engine_with_files, tmp_path, monkeypatch, capsys):
    source = tmp_path / "a.txt"
    source.write_text("one two\n")
    ops = tmp_path / "ops.json"
    ops.write_text('[{"pattern": "one", "replacement": "1"}, {"pattern": "two", "replacement": "2"}]')
    monkeypatch.setattr(sft_codeseek, "_ENGINE", engine_with_files([source]))
    monkeypatch.setattr(sys, "argv", ["sft_codeseek.py", "bulk-replace", str(tmp_path), "-o", str(ops), "-a", "-B"])
    sft_codeseek.main()
    assert "- Operations performed: 2" in capsys.readouterr().out
    assert source.read_text() == "1 2\n"


def test_cli_error_exits_nonzero(make_engine, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(sft_codeseek, "_ENGINE", make_engine())
    monkeypatch.setattr(sys, "argv", ["sft_codeseek.py", "code-structure-search", "enum", "py", str(tmp_path)])
    with pytest.raises(SystemExit) as exc:
        sft_codeseek.main()
    assert exc.value.code == 1
    assert "UnsupportedStructureKind" in capsys.readouterr().err


def test_tool_response_defaults():
    assert ToolResponse("ok").is_error is False


def test_silent_failing_binary_is_not_available(make_engine, fake_ugrep):
    engine = make_engine(fake_ugrep("exit 1"))
    assert engine.tool_version() is None
    assert engine.tool_available() is False
    response = _dispatch("check_ugrep_installation", {}, engine)
    assert "[FAIL]" in response.text


def test_equivalent_command_is_built_before_files_change(engine_with_files, tmp_path, monkeypatch):
    source = tmp_path / "a.txt"
    source.write_text("one\n")
    engine = engine_with_files([source])
    order = []
    real_build = sft_codeseek.build_command
    real_run = engine.run

    def _build(*args, **kwargs):
        order.append("build")
        return real_build(*args, **kwargs)

    def _run(*args, **kwargs):
        order.append("run")
        return real_run(*args, **kwargs)

    monkeypatch.setattr(sft_codeseek, "build_command", _build)
    monkeypatch.setattr(engine, "run", _run)
    response = _dispatch(
        "search_and_replace",
        {"pattern": "one", "replacement": "two", "path": str(tmp_path), "dryRun": False, "backup": False},
        engine,
    )
    assert not response.is_error, response.text
    assert order == ["build", "run"]
    assert source.read_text() == "two\n"
