"""Tests for inline script metadata parsing."""

import pytest

from skillhost.skills.pep723 import (
    find_entry_script,
    minimum_python,
    parse_inline_metadata,
    parse_script_metadata,
)

SCRIPT = '''\
#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.31",
#     "rich",
# ]
#
# [tool.skillhost]
# timeout = 30
# ///

import sys
print(sys.argv)
'''


class TestParseInlineMetadata:
    """# /// script blocks"""

    def test_full_block(self):
        metadata = parse_inline_metadata(SCRIPT)
        assert metadata.found
        assert metadata.requires_python == ">=3.11"
        assert metadata.dependencies == ("requests>=2.31", "rich")
        assert metadata.tool == {"skillhost": {"timeout": 30}}

    def test_no_block(self):
        metadata = parse_inline_metadata("import sys\n")
        assert not metadata.found
        assert metadata.dependencies == ()

    def test_empty_dependency_list(self):
        metadata = parse_inline_metadata('# /// script\n# dependencies = []\n# ///\n')
        assert metadata.found
        assert metadata.dependencies == ()
        assert metadata.requires_python is None

    def test_code_inside_block_is_not_metadata(self):
        source = '# /// script\n# dependencies = []\nimport os\n# ///\n'
        assert not parse_inline_metadata(source).found

    def test_invalid_toml_is_ignored(self, caplog):
        metadata = parse_inline_metadata('# /// script\n# dependencies = [\n# ///\n')
        assert not metadata.found
        assert "malformed inline script metadata" in caplog.text

    def test_wrong_types_are_dropped(self):
        source = '# /// script\n# requires-python = 3\n# dependencies = ["a", 1]\n# ///\n'
        metadata = parse_inline_metadata(source)
        assert metadata.requires_python is None
        assert metadata.dependencies == ("a",)

    def test_parse_file(self, tmp_path):
        path = tmp_path / "agent.py"
        path.write_text(SCRIPT, encoding="utf-8")
        assert parse_script_metadata(path).requires_python == ">=3.11"


class TestMinimumPython:
    """Lower bound of requires-python"""

    @pytest.mark.parametrize(
        "spec,expected",
        [
            (">=3.11", "3.11"),
            (">=3.9, <4", "3.9"),
            ("~=3.10", "3.10"),
            ("==3.12.*", "3.12"),
            (">=3.8,>=3.10", "3.10"),
            ("<4", None),
            ("", None),
            (None, None),
        ],
    )
    def test_lower_bound(self, spec, expected):
        assert minimum_python(spec) == expected


class TestFindEntryScript:
    """Locating the script an entry command runs"""

    def test_relative_script_resolves_against_cwd(self, tmp_path):
        path = find_entry_script(["uv", "run", "agent.py"], str(tmp_path))
        assert path == tmp_path / "agent.py"

    def test_absolute_script(self, tmp_path):
        script = str(tmp_path / "agent.py")
        assert find_entry_script(["python", script], None) == tmp_path / "agent.py"

    def test_no_script(self):
        assert find_entry_script(["node", "index.js"], "/tmp") is None

    def test_interpreter_is_not_the_script(self):
        assert find_entry_script(["runner.py"], "/tmp") is None
