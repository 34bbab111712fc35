"""Tests for runtime discovery, caching and auto-install."""

import sys
import threading
from pathlib import Path

import pytest

from skillhost.core.errors import RuntimeTooOldError, RuntimeUnavailableError
from skillhost.core.runtime import bootstrap
from skillhost.core.runtime.bootstrap import (
    BUILTIN_RUNTIMES,
    EnvironmentBootstrapper,
    RuntimeSpec,
    parse_version,
    version_at_least,
)
from skillhost.skills.manifest import SkillDescriptor


def fake_binary(path: Path, version_line: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f'#!/bin/sh\necho "{version_line}"\n', encoding="utf-8")
    path.chmod(0o755)
    return path


def tool_skill(min_version="2.0", kind="faketool"):
    return SkillDescriptor(
        skill_id="tool-skill",
        name="Tool Skill",
        entry={"command": [kind, "run", "main.py"]},
        runtime={"kind": kind, "min_version": min_version},
    )


class TestVersions:
    """Version parsing and comparison."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ("uv 0.5.14 (7b55e9cc1 2024-01-15)", "0.5.14"),
            ("uv 1.0.0-beta.1", "1.0.0"),
            ("Python 3.12.1", "3.12.1"),
            ("v20.11.0", "20.11.0"),
            ("", None),
            ("not a version", None),
        ],
    )
    def test_parse_version(self, output, expected):
        assert parse_version(output) == expected

    @pytest.mark.parametrize(
        "version,minimum,expected",
        [
            ("0.5.14", "0.4.0", True),
            ("0.4.0", "0.4.0", True),
            ("0.3.9", "0.4.0", False),
            ("1.0", "0.4.0", True),
            ("0.10.0", "0.9", True),
            ("1.0.0-beta.1", "1.0.0", True),
        ],
    )
    def test_version_at_least(self, version, minimum, expected):
        assert version_at_least(version, minimum) is expected


class TestResolve:
    """Discovery order and outcomes."""

    @pytest.mark.asyncio
    async def test_configured_path_is_used_and_cached(self, settings, tmp_path):
        binary = fake_binary(tmp_path / "bin" / "faketool", "faketool 2.1.0")
        settings = settings.model_copy(update={"runtime_paths": {"faketool": str(binary)}})
        bootstrapper = EnvironmentBootstrapper(settings)

        info = await bootstrapper.resolve(tool_skill())
        assert info.path == str(binary)
        assert info.version == "2.1.0"
        assert info.source == "configured"
        assert bootstrapper.cache_path.exists()

        cached = await bootstrapper.resolve(tool_skill())
        assert cached.source == "cache"
        assert cached.path == str(binary)

        rechecked = await bootstrapper.resolve(tool_skill(), recheck=True)
        assert rechecked.source == "configured"

    @pytest.mark.asyncio
    async def test_too_old_runtime_is_reported_not_installed(self, settings, tmp_path, monkeypatch):
        binary = fake_binary(tmp_path / "bin" / "faketool", "faketool 1.5.0")
        monkeypatch.setitem(
            BUILTIN_RUNTIMES,
            "faketool",
            RuntimeSpec(kind="faketool", binary="faketool", installer_url="https://example.invalid/i.sh"),
        )
        settings = settings.model_copy(
            update={"runtime_paths": {"faketool": str(binary)}, "allow_auto_install": True}
        )

        def no_download():
            raise AssertionError("installer must not run for a too-old runtime")

        bootstrapper = EnvironmentBootstrapper(settings, downloader_factory=no_download)
        with pytest.raises(RuntimeTooOldError) as exc_info:
            await bootstrapper.resolve(tool_skill())
        assert exc_info.value.found == "1.5.0"
        assert exc_info.value.minimum == "2.0"

    @pytest.mark.asyncio
    async def test_cached_entry_older_than_minimum_is_ignored(self, settings, tmp_path):
        binary = fake_binary(tmp_path / "bin" / "faketool", "faketool 2.1.0")
        settings = settings.model_copy(update={"runtime_paths": {"faketool": str(binary)}})
        bootstrapper = EnvironmentBootstrapper(settings)
        await bootstrapper.resolve(tool_skill())

        with pytest.raises(RuntimeTooOldError):
            await bootstrapper.resolve(tool_skill(min_version="3.0"))

    @pytest.mark.asyncio
    async def test_missing_runtime(self, settings):
        bootstrapper = EnvironmentBootstrapper(settings)
        with pytest.raises(RuntimeUnavailableError, match="No usable"):
            await bootstrapper.resolve(tool_skill(kind="no-such-runtime-kind"))

    @pytest.mark.asyncio
    async def test_auto_install_into_cache_dir(self, settings, monkeypatch):
        monkeypatch.setitem(
            BUILTIN_RUNTIMES,
            "faketool",
            RuntimeSpec(
                kind="faketool",
                binary="faketool",
                installer_url="https://example.invalid/install.sh",
                install_dir_env="FAKETOOL_INSTALL_DIR",
            ),
        )
        settings = settings.model_copy(update={"allow_auto_install": True})
        downloads = []

        class FakeDownloader:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def download(self, url, target_path):
                downloads.append(url)
                target_path.write_text(
                    "#!/bin/sh\n"
                    'printf \'#!/bin/sh\\necho "faketool 3.0.0"\\n\' > "$FAKETOOL_INSTALL_DIR/faketool"\n'
                    'chmod +x "$FAKETOOL_INSTALL_DIR/faketool"\n',
                    encoding="utf-8",
                )
                return target_path

        bootstrapper = EnvironmentBootstrapper(settings, downloader_factory=FakeDownloader)
        info = await bootstrapper.resolve(tool_skill())

        assert downloads == ["https://example.invalid/install.sh"]
        assert info.source == "installed"
        assert info.version == "3.0.0"
        assert Path(info.path) == settings.cache_dir / "faketool" / "bin" / "faketool"

    @pytest.mark.asyncio
    async def test_auto_install_disabled(self, settings, monkeypatch):
        monkeypatch.setitem(
            BUILTIN_RUNTIMES,
            "faketool",
            RuntimeSpec(kind="faketool", binary="faketool", installer_url="https://example.invalid/i.sh"),
        )
        bootstrapper = EnvironmentBootstrapper(settings)
        with pytest.raises(RuntimeUnavailableError):
            await bootstrapper.resolve(tool_skill())


class TestEntryBinary:
    """Skills without a runtime requirement."""

    @pytest.mark.asyncio
    async def test_absolute_entry_binary(self, settings, make_descriptor):
        info = await EnvironmentBootstrapper(settings).resolve(make_descriptor())
        assert info.path == sys.executable

    @pytest.mark.asyncio
    async def test_entry_binary_not_on_path(self, settings):
        descriptor = SkillDescriptor(
            skill_id="ghost", name="Ghost", entry={"command": ["definitely-not-a-binary-xyz"]}
        )
        with pytest.raises(RuntimeUnavailableError, match="not on PATH"):
            await EnvironmentBootstrapper(settings).resolve(descriptor)

    def test_command_for_replaces_the_binary(self, settings):
        info = bootstrap.RuntimeInfo(kind="faketool", path="/opt/faketool", version="2.0", source="configured")
        command = EnvironmentBootstrapper(settings).command_for(tool_skill(), info)
        assert command == ("/opt/faketool", "run", "main.py")


class TestCache:
    """Cache invalidation and concurrent writes."""

    @pytest.mark.asyncio
    async def test_invalidate_forces_rediscovery(self, settings, tmp_path):
        binary = fake_binary(tmp_path / "bin" / "faketool", "faketool 2.1.0")
        settings = settings.model_copy(update={"runtime_paths": {"faketool": str(binary)}})
        bootstrapper = EnvironmentBootstrapper(settings)
        await bootstrapper.resolve(tool_skill())

        bootstrapper.invalidate("faketool")
        info = await bootstrapper.resolve(tool_skill())
        assert info.source == "configured"

    @pytest.mark.asyncio
    async def test_unreadable_cache_is_ignored(self, settings, tmp_path):
        binary = fake_binary(tmp_path / "bin" / "faketool", "faketool 2.1.0")
        settings = settings.model_copy(update={"runtime_paths": {"faketool": str(binary)}})
        bootstrapper = EnvironmentBootstrapper(settings)
        bootstrapper.cache_dir.mkdir(parents=True)
        bootstrapper.cache_path.write_text("{not json", encoding="utf-8")

        info = await bootstrapper.resolve(tool_skill())
        assert info.source == "configured"

    def test_concurrent_writers_keep_every_entry(self, settings):
        bootstrapper = EnvironmentBootstrapper(settings)
        kinds = [f"tool{i}" for i in range(16)]
        errors = []

        def remember(kind):
            try:
                for _ in range(5):
                    bootstrapper._remember(
                        bootstrap.RuntimeInfo(kind=kind, path=f"/opt/{kind}", version="1.0", source="configured")
                    )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=remember, args=(kind,)) for kind in kinds]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        cache = bootstrapper._read_cache()
        assert sorted(cache) == sorted(kinds)
        assert all(cache[kind]["path"] == f"/opt/{kind}" for kind in kinds)
        assert list(bootstrapper.cache_dir.glob("*.tmp")) == []


class TestPreWarm:
    """Dry run of the entry point."""

    @pytest.mark.asyncio
    async def test_pre_warm_runs_help(self, settings, tmp_path):
        script = tmp_path / "skill.py"
        script.write_text("import sys\nsys.exit(0 if '--help' in sys.argv else 1)\n", encoding="utf-8")
        descriptor = SkillDescriptor(
            skill_id="warm", name="Warm", entry={"command": [sys.executable, str(script)]}
        )
        assert await EnvironmentBootstrapper(settings).pre_warm(descriptor) is True

    @pytest.mark.asyncio
    async def test_pre_warm_failure_is_non_fatal(self, settings, tmp_path):
        script = tmp_path / "skill.py"
        script.write_text("import sys\nsys.exit(4)\n", encoding="utf-8")
        descriptor = SkillDescriptor(
            skill_id="warm", name="Warm", entry={"command": [sys.executable, str(script)]}
        )
        assert await EnvironmentBootstrapper(settings).pre_warm(descriptor) is False

    @pytest.mark.asyncio
    async def test_pre_warm_skipped_without_dependencies(self, settings, tmp_path):
        script = tmp_path / "skill.py"
        script.write_text("import sys\nsys.exit(4)\n", encoding="utf-8")
        descriptor = SkillDescriptor(
            skill_id="warm",
            name="Warm",
            entry={"command": ["python", str(script)]},
            runtime={"kind": "python", "dependencies": []},
        )
        assert await EnvironmentBootstrapper(settings).pre_warm(descriptor) is True
