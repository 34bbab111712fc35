"""
Environment Bootstrapper - find (or install) the runtime a skill needs

Lookup order for a runtime kind:
1. Cached result in ``<cache_dir>/runtimes.json`` (unless recheck)
2. Configured path (``runtime_paths.<kind>`` in settings)
3. Search path (``shutil.which``)
4. User-local directories: ~/.local/bin, ~/.cargo/bin, <cache_dir>/<kind>/bin

Every candidate is version-probed with ``--version``. When nothing is
found and the kind has an installer, it is downloaded and run into
``<cache_dir>/<kind>/bin``. Host configuration is never modified.

Probes and installs block, so the async entry points run them in the
default executor.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from skillhost.core.config import RuntimeSettings
from skillhost.core.errors import RuntimeTooOldError, RuntimeUnavailableError
from skillhost.core.runtime.installer import InstallerDownloader, run_installer
from skillhost.core.storage import now_ms
from skillhost.skills.manifest import SkillDescriptor

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"(\d+(?:\.\d+)+)")
PROBE_TIMEOUT = 10
PRE_WARM_TIMEOUT = 300
CACHE_FILENAME = "runtimes.json"
_CACHE_LOCK = threading.Lock()

SOURCE_CONFIGURED = "configured"
SOURCE_SEARCH_PATH = "search_path"
SOURCE_USER_LOCAL = "user_local"
SOURCE_INSTALLED = "installed"
SOURCE_CACHE = "cache"


@dataclass(frozen=True)
class RuntimeSpec:
    """How to find, check and install one runtime kind"""

    kind: str
    binary: str
    default_min_version: Optional[str] = None
    installer_url: Optional[str] = None
    install_dir_env: Optional[str] = None


BUILTIN_RUNTIMES: Dict[str, RuntimeSpec] = {
    "uv": RuntimeSpec(
        kind="uv",
        binary="uv",
        default_min_version="0.4.0",
        installer_url="https://astral.sh/uv/install.sh",
        install_dir_env="UV_INSTALL_DIR",
    ),
    "python": RuntimeSpec(kind="python", binary="python3"),
    "node": RuntimeSpec(kind="node", binary="node"),
}


def runtime_spec(kind: str) -> RuntimeSpec:
    """Spec for ``kind``; unknown kinds are looked up by their own name."""
    return BUILTIN_RUNTIMES.get(kind) or RuntimeSpec(kind=kind, binary=kind)


@dataclass(frozen=True)
class RuntimeInfo:
    """A resolved runtime binary"""

    kind: str
    path: str
    version: Optional[str]
    source: str

    def to_dict(self) -> dict:
        return asdict(self)


def parse_version(output: str) -> Optional[str]:
    """
    Extract the first dotted version number from ``--version`` output

    Examples:
        "uv 0.5.14 (7b55e9cc1 2024-01-15)" -> "0.5.14"
        "Python 3.12.1" -> "3.12.1"
        "v20.11.0" -> "20.11.0"
    """
    match = VERSION_PATTERN.search(output or "")
    return match.group(1) if match else None


def _version_tuple(version: str) -> Tuple[int, ...]:
    core = re.split(r"[-+]", version.strip(), maxsplit=1)[0]
    parts = []
    for part in core.split("."):
        digits = re.match(r"\d+", part)
        parts.append(int(digits.group(0)) if digits else 0)
    return tuple(parts)


def version_at_least(version: str, minimum: str) -> bool:
    """Numeric dotted comparison; missing parts count as zero, suffixes are ignored."""
    v, m = _version_tuple(version), _version_tuple(minimum)
    width = max(len(v), len(m))
    return v + (0,) * (width - len(v)) >= m + (0,) * (width - len(m))


def probe_version(binary: str, timeout: int = PROBE_TIMEOUT) -> Optional[str]:
    """Run ``<binary> --version``; None if it fails or prints no version."""
    try:
        completed = subprocess.run(
            [binary, "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version probe failed for {binary}: {e}")
        return None
    if completed.returncode != 0:
        logger.debug(f"{binary} --version exited with {completed.returncode}")
        return None
    return parse_version(completed.stdout) or parse_version(completed.stderr)


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(str(path), os.X_OK)


class EnvironmentBootstrapper:
    """
    Resolves runnable entry points for skills

    Example:
        bootstrapper = EnvironmentBootstrapper(settings)
        info = await bootstrapper.resolve(descriptor)
        command = bootstrapper.command_for(descriptor, info)
    """

    def __init__(self, settings: RuntimeSettings, downloader_factory=InstallerDownloader):
        self.settings = settings
        self.cache_dir = Path(settings.cache_dir)
        self.cache_path = self.cache_dir / CACHE_FILENAME
        self.downloader_factory = downloader_factory

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def resolve(self, skill: SkillDescriptor, recheck: bool = False) -> RuntimeInfo:
        """
        Resolve the runtime for ``skill``

        Raises:
            RuntimeTooOldError: If only too-old candidates were found
            RuntimeUnavailableError: If nothing usable was found or installed
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.resolve_sync, skill, recheck)

    async def pre_warm(self, skill: SkillDescriptor, info: Optional[RuntimeInfo] = None) -> bool:
        """
        Run the entry point once with ``--help`` so dependency resolution
        happens before the first real task

        Skipped when the entry script's inline metadata declares no
        dependencies.

        Returns:
            True if the dry run exited with status 0 (or was not needed)
        """
        if skill.runtime is not None and skill.runtime.dependencies == ():
            logger.info(f"Pre-warm skipped for {skill.skill_id}: no declared dependencies")
            return True
        info = info or await self.resolve(skill)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._pre_warm_sync, skill, info)

    def command_for(self, skill: SkillDescriptor, info: RuntimeInfo) -> Tuple[str, ...]:
        """Entry command with its first element replaced by the resolved binary."""
        return (info.path,) + tuple(skill.entry.command[1:])

    def invalidate(self, kind: Optional[str] = None):
        """Drop cached resolutions (one kind or all)."""
        with _CACHE_LOCK:
            if kind is None:
                self._write_cache({})
                logger.info("Runtime cache cleared")
                return
            cache = self._read_cache()
            if cache.pop(kind, None) is not None:
                self._write_cache(cache)
                logger.info(f"Runtime cache entry dropped: {kind}")

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_sync(self, skill: SkillDescriptor, recheck: bool = False) -> RuntimeInfo:
        if skill.runtime is None:
            return self._resolve_entry_binary(skill)

        spec = runtime_spec(skill.runtime.kind)
        minimum = skill.runtime.min_version or spec.default_min_version

        if not recheck:
            cached = self._cached(spec.kind, minimum)
            if cached is not None:
                return cached

        info, too_old = self._discover(spec, minimum)
        if info is not None:
            return info
        if too_old is not None:
            found, path = too_old
            raise RuntimeTooOldError(spec.kind, found, minimum, path)

        if spec.installer_url and self.settings.allow_auto_install:
            logger.info(f"{spec.kind} not found, attempting auto-install")
            self._install(spec)
            info, too_old = self._discover(spec, minimum, installed=True)
            if info is not None:
                return info
            if too_old is not None:
                raise RuntimeTooOldError(spec.kind, too_old[0], minimum, too_old[1])

        raise RuntimeUnavailableError(
            f"No usable {spec.kind} runtime found for skill {skill.skill_id}",
            hint=f"Install {spec.binary} or set runtime_paths.{spec.kind} in settings",
        )

    def _resolve_entry_binary(self, skill: SkillDescriptor) -> RuntimeInfo:
        binary = skill.entry.command[0]
        if os.path.isabs(binary):
            if not _is_executable(Path(binary)):
                raise RuntimeUnavailableError(f"Entry binary not executable: {binary}")
            return RuntimeInfo(kind=binary, path=binary, version=None, source=SOURCE_CONFIGURED)
        found = shutil.which(binary)
        if found is None:
            raise RuntimeUnavailableError(
                f"Entry binary '{binary}' for skill {skill.skill_id} is not on PATH",
                hint="Install it or use an absolute path in entry.command",
            )
        return RuntimeInfo(kind=binary, path=found, version=None, source=SOURCE_SEARCH_PATH)

    def _candidates(self, spec: RuntimeSpec) -> List[Tuple[Path, str]]:
        candidates: List[Tuple[Path, str]] = []

        configured = self.settings.runtime_paths.get(spec.kind)
        if configured:
            candidates.append((Path(configured).expanduser(), SOURCE_CONFIGURED))

        found = shutil.which(spec.binary)
        if found:
            candidates.append((Path(found), SOURCE_SEARCH_PATH))

        home = Path.home()
        for directory in (home / ".local" / "bin", home / ".cargo" / "bin", self._install_dir(spec)):
            candidates.append((directory / spec.binary, SOURCE_USER_LOCAL))

        seen = set()
        unique = []
        for path, source in candidates:
            if path not in seen:
                seen.add(path)
                unique.append((path, source))
        return unique

    def _discover(
        self,
        spec: RuntimeSpec,
        minimum: Optional[str],
        installed: bool = False,
    ) -> Tuple[Optional[RuntimeInfo], Optional[Tuple[str, str]]]:
        """Probe candidates in order. Returns (info, (too_old_version, path))."""
        too_old = None
        for path, source in self._candidates(spec):
            if not _is_executable(path):
                continue
            version = probe_version(str(path))
            if version is None:
                logger.debug(f"Skipping {path}: no version reported")
                continue
            if minimum and not version_at_least(version, minimum):
                logger.warning(f"Skipping {path}: {spec.kind} {version} is older than {minimum}")
                if too_old is None:
                    too_old = (version, str(path))
                continue

            if installed and path.parent == self._install_dir(spec):
                source = SOURCE_INSTALLED
            info = RuntimeInfo(kind=spec.kind, path=str(path), version=version, source=source)
            self._remember(info)
            logger.info(f"Resolved {spec.kind} {version} at {path} ({source})")
            return info, None
        return None, too_old

    def _install_dir(self, spec: RuntimeSpec) -> Path:
        return self.cache_dir / spec.kind / "bin"

    def _install(self, spec: RuntimeSpec):
        install_dir = self._install_dir(spec)
        with tempfile.TemporaryDirectory(prefix="skillhost-install-") as tmp:
            script = Path(tmp) / f"{spec.kind}-installer.sh"
            with self.downloader_factory() as downloader:
                downloader.download(spec.installer_url, script)
            run_installer(script, install_dir, spec.install_dir_env or f"{spec.kind.upper()}_INSTALL_DIR")

    # ------------------------------------------------------------------
    # Pre-warm
    # ------------------------------------------------------------------

    def _pre_warm_sync(self, skill: SkillDescriptor, info: RuntimeInfo) -> bool:
        command = list(self.command_for(skill, info)) + ["--help"]
        logger.info(f"Pre-warming skill {skill.skill_id}")
        started = time.time()
        try:
            completed = subprocess.run(
                command,
                cwd=skill.entry.cwd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                timeout=PRE_WARM_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Pre-warm failed for {skill.skill_id}: {e}")
            return False

        if completed.returncode != 0:
            logger.debug(
                f"Pre-warm for {skill.skill_id} exited with {completed.returncode} (non-fatal)"
            )
            return False
        logger.info(f"Pre-warm complete for {skill.skill_id} in {time.time() - started:.1f}s")
        return True

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached(self, kind: str, minimum: Optional[str]) -> Optional[RuntimeInfo]:
        entry = self._read_cache().get(kind)
        if not entry:
            return None
        path = entry.get("path")
        version = entry.get("version")
        if not path or not _is_executable(Path(path)):
            logger.debug(f"Ignoring stale cache entry for {kind}: {path}")
            return None
        if minimum and (not version or not version_at_least(version, minimum)):
            return None
        return RuntimeInfo(kind=kind, path=path, version=version, source=SOURCE_CACHE)

    def _remember(self, info: RuntimeInfo):
        # Resolutions run in executor threads; the read-modify-write must not interleave
        with _CACHE_LOCK:
            cache = self._read_cache()
            cache[info.kind] = {
                "path": info.path,
                "version": info.version,
                "resolved_at": now_ms(),
            }
            self._write_cache(cache)

    def _read_cache(self) -> Dict[str, dict]:
        if not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable runtime cache {self.cache_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_cache(self, cache: Dict[str, dict]):
        """Atomic replace through a temp file unique to this writer."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.cache_dir,
            prefix=".runtimes-",
            suffix=".tmp",
            delete=False,
        ) as f:
            json.dump(cache, f, indent=2, sort_keys=True)
            tmp_path = f.name
        try:
            os.replace(tmp_path, self.cache_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
