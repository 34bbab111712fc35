"""Runtime installer download and execution"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from skillhost.core.errors import RuntimeInstallError

logger = logging.getLogger(__name__)

# Download limits
DEFAULT_MAX_SIZE = 5 * 1024 * 1024  # 5MB, installers are small shell scripts
DEFAULT_TIMEOUT = 60
CHUNK_SIZE = 8192  # 8KB chunks
INSTALL_TIMEOUT = 300


class InstallerDownloader:
    """Downloads runtime installer scripts"""

    def __init__(
        self,
        max_retries: int = 3,
        timeout: int = DEFAULT_TIMEOUT
    ):
        """
        Initialize downloader

        Args:
            max_retries: Maximum number of retry attempts
            timeout: Request timeout in seconds
        """
        self.timeout = timeout

        # Configure session with retry strategy
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @staticmethod
    def _validate_url(url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme != "https":
            raise RuntimeInstallError(f"Installer URL must use https: {url}")
        if not parsed.netloc:
            raise RuntimeInstallError(f"Invalid installer URL: missing hostname")

    def download(self, url: str, target_path: Path, max_size: int = DEFAULT_MAX_SIZE) -> Path:
        """
        Download an installer script

        Args:
            url: Installer URL (https only)
            target_path: Where to write the script
            max_size: Maximum accepted size in bytes

        Returns:
            The target path

        Raises:
            RuntimeInstallError: If the download fails or is too large
        """
        logger.info(f"Downloading runtime installer from: {url}")
        self._validate_url(url)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target_path.with_suffix(target_path.suffix + ".tmp")

        try:
            response = self.session.get(
                url,
                stream=True,
                timeout=self.timeout,
                headers={"User-Agent": "skillhost-runtime-bootstrap/1.0"},
            )
            response.raise_for_status()

            content_length = response.headers.get("Content-Length")
            if content_length:
                try:
                    declared_size = int(content_length)
                except ValueError:
                    raise RuntimeInstallError(
                        f"Installer server sent an invalid Content-Length: {content_length!r}"
                    ) from None
                if declared_size > max_size:
                    raise RuntimeInstallError(
                        f"Installer too large: {declared_size / 1024:.1f}KB (max: {max_size / 1024:.0f}KB)"
                    )

            downloaded_bytes = 0
            start_time = time.time()
            with open(temp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        downloaded_bytes += len(chunk)
                        if downloaded_bytes > max_size:
                            raise RuntimeInstallError(
                                f"Installer download exceeded size limit ({max_size} bytes)"
                            )

            logger.info(
                f"Installer downloaded: {downloaded_bytes / 1024:.2f}KB in {time.time() - start_time:.2f}s"
            )
            if target_path.exists():
                target_path.unlink()
            temp_path.rename(target_path)
            return target_path

        except requests.RequestException as e:
            raise RuntimeInstallError(f"Installer download failed: {e}") from e

        finally:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up temporary file {temp_path}: {e}")

    def close(self):
        """Close the session"""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def run_installer(
    script_path: Path,
    install_dir: Path,
    install_dir_env: str,
    extra_env: Optional[Dict[str, str]] = None,
    timeout: int = INSTALL_TIMEOUT,
) -> None:
    """
    Run a downloaded installer script with ``sh`` into ``install_dir``

    The script is told not to touch shell profiles; the host's own
    configuration is never modified.

    Raises:
        RuntimeInstallError: If the installer fails or times out
    """
    install_dir.mkdir(parents=True, exist_ok=True)
    env = {
        **os.environ,
        install_dir_env: str(install_dir),
        "INSTALLER_NO_MODIFY_PATH": "1",
        **(extra_env or {}),
    }
    logger.info(f"Running installer {script_path.name} into {install_dir}")
    try:
        completed = subprocess.run(
            ["sh", str(script_path), "--no-modify-path"],
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise RuntimeInstallError(f"Installer timed out after {timeout}s") from e
    except OSError as e:
        raise RuntimeInstallError(f"Cannot run installer: {e}") from e

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()[-500:]
        raise RuntimeInstallError(
            f"Installer exited with code {completed.returncode}: {stderr}",
            hint="Install the runtime manually or set runtime_paths in settings",
        )
    logger.info(f"Installer finished: {script_path.name}")
