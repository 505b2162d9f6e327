"""
Fetching the skills repository with the git command line.

Every fetch is a fresh shallow clone into an empty directory. Credentials are
passed as URL user-info for https remotes and are scrubbed from any output
before it is logged or reported.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """The remote could not be cloned."""


def authenticated_url(url: str, token: Optional[str]) -> str:
    """Embed a token into an https URL that carries no credentials yet."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme != "https" or "@" in parts.netloc:
        return url
    return urlunsplit(parts._replace(netloc=f"{token}@{parts.netloc}"))


def redact(text: str, token: Optional[str]) -> str:
    if token:
        text = text.replace(token, "***")
    return text


class GitFetcher:
    """Clones a repository with `git clone`."""

    def __init__(self, depth: int = 1, timeout: int = 300):
        self.depth = depth
        self.timeout = timeout

    def _run(self, args: list[str], cwd: Optional[Path] = None, token: Optional[str] = None) -> str:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            p = subprocess.run(
                ["git", *args],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except FileNotFoundError:
            raise FetchError("git executable not found")
        except subprocess.TimeoutExpired:
            raise FetchError(f"git {args[0]} timed out after {self.timeout}s")
        if p.returncode != 0:
            raise FetchError(redact(f"git {args[0]} failed: {p.stderr.strip()}", token))
        return p.stdout.strip()

    def fetch(self, url: str, dest: Path, token: Optional[str] = None, branch: Optional[str] = None) -> Optional[str]:
        """Clone url into dest (which must not exist yet). Returns the fetched commit."""
        args = ["clone", "--quiet"]
        if self.depth > 0:
            args.append(f"--depth={self.depth}")
        if branch:
            args += ["--branch", branch]
        args += [authenticated_url(url, token), str(dest)]

        logger.debug(f"Cloning {url} into {dest}")
        self._run(args, token=token)
        try:
            return self._run(["rev-parse", "HEAD"], cwd=dest)
        except FetchError as e:
            logger.warning(f"Could not read fetched revision: {e}")
            return None
