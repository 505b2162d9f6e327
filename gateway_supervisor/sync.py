"""
Skills synchronization.

Clones the skills repository into a private staging directory, checks that it
holds the skills sub-tree and publishes that sub-tree as the live skills
directory. Publishing copies the tree into a hidden sibling first and then
swaps it in with two renames while holding publish_lock, so anyone reading
under the same lock sees either the old generation or the new one.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
import time
import uuid
from functools import partial
from pathlib import Path
from typing import Optional

from .config import Config
from .git import FetchError, GitFetcher, redact
from .models import SyncFailure, SyncOutcome
from .secret_store import SecretResolver, SecretUnavailable

logger = logging.getLogger(__name__)


def _file_digest(path: Path) -> bytes:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.digest()


def tree_digest(root: Path) -> Optional[str]:
    """
    SHA-256 over the relative paths and contents of a directory tree.

    Returns None if root is not a directory. .git directories are ignored and
    symlinks are hashed by target, not followed.
    """
    root = Path(root)
    if not root.is_dir():
        return None

    entries = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d != ".git"]
        for name in dirnames + filenames:
            entries.append(Path(dirpath) / name)
    entries.sort(key=lambda p: p.relative_to(root).as_posix())

    digest = hashlib.sha256()
    for path in entries:
        rel = path.relative_to(root).as_posix().encode()
        if path.is_symlink():
            digest.update(b"L\0" + rel + b"\0" + os.readlink(path).encode() + b"\0")
        elif path.is_dir():
            digest.update(b"D\0" + rel + b"\0")
        else:
            digest.update(b"F\0" + rel + b"\0" + _file_digest(path))
    return digest.hexdigest()


class SkillSynchronizer:
    """Fetches the skills repository and publishes its skills sub-tree."""

    def __init__(
        self,
        skills_dir: Path,
        repo_url: str,
        secrets: SecretResolver,
        *,
        enabled: bool = True,
        branch: Optional[str] = None,
        subdir: str = "skills",
        token_secret: str = "github-token",
        staging_dir: Optional[Path] = None,
        fetcher=None,
    ):
        self.skills_dir = Path(skills_dir)
        self.repo_url = repo_url
        self.secrets = secrets
        self.branch = branch
        self.subdir = subdir
        self.token_secret = token_secret
        self.staging_dir = Path(staging_dir) if staging_dir else None
        self.fetcher = fetcher or GitFetcher()
        self._enabled = enabled

        # Held while the live directory is swapped; readers that must not see
        # a partial tree (the supervisor spawning the gateway) take it too.
        self.publish_lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Config, secrets: SecretResolver) -> "SkillSynchronizer":
        return cls(
            config.skills_dir,
            config.skills_repo_url,
            secrets,
            enabled=config.skills_sync_enabled,
            branch=config.skills_repo_branch or None,
            subdir=config.skills_subdir,
            token_secret=config.skills_token_secret,
            staging_dir=config.staging_dir,
            fetcher=GitFetcher(timeout=config.skills_sync_timeout),
        )

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.repo_url)

    @property
    def in_progress(self) -> bool:
        return self._sync_lock.locked()

    async def sync(self) -> SyncOutcome:
        """Run one synchronization. Never raises; failures come back as outcomes."""
        if not self.enabled:
            logger.info("Skills sync disabled or no repository URL provided")
            return SyncOutcome.skipped()

        async with self._sync_lock:
            started = time.monotonic()
            logger.info("Starting skills sync...")
            try:
                outcome = await self._sync()
            except Exception as e:
                logger.error(f"Error during skills sync: {e}")
                outcome = SyncOutcome.failed(SyncFailure.PUBLISH_ERROR, str(e))
            return outcome.with_duration(time.monotonic() - started)

    async def _sync(self) -> SyncOutcome:
        loop = asyncio.get_running_loop()

        try:
            token = await loop.run_in_executor(None, self.secrets.resolve, self.token_secret)
        except SecretUnavailable as e:
            logger.error(f"No credential available for skills sync: {e}")
            return SyncOutcome.failed(SyncFailure.NO_CREDENTIAL, str(e))

        staging = await loop.run_in_executor(None, self._prepare_staging)
        try:
            checkout = staging / "repo"
            try:
                revision = await loop.run_in_executor(
                    None,
                    partial(self.fetcher.fetch, self.repo_url, checkout, token=token, branch=self.branch),
                )
            except FetchError as e:
                message = redact(str(e), token)
                logger.error(f"Skills sync failed: {message}")
                return SyncOutcome.failed(SyncFailure.FETCH_ERROR, message)

            source = checkout / self.subdir
            if not source.is_dir():
                logger.warning(f"No '{self.subdir}' directory found in repository")
                return SyncOutcome.failed(
                    SyncFailure.MISSING_SUBTREE, f"'{self.subdir}' not found in repository"
                )

            changed = await loop.run_in_executor(None, self._differs, source)
            if not changed:
                logger.info(f"Skills already up to date (revision {revision})")
                return SyncOutcome.no_change(revision)

            incoming = await loop.run_in_executor(None, self._copy_incoming, source)
            async with self.publish_lock:
                previous = await loop.run_in_executor(None, self._swap, incoming)
            if previous is not None:
                await loop.run_in_executor(None, partial(shutil.rmtree, previous, ignore_errors=True))

            logger.info(f"Skills synced successfully (revision {revision})")
            return SyncOutcome.updated(revision)
        finally:
            await loop.run_in_executor(None, self._cleanup, staging)

    def _sibling(self, kind: str) -> Path:
        return self.skills_dir.parent / f".{self.skills_dir.name}.{kind}-{uuid.uuid4().hex[:8]}"

    def _prepare_staging(self) -> Path:
        self._clean_leftovers()
        if self.staging_dir is not None:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="skills-sync-", dir=self.staging_dir))

    def _differs(self, source: Path) -> bool:
        return tree_digest(source) != tree_digest(self.skills_dir)

    def _copy_incoming(self, source: Path) -> Path:
        self.skills_dir.parent.mkdir(parents=True, exist_ok=True)
        incoming = self._sibling("incoming")
        shutil.copytree(source, incoming, symlinks=True, ignore=shutil.ignore_patterns(".git"))
        return incoming

    def _swap(self, incoming: Path) -> Optional[Path]:
        """Move the live tree aside and the incoming tree into place. Returns the old tree."""
        previous = None
        if self.skills_dir.exists():
            previous = self._sibling("previous")
            os.rename(self.skills_dir, previous)
        try:
            os.rename(incoming, self.skills_dir)
        except OSError:
            if previous is not None:
                os.rename(previous, self.skills_dir)
            raise
        return previous

    def _clean_leftovers(self):
        """Remove incoming/previous trees left behind by an interrupted sync."""
        parent = self.skills_dir.parent
        if not parent.is_dir():
            return
        name = self.skills_dir.name
        for pattern in (f".{name}.incoming-*", f".{name}.previous-*"):
            for path in parent.glob(pattern):
                shutil.rmtree(path, ignore_errors=True)

    def _cleanup(self, staging: Path):
        shutil.rmtree(staging, ignore_errors=True)
        self._clean_leftovers()
