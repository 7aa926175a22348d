"""
Ledger / authorization file synchronization.

Every mutating operation runs through Synchronizer.with_exclusive_access:

    lock -> ledger transaction (commit) -> render active set -> atomic write -> unlock

The ledger commits before the file is written. If the write fails, the
ledger change stands and SyncPending is raised; the next successful
regeneration (any mutating call, or the periodic cleanup) reconciles the
file because it is always rebuilt from the full active set. A failed
operation still triggers regeneration, since an expiry sweep may have
committed before the failure.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, TypeVar

from .config import Config
from .errors import IoFailure, PermctlError, SyncPending
from .ledger import GrantLedger
from .lock import ExclusiveLock
from .renderer import parse, render
from .util import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUDOERS_MODE = 0o440


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return  # Directory fsync unsupported; rename is still atomic
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _check_syntax(visudo: Path, candidate: Path, target: Path) -> None:
    if not visudo.exists():
        logger.debug("Syntax checker %s not installed; skipping check", visudo)
        return
    proc = subprocess.run(
        [str(visudo), "-c", "-q", "-f", str(candidate)],
        capture_output=True,
        text=True,
        check=False,
    )
    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout).strip() or f"exit status {proc.returncode}"
        raise IoFailure(target, f"generated file rejected by {visudo.name}: {detail}")


def write_atomic(path: Path, content: str, *, mode: int = SUDOERS_MODE, visudo: Path | None = None) -> None:
    """
    Replace `path` with `content` so readers only ever see a complete file.

    The temp file lives in the target directory (rename must not cross
    filesystems) and its name contains a dot, which sudo's #includedir
    ignores even if we crash before the rename.
    """
    directory = path.parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    except OSError as e:
        raise IoFailure.from_os_error(e, e.filename or directory) from e

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if os.geteuid() == 0:
            os.chown(tmp, 0, 0)
        if visudo is not None:
            _check_syntax(visudo, tmp, path)
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise IoFailure.from_os_error(e, path) from e
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    _fsync_dir(directory)


class Synchronizer:
    """Keeps the authorization file a projection of the ledger's active set."""

    def __init__(
        self,
        config: Config,
        ledger: GrantLedger,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.ledger = ledger
        self.clock = clock

    @property
    def target(self) -> Path:
        return self.config.sudoers_path

    def lock(self) -> ExclusiveLock:
        return ExclusiveLock(self.config.lock_path, timeout=self.config.lock_timeout)

    def with_exclusive_access(self, operation: Callable[[], T]) -> T:
        """
        Run `operation` under the exclusive lock, then regenerate the file.

        The file is regenerated even when `operation` raises: the operation
        may have committed ledger changes (an expiry sweep) before failing,
        and a full projection is correct either way.

        Raises:
            SyncPending: `operation` succeeded but the file write failed;
                the committed result is attached as `result`
        """
        with self.lock():
            try:
                result = operation()
            except Exception:
                self._reconcile()
                raise
            try:
                self.regenerate()
            except IoFailure as e:
                raise SyncPending(e.path, e.detail, result) from e
            except PermctlError as e:
                raise SyncPending(self.target, e.message, result) from e
        return result

    def _reconcile(self) -> None:
        try:
            self.regenerate()
        except PermctlError as e:
            logger.warning("Could not regenerate %s after failed operation: %s", self.target, e.message)

    def expected_content(self, now: datetime | None = None) -> str:
        now = now or self.clock()
        return render(self.ledger.active_grants(now))

    def regenerate(self) -> int:
        """Rewrite the authorization file from the ledger. Returns the rule count."""
        content = self.expected_content()
        write_atomic(self.target, content, visudo=self.config.visudo_path)
        rules = len(parse(content))
        logger.info("Regenerated %s (%d rule(s))", self.target, rules)
        return rules

    def read_current(self) -> str | None:
        """Current on-disk content, or None if the file does not exist."""
        try:
            return self.target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IoFailure.from_os_error(e, self.target) from e
