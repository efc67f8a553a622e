"""Git service: single-file commits to a remote repository via the git CLI."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit, urlunsplit

from shelfsync.exceptions import AuthError, TransientIOError

logger = logging.getLogger(__name__)

_AUTH_FAILURE_MARKERS = ("Authentication failed", "could not read Username", "403")


def authenticated_url(url: str, token: str) -> str:
    """Embed a token into an https clone URL. Other schemes are returned as is."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme != "https":
        return url
    netloc = f"x-access-token:{token}@{parts.hostname}"
    if parts.port is not None:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class GitService:
    """Wraps the git CLI for clone-write-commit-push cycles in a scratch directory."""

    def __init__(
        self,
        *,
        token: str = "",
        author_name: str = "shelfsync",
        author_email: str = "shelfsync@localhost",
    ) -> None:
        self._token = token
        self.author_name = author_name
        self.author_email = author_email

    def _sanitize(self, text: str) -> str:
        if self._token:
            return text.replace(self._token, "***")
        return text

    def _run(self, *args: str, cwd: Path) -> subprocess.CompletedProcess[str]:
        """Run a git command, mapping failures to engine errors with the token scrubbed."""
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            msg = "git executable not found; install git to commit catalog changes"
            raise TransientIOError(msg) from exc
        except subprocess.CalledProcessError as exc:
            command = self._sanitize(" ".join(args))
            stderr = self._sanitize(exc.stderr.strip() if exc.stderr else "no stderr")
            logger.error("git %s failed (exit %d): %s", command, exc.returncode, stderr)
            msg = f"git {command}: {stderr}"
            if any(marker in stderr for marker in _AUTH_FAILURE_MARKERS):
                raise AuthError(msg) from None
            raise TransientIOError(msg) from None

    def commit_file(self, clone_url: str, file_path: str, content: bytes, message: str) -> str | None:
        """Write file_path with content on the default branch and push.

        Returns the new commit hash, or None when the content was already
        identical and nothing needed committing.
        """
        relative = PurePosixPath(file_path)
        if relative.is_absolute() or ".." in relative.parts:
            msg = f"Refusing to commit outside the repository: {file_path}"
            raise ValueError(msg)

        with tempfile.TemporaryDirectory(prefix="shelfsync-") as tmp:
            workdir = Path(tmp)
            url = authenticated_url(clone_url, self._token)
            self._run("clone", "--depth=1", url, ".", cwd=workdir)

            target = workdir.joinpath(*relative.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

            self._run("config", "user.email", self.author_email, cwd=workdir)
            self._run("config", "user.name", self.author_name, cwd=workdir)
            self._run("add", relative.as_posix(), cwd=workdir)
            staged = subprocess.run(
                ["git", "diff", "--cached", "--quiet"],
                cwd=workdir,
                check=False,
                capture_output=True,
            )
            if staged.returncode == 0:
                logger.info("No changes to %s, skipping commit", file_path)
                return None
            self._run("commit", "-m", message, cwd=workdir)
            self._run("push", "origin", "HEAD", cwd=workdir)
            commit = self._run("rev-parse", "HEAD", cwd=workdir).stdout.strip()
            logger.info("Committed %s as %s", file_path, commit[:12])
            return commit
