"""
skillrelay.remote_sync

Remote repository sync: keeps a shallow local clone of each configured GitHub repository
under the cache directory.

Behavior per repository:
- No clone yet: clone (shallow by default, on the configured branch/tag). A commit ref is
  cloned from the default branch and then fetched and checked out by hash.
- Clone exists and the ref is pinned (tag or commit): nothing to do.
- Otherwise: fast-forward-only pull; `updated` reports whether HEAD moved.

Network operations are retried up to MAX_RETRIES times with exponential backoff starting at
INITIAL_BACKOFF seconds. Failures never raise out of sync(); they are classified into a
SyncErrorKind and returned on the SyncResult so one repository never blocks the others.

The token is sent as an HTTP auth header via `git -c`, so it is never written into the
clone's remote URL. Anything logged passes through redact().
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from skillrelay import SERVER_NAME
from skillrelay.remote_spec import (
    GITHUB_HOST,
    InvalidReference,
    RemoteSpec,
    is_remote_reference,
    is_repo_allowed,
    looks_like_commit,
    parse_remote_reference,
)

logger = logging.getLogger(f"{SERVER_NAME}.remote_sync")

MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0

T = TypeVar("T")
GitRunner = Callable[[Sequence[str], "Path | None"], Awaitable[str]]
SleepFn = Callable[[float], Awaitable[Any]]

_URL_CREDENTIALS_RE = re.compile(r"(https?://)[^@/\s]+@")
_AUTH_HEADER_RE = re.compile(r"(AUTHORIZATION: basic )\S+", re.IGNORECASE)


class GitCommandError(RuntimeError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, output: str) -> None:
        self.git_args = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"git {redact(' '.join(self.git_args))} failed with exit code {returncode}: {redact(output)}"
        )


class RemoteSyncError(RuntimeError):
    """A repository sync failed; carries the classified SyncResult."""

    def __init__(self, result: SyncResult) -> None:
        self.result = result
        super().__init__(result.error or f"Failed to sync {result.spec.display_name}")


class SyncErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    GENERIC = "generic"


@dataclass(frozen=True)
class SyncOptions:
    cache_dir: Path
    token: str | None = None
    shallow: bool = True


@dataclass
class SyncResult:
    spec: RemoteSpec
    local_path: Path
    clone_path: Path
    updated: bool = False
    pinned: bool = False
    error: str | None = None
    error_kind: SyncErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": str(self.spec),
            "localPath": str(self.local_path),
            "clonePath": str(self.clone_path),
            "updated": self.updated,
            "pinned": self.pinned,
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(frozen=True)
class RemoteCacheEntry:
    clone_path: Path
    effective_path: Path
    last_known_revision: str | None


def redact(text: str) -> str:
    """Strip credentials from URLs and auth headers before text reaches a log or an error."""
    text = _URL_CREDENTIALS_RE.sub(r"\1***@", text)
    return _AUTH_HEADER_RE.sub(r"\1***", text)


async def run_git(args: Sequence[str], cwd: Path | None = None) -> str:
    """
    function_purpose: Run one git command without blocking the event loop.

    Returns combined stdout/stderr on success; raises GitCommandError on a non-zero exit.
    Interactive credential prompts are disabled so a private repository fails instead of
    hanging the server.
    """
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=env,
    )
    out, _ = await proc.communicate()
    text = out.decode("utf-8", errors="replace").strip()
    logger.debug("git %s -> %s\n%s", redact(" ".join(args)), proc.returncode, redact(text))
    if proc.returncode != 0:
        raise GitCommandError(args, proc.returncode or 1, text)
    return text


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    sleep: SleepFn = asyncio.sleep,
    max_attempts: int = MAX_RETRIES,
    initial_backoff: float = INITIAL_BACKOFF,
) -> T:
    """
    function_purpose: Await operation() up to max_attempts times, doubling the delay between
    attempts. The final failure propagates unclassified.
    """
    for attempt in range(max_attempts):
        try:
            return await operation()
        except (GitCommandError, OSError) as e:
            if attempt == max_attempts - 1:
                raise
            backoff = initial_backoff * (2**attempt)
            logger.warning(
                "%s attempt %d/%d failed, retrying in %.1fs: %s",
                description,
                attempt + 1,
                max_attempts,
                backoff,
                redact(str(e)),
            )
            await sleep(backoff)
    raise RuntimeError("unreachable")


def classify_sync_error(message: str) -> SyncErrorKind:
    lowered = message.lower()
    if "authentication failed" in lowered or "403" in lowered:
        return SyncErrorKind.AUTHENTICATION
    if "rate limit" in lowered:
        return SyncErrorKind.RATE_LIMITED
    if "not found" in lowered or "404" in lowered:
        return SyncErrorKind.NOT_FOUND
    return SyncErrorKind.GENERIC


def describe_sync_error(kind: SyncErrorKind, spec: RemoteSpec, message: str) -> str:
    name = spec.display_name
    if kind is SyncErrorKind.AUTHENTICATION:
        return f"Authentication failed for {name}. For private repos, set GITHUB_TOKEN environment variable."
    if kind is SyncErrorKind.RATE_LIMITED:
        return f"Rate limited when accessing {name}. Try again later."
    if kind is SyncErrorKind.NOT_FOUND:
        return f"Repository not found: {name}"
    return f"Failed to sync {name}: {message}"


def _auth_args(token: str | None) -> list[str]:
    if not token:
        return []
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode("ascii")
    return ["-c", f"http.https://{GITHUB_HOST}/.extraheader=AUTHORIZATION: basic {basic}"]


def is_git_repo(path: Path) -> bool:
    """
    function_purpose: Detect whether the given path is a git repository.
    """
    return (Path(path) / ".git").exists()


class RemoteSyncEngine:
    """
    Clones and fast-forwards remote repositories into the cache directory.

    The git runner and sleep function are injectable so the engine can be driven without
    a network or real delays.
    """

    def __init__(self, runner: GitRunner = run_git, sleep: SleepFn = asyncio.sleep) -> None:
        self.runner = runner
        self.sleep = sleep
        self.cache: dict[RemoteSpec, RemoteCacheEntry] = {}

    async def _git(self, args: Sequence[str], cwd: Path | None, token: str | None = None) -> str:
        return await self.runner([*_auth_args(token), *args], cwd)

    async def _revision(self, clone_path: Path) -> str | None:
        try:
            return await self._git(["rev-parse", "HEAD"], clone_path)
        except (GitCommandError, OSError):
            return None

    async def is_pinned(self, spec: RemoteSpec, clone_path: Path | None = None) -> bool:
        """
        function_purpose: Decide whether spec.ref names a fixed revision that never moves.

        Commit hashes (7-40 hex chars) are pinned by shape. Any other ref is pinned only when
        an existing clone knows it as a tag, so branches named like versions still get pulled.
        Refs containing '/' are branch names.
        """
        ref = spec.ref
        if not ref or "/" in ref:
            return False
        if looks_like_commit(ref):
            return True
        if clone_path is None or not is_git_repo(clone_path):
            return False
        try:
            tags = await self._git(["tag", "--list", ref], clone_path)
        except (GitCommandError, OSError):
            return False
        return ref in tags.splitlines()

    async def _clone(self, spec: RemoteSpec, clone_path: Path, options: SyncOptions) -> None:
        commit = looks_like_commit(spec.ref)
        args = ["clone"]
        if options.shallow:
            args += ["--depth", "1"]
        if spec.ref and not commit:
            args += ["--branch", spec.ref]
        args += [spec.https_url, str(clone_path)]

        await with_retry(
            lambda: self._git(args, None, options.token), f"Clone {spec.display_name}", self.sleep
        )
        if commit:
            fetch = ["fetch", "--depth", "1", "origin", spec.ref] if options.shallow else ["fetch", "origin", spec.ref]
            await with_retry(
                lambda: self._git(fetch, clone_path, options.token), f"Fetch {spec.ref}", self.sleep
            )
            await self._git(["checkout", "--detach", spec.ref], clone_path)

    async def _pull(self, spec: RemoteSpec, clone_path: Path, options: SyncOptions) -> bool:
        async def attempt() -> bool:
            before = await self._git(["rev-parse", "HEAD"], clone_path)
            if spec.ref:
                await self._git(["fetch", "origin", spec.ref], clone_path, options.token)
                await self._git(["checkout", spec.ref], clone_path)
                await self._git(["pull", "--ff-only", "origin", spec.ref], clone_path, options.token)
            else:
                await self._git(["pull", "--ff-only"], clone_path, options.token)
            after = await self._git(["rev-parse", "HEAD"], clone_path)
            return before != after

        return await with_retry(attempt, f"Pull {spec.display_name}", self.sleep)

    async def sync(self, spec: RemoteSpec, options: SyncOptions) -> SyncResult:
        """
        function_purpose: Ensure spec has an up-to-date local cache. Never raises for git or
        network failures; they are classified onto the result.
        """
        clone_path = spec.clone_path(options.cache_dir)
        result = SyncResult(spec=spec, local_path=spec.local_path(options.cache_dir), clone_path=clone_path)

        try:
            if not is_git_repo(clone_path):
                logger.info("Cloning %s into %s", spec, clone_path)
                clone_path.parent.mkdir(parents=True, exist_ok=True)
                await self._clone(spec, clone_path, options)
                result.updated = True
                result.pinned = await self.is_pinned(spec, clone_path)
            elif await self.is_pinned(spec, clone_path):
                result.pinned = True
                logger.info("Skipping pull for pinned ref %s of %s", spec.ref, spec.display_name)
            else:
                result.updated = await self._pull(spec, clone_path, options)
                logger.info(
                    "%s %s", spec.display_name, "updated" if result.updated else "is up to date"
                )
        except (GitCommandError, OSError) as e:
            message = redact(str(e))
            result.error_kind = classify_sync_error(message)
            result.error = describe_sync_error(result.error_kind, spec, message)
            logger.error(result.error)
            return result

        self.cache[spec] = RemoteCacheEntry(
            clone_path=clone_path,
            effective_path=result.local_path,
            last_known_revision=await self._revision(clone_path),
        )
        if spec.subpath and not result.local_path.is_dir():
            result.error_kind = SyncErrorKind.NOT_FOUND
            result.error = f'Subpath "{spec.subpath}" not found in repository {spec.display_name}'
            logger.warning(result.error)
        return result

    async def sync_all(self, specs: Iterable[RemoteSpec], options: SyncOptions) -> list[SyncResult]:
        """Sync each spec in turn; one failure does not stop the rest."""
        results: list[SyncResult] = []
        for spec in specs:
            results.append(await self.sync(spec, options))
        return results

    async def has_remote_updates(self, spec: RemoteSpec, options: SyncOptions) -> bool:
        """
        function_purpose: Cheap pre-check used by polling.

        Fetches remote refs only and compares HEAD with the remote branch head. Pinned refs
        always report False; a missing clone reports True. A failing fetch raises
        GitCommandError so the caller can report it.
        """
        clone_path = spec.clone_path(options.cache_dir)
        if await self.is_pinned(spec, clone_path):
            return False
        if not is_git_repo(clone_path):
            return True

        await self._git(["fetch", "origin"], clone_path, options.token)
        local_head = await self._git(["rev-parse", "HEAD"], clone_path)

        remote_refs = [f"origin/{spec.ref}"] if spec.ref else ["origin/HEAD"]
        remote_refs += ["origin/main", "origin/master"]
        for remote_ref in remote_refs:
            try:
                remote_head = await self._git(["rev-parse", remote_ref], clone_path)
            except (GitCommandError, OSError):
                continue
            return local_head != remote_head
        return False


def select_remote_specs(
    entries: Iterable[str],
    allowed_orgs: Iterable[str] = (),
    allowed_users: Iterable[str] = (),
) -> list[tuple[str, RemoteSpec]]:
    """
    function_purpose: Parse the remote entries of a directory list and apply the allow-list.

    Returns (entry, spec) pairs in configured order. Unparsable references and owners that
    are not allowed are logged and skipped.
    """
    allowed_orgs = list(allowed_orgs)
    allowed_users = list(allowed_users)
    selected: list[tuple[str, RemoteSpec]] = []
    for entry in entries:
        if not is_remote_reference(entry):
            continue
        try:
            spec = parse_remote_reference(entry)
        except InvalidReference as e:
            logger.warning("Skipping remote source: %s", e)
            continue
        if not is_repo_allowed(spec, allowed_orgs, allowed_users):
            logger.warning(
                "Skipping %s: owner '%s' is not in the allowed orgs/users", spec.display_name, spec.owner
            )
            continue
        selected.append((entry, spec))
    return selected
