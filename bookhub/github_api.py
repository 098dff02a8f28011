from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from . import __version__
from .errors import (
    AccessDenied,
    AuthenticationFailed,
    BookHubError,
    NotFound,
    RateLimited,
    RemoteConflict,
    TransportError,
)
from .log import get_logger
from .remote import CommitResult, RemoteFile, RemoteSnapshot, WriteResult

log = get_logger(__name__)

API_BASE = "https://api.github.com"


@dataclass
class TokenInfo:
    valid: bool
    username: Optional[str] = None
    scopes: List[str] = field(default_factory=list)


class GitHubAPI:
    """GitHub REST client for one branch of one repository.

    Listings are pinned to the branch tip commit and writes land as a single
    commit, both through the git data API, so every sync reads and writes one
    consistent tree.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        branch: str = "main",
        *,
        timeout_s: float = 30,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self._blob_cache: Dict[str, str] = {}
        self.client = httpx.Client(
            base_url=API_BASE,
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": f"bookhub/{__version__}",
            },
            timeout=httpx.Timeout(timeout_s, connect=timeout_s),
            transport=transport,
        )

    def __enter__(self) -> "GitHubAPI":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    @property
    def _repo_url(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def _request(self, method: str, url: str, *, allow: tuple = (), **kwargs) -> httpx.Response:
        try:
            r = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"GitHub request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransportError(f"GitHub request failed: {e}") from e

        if r.status_code in allow or r.is_success:
            return r
        message = _error_message(r)
        lowered = message.lower()
        if r.status_code == 401:
            raise AuthenticationFailed("Invalid or expired GitHub token.", status_code=401)
        if r.status_code == 429 or (
            r.status_code == 403
            and ("rate limit" in lowered or r.headers.get("x-ratelimit-remaining") == "0")
        ):
            raise RateLimited("GitHub API rate limit exceeded. Will retry on the next sync.", status_code=r.status_code)
        if r.status_code == 403:
            raise AccessDenied(
                f"Access denied to {self.owner}/{self.repo}. Check the token scopes.", status_code=403
            )
        if r.status_code == 404:
            raise NotFound(f"Not found: {url}", status_code=404)
        if r.status_code == 409 or (r.status_code == 422 and ("sha" in lowered or "fast forward" in lowered)):
            raise RemoteConflict(f"Remote file changed concurrently: {message}", status_code=r.status_code)
        if r.status_code >= 500:
            raise TransportError(f"GitHub server error {r.status_code}: {message}", status_code=r.status_code)
        raise BookHubError(f"GitHub API error {r.status_code}: {message}", status_code=r.status_code)

    def validate_token(self) -> TokenInfo:
        try:
            r = self._request("GET", "/user")
        except BookHubError as e:
            log.warning("Token validation failed: %s", e)
            return TokenInfo(valid=False)
        scopes = [s.strip() for s in (r.headers.get("x-oauth-scopes") or "").split(",") if s.strip()]
        return TokenInfo(valid=True, username=r.json().get("login"), scopes=scopes)

    def check_repo(self) -> bool:
        try:
            self._request("GET", self._repo_url)
        except (NotFound, AccessDenied):
            return False
        return True

    def get_latest_commit_sha(self) -> Optional[str]:
        """Sha of the branch tip, or None for a repository without commits."""
        r = self._request("GET", f"{self._repo_url}/git/ref/heads/{quote(self.branch)}", allow=(404, 409))
        if r.status_code == 409:
            return None
        if r.status_code == 404:
            if self._repo_is_empty():
                return None
            raise NotFound(f"Branch {self.branch!r} not found in {self.owner}/{self.repo}.", status_code=404)
        return r.json()["object"]["sha"]

    def _repo_is_empty(self) -> bool:
        r = self._request("GET", self._repo_url)
        return int(r.json().get("size") or 0) == 0

    def get_file(self, path: str) -> Optional[RemoteFile]:
        r = self._request(
            "GET",
            f"{self._repo_url}/contents/{quote(path)}",
            params={"ref": self.branch},
            allow=(404,),
        )
        if r.status_code == 404:
            return None
        data = r.json()
        if isinstance(data, list):
            raise BookHubError(f"Expected a file but found a directory: {path}")
        return RemoteFile(path=path, content=_b64decode(data.get("content") or ""), sha=data["sha"])

    def write_file(self, path: str, content: str, message: str, expected_sha: Optional[str] = None) -> WriteResult:
        body: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if expected_sha:
            body["sha"] = expected_sha
        r = self._request("PUT", f"{self._repo_url}/contents/{quote(path)}", json=body)
        data = r.json()
        sha = data["content"]["sha"]
        self._blob_cache[sha] = content
        return WriteResult(sha=sha, commit=(data.get("commit") or {}).get("sha"))

    def delete_file(self, path: str, message: str, expected_sha: str) -> Optional[str]:
        body = {"message": message, "sha": expected_sha, "branch": self.branch}
        r = self._request("DELETE", f"{self._repo_url}/contents/{quote(path)}", json=body)
        return (r.json().get("commit") or {}).get("sha")

    def commit_files(self, changes: Mapping[str, Optional[str]], message: str, parent: Optional[str]) -> CommitResult:
        """Apply every change as one commit and fast-forward the branch to it.

        Blobs, tree and commit are created first; the branch only moves on the
        final ref update, which GitHub refuses unless the branch still points at
        ``parent``. A failure before that leaves the branch untouched.
        """
        if not changes:
            return CommitResult(commit=parent)
        if parent is None:
            parent = self._initial_commit(changes, message)

        base = self._request("GET", f"{self._repo_url}/git/commits/{parent}").json()
        entries: List[Dict[str, Any]] = []
        shas: Dict[str, Optional[str]] = {}
        for path in sorted(changes):
            content = changes[path]
            if content is None:
                sha = None
            else:
                blob = self._request(
                    "POST", f"{self._repo_url}/git/blobs", json={"content": content, "encoding": "utf-8"}
                ).json()
                sha = blob["sha"]
                self._blob_cache[sha] = content
            entries.append({"path": path, "mode": "100644", "type": "blob", "sha": sha})
            shas[path] = sha

        tree = self._request(
            "POST", f"{self._repo_url}/git/trees", json={"base_tree": base["tree"]["sha"], "tree": entries}
        ).json()
        commit = self._request(
            "POST",
            f"{self._repo_url}/git/commits",
            json={"message": message, "tree": tree["sha"], "parents": [parent]},
        ).json()["sha"]
        self._request(
            "PATCH",
            f"{self._repo_url}/git/refs/heads/{quote(self.branch)}",
            json={"sha": commit, "force": False},
        )
        log.debug("Committed %d change(s) to %s as %s.", len(changes), self.branch, commit[:7])
        return CommitResult(commit=commit, shas=shas)

    def _initial_commit(self, changes: Mapping[str, Optional[str]], message: str) -> str:
        # The git data API rejects empty repositories; the contents API creates the first commit.
        path = next((p for p in sorted(changes) if changes[p] is not None), None)
        if path is None:
            raise NotFound(f"Branch {self.branch!r} has no commits to delete files from.")
        res = self.write_file(path, changes[path] or "", message)
        if not res.commit:
            raise BookHubError(f"GitHub did not report a commit for the first write to {path}")
        return res.commit

    def list_tree(self, prefix: str) -> RemoteSnapshot:
        commit = self.get_latest_commit_sha()
        if commit is None:
            return RemoteSnapshot(commit=None)
        c = self._request("GET", f"{self._repo_url}/git/commits/{commit}").json()
        t = self._request(
            "GET", f"{self._repo_url}/git/trees/{c['tree']['sha']}", params={"recursive": "1"}
        ).json()
        if t.get("truncated"):
            log.warning("GitHub truncated the tree listing for %s/%s; some bookmarks may be missing.", self.owner, self.repo)

        want = prefix.strip("/") + "/"
        files: Dict[str, RemoteFile] = {}
        fetched = 0
        for item in t.get("tree") or []:
            path = item.get("path") or ""
            if item.get("type") != "blob" or not path.startswith(want):
                continue
            sha = item["sha"]
            content = self._blob_cache.get(sha)
            if content is None:
                blob = self._request("GET", f"{self._repo_url}/git/blobs/{sha}").json()
                content = _b64decode(blob.get("content") or "")
                self._blob_cache[sha] = content
                fetched += 1
            files[path] = RemoteFile(path=path, content=content, sha=sha)
        log.debug("Listed %d remote files at %s (%d blobs fetched).", len(files), commit[:7], fetched)
        return RemoteSnapshot(commit=commit, files=files)


def _b64decode(data: str) -> str:
    # GitHub wraps base64 content in newlines.
    return base64.b64decode(data.replace("\n", "")).decode("utf-8")


def _error_message(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return r.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or "")
    return ""
