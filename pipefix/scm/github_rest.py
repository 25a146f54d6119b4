from __future__ import annotations

import base64
import io
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from pipefix.errors import UpstreamError, error_for_status


def _json(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError as e:
        raise UpstreamError(f"github_invalid_json: {r.text[:500]}", retryable=True) from e


@dataclass(frozen=True)
class GitHubRestClient:
    """
    Minimal async GitHub REST wrapper.

    Supports:
    - list failed workflow runs + download run logs
    - create / delete branches
    - read, upsert and delete files via the Contents API (creates commits server-side)
    - create PR

    Notes:
    - No git pushes; this works with only HTTPS + token.
    - Mockable in tests (httpx transport override).
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport, follow_redirects=True)

    def _url(self, path: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, *, ok: tuple = (200, 201), **kw: Any) -> httpx.Response:
        try:
            async with self._client() as c:
                r = await c.request(method, self._url(path), headers=self._headers(), **kw)
        except httpx.TransportError as e:
            raise UpstreamError(f"github_transport_error: {type(e).__name__}", retryable=True) from e
        if r.status_code not in ok:
            raise error_for_status(r.status_code, r.text, source="github")
        return r

    async def list_failed_runs(self, *, per_page: int = 20, branch: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"status": "failure", "per_page": per_page}
        if branch:
            params["branch"] = branch
        r = await self._request("GET", "actions/runs", params=params)
        data = _json(r)
        runs = (data.get("workflow_runs") if isinstance(data, dict) else None) or []
        return [x for x in runs if isinstance(x, dict)]

    async def get_run(self, run_id: str) -> Dict[str, Any]:
        r = await self._request("GET", f"actions/runs/{run_id}")
        return _json(r)

    async def download_run_logs(self, run_id: str) -> Dict[str, str]:
        """Job log files keyed by archive path (the endpoint redirects to a zip)."""
        r = await self._request("GET", f"actions/runs/{run_id}/logs")
        try:
            zf = zipfile.ZipFile(io.BytesIO(r.content))
        except zipfile.BadZipFile as e:
            raise UpstreamError(f"github_logs_not_zip: run {run_id}") from e
        out: Dict[str, str] = {}
        with zf:
            for name in sorted(zf.namelist()):
                if name.endswith("/"):
                    continue
                out[name] = zf.read(name).decode("utf-8", errors="replace")
        return out

    async def get_branch_head_sha(self, *, branch: str) -> str:
        r = await self._request("GET", f"git/ref/heads/{branch}")
        data = _json(r)
        return str(((data.get("object") if isinstance(data, dict) else None) or {}).get("sha"))

    async def create_branch(self, *, new_branch: str, from_sha: str) -> None:
        payload = {"ref": f"refs/heads/{new_branch}", "sha": from_sha}
        # 422 if branch exists; treat as idempotent.
        await self._request("POST", "git/refs", ok=(200, 201, 422), json=payload)

    async def delete_branch(self, *, branch: str) -> None:
        # 404/422: already gone.
        await self._request("DELETE", f"git/refs/heads/{branch}", ok=(200, 204, 404, 422))

    async def get_file(self, *, path: str, ref: str) -> Optional[Dict[str, Any]]:
        """{"sha", "text"} for an existing file, None when absent."""
        r = await self._request("GET", f"contents/{path.lstrip('/')}", ok=(200, 404), params={"ref": ref})
        if r.status_code == 404:
            return None
        data = _json(r)
        if not isinstance(data, dict) or not data.get("sha"):
            return None
        text = ""
        if data.get("content"):
            text = base64.b64decode(str(data["content"])).decode("utf-8", errors="replace")
        return {"sha": str(data["sha"]), "text": text}

    async def upsert_file(
        self,
        *,
        path: str,
        content_text: str,
        branch: str,
        message: str,
        known_sha: Optional[str] = None,
    ) -> None:
        b64 = base64.b64encode(content_text.encode("utf-8")).decode("ascii")
        payload: Dict[str, Any] = {"message": message, "content": b64, "branch": branch}
        if known_sha:
            payload["sha"] = known_sha
        await self._request("PUT", f"contents/{path.lstrip('/')}", json=payload)

    async def delete_file(self, *, path: str, branch: str, message: str, sha: str) -> None:
        payload = {"message": message, "branch": branch, "sha": sha}
        await self._request("DELETE", f"contents/{path.lstrip('/')}", json=payload)

    async def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> Dict[str, Any]:
        payload = {"title": title, "body": body, "head": head, "base": base}
        r = await self._request("POST", "pulls", json=payload)
        return _json(r)
