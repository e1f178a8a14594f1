"""
bootstrap_engine.adapters.source_control — GitHub repository initialisation.

An empty repository has no default-branch commit, which hosting providers
refuse to deploy.  ensure_repo_initialized() leaves a non-empty repository
untouched and seeds an empty one with a README commit.
"""

from __future__ import annotations

import base64
from urllib.parse import quote

from bootstrap_engine.adapters.base import (
    AdapterFailure,
    AdapterResult,
    AdapterSuccess,
    HttpAdapter,
    ProviderCallFailed,
)
from bootstrap_engine.models import ErrorClassification

_API_VERSION = "2022-11-28"
_INITIAL_COMMIT_MESSAGE = "Initial commit"


def split_repository(repo_full_name: str) -> tuple[str, str] | None:
    parts = (repo_full_name or "").strip().split("/")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        return None
    return parts[0].strip(), parts[1].strip()


class SourceControlAdapter(HttpAdapter):
    provider = "GitHub"

    def _headers(self, token: str) -> dict[str, str]:
        headers = super()._headers(token)
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = _API_VERSION
        return headers

    def _repo_path(self, owner: str, repo: str) -> str:
        return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    def _branch_sha(self, token: str, owner: str, repo: str, branch: str) -> str | None:
        """Head commit of branch, or None when the repository has no commits."""
        response = self._request(
            "GET",
            f"{self._repo_path(owner, repo)}/branches/{quote(branch, safe='')}",
            token=token,
            action="read the default branch",
            accept=(404, 409),
        )
        if response.status_code in (404, 409):
            return None
        commit = self._json(response).get("commit") or {}
        return commit.get("sha") or None

    def ensure_repo_initialized(self, token: str, repo_full_name: str) -> AdapterResult:
        parsed = split_repository(repo_full_name)
        if parsed is None:
            return AdapterFailure(
                classification=ErrorClassification.INVALID_INPUT,
                user_message="Invalid repository: expected owner/repo",
                details=f"Got {repo_full_name!r}",
            )
        owner, repo = parsed

        try:
            repository = self._json(
                self._request(
                    "GET",
                    self._repo_path(owner, repo),
                    token=token,
                    action="read the repository",
                )
            )
            branch = str(repository.get("default_branch") or "main")

            head_sha = self._branch_sha(token, owner, repo, branch)
            if head_sha:
                return AdapterSuccess(
                    {
                        "repository": f"{owner}/{repo}",
                        "defaultBranch": branch,
                        "commitSha": head_sha,
                        "created": False,
                    }
                )

            content = f"# {repo}\n\nInitialized by the project bootstrap.\n"
            response = self._request(
                "PUT",
                f"{self._repo_path(owner, repo)}/contents/README.md",
                token=token,
                action="create the initial commit",
                json={
                    "message": _INITIAL_COMMIT_MESSAGE,
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    "branch": branch,
                },
                accept=(409, 422),
            )
            if response.status_code in (409, 422):
                # README already exists; someone else initialised the repository.
                head_sha = self._branch_sha(token, owner, repo, branch)
                if not head_sha:
                    return AdapterFailure(
                        classification=ErrorClassification.UNKNOWN,
                        user_message="Repository head commit could not be read",
                        details=f"Branch {branch!r} of {owner}/{repo} has no readable commit",
                    )
                created = False
            else:
                commit = self._json(response).get("commit") or {}
                head_sha = commit.get("sha")
                created = True
        except ProviderCallFailed as exc:
            return exc.failure

        return AdapterSuccess(
            {
                "repository": f"{owner}/{repo}",
                "defaultBranch": branch,
                "commitSha": head_sha,
                "created": created,
            }
        )
