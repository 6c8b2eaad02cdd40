"""Standalone BitBucket REST API helper used to open pull requests."""

from typing import Dict, Optional

import requests

from auto_claude_plans.models import PullRequestInfo


class BitbucketAPI:
    """Lightweight wrapper around the BitBucket Cloud pull request API."""

    BASE = "https://api.bitbucket.org/2.0"

    def __init__(self, access_token: str, workspace: str, repo_slug: str,
                 debug: bool = False):
        self.access_token = access_token
        self.workspace = workspace
        self.repo_slug = repo_slug
        self.debug = debug

    @classmethod
    def from_config(cls, config) -> Optional['BitbucketAPI']:
        """None unless token, workspace and repository are all configured."""
        if not (config.bitbucket_access_token and config.bitbucket_workspace
                and config.bitbucket_repo_slug):
            return None
        return cls(config.bitbucket_access_token, config.bitbucket_workspace,
                   config.bitbucket_repo_slug, debug=config.debug)

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[ORCH-BITBUCKET] {msg}")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
        }

    def pull_requests_url(self) -> str:
        return (f"{self.BASE}/repositories/{self.workspace}/"
                f"{self.repo_slug}/pullrequests")

    def create_pull_request(self, pr: PullRequestInfo) -> Optional[str]:
        """Open *pr* on BitBucket; returns the PR's web URL or None."""
        payload = {
            'title': pr.title[:255],
            'source': {'branch': {'name': pr.head_branch}},
            'destination': {'branch': {'name': pr.base_branch}},
            'description': pr.body,
        }
        self._dbg(f"POST {self.pull_requests_url()} ({pr.head_branch} -> "
                  f"{pr.base_branch})")
        try:
            resp = requests.post(self.pull_requests_url(),
                                 headers=self._headers, json=payload,
                                 timeout=30)
        except requests.RequestException as exc:
            print(f"[ORCH] PR creation failed: {exc}")
            return None

        if resp.status_code in (200, 201):
            url = resp.json().get('links', {}).get('html', {}).get('href', '')
            print(f"[ORCH] PR created: {url}")
            return url or None
        print(f"[ORCH] PR creation returned {resp.status_code}: "
              f"{resp.text[:300]}")
        return None
