"""Linear GraphQL API client wrapper"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from forumsync.errors import RemoteAPIError

logger = logging.getLogger(__name__)


@dataclass
class LinearIssue:
    id: str
    identifier: str
    title: str
    url: str


@dataclass
class LinearIssueStatus:
    id: str
    identifier: str
    status_name: str
    updated_at: str


@dataclass
class LinearComment:
    id: str
    body: str
    created_at: str
    author_name: str


@dataclass
class UploadFile:
    upload_url: str
    asset_url: str
    headers: Dict[str, str] = field(default_factory=dict)


CREATE_ISSUE_MUTATION = """
mutation CreateIssue($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue { id identifier title url }
  }
}
"""

UPDATED_ISSUES_QUERY = """
query UpdatedIssues($teamId: ID!, $since: DateTimeOrDuration!, $after: String) {
  issues(
    filter: { team: { id: { eq: $teamId } }, updatedAt: { gt: $since } }
    first: 100
    after: $after
  ) {
    pageInfo { hasNextPage endCursor }
    nodes { id identifier updatedAt state { name } }
  }
}
"""

ISSUE_COMMENTS_QUERY = """
query IssueComments($id: String!, $after: String) {
  issue(id: $id) {
    comments(first: 100, after: $after) {
      pageInfo { hasNextPage endCursor }
      nodes { id body createdAt user { name displayName } }
    }
  }
}
"""

ISSUES_BY_DESCRIPTION_QUERY = """
query IssuesByDescription($teamId: ID!, $text: String!) {
  issues(
    filter: { team: { id: { eq: $teamId } }, description: { contains: $text } }
    first: 1
  ) {
    nodes { id identifier title url }
  }
}
"""

FILE_UPLOAD_MUTATION = """
mutation FileUpload($contentType: String!, $filename: String!, $size: Int!) {
  fileUpload(contentType: $contentType, filename: $filename, size: $size) {
    success
    uploadFile { uploadUrl assetUrl headers { key value } }
  }
}
"""


class LinearClient:
    """Wrapper for Linear API operations"""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.linear.app/graphql",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Linear client"""
        self.api_url = api_url
        self.timeout = timeout
        self._headers = {"Authorization": api_key, "Content-Type": "application/json"}
        self._session = session
        if session is not None:
            session.headers.update(self._headers)
        # The gateway workers and the poll job call in from different threads.
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self._headers)
            self._local.session = session
        return session

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient Linear failures."""
        if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
            return True
        rc = getattr(exc, "status_code", None)
        if rc in (429, 500, 502, 503, 504):
            return True
        # Auth and validation failures are not retried.
        return False

    @staticmethod
    def _should_retry_write(exc: Exception) -> bool:
        """Retry predicate for mutations: only failures where Linear never acted on the request."""
        if isinstance(exc, requests.ConnectTimeout):
            return True
        # A read timeout or 5xx may arrive after the mutation was applied.
        return getattr(exc, "status_code", None) == 429

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 0.5, should_retry=None):
        """Run callable with small exponential backoff on transient errors."""
        should_retry = should_retry or self._should_retry
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    def _post_graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(
            self.api_url,
            json={"query": query, "variables": variables},
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise RemoteAPIError("Linear", response.text[:500], status_code=response.status_code)
        return response.json()

    def _execute(self, query: str, variables: Dict[str, Any], *, mutation: bool = False) -> Dict[str, Any]:
        """Run a GraphQL operation and return its `data` object."""
        try:
            payload = self._with_retries(
                lambda: self._post_graphql(query, variables),
                should_retry=self._should_retry_write if mutation else None,
            )
        except requests.RequestException as e:
            raise RemoteAPIError("Linear", str(e)) from e
        except ValueError as e:
            raise RemoteAPIError("Linear", f"Invalid JSON response: {e}") from e

        errors = payload.get("errors")
        if errors:
            combined = "; ".join(str(err.get("message", err)) for err in errors)
            logger.warning(f"Linear API returned errors: {combined}")
            raise RemoteAPIError("Linear", combined)

        data = payload.get("data")
        if data is None:
            raise RemoteAPIError("Linear", "No data in response")
        return data

    @staticmethod
    def _require(obj: Optional[Dict[str, Any]], key: str, what: str) -> Any:
        value = (obj or {}).get(key)
        if value is None:
            raise RemoteAPIError("Linear", f"Missing {what}")
        return value

    @staticmethod
    def _format_since(since: datetime) -> str:
        # Cursors are stored UTC tz-naive.
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return since.isoformat()

    def create_issue(
        self, team_id: str, title: str, description: str, label_ids: List[str]
    ) -> LinearIssue:
        """Create a new issue"""
        variables = {
            "input": {
                "teamId": team_id,
                "title": title,
                "description": description,
                "labelIds": list(label_ids),
            }
        }
        try:
            data = self._execute(CREATE_ISSUE_MUTATION, variables, mutation=True)
            issue = self._require(data.get("issueCreate"), "issue", "issueCreate.issue")
            created = LinearIssue(
                id=self._require(issue, "id", "issue id"),
                identifier=self._require(issue, "identifier", "issue identifier"),
                title=issue.get("title") or title,
                url=self._require(issue, "url", "issue url"),
            )
            logger.info(f"Created issue {created.identifier} in team {team_id}")
            return created
        except RemoteAPIError as e:
            logger.error(f"Failed to create issue in team {team_id}: {e}")
            raise

    def get_updated_issues(self, team_id: str, since: datetime) -> List[LinearIssueStatus]:
        """Get all issues of a team updated after `since`"""
        results: List[LinearIssueStatus] = []
        after: Optional[str] = None
        try:
            while True:
                data = self._execute(
                    UPDATED_ISSUES_QUERY,
                    {"teamId": team_id, "since": self._format_since(since), "after": after},
                )
                issues = self._require(data, "issues", "issues")
                for node in issues.get("nodes") or []:
                    results.append(
                        LinearIssueStatus(
                            id=node.get("id") or "",
                            identifier=node.get("identifier") or "",
                            status_name=(node.get("state") or {}).get("name") or "",
                            updated_at=node.get("updatedAt") or "",
                        )
                    )
                page = issues.get("pageInfo") or {}
                if not page.get("hasNextPage") or not page.get("endCursor"):
                    return results
                after = page["endCursor"]
        except RemoteAPIError as e:
            logger.error(f"Failed to get updated issues for team {team_id}: {e}")
            raise

    def get_issue_comments(self, issue_id: str) -> List[LinearComment]:
        """Get all comments for an issue, oldest first"""
        comments: List[LinearComment] = []
        after: Optional[str] = None
        try:
            while True:
                data = self._execute(ISSUE_COMMENTS_QUERY, {"id": issue_id, "after": after})
                issue = self._require(data, "issue", f"issue {issue_id}")
                conn = issue.get("comments") or {}
                for node in conn.get("nodes") or []:
                    user = node.get("user") or {}
                    comments.append(
                        LinearComment(
                            id=node.get("id") or "",
                            body=node.get("body") or "",
                            created_at=node.get("createdAt") or "",
                            author_name=user.get("displayName") or user.get("name") or "Unknown",
                        )
                    )
                page = conn.get("pageInfo") or {}
                if not page.get("hasNextPage") or not page.get("endCursor"):
                    break
                after = page["endCursor"]
        except RemoteAPIError as e:
            logger.error(f"Failed to get comments for issue {issue_id}: {e}")
            raise
        # ISO8601 timestamps from Linear sort lexicographically.
        comments.sort(key=lambda c: c.created_at)
        return comments

    def find_issue_by_description(self, team_id: str, text: str) -> Optional[LinearIssue]:
        """Find an issue in a team whose description contains `text`"""
        data = self._execute(ISSUES_BY_DESCRIPTION_QUERY, {"teamId": team_id, "text": text})
        nodes = (data.get("issues") or {}).get("nodes") or []
        if not nodes:
            return None
        node = nodes[0]
        return LinearIssue(
            id=node["id"], identifier=node["identifier"], title=node.get("title") or "", url=node["url"]
        )

    def request_file_upload(self, filename: str, content_type: str, size: int) -> UploadFile:
        """Ask Linear for a signed upload slot"""
        data = self._execute(
            FILE_UPLOAD_MUTATION,
            {"contentType": content_type, "filename": filename, "size": int(size)},
            mutation=True,
        )
        upload = self._require(data.get("fileUpload"), "uploadFile", "fileUpload.uploadFile")
        headers = {h["key"]: h["value"] for h in upload.get("headers") or [] if "key" in h}
        return UploadFile(
            upload_url=self._require(upload, "uploadUrl", "uploadUrl"),
            asset_url=self._require(upload, "assetUrl", "assetUrl"),
            headers=headers,
        )

    def upload_file(self, upload: UploadFile, data: bytes, content_type: str) -> str:
        """PUT file bytes to a signed upload slot; returns the asset URL"""
        headers = {"Content-Type": content_type, "Cache-Control": "public, max-age=31536000"}
        headers.update(upload.headers)
        try:
            # Plain requests.put: the signed URL must not receive our API key.
            response = requests.put(upload.upload_url, data=data, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteAPIError("Linear upload", str(e)) from e
        if not response.ok:
            raise RemoteAPIError(
                "Linear upload", response.text[:500], status_code=response.status_code
            )
        logger.debug(f"File uploaded to Linear: {upload.asset_url}")
        return upload.asset_url

    def download_attachment(self, url: str) -> Tuple[bytes, str]:
        """Download an attachment; returns (bytes, content_type)"""
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteAPIError("Attachment download", str(e)) from e
        if not response.ok:
            raise RemoteAPIError("Attachment download", url, status_code=response.status_code)
        content_type = response.headers.get("content-type") or "application/octet-stream"
        return response.content, content_type
