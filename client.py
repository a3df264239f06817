"""
HTTP client for the task board API.

Any object with a requests-style ``request(method, url, json=, headers=, timeout=)``
method can stand in for the session, so the same client drives a live server
(``requests.Session``) or an in-process app (``fastapi.testclient.TestClient``).
"""
import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]


class ApiError(Exception):
    """A non-2xx response, carrying the server's message and structured details."""

    def __init__(self, status: int, message: str, details: Optional[Doc] = None):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message
        self.details = details or {}

    @property
    def is_conflict(self) -> bool:
        return self.status == 409

    @property
    def violations(self) -> List[Doc]:
        """WIP violations as ``{columnKey, wip, count}`` entries, for single moves and batches alike."""
        if "violations" in self.details:
            return list(self.details["violations"])
        if "columnKey" in self.details and "wip" in self.details:
            return [self.details]
        return []


class BoardClient:
    def __init__(self, base_url: str = "", token: Optional[str] = None, session: Any = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, json: Optional[Doc] = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = self.session.request(method, self.base_url + path, json=json, headers=headers, timeout=self.timeout)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = body.get("error") or f"HTTP {response.status_code}"
            logger.debug("%s %s -> %s %s", method, path, response.status_code, message)
            raise ApiError(response.status_code, message, body.get("details"))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Projects
    def list_projects(self) -> List[Doc]:
        return self._request("GET", "/projects")["projects"]

    def get_project(self, project_id: str) -> Doc:
        return self._request("GET", f"/projects/{project_id}")["project"]

    def create_project(self, name: str, description: Optional[str] = None,
                       columns: Optional[List[Doc]] = None) -> Doc:
        body: Doc = {"name": name}
        if description is not None:
            body["description"] = description
        if columns is not None:
            body["columns"] = columns
        return self._request("POST", "/projects", body)["project"]

    def update_project(self, project_id: str, **changes: Any) -> Doc:
        return self._request("PATCH", f"/projects/{project_id}", changes)["project"]

    def delete_project(self, project_id: str) -> None:
        self._request("DELETE", f"/projects/{project_id}")

    def join_project(self, join_code: str) -> Doc:
        return self._request("POST", "/projects/join", {"joinCode": join_code})

    def regenerate_join_code(self, project_id: str) -> Doc:
        return self._request("POST", f"/projects/{project_id}/join-code")["project"]

    def remove_member(self, project_id: str, member_id: str) -> Doc:
        return self._request("DELETE", f"/projects/{project_id}/members/{member_id}")

    # Tasks
    def list_tasks(self, project_id: str) -> List[Doc]:
        return self._request("GET", f"/projects/{project_id}/tasks")["tasks"]

    def list_backlog(self, project_id: str) -> List[Doc]:
        return self._request("GET", f"/projects/{project_id}/backlog")["tasks"]

    def create_task(self, project_id: str, title: str, column_key: str, order: float, **fields: Any) -> Doc:
        body = {"title": title, "columnKey": column_key, "order": order, **fields}
        return self._request("POST", f"/projects/{project_id}/tasks", body)["task"]

    def create_backlog_task(self, project_id: str, title: str, **fields: Any) -> Doc:
        return self._request("POST", f"/projects/{project_id}/backlog", {"title": title, **fields})["task"]

    def update_task(self, project_id: str, task_id: str, patch: Doc) -> Doc:
        return self._request("PATCH", f"/projects/{project_id}/tasks/{task_id}", patch)["task"]

    def move_task(self, project_id: str, task_id: str, to_column_key: Optional[str] = None,
                  backlog: bool = False) -> Doc:
        body: Doc = {"backlog": True} if backlog else {"toColumnKey": to_column_key}
        return self._request("POST", f"/projects/{project_id}/tasks/{task_id}/move", body)["task"]

    def reorder_tasks(self, project_id: str, tasks: List[Doc]) -> Doc:
        return self._request("PATCH", f"/projects/{project_id}/tasks-reorder", {"tasks": tasks})

    def delete_task(self, project_id: str, task_id: str) -> None:
        self._request("DELETE", f"/projects/{project_id}/tasks/{task_id}")

    def import_local_tasks(self, project_id: str, tasks: List[Doc], import_id: Optional[str] = None) -> Doc:
        return self._request("POST", f"/projects/{project_id}/import-local", {"tasks": tasks, "importId": import_id})
