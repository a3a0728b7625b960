"""Persistence through the HTTP API, with the same surface as LocalBackend."""

import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from errors import RemoteStorageError
from models import has_image_refs, is_image_ref
from settings import DEFAULT_REQUEST_TIMEOUT


logger = logging.getLogger(__name__)


class RemoteBackend:
    """REST client for the mistake-book API.

    Image externalization happens server side; documents returned by the API
    carry the same ``__IMAGE_REF__`` sentinels as locally stored ones.
    Non-2xx answers raise RemoteStorageError, network failures propagate as
    ``requests`` exceptions. Nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        timeout: int = DEFAULT_REQUEST_TIMEOUT,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        user_id: Optional[str] = None,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if user_id is not None:
            headers["X-User-Id"] = user_id
        return self.http.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            json=json,
            params=params,
            timeout=self.timeout,
        )

    def _body(self, response) -> Dict:
        try:
            return response.json()
        except ValueError:
            raise RemoteStorageError(
                f"Server returned a non-JSON response ({response.status_code})",
                status_code=response.status_code,
            )

    def _checked(self, response):
        if response.status_code >= 400:
            message = f"Request failed ({response.status_code})"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("message"):
                message = body["message"]
            raise RemoteStorageError(message, status_code=response.status_code)
        return response

    # --- users ---

    def register(self, user: Dict) -> Dict:
        # Validation failures come back as {success: false, message} with a 4xx.
        return self._body(self._request("POST", "/api/auth/register", json=user))

    def login(self, username: str, password: str) -> Dict:
        return self._body(
            self._request("POST", "/api/auth/login", json={"username": username, "password": password})
        )

    def update_user(self, user: Dict) -> Dict:
        response = self._checked(self._request("PUT", "/api/user", user_id=user["id"], json=user))
        return self._body(response)

    # --- questions ---

    def get_questions(self, owner_id: str) -> List[Dict]:
        return self._body(self._checked(self._request("GET", "/api/questions", user_id=owner_id)))

    def get_question(self, owner_id: str, question_id: str) -> Optional[Dict]:
        response = self._request("GET", f"/api/questions/{quote(question_id, safe='')}", user_id=owner_id)
        if response.status_code == 404:
            return None
        return self._body(self._checked(response))

    def save_question(self, owner_id: str, question: Dict) -> None:
        self._checked(self._request("POST", "/api/questions", user_id=owner_id, json=question))

    def delete_question(self, owner_id: str, question_id: str, hard: bool = False) -> None:
        self._checked(
            self._request(
                "DELETE",
                f"/api/questions/{quote(question_id, safe='')}",
                user_id=owner_id,
                params={"hard": "true" if hard else "false"},
            )
        )

    def restore_question(self, owner_id: str, question_id: str) -> None:
        question = self.get_question(owner_id, question_id)
        if question is None:
            return
        question.pop("deletedAt", None)
        self.save_question(owner_id, question)

    def hydrate_question_images(self, owner_id: str, question: Dict) -> Dict:
        if not has_image_refs(question):
            return question

        response = self._request(
            "GET",
            f"/api/questions/{quote(question['id'], safe='')}/images",
            user_id=owner_id,
        )
        images = self._body(self._checked(response))
        stored_materials = images.get("materials") or []

        hydrated = dict(question)
        materials = []
        for index, value in enumerate(question.get("materials") or []):
            if is_image_ref(value):
                resolved = stored_materials[index] if index < len(stored_materials) else ""
                if not resolved:
                    logger.warning("Missing material %d for question %s", index, question["id"])
                materials.append(resolved or "")
            else:
                materials.append(value)
        hydrated["materials"] = materials
        if is_image_ref(question.get("notesImage")):
            hydrated["notesImage"] = images.get("notesImage") or ""
        return hydrated

    # --- sessions ---

    def get_sessions(self, owner_id: str) -> List[Dict]:
        return self._body(self._checked(self._request("GET", "/api/sessions", user_id=owner_id)))

    def save_session(self, owner_id: str, session: Dict, skip_stats_update: bool = False) -> None:
        self._checked(
            self._request(
                "POST",
                "/api/sessions",
                user_id=owner_id,
                json=session,
                params={"skipStats": "true" if skip_stats_update else "false"},
            )
        )

    def delete_session(self, owner_id: str, session_id: str) -> None:
        self._checked(
            self._request("DELETE", f"/api/sessions/{quote(session_id, safe='')}", user_id=owner_id)
        )
